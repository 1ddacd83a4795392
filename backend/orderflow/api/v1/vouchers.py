"""
Voucher API endpoints.

Operators create and manage vouchers; customers list their own usable
vouchers and preview the discount a code would give.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from orderflow.api.deps import AdminPrincipal, CurrentPrincipal, get_voucher_service
from orderflow.core.logging import get_logger
from orderflow.schemas.vouchers import (
    VoucherBulkActionResponse,
    VoucherBulkCreateRequest,
    VoucherBulkCreateResponse,
    VoucherBulkFailureResponse,
    VoucherCreateRequest,
    VoucherListResponse,
    VoucherResponse,
    VoucherStatsResponse,
    VoucherValidateRequest,
    VoucherValidateResponse,
)
from orderflow.services.vouchers.service import VoucherService

logger = get_logger(__name__)

router = APIRouter(prefix="/vouchers", tags=["vouchers"])

VoucherServiceDep = Annotated[VoucherService, Depends(get_voucher_service)]


@router.post(
    "",
    response_model=VoucherResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create voucher",
)
async def create_voucher(
    request: VoucherCreateRequest,
    admin: AdminPrincipal,
    service: VoucherServiceDep,
) -> VoucherResponse:
    voucher = await service.create_voucher(
        customer_id=request.customer_id,
        discount_type=request.discount_type,
        discount_value=request.discount_value,
        code=request.code,
        phone_number=request.phone_number,
        expires_at=request.expires_at,
        is_active=request.is_active,
    )
    logger.info("Voucher created by operator", code=voucher.code, admin_id=str(admin.customer_id))
    return VoucherResponse.model_validate(voucher)


@router.post(
    "/bulk",
    response_model=VoucherBulkCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create vouchers for many customers",
)
async def create_bulk_vouchers(
    request: VoucherBulkCreateRequest,
    admin: AdminPrincipal,
    service: VoucherServiceDep,
) -> VoucherBulkCreateResponse:
    result = await service.create_bulk(
        recipients=request.recipients,
        discount_type=request.discount_type,
        discount_value=request.discount_value,
        expires_at=request.expires_at,
        code_prefix=request.code_prefix,
    )
    logger.info(
        "Bulk vouchers created by operator",
        created=result.created,
        failed=result.failed,
        admin_id=str(admin.customer_id),
    )
    return VoucherBulkCreateResponse(
        created=result.created,
        failed=result.failed,
        vouchers=[VoucherResponse.model_validate(v) for v in result.vouchers],
        failures=[VoucherBulkFailureResponse.model_validate(f) for f in result.failures],
    )


@router.get("", response_model=VoucherListResponse, summary="List vouchers")
async def list_vouchers(
    admin: AdminPrincipal,
    service: VoucherServiceDep,
    is_active: Optional[bool] = Query(None),
    is_used: Optional[bool] = Query(None),
    customer_id: Optional[UUID] = Query(None),
    search: Optional[str] = Query(None, max_length=100, description="Code or phone substring"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> VoucherListResponse:
    vouchers, total = await service.list_vouchers(
        is_active=is_active,
        is_used=is_used,
        customer_id=customer_id,
        search=search,
        limit=limit,
        offset=offset,
    )
    return VoucherListResponse(
        items=[VoucherResponse.model_validate(v) for v in vouchers],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=VoucherStatsResponse, summary="Voucher statistics")
async def voucher_stats(admin: AdminPrincipal, service: VoucherServiceDep) -> VoucherStatsResponse:
    return VoucherStatsResponse(**await service.get_stats())


@router.get("/mine", response_model=list[VoucherResponse], summary="My vouchers")
async def my_vouchers(
    principal: CurrentPrincipal,
    service: VoucherServiceDep,
    include_unusable: bool = Query(False),
) -> list[VoucherResponse]:
    vouchers = await service.list_customer_vouchers(
        principal.customer_id, usable_only=not include_unusable
    )
    return [VoucherResponse.model_validate(voucher) for voucher in vouchers]


@router.post("/validate", response_model=VoucherValidateResponse, summary="Preview a voucher")
async def validate_voucher(
    request: VoucherValidateRequest,
    principal: CurrentPrincipal,
    service: VoucherServiceDep,
) -> VoucherValidateResponse:
    quote = await service.quote(request.code, principal.customer_id, request.subtotal)
    return VoucherValidateResponse(
        code=quote.voucher.code,
        discount_type=quote.voucher.discount_type,
        discount_value=quote.voucher.discount_value,
        discount=quote.discount,
    )


@router.post(
    "/deactivate-all",
    response_model=VoucherBulkActionResponse,
    summary="Deactivate every unused voucher",
)
async def deactivate_all_vouchers(
    admin: AdminPrincipal, service: VoucherServiceDep
) -> VoucherBulkActionResponse:
    count = await service.deactivate_all()
    logger.info("Vouchers deactivated by operator", count=count, admin_id=str(admin.customer_id))
    return VoucherBulkActionResponse(affected=count)


@router.delete(
    "/unused",
    response_model=VoucherBulkActionResponse,
    summary="Delete every unused voucher",
)
async def delete_unused_vouchers(
    admin: AdminPrincipal, service: VoucherServiceDep
) -> VoucherBulkActionResponse:
    count = await service.delete_all_unused()
    logger.info("Unused vouchers deleted by operator", count=count, admin_id=str(admin.customer_id))
    return VoucherBulkActionResponse(affected=count)


@router.get("/{voucher_id}", response_model=VoucherResponse, summary="Get voucher")
async def get_voucher(
    voucher_id: UUID, admin: AdminPrincipal, service: VoucherServiceDep
) -> VoucherResponse:
    return VoucherResponse.model_validate(await service.get_voucher(voucher_id))


@router.post("/{voucher_id}/activate", response_model=VoucherResponse)
async def activate_voucher(
    voucher_id: UUID, admin: AdminPrincipal, service: VoucherServiceDep
) -> VoucherResponse:
    return VoucherResponse.model_validate(await service.set_active(voucher_id, True))


@router.post("/{voucher_id}/deactivate", response_model=VoucherResponse)
async def deactivate_voucher(
    voucher_id: UUID, admin: AdminPrincipal, service: VoucherServiceDep
) -> VoucherResponse:
    return VoucherResponse.model_validate(await service.set_active(voucher_id, False))


@router.delete("/{voucher_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_voucher(
    voucher_id: UUID, admin: AdminPrincipal, service: VoucherServiceDep
) -> None:
    await service.delete_voucher(voucher_id)
