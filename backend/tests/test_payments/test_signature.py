"""Tests for gateway callback signature verification."""

import hashlib
import hmac

import pytest

from orderflow.services.payments.signature import (
    SignatureVerdict,
    check_signature,
    compute_signature,
    signed_message,
    verify_signature,
)
from tests.factories import TEST_HMAC_SECRET, make_callback

DOCUMENTED_MESSAGE = "EDV447111.00Direct PayCash Through FawryPAID2911105009TEST11111"


def documented_callback(**overrides):
    fields = {
        "ProductCode": "EDV4471",
        "Amount": "11.00",
        "ProductType": "Direct Pay",
        "PaymentMethod": "Cash Through Fawry",
        "BuyerName": "mee",
        "BuyerEmail": "test@mail.com",
        "BuyerMobile": "0123456789",
        "status": "PAID",
        "voucher": "",
        "easykashRef": "2911105009",
        "VoucherData": "Direct Pay",
        "customerReference": "TEST11111",
    }
    fields.update(overrides)
    return make_callback(**fields)


def expected_hash(message: str) -> str:
    return hmac.new(
        TEST_HMAC_SECRET.encode(), message.encode(), hashlib.sha512
    ).hexdigest()


class TestSignedMessage:
    def test_field_order_and_no_separator(self):
        assert signed_message(documented_callback()) == DOCUMENTED_MESSAGE

    def test_missing_fields_contribute_nothing(self):
        callback = documented_callback(customerReference=None)
        assert signed_message(callback) == DOCUMENTED_MESSAGE[: -len("TEST11111")]

    def test_compute_signature_is_hmac_sha512_hex(self):
        signature = compute_signature(DOCUMENTED_MESSAGE, TEST_HMAC_SECRET)
        assert signature == expected_hash(DOCUMENTED_MESSAGE)
        assert len(signature) == 128


class TestCheckSignature:
    def test_valid(self):
        callback = documented_callback(signatureHash=expected_hash(DOCUMENTED_MESSAGE))
        assert check_signature(callback, TEST_HMAC_SECRET) == SignatureVerdict.VALID

    def test_valid_is_case_insensitive(self):
        callback = documented_callback(
            signatureHash=expected_hash(DOCUMENTED_MESSAGE).upper()
        )
        assert check_signature(callback, TEST_HMAC_SECRET) == SignatureVerdict.VALID

    def test_tampered_amount_is_invalid(self):
        callback = documented_callback(
            Amount="1.00", signatureHash=expected_hash(DOCUMENTED_MESSAGE)
        )
        assert check_signature(callback, TEST_HMAC_SECRET) == SignatureVerdict.INVALID
        assert verify_signature(callback, TEST_HMAC_SECRET) is False

    def test_without_signature_not_applicable(self):
        callback = documented_callback()
        assert check_signature(callback, TEST_HMAC_SECRET) == SignatureVerdict.NOT_APPLICABLE
        assert verify_signature(callback, TEST_HMAC_SECRET) is True

    @pytest.mark.parametrize("missing", ["ProductCode", "ProductType"])
    def test_alternate_format_not_applicable(self, missing):
        callback = documented_callback(**{missing: None, "signatureHash": "deadbeef"})
        assert check_signature(callback, TEST_HMAC_SECRET) == SignatureVerdict.NOT_APPLICABLE

    def test_no_secret_configured(self):
        callback = documented_callback(signatureHash="deadbeef")
        assert check_signature(callback, None) == SignatureVerdict.NOT_APPLICABLE
