"""
Order status transition rules.

Orders move forward only (pending, confirmed, shipped, delivered) and may
be cancelled from any non-terminal status. Forward moves may skip steps so
an operator can record a pay-on-delivery order as delivered directly.
"""

from typing import Dict, Set

from orderflow.database.models.order import OrderStatus

ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {
        OrderStatus.CONFIRMED,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.CONFIRMED: {
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.SHIPPED: {
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}


def validate_order_status_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """
    Check whether an order may move from current to new.

    Args:
        current: Current order status
        new: Requested status

    Returns:
        True if the transition is allowed
    """
    return new in ORDER_STATUS_TRANSITIONS.get(current, set())


def get_allowed_order_transitions(current: OrderStatus) -> Set[OrderStatus]:
    return ORDER_STATUS_TRANSITIONS.get(current, set()).copy()
