"""Translation from gateway payment statuses to local order/payment statuses.

Gateway vocabulary: approved | pending | in_process | rejected | cancelled |
refunded | charged_back. The mapping is total: anything not approved or still
in flight is treated as a failed payment.
"""
from typing import NamedTuple, Optional

from models.order import OrderStatus, PaymentStatus


class StatusPair(NamedTuple):
    order_status: OrderStatus
    payment_status: PaymentStatus


APPROVED = StatusPair(OrderStatus.CONFIRMED, PaymentStatus.PAID)
IN_FLIGHT = StatusPair(OrderStatus.PENDING, PaymentStatus.PENDING)
FAILED = StatusPair(OrderStatus.CANCELLED, PaymentStatus.FAILED)

_GATEWAY_STATUS_MAP = {
    "approved": APPROVED,
    "pending": IN_FLIGHT,
    "in_process": IN_FLIGHT,
}


def map_gateway_status(gateway_status: Optional[str]) -> StatusPair:
    if not isinstance(gateway_status, str):
        return FAILED
    return _GATEWAY_STATUS_MAP.get(gateway_status, FAILED)


def is_regression(current_payment_status: str, new_payment_status: str) -> bool:
    """A settled payment never goes back to PENDING."""
    return (
        new_payment_status == PaymentStatus.PENDING.value
        and current_payment_status != PaymentStatus.PENDING.value
    )
