"""Gateway payment status vocabulary and its mapping to order status.

Every known gateway status maps to exactly one of approved, pending or
failed. Unknown statuses map to pending so an unrecognised value can never
approve an order.
"""

from enum import Enum
from typing import Dict, Optional

from schoolphotos.services.orders.enums import OrderStatus


class GatewayPaymentStatus(str, Enum):
    """Payment statuses reported by the payment gateway."""

    APPROVED = "approved"
    PENDING = "pending"
    IN_PROCESS = "in_process"
    IN_MEDIATION = "in_mediation"
    AUTHORIZED = "authorized"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    CHARGED_BACK = "charged_back"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["GatewayPaymentStatus"]:
        """Return the matching status, or None for unknown values."""
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


GATEWAY_STATUS_MAPPING: Dict[GatewayPaymentStatus, OrderStatus] = {
    GatewayPaymentStatus.APPROVED: OrderStatus.APPROVED,
    GatewayPaymentStatus.PENDING: OrderStatus.PENDING,
    GatewayPaymentStatus.IN_PROCESS: OrderStatus.PENDING,
    GatewayPaymentStatus.IN_MEDIATION: OrderStatus.PENDING,
    GatewayPaymentStatus.AUTHORIZED: OrderStatus.PENDING,
    GatewayPaymentStatus.REJECTED: OrderStatus.FAILED,
    GatewayPaymentStatus.CANCELLED: OrderStatus.FAILED,
    GatewayPaymentStatus.REFUNDED: OrderStatus.FAILED,
    GatewayPaymentStatus.CHARGED_BACK: OrderStatus.FAILED,
}


def map_gateway_status(value: Optional[str]) -> OrderStatus:
    """Map a raw gateway status string to an order status."""
    status = GatewayPaymentStatus.parse(value)
    if status is None:
        return OrderStatus.PENDING
    return GATEWAY_STATUS_MAPPING[status]
