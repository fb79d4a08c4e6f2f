"""Order status and transition enums for the order lifecycle.

This module defines the order status vocabulary, the parties allowed to move
an order between states, and the transition tables used by the order state
machine.
"""

from enum import Enum
from typing import Dict, Set, Tuple


class OrderStatus(str, Enum):
    """Order lifecycle status.

    Valid transitions:
    - PENDING -> APPROVED, FAILED (payment reconciliation)
    - APPROVED -> DELIVERED (administrative action)
    - FAILED -> (terminal state; a new order must be created)
    - DELIVERED -> (terminal state)
    """

    PENDING = "pending"
    APPROVED = "approved"
    FAILED = "failed"
    DELIVERED = "delivered"


class TransitionSource(str, Enum):
    """Party requesting an order status change."""

    RECONCILIATION = "reconciliation"
    ADMIN = "admin"


# State transition validation rules
ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {
        OrderStatus.APPROVED,
        OrderStatus.FAILED,
    },
    OrderStatus.APPROVED: {
        OrderStatus.DELIVERED,
    },
    OrderStatus.FAILED: set(),  # Terminal
    OrderStatus.DELIVERED: set(),  # Terminal
}

# Transitions each source may perform
SOURCE_TRANSITIONS: Dict[TransitionSource, Set[Tuple[OrderStatus, OrderStatus]]] = {
    TransitionSource.RECONCILIATION: {
        (OrderStatus.PENDING, OrderStatus.APPROVED),
        (OrderStatus.PENDING, OrderStatus.FAILED),
    },
    TransitionSource.ADMIN: {
        (OrderStatus.APPROVED, OrderStatus.DELIVERED),
    },
}


def validate_order_status_transition(
    current: OrderStatus,
    new: OrderStatus
) -> bool:
    """Validate if order status transition is allowed.

    Args:
        current: Current order status
        new: Desired new status

    Returns:
        True if transition is valid
    """
    return new in ORDER_STATUS_TRANSITIONS.get(current, set())


def get_allowed_order_transitions(
    current: OrderStatus
) -> Set[OrderStatus]:
    """Get all allowed transitions from current order status.

    Args:
        current: Current order status

    Returns:
        Set of allowed next statuses
    """
    return ORDER_STATUS_TRANSITIONS.get(current, set()).copy()
