"""Order state machine implementation with transition validation.

This module implements the OrderStateMachine class for managing the order
lifecycle (pending -> approved | failed -> delivered). Payment reconciliation
and administrative actions are the only two sources of transitions and each
may only perform its own subset of moves. The state machine mutates the order
in memory; persisting the change is the caller's job so that it can happen in
the same transaction as the related payment record.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from schoolphotos.core.logging import get_logger
from schoolphotos.services.orders.enums import (
    SOURCE_TRANSITIONS,
    OrderStatus,
    TransitionSource,
    get_allowed_order_transitions,
    validate_order_status_transition,
)

logger = get_logger(__name__)


class StateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(
        self,
        message: str,
        current_state: OrderStatus,
        target_state: OrderStatus,
        **context: Any
    ):
        super().__init__(message)
        self.current_state = current_state
        self.target_state = target_state
        self.context = context


@dataclass(frozen=True)
class TransitionPlan:
    """Outcome of checking a reconciliation result against an order.

    Attributes:
        current: Status the order has now
        target: Status the payment maps to
        accepted: False when applying target would regress a settled order
    """

    current: OrderStatus
    target: OrderStatus
    accepted: bool

    @property
    def changes_status(self) -> bool:
        return self.accepted and self.current != self.target

    @property
    def resulting_status(self) -> OrderStatus:
        return self.target if self.accepted else self.current

    @property
    def summary(self) -> str:
        return f"{self.current.value} → {self.resulting_status.value}"


class OrderStateMachine:
    """State machine for managing order lifecycle transitions.

    Handles order status transitions with validation, guards, and side effects.
    """

    def __init__(self) -> None:
        self._transition_guards: Dict[
            Tuple[OrderStatus, OrderStatus],
            Callable[[Any], bool]
        ] = self._initialize_guards()
        self._side_effects: Dict[
            OrderStatus,
            Callable[[Any], None]
        ] = self._initialize_side_effects()

    def _initialize_guards(
        self
    ) -> Dict[Tuple[OrderStatus, OrderStatus], Callable[[Any], bool]]:
        """Initialize transition guard functions.

        Returns:
            Dictionary mapping state transitions to guard functions
        """
        return {
            (OrderStatus.APPROVED, OrderStatus.DELIVERED): (
                self._guard_delivery_allowed
            ),
        }

    def _initialize_side_effects(
        self
    ) -> Dict[OrderStatus, Callable[[Any], None]]:
        """Initialize side effect handlers for state transitions.

        Returns:
            Dictionary mapping target states to side effect functions
        """
        return {
            OrderStatus.APPROVED: self._effect_approved,
            OrderStatus.DELIVERED: self._effect_delivered,
        }

    def validate_transition(
        self,
        order: Any,
        target_status: OrderStatus,
        source: TransitionSource,
    ) -> bool:
        """Validate if transition to target status is allowed.

        Args:
            order: Order instance to validate
            target_status: Desired target status
            source: Party requesting the transition

        Returns:
            True if transition is valid

        Raises:
            StateTransitionError: If transition is invalid
        """
        current_status = order.status

        if not validate_order_status_transition(current_status, target_status):
            allowed = get_allowed_order_transitions(current_status)
            raise StateTransitionError(
                f"Invalid transition from {current_status.value} to "
                f"{target_status.value}",
                current_state=current_status,
                target_state=target_status,
                allowed_transitions=sorted(s.value for s in allowed),
            )

        if (current_status, target_status) not in SOURCE_TRANSITIONS[source]:
            raise StateTransitionError(
                f"Transition from {current_status.value} to "
                f"{target_status.value} is not permitted for {source.value}",
                current_state=current_status,
                target_state=target_status,
                source=source.value,
            )

        guard_key = (current_status, target_status)
        if guard_key in self._transition_guards:
            guard_func = self._transition_guards[guard_key]
            if not guard_func(order):
                raise StateTransitionError(
                    f"Transition guard failed for {current_status.value} -> "
                    f"{target_status.value}",
                    current_state=current_status,
                    target_state=target_status,
                    guard_failed=True,
                )

        return True

    def apply_transition(
        self,
        order: Any,
        target_status: OrderStatus,
        source: TransitionSource,
    ) -> OrderStatus:
        """Apply state transition to order with side effects.

        Args:
            order: Order instance to transition
            target_status: Target status to transition to
            source: Party requesting the transition

        Returns:
            The status the order had before the transition

        Raises:
            StateTransitionError: If transition is invalid
        """
        self.validate_transition(order, target_status, source)

        old_status = order.status
        order.status = target_status

        if target_status in self._side_effects:
            self._side_effects[target_status](order)

        logger.info(
            "State transition applied",
            order_id=str(order.id),
            transition=f"{old_status.value}->{target_status.value}",
            source=source.value,
        )

        return old_status

    def plan_reconciliation(
        self,
        current: OrderStatus,
        target: OrderStatus,
    ) -> TransitionPlan:
        """Decide whether a reconciled payment status may be applied.

        Re-delivery of the current status is accepted as a no-op. Moves that
        the reconciliation source is not allowed to make (any regression of a
        settled order) come back with ``accepted=False`` instead of raising;
        the caller still records the payment.
        """
        if current == target:
            return TransitionPlan(current=current, target=target, accepted=True)

        accepted = (current, target) in SOURCE_TRANSITIONS[
            TransitionSource.RECONCILIATION
        ]
        return TransitionPlan(current=current, target=target, accepted=accepted)

    # Transition Guards

    def _guard_delivery_allowed(self, order: Any) -> bool:
        """Only orders with a recorded approval can be delivered."""
        return order.approved_at is not None

    # Side Effects

    def _effect_approved(self, order: Any) -> None:
        order.approved_at = _utcnow()

    def _effect_delivered(self, order: Any) -> None:
        order.delivered_at = _utcnow()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_state_machine: Optional[OrderStateMachine] = None


def get_order_state_machine() -> OrderStateMachine:
    """Factory function returning the shared OrderStateMachine instance.

    The state machine holds no per-order state, so one instance is reused.
    """
    global _state_machine
    if _state_machine is None:
        _state_machine = OrderStateMachine()
    return _state_machine
