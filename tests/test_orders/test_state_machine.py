"""
Test suite for OrderStateMachine.

Tests cover per-source transitions, the delivery guard, side effects and
the non-raising reconciliation plan used when applying payments.
"""

from datetime import datetime, timezone
from unittest.mock import Mock
from uuid import uuid4

import pytest

from schoolphotos.services.orders.enums import OrderStatus, TransitionSource
from schoolphotos.services.orders.state_machine import (
    OrderStateMachine,
    StateTransitionError,
    get_order_state_machine,
)


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def state_machine() -> OrderStateMachine:
    return OrderStateMachine()


@pytest.fixture
def mock_order() -> Mock:
    """Create mock order in the pending state.

    Returns:
        Mock order instance with lifecycle timestamps unset
    """
    order = Mock()
    order.id = uuid4()
    order.status = OrderStatus.PENDING
    order.approved_at = None
    order.delivered_at = None
    return order


# ============================================================================
# Reconciliation transitions
# ============================================================================


class TestReconciliationTransitions:
    def test_pending_to_approved_sets_approved_at(self, state_machine, mock_order):
        previous = state_machine.apply_transition(
            mock_order, OrderStatus.APPROVED, TransitionSource.RECONCILIATION
        )

        assert previous == OrderStatus.PENDING
        assert mock_order.status == OrderStatus.APPROVED
        assert isinstance(mock_order.approved_at, datetime)

    def test_pending_to_failed(self, state_machine, mock_order):
        state_machine.apply_transition(
            mock_order, OrderStatus.FAILED, TransitionSource.RECONCILIATION
        )

        assert mock_order.status == OrderStatus.FAILED
        assert mock_order.approved_at is None

    def test_reconciliation_cannot_deliver(self, state_machine, mock_order):
        mock_order.status = OrderStatus.APPROVED
        mock_order.approved_at = datetime.now(timezone.utc)

        with pytest.raises(StateTransitionError) as exc_info:
            state_machine.apply_transition(
                mock_order, OrderStatus.DELIVERED, TransitionSource.RECONCILIATION
            )

        assert exc_info.value.context["source"] == "reconciliation"
        assert mock_order.status == OrderStatus.APPROVED

    def test_failed_cannot_return_to_pending(self, state_machine, mock_order):
        mock_order.status = OrderStatus.FAILED

        with pytest.raises(StateTransitionError):
            state_machine.apply_transition(
                mock_order, OrderStatus.PENDING, TransitionSource.RECONCILIATION
            )


# ============================================================================
# Administrative transitions
# ============================================================================


class TestAdminTransitions:
    def test_approved_to_delivered(self, state_machine, mock_order):
        mock_order.status = OrderStatus.APPROVED
        mock_order.approved_at = datetime.now(timezone.utc)

        state_machine.apply_transition(
            mock_order, OrderStatus.DELIVERED, TransitionSource.ADMIN
        )

        assert mock_order.status == OrderStatus.DELIVERED
        assert isinstance(mock_order.delivered_at, datetime)

    def test_delivery_requires_recorded_approval(self, state_machine, mock_order):
        mock_order.status = OrderStatus.APPROVED
        mock_order.approved_at = None

        with pytest.raises(StateTransitionError) as exc_info:
            state_machine.apply_transition(
                mock_order, OrderStatus.DELIVERED, TransitionSource.ADMIN
            )

        assert exc_info.value.context["guard_failed"] is True

    def test_admin_cannot_approve(self, state_machine, mock_order):
        with pytest.raises(StateTransitionError):
            state_machine.apply_transition(
                mock_order, OrderStatus.APPROVED, TransitionSource.ADMIN
            )

        assert mock_order.status == OrderStatus.PENDING

    @pytest.mark.parametrize(
        "target",
        [OrderStatus.PENDING, OrderStatus.APPROVED, OrderStatus.FAILED],
    )
    def test_delivered_is_terminal(self, state_machine, mock_order, target):
        mock_order.status = OrderStatus.DELIVERED

        with pytest.raises(StateTransitionError) as exc_info:
            state_machine.apply_transition(mock_order, target, TransitionSource.ADMIN)

        assert exc_info.value.current_state == OrderStatus.DELIVERED
        assert exc_info.value.context["allowed_transitions"] == []


# ============================================================================
# Reconciliation planning
# ============================================================================


class TestPlanReconciliation:
    def test_pending_to_approved_is_accepted(self, state_machine):
        plan = state_machine.plan_reconciliation(
            OrderStatus.PENDING, OrderStatus.APPROVED
        )

        assert plan.accepted
        assert plan.changes_status
        assert plan.summary == "pending → approved"

    def test_same_status_is_accepted_without_change(self, state_machine):
        plan = state_machine.plan_reconciliation(
            OrderStatus.APPROVED, OrderStatus.APPROVED
        )

        assert plan.accepted
        assert not plan.changes_status
        assert plan.summary == "approved → approved"

    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.APPROVED, OrderStatus.FAILED),
            (OrderStatus.APPROVED, OrderStatus.PENDING),
            (OrderStatus.FAILED, OrderStatus.APPROVED),
            (OrderStatus.DELIVERED, OrderStatus.FAILED),
        ],
    )
    def test_regressions_are_rejected(self, state_machine, current, target):
        plan = state_machine.plan_reconciliation(current, target)

        assert not plan.accepted
        assert not plan.changes_status
        assert plan.resulting_status == current


def test_shared_instance():
    assert get_order_state_machine() is get_order_state_machine()
