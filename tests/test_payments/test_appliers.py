"""
Test suite for the payment apply strategies.

The transactional and sequential strategies run against the in-memory SQLite
schema. The stored procedure strategy is PostgreSQL-only, so its result and
error mapping are exercised with a stand-in session.
"""

import json
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from schoolphotos.database.models import Order, PaymentRecord
from schoolphotos.services.orders.enums import OrderStatus
from schoolphotos.services.orders.repository import OrderNotFoundError
from schoolphotos.services.payments.appliers import (
    ApplierConfigurationError,
    DuplicateNotification,
    PaymentApplyError,
    PaymentUpdate,
    SequentialApplier,
    StoredProcedureApplier,
    TransactionalApplier,
    select_applier,
)
from schoolphotos.services.payments.repository import PaymentRepository

APPLIERS = [TransactionalApplier, SequentialApplier]


def _update(order_id: uuid.UUID, status: str = "approved", payment_id: str = "pay-1001"):
    return PaymentUpdate(
        gateway_payment_id=payment_id,
        order_id=order_id,
        gateway_status=status,
        gateway_status_detail="accredited" if status == "approved" else None,
        amount_cents=3000,
        raw_payload={"id": payment_id, "status": status},
    )


async def _load(session_factory, order_id):
    async with session_factory() as session:
        order = await session.get(Order, order_id)
        records = (
            (
                await session.execute(
                    select(PaymentRecord).where(PaymentRecord.order_id == order_id)
                )
            )
            .scalars()
            .all()
        )
    return order, records


async def _record_count(session_factory) -> int:
    async with session_factory() as session:
        return (
            await session.execute(select(func.count()).select_from(PaymentRecord))
        ).scalar_one()


# ============================================================================
# Shared behaviour of the SQL strategies
# ============================================================================


@pytest.mark.parametrize("applier_class", APPLIERS)
class TestApplyPayment:
    async def test_approves_pending_order(self, applier_class, session_factory, make_order):
        order = await make_order()
        applier = applier_class(session_factory)

        result = await applier.apply(_update(order.id))

        assert result.accepted
        assert result.summary == "pending → approved"

        stored, records = await _load(session_factory, order.id)
        assert stored.status == OrderStatus.APPROVED
        assert stored.approved_at is not None
        assert stored.gateway_payment_id == "pay-1001"
        assert stored.gateway_status == "approved"
        assert stored.gateway_status_detail == "accredited"
        assert len(records) == 1
        assert records[0].amount_cents == 3000
        assert records[0].raw_webhook_payload == {"id": "pay-1001", "status": "approved"}
        assert records[0].is_order_synced

    async def test_rejected_payment_fails_order(
        self, applier_class, session_factory, make_order
    ):
        order = await make_order()

        result = await applier_class(session_factory).apply(_update(order.id, "rejected"))

        assert result.summary == "pending → failed"
        stored, _ = await _load(session_factory, order.id)
        assert stored.status == OrderStatus.FAILED
        assert stored.approved_at is None

    async def test_second_insert_is_duplicate(
        self, applier_class, session_factory, make_order
    ):
        order = await make_order()
        applier = applier_class(session_factory)
        await applier.apply(_update(order.id))

        with pytest.raises(DuplicateNotification) as exc_info:
            await applier.apply(_update(order.id))

        assert exc_info.value.gateway_payment_id == "pay-1001"
        assert await _record_count(session_factory) == 1

    async def test_missing_order_writes_nothing(self, applier_class, session_factory, catalog):
        with pytest.raises(OrderNotFoundError):
            await applier_class(session_factory).apply(_update(uuid.uuid4()))

        assert await _record_count(session_factory) == 0

    async def test_stale_payment_for_settled_order_is_a_warning(
        self, applier_class, session_factory, make_order
    ):
        order = await make_order(status=OrderStatus.APPROVED, gateway_payment_id="pay-1")
        applier = applier_class(session_factory)

        with patch("schoolphotos.services.payments.appliers.logger") as logger:
            result = await applier.apply(_update(order.id, "cancelled", "pay-2"))

        assert not result.accepted
        assert result.summary == "approved → approved"
        logger.warning.assert_called_once()
        logger.error.assert_not_called()

        stored, records = await _load(session_factory, order.id)
        assert stored.status == OrderStatus.APPROVED
        assert stored.gateway_payment_id == "pay-1"
        assert [r.gateway_payment_id for r in records] == ["pay-2"]

    async def test_settling_payment_reversal_alerts(
        self, applier_class, session_factory, make_order
    ):
        order = await make_order(
            status=OrderStatus.APPROVED, gateway_payment_id="pay-1001"
        )
        applier = applier_class(session_factory)

        with patch("schoolphotos.services.payments.appliers.logger") as logger:
            result = await applier.apply(_update(order.id, "charged_back"))

        assert not result.accepted
        assert logger.error.call_args.kwargs["alert"] is True

        stored, _ = await _load(session_factory, order.id)
        assert stored.status == OrderStatus.APPROVED

    async def test_approval_for_failed_order_alerts(
        self, applier_class, session_factory, make_order
    ):
        order = await make_order(status=OrderStatus.FAILED, gateway_payment_id="pay-1")
        applier = applier_class(session_factory)

        with patch("schoolphotos.services.payments.appliers.logger") as logger:
            result = await applier.apply(_update(order.id, "approved", "pay-2"))

        assert result.summary == "failed → failed"
        assert logger.error.call_args.kwargs["alert"] is True

    async def test_refresh_updates_existing_record(
        self, applier_class, session_factory, make_order
    ):
        order = await make_order()
        applier = applier_class(session_factory)
        first = await applier.apply(_update(order.id, "in_process"))
        assert first.summary == "pending → pending"

        _, records = await _load(session_factory, order.id)
        result = await applier.apply(_update(order.id, "approved"), existing=records[0])

        assert result.summary == "pending → approved"
        stored, records = await _load(session_factory, order.id)
        assert stored.status == OrderStatus.APPROVED
        assert len(records) == 1
        assert records[0].gateway_status == "approved"
        assert records[0].is_order_synced


# ============================================================================
# Sequential strategy crash recovery
# ============================================================================


class TestSequentialRecovery:
    async def test_failed_order_update_leaves_unsynced_record(
        self, session_factory, make_order
    ):
        order = await make_order()
        applier = SequentialApplier(session_factory)

        with patch.object(
            applier,
            "_update_order",
            AsyncMock(side_effect=OperationalError("UPDATE orders", {}, Exception("gone"))),
        ):
            with pytest.raises(PaymentApplyError):
                await applier.apply(_update(order.id))

        stored, records = await _load(session_factory, order.id)
        assert stored.status == OrderStatus.PENDING
        assert len(records) == 1
        assert not records[0].is_order_synced

    async def test_resume_completes_order_update(self, session_factory, make_order):
        order = await make_order()
        async with session_factory() as session:
            await PaymentRepository(session).add_record(
                gateway_payment_id="pay-1001",
                order_id=order.id,
                gateway_status="approved",
                gateway_status_detail="accredited",
                amount_cents=3000,
                raw_webhook_payload=None,
                order_synced_at=None,
            )
            await session.commit()
        _, records = await _load(session_factory, order.id)

        result = await SequentialApplier(session_factory).resume(records[0])

        assert result.summary == "pending → approved"
        stored, records = await _load(session_factory, order.id)
        assert stored.status == OrderStatus.APPROVED
        assert records[0].is_order_synced

    async def test_resume_is_idempotent(self, session_factory, make_order):
        order = await make_order()
        applier = SequentialApplier(session_factory)
        await applier.apply(_update(order.id))
        _, records = await _load(session_factory, order.id)

        result = await applier.resume(records[0])

        assert result.summary == "approved → approved"
        stored, _ = await _load(session_factory, order.id)
        assert stored.status == OrderStatus.APPROVED


# ============================================================================
# Stored procedure strategy
# ============================================================================


class _StandInSession:
    """Async session stand-in whose execute is an AsyncMock."""

    def __init__(self, execute: AsyncMock):
        self.execute = execute

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def begin(self):
        return self


def _procedure_applier(execute: AsyncMock) -> StoredProcedureApplier:
    return StoredProcedureApplier(lambda: _StandInSession(execute))


class TestStoredProcedureApplier:
    async def test_maps_procedure_row(self):
        result_proxy = Mock()
        result_proxy.one.return_value = SimpleNamespace(
            previous_status="pending",
            new_status="approved",
            accepted=True,
            order_payment_id=None,
        )
        execute = AsyncMock(return_value=result_proxy)
        order_id = uuid.uuid4()

        result = await _procedure_applier(execute).apply(_update(order_id))

        assert result.summary == "pending → approved"
        params = execute.await_args.args[1]
        assert params["order_id"] == order_id
        assert params["target_status"] == "approved"
        assert params["is_refresh"] is False
        assert json.loads(params["payload"]) == {"id": "pay-1001", "status": "approved"}

    async def test_refresh_flag(self):
        result_proxy = Mock()
        result_proxy.one.return_value = SimpleNamespace(
            previous_status="pending",
            new_status="pending",
            accepted=True,
            order_payment_id=None,
        )
        execute = AsyncMock(return_value=result_proxy)

        await _procedure_applier(execute).apply(
            _update(uuid.uuid4(), "in_process"), existing=Mock(spec=PaymentRecord)
        )

        assert execute.await_args.args[1]["is_refresh"] is True

    @pytest.mark.parametrize(
        "order_payment_id,alerts",
        [("pay-1001", True), ("pay-0999", False)],
    )
    async def test_rejected_transition_is_reported(self, order_payment_id, alerts):
        result_proxy = Mock()
        result_proxy.one.return_value = SimpleNamespace(
            previous_status="delivered",
            new_status="delivered",
            accepted=False,
            order_payment_id=order_payment_id,
        )

        with patch("schoolphotos.services.payments.appliers.logger") as logger:
            result = await _procedure_applier(
                AsyncMock(return_value=result_proxy)
            ).apply(_update(uuid.uuid4(), "refunded"))

        assert not result.accepted
        assert result.new_status == OrderStatus.DELIVERED
        assert logger.error.called is alerts
        assert logger.warning.called is not alerts

    async def test_unique_violation_is_duplicate(self):
        execute = AsyncMock(
            side_effect=IntegrityError("SELECT", {}, Exception("duplicate key"))
        )

        with pytest.raises(DuplicateNotification):
            await _procedure_applier(execute).apply(_update(uuid.uuid4()))

    async def test_missing_order_sqlstate(self):
        orig = Exception("order not found")
        orig.sqlstate = "P0002"
        execute = AsyncMock(side_effect=DBAPIError("SELECT", {}, orig))

        with pytest.raises(OrderNotFoundError):
            await _procedure_applier(execute).apply(_update(uuid.uuid4()))

    async def test_other_database_errors_are_retryable(self):
        orig = Exception("connection reset")
        orig.sqlstate = "08006"
        execute = AsyncMock(side_effect=DBAPIError("SELECT", {}, orig))

        with pytest.raises(PaymentApplyError):
            await _procedure_applier(execute).apply(_update(uuid.uuid4()))


# ============================================================================
# Strategy selection
# ============================================================================


class TestSelectApplier:
    @pytest.mark.parametrize(
        "strategy,expected",
        [
            ("transaction", TransactionalApplier),
            ("sequential", SequentialApplier),
            ("auto", TransactionalApplier),
        ],
    )
    async def test_selection_on_sqlite(self, engine, session_factory, strategy, expected):
        applier = await select_applier(strategy, engine, session_factory)

        assert type(applier) is expected

    async def test_procedure_requires_installed_function(self, engine, session_factory):
        with pytest.raises(ApplierConfigurationError):
            await select_applier("procedure", engine, session_factory)

    async def test_unknown_strategy(self, engine, session_factory):
        with pytest.raises(ApplierConfigurationError):
            await select_applier("optimistic", engine, session_factory)
