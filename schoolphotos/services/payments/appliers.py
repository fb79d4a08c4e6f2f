"""
Payment apply strategies.

A reconciled payment produces two writes: the PaymentRecord insert (the
idempotency key) and the Order status/gateway-field update. Three strategies
implement the same interface and one is selected at startup:

- ``procedure``: a single call to the ``process_payment_webhook`` PL/pgSQL
  function, which locks the order, inserts or refreshes the record and
  updates the order atomically.
- ``transaction``: both writes inside one SQLAlchemy transaction.
- ``sequential``: the record is committed first with ``order_synced_at``
  unset, then the order update is committed, then the record is marked
  synced. A crash in between leaves a record the next delivery recognises,
  and the order update is re-applied from it.

Every strategy loads the order before writing the record, so an integrity
error on the record insert can only mean another writer recorded the same
gateway payment id first.
"""

import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import text, update
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from schoolphotos.core.logging import get_logger, mask_identifier
from schoolphotos.database.models.order import Order
from schoolphotos.database.models.payment import PaymentRecord
from schoolphotos.services.orders.enums import OrderStatus, TransitionSource
from schoolphotos.services.orders.repository import OrderNotFoundError
from schoolphotos.services.orders.state_machine import (
    OrderStateMachine,
    TransitionPlan,
    get_order_state_machine,
)
from schoolphotos.services.payments.enums import map_gateway_status
from schoolphotos.services.payments.repository import (
    DuplicatePaymentError,
    PaymentRepository,
)

logger = get_logger(__name__)

PROCEDURE_NAME = "process_payment_webhook"
ORDER_NOT_FOUND_SQLSTATE = "P0002"


class PaymentApplyError(Exception):
    """Raised when a payment cannot be persisted; safe to retry."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class DuplicateNotification(Exception):
    """Raised when another writer already recorded the gateway payment."""

    def __init__(self, gateway_payment_id: str):
        super().__init__("Payment already recorded")
        self.gateway_payment_id = gateway_payment_id


class ApplierConfigurationError(Exception):
    """Raised at startup when the requested strategy cannot be used."""

    pass


@dataclass(frozen=True)
class PaymentUpdate:
    """Everything needed to record a payment and update its order."""

    gateway_payment_id: str
    order_id: uuid.UUID
    gateway_status: str
    gateway_status_detail: Optional[str]
    amount_cents: int
    raw_payload: Optional[dict[str, Any]] = field(default=None, compare=False)

    @property
    def target_status(self) -> OrderStatus:
        return map_gateway_status(self.gateway_status)

    @classmethod
    def from_record(cls, record: PaymentRecord) -> "PaymentUpdate":
        return cls(
            gateway_payment_id=record.gateway_payment_id,
            order_id=record.order_id,
            gateway_status=record.gateway_status,
            gateway_status_detail=record.gateway_status_detail,
            amount_cents=record.amount_cents,
            raw_payload=record.raw_webhook_payload,
        )


@dataclass(frozen=True)
class ApplyResult:
    previous_status: OrderStatus
    new_status: OrderStatus
    accepted: bool

    @property
    def summary(self) -> str:
        return f"{self.previous_status.value} → {self.new_status.value}"

    @classmethod
    def from_plan(cls, plan: TransitionPlan) -> "ApplyResult":
        return cls(
            previous_status=plan.current,
            new_status=plan.resulting_status,
            accepted=plan.accepted,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _log_rejected(
    update_: PaymentUpdate,
    plan: TransitionPlan,
    order_payment_id: Optional[str],
) -> None:
    # Alert only where money and order state disagree.
    needs_operator = order_payment_id == update_.gateway_payment_id or (
        plan.current == OrderStatus.FAILED and plan.target == OrderStatus.APPROVED
    )
    if not needs_operator:
        logger.warning(
            "Ignoring stale payment for settled order",
            order_id=mask_identifier(update_.order_id, "ord"),
            payment_id=mask_identifier(update_.gateway_payment_id, "pay"),
            current_status=plan.current.value,
            gateway_status=update_.gateway_status,
        )
        return

    logger.error(
        "Payment status would regress settled order",
        alert=True,
        order_id=mask_identifier(update_.order_id, "ord"),
        payment_id=mask_identifier(update_.gateway_payment_id, "pay"),
        current_status=plan.current.value,
        gateway_status=update_.gateway_status,
    )


class PaymentApplier(ABC):
    """Records a reconciled payment and applies it to its order."""

    name: str = "abstract"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        state_machine: Optional[OrderStateMachine] = None,
    ):
        self.session_factory = session_factory
        self.state_machine = state_machine or get_order_state_machine()

    @abstractmethod
    async def apply(
        self,
        update_: PaymentUpdate,
        existing: Optional[PaymentRecord] = None,
    ) -> ApplyResult:
        """
        Record the payment and update the order.

        Args:
            update_: Reconciled payment data
            existing: Record being refreshed, or None to insert a new one

        Raises:
            OrderNotFoundError: If the order does not exist
            DuplicateNotification: If another writer recorded the payment
            PaymentApplyError: If persistence fails
        """

    async def resume(self, record: PaymentRecord) -> ApplyResult:
        """
        Re-apply the order update for a record whose sync never completed.

        Raises:
            OrderNotFoundError: If the order does not exist
            PaymentApplyError: If persistence fails
        """
        update_ = PaymentUpdate.from_record(record)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await self._update_order(session, update_)
                    await self._mark_synced(session, update_.gateway_payment_id)
            return result
        except SQLAlchemyError as e:
            raise PaymentApplyError(
                "Failed to resume order update",
                payment_id=mask_identifier(update_.gateway_payment_id, "pay"),
                error=str(e),
            ) from e

    async def _load_order(
        self, session: AsyncSession, order_id: uuid.UUID
    ) -> Order:
        order = await session.get(Order, order_id, with_for_update=True)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        return order

    async def _update_order(
        self, session: AsyncSession, update_: PaymentUpdate
    ) -> ApplyResult:
        order = await self._load_order(session, update_.order_id)
        plan = self.state_machine.plan_reconciliation(
            order.status, update_.target_status
        )

        if not plan.accepted:
            _log_rejected(update_, plan, order.gateway_payment_id)
            return ApplyResult.from_plan(plan)

        if plan.changes_status:
            self.state_machine.apply_transition(
                order, update_.target_status, TransitionSource.RECONCILIATION
            )
        order.gateway_payment_id = update_.gateway_payment_id
        order.gateway_status = update_.gateway_status
        order.gateway_status_detail = update_.gateway_status_detail
        await session.flush()
        return ApplyResult.from_plan(plan)

    async def _refresh_record(
        self,
        session: AsyncSession,
        update_: PaymentUpdate,
        order_synced_at: Optional[datetime],
    ) -> None:
        await session.execute(
            update(PaymentRecord)
            .where(PaymentRecord.gateway_payment_id == update_.gateway_payment_id)
            .values(
                gateway_status=update_.gateway_status,
                gateway_status_detail=update_.gateway_status_detail,
                amount_cents=update_.amount_cents,
                raw_webhook_payload=update_.raw_payload,
                processed_at=_utcnow(),
                order_synced_at=order_synced_at,
            )
        )

    async def _mark_synced(
        self, session: AsyncSession, gateway_payment_id: str
    ) -> None:
        await session.execute(
            update(PaymentRecord)
            .where(PaymentRecord.gateway_payment_id == gateway_payment_id)
            .values(order_synced_at=_utcnow())
        )


class TransactionalApplier(PaymentApplier):
    """Writes the record and the order update in one transaction."""

    name = "transaction"

    async def apply(
        self,
        update_: PaymentUpdate,
        existing: Optional[PaymentRecord] = None,
    ) -> ApplyResult:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await self._load_order(session, update_.order_id)
                    if existing is None:
                        await PaymentRepository(session).add_record(
                            gateway_payment_id=update_.gateway_payment_id,
                            order_id=update_.order_id,
                            gateway_status=update_.gateway_status,
                            gateway_status_detail=update_.gateway_status_detail,
                            amount_cents=update_.amount_cents,
                            raw_webhook_payload=update_.raw_payload,
                            order_synced_at=_utcnow(),
                        )
                    else:
                        await self._refresh_record(session, update_, _utcnow())
                    return await self._update_order(session, update_)
        except (DuplicatePaymentError, IntegrityError) as e:
            raise DuplicateNotification(update_.gateway_payment_id) from e
        except SQLAlchemyError as e:
            raise PaymentApplyError(
                "Failed to apply payment",
                payment_id=mask_identifier(update_.gateway_payment_id, "pay"),
                error=str(e),
            ) from e


class SequentialApplier(PaymentApplier):
    """
    Writes the record first, then the order, in separate commits.

    Each step is idempotent, so retrying after a crash between the steps
    converges on the same end state.
    """

    name = "sequential"

    async def apply(
        self,
        update_: PaymentUpdate,
        existing: Optional[PaymentRecord] = None,
    ) -> ApplyResult:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    order = await session.get(Order, update_.order_id)
                    if order is None:
                        raise OrderNotFoundError(
                            "Order not found", order_id=str(update_.order_id)
                        )
                    if existing is None:
                        await PaymentRepository(session).add_record(
                            gateway_payment_id=update_.gateway_payment_id,
                            order_id=update_.order_id,
                            gateway_status=update_.gateway_status,
                            gateway_status_detail=update_.gateway_status_detail,
                            amount_cents=update_.amount_cents,
                            raw_webhook_payload=update_.raw_payload,
                            order_synced_at=None,
                        )
                    else:
                        await self._refresh_record(session, update_, None)
        except (DuplicatePaymentError, IntegrityError) as e:
            raise DuplicateNotification(update_.gateway_payment_id) from e
        except SQLAlchemyError as e:
            raise PaymentApplyError(
                "Failed to record payment",
                payment_id=mask_identifier(update_.gateway_payment_id, "pay"),
                error=str(e),
            ) from e

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await self._update_order(session, update_)

            async with self.session_factory() as session:
                async with session.begin():
                    await self._mark_synced(session, update_.gateway_payment_id)
        except SQLAlchemyError as e:
            logger.warning(
                "Payment recorded but order update incomplete",
                payment_id=mask_identifier(update_.gateway_payment_id, "pay"),
                error=str(e),
            )
            raise PaymentApplyError(
                "Failed to update order after recording payment",
                payment_id=mask_identifier(update_.gateway_payment_id, "pay"),
                error=str(e),
            ) from e

        return result


class StoredProcedureApplier(PaymentApplier):
    """Delegates both writes to the ``process_payment_webhook`` function."""

    name = "procedure"

    async def apply(
        self,
        update_: PaymentUpdate,
        existing: Optional[PaymentRecord] = None,
    ) -> ApplyResult:
        statement = text(
            "SELECT previous_status, new_status, accepted, order_payment_id "
            f"FROM {PROCEDURE_NAME}("
            ":payment_id, :order_id, :status, :status_detail, :amount_cents, "
            "CAST(:payload AS jsonb), :target_status, :is_refresh)"
        )
        params = {
            "payment_id": update_.gateway_payment_id,
            "order_id": update_.order_id,
            "status": update_.gateway_status,
            "status_detail": update_.gateway_status_detail,
            "amount_cents": update_.amount_cents,
            "payload": json.dumps(update_.raw_payload) if update_.raw_payload is not None else None,
            "target_status": update_.target_status.value,
            "is_refresh": existing is not None,
        }

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    row = (await session.execute(statement, params)).one()
        except IntegrityError as e:
            raise DuplicateNotification(update_.gateway_payment_id) from e
        except DBAPIError as e:
            if _sqlstate(e) == ORDER_NOT_FOUND_SQLSTATE:
                raise OrderNotFoundError(
                    "Order not found", order_id=str(update_.order_id)
                ) from e
            raise PaymentApplyError(
                "Payment procedure failed",
                payment_id=mask_identifier(update_.gateway_payment_id, "pay"),
                error=str(e),
            ) from e
        except SQLAlchemyError as e:
            raise PaymentApplyError(
                "Payment procedure failed",
                payment_id=mask_identifier(update_.gateway_payment_id, "pay"),
                error=str(e),
            ) from e

        result = ApplyResult(
            previous_status=OrderStatus(row.previous_status),
            new_status=OrderStatus(row.new_status),
            accepted=bool(row.accepted),
        )
        if not result.accepted:
            _log_rejected(
                update_,
                TransitionPlan(
                    current=result.previous_status,
                    target=update_.target_status,
                    accepted=False,
                ),
                row.order_payment_id,
            )
        return result


def _sqlstate(error: DBAPIError) -> Optional[str]:
    orig = error.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


async def procedure_available(engine: AsyncEngine) -> bool:
    """Check whether the payment procedure is installed."""
    if engine.dialect.name != "postgresql":
        return False
    try:
        async with engine.connect() as conn:
            result = await conn.execute(
                text("SELECT 1 FROM pg_proc WHERE proname = :name"),
                {"name": PROCEDURE_NAME},
            )
            return result.first() is not None
    except SQLAlchemyError as e:
        logger.warning(
            "Could not probe for payment procedure",
            error=str(e),
            error_type=type(e).__name__,
        )
        return False


async def select_applier(
    strategy: str,
    engine: AsyncEngine,
    session_factory: async_sessionmaker[AsyncSession],
) -> PaymentApplier:
    """
    Choose the apply strategy once, at startup.

    ``auto`` uses the stored procedure when it is installed and a single
    transaction otherwise.

    Raises:
        ApplierConfigurationError: If ``procedure`` is requested but the
            function is not installed
    """
    if strategy == "transaction":
        applier: PaymentApplier = TransactionalApplier(session_factory)
    elif strategy == "sequential":
        applier = SequentialApplier(session_factory)
    elif strategy == "procedure":
        if not await procedure_available(engine):
            raise ApplierConfigurationError(
                f"Strategy 'procedure' requires the {PROCEDURE_NAME} function"
            )
        applier = StoredProcedureApplier(session_factory)
    elif strategy == "auto":
        if await procedure_available(engine):
            applier = StoredProcedureApplier(session_factory)
        else:
            applier = TransactionalApplier(session_factory)
    else:
        raise ApplierConfigurationError(f"Unknown apply strategy: {strategy}")

    logger.info(
        "Payment apply strategy selected",
        requested=strategy,
        selected=applier.name,
        dialect=engine.dialect.name,
    )
    return applier
