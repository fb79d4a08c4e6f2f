"""
Payment reconciliation engine.

Given a gateway payment id, the engine makes the local order reflect the
payment's authoritative gateway status exactly once:

1. Look up the PaymentRecord for the id before any external call. A synced
   record in a settled status is a duplicate delivery; an unsynced one has
   its order update re-applied; one still mapping to pending is refreshed.
2. Fetch the payment from the gateway and read its external reference.
3. Load the referenced order; a notification never creates one.
4. Skip the write if the order already carries this payment id.
5. Map the gateway status and hand the writes to the configured applier.

Errors are typed so that the retrier can tell transient failures (gateway
unavailable, order not yet visible, persistence errors) from terminal ones.
"""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schoolphotos.core.config import Settings, get_settings
from schoolphotos.core.logging import get_logger, log_performance, mask_identifier
from schoolphotos.core.retry import BackoffPolicy, retry_async
from schoolphotos.database.models.order import Order
from schoolphotos.database.models.payment import PaymentRecord
from schoolphotos.services.orders.enums import OrderStatus
from schoolphotos.services.orders.repository import OrderNotFoundError
from schoolphotos.services.payments.appliers import (
    DuplicateNotification,
    PaymentApplier,
    PaymentApplyError,
    PaymentUpdate,
)
from schoolphotos.services.payments.enums import map_gateway_status
from schoolphotos.services.payments.gateway_client import (
    GatewayError,
    GatewayUnavailable,
    MercadoPagoClient,
    PaymentDetails,
)
from schoolphotos.services.payments.repository import (
    PaymentRepository,
    PaymentRepositoryError,
)

logger = get_logger(__name__)


class ReconciliationError(Exception):
    """Raised when a payment cannot be reconciled."""

    def __init__(self, message: str, retryable: bool = True, **context):
        super().__init__(message)
        self.retryable = retryable
        self.context = context


RECONCILIATION_ERRORS = (
    ReconciliationError,
    GatewayError,
    OrderNotFoundError,
    PaymentApplyError,
    PaymentRepositoryError,
    asyncio.TimeoutError,
)


def is_retryable(error: Exception) -> bool:
    """Decide whether a reconciliation failure may succeed on a later attempt."""
    if isinstance(error, ReconciliationError):
        return error.retryable
    if isinstance(error, GatewayError):
        return isinstance(error, GatewayUnavailable)
    return isinstance(error, RECONCILIATION_ERRORS)


@dataclass(frozen=True)
class ReconcileResult:
    success: bool
    message: str
    duplicate: bool = False
    retryable: bool = False


class ReconciliationEngine:
    """
    Reconciles gateway payments against local orders.

    Attributes:
        session_factory: Factory for short-lived read sessions
        gateway_client: Payment gateway client for payment lookups
        applier: Strategy that writes the payment record and order update
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway_client: MercadoPagoClient,
        applier: PaymentApplier,
    ):
        self.session_factory = session_factory
        self.gateway_client = gateway_client
        self.applier = applier

    async def reconcile(
        self,
        gateway_payment_id: str,
        deadline: Optional[float] = None,
    ) -> ReconcileResult:
        """
        Reconcile one gateway payment.

        Args:
            gateway_payment_id: Gateway payment identifier
            deadline: Optional monotonic deadline for gateway retries

        Returns:
            Successful result with an ``old → new`` transition summary

        Raises:
            ReconciliationError: If the payment cannot be correlated to an order
            GatewayError: If the payment lookup fails
            OrderNotFoundError: If the referenced order does not exist
            PaymentApplyError: If persistence fails
            PaymentRepositoryError: If the idempotency lookup fails
        """
        masked_id = mask_identifier(gateway_payment_id, "pay")

        with log_performance(logger, "reconcile_payment", payment_id=masked_id):
            existing = await self._find_record(gateway_payment_id)

            if existing is not None:
                if not existing.is_order_synced:
                    result = await self.applier.resume(existing)
                    logger.info(
                        "Resumed interrupted order update",
                        payment_id=masked_id,
                        transition=result.summary,
                    )
                    return ReconcileResult(success=True, message=result.summary)

                if map_gateway_status(existing.gateway_status) != OrderStatus.PENDING:
                    logger.info("Duplicate notification ignored", payment_id=masked_id)
                    return ReconcileResult(
                        success=True,
                        message="Payment already processed",
                        duplicate=True,
                    )

            details = await self.gateway_client.get_payment(
                gateway_payment_id, deadline=deadline
            )
            order_id = self._order_id_from(details)

            if existing is not None and existing.gateway_status == details.status:
                logger.info(
                    "Pending payment unchanged",
                    payment_id=masked_id,
                    gateway_status=details.status,
                )
                return ReconcileResult(
                    success=True,
                    message="Payment status unchanged",
                    duplicate=True,
                )

            if existing is None:
                order = await self._load_order(order_id)
                if order.gateway_payment_id == gateway_payment_id:
                    logger.info(
                        "Order already carries payment",
                        payment_id=masked_id,
                        order_id=mask_identifier(order_id, "ord"),
                    )
                    return ReconcileResult(
                        success=True,
                        message="Payment already processed",
                        duplicate=True,
                    )

            update_ = PaymentUpdate(
                gateway_payment_id=gateway_payment_id,
                order_id=order_id,
                gateway_status=details.status,
                gateway_status_detail=details.status_detail,
                amount_cents=details.amount_cents,
                raw_payload=details.raw,
            )

            try:
                result = await self.applier.apply(update_, existing)
            except DuplicateNotification:
                logger.info(
                    "Concurrent notification already recorded payment",
                    payment_id=masked_id,
                )
                return ReconcileResult(
                    success=True,
                    message="Payment already processed",
                    duplicate=True,
                )

            logger.info(
                "Payment reconciled",
                payment_id=masked_id,
                order_id=mask_identifier(order_id, "ord"),
                gateway_status=details.status,
                transition=result.summary,
                refreshed=existing is not None,
                accepted=result.accepted,
            )
            return ReconcileResult(success=True, message=result.summary)

    async def _find_record(self, gateway_payment_id: str) -> Optional[PaymentRecord]:
        async with self.session_factory() as session:
            return await PaymentRepository(session).get_by_gateway_payment_id(
                gateway_payment_id
            )

    async def _load_order(self, order_id: uuid.UUID) -> Order:
        async with self.session_factory() as session:
            order = await session.get(Order, order_id)
        if order is None:
            logger.warning(
                "Payment references unknown order",
                order_id=mask_identifier(order_id, "ord"),
            )
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        return order

    def _order_id_from(self, details: PaymentDetails) -> uuid.UUID:
        if not details.external_reference:
            raise ReconciliationError(
                "Payment has no external reference",
                retryable=False,
                payment_id=mask_identifier(details.payment_id, "pay"),
            )
        try:
            return uuid.UUID(details.external_reference)
        except ValueError as e:
            raise ReconciliationError(
                "Payment external reference is not an order id",
                retryable=False,
                payment_id=mask_identifier(details.payment_id, "pay"),
            ) from e


class ReconciliationRetrier:
    """
    Runs reconciliation with bounded exponential backoff.

    Used in the webhook request (bounded by the acknowledgement deadline) and
    in the background after the acknowledgement has been sent.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        policy: BackoffPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.engine = engine
        self.policy = policy
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        engine: ReconciliationEngine,
        settings: Optional[Settings] = None,
    ) -> "ReconciliationRetrier":
        settings = settings or get_settings()
        return cls(engine, BackoffPolicy.for_reconciliation(settings))

    async def run(
        self,
        gateway_payment_id: str,
        deadline: Optional[float] = None,
        escalate: bool = True,
    ) -> ReconcileResult:
        """
        Reconcile with retries and report the outcome instead of raising.

        Args:
            gateway_payment_id: Gateway payment identifier
            deadline: Optional monotonic deadline; no retry starts after it
            escalate: Log a retryable failure as terminal; pass False when
                another attempt will follow

        Returns:
            The engine's result, or an unsuccessful result on failure
        """
        try:
            return await retry_async(
                "reconcile_payment",
                lambda: self.engine.reconcile(gateway_payment_id, deadline=deadline),
                self.policy,
                is_retryable,
                deadline=deadline,
                sleep=self._sleep,
            )
        except RECONCILIATION_ERRORS as e:
            retryable = is_retryable(e)
            if escalate or not retryable:
                logger.critical(
                    "Reconciliation failed - manual intervention required",
                    alert=True,
                    payment_id=mask_identifier(gateway_payment_id, "pay"),
                    error_type=type(e).__name__,
                    error=str(e),
                    retryable=retryable,
                )
            return ReconcileResult(
                success=False,
                message="Reconciliation failed",
                retryable=retryable,
            )

    async def run_in_background(self, gateway_payment_id: str) -> None:
        """Continue reconciliation after the webhook has been acknowledged."""
        result = await self.run(gateway_payment_id)
        if result.success:
            logger.info(
                "Background reconciliation completed",
                payment_id=mask_identifier(gateway_payment_id, "pay"),
                message=result.message,
            )
