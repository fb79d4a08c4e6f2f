"""
Payment record repository.

This module implements the PaymentRepository class for reading payment
records and for staging their inserts and updates. Write methods only flush;
the apply strategies decide where transaction boundaries fall.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from schoolphotos.core.logging import get_logger, mask_identifier
from schoolphotos.database.models.payment import PaymentRecord

logger = get_logger(__name__)


class PaymentRepositoryError(Exception):
    """Base exception for payment repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class DuplicatePaymentError(PaymentRepositoryError):
    """Raised when a record for the gateway payment id already exists."""

    pass


class PaymentRepository:
    """
    Repository for payment record data access.

    Attributes:
        session: Async database session for executing queries
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_gateway_payment_id(
        self, gateway_payment_id: str
    ) -> Optional[PaymentRecord]:
        """
        Get payment record by gateway payment id.

        Raises:
            PaymentRepositoryError: If query fails
        """
        try:
            result = await self.session.execute(
                select(PaymentRecord).where(
                    PaymentRecord.gateway_payment_id == gateway_payment_id
                )
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch payment record",
                payment_id=mask_identifier(gateway_payment_id, "pay"),
                error=str(e),
            )
            raise PaymentRepositoryError(
                "Failed to fetch payment record",
                payment_id=mask_identifier(gateway_payment_id, "pay"),
            ) from e

    async def add_record(
        self,
        gateway_payment_id: str,
        order_id: uuid.UUID,
        gateway_status: str,
        gateway_status_detail: Optional[str],
        amount_cents: int,
        raw_webhook_payload: Optional[dict[str, Any]],
        order_synced_at: Optional[datetime] = None,
    ) -> PaymentRecord:
        """
        Stage a new payment record and flush it.

        Raises:
            DuplicatePaymentError: If the gateway payment id already exists
            PaymentRepositoryError: If the insert fails
        """
        record = PaymentRecord(
            gateway_payment_id=gateway_payment_id,
            order_id=order_id,
            gateway_status=gateway_status,
            gateway_status_detail=gateway_status_detail,
            amount_cents=amount_cents,
            raw_webhook_payload=raw_webhook_payload,
            order_synced_at=order_synced_at,
        )

        try:
            self.session.add(record)
            await self.session.flush()
        except IntegrityError as e:
            raise DuplicatePaymentError(
                "Payment record already exists",
                payment_id=mask_identifier(gateway_payment_id, "pay"),
            ) from e
        except SQLAlchemyError as e:
            raise PaymentRepositoryError(
                "Failed to insert payment record",
                payment_id=mask_identifier(gateway_payment_id, "pay"),
                error=str(e),
            ) from e

        return record
