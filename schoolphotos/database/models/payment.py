"""
Payment record model for gateway payment notifications.

One PaymentRecord exists per distinct gateway payment identifier. The unique
constraint on that identifier is the final arbiter for duplicate or concurrent
webhook deliveries: a second writer fails with an integrity error and is
treated as "already processed".
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from schoolphotos.database.base import BaseModel, JSONType, utcnow


class PaymentRecord(BaseModel):
    """
    Durable record of a processed gateway payment.

    Attributes:
        gateway_payment_id: Gateway payment identifier (idempotency key)
        order_id: Order the payment was reconciled against
        gateway_status: Raw gateway status at processing time
        gateway_status_detail: Raw gateway status detail
        amount_cents: Transaction amount in minor currency units
        raw_webhook_payload: Gateway payment document kept for audit
        processed_at: When the record was written
        order_synced_at: When the order update for this record completed;
            NULL means the order update still has to be applied
    """

    __tablename__ = "payment_records"

    gateway_payment_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Gateway payment identifier",
    )

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Reconciled order",
    )

    gateway_status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Raw payment status reported by the gateway",
    )

    gateway_status_detail: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Raw payment status detail reported by the gateway",
    )

    amount_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Transaction amount in minor currency units",
    )

    raw_webhook_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Gateway payment document for audit",
    )

    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="When the payment was processed",
    )

    order_synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the order update for this payment completed",
    )

    __table_args__ = (
        {"comment": "Processed gateway payments, one per gateway payment id"},
    )

    @property
    def is_order_synced(self) -> bool:
        return self.order_synced_at is not None
