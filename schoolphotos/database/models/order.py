"""
Order models for school photo checkouts.

This module defines the Order and OrderItem models. An order is created once,
in pending state, by checkout; it is then mutated only by payment
reconciliation or by an administrative delivery action. Items are owned by
their order and deleted with it.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import DateTime

from schoolphotos.database.base import BaseModel, JSONType
from schoolphotos.services.orders.enums import OrderStatus


class Order(BaseModel):
    """
    Order model for one checkout attempt.

    Attributes:
        id: Unique order identifier, also sent to the gateway as the
            external reference
        order_number: Human-readable order number
        event_id: Event the photos belong to
        subject_id: Family/student scope the access token resolved to
        status: Current order status
        total_cents: Order total in minor currency units, computed server-side
        currency: ISO 4217 currency code
        contact_info: Contact snapshot taken at checkout
        gateway_preference_id: Preference created for this order
        gateway_payment_id: Last payment reconciled against this order
        gateway_status: Raw gateway status of that payment
        gateway_status_detail: Raw gateway status detail of that payment
        approved_at: When the payment was approved
        delivered_at: When an administrator marked the order delivered
    """

    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
        comment="Human-readable order number",
    )

    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("events.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Event the order was placed for",
    )

    subject_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        index=True,
        comment="Subject (family scope) that placed the order",
    )

    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(
            OrderStatus,
            name="order_status",
            values_callable=lambda enum: [member.value for member in enum],
            create_constraint=True,
        ),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
        comment="Current order status",
    )

    total_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Order total in minor currency units",
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        comment="ISO 4217 currency code",
    )

    contact_info: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Contact information snapshot at time of order",
    )

    gateway_preference_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Payment gateway preference identifier",
    )

    gateway_payment_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
        comment="Payment gateway payment identifier",
    )

    gateway_status: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment="Raw payment status reported by the gateway",
    )

    gateway_status_detail: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Raw payment status detail reported by the gateway",
    )

    approved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the payment was approved",
    )

    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the order was delivered",
    )

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        # At most one pending order per subject
        Index(
            "uq_orders_subject_pending",
            "subject_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index(
            "ix_orders_status_created",
            "status",
            "created_at",
        ),
        CheckConstraint(
            "total_cents >= 0",
            name="ck_orders_total_cents_non_negative",
        ),
        {"comment": "Family photo orders with payment status tracking"},
    )

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, order_number={self.order_number}, "
            f"status={self.status.value}, total_cents={self.total_cents})>"
        )

    @property
    def items_total_cents(self) -> int:
        """Sum of line totals, which must equal total_cents."""
        return sum(item.line_total_cents for item in self.items)


class OrderItem(BaseModel):
    """
    One priced line of an order.

    Attributes:
        order_id: Owning order
        photo_id: Photo the item was bought for
        price_list_item_id: Catalog entry whose price was used
        quantity: Number of units
        unit_price_cents: Catalog price at time of order
        line_total_cents: quantity * unit_price_cents
    """

    __tablename__ = "order_items"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Owning order",
    )

    photo_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        comment="Photo the item was purchased for",
    )

    price_list_item_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Catalog entry used for pricing",
    )

    label: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Catalog label at time of order",
    )

    quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Number of units",
    )

    unit_price_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Unit price in minor currency units",
    )

    line_total_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Line total in minor currency units",
    )

    order: Mapped["Order"] = relationship(
        "Order",
        back_populates="items",
    )

    __table_args__ = (
        CheckConstraint(
            "quantity > 0",
            name="ck_order_items_quantity_positive",
        ),
        CheckConstraint(
            "unit_price_cents >= 0",
            name="ck_order_items_unit_price_non_negative",
        ),
        CheckConstraint(
            "line_total_cents = quantity * unit_price_cents",
            name="ck_order_items_line_total",
        ),
        {"comment": "Priced order lines"},
    )
