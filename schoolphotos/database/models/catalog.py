"""
Event, access token and price list models.

These tables back the default catalog and token-scope gateways. Tokens are
handed to families and scope a checkout to one event and one subject.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from schoolphotos.database.base import Base, BaseModel, TimestampMixin


class Event(BaseModel):
    """A photo session (school, date) whose photos can be purchased."""

    __tablename__ = "events"

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Event display name",
    )

    active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Whether purchases are open for the event",
    )


class AccessToken(BaseModel):
    """Gallery access token resolving to an event and a subject."""

    __tablename__ = "access_tokens"

    token: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        unique=True,
        comment="Opaque token value",
    )

    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("events.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Event the token grants access to",
    )

    subject_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        index=True,
        comment="Subject (family scope) the token belongs to",
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Expiry; NULL never expires",
    )


class PriceListItem(Base, TimestampMixin):
    """
    Purchasable line-item definition for an event.

    Identifiers are catalog-assigned strings (e.g. ``pli-1``) rather than
    UUIDs, since they are referenced verbatim by carts.
    """

    __tablename__ = "price_list_items"

    id: Mapped[str] = mapped_column(
        String(100),
        primary_key=True,
        comment="Catalog entry identifier",
    )

    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("events.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Event the entry is priced for",
    )

    label: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Entry label shown to families",
    )

    price_cents: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Authoritative price in minor currency units",
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        comment="ISO 4217 currency code",
    )

    active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Whether the entry can still be purchased",
    )

    __table_args__ = (
        CheckConstraint(
            "price_cents >= 0",
            name="ck_price_list_items_price_non_negative",
        ),
    )
