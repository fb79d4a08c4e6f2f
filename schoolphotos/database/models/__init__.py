"""
Database models package initialization.

This module exports all database models for SQLAlchemy and Alembic
auto-generation. Models are imported here to ensure they are registered with
the Base metadata for proper migration generation and relationship resolution.
"""

from schoolphotos.database.base import (
    Base,
    BaseModel,
    TimestampMixin,
    UUIDMixin,
)
from schoolphotos.database.models.catalog import AccessToken, Event, PriceListItem
from schoolphotos.database.models.order import Order, OrderItem
from schoolphotos.database.models.payment import PaymentRecord

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    "AccessToken",
    "Event",
    "PriceListItem",
    "Order",
    "OrderItem",
    "PaymentRecord",
]
