"""
Price catalog and access token gateways.

Order assembly consumes these two collaborators through small abstract
interfaces. The SQL implementations read the events, access_tokens and
price_list_items tables; other deployments can plug in a remote catalog
service behind the same interface.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from schoolphotos.core.logging import get_logger
from schoolphotos.database.models.catalog import AccessToken, Event, PriceListItem

logger = get_logger(__name__)


class CatalogError(Exception):
    """Raised when the catalog or token store cannot be read."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


@dataclass(frozen=True)
class TokenScope:
    """Event and subject an access token grants purchases for."""

    event_id: uuid.UUID
    subject_id: uuid.UUID
    event_active: bool
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class CatalogEntry:
    """Authoritative purchasable line-item definition."""

    id: str
    label: str
    price_cents: int
    currency: str


class TokenResolver(ABC):
    """Resolves gallery access tokens to a purchase scope."""

    @abstractmethod
    async def resolve(self, token: str) -> Optional[TokenScope]:
        """Return the scope for a valid, unexpired token, or None."""


class CatalogGateway(ABC):
    """Looks up authoritative prices for an event."""

    @abstractmethod
    async def list_entries(self, event_id: uuid.UUID) -> List[CatalogEntry]:
        """Return every purchasable entry for the event."""

    async def get_entries(self, event_id: uuid.UUID) -> Dict[str, CatalogEntry]:
        """Return the event's entries keyed by entry id."""
        return {entry.id: entry for entry in await self.list_entries(event_id)}


class SqlTokenResolver(TokenResolver):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def resolve(self, token: str) -> Optional[TokenScope]:
        try:
            result = await self.session.execute(
                select(AccessToken, Event.active)
                .join(Event, Event.id == AccessToken.event_id)
                .where(AccessToken.token == token)
            )
            row = result.first()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to resolve access token",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise CatalogError("Failed to resolve access token") from e

        if row is None:
            return None

        access_token, event_active = row
        expires_at = access_token.expires_at
        if expires_at is not None:
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at <= datetime.now(timezone.utc):
                logger.info(
                    "Access token expired",
                    event_id=str(access_token.event_id),
                )
                return None

        return TokenScope(
            event_id=access_token.event_id,
            subject_id=access_token.subject_id,
            event_active=bool(event_active),
            expires_at=expires_at,
        )


class SqlCatalogGateway(CatalogGateway):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_entries(self, event_id: uuid.UUID) -> List[CatalogEntry]:
        try:
            result = await self.session.execute(
                select(PriceListItem).where(
                    PriceListItem.event_id == event_id,
                    PriceListItem.active.is_(True),
                )
            )
            items = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to load price list",
                event_id=str(event_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise CatalogError(
                "Failed to load price list", event_id=str(event_id)
            ) from e

        return [
            CatalogEntry(
                id=item.id,
                label=item.label,
                price_cents=item.price_cents,
                currency=item.currency,
            )
            for item in items
        ]
