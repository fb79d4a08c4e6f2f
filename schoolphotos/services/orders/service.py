"""
Order service orchestrating checkout and administrative order actions.

This module implements the OrderService class. Checkout resolves the access
token to an event and subject, validates every cart line against the live
price catalog, computes the total server-side, persists the pending order
with its items, and asks the payment gateway for a preference whose external
reference is the new order id. Client-supplied prices are never trusted: a
price that disagrees with the catalog rejects the whole request.
"""

import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from schoolphotos.core.config import Settings, get_settings
from schoolphotos.core.logging import get_logger, log_performance
from schoolphotos.database.models.order import Order
from schoolphotos.services.catalog.gateway import (
    CatalogEntry,
    CatalogError,
    CatalogGateway,
    SqlCatalogGateway,
    SqlTokenResolver,
    TokenResolver,
    TokenScope,
)
from schoolphotos.services.orders.enums import OrderStatus, TransitionSource
from schoolphotos.services.orders.repository import (
    OrderNotFoundError,
    OrderRepository,
    OrderRepositoryError,
    OrderUpdateError,
    PendingOrderConflictError,
)
from schoolphotos.services.orders.state_machine import (
    OrderStateMachine,
    get_order_state_machine,
)
from schoolphotos.services.payments.gateway_client import (
    GatewayError,
    MercadoPagoClient,
    Payer,
    Preference,
    PreferenceItem,
)

logger = get_logger(__name__)


class OrderServiceError(Exception):
    """Base exception for order service errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderValidationError(OrderServiceError):
    """Raised when a cart fails validation."""

    pass


class PriceMismatchError(OrderValidationError):
    """Raised when a cart line references an unknown entry or a wrong price."""

    pass


class TokenNotFoundError(OrderServiceError):
    """Raised when an access token is unknown or expired."""

    pass


class EventClosedError(OrderServiceError):
    """Raised when the token's event no longer accepts purchases."""

    pass


class DuplicatePendingOrderError(OrderServiceError):
    """Raised when the subject already has an unresolved pending order."""

    pass


class OrderProcessingError(OrderServiceError):
    """Raised when order processing fails."""

    pass


@dataclass(frozen=True)
class CartItem:
    """One submitted cart line; price_cents is the client's claimed price."""

    photo_id: uuid.UUID
    price_list_item_id: str
    quantity: int
    price_cents: Optional[int] = None


@dataclass(frozen=True)
class CheckoutResult:
    order_id: uuid.UUID
    order_number: str
    total_cents: int
    currency: str
    preference_id: str
    init_url: str


def generate_order_number() -> str:
    """Human-readable order number, e.g. ``ORD-1718000000000-3FA9C21B``."""
    return f"ORD-{int(time.time() * 1000)}-{secrets.token_hex(4).upper()}"


class OrderService:
    """
    Order service orchestrating checkout and administrative transitions.

    Attributes:
        repository: Order repository for data access
        gateway_client: Payment gateway client for preference creation
        catalog: Authoritative price catalog
        token_resolver: Access token resolver
        state_machine: State machine for order lifecycle management
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway_client: MercadoPagoClient,
        catalog: Optional[CatalogGateway] = None,
        token_resolver: Optional[TokenResolver] = None,
        state_machine: Optional[OrderStateMachine] = None,
        settings: Optional[Settings] = None,
    ):
        self.repository = OrderRepository(session)
        self.gateway_client = gateway_client
        self.catalog = catalog or SqlCatalogGateway(session)
        self.token_resolver = token_resolver or SqlTokenResolver(session)
        self.state_machine = state_machine or get_order_state_machine()
        self.settings = settings or get_settings()

    async def create_order(
        self,
        token: str,
        contact_info: dict[str, Any],
        items: Sequence[CartItem],
    ) -> CheckoutResult:
        """
        Create a pending order and its payment preference.

        Args:
            token: Gallery access token
            contact_info: Contact snapshot (name, email, phone, address)
            items: Submitted cart lines

        Returns:
            Checkout result with the payer redirect URL

        Raises:
            TokenNotFoundError: If the token is unknown or expired
            EventClosedError: If the event does not accept purchases
            OrderValidationError: If the cart is empty, too large or invalid
            PriceMismatchError: If a line references an unknown catalog entry
                or carries a price that differs from the catalog
            DuplicatePendingOrderError: If a pending order already exists
            GatewayError: If the payment preference cannot be created
            OrderProcessingError: If persistence fails
        """
        with log_performance(logger, "create_order", item_count=len(items)):
            self._validate_cart_shape(items)

            scope = await self._resolve_scope(token)

            try:
                if await self.repository.has_pending_order(scope.subject_id):
                    raise DuplicatePendingOrderError(
                        "A pending order already exists",
                        subject_id=str(scope.subject_id),
                    )
            except OrderRepositoryError as e:
                raise OrderProcessingError("Failed to check pending orders") from e

            priced_items, total_cents, currency = await self._price_items(
                scope.event_id, items
            )

            order = await self._persist_order(
                scope, priced_items, total_cents, currency, contact_info
            )

            preference = await self._create_preference(
                order, priced_items, contact_info
            )

            try:
                await self.repository.set_preference_id(
                    order.id, preference.preference_id
                )
            except OrderUpdateError as e:
                logger.warning(
                    "Failed to store preference id",
                    order_id=str(order.id),
                    error=str(e),
                )

            logger.info(
                "Checkout completed",
                order_id=str(order.id),
                order_number=order.order_number,
                total_cents=total_cents,
                currency=currency,
            )

            return CheckoutResult(
                order_id=order.id,
                order_number=order.order_number,
                total_cents=total_cents,
                currency=currency,
                preference_id=preference.preference_id,
                init_url=preference.init_url,
            )

    def _validate_cart_shape(self, items: Sequence[CartItem]) -> None:
        if not items:
            raise OrderValidationError("Cart is empty")
        if len(items) > self.settings.max_items_per_order:
            raise OrderValidationError(
                "Too many items in cart",
                item_count=len(items),
                max_items=self.settings.max_items_per_order,
            )
        for item in items:
            if not 1 <= item.quantity <= self.settings.max_quantity_per_item:
                raise OrderValidationError(
                    "Invalid item quantity",
                    price_list_item_id=item.price_list_item_id,
                    quantity=item.quantity,
                )

    async def _resolve_scope(self, token: str) -> TokenScope:
        try:
            scope = await self.token_resolver.resolve(token)
        except CatalogError as e:
            raise OrderProcessingError("Failed to resolve access token") from e

        if scope is None:
            logger.warning("Checkout rejected - invalid or expired token")
            raise TokenNotFoundError("Access token not found or expired")

        if not scope.event_active:
            logger.warning(
                "Checkout rejected - event closed",
                event_id=str(scope.event_id),
            )
            raise EventClosedError(
                "Event is not accepting purchases",
                event_id=str(scope.event_id),
            )

        return scope

    async def _price_items(
        self,
        event_id: uuid.UUID,
        items: Sequence[CartItem],
    ) -> tuple[list[dict[str, Any]], int, str]:
        """
        Price every cart line from the catalog.

        Returns:
            Tuple of (priced lines, total in minor units, currency)
        """
        try:
            entries = await self.catalog.get_entries(event_id)
        except CatalogError as e:
            raise OrderProcessingError(
                "Failed to load price catalog", event_id=str(event_id)
            ) from e

        priced: list[dict[str, Any]] = []
        currencies: set[str] = set()
        total_cents = 0

        for item in items:
            entry: Optional[CatalogEntry] = entries.get(item.price_list_item_id)
            if entry is None:
                logger.warning(
                    "Price mismatch - unknown catalog entry",
                    price_list_item_id=item.price_list_item_id,
                    event_id=str(event_id),
                )
                raise PriceMismatchError(
                    "Unknown catalog entry",
                    price_list_item_id=item.price_list_item_id,
                )

            if item.price_cents is not None and item.price_cents != entry.price_cents:
                logger.warning(
                    "Price mismatch - client price differs from catalog",
                    price_list_item_id=item.price_list_item_id,
                    client_price_cents=item.price_cents,
                    catalog_price_cents=entry.price_cents,
                )
                raise PriceMismatchError(
                    "Submitted price does not match catalog price",
                    price_list_item_id=item.price_list_item_id,
                )

            currencies.add((entry.currency or self.settings.default_currency).upper())
            total_cents += item.quantity * entry.price_cents
            priced.append(
                {
                    "photo_id": item.photo_id,
                    "price_list_item_id": entry.id,
                    "label": entry.label,
                    "quantity": item.quantity,
                    "unit_price_cents": entry.price_cents,
                    "currency": entry.currency,
                }
            )

        if len(currencies) > 1:
            raise OrderValidationError(
                "Cart mixes currencies",
                currencies=sorted(currencies),
            )

        return priced, total_cents, currencies.pop()

    async def _persist_order(
        self,
        scope: TokenScope,
        priced_items: list[dict[str, Any]],
        total_cents: int,
        currency: str,
        contact_info: dict[str, Any],
    ) -> Order:
        try:
            return await self.repository.create_order_with_items(
                order_number=generate_order_number(),
                event_id=scope.event_id,
                subject_id=scope.subject_id,
                total_cents=total_cents,
                currency=currency,
                contact_info=contact_info,
                items=priced_items,
            )
        except PendingOrderConflictError as e:
            raise DuplicatePendingOrderError(
                "A pending order already exists",
                subject_id=str(scope.subject_id),
            ) from e
        except OrderRepositoryError as e:
            raise OrderProcessingError("Failed to create order") from e

    async def _create_preference(
        self,
        order: Order,
        priced_items: list[dict[str, Any]],
        contact_info: dict[str, Any],
    ) -> Preference:
        preference_items = [
            PreferenceItem(
                id=item["price_list_item_id"],
                title=item["label"],
                quantity=item["quantity"],
                unit_price_cents=item["unit_price_cents"],
                currency=order.currency,
            )
            for item in priced_items
        ]
        payer = Payer(
            name=contact_info["name"],
            email=contact_info["email"],
            phone=contact_info.get("phone"),
        )

        try:
            return await self.gateway_client.create_preference(
                order.id, preference_items, payer
            )
        except GatewayError as e:
            logger.error(
                "Payment preference failed - withdrawing order",
                order_id=str(order.id),
                error_type=type(e).__name__,
                code=e.code,
            )
            try:
                await self.repository.delete_order(order.id)
            except OrderRepositoryError as cleanup_error:
                logger.error(
                    "Failed to withdraw order after preference failure",
                    order_id=str(order.id),
                    error=str(cleanup_error),
                )
            raise

    async def get_order(self, order_id: uuid.UUID) -> Order:
        """
        Load an order for administrative tooling.

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        order = await self.repository.get_order(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        return order

    async def update_status(
        self,
        order_id: uuid.UUID,
        target_status: OrderStatus,
    ) -> Order:
        """
        Apply an administrative status change.

        Only ``approved -> delivered`` is accepted from this path.

        Raises:
            OrderNotFoundError: If the order does not exist
            StateTransitionError: If the transition is not allowed
            OrderUpdateError: If the update cannot be persisted
        """
        order = await self.get_order(order_id)
        self.state_machine.apply_transition(
            order, target_status, TransitionSource.ADMIN
        )
        return await self.repository.save(order)
