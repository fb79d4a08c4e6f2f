"""
Order data access repository with transaction support.

This module implements the OrderRepository class providing async methods for
creating orders with their items in one transaction, loading orders, storing
the gateway preference id, and removing orders whose payment preference
could not be created.
"""

import uuid
from typing import Any, Optional, Sequence

from sqlalchemy import delete, exists, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from schoolphotos.core.logging import get_logger
from schoolphotos.database.models.order import Order, OrderItem
from schoolphotos.services.orders.enums import OrderStatus

logger = get_logger(__name__)

PENDING_INDEX_MARKERS = ("uq_orders_subject_pending", "orders.subject_id")


class OrderRepositoryError(Exception):
    """Base exception for order repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderNotFoundError(OrderRepositoryError):
    """Raised when order is not found."""

    pass


class OrderCreationError(OrderRepositoryError):
    """Raised when order creation fails."""

    pass


class PendingOrderConflictError(OrderCreationError):
    """Raised when the subject already has a pending order."""

    pass


class OrderUpdateError(OrderRepositoryError):
    """Raised when order update fails."""

    pass


def _is_pending_conflict(error: IntegrityError) -> bool:
    message = str(error.orig) if error.orig is not None else str(error)
    return any(marker in message for marker in PENDING_INDEX_MARKERS)


class OrderRepository:
    """
    Repository for order data access operations.

    Write methods commit their own transaction and roll back on failure.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize order repository.

        Args:
            session: Async database session
        """
        self.session = session

    async def has_pending_order(self, subject_id: uuid.UUID) -> bool:
        """
        Check whether a subject already has an unresolved pending order.

        Raises:
            OrderRepositoryError: If query fails
        """
        try:
            result = await self.session.execute(
                select(
                    exists().where(
                        Order.subject_id == subject_id,
                        Order.status == OrderStatus.PENDING,
                    )
                )
            )
            return bool(result.scalar())
        except SQLAlchemyError as e:
            logger.error(
                "Failed to check pending orders",
                subject_id=str(subject_id),
                error=str(e),
            )
            raise OrderRepositoryError(
                "Failed to check pending orders",
                subject_id=str(subject_id),
            ) from e

    async def create_order_with_items(
        self,
        order_number: str,
        event_id: uuid.UUID,
        subject_id: uuid.UUID,
        total_cents: int,
        currency: str,
        contact_info: dict[str, Any],
        items: Sequence[dict[str, Any]],
    ) -> Order:
        """
        Create order with items atomically.

        Args:
            order_number: Human-readable order number
            event_id: Event the order belongs to
            subject_id: Subject that placed the order
            total_cents: Server-computed order total
            currency: ISO currency code
            contact_info: Contact snapshot
            items: Priced lines with photo_id, price_list_item_id, label,
                quantity and unit_price_cents

        Returns:
            Created order with items

        Raises:
            PendingOrderConflictError: If the subject already has a pending order
            OrderCreationError: If order creation fails
        """
        order = Order(
            order_number=order_number,
            event_id=event_id,
            subject_id=subject_id,
            status=OrderStatus.PENDING,
            total_cents=total_cents,
            currency=currency,
            contact_info=contact_info,
            items=[
                OrderItem(
                    photo_id=item["photo_id"],
                    price_list_item_id=item["price_list_item_id"],
                    label=item.get("label"),
                    quantity=item["quantity"],
                    unit_price_cents=item["unit_price_cents"],
                    line_total_cents=item["quantity"] * item["unit_price_cents"],
                )
                for item in items
            ],
        )

        try:
            self.session.add(order)
            await self.session.flush()
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            if _is_pending_conflict(e):
                logger.warning(
                    "Order creation rejected - pending order exists",
                    subject_id=str(subject_id),
                )
                raise PendingOrderConflictError(
                    "A pending order already exists for this subject",
                    subject_id=str(subject_id),
                ) from e
            logger.error(
                "Order creation failed - integrity error",
                error=str(e),
                order_number=order_number,
            )
            raise OrderCreationError(
                "Order creation failed due to data integrity violation",
                order_number=order_number,
            ) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Order creation failed - database error",
                error=str(e),
                order_number=order_number,
            )
            raise OrderCreationError(
                "Order creation failed due to database error",
                order_number=order_number,
            ) from e

        logger.info(
            "Order created successfully",
            order_id=str(order.id),
            order_number=order_number,
            item_count=len(order.items),
            total_cents=total_cents,
        )
        return order

    async def get_order(self, order_id: uuid.UUID) -> Optional[Order]:
        """
        Get order by ID with its items.

        Raises:
            OrderRepositoryError: If query fails
        """
        try:
            result = await self.session.execute(
                select(Order).where(Order.id == order_id)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch order",
                order_id=str(order_id),
                error=str(e),
            )
            raise OrderRepositoryError(
                "Failed to fetch order",
                order_id=str(order_id),
            ) from e

    async def set_preference_id(
        self, order_id: uuid.UUID, preference_id: str
    ) -> None:
        """
        Store the gateway preference id on an order.

        Raises:
            OrderUpdateError: If update fails
        """
        try:
            await self.session.execute(
                update(Order)
                .where(Order.id == order_id)
                .values(gateway_preference_id=preference_id)
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise OrderUpdateError(
                "Failed to store preference id",
                order_id=str(order_id),
            ) from e

    async def delete_order(self, order_id: uuid.UUID) -> None:
        """
        Delete an order and its items.

        Only used to withdraw a pending order that was never exposed to the
        customer because its payment preference could not be created.

        Raises:
            OrderRepositoryError: If delete fails
        """
        try:
            await self.session.execute(
                delete(OrderItem).where(OrderItem.order_id == order_id)
            )
            await self.session.execute(
                delete(Order).where(
                    Order.id == order_id,
                    Order.status == OrderStatus.PENDING,
                )
            )
            await self.session.commit()
            logger.info("Pending order withdrawn", order_id=str(order_id))
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Failed to withdraw pending order",
                order_id=str(order_id),
                error=str(e),
            )
            raise OrderRepositoryError(
                "Failed to delete order",
                order_id=str(order_id),
            ) from e

    async def save(self, order: Order) -> Order:
        """
        Persist in-memory changes to an order.

        Raises:
            OrderUpdateError: If update fails
        """
        try:
            await self.session.flush()
            await self.session.commit()
            return order
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Failed to update order",
                order_id=str(order.id),
                error=str(e),
            )
            raise OrderUpdateError(
                "Failed to update order",
                order_id=str(order.id),
            ) from e
