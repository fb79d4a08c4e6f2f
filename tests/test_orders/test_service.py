"""
Test suite for OrderService checkout and administrative updates.

The service runs against an in-memory SQLite database seeded with a catalog;
the payment gateway client is replaced by an AsyncMock.
"""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from schoolphotos.database.models import AccessToken, Event, Order, OrderItem
from schoolphotos.services.orders.enums import OrderStatus
from schoolphotos.services.orders.repository import OrderNotFoundError
from schoolphotos.services.orders.service import (
    CartItem,
    DuplicatePendingOrderError,
    EventClosedError,
    OrderService,
    OrderValidationError,
    PriceMismatchError,
    TokenNotFoundError,
    generate_order_number,
)
from schoolphotos.services.orders.state_machine import StateTransitionError
from schoolphotos.services.payments.gateway_client import (
    GatewayRequestError,
    GatewayUnavailable,
    MercadoPagoClient,
    Preference,
)

CONTACT = {"name": "Ana Perez", "email": "ana@example.com", "phone": "+54 11 5555 0000"}


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def gateway_client() -> AsyncMock:
    """Gateway client mock returning a sandbox preference."""
    client = AsyncMock(spec=MercadoPagoClient)
    client.create_preference.return_value = Preference(
        preference_id="pref-123",
        init_url="https://sandbox.mercadopago.test/checkout?pref_id=pref-123",
    )
    return client


@pytest.fixture
def order_service(db_session, gateway_client, settings) -> OrderService:
    return OrderService(db_session, gateway_client, settings=settings)


async def _order_count(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(Order))).scalar_one()


def _item(price_list_item_id: str = "pli-1", quantity: int = 1, **kwargs) -> CartItem:
    return CartItem(
        photo_id=uuid.uuid4(),
        price_list_item_id=price_list_item_id,
        quantity=quantity,
        **kwargs,
    )


# ============================================================================
# Checkout
# ============================================================================


class TestCreateOrder:
    async def test_total_is_computed_from_catalog(
        self, order_service, gateway_client, catalog, session_factory
    ):
        result = await order_service.create_order(
            catalog.token, CONTACT, [_item("pli-1", quantity=2)]
        )

        assert result.total_cents == 3000
        assert result.currency == "ARS"
        assert result.preference_id == "pref-123"
        assert result.init_url.endswith("pref_id=pref-123")
        assert result.order_number.startswith("ORD-")

        async with session_factory() as session:
            order = await session.get(Order, result.order_id)
            assert order.status == OrderStatus.PENDING
            assert order.total_cents == 3000
            assert order.items_total_cents == 3000
            assert order.gateway_preference_id == "pref-123"
            assert order.subject_id == catalog.subject_id
            assert [i.unit_price_cents for i in order.items] == [1500]

    async def test_preference_references_order_id(
        self, order_service, gateway_client, catalog
    ):
        result = await order_service.create_order(
            catalog.token, CONTACT, [_item("pli-1"), _item("pli-2", quantity=3)]
        )

        order_id, items, payer = gateway_client.create_preference.await_args.args
        assert order_id == result.order_id
        assert [(i.id, i.quantity, i.unit_price_cents) for i in items] == [
            ("pli-1", 1, 1500),
            ("pli-2", 3, 2000),
        ]
        assert payer.email == "ana@example.com"
        assert result.total_cents == 1500 + 3 * 2000

    async def test_matching_client_price_is_accepted(self, order_service, catalog):
        result = await order_service.create_order(
            catalog.token, CONTACT, [_item("pli-2", price_cents=2000)]
        )

        assert result.total_cents == 2000

    async def test_price_mismatch_writes_no_order(
        self, order_service, gateway_client, catalog, session_factory
    ):
        with pytest.raises(PriceMismatchError):
            await order_service.create_order(
                catalog.token, CONTACT, [_item("pli-2", price_cents=1000)]
            )

        assert await _order_count(session_factory) == 0
        gateway_client.create_preference.assert_not_awaited()

    async def test_unknown_catalog_entry_is_rejected(
        self, order_service, catalog, session_factory
    ):
        with pytest.raises(PriceMismatchError):
            await order_service.create_order(
                catalog.token, CONTACT, [_item("pli-missing")]
            )

        assert await _order_count(session_factory) == 0

    async def test_unknown_token(self, order_service, catalog):
        with pytest.raises(TokenNotFoundError):
            await order_service.create_order(
                "unknown-token-000000000000", CONTACT, [_item()]
            )

    async def test_expired_token(self, order_service, catalog, session_factory):
        async with session_factory() as session:
            session.add(
                AccessToken(
                    token="expired-token-0000000000000",
                    event_id=catalog.event_id,
                    subject_id=uuid.uuid4(),
                    expires_at=datetime.now(timezone.utc) - timedelta(days=1),
                )
            )
            await session.commit()

        with pytest.raises(TokenNotFoundError):
            await order_service.create_order(
                "expired-token-0000000000000", CONTACT, [_item()]
            )

    async def test_closed_event(self, order_service, catalog, session_factory):
        async with session_factory() as session:
            event = await session.get(Event, catalog.event_id)
            event.active = False
            await session.commit()

        with pytest.raises(EventClosedError):
            await order_service.create_order(catalog.token, CONTACT, [_item()])

    async def test_pending_order_blocks_new_checkout(
        self, order_service, catalog, make_order
    ):
        await make_order(status=OrderStatus.PENDING)

        with pytest.raises(DuplicatePendingOrderError):
            await order_service.create_order(catalog.token, CONTACT, [_item()])

    async def test_settled_order_does_not_block_checkout(
        self, order_service, catalog, make_order
    ):
        await make_order(status=OrderStatus.FAILED)

        result = await order_service.create_order(catalog.token, CONTACT, [_item()])

        assert result.total_cents == 1500

    @pytest.mark.parametrize(
        "items",
        [
            [],
            [_item(quantity=0)],
            [_item(quantity=11)],
            [_item() for _ in range(51)],
        ],
    )
    async def test_invalid_cart_shape(self, order_service, catalog, items):
        with pytest.raises(OrderValidationError):
            await order_service.create_order(catalog.token, CONTACT, items)

    async def test_gateway_unavailable_withdraws_order(
        self, order_service, gateway_client, catalog, session_factory
    ):
        gateway_client.create_preference.side_effect = GatewayUnavailable(
            "down", code="SERVER_ERROR", status_code=503
        )

        with pytest.raises(GatewayUnavailable):
            await order_service.create_order(catalog.token, CONTACT, [_item()])

        assert await _order_count(session_factory) == 0
        async with session_factory() as session:
            items = (
                await session.execute(select(func.count()).select_from(OrderItem))
            ).scalar_one()
        assert items == 0

    async def test_gateway_rejection_allows_retry(
        self, order_service, gateway_client, catalog
    ):
        gateway_client.create_preference.side_effect = [
            GatewayRequestError("bad", code="CLIENT_ERROR", status_code=400),
            Preference(preference_id="pref-2", init_url="https://example.test/2"),
        ]

        with pytest.raises(GatewayRequestError):
            await order_service.create_order(catalog.token, CONTACT, [_item()])

        result = await order_service.create_order(catalog.token, CONTACT, [_item()])
        assert result.preference_id == "pref-2"


def test_order_number_format():
    number = generate_order_number()

    prefix, timestamp, suffix = number.split("-")
    assert prefix == "ORD"
    assert timestamp.isdigit()
    assert len(suffix) == 8


# ============================================================================
# Administrative status updates
# ============================================================================


class TestUpdateStatus:
    async def test_approved_order_can_be_delivered(self, order_service, make_order):
        order = await make_order(
            status=OrderStatus.APPROVED,
            approved_at=datetime.now(timezone.utc),
        )

        updated = await order_service.update_status(order.id, OrderStatus.DELIVERED)

        assert updated.status == OrderStatus.DELIVERED
        assert updated.delivered_at is not None

    async def test_pending_order_cannot_be_delivered(self, order_service, make_order):
        order = await make_order(status=OrderStatus.PENDING)

        with pytest.raises(StateTransitionError):
            await order_service.update_status(order.id, OrderStatus.DELIVERED)

    async def test_unknown_order(self, order_service, catalog):
        with pytest.raises(OrderNotFoundError):
            await order_service.update_status(uuid.uuid4(), OrderStatus.DELIVERED)
