"""
Integration tests for the payment webhook endpoint.

Most tests drive a real WebhookReceiver whose retrier is an AsyncMock. The
end-to-end test wires the full reconciliation stack to the in-memory SQLite
database and calls the app through ``httpx.ASGITransport`` so the database
and the request share one event loop.
"""

import json
from typing import Generator
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi import status
from fastapi.testclient import TestClient

from schoolphotos.api.deps import get_webhook_receiver
from schoolphotos.core.security import format_signature_header
from schoolphotos.database.models import Order
from schoolphotos.main import app
from schoolphotos.services.orders.enums import OrderStatus
from schoolphotos.services.payments.appliers import TransactionalApplier
from schoolphotos.services.payments.gateway_client import (
    MercadoPagoClient,
    PaymentDetails,
)
from schoolphotos.services.payments.reconciliation import (
    ReconcileResult,
    ReconciliationEngine,
    ReconciliationRetrier,
)
from schoolphotos.services.payments.webhook import WebhookReceiver, WebhookVerifier

WEBHOOK_URL = "/api/v1/payments/webhook"
SECRET = "test-webhook-secret"
PAYMENT_ID = "987654321"


def _notification(payment_id: str = PAYMENT_ID) -> bytes:
    return json.dumps({"type": "payment", "data": {"id": payment_id}}).encode()


def _headers(body: bytes, secret: str = SECRET) -> dict:
    return {
        "Content-Type": "application/json",
        "X-Signature": format_signature_header(body, secret),
    }


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def retrier() -> AsyncMock:
    mock = AsyncMock(spec=ReconciliationRetrier)
    mock.run.return_value = ReconcileResult(success=True, message="pending → approved")
    return mock


@pytest.fixture
def override_receiver(retrier, settings):
    def _override(**settings_overrides) -> WebhookReceiver:
        receiver = WebhookReceiver(
            WebhookVerifier(SECRET),
            retrier,
            settings.model_copy(update=settings_overrides),
        )
        app.dependency_overrides[get_webhook_receiver] = lambda: receiver
        return receiver

    yield _override
    app.dependency_overrides.clear()


@pytest.fixture
def client(override_receiver) -> Generator[TestClient, None, None]:
    override_receiver()
    yield TestClient(app)


# ============================================================================
# Webhook endpoint
# ============================================================================


class TestPaymentWebhook:
    def test_processed_notification(self, client, retrier):
        body = _notification()

        response = client.post(WEBHOOK_URL, content=body, headers=_headers(body))

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"status": "processed", "message": "pending → approved"}
        assert retrier.run.await_args.args[0] == PAYMENT_ID

    def test_invalid_signature(self, client, retrier):
        body = _notification()

        response = client.post(
            WEBHOOK_URL, content=body, headers=_headers(body, secret="wrong")
        )

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["detail"]["code"] == "INVALID_SIGNATURE"
        retrier.run.assert_not_awaited()

    def test_signature_covers_raw_bytes(self, client, retrier):
        body = _notification()
        reformatted = json.dumps(json.loads(body), indent=2).encode()

        response = client.post(WEBHOOK_URL, content=reformatted, headers=_headers(body))

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_malformed_body(self, client):
        body = b"not json at all"

        response = client.post(WEBHOOK_URL, content=body, headers=_headers(body))

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"]["code"] == "INVALID_BODY"

    def test_ignored_notification(self, client, retrier):
        body = json.dumps({"type": "merchant_order", "data": {"id": "1"}}).encode()

        response = client.post(WEBHOOK_URL, content=body, headers=_headers(body))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "ignored"
        retrier.run.assert_not_awaited()

    def test_query_string_notification(self, client, retrier):
        response = client.post(
            WEBHOOK_URL,
            params={"topic": "payment", "id": PAYMENT_ID},
            content=b"",
            headers={"X-Signature": format_signature_header(b"", SECRET)},
        )

        assert response.status_code == status.HTTP_200_OK
        assert retrier.run.await_args.args[0] == PAYMENT_ID

    def test_retryable_failure_runs_in_background(self, override_receiver, retrier):
        override_receiver(webhook_background_retry_enabled=True)
        retrier.run.return_value = ReconcileResult(
            success=False, message="Reconciliation failed", retryable=True
        )
        body = _notification()

        response = TestClient(app).post(WEBHOOK_URL, content=body, headers=_headers(body))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "accepted"
        retrier.run_in_background.assert_awaited_once_with(
            gateway_payment_id=PAYMENT_ID
        )

    def test_retryable_failure_without_background_requests_redelivery(
        self, override_receiver, retrier
    ):
        override_receiver(webhook_background_retry_enabled=False)
        retrier.run.return_value = ReconcileResult(
            success=False, message="Reconciliation failed", retryable=True
        )
        body = _notification()

        response = TestClient(app).post(WEBHOOK_URL, content=body, headers=_headers(body))

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["detail"]["code"] == "RECONCILIATION_UNAVAILABLE"
        retrier.run_in_background.assert_not_awaited()

    def test_terminal_failure_is_acknowledged(self, client, retrier):
        retrier.run.return_value = ReconcileResult(
            success=False, message="Reconciliation failed", retryable=False
        )
        body = _notification()

        response = client.post(WEBHOOK_URL, content=body, headers=_headers(body))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "failed"


# ============================================================================
# End to end
# ============================================================================


async def test_webhook_settles_order_end_to_end(session_factory, make_order, settings):
    order = await make_order()
    gateway_client = AsyncMock(spec=MercadoPagoClient)
    gateway_client.get_payment.return_value = PaymentDetails(
        payment_id=PAYMENT_ID,
        status="approved",
        status_detail="accredited",
        external_reference=str(order.id),
        amount_cents=3000,
        currency="ARS",
        raw={"id": PAYMENT_ID, "status": "approved"},
    )
    engine = ReconciliationEngine(
        session_factory, gateway_client, TransactionalApplier(session_factory)
    )
    receiver = WebhookReceiver(
        WebhookVerifier(SECRET),
        ReconciliationRetrier.from_settings(engine, settings),
        settings,
    )
    app.dependency_overrides[get_webhook_receiver] = lambda: receiver
    body = _notification()

    try:
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            first = await client.post(WEBHOOK_URL, content=body, headers=_headers(body))
            second = await client.post(WEBHOOK_URL, content=body, headers=_headers(body))
    finally:
        app.dependency_overrides.clear()

    assert first.json() == {"status": "processed", "message": "pending → approved"}
    assert second.json() == {
        "status": "processed",
        "message": "Payment already processed",
    }
    gateway_client.get_payment.assert_awaited_once()

    async with session_factory() as session:
        stored = await session.get(Order, order.id)
    assert stored.status == OrderStatus.APPROVED
    assert stored.gateway_payment_id == PAYMENT_ID
