"""
Mercado Pago REST client with error classification and retry logic.

This module wraps the two gateway calls the settlement pipeline needs,
preference creation and payment lookup, on top of an ``httpx.AsyncClient``
with per-call timeouts. Network errors, 5xx and 429 responses are retried
with exponential backoff; 4xx responses and malformed success responses are
terminal and reported immediately.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx

from schoolphotos.core.config import Settings, get_settings
from schoolphotos.core.logging import get_logger, mask_identifier
from schoolphotos.core.retry import BackoffPolicy, retry_async

logger = get_logger(__name__)

PREFERENCES_PATH = "/checkout/preferences"
PAYMENTS_PATH = "/v1/payments/{payment_id}"


class GatewayError(Exception):
    """Base exception for payment gateway client errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.context = context


class GatewayUnavailable(GatewayError):
    """Transient gateway failure (network error, 5xx, 429)."""

    pass


class GatewayRequestError(GatewayError):
    """Terminal gateway failure (4xx or protocol violation)."""

    pass


class GatewayConfigurationError(GatewayError):
    """Missing or invalid gateway credentials."""

    pass


@dataclass(frozen=True)
class PreferenceItem:
    """One line of a payment preference, priced in minor units."""

    id: str
    title: str
    quantity: int
    unit_price_cents: int
    currency: str


@dataclass(frozen=True)
class Payer:
    name: str
    email: str
    phone: Optional[str] = None


@dataclass(frozen=True)
class Preference:
    preference_id: str
    init_url: str


@dataclass(frozen=True)
class PaymentDetails:
    """Current state of a gateway payment."""

    payment_id: str
    status: str
    status_detail: Optional[str]
    external_reference: Optional[str]
    amount_cents: int
    currency: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


def cents_to_amount(cents: int) -> Decimal:
    """Convert minor units to the gateway's decimal major-unit amount."""
    return (Decimal(cents) / Decimal(100)).quantize(Decimal("0.01"))


def amount_to_cents(amount: Any) -> int:
    """
    Convert a gateway decimal amount to minor units.

    Raises:
        GatewayRequestError: If the amount is not a number
    """
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise GatewayRequestError(
            "Gateway returned an invalid amount",
            code="INVALID_AMOUNT",
        ) from e
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _is_retryable(error: Exception) -> bool:
    return isinstance(error, GatewayUnavailable)


class MercadoPagoClient:
    """
    Mercado Pago API client with error handling and retry logic.

    Missing credentials raise GatewayConfigurationError at construction, so
    the application refuses to start rather than failing per request.
    """

    def __init__(
        self,
        access_token: Optional[str],
        base_url: str,
        public_base_url: str,
        timeout_seconds: float = 10.0,
        use_sandbox: bool = True,
        notification_url: Optional[str] = None,
        preference_policy: Optional[BackoffPolicy] = None,
        lookup_policy: Optional[BackoffPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the gateway client.

        Args:
            access_token: Gateway access token
            base_url: Gateway REST API base URL
            public_base_url: Public site URL used to build back-URLs
            timeout_seconds: Per-call timeout
            use_sandbox: Redirect payers to the sandbox checkout
            notification_url: Webhook URL registered on each preference
            preference_policy: Retry policy for preference creation
            lookup_policy: Retry policy for payment lookup
            transport: Optional httpx transport (used by tests)
            sleep: Awaitable sleep used between retries

        Raises:
            GatewayConfigurationError: If the access token is missing
        """
        if not access_token:
            raise GatewayConfigurationError(
                "Payment gateway access token is not configured",
                code="MISSING_ACCESS_TOKEN",
            )

        self.public_base_url = public_base_url.rstrip("/")
        self.use_sandbox = use_sandbox
        self.notification_url = notification_url
        self.preference_policy = preference_policy or BackoffPolicy(
            max_retries=2, max_delay=5.0
        )
        self.lookup_policy = lookup_policy or BackoffPolicy(
            max_retries=3, max_delay=10.0
        )
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

        logger.info(
            "Payment gateway client initialized",
            base_url=base_url,
            use_sandbox=use_sandbox,
            timeout_seconds=timeout_seconds,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """
        Perform one HTTP call and classify its failure modes.

        Raises:
            GatewayUnavailable: On network errors, 5xx or 429
            GatewayRequestError: On other 4xx or a non-object JSON body
        """
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayUnavailable(
                f"Gateway timeout during {operation}",
                code="TIMEOUT",
            ) from e
        except httpx.TransportError as e:
            raise GatewayUnavailable(
                f"Gateway connection error during {operation}",
                code="CONNECTION_ERROR",
                error=str(e),
            ) from e

        status_code = response.status_code
        if status_code == 429 or status_code >= 500:
            raise GatewayUnavailable(
                f"Gateway returned {status_code} during {operation}",
                code="RATE_LIMITED" if status_code == 429 else "SERVER_ERROR",
                status_code=status_code,
            )
        if status_code >= 400:
            logger.error(
                "Gateway rejected request",
                operation=operation,
                status_code=status_code,
            )
            raise GatewayRequestError(
                f"Gateway rejected {operation} with {status_code}",
                code="CLIENT_ERROR",
                status_code=status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise GatewayRequestError(
                f"Gateway returned invalid JSON during {operation}",
                code="INVALID_RESPONSE",
                status_code=status_code,
            ) from e

        if not isinstance(data, dict):
            raise GatewayRequestError(
                f"Gateway returned unexpected payload during {operation}",
                code="INVALID_RESPONSE",
                status_code=status_code,
            )
        return data

    async def create_preference(
        self,
        order_id: uuid.UUID,
        items: Sequence[PreferenceItem],
        payer: Payer,
    ) -> Preference:
        """
        Create a payment preference for an order.

        The order id is sent as ``external_reference`` so webhooks can be
        correlated back to the order. One idempotency key is used for every
        retry of the same call.

        Args:
            order_id: Order identifier
            items: Priced preference lines
            payer: Payer contact details

        Returns:
            Preference id and the redirect URL for the payer

        Raises:
            GatewayUnavailable: If retries are exhausted
            GatewayRequestError: If the gateway rejects the request or
                returns an incomplete preference
        """
        body: dict[str, Any] = {
            "items": [
                {
                    "id": item.id,
                    "title": item.title,
                    "quantity": item.quantity,
                    "unit_price": float(cents_to_amount(item.unit_price_cents)),
                    "currency_id": item.currency,
                }
                for item in items
            ],
            "payer": {"name": payer.name, "email": payer.email},
            "external_reference": str(order_id),
            "back_urls": {
                "success": f"{self.public_base_url}/f/success",
                "failure": f"{self.public_base_url}/f/error",
                "pending": f"{self.public_base_url}/f/pending",
            },
            "auto_return": "approved",
        }
        if payer.phone:
            body["payer"]["phone"] = {"number": payer.phone}
        if self.notification_url:
            body["notification_url"] = self.notification_url

        idempotency_key = uuid.uuid4().hex

        logger.info(
            "Creating payment preference",
            order_id=str(order_id),
            item_count=len(items),
        )

        data = await retry_async(
            "create_preference",
            lambda: self._request(
                "create_preference",
                "POST",
                PREFERENCES_PATH,
                json=body,
                headers={"X-Idempotency-Key": idempotency_key},
            ),
            self.preference_policy,
            _is_retryable,
            sleep=self._sleep,
        )

        preference_id = data.get("id")
        init_url = data.get("sandbox_init_point" if self.use_sandbox else "init_point")
        if not preference_id or not init_url:
            logger.error(
                "Incomplete preference response",
                order_id=str(order_id),
                has_id=bool(preference_id),
                has_init_url=bool(init_url),
            )
            raise GatewayRequestError(
                "Gateway returned an incomplete preference",
                code="INCOMPLETE_RESPONSE",
            )

        logger.info(
            "Payment preference created",
            order_id=str(order_id),
            preference_id=str(preference_id),
        )
        return Preference(preference_id=str(preference_id), init_url=str(init_url))

    async def get_payment(
        self,
        payment_id: str,
        deadline: Optional[float] = None,
    ) -> PaymentDetails:
        """
        Fetch current payment details.

        Args:
            payment_id: Gateway payment identifier
            deadline: Optional monotonic deadline for scheduling retries

        Raises:
            GatewayUnavailable: If retries are exhausted
            GatewayRequestError: If the gateway rejects the request or the
                response lacks required fields
        """
        data = await retry_async(
            "get_payment",
            lambda: self._request(
                "get_payment",
                "GET",
                PAYMENTS_PATH.format(payment_id=payment_id),
            ),
            self.lookup_policy,
            _is_retryable,
            deadline=deadline,
            sleep=self._sleep,
        )

        status = data.get("status")
        if data.get("id") is None or not status or data.get("transaction_amount") is None:
            raise GatewayRequestError(
                "Gateway returned an incomplete payment",
                code="INCOMPLETE_RESPONSE",
                payment_id=mask_identifier(payment_id, "pay"),
            )

        external_reference = data.get("external_reference")
        return PaymentDetails(
            payment_id=str(data["id"]),
            status=str(status),
            status_detail=data.get("status_detail"),
            external_reference=str(external_reference) if external_reference else None,
            amount_cents=amount_to_cents(data["transaction_amount"]),
            currency=data.get("currency_id"),
            raw=data,
        )


def create_gateway_client(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> MercadoPagoClient:
    """
    Build the gateway client from application settings.

    Raises:
        GatewayConfigurationError: If credentials are missing
    """
    settings = settings or get_settings()
    return MercadoPagoClient(
        access_token=settings.mp_access_token,
        base_url=settings.mp_api_base_url,
        public_base_url=settings.public_base_url,
        timeout_seconds=settings.gateway_timeout_seconds,
        use_sandbox=not settings.is_production,
        notification_url=settings.mp_notification_url,
        preference_policy=BackoffPolicy.for_preference_creation(settings),
        lookup_policy=BackoffPolicy.for_payment_lookup(settings),
        transport=transport,
    )
