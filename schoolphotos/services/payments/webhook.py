"""
Webhook receiver for gateway payment notifications.

The receiver verifies the HMAC signature over the raw body, extracts the
payment id and runs reconciliation inside the acknowledgement budget. Once
the fast-path share of the budget is spent, remaining work (background
reconciliation retries, detailed audit logging) is handed back to the caller
to run after the response has been sent.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from schoolphotos.core.config import Settings, get_settings
from schoolphotos.core.logging import get_logger, mask_identifier
from schoolphotos.core.security import SecurityError, verify_signature
from schoolphotos.services.payments.reconciliation import (
    ReconcileResult,
    ReconciliationRetrier,
)

logger = get_logger(__name__)

PAYMENT_NOTIFICATION_TYPES = frozenset({"payment"})


class WebhookPayloadError(Exception):
    """Raised when a notification body cannot be parsed."""

    pass


class WebhookVerifier:
    """Constant-time HMAC-SHA256 verification of notification bodies."""

    def __init__(self, secret: Optional[str]):
        if not secret:
            raise SecurityError(
                "Webhook secret is not configured",
                code="MISSING_WEBHOOK_SECRET",
            )
        self._secret = secret

    def verify(self, body: bytes, signature_header: Optional[str]) -> bool:
        return verify_signature(body, signature_header, self._secret)


def parse_payload(raw_body: bytes) -> dict[str, Any]:
    """
    Parse a notification envelope.

    An empty body is accepted as an empty envelope, since the query-string
    notification variant carries everything in the URL.

    Raises:
        WebhookPayloadError: If the body is not a JSON object
    """
    if not raw_body or not raw_body.strip():
        return {}
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise WebhookPayloadError("Notification body is not valid JSON") from e
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Notification body must be a JSON object")
    return payload


def extract_payment_id(
    payload: Mapping[str, Any],
    query_params: Mapping[str, str],
) -> Optional[str]:
    """Return the payment id from ``data.id``, or from the query string."""
    data = payload.get("data")
    if isinstance(data, Mapping):
        value = data.get("id")
        if value not in (None, ""):
            return str(value)

    for key in ("data.id", "id"):
        value = query_params.get(key)
        if value:
            return value
    return None


def notification_type(
    payload: Mapping[str, Any],
    query_params: Mapping[str, str],
) -> Optional[str]:
    value = payload.get("type") or query_params.get("type") or query_params.get("topic")
    return str(value) if value else None


class WebhookBudget:
    """
    Tracks time spent against the acknowledgement budget.

    Attributes:
        started_at: Monotonic time the request started
        budget_seconds: Time the gateway waits for an acknowledgement
        fast_path_seconds: Elapsed time after which only fast-path work runs
    """

    def __init__(
        self,
        budget_seconds: float,
        fast_path_ratio: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self.started_at = clock()
        self.budget_seconds = budget_seconds
        self.fast_path_seconds = budget_seconds * fast_path_ratio

    @property
    def elapsed(self) -> float:
        return self._clock() - self.started_at

    @property
    def fast_path_deadline(self) -> float:
        return self.started_at + self.fast_path_seconds

    def fast_path_remaining(self) -> float:
        return max(self.fast_path_seconds - self.elapsed, 0.0)

    def fast_path_exhausted(self) -> bool:
        return self.elapsed >= self.fast_path_seconds


@dataclass
class DeferredTask:
    func: Callable[..., Any]
    kwargs: dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookOutcome:
    """HTTP status, response body and work to run after responding."""

    status_code: int
    body: dict[str, Any]
    deferred: list[DeferredTask] = field(default_factory=list)


def log_audit(event: str, **fields: Any) -> None:
    logger.info("Webhook audit", audit_event=event, **fields)


class WebhookReceiver:
    """
    Handles one webhook delivery end to end.

    Attributes:
        verifier: Signature verifier
        retrier: Reconciliation retrier
        settings: Application settings (budget, background retry toggle)
    """

    def __init__(
        self,
        verifier: WebhookVerifier,
        retrier: ReconciliationRetrier,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.verifier = verifier
        self.retrier = retrier
        self.settings = settings or get_settings()
        self._clock = clock

    async def handle(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        query_params: Mapping[str, str],
    ) -> WebhookOutcome:
        """
        Verify, parse and reconcile one notification.

        Args:
            raw_body: Raw request body, exactly as received
            signature_header: Value of the ``X-Signature`` header
            query_params: Request query parameters

        Returns:
            401 on a bad signature, 400 on an unparseable body, 503 when
            reconciliation could not finish and no background retry will
            follow, 200 otherwise
        """
        budget = WebhookBudget(
            self.settings.webhook_timeout_budget_seconds,
            self.settings.webhook_fast_path_ratio,
            clock=self._clock,
        )

        if not self.verifier.verify(raw_body, signature_header):
            logger.warning(
                "Webhook signature rejected",
                has_signature=bool(signature_header),
                body_bytes=len(raw_body),
            )
            return WebhookOutcome(
                status_code=401,
                body={"message": "Invalid signature", "code": "INVALID_SIGNATURE"},
            )

        try:
            payload = parse_payload(raw_body)
        except WebhookPayloadError as e:
            logger.warning("Webhook body rejected", error=str(e))
            return WebhookOutcome(
                status_code=400,
                body={"message": "Invalid notification body", "code": "INVALID_BODY"},
            )

        kind = notification_type(payload, query_params)
        payment_id = extract_payment_id(payload, query_params)

        if payment_id is None or (kind and kind not in PAYMENT_NOTIFICATION_TYPES):
            outcome = WebhookOutcome(status_code=200, body={"status": "ignored"})
            self._audit(
                outcome,
                budget,
                "notification_ignored",
                notification_type=kind,
                has_payment_id=payment_id is not None,
            )
            return outcome

        masked_id = mask_identifier(payment_id, "pay")
        background = self.settings.webhook_background_retry_enabled
        result = await self._reconcile_within_budget(payment_id, budget, background)

        if result.success:
            outcome = WebhookOutcome(
                status_code=200,
                body={"status": "processed", "message": result.message},
            )
        elif result.retryable and background:
            outcome = WebhookOutcome(status_code=200, body={"status": "accepted"})
            outcome.deferred.append(
                DeferredTask(
                    self.retrier.run_in_background,
                    {"gateway_payment_id": payment_id},
                )
            )
            logger.info(
                "Reconciliation deferred past acknowledgement",
                payment_id=masked_id,
                elapsed_seconds=round(budget.elapsed, 3),
            )
        elif result.retryable:
            outcome = WebhookOutcome(
                status_code=503,
                body={
                    "message": "Notification could not be processed",
                    "code": "RECONCILIATION_UNAVAILABLE",
                },
            )
        else:
            outcome = WebhookOutcome(status_code=200, body={"status": "failed"})

        self._audit(
            outcome,
            budget,
            "notification_handled",
            payment_id=masked_id,
            success=result.success,
            duplicate=result.duplicate,
            status_code=outcome.status_code,
        )
        return outcome

    async def _reconcile_within_budget(
        self,
        payment_id: str,
        budget: WebhookBudget,
        background: bool,
    ) -> ReconcileResult:
        remaining = budget.fast_path_remaining()
        if remaining <= 0:
            return ReconcileResult(
                success=False, message="Budget exhausted", retryable=True
            )

        try:
            return await asyncio.wait_for(
                self.retrier.run(
                    payment_id,
                    deadline=budget.fast_path_deadline,
                    escalate=not background,
                ),
                timeout=remaining,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Reconciliation exceeded acknowledgement budget",
                payment_id=mask_identifier(payment_id, "pay"),
                budget_seconds=budget.budget_seconds,
            )
            return ReconcileResult(
                success=False, message="Budget exhausted", retryable=True
            )

    def _audit(
        self,
        outcome: WebhookOutcome,
        budget: WebhookBudget,
        event: str,
        **fields: Any,
    ) -> None:
        fields["elapsed_seconds"] = round(budget.elapsed, 3)
        if budget.fast_path_exhausted():
            outcome.deferred.append(
                DeferredTask(log_audit, {"event": event, **fields})
            )
        else:
            log_audit(event, **fields)
