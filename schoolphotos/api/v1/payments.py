"""
Payment gateway webhook endpoint.

The body is read raw so the HMAC signature can be checked over the exact
bytes the gateway sent. Deferred work returned by the receiver is scheduled
with ``BackgroundTasks`` and runs after the acknowledgement is sent.
"""

from typing import Annotated, Optional, Union

from fastapi import APIRouter, BackgroundTasks, Header, Request
from fastapi.responses import JSONResponse

from schoolphotos.api.deps import WebhookReceiverDep
from schoolphotos.schemas.payments import WebhookAcknowledgement

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "/webhook",
    response_model=WebhookAcknowledgement,
    summary="Payment notification webhook",
    responses={
        400: {"description": "Unparseable notification body"},
        401: {"description": "Missing or invalid signature"},
        503: {"description": "Notification could not be processed; redeliver"},
    },
)
async def payment_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    receiver: WebhookReceiverDep,
    x_signature: Annotated[Optional[str], Header()] = None,
) -> Union[WebhookAcknowledgement, JSONResponse]:
    raw_body = await request.body()

    outcome = await receiver.handle(
        raw_body,
        x_signature,
        dict(request.query_params),
    )

    for task in outcome.deferred:
        background_tasks.add_task(task.func, **task.kwargs)

    if outcome.status_code != 200:
        return JSONResponse(
            status_code=outcome.status_code,
            content={"detail": outcome.body},
            background=background_tasks,
        )

    return WebhookAcknowledgement(**outcome.body)
