"""
Payment webhook schemas.

The notification envelope is parsed by hand from the raw body (the signature
covers the exact bytes), so only the acknowledgement is modelled here.
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field


class WebhookAcknowledgement(BaseModel):
    """Response returned to the gateway for an accepted notification."""

    status: Literal["processed", "accepted", "ignored", "failed"] = Field(
        ...,
        description="processed: reconciled now; accepted: deferred; "
        "ignored: nothing to reconcile; failed: terminal, operators alerted",
    )
    message: Optional[str] = Field(
        None,
        description="Transition summary when processed",
    )
