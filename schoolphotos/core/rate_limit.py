"""
Client-address rate limiting with SlowAPI.

Limiter state lives in the storage configured by ``APP_RATE_LIMIT_STORAGE_URI``.
The default ``memory://`` storage is process-wide and is reset whenever the
process restarts; deployments running several instances should point it at a
shared store (e.g. ``redis://``) so limits apply across instances.
"""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from schoolphotos.core.config import get_settings


def get_client_address(request: Request) -> str:
    """Client address, honouring the first X-Forwarded-For hop behind a proxy."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return get_remote_address(request)


def checkout_rate_limit() -> str:
    return get_settings().checkout_rate_limit


def create_limiter() -> Limiter:
    settings = get_settings()
    return Limiter(
        key_func=get_client_address,
        storage_uri=settings.rate_limit_storage_uri,
        enabled=settings.rate_limit_enabled,
    )


limiter = create_limiter()
