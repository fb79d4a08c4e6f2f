"""
Security utilities for webhook signatures and admin JWT tokens.

This module provides:
- HMAC-SHA256 webhook signature computation and constant-time verification
- JWT token creation and validation for administrative endpoints
"""

import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from schoolphotos.core.config import get_settings
from schoolphotos.core.logging import get_logger

logger = get_logger(__name__)

SIGNATURE_SCHEME = "v1"
ACCESS_TOKEN_EXPIRE_MINUTES = 60


class SecurityError(Exception):
    """Base exception for security-related errors."""

    def __init__(self, message: str, code: str, **context):
        super().__init__(message)
        self.code = code
        self.context = context


class TokenError(SecurityError):
    """Exception raised for token-related errors."""
    pass


def compute_signature(body: bytes, secret: str) -> str:
    """Compute the lowercase hex HMAC-SHA256 of a raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def format_signature_header(body: bytes, secret: str) -> str:
    """Build an ``X-Signature`` header value for a body."""
    return f"{SIGNATURE_SCHEME}={compute_signature(body, secret)}"


def parse_signature_header(header: Optional[str]) -> Optional[str]:
    """
    Extract the hex digest from a signature header.

    Accepts ``v1=<hex>`` and a bare ``<hex>`` digest. Returns None for
    missing, empty or other-scheme values.
    """
    if not header:
        return None

    value = header.strip()
    if "=" in value:
        scheme, _, digest = value.partition("=")
        if scheme.strip() != SIGNATURE_SCHEME:
            return None
        value = digest.strip()

    return value.lower() or None


def verify_signature(body: bytes, header: Optional[str], secret: str) -> bool:
    """
    Verify a webhook signature header against the raw body.

    The comparison is constant-time regardless of where the digests differ.

    Args:
        body: Raw request body bytes, exactly as received
        header: ``X-Signature`` header value
        secret: Shared webhook secret

    Returns:
        True if the signature matches
    """
    provided = parse_signature_header(header)
    if provided is None:
        return False

    expected = compute_signature(body, secret)
    return hmac.compare_digest(
        expected.encode("ascii"),
        provided.encode("ascii", errors="replace"),
    )


def create_access_token(
    data: Dict[str, Any],
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a JWT access token with expiration.

    Args:
        data: Dictionary of claims to encode in the token
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string

    Example:
        >>> token = create_access_token({"sub": "ops@example.com", "role": "admin"})
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))

    to_encode = data.copy()
    to_encode.update({"exp": expire, "iat": now, "type": "access"})

    return jwt.encode(
        to_encode,
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT token.

    Args:
        token: JWT token string to decode

    Returns:
        Dictionary of decoded token claims

    Raises:
        TokenError: If token is invalid, expired, or malformed
    """
    if not token:
        raise TokenError("Token cannot be empty", code="EMPTY_TOKEN")

    settings = get_settings()

    try:
        return jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError as e:
        logger.warning("Token has expired", error=str(e))
        raise TokenError("Token has expired", code="TOKEN_EXPIRED") from e
    except JWTError as e:
        logger.warning(
            "Invalid token",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise TokenError(
            "Invalid token",
            code="TOKEN_INVALID",
            original_error=str(e),
        ) from e
