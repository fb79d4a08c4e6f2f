"""
FastAPI dependencies for authorization, sessions and services.

Admin endpoints are protected by a bearer JWT carrying ``role: admin``.
Long-lived collaborators (gateway client, webhook receiver) are built once in
the application lifespan and read from ``app.state``.
"""

from typing import Annotated, Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from schoolphotos.core.logging import get_logger
from schoolphotos.core.security import TokenError, decode_token
from schoolphotos.database.connection import get_db
from schoolphotos.services.orders.service import OrderService
from schoolphotos.services.payments.gateway_client import MercadoPagoClient
from schoolphotos.services.payments.webhook import WebhookReceiver

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)

ADMIN_ROLE = "admin"


async def require_admin(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Dict[str, Any]:
    """
    Validate the bearer token and require the admin role.

    Returns:
        Decoded token claims

    Raises:
        HTTPException: 401 if the token is missing or invalid, 403 if the
            token does not carry the admin role
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"message": "Could not validate credentials", "code": "UNAUTHORIZED"},
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        logger.warning("Authentication failed: No credentials provided")
        raise credentials_exception

    try:
        claims = decode_token(credentials.credentials)
    except TokenError as e:
        logger.warning("Authentication failed", code=e.code)
        raise credentials_exception from e

    if claims.get("sub") is None:
        logger.warning("Authentication failed: Token missing 'sub' claim")
        raise credentials_exception

    if claims.get("role") != ADMIN_ROLE:
        logger.warning(
            "Authorization failed: admin role required",
            subject=claims.get("sub"),
            role=claims.get("role"),
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": "Admin role required", "code": "FORBIDDEN"},
        )

    return claims


def get_gateway_client(request: Request) -> MercadoPagoClient:
    return request.app.state.gateway_client


def get_webhook_receiver(request: Request) -> WebhookReceiver:
    return request.app.state.webhook_receiver


async def get_order_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway_client: Annotated[MercadoPagoClient, Depends(get_gateway_client)],
) -> OrderService:
    return OrderService(db, gateway_client)


CurrentAdmin = Annotated[Dict[str, Any], Depends(require_admin)]
OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]
WebhookReceiverDep = Annotated[WebhookReceiver, Depends(get_webhook_receiver)]
