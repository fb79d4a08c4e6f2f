"""
Order API endpoints.

Families create orders through checkout using a gallery access token; admin
tooling reads orders and marks approved orders as delivered.
"""

from uuid import UUID

from fastapi import APIRouter, HTTPException, Request, status

from schoolphotos.api.deps import CurrentAdmin, OrderServiceDep
from schoolphotos.core.logging import get_logger
from schoolphotos.core.rate_limit import checkout_rate_limit, limiter
from schoolphotos.schemas.orders import (
    CheckoutRequest,
    CheckoutResponse,
    OrderResponse,
    OrderStatusResponse,
    OrderStatusUpdateRequest,
)
from schoolphotos.services.orders.repository import (
    OrderNotFoundError,
    OrderRepositoryError,
)
from schoolphotos.services.orders.service import (
    CartItem,
    DuplicatePendingOrderError,
    EventClosedError,
    OrderProcessingError,
    OrderValidationError,
    PriceMismatchError,
    TokenNotFoundError,
)
from schoolphotos.services.orders.state_machine import StateTransitionError
from schoolphotos.services.payments.gateway_client import (
    GatewayError,
    GatewayUnavailable,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


def _error(status_code: int, message: str, code: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"message": message, "code": code},
    )


@router.post(
    "",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create order",
    description="Validate a cart against the catalog, create a pending order "
    "and return the payment redirect URL",
)
@limiter.limit(checkout_rate_limit)
async def create_order(
    request: Request,
    payload: CheckoutRequest,
    order_service: OrderServiceDep,
) -> CheckoutResponse:
    """
    Create a pending order and its payment preference.

    Raises:
        HTTPException: 404 unknown token, 403 closed event, 422 invalid cart
            or price mismatch, 409 pending order exists, 503 gateway
            unavailable, 502 gateway rejected, 500 persistence failure
    """
    logger.info("Checkout requested", item_count=len(payload.items))

    items = [
        CartItem(
            photo_id=item.photo_id,
            price_list_item_id=item.price_list_item_id,
            quantity=item.quantity,
            price_cents=item.price,
        )
        for item in payload.items
    ]

    try:
        result = await order_service.create_order(
            token=payload.token,
            contact_info=payload.contact_info.model_dump(exclude_none=True),
            items=items,
        )
    except TokenNotFoundError:
        raise _error(
            status.HTTP_404_NOT_FOUND,
            "Access token not found or expired",
            "TOKEN_NOT_FOUND",
        )
    except EventClosedError:
        raise _error(
            status.HTTP_403_FORBIDDEN,
            "This gallery is not accepting purchases",
            "EVENT_CLOSED",
        )
    except PriceMismatchError:
        raise _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Cart prices do not match the current price list",
            "PRICE_MISMATCH",
        )
    except OrderValidationError as e:
        raise _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            str(e),
            "INVALID_CART",
        )
    except DuplicatePendingOrderError:
        raise _error(
            status.HTTP_409_CONFLICT,
            "A pending order already exists",
            "PENDING_ORDER_EXISTS",
        )
    except GatewayUnavailable:
        raise _error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "Payment service unavailable, please try again",
            "PAYMENT_UNAVAILABLE",
        )
    except GatewayError as e:
        logger.error("Payment preference rejected", code=e.code)
        raise _error(
            status.HTTP_502_BAD_GATEWAY,
            "Payment could not be started",
            "PAYMENT_ERROR",
        )
    except OrderProcessingError as e:
        logger.error("Checkout failed", error=str(e))
        raise _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Order could not be created",
            "ORDER_ERROR",
        )

    return CheckoutResponse(
        order_id=result.order_id,
        order_number=result.order_number,
        total_cents=result.total_cents,
        currency=result.currency,
        preference_id=result.preference_id,
        init_url=result.init_url,
    )


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
)
async def get_order(
    order_id: UUID,
    admin: CurrentAdmin,
    order_service: OrderServiceDep,
) -> OrderResponse:
    try:
        order = await order_service.get_order(order_id)
    except OrderNotFoundError:
        raise _error(status.HTTP_404_NOT_FOUND, "Order not found", "ORDER_NOT_FOUND")
    except OrderRepositoryError as e:
        logger.error("Order lookup failed", order_id=str(order_id), error=str(e))
        raise _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Order could not be loaded",
            "ORDER_ERROR",
        )

    return OrderResponse.model_validate(order)


@router.patch(
    "/{order_id}",
    response_model=OrderStatusResponse,
    summary="Update order status",
    description="Administrative status change; only approved -> delivered is accepted",
)
async def update_order_status(
    order_id: UUID,
    payload: OrderStatusUpdateRequest,
    admin: CurrentAdmin,
    order_service: OrderServiceDep,
) -> OrderStatusResponse:
    """
    Apply an administrative status change.

    Raises:
        HTTPException: 404 unknown order, 409 transition not allowed,
            500 persistence failure
    """
    try:
        order = await order_service.update_status(order_id, payload.status)
    except OrderNotFoundError:
        raise _error(status.HTTP_404_NOT_FOUND, "Order not found", "ORDER_NOT_FOUND")
    except StateTransitionError as e:
        logger.warning(
            "Admin transition rejected",
            order_id=str(order_id),
            current_status=e.current_state.value,
            target_status=e.target_state.value,
        )
        raise _error(
            status.HTTP_409_CONFLICT,
            f"Cannot change order from {e.current_state.value} to "
            f"{e.target_state.value}",
            "INVALID_TRANSITION",
        )
    except OrderRepositoryError as e:
        logger.error("Order update failed", order_id=str(order_id), error=str(e))
        raise _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Order could not be updated",
            "ORDER_ERROR",
        )

    logger.info(
        "Order status updated by admin",
        order_id=str(order_id),
        status=order.status.value,
        admin=admin.get("sub"),
    )
    return OrderStatusResponse(status=order.status)
