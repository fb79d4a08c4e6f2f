"""
Order Pydantic schemas for API request/response validation.

Checkout requests arrive as camelCase JSON from the family-facing store;
fields are declared in snake_case and aliased with ``to_camel``.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from schoolphotos.services.orders.enums import OrderStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class ContactInfoRequest(CamelModel):
    """Contact information snapshot taken at checkout."""

    name: str = Field(
        ...,
        min_length=2,
        max_length=200,
        description="Contact name",
    )
    email: str = Field(
        ...,
        min_length=3,
        max_length=255,
        description="Contact email address",
    )
    phone: Optional[str] = Field(
        None,
        max_length=30,
        description="Contact phone number",
    )
    address: Optional[str] = Field(
        None,
        max_length=500,
        description="Postal address for physical prints",
    )

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, v: str) -> str:
        """Validate email format."""
        if "@" not in v or "." not in v.split("@")[-1]:
            raise ValueError("Invalid email format")
        return v.lower()

    @field_validator("phone")
    @classmethod
    def validate_phone_format(cls, v: Optional[str]) -> Optional[str]:
        """Validate phone number has enough digits."""
        if v is None:
            return v
        digits = "".join(filter(str.isdigit, v))
        if len(digits) < 6:
            raise ValueError("Phone number must contain at least 6 digits")
        return v


class CheckoutItemRequest(CamelModel):
    photo_id: UUID = Field(..., description="Photo the item is bought for")
    price_list_item_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Catalog entry identifier",
    )
    quantity: int = Field(..., ge=1, le=10, description="Number of copies")
    price: Optional[int] = Field(
        None,
        ge=0,
        description="Client-side unit price in minor units; verified, never trusted",
    )


class CheckoutRequest(CamelModel):
    """Request schema for family checkout."""

    token: str = Field(
        ...,
        min_length=20,
        max_length=255,
        description="Gallery access token",
    )
    contact_info: ContactInfoRequest
    items: list[CheckoutItemRequest] = Field(
        ...,
        min_length=1,
        max_length=50,
        description="Cart lines",
    )


class CheckoutResponse(CamelModel):
    order_id: UUID
    order_number: str
    total_cents: int
    currency: str
    preference_id: str
    init_url: str


class OrderItemResponse(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    id: UUID
    photo_id: UUID
    price_list_item_id: str
    label: Optional[str] = None
    quantity: int
    unit_price_cents: int
    line_total_cents: int


class OrderResponse(CamelModel):
    """Order state as seen by admin tooling."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    id: UUID
    order_number: str
    event_id: UUID
    subject_id: UUID
    status: OrderStatus
    total_cents: int
    currency: str
    gateway_preference_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_status: Optional[str] = None
    gateway_status_detail: Optional[str] = None
    approved_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: list[OrderItemResponse] = Field(default_factory=list)


class OrderStatusUpdateRequest(BaseModel):
    status: OrderStatus = Field(..., description="Target order status")


class OrderStatusResponse(BaseModel):
    status: OrderStatus
