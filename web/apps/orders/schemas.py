"""Pydantic schemas for the orders API.

Request DTOs validate and normalize inbound JSON before anything reaches
the engine; read DTOs shape responses.
"""

import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _check_id(v: str) -> str:
    v2 = v.strip()
    if not ID_RE.match(v2):
        raise ValueError("Invalid identifier format")
    return v2


class ShippingAddressIn(BaseModel):
    """Delivery destination.

    Attributes:
        street: Street line.
        city: City or town.
        postal_code: Postal code, digits only after normalization.
        province: Optional province / region.
        recipient: Optional name on the parcel.
        phone: Optional contact number for the courier.
    """

    street: str = Field(min_length=1, max_length=255)
    city: str = Field(min_length=1, max_length=100)
    postal_code: str = Field(min_length=3, max_length=10)
    province: str = ""
    recipient: str = ""
    phone: str = ""

    @field_validator("postal_code")
    @classmethod
    def validate_postal_code(cls, v: str) -> str:
        v2 = v.replace(" ", "")
        if not v2.isdigit():
            raise ValueError("Postal code must be numeric")
        return v2


class CheckoutDTO(BaseModel):
    """Body of ``POST /api/checkout/``.

    Attributes:
        buyer_id: Purchasing user.
        email: Buyer e-mail for the payment page and notifications.
        book_ids: Listings in cart order; at least one, no duplicates.
        shipping_address: Delivery destination.
        callback_url: Optional override for the provider's redirect.
    """

    buyer_id: str
    email: str = Field(max_length=254)
    book_ids: List[str] = Field(min_length=1, max_length=50)
    shipping_address: ShippingAddressIn
    callback_url: Optional[str] = None

    @field_validator("buyer_id")
    @classmethod
    def validate_buyer(cls, v: str) -> str:
        return _check_id(v)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v2 = v.strip().lower()
        if not EMAIL_RE.match(v2):
            raise ValueError("Invalid e-mail address")
        return v2

    @field_validator("book_ids")
    @classmethod
    def validate_books(cls, v: List[str]) -> List[str]:
        ids = [_check_id(b) for b in v]
        if len(set(ids)) != len(ids):
            raise ValueError("Duplicate book ids")
        return ids


class VerifyPaymentDTO(BaseModel):
    reference: str = Field(min_length=4, max_length=100)


class SellerActionDTO(BaseModel):
    seller_id: str
    reason: str = Field(default="", max_length=255)

    @field_validator("seller_id")
    @classmethod
    def validate_seller(cls, v: str) -> str:
        return _check_id(v)


class RefundDTO(BaseModel):
    reason: str = Field(default="", max_length=255)


class QuoteDTO(BaseModel):
    seller_id: str
    shipping_address: ShippingAddressIn
    item_count: int = Field(default=1, gt=0, le=50)

    @field_validator("seller_id")
    @classmethod
    def validate_seller(cls, v: str) -> str:
        return _check_id(v)


class TrackingEventDTO(BaseModel):
    tracking_number: str = Field(min_length=1, max_length=64)
    status_code: str = Field(min_length=1, max_length=32)
    timestamp: str = ""
    location: str = ""
    event_id: str = Field(default="", max_length=128)


class OrderItemOut(BaseModel):
    book_id: str
    title: str
    price_cents: int


class OrderReadDTO(BaseModel):
    id: str
    status: str
    buyer_id: str
    seller_id: str
    payment_reference: str
    currency: str
    total_cents: int
    items: List[OrderItemOut]
    created_at: datetime
    expires_at: Optional[datetime] = None
    committed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    courier: Optional[str] = None
    tracking_number: Optional[str] = None
    pickup_window: Optional[str] = None
    delivery_fee_cents: Optional[int] = None
    platform_commission_cents: Optional[int] = None
    seller_net_cents: Optional[int] = None
