"""Pydantic schemas for the orders and payments API.

Request schemas accept the field-name variants storefront clients send
(``product_id``/``productId``, ``phone_number``/``phone``, a prebuilt
``shipping_address`` or its parts) and normalize them into the domain
commands, so the core only ever sees one shape. Client-supplied prices are
ignored. Response schemas render domain ``Order`` objects.
"""

from datetime import datetime
from typing import Optional

from django.conf import settings
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from .domain import LineItemRequest, Order, PlaceOrderCommand
from .payments import MobileCheckout


class LineItemIn(BaseModel):
    """One requested line item.

    Attributes:
        product_id: Catalog product id (``productId`` also accepted).
        quantity: Positive number of units.
    """

    model_config = ConfigDict(extra="ignore")

    product_id: str = Field(min_length=1, max_length=64, validation_alias=AliasChoices("product_id", "productId"))
    quantity: int = Field(gt=0)


class CheckoutIn(BaseModel):
    """Checkout body shared by immediate orders and mobile-money initiation."""

    model_config = ConfigDict(extra="ignore")

    items: list[LineItemIn]
    shipping_address: Optional[str] = None
    address_line_1: Optional[str] = None
    place: Optional[str] = None
    city: Optional[str] = None
    payment_method: str = ""
    currency: Optional[str] = None
    notes: str = ""
    email: Optional[str] = Field(default=None, validation_alias=AliasChoices("email", "customer_email", "contact_email"))
    phone: Optional[str] = Field(default=None, validation_alias=AliasChoices("customer_phone", "contact_phone"))

    @model_validator(mode="before")
    @classmethod
    def unwrap_order_data(cls, data):
        """Accept the checkout nested under ``order_data``."""
        if isinstance(data, dict) and isinstance(data.get("order_data"), dict):
            merged = dict(data["order_data"])
            merged.update({k: v for k, v in data.items() if k != "order_data"})
            return merged
        return data

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Upper-case the code and check it against ``SUPPORTED_CURRENCIES``."""
        if v is None:
            return v
        v2 = v.strip().upper()
        if v2 not in getattr(settings, "SUPPORTED_CURRENCIES", {"TZS"}):
            raise ValueError("Unsupported currency")
        return v2

    def composed_address(self) -> Optional[str]:
        if self.shipping_address and self.shipping_address.strip():
            return self.shipping_address.strip()
        parts = [p.strip() for p in (self.address_line_1 or self.place, self.city) if p and p.strip()]
        return ", ".join(parts) or None

    def to_command(self) -> PlaceOrderCommand:
        return PlaceOrderCommand(
            items=tuple(LineItemRequest(i.product_id, i.quantity) for i in self.items),
            shipping_address=self.composed_address(),
            payment_method=self.payment_method.strip(),
            currency=self.currency or getattr(settings, "DEFAULT_CURRENCY", "TZS"),
            notes=self.notes.strip(),
            customer_email=self.email,
            customer_phone=self.phone,
        )


class MobileInitiateIn(CheckoutIn):
    """Mobile-money initiation body.

    Attributes:
        provider: Mobile-money provider name (e.g. ``M-Pesa``).
        phone_number: Payer phone (``phone`` also accepted).
        amount_cents: Optional total the client displayed, in minor units
            (``amount`` also accepted). Only compared with the validated total.
    """

    provider: str = Field(min_length=1)
    phone_number: str = Field(min_length=1, validation_alias=AliasChoices("phone_number", "phone"))
    amount_cents: Optional[int] = Field(default=None, ge=0, validation_alias=AliasChoices("amount_cents", "amount"))

    def to_checkout(self) -> MobileCheckout:
        return MobileCheckout(
            command=self.to_command(),
            provider=self.provider.strip(),
            phone_number=self.phone_number,
            amount_cents=self.amount_cents,
        )


class StatusChangeIn(BaseModel):
    status: str = Field(min_length=1)
    reason: Optional[str] = Field(default=None, max_length=2000)


class OrderPatchIn(BaseModel):
    """Fields a customer may change while the order is ``pending``."""

    model_config = ConfigDict(extra="forbid")

    shipping_address: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=2000)

    def to_fields(self) -> dict:
        return self.model_dump(exclude_unset=True)


class ReferenceIn(BaseModel):
    reference: str = Field(min_length=1, max_length=64)


class ReconcileIn(BaseModel):
    """Reconcile sweep options; defaults come from settings."""

    older_than_secs: Optional[int] = Field(default=None, ge=0)
    limit: int = Field(default=50, ge=1, le=500)


class WebhookIn(BaseModel):
    """Provider completion callback.

    ``order_id`` is our transaction reference (it is what we sent the
    provider as its order id).
    """

    model_config = ConfigDict(extra="ignore")

    order_id: str = Field(min_length=1)
    payment_status: str = Field(min_length=1)
    reference: Optional[str] = None
    transid: Optional[str] = None


# ---- Responses ----
class OrderItemOut(BaseModel):
    product_id: str
    quantity: int
    price_cents: int
    line_total_cents: int


class OrderOut(BaseModel):
    id: str
    number: Optional[int] = None
    status: str
    payment_status: str
    total_cents: int
    currency: str
    payment_method: str
    shipping_address: str
    notes: str
    items: list[OrderItemOut]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, order: Order) -> "OrderOut":
        return cls(
            id=str(order.id),
            number=order.number,
            status=order.status.value,
            payment_status=order.payment_status.value,
            total_cents=order.total_cents,
            currency=order.currency,
            payment_method=order.payment_method,
            shipping_address=order.shipping_address,
            notes=order.notes,
            items=[
                OrderItemOut(
                    product_id=li.product_id,
                    quantity=li.quantity,
                    price_cents=li.price_cents,
                    line_total_cents=li.line_total_cents,
                )
                for li in order.items
            ],
            created_at=order.created_at,
            updated_at=order.updated_at,
            paid_at=order.paid_at,
        )


def render_order(order: Order) -> dict:
    return OrderOut.from_domain(order).model_dump(mode="json")
