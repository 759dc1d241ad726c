"""Domain models, ports and services for orders.

This module contains the dataclasses the core passes around, the order
status state machine, protocol definitions (ports) for the collaborators
the core depends on (catalog, notifications, cache invalidation), the
pricing validator and the ``OrderService`` that drives customer-facing
order operations. It does not talk to the database or the network
directly; persistence is handed in as an ``OrderRepository``.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional, Protocol

from .errors import (
    AlreadyPaid,
    Forbidden,
    IllegalTransition,
    InsufficientStock,
    InvalidInput,
    ProductNotFound,
    ShippingAddressRequired,
    Unauthorized,
)


# ---- Enums ----
class OrderStatus(str, Enum):
    """Lifecycle status of an order.

    ``DELIVERED`` and ``CANCELLED`` are terminal."""

    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


# ---- State machine ----
ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


def check_transition(current: OrderStatus | str, new: OrderStatus | str) -> OrderStatus:
    """Validate a status change against ``ALLOWED_TRANSITIONS``.

    Args:
        current: Status the order is in now.
        new: Requested status.

    Returns:
        OrderStatus: ``new`` as an enum member.

    Raises:
        IllegalTransition: When the pair is not in the table. The error
            reports the attempted from/to pair.
    """
    current = OrderStatus(current)
    new = OrderStatus(new)
    if new not in ALLOWED_TRANSITIONS[current]:
        raise IllegalTransition(current.value, new.value)
    return new


def append_note(existing: str | None, reason: str | None) -> str:
    """Return ``existing`` with ``reason`` appended on its own line."""
    existing = (existing or "").strip()
    if not reason or not str(reason).strip():
        return existing
    reason = str(reason).strip()
    return f"{existing}\n{reason}" if existing else reason


# ---- Payment method families ----
MOBILE_MONEY_PROVIDERS = ("M-Pesa", "Tigo Pesa", "Airtel Money", "Halopesa")


def is_mobile_money(payment_method: str | None) -> bool:
    """True when the free-text payment method needs provider pre-authorization."""
    text = (payment_method or "").lower()
    if "mobile" in text:
        return True
    return any(p.lower() in text for p in MOBILE_MONEY_PROVIDERS)


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class Identity:
    """The caller as resolved by the identity collaborator."""

    id: str
    email: Optional[str] = None
    is_admin: bool = False


def require_identity(identity: Optional[Identity]) -> Identity:
    if identity is None or not identity.id:
        raise Unauthorized()
    return identity


def require_admin(identity: Optional[Identity]) -> Identity:
    identity = require_identity(identity)
    if not identity.is_admin:
        raise Forbidden()
    return identity


@dataclass(frozen=True)
class LineItemRequest:
    """A (product, quantity) pair as submitted by the client."""

    product_id: str
    quantity: int


@dataclass(frozen=True)
class CatalogEntry:
    """Current price/stock of a product, read at validation time only.

    Attributes:
        id: Product identifier.
        price_cents: Current unit price in minor units.
        stock_quantity: Units in stock, or None when stock is not tracked.
    """

    id: str
    price_cents: int
    stock_quantity: Optional[int] = None


@dataclass(frozen=True)
class PricedLineItem:
    """A line item carrying the server-side snapshot price."""

    product_id: str
    quantity: int
    price_cents: int

    @property
    def line_total_cents(self) -> int:
        return self.price_cents * self.quantity


@dataclass(frozen=True)
class PricedOrder:
    line_items: tuple[PricedLineItem, ...]
    total_cents: int


@dataclass(frozen=True)
class PlaceOrderCommand:
    """Normalized checkout input, produced by the API schemas.

    Attributes:
        items: Requested line items.
        shipping_address: Denormalized address string, or None when the
            client supplied nothing usable.
        payment_method: Free-text payment method descriptor.
        currency: ISO currency code.
        notes: Optional customer notes.
        customer_email: Contact e-mail for notifications.
        customer_phone: Contact phone for notifications.
    """

    items: tuple[LineItemRequest, ...]
    shipping_address: Optional[str]
    payment_method: str
    currency: str
    notes: str = ""
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None


@dataclass(frozen=True)
class OrderDraft:
    """Everything needed to insert an order, already priced.

    For mobile money the draft is captured at initiation time and stored
    on the payment transaction, so the order created after confirmation
    uses exactly the data the payer approved.
    """

    user_id: str
    line_items: tuple[PricedLineItem, ...]
    total_cents: int
    currency: str
    payment_method: str
    shipping_address: str
    notes: str = ""
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    checkout_id: Optional[str] = None

    @classmethod
    def build(cls, identity: Identity, command: PlaceOrderCommand, priced: PricedOrder) -> "OrderDraft":
        return cls(
            user_id=identity.id,
            line_items=priced.line_items,
            total_cents=priced.total_cents,
            currency=command.currency,
            payment_method=command.payment_method,
            shipping_address=command.shipping_address or "",
            notes=command.notes or "",
            customer_email=command.customer_email or identity.email,
            customer_phone=command.customer_phone,
        )

    def with_checkout(self, checkout_id: str) -> "OrderDraft":
        return replace(self, checkout_id=checkout_id)

    def to_payload(self) -> dict:
        """JSON-serializable form stored on the payment transaction."""
        return {
            "user_id": self.user_id,
            "line_items": [
                {"product_id": li.product_id, "quantity": li.quantity, "price_cents": li.price_cents}
                for li in self.line_items
            ],
            "total_cents": self.total_cents,
            "currency": self.currency,
            "payment_method": self.payment_method,
            "shipping_address": self.shipping_address,
            "notes": self.notes,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
        }

    @classmethod
    def from_payload(cls, payload: dict, checkout_id: Optional[str] = None) -> "OrderDraft":
        return cls(
            user_id=payload["user_id"],
            line_items=tuple(
                PricedLineItem(li["product_id"], int(li["quantity"]), int(li["price_cents"]))
                for li in payload["line_items"]
            ),
            total_cents=int(payload["total_cents"]),
            currency=payload["currency"],
            payment_method=payload["payment_method"],
            shipping_address=payload["shipping_address"],
            notes=payload.get("notes") or "",
            customer_email=payload.get("customer_email"),
            customer_phone=payload.get("customer_phone"),
            checkout_id=checkout_id,
        )


@dataclass
class Order:
    """Persisted order as seen by the core."""

    id: str
    user_id: str
    items: List[PricedLineItem]
    total_cents: int
    currency: str
    payment_method: str
    status: OrderStatus
    payment_status: PaymentStatus
    shipping_address: str
    notes: str = ""
    number: Optional[int] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    checkout_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    extra: dict = field(default_factory=dict)


# ---- Ports (DIP) ----
class CatalogPort(Protocol):
    """Read access to the live catalog."""

    def get_products(self, ids: Iterable[str]) -> List[CatalogEntry]:
        """Return the current snapshot for the given product ids.

        Unknown (or inactive) ids are simply absent from the result.
        """
        raise NotImplementedError()


class NotifierPort(Protocol):
    """Outbound customer/admin notifications (e-mail, SMS)."""

    def notify_order_created(self, order: Order) -> None:
        raise NotImplementedError()

    def notify_payment_success(self, order: Order, transaction_reference: str, payment_method: str) -> None:
        raise NotImplementedError()

    def notify_status_changed(self, order: Order, previous_status: str) -> None:
        raise NotImplementedError()


class CacheInvalidatorPort(Protocol):
    """Cache/CDN tag invalidation."""

    def invalidate(self, tags: List[str]) -> None:
        raise NotImplementedError()


# ---- Pricing ----
class PricingValidator:
    """Re-price client line items against the catalog snapshot.

    The client never supplies prices to this class; the snapshot price is
    the only price used, which keeps totals tamper-proof.
    """

    def __init__(self, catalog: CatalogPort):
        self.catalog = catalog

    def validate(self, items: Iterable[LineItemRequest]) -> PricedOrder:
        """Price and stock-check the requested items.

        Args:
            items: Requested line items; must be non-empty, each with a
                product id and a positive quantity.

        Returns:
            PricedOrder: Per-line snapshot prices and their exact sum.

        Raises:
            InvalidInput: Empty item list or malformed item.
            ProductNotFound: A product id is absent from the snapshot.
            InsufficientStock: A known stock quantity is below the request.
        """
        items = list(items)
        if not items:
            raise InvalidInput(reason="EMPTY_ORDER")
        for it in items:
            if not it.product_id or int(it.quantity) <= 0:
                raise InvalidInput(reason="INVALID_ITEM", product_id=it.product_id)

        ids = sorted({it.product_id for it in items})
        snapshot = {p.id: p for p in self.catalog.get_products(ids)}

        lines = []
        for it in items:
            prod = snapshot.get(it.product_id)
            if prod is None:
                raise ProductNotFound(it.product_id)
            # Unknown stock means "not tracked", never "zero".
            if prod.stock_quantity is not None and prod.stock_quantity < it.quantity:
                raise InsufficientStock(it.product_id, it.quantity, prod.stock_quantity)
            lines.append(PricedLineItem(it.product_id, int(it.quantity), int(prod.price_cents)))

        return PricedOrder(tuple(lines), sum(li.line_total_cents for li in lines))


def validate_checkout(command: PlaceOrderCommand) -> None:
    """Shape checks shared by both payment-method families."""
    if not command.items:
        raise InvalidInput(reason="EMPTY_ORDER")
    if not command.shipping_address or not command.shipping_address.strip():
        raise ShippingAddressRequired()


# ---- Domain service ----
class OrderService:
    """Customer-facing and administrative order operations.

    Orders placed here use immediate-order payment methods; mobile-money
    checkouts go through ``payments.PaymentOrchestrator`` instead.
    """

    def __init__(self, pricing: PricingValidator, orders, side_effects):
        """Initialize the service with its collaborators.

        Args:
            pricing: Validator used to price incoming checkouts.
            orders: ``OrderRepository`` used for persistence.
            side_effects: ``SideEffectDispatcher`` fired after commits.
        """
        self.pricing = pricing
        self.orders = orders
        self.side_effects = side_effects

    def place_order(self, identity: Optional[Identity], command: PlaceOrderCommand) -> Order:
        """Validate, price and persist an immediate-payment order.

        Raises:
            Unauthorized: No identity.
            InvalidInput: Empty items, or a mobile-money method (those must
                go through payment initiation).
            ShippingAddressRequired: No usable address.
            ProductNotFound, InsufficientStock: From pricing.
            OrderPersistenceError: Items could not be stored; the order row
                has already been removed.
        """
        identity = require_identity(identity)
        validate_checkout(command)
        if is_mobile_money(command.payment_method):
            raise InvalidInput(reason="MOBILE_MONEY_REQUIRES_INITIATION")

        priced = self.pricing.validate(command.items)
        order = self.orders.create(OrderDraft.build(identity, command, priced))
        self.side_effects.order_created(order)
        return order

    def get_order(self, identity: Optional[Identity], order_id: str) -> Order:
        identity = require_identity(identity)
        return self.orders.get(order_id, owner_id=identity.id)

    def list_orders(self, identity: Optional[Identity], page: int = 1, page_size: int = 20):
        identity = require_identity(identity)
        return self.orders.list_for_user(identity.id, page=page, page_size=page_size)

    def change_status(
        self, identity: Optional[Identity], order_id: str, new_status: str, reason: Optional[str] = None
    ) -> Order:
        """Drive the status state machine for an order the caller owns.

        ``delivered`` goes through the store's atomic deliver operation,
        which also decrements stock; other targets are a plain status write.
        """
        identity = require_identity(identity)
        try:
            target = OrderStatus(new_status)
        except ValueError:
            raise InvalidInput(reason="INVALID_STATUS", status=new_status)

        current = self.orders.get(order_id, owner_id=identity.id)
        check_transition(current.status, target)

        if target is OrderStatus.DELIVERED:
            order = self.orders.deliver(current.id, reason=reason)
        else:
            order = self.orders.set_status(current.id, target, reason=reason)
        self.side_effects.status_changed(order, previous_status=current.status.value)
        return order

    def patch_order(self, identity: Optional[Identity], order_id: str, fields: dict) -> Order:
        identity = require_identity(identity)
        order = self.orders.patch_mutable_fields(order_id, identity.id, fields)
        self.side_effects.order_updated(order)
        return order

    def mark_paid(self, identity: Optional[Identity], order_id: str) -> Order:
        """Administrative office-payment confirmation.

        Bypasses per-user scoping: sets payment_status ``paid`` and records a
        completed office payment. A ``pending`` order moves to
        ``processing``; any other status is left as it is.

        Raises:
            Unauthorized / Forbidden: Caller is not an administrator.
            NotFound: Unknown order.
            AlreadyPaid: The order's payment_status is already ``paid``; no
                notification is sent in that case.
        """
        require_admin(identity)
        order = self.orders.get(order_id, owner_id=None)
        if order.payment_status is PaymentStatus.PAID:
            raise AlreadyPaid(order_id=str(order.id))
        order, reference = self.orders.mark_paid_at_office(order.id)
        self.side_effects.payment_succeeded(
            order, transaction_reference=reference, payment_method="Office Payment - Confirmed", admin=True
        )
        return order
