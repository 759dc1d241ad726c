"""Tests for ``OrderService``.

The service runs against the real ORM-backed repository and catalog
reader; notifications and cache invalidation go to recording doubles.
"""

import pytest

from apps.catalog.reader import CatalogReader
from apps.orders.domain import (
    Identity,
    LineItemRequest,
    OrderService,
    OrderStatus,
    PaymentStatus,
    PlaceOrderCommand,
    PricingValidator,
)
from apps.orders.errors import (
    AlreadyPaid,
    Forbidden,
    IllegalTransition,
    InsufficientStock,
    InvalidInput,
    NotFound,
    ProductNotFound,
    ShippingAddressRequired,
    Unauthorized,
)
from apps.orders.models import OrderModel
from apps.orders.repository import OrderRepository
from apps.orders.side_effects import SideEffectDispatcher

pytestmark = pytest.mark.django_db

CUSTOMER = Identity(id="user-1", email="amina@example.com")
ADMIN = Identity(id="admin-1", is_admin=True)


@pytest.fixture
def service(notifier, invalidator):
    return OrderService(
        pricing=PricingValidator(CatalogReader()),
        orders=OrderRepository(),
        side_effects=SideEffectDispatcher(notifier, invalidator),
    )


def command(*items, address="Plot 12, Dar es Salaam", method="Card"):
    return PlaceOrderCommand(
        items=tuple(items or (LineItemRequest("P1", 2),)),
        shipping_address=address,
        payment_method=method,
        currency="TZS",
    )


def test_place_order_prices_from_catalog_and_notifies(service, make_product, notifier, invalidator):
    make_product("P1", price_cents=1000, stock=5)

    order = service.place_order(CUSTOMER, command())

    assert order.total_cents == 2000
    assert order.status is OrderStatus.PENDING
    assert order.payment_status is PaymentStatus.PENDING
    assert order.customer_email == "amina@example.com"
    assert notifier.calls == [("order_created", order.id)]
    assert invalidator.calls == [["orders", f"order:{order.id}", "user-orders:user-1"]]


def test_place_order_does_not_reserve_stock(service, make_product):
    product = make_product("P1", stock=5)
    service.place_order(CUSTOMER, command())
    product.refresh_from_db()
    assert product.stock_quantity == 5


@pytest.mark.parametrize(
    "identity,cmd,error",
    [
        (None, command(), Unauthorized),
        (CUSTOMER, command(address="  "), ShippingAddressRequired),
        (CUSTOMER, command(address=None), ShippingAddressRequired),
        (CUSTOMER, command(method="M-Pesa"), InvalidInput),
        (CUSTOMER, command(LineItemRequest("GHOST", 1)), ProductNotFound),
        (CUSTOMER, command(LineItemRequest("P1", 6)), InsufficientStock),
    ],
)
def test_place_order_rejections_create_nothing(service, make_product, notifier, identity, cmd, error):
    make_product("P1", stock=5)
    with pytest.raises(error):
        service.place_order(identity, cmd)
    assert OrderModel.objects.count() == 0
    assert notifier.calls == []


def test_empty_items_are_rejected(service):
    with pytest.raises(InvalidInput) as exc:
        service.place_order(CUSTOMER, PlaceOrderCommand(items=(), shipping_address="x", payment_method="Card", currency="TZS"))
    assert exc.value.details["reason"] == "EMPTY_ORDER"


def test_change_status_notifies_with_previous_status(service, make_product, notifier):
    make_product("P1")
    order = service.place_order(CUSTOMER, command())

    updated = service.change_status(CUSTOMER, order.id, "processing", reason="packing")

    assert updated.status is OrderStatus.PROCESSING
    assert notifier.calls[-1] == ("status_changed", order.id, "pending", "processing")


def test_change_status_to_delivered_decrements_stock(service, make_product):
    product = make_product("P1", stock=3)
    order = service.place_order(CUSTOMER, command())
    service.change_status(CUSTOMER, order.id, "processing")
    service.change_status(CUSTOMER, order.id, "shipped")

    delivered = service.change_status(CUSTOMER, order.id, "delivered")

    product.refresh_from_db()
    assert delivered.status is OrderStatus.DELIVERED
    assert product.stock_quantity == 1


def test_change_status_rejects_illegal_and_unknown_targets(service, make_product, notifier):
    make_product("P1")
    order = service.place_order(CUSTOMER, command())
    notifier.calls.clear()

    with pytest.raises(IllegalTransition) as exc:
        service.change_status(CUSTOMER, order.id, "shipped")
    assert exc.value.details == {"from": "pending", "to": "shipped"}
    with pytest.raises(InvalidInput):
        service.change_status(CUSTOMER, order.id, "lost")
    with pytest.raises(NotFound):
        service.change_status(Identity(id="user-2"), order.id, "processing")
    assert notifier.calls == []


def test_patch_order_invalidates_without_notifying(service, make_product, notifier, invalidator):
    make_product("P1")
    order = service.place_order(CUSTOMER, command())
    notifier.calls.clear()
    invalidator.calls.clear()

    patched = service.patch_order(CUSTOMER, order.id, {"notes": "gate code 1234"})

    assert patched.notes == "gate code 1234"
    assert notifier.calls == []
    assert invalidator.calls == [["orders", f"order:{order.id}", "user-orders:user-1"]]


def test_mark_paid_requires_admin(service, make_product):
    make_product("P1")
    order = service.place_order(CUSTOMER, command(method="Pay at Office"))
    with pytest.raises(Forbidden):
        service.mark_paid(CUSTOMER, order.id)
    with pytest.raises(Unauthorized):
        service.mark_paid(None, order.id)


def test_mark_paid_confirms_once(service, make_product, notifier, invalidator):
    make_product("P1")
    order = service.place_order(CUSTOMER, command(method="Pay at Office"))
    notifier.calls.clear()

    paid = service.mark_paid(ADMIN, order.id)

    assert paid.payment_status is PaymentStatus.PAID
    assert paid.status is OrderStatus.PROCESSING
    (event,) = notifier.calls
    assert event[0] == "payment_success"
    assert event[2].startswith("OFFICE_")
    assert event[3] == "Office Payment - Confirmed"
    assert "admin:orders" in invalidator.calls[-1]

    with pytest.raises(AlreadyPaid):
        service.mark_paid(ADMIN, order.id)
    assert len(notifier.calls) == 1


def test_get_order_hides_other_users_orders(service, make_product):
    make_product("P1")
    order = service.place_order(CUSTOMER, command())
    assert service.get_order(CUSTOMER, order.id).id == order.id
    with pytest.raises(NotFound):
        service.get_order(Identity(id="user-2"), order.id)
