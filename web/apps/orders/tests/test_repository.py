"""Order store tests: compensating delete, atomic delivery, patch rules."""

import uuid

import pytest
from django.db import DatabaseError, IntegrityError

from apps.catalog.models import ProductModel
from apps.orders.domain import OrderDraft, OrderStatus, PaymentStatus, PricedLineItem
from apps.orders.errors import (
    AlreadyPaid,
    IllegalTransition,
    InsufficientStock,
    InvalidInput,
    NotFound,
    OrderNotModifiable,
    OrderPersistenceError,
    ShippingAddressRequired,
)
from apps.orders.models import OrderItemModel, OrderModel, OrderNumberCounter, PaymentTransactionModel
from apps.orders.repository import OrderRepository, PaymentTransactionRepository

pytestmark = pytest.mark.django_db


def draft(*lines, user_id="user-1", checkout_id=None, payment_method="Card"):
    lines = lines or (PricedLineItem("P1", 2, 1000),)
    return OrderDraft(
        user_id=user_id,
        line_items=tuple(lines),
        total_cents=sum(li.line_total_cents for li in lines),
        currency="TZS",
        payment_method=payment_method,
        shipping_address="Plot 12, Dar es Salaam",
        customer_email="amina@example.com",
        checkout_id=checkout_id,
    )


def stock_of(pid):
    return ProductModel.objects.get(pk=pid).stock_quantity


def to_shipped(repo, order):
    repo.set_status(order.id, OrderStatus.PROCESSING)
    return repo.set_status(order.id, OrderStatus.SHIPPED)


# ---- create ----
def test_create_persists_order_with_snapshot_items():
    order = OrderRepository().create(draft(PricedLineItem("P1", 2, 1000), PricedLineItem("P2", 1, 250)))

    assert order.status is OrderStatus.PENDING
    assert order.payment_status is PaymentStatus.PENDING
    assert order.total_cents == 2250
    assert order.number == 1
    rows = list(OrderItemModel.objects.filter(order_id=order.id).values_list("product_id", "quantity", "price_cents"))
    assert rows == [("P1", 2, 1000), ("P2", 1, 250)]


def test_order_numbers_increase():
    repo = OrderRepository()
    first = repo.create(draft())
    second = repo.create(draft())
    assert second.number == first.number + 1


def test_order_numbers_continue_after_existing_orders():
    OrderModel.objects.create(user_id="legacy", shipping_address="Old road", internal_id=41)

    order = OrderRepository().create(draft())

    assert order.number == 42
    assert OrderNumberCounter.objects.get(name="orders").value == 42
    assert OrderNumberCounter.next_value("orders") == 43


def test_failed_item_insert_removes_the_order(monkeypatch):
    def broken_bulk_create(*args, **kwargs):
        raise DatabaseError("disk full")

    monkeypatch.setattr(OrderItemModel.objects, "bulk_create", broken_bulk_create)

    with pytest.raises(OrderPersistenceError) as exc:
        OrderRepository().create(draft())

    assert str(exc.value) == "ORDER_PERSISTENCE_FAILED"
    assert OrderModel.objects.count() == 0
    assert OrderItemModel.objects.count() == 0


# ---- get / list ----
def test_get_scopes_by_owner():
    repo = OrderRepository()
    order = repo.create(draft())

    assert repo.get(order.id, owner_id="user-1").id == order.id
    assert repo.get(order.id).id == order.id
    with pytest.raises(NotFound):
        repo.get(order.id, owner_id="user-2")


def test_get_unknown_or_malformed_id_is_not_found():
    repo = OrderRepository()
    with pytest.raises(NotFound):
        repo.get(uuid.uuid4())
    with pytest.raises(NotFound):
        repo.get("not-a-uuid")


def test_list_for_user_only_returns_own_orders():
    repo = OrderRepository()
    mine = [repo.create(draft()) for _ in range(3)]
    repo.create(draft(user_id="user-2"))

    orders, count, page = repo.list_for_user("user-1", page=1, page_size=2)

    assert count == 3 and page == 1
    assert len(orders) == 2
    assert {o.user_id for o in orders} == {"user-1"}
    rest, _, page = repo.list_for_user("user-1", page=2, page_size=2)
    assert page == 2
    assert {o.id for o in orders + rest} == {o.id for o in mine}


# ---- status ----
def test_set_status_follows_table_and_appends_reason():
    repo = OrderRepository()
    order = repo.create(draft())

    updated = repo.set_status(order.id, OrderStatus.PROCESSING, reason="picked")

    assert updated.status is OrderStatus.PROCESSING
    assert updated.notes == "picked"
    with pytest.raises(IllegalTransition):
        repo.set_status(order.id, OrderStatus.PENDING)


# ---- deliver ----
def test_deliver_decrements_tracked_stock(make_product):
    make_product("P1", stock=3)
    repo = OrderRepository()
    order = to_shipped(repo, repo.create(draft(PricedLineItem("P1", 2, 1000))))

    delivered = repo.deliver(order.id, reason="signed by Juma")

    assert delivered.status is OrderStatus.DELIVERED
    assert "signed by Juma" in delivered.notes
    assert stock_of("P1") == 1


def test_second_delivery_fails_and_leaves_stock_alone(make_product):
    make_product("P1", stock=5)
    repo = OrderRepository()
    order = to_shipped(repo, repo.create(draft(PricedLineItem("P1", 2, 1000))))

    repo.deliver(order.id)
    with pytest.raises(IllegalTransition):
        repo.deliver(order.id)

    assert stock_of("P1") == 3


def test_shortfall_rolls_back_status_and_every_decrement(make_product):
    make_product("P1", stock=5)
    make_product("P2", stock=1)
    repo = OrderRepository()
    order = to_shipped(repo, repo.create(draft(PricedLineItem("P1", 2, 1000), PricedLineItem("P2", 3, 100))))

    with pytest.raises(InsufficientStock) as exc:
        repo.deliver(order.id)

    assert exc.value.details == {"product_id": "P2", "requested": 3, "available": 1}
    assert stock_of("P1") == 5
    assert stock_of("P2") == 1
    assert repo.get(order.id).status is OrderStatus.SHIPPED


def test_untracked_and_missing_products_do_not_block_delivery(make_product):
    make_product("FREE", stock=None)
    repo = OrderRepository()
    order = to_shipped(repo, repo.create(draft(PricedLineItem("FREE", 9, 10), PricedLineItem("GONE", 1, 10))))

    assert repo.deliver(order.id).status is OrderStatus.DELIVERED
    assert stock_of("FREE") is None


def test_deliver_requires_shipped(make_product):
    make_product("P1", stock=5)
    repo = OrderRepository()
    order = repo.create(draft())
    with pytest.raises(IllegalTransition):
        repo.deliver(order.id)
    assert stock_of("P1") == 5


def test_no_other_operation_touches_stock(make_product):
    make_product("P1", stock=5)
    repo = OrderRepository()
    order = repo.create(draft(PricedLineItem("P1", 2, 1000)))
    repo.set_status(order.id, OrderStatus.PROCESSING)
    repo.set_status(order.id, OrderStatus.CANCELLED)
    assert stock_of("P1") == 5


# ---- patch ----
def test_patch_updates_address_and_appends_notes():
    repo = OrderRepository()
    order = repo.create(draft())

    patched = repo.patch_mutable_fields(order.id, "user-1", {"shipping_address": " New street 4 ", "notes": "ring twice"})

    assert patched.shipping_address == "New street 4"
    assert patched.notes == "ring twice"
    again = repo.patch_mutable_fields(order.id, "user-1", {"notes": "after 5pm"})
    assert again.notes == "ring twice\nafter 5pm"


def test_patch_rules():
    repo = OrderRepository()
    order = repo.create(draft())

    with pytest.raises(InvalidInput):
        repo.patch_mutable_fields(order.id, "user-1", {"total_cents": 1})
    with pytest.raises(ShippingAddressRequired):
        repo.patch_mutable_fields(order.id, "user-1", {"shipping_address": "  "})
    with pytest.raises(NotFound):
        repo.patch_mutable_fields(order.id, "user-2", {"notes": "x"})

    repo.set_status(order.id, OrderStatus.PROCESSING)
    with pytest.raises(OrderNotModifiable) as exc:
        repo.patch_mutable_fields(order.id, "user-1", {"notes": "late"})
    assert exc.value.details == {"status": "processing"}


# ---- payments ----
def test_record_payment_only_once():
    repo = OrderRepository()
    order = repo.create(draft())

    assert repo.record_payment(order.id) is True
    assert repo.record_payment(order.id) is False
    paid = repo.get(order.id)
    assert paid.payment_status is PaymentStatus.PAID
    assert paid.status is OrderStatus.PROCESSING
    assert paid.paid_at is not None


def test_mark_paid_at_office_records_completed_transaction():
    repo = OrderRepository()
    order = repo.create(draft())

    paid, reference = repo.mark_paid_at_office(order.id)

    assert paid.payment_status is PaymentStatus.PAID
    assert paid.status is OrderStatus.PROCESSING
    assert reference.startswith(f"OFFICE_{order.id[:8]}_")
    tx = PaymentTransactionModel.objects.get(reference=reference)
    assert tx.status == "completed" and tx.payment_type == "office_payment"
    assert str(tx.order_id) == order.id
    with pytest.raises(AlreadyPaid):
        repo.mark_paid_at_office(order.id)


@pytest.mark.parametrize("path", [
    (OrderStatus.PROCESSING, OrderStatus.SHIPPED),
    (OrderStatus.CANCELLED,),
])
def test_payment_keeps_an_advanced_or_terminal_status(path):
    repo = OrderRepository()
    order = repo.create(draft())
    for target in path:
        repo.set_status(order.id, target)

    paid, _ = repo.mark_paid_at_office(order.id)

    assert paid.payment_status is PaymentStatus.PAID
    assert paid.status is path[-1]


def test_paying_a_delivered_order_does_not_reopen_it(make_product):
    make_product("P1", stock=10)
    repo = OrderRepository()
    order = repo.create(draft(PricedLineItem("P1", 2, 1000)))
    to_shipped(repo, order)
    repo.deliver(order.id)
    assert stock_of("P1") == 8

    paid, _ = repo.mark_paid_at_office(order.id)

    assert paid.status is OrderStatus.DELIVERED
    with pytest.raises(IllegalTransition):
        repo.set_status(order.id, OrderStatus.SHIPPED)
    with pytest.raises(IllegalTransition):
        repo.deliver(order.id)
    assert stock_of("P1") == 8


# ---- payment transactions ----
def start_attempt(txs, reference, checkout_id, attempt=1):
    return txs.create_attempt(
        reference=reference,
        draft=draft(payment_method="Mobile Money - M-Pesa"),
        provider="M-Pesa",
        phone_number="0712345678",
        checkout_id=checkout_id,
        attempt=attempt,
    )


def test_complete_creates_the_order_once():
    orders, txs = OrderRepository(), PaymentTransactionRepository()
    checkout = uuid.uuid4()
    start_attempt(txs, "PAYA", checkout)

    order, created = txs.complete("PAYA", orders, gateway_transaction_id="GW1")
    again, created_again = txs.complete("PAYA", orders)

    assert created is True and created_again is False
    assert again.id == order.id
    assert order.payment_status is PaymentStatus.PAID
    assert order.status is OrderStatus.PROCESSING
    assert order.checkout_id == str(checkout)
    assert OrderModel.objects.count() == 1
    tx = txs.get("PAYA")
    assert tx.status == "completed" and tx.gateway_transaction_id == "GW1"


def test_late_success_of_an_older_attempt_links_the_existing_order():
    orders, txs = OrderRepository(), PaymentTransactionRepository()
    checkout = uuid.uuid4()
    start_attempt(txs, "PAY1", checkout)
    start_attempt(txs, "PAY2", checkout, attempt=2)

    order, _ = txs.complete("PAY2", orders)
    late, created = txs.complete("PAY1", orders)

    assert created is False
    assert late.id == order.id
    assert OrderModel.objects.count() == 1
    assert txs.get("PAY1").status == "completed"
    assert txs.checkout_order_id(checkout) == order.id


def test_failed_attempt_is_never_completed():
    orders, txs = OrderRepository(), PaymentTransactionRepository()
    start_attempt(txs, "PAYF", uuid.uuid4())

    assert txs.mark_failed("PAYF", "declined") is True
    assert txs.mark_failed("PAYF", "declined") is False
    assert txs.complete("PAYF", orders) == (None, False)
    assert OrderModel.objects.count() == 0


def test_transaction_lookup_is_owner_scoped():
    txs = PaymentTransactionRepository()
    start_attempt(txs, "PAYO", uuid.uuid4())
    assert txs.get("PAYO", owner_id="user-1").reference == "PAYO"
    with pytest.raises(NotFound):
        txs.get("PAYO", owner_id="user-2")


def test_unrelated_insert_conflict_during_completion_keeps_the_attempt_pending(monkeypatch):
    orders, txs = OrderRepository(), PaymentTransactionRepository()
    start_attempt(txs, "PAYC", uuid.uuid4())

    def conflicting_create(draft):
        raise IntegrityError("duplicate key value violates unique constraint on internal_id")

    monkeypatch.setattr(orders, "create", conflicting_create)
    with pytest.raises(OrderPersistenceError) as exc:
        txs.complete("PAYC", orders)

    assert exc.value.details == {"reference": "PAYC"}
    assert OrderModel.objects.count() == 0
    assert txs.get("PAYC").status == "pending"
