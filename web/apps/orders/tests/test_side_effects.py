import logging
from concurrent.futures import ThreadPoolExecutor

from apps.orders.domain import Order, OrderStatus, PaymentStatus, PricedLineItem
from apps.orders.side_effects import SideEffectDispatcher, order_tags

ORDER = Order(
    id="7c9e6679-7425-40de-944b-e07fc1f90ae7",
    user_id="user-1",
    items=[PricedLineItem("P1", 1, 500)],
    total_cents=500,
    currency="TZS",
    payment_method="Card",
    status=OrderStatus.PROCESSING,
    payment_status=PaymentStatus.PAID,
    shipping_address="Plot 12",
)


def test_tags():
    assert order_tags(ORDER) == ["orders", f"order:{ORDER.id}", "user-orders:user-1"]
    assert order_tags(ORDER, admin=True)[-1] == "admin:orders"


def test_events_reach_notifier_and_invalidator(notifier, invalidator):
    fx = SideEffectDispatcher(notifier, invalidator)

    fx.order_created(ORDER)
    fx.payment_succeeded(ORDER, transaction_reference="PAY1", payment_method="Mobile Money - M-Pesa")
    fx.status_changed(ORDER, previous_status="pending")
    fx.order_updated(ORDER)

    assert notifier.calls == [
        ("order_created", ORDER.id),
        ("payment_success", ORDER.id, "PAY1", "Mobile Money - M-Pesa"),
        ("status_changed", ORDER.id, "pending", "processing"),
    ]
    assert len(invalidator.calls) == 4


def test_failures_are_logged_and_swallowed(caplog, notifier, invalidator):
    notifier.fail = invalidator.fail = True
    fx = SideEffectDispatcher(notifier, invalidator)

    with caplog.at_level(logging.ERROR, logger="apps.orders.side_effects"):
        fx.order_created(ORDER)

    # the invalidator still ran after the notifier failed
    assert invalidator.calls == [order_tags(ORDER)]
    events = [r.event for r in caplog.records]
    assert events == ["order_created_notification_failed", "order_created_invalidation_failed"]
    assert all(r.order_id == ORDER.id for r in caplog.records)


def test_runs_on_executor(notifier, invalidator):
    with ThreadPoolExecutor(max_workers=1) as pool:
        SideEffectDispatcher(notifier, invalidator, executor=pool).order_created(ORDER)
    assert notifier.calls == [("order_created", ORDER.id)]


def test_shut_down_executor_falls_back_to_inline(notifier, invalidator):
    pool = ThreadPoolExecutor(max_workers=1)
    pool.shutdown()
    SideEffectDispatcher(notifier, invalidator, executor=pool).status_changed(ORDER, "pending")
    assert notifier.calls == [("status_changed", ORDER.id, "pending", "processing")]
