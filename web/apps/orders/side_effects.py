"""Post-commit side effects: notifications and cache invalidation.

Side effects never change the outcome of the operation that triggered
them. Every failure is logged with the order id and dropped.
"""

import logging
from concurrent.futures import Executor
from typing import Callable, List, Optional

from .domain import CacheInvalidatorPort, NotifierPort, Order

log = logging.getLogger(__name__)


def order_tags(order: Order, admin: bool = False) -> List[str]:
    """Cache tags touched by a change to ``order``."""
    tags = ["orders", f"order:{order.id}", f"user-orders:{order.user_id}"]
    if admin:
        tags.append("admin:orders")
    return tags


class SideEffectDispatcher:
    """Fire notifications and cache invalidation for committed changes.

    When an ``executor`` is given the work is submitted to it and the caller
    returns immediately; otherwise it runs inline.
    """

    def __init__(self, notifier: NotifierPort, invalidator: CacheInvalidatorPort, executor: Optional[Executor] = None):
        self.notifier = notifier
        self.invalidator = invalidator
        self.executor = executor

    def order_created(self, order: Order) -> None:
        self._dispatch(
            "order_created",
            order,
            lambda: self.notifier.notify_order_created(order),
            order_tags(order),
        )

    def payment_succeeded(
        self, order: Order, transaction_reference: str, payment_method: str, admin: bool = False
    ) -> None:
        self._dispatch(
            "payment_succeeded",
            order,
            lambda: self.notifier.notify_payment_success(order, transaction_reference, payment_method),
            order_tags(order, admin=admin),
        )

    def status_changed(self, order: Order, previous_status: str) -> None:
        self._dispatch(
            "status_changed",
            order,
            lambda: self.notifier.notify_status_changed(order, previous_status),
            order_tags(order),
        )

    def order_updated(self, order: Order) -> None:
        self._dispatch("order_updated", order, None, order_tags(order))

    def _dispatch(self, event: str, order: Order, notify: Optional[Callable[[], None]], tags: List[str]) -> None:
        if self.executor is None:
            self._run(event, order, notify, tags)
            return
        try:
            self.executor.submit(self._run, event, order, notify, tags)
        except RuntimeError:
            # Executor shut down (worker exiting); run inline instead.
            self._run(event, order, notify, tags)

    def _run(self, event: str, order: Order, notify: Optional[Callable[[], None]], tags: List[str]) -> None:
        if notify is not None:
            try:
                notify()
            except Exception:
                log.exception(
                    "notification failed",
                    extra={"event": f"{event}_notification_failed", "order_id": str(order.id)},
                )
        try:
            self.invalidator.invalidate(tags)
        except Exception:
            log.exception(
                "cache invalidation failed",
                extra={"event": f"{event}_invalidation_failed", "order_id": str(order.id)},
            )
