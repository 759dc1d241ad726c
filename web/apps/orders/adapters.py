"""In-process stub adapters for the orders ports.

These stubs implement ``PaymentProviderPort``, ``NotifierPort`` and
``CacheInvalidatorPort`` without any network calls. They are intended for
unit tests and local development where deterministic behavior is useful
and external services are not required.
"""

import logging
import threading
import uuid
from typing import Dict, List, Optional

from .domain import CacheInvalidatorPort, NotifierPort, Order
from .payments import Buyer, PaymentProviderPort, ProviderAck, ProviderStatus

log = logging.getLogger(__name__)


class PaymentProviderStub(PaymentProviderPort):
    """Stub implementation of ``PaymentProviderPort``.

    The outcome is derived from the payer's phone number:

    - ending in ``0000``: the payment fails,
    - ending in ``9999``: the payment never settles (stays pending),
    - anything else: the payment completes.

    Sessions are kept in memory and shared by every caller of the same
    instance; ``force`` overrides the outcome of one reference.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, dict] = {}

    def initiate(
        self, *, reference: str, amount_cents: int, currency: str, provider: str, phone_number: str, buyer: Buyer
    ) -> ProviderAck:
        """Register a payment session.

        Returns:
            ProviderAck: Carries a generated gateway transaction id.
        """
        if phone_number.endswith("0000"):
            outcome = "FAILED"
        elif phone_number.endswith("9999"):
            outcome = "PENDING"
        else:
            outcome = "COMPLETED"
        gateway_id = f"STUB-{uuid.uuid4().hex[:12].upper()}"
        with self._lock:
            self._sessions[reference] = {"status": outcome, "gateway_transaction_id": gateway_id}
        return ProviderAck(gateway_transaction_id=gateway_id, message="stub payment request accepted")

    def status(self, reference: str) -> ProviderStatus:
        """Report the session status; unknown references are ``PENDING``."""
        with self._lock:
            session = self._sessions.get(reference)
        if session is None:
            return ProviderStatus("PENDING")
        return ProviderStatus(session["status"], session["gateway_transaction_id"])

    def force(self, reference: str, status: str) -> None:
        with self._lock:
            session = self._sessions.setdefault(reference, {"gateway_transaction_id": None})
            session["status"] = status

    def reset(self) -> None:
        with self._lock:
            self._sessions.clear()


class LoggingNotifier(NotifierPort):
    """Notifier that only writes log records."""

    def notify_order_created(self, order: Order) -> None:
        log.info("notify order created", extra={"event": "notify_order_created", "order_id": order.id})

    def notify_payment_success(self, order: Order, transaction_reference: str, payment_method: str) -> None:
        log.info(
            "notify payment success",
            extra={
                "event": "notify_payment_success",
                "order_id": order.id,
                "reference": transaction_reference,
                "payment_method": payment_method,
            },
        )

    def notify_status_changed(self, order: Order, previous_status: str) -> None:
        log.info(
            "notify status changed",
            extra={
                "event": "notify_status_changed",
                "order_id": order.id,
                "from": previous_status,
                "to": order.status.value,
            },
        )


class LoggingCacheInvalidator(CacheInvalidatorPort):
    """Cache invalidator that only logs the tags it was given."""

    def __init__(self):
        self.last_tags: Optional[List[str]] = None

    def invalidate(self, tags: List[str]) -> None:
        self.last_tags = list(tags)
        log.info("cache invalidate", extra={"event": "cache_invalidate", "tags": tags})
