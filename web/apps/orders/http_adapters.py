"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements the outbound ports over ``httpx``:

- ``HttpPaymentProviderClient``: the mobile-money gateway
  (``POST /mobile_money_tanzania``, ``GET /order-status``).
- ``HttpNotifier``: the notification service.
- ``HttpCacheInvalidator``: the storefront cache/CDN invalidation hook.

Every call goes through ``_send`` which adds:

- Request correlation: ``X-Request-ID`` from the ContextVar set by the
  gateway middleware.
- A circuit breaker per downstream service, with HALF_OPEN probing after
  a timeout.
- Retries with exponential backoff for transport errors and 5xx. 4xx
  responses are business answers: never retried, never counted against
  the breaker.
"""

import logging
import threading
import time
from typing import Dict, List, Optional

import httpx
from django.conf import settings

from gateway.middleware import REQUEST_ID_CTX

from .domain import CacheInvalidatorPort, NotifierPort, Order
from .errors import ProviderError
from .payments import (
    RESULT_OK,
    UNKNOWN_REFERENCE,
    Buyer,
    PaymentProviderPort,
    ProviderAck,
    ProviderStatus,
    provider_channel,
    provider_error_for,
)

log = logging.getLogger(__name__)


class CircuitOpen(RuntimeError):
    """Raised instead of calling a service whose breaker is open."""


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Thread-safe circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED -> OPEN when consecutive failures reach ``fail_threshold``.
    - OPEN -> HALF_OPEN once ``reset_timeout`` seconds have elapsed.
    - HALF_OPEN -> CLOSED on a successful trial call, back to OPEN on failure.
      Only one trial call may be in flight.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._trial_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Admit a call or refuse it.

        Returns:
            str: The state the call was admitted in.

        Raises:
            CircuitOpen: The breaker is OPEN or a HALF_OPEN trial call is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise CircuitOpen(f"CIRCUIT_OPEN:{self.name}")
            if st == "HALF_OPEN":
                if self._trial_in_flight:
                    raise CircuitOpen(f"CIRCUIT_HALF_OPEN_BUSY:{self.name}")
                self._trial_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._trial_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
            self._trial_in_flight = False

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._trial_in_flight = False

    def reset(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._opened_at = 0.0
            self._trial_in_flight = False


def _breaker(name: str) -> CircuitBreaker:
    return CircuitBreaker(
        name,
        getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
        getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
    )


# Per-service instances, shared by every client in the process.
BREAKERS: Dict[str, CircuitBreaker] = {
    "payment_provider": _breaker("payment_provider"),
    "notifications": _breaker("notifications"),
    "cache": _breaker("cache"),
}


def breaker_states() -> Dict[str, str]:
    return {name: cb.state for name, cb in BREAKERS.items()}


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Base headers: ``X-Request-ID`` when a request is in flight, plus ``extra``."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    if exc is not None:
        return True
    return resp is not None and 500 <= resp.status_code < 600


def _send(
    breaker: CircuitBreaker,
    method: str,
    url: str,
    *,
    timeout: float,
    headers: Optional[dict] = None,
    **kwargs,
) -> httpx.Response:
    """Perform one logical request with breaker, retries and backoff.

    Returns the first non-5xx response (including 4xx, which the caller
    maps to a business outcome).

    Raises:
        CircuitOpen: The breaker refused the call.
        httpx.RequestError: Transport error after the last retry.
        httpx.HTTPStatusError: 5xx after the last retry.
    """
    max_retries = max(1, int(getattr(settings, "HTTP_RETRY_MAX", 3)))
    backoff = float(getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15))
    cap = float(getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5))

    state = breaker.before_call()
    hdrs = _request_headers({**(headers or {}), "X-Circuit-State": state, "X-Retry-Count": "0"})
    tries = 0
    try:
        with httpx.Client(timeout=timeout) as client:
            while True:
                resp = None
                exc = None
                try:
                    resp = client.request(method, url, headers=hdrs, **kwargs)
                    if not _should_retry(resp, None):
                        breaker.on_success()
                        return resp
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                hdrs["X-Retry-Count"] = str(tries)
                if tries >= max_retries:
                    breaker.on_failure()
                    log.warning(
                        "downstream call failed",
                        extra={"event": "http_call_failed", "service": breaker.name, "url": url, "tries": tries},
                    )
                    if exc is not None:
                        raise exc
                    resp.raise_for_status()

                sleep_s = backoff * (2 ** (tries - 1))
                if sleep_s > 0:
                    time.sleep(min(sleep_s, cap))
    finally:
        breaker.on_finish()


# ---------------- Payment provider ---------------- #

class HttpPaymentProviderClient(PaymentProviderPort):
    """Mobile-money gateway client.

    The gateway answers ``200`` with a ``resultcode`` field; anything but
    ``000`` is a rejected request. Amounts are sent in whole currency
    units.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        webhook_url: str | None = None,
        timeout: float | None = None,
    ):
        self.base_url = (base_url or settings.PAYMENT_PROVIDER_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else getattr(settings, "PAYMENT_PROVIDER_API_KEY", "")
        self.webhook_url = webhook_url if webhook_url is not None else getattr(settings, "PAYMENT_WEBHOOK_URL", "")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.breaker = BREAKERS["payment_provider"]

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def initiate(
        self, *, reference: str, amount_cents: int, currency: str, provider: str, phone_number: str, buyer: Buyer
    ) -> ProviderAck:
        """Push a payment prompt to the payer's phone.

        Raises:
            ProviderError: Transport failure, open circuit (retryable), a
                4xx answer (not retryable) or a non-``000`` result code.
        """
        payload = {
            "order_id": reference,
            "buyer_name": buyer.name,
            "buyer_phone": phone_number,
            "buyer_email": buyer.email or "",
            "amount": round(amount_cents / 100),
            "currency": currency,
        }
        channel = provider_channel(provider)
        if channel:
            payload["channel"] = channel
        if self.webhook_url:
            payload["webhook_url"] = self.webhook_url

        # Retried POSTs reuse the reference; the provider acks a repeat instead of rejecting it.
        data = self._call(
            "POST",
            f"{self.base_url}/mobile_money_tanzania",
            json=payload,
            extra_headers={"Idempotency-Key": reference},
        )
        code = str(data.get("resultcode") or data.get("result_code") or data.get("code") or RESULT_OK)
        if code != RESULT_OK:
            raise provider_error_for(code, data.get("message"))
        gateway_id = data.get("transaction_id") or data.get("order_id")
        nested = data.get("data")
        if isinstance(nested, dict):
            gateway_id = nested.get("transaction_id") or nested.get("order_id") or gateway_id
        return ProviderAck(gateway_transaction_id=gateway_id, message=data.get("message") or "")

    def status(self, reference: str) -> ProviderStatus:
        """Fetch the provider's view of a payment.

        Raises:
            ProviderError: Transport failure, open circuit or a 4xx answer.
                A 404 carries the ``UNKNOWN_REFERENCE`` result code.
        """
        data = self._call("GET", f"{self.base_url}/order-status", params={"order_id": reference}, unknown_on_404=True)
        entry = data
        rows = data.get("data")
        if isinstance(rows, list) and rows:
            entry = rows[0]
        elif isinstance(rows, dict):
            entry = rows
        raw = entry.get("payment_status") or data.get("payment_status") or "PENDING"
        return ProviderStatus(str(raw), entry.get("transid") or entry.get("reference"))

    def _call(
        self, method: str, url: str, extra_headers: Optional[dict] = None, unknown_on_404: bool = False, **kwargs
    ) -> dict:
        headers = {**self._headers(), **(extra_headers or {})}
        try:
            resp = _send(self.breaker, method, url, timeout=self.timeout, headers=headers, **kwargs)
        except CircuitOpen as e:
            raise ProviderError(str(e), retryable=True) from e
        except httpx.HTTPError as e:
            raise ProviderError(
                f"provider unavailable: {e.__class__.__name__}", retryable=True, outcome_unknown=True
            ) from e
        if resp.status_code == 404 and unknown_on_404:
            raise ProviderError("provider has no record of this payment", retryable=False, result_code=UNKNOWN_REFERENCE)
        if resp.status_code >= 400:
            raise ProviderError(f"provider rejected request ({resp.status_code})", retryable=False)
        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError("provider returned invalid JSON", retryable=True, outcome_unknown=True) from e
        return data if isinstance(data, dict) else {}


# ---------------- Notifications ---------------- #

def _order_summary(order: Order) -> dict:
    return {
        "id": str(order.id),
        "number": order.number,
        "user_id": order.user_id,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "total_cents": order.total_cents,
        "currency": order.currency,
        "payment_method": order.payment_method,
        "customer_email": order.customer_email,
        "customer_phone": order.customer_phone,
        "items": [
            {"product_id": li.product_id, "quantity": li.quantity, "price_cents": li.price_cents} for li in order.items
        ],
    }


class HttpNotifier(NotifierPort):
    """Posts notification events to the notification service.

    Errors propagate; the side-effect dispatcher logs and drops them.
    """

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.NOTIFICATIONS_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.breaker = BREAKERS["notifications"]

    def _post(self, event: str, body: dict) -> None:
        resp = _send(
            self.breaker, "POST", f"{self.base_url}/notifications", timeout=self.timeout, json={"event": event, **body}
        )
        resp.raise_for_status()

    def notify_order_created(self, order: Order) -> None:
        self._post("order_created", {"order": _order_summary(order)})

    def notify_payment_success(self, order: Order, transaction_reference: str, payment_method: str) -> None:
        self._post(
            "payment_success",
            {
                "order": _order_summary(order),
                "transaction_reference": transaction_reference,
                "payment_method": payment_method,
            },
        )

    def notify_status_changed(self, order: Order, previous_status: str) -> None:
        self._post("status_changed", {"order": _order_summary(order), "previous_status": previous_status})


# ---------------- Cache invalidation ---------------- #

class HttpCacheInvalidator(CacheInvalidatorPort):
    """Sends ``{"tags": [...]}`` to the storefront revalidation endpoint."""

    def __init__(self, url: str | None = None, timeout: float | None = None):
        self.url = url or settings.CACHE_INVALIDATION_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.breaker = BREAKERS["cache"]

    def invalidate(self, tags: List[str]) -> None:
        resp = _send(self.breaker, "POST", self.url, timeout=self.timeout, json={"tags": list(tags)})
        resp.raise_for_status()
