"""Python client for the mobile-money checkout API.

``StorefrontClient`` is what a storefront backend (or a script) uses to
run a mobile-money checkout: it initiates the payment, then owns the
polling loop (every 2 s for up to 30 s) through ``wait_for_payment`` and
starts a new attempt only after a timeout.

Example:
    with StorefrontClient("https://shop.example", user_id="u-1") as c:
        outcome = c.pay_with_mobile_money(checkout_body)
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from .payments import PaymentState, PollOutcome, PollResult, WaitResult, wait_for_payment

log = logging.getLogger(__name__)


class StorefrontApiError(Exception):
    """Non-2xx answer from the API; ``code`` is the ``detail`` field."""

    def __init__(self, status_code: int, code: str, body: dict):
        super().__init__(f"{status_code} {code}")
        self.status_code = status_code
        self.code = code
        self.body = body


@dataclass(frozen=True)
class CheckoutOutcome:
    outcome: PollOutcome
    reference: str
    attempts: int
    order_id: Optional[str] = None
    last: Optional[dict] = None


class StorefrontClient:
    """Thin httpx wrapper around ``/api/payments/mobile/*``."""

    def __init__(
        self,
        base_url: str,
        *,
        user_id: str,
        email: Optional[str] = None,
        proxy_secret: Optional[str] = None,
        interval: float = 2.0,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        headers = {"X-User-Id": user_id}
        if email:
            headers["X-User-Email"] = email
        if proxy_secret:
            headers["X-Proxy-Secret"] = proxy_secret
        self._http = httpx.Client(base_url=base_url.rstrip("/"), headers=headers, timeout=10.0, transport=transport)
        self.interval = interval
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self) -> None:
        self._http.close()

    def _post(self, path: str, body: dict) -> dict:
        resp = self._http.post(path, json=body)
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400:
            raise StorefrontApiError(resp.status_code, str(data.get("detail", "HTTP_ERROR")), data)
        return data

    def initiate(self, checkout: dict) -> dict:
        return self._post("/api/payments/mobile/initiate/", checkout)

    def status(self, reference: str) -> dict:
        """Raw body of one status check."""
        return self._post("/api/payments/mobile/status/", {"reference": reference})

    def poll(self, reference: str) -> PollResult:
        return self._to_result(reference, self.status(reference))

    def retry(self, reference: str) -> dict:
        return self._post("/api/payments/mobile/retry/", {"reference": reference})

    def wait(self, reference: str, on_body: Optional[Callable[[dict], None]] = None) -> WaitResult:
        """Run the polling loop for one attempt."""

        def poll_once() -> PollResult:
            body = self.status(reference)
            if on_body is not None:
                on_body(body)
            return self._to_result(reference, body)

        return wait_for_payment(
            poll_once, interval=self.interval, timeout=self.timeout, sleep=self._sleep, clock=self._clock
        )

    def pay_with_mobile_money(self, checkout: dict, max_attempts: int = 3) -> CheckoutOutcome:
        """Initiate, poll, and retry after timeouts (never after a failure).

        Returns:
            CheckoutOutcome: ``SUCCEEDED`` with the order id, ``FAILED`` when
            the provider declined, or ``TIMED_OUT`` when every attempt timed
            out.
        """
        last: dict = {}
        reference = self.initiate(checkout)["reference"]
        attempts = 1
        while True:
            result = self.wait(reference, on_body=lambda body: last.update(body))
            if result.outcome is not PollOutcome.TIMED_OUT or attempts >= max_attempts:
                break
            log.info(
                "mobile money attempt timed out, retrying",
                extra={"event": "client_retry", "reference": reference, "attempt": attempts},
            )
            reference = self.retry(reference)["reference"]
            attempts += 1

        order_id = last.get("order_id") if result.outcome is PollOutcome.SUCCEEDED else None
        return CheckoutOutcome(result.outcome, reference, attempts, order_id=order_id, last=dict(last) or None)

    @staticmethod
    def _to_result(reference: str, data: dict) -> PollResult:
        return PollResult(
            reference=data.get("reference", reference),
            state=PaymentState(data.get("state", PaymentState.PENDING.value)),
            transaction_status=data.get("status", "pending"),
            message=data.get("message") or "",
        )
