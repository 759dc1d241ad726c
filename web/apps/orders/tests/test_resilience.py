import httpx
import pytest

from apps.orders.errors import ProviderError
from apps.orders.http_adapters import BREAKERS, CircuitBreaker, CircuitOpen, HttpPaymentProviderClient, breaker_states
from gateway.middleware import REQUEST_ID_CTX


def patch_request(monkeypatch, responder):
    calls = []

    def fake_request(self, method, url, headers=None, **kwargs):
        calls.append(dict(headers or {}))
        status, body = responder(len(calls))
        return httpx.Response(status, json=body, request=httpx.Request(method, url))

    monkeypatch.setattr(httpx.Client, "request", fake_request, raising=True)
    return calls


def test_status_retries_on_5xx(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 3
    calls = patch_request(
        monkeypatch,
        lambda n: (503, {}) if n == 1 else (200, {"data": [{"payment_status": "PENDING"}]}),
    )

    status = HttpPaymentProviderClient(base_url="http://x").status("PAYX")

    assert status.status == "PENDING"
    assert len(calls) == 2
    assert calls[0]["X-Retry-Count"] == "0"
    assert calls[1]["X-Retry-Count"] == "1"
    assert calls[0]["X-Circuit-State"] == "CLOSED"


def test_no_retry_on_4xx(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 3
    calls = patch_request(monkeypatch, lambda n: (404, {"detail": "unknown"}))

    with pytest.raises(ProviderError):
        HttpPaymentProviderClient(base_url="http://x").status("PAYX")

    assert len(calls) == 1
    assert BREAKERS["payment_provider"].state == "CLOSED"


def test_persistent_5xx_opens_the_circuit(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 1
    calls = patch_request(monkeypatch, lambda n: (500, {}))
    client = HttpPaymentProviderClient(base_url="http://x")
    threshold = BREAKERS["payment_provider"].fail_threshold

    for _ in range(threshold):
        with pytest.raises(ProviderError):
            client.status("PAYX")

    assert breaker_states()["payment_provider"] == "OPEN"
    with pytest.raises(ProviderError) as exc:
        client.status("PAYX")
    assert "CIRCUIT_OPEN" in exc.value.details["message"]
    assert exc.value.retryable is True
    assert len(calls) == threshold


def test_request_id_is_forwarded(monkeypatch):
    calls = patch_request(monkeypatch, lambda n: (200, {"data": [{"payment_status": "COMPLETED"}]}))
    token = REQUEST_ID_CTX.set("req-42")
    try:
        HttpPaymentProviderClient(base_url="http://x").status("PAYX")
    finally:
        REQUEST_ID_CTX.reset(token)
    assert calls[0]["X-Request-ID"] == "req-42"


def test_breaker_half_open_admits_one_trial_call():
    cb = CircuitBreaker("svc", fail_threshold=2, reset_timeout=10)

    cb.before_call()
    cb.on_failure()
    cb.before_call()
    cb.on_failure()
    assert cb.state == "OPEN"
    with pytest.raises(CircuitOpen):
        cb.before_call()

    cb._opened_at -= 10
    assert cb.before_call() == "HALF_OPEN"
    with pytest.raises(CircuitOpen):
        cb.before_call()

    cb.on_failure()
    assert cb.state == "OPEN"

    cb._opened_at -= 10
    cb.before_call()
    cb.on_success()
    assert cb.state == "CLOSED"
