"""Wiring for the order services.

``get_order_service`` and ``get_payment_orchestrator`` return services
wired with the HTTP adapters when ``settings.USE_HTTP_ADAPTERS`` is truthy
and with the in-process stubs otherwise (tests, local development).
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from django.conf import settings

from apps.catalog.reader import CatalogReader

from .adapters import LoggingCacheInvalidator, LoggingNotifier, PaymentProviderStub
from .domain import OrderService, PricingValidator
from .http_adapters import HttpCacheInvalidator, HttpNotifier, HttpPaymentProviderClient
from .payments import PaymentOrchestrator
from .repository import OrderRepository, PaymentTransactionRepository
from .side_effects import SideEffectDispatcher

# Sessions of the stub provider must outlive a single request.
provider_stub = PaymentProviderStub()

_executor: Optional[ThreadPoolExecutor] = None


def _side_effect_executor() -> Optional[ThreadPoolExecutor]:
    global _executor
    if not getattr(settings, "SIDE_EFFECTS_ASYNC", False):
        return None
    if _executor is None:
        _executor = ThreadPoolExecutor(
            max_workers=getattr(settings, "SIDE_EFFECTS_WORKERS", 4), thread_name_prefix="side-effects"
        )
    return _executor


def get_side_effects() -> SideEffectDispatcher:
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return SideEffectDispatcher(HttpNotifier(), HttpCacheInvalidator(), executor=_side_effect_executor())
    return SideEffectDispatcher(LoggingNotifier(), LoggingCacheInvalidator(), executor=_side_effect_executor())


def get_payment_provider():
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return HttpPaymentProviderClient()
    return provider_stub


def get_order_service() -> OrderService:
    """Return an ``OrderService`` for immediate-payment orders."""
    return OrderService(
        pricing=PricingValidator(CatalogReader()),
        orders=OrderRepository(),
        side_effects=get_side_effects(),
    )


def get_payment_orchestrator() -> PaymentOrchestrator:
    """Return a ``PaymentOrchestrator`` for mobile-money checkouts."""
    return PaymentOrchestrator(
        pricing=PricingValidator(CatalogReader()),
        orders=OrderRepository(),
        transactions=PaymentTransactionRepository(),
        provider=get_payment_provider(),
        side_effects=get_side_effects(),
        max_attempts=getattr(settings, "MOBILE_MONEY_MAX_ATTEMPTS", 5),
    )
