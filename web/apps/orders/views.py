"""HTTP views for the orders and payments API.

Views are kept small: they resolve the caller, validate the body (via
Pydantic), delegate to ``OrderService`` or ``PaymentOrchestrator`` and
render the result. Errors from the core are ``OrderError`` subclasses; the
shared ``CoreAPIView.handle_exception`` turns them into
``{"detail": CODE, ...details}`` with the status from ``errors.HTTP_STATUS``.

The services come from ``providers`` and are wired with HTTP adapters or
in-process stubs depending on ``settings.USE_HTTP_ADAPTERS``.

Idempotency: ``POST /api/orders/`` honours an ``Idempotency-Key`` header.
The first request runs and its response is stored; a retry with the same
key and payload replays it (``Idempotent-Replay: true``); the same key with
a different payload is ``IDEMPOTENCY_CONFLICT``.
"""

import logging
from dataclasses import asdict

from django.conf import settings
from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from .domain import require_identity
from .errors import IdempotencyConflict, InvalidInput, OrderError, http_status_for
from .idempotency import finalize, get_or_create_idempotent, release
from .payments import PaymentAttempt, PollResult
from .providers import get_order_service, get_payment_orchestrator
from .schemas import (
    CheckoutIn,
    MobileInitiateIn,
    OrderPatchIn,
    ReconcileIn,
    ReferenceIn,
    StatusChangeIn,
    WebhookIn,
    render_order,
)
from .webhooks import SIGNATURE_HEADER, verify_signature

log = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def error_body(err: OrderError) -> dict:
    return {"detail": str(err), **err.details}


def _int_param(request, name: str, default: int) -> int:
    raw = request.query_params.get(name)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except ValueError:
        raise InvalidInput(reason="INVALID_QUERY_PARAM", param=name)
    if value < 1:
        raise InvalidInput(reason="INVALID_QUERY_PARAM", param=name)
    return value


class CoreAPIView(APIView):
    """Base view mapping core and validation errors to JSON responses."""

    def handle_exception(self, exc):
        if isinstance(exc, OrderError):
            code = http_status_for(exc)
            if code >= 500:
                log.error(
                    "request failed",
                    extra={"event": "request_failed", "detail": str(exc), "details": exc.details},
                )
            return Response(error_body(exc), status=code)
        if isinstance(exc, ValidationError):
            errors = exc.errors(include_url=False, include_context=False, include_input=False)
            return Response({"detail": InvalidInput.code, "errors": errors}, status=status.HTTP_400_BAD_REQUEST)
        return super().handle_exception(exc)

    def identity(self):
        return require_identity(getattr(self.request, "identity", None))


class OrdersPingView(APIView):
    """Liveness endpoint for the orders module."""

    def get(self, request):
        return Response({"ok": True})


class OrdersCollectionView(CoreAPIView):
    """List the caller's orders (GET) or place an immediate-payment order (POST)."""

    throttle_classes = [ScopedRateThrottle]

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post.
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return [throttle() for throttle in self.throttle_classes]

    def get(self, request):
        identity = self.identity()
        page = _int_param(request, "page", 1)
        page_size = min(_int_param(request, "page_size", 20), MAX_PAGE_SIZE)
        orders, count, number = get_order_service().list_orders(identity, page=page, page_size=page_size)
        return Response(
            {
                "count": count,
                "page": number,
                "page_size": page_size,
                "results": [render_order(o) for o in orders],
            }
        )

    def post(self, request):
        """Create an order for a card, office or cash-on-delivery checkout.

        Returns:
            Response: 201 with the order; 200-class replay of the stored
            response for a repeated ``Idempotency-Key``; the error mapping of
            ``CoreAPIView`` otherwise.
        """
        identity = self.identity()
        dto = CheckoutIn.model_validate(request.data)

        idem_key = request.headers.get("Idempotency-Key")
        rec = None
        if idem_key:
            existing, rec = get_or_create_idempotent(identity.id, idem_key, request.data)
            if existing:
                if not rec.response_status:
                    raise IdempotencyConflict(key=idem_key, reason="IN_PROGRESS")
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        try:
            order = get_order_service().place_order(identity, dto.to_command())
        except OrderError as err:
            if rec is not None:
                code = http_status_for(err)
                if code < 500:
                    finalize(rec, code, error_body(err))
                else:
                    release(rec)
            raise
        except Exception:
            if rec is not None:
                release(rec)
            raise

        body = render_order(order)
        if rec is not None:
            finalize(rec, status.HTTP_201_CREATED, body, order_id=order.id)
        return Response(body, status=status.HTTP_201_CREATED)


class OrderDetailView(CoreAPIView):
    """Read an order, or patch its address/notes while it is pending."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        order = get_order_service().get_order(self.identity(), oid)
        return Response(render_order(order))

    def patch(self, request, oid):
        identity = self.identity()
        dto = OrderPatchIn.model_validate(request.data)
        order = get_order_service().patch_order(identity, oid, dto.to_fields())
        return Response(render_order(order))


class OrderStatusView(CoreAPIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def patch(self, request, oid):
        identity = self.identity()
        dto = StatusChangeIn.model_validate(request.data)
        order = get_order_service().change_status(identity, oid, dto.status, reason=dto.reason)
        return Response(render_order(order))


class OrderMarkPaidView(CoreAPIView):
    """Administrative office-payment confirmation."""

    def post(self, request, oid):
        order = get_order_service().mark_paid(self.identity(), oid)
        return Response({"success": True, "order": render_order(order)})


# ---- Mobile money ----
def render_attempt(attempt: PaymentAttempt) -> dict:
    body = asdict(attempt)
    body["poll_interval_secs"] = getattr(settings, "MOBILE_MONEY_POLL_INTERVAL_SECS", 2)
    body["poll_timeout_secs"] = getattr(settings, "MOBILE_MONEY_POLL_TIMEOUT_SECS", 30)
    return body


def render_poll(result: PollResult) -> dict:
    order = result.order
    return {
        "reference": result.reference,
        "state": result.state.value,
        "status": result.transaction_status,
        "order_id": order.id if order else None,
        "order_status": order.status.value if order else None,
        "payment_status": order.payment_status.value if order else None,
        "order": render_order(order) if order else None,
        "message": result.message,
    }


class MobileInitiateView(CoreAPIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_create"

    def post(self, request):
        identity = self.identity()
        dto = MobileInitiateIn.model_validate(request.data)
        attempt = get_payment_orchestrator().initiate(identity, dto.to_checkout())
        return Response(render_attempt(attempt), status=status.HTTP_201_CREATED)


class MobileStatusView(CoreAPIView):
    """One poll of a mobile-money attempt; the client owns the 2 s / 30 s loop."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments_poll"

    def post(self, request):
        identity = self.identity()
        dto = ReferenceIn.model_validate(request.data)
        result = get_payment_orchestrator().poll(identity, dto.reference)
        return Response(render_poll(result))


class MobileRetryView(CoreAPIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_create"

    def post(self, request):
        identity = self.identity()
        dto = ReferenceIn.model_validate(request.data)
        attempt = get_payment_orchestrator().retry(identity, dto.reference)
        return Response(render_attempt(attempt), status=status.HTTP_201_CREATED)


class MobileReconcileView(CoreAPIView):
    """Administrative sweep of mobile-money attempts stuck in ``pending``."""

    def post(self, request):
        identity = self.identity()
        dto = ReconcileIn.model_validate(request.data or {})
        older_than = dto.older_than_secs
        if older_than is None:
            older_than = getattr(settings, "MOBILE_MONEY_RECONCILE_AFTER_SECS", 600)
        report = get_payment_orchestrator().reconcile(identity, older_than_secs=older_than, limit=dto.limit)
        return Response(asdict(report))


class MobileWebhookView(CoreAPIView):
    """Provider completion callback.

    Not identity-scoped: when ``PAYMENT_WEBHOOK_SECRET`` is set the raw body
    must carry a valid ``X-Webhook-Signature``.
    """

    def post(self, request):
        raw = request.body
        verify_signature(
            getattr(settings, "PAYMENT_WEBHOOK_SECRET", ""), raw, request.headers.get(SIGNATURE_HEADER)
        )
        dto = WebhookIn.model_validate(request.data)
        result = get_payment_orchestrator().confirm(dto.order_id, dto.payment_status, dto.transid or dto.reference)
        log.info(
            "payment webhook processed",
            extra={"event": "payment_webhook", "reference": dto.order_id, "state": result.state.value},
        )
        return Response({"received": True, **render_poll(result)})
