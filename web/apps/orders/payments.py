"""Mobile-money payment orchestration.

Mobile-money checkouts are pre-authorized: no order exists until the
provider confirms the payment. The flow is

1. ``initiate`` prices the checkout, stores the validated order payload on
   a ``pending`` payment transaction and asks the provider to prompt the
   payer's phone.
2. The caller polls ``poll`` (every 2 s, for up to 30 s; see
   ``wait_for_payment``). A success-class provider status completes the
   attempt and creates the order exactly once.
3. After a timeout the caller may ``retry``: same payload, new reference,
   same checkout.

The provider webhook reaches the same completion path through ``confirm``.
"""

import logging
import re
import secrets
import time
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional, Protocol

from .domain import (
    MOBILE_MONEY_PROVIDERS,
    Identity,
    Order,
    OrderDraft,
    PlaceOrderCommand,
    PricingValidator,
    is_mobile_money,
    require_admin,
    require_identity,
    validate_checkout,
)
from .errors import AlreadyPaid, InvalidInput, OrderPersistenceError, ProviderError, RetryLimitReached
from .models import PaymentTransactionModel

log = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({"COMPLETED", "SUCCESS", "SUCCESSFUL", "PAID"})
FAILURE_STATUSES = frozenset({"FAILED", "CANCELLED", "CANCELED", "REJECTED", "EXPIRED"})

PROVIDER_CHANNELS = {
    "M-Pesa": "vodacom",
    "Tigo Pesa": "tigo",
    "Airtel Money": "airtel",
    "Halopesa": "halotel",
}

RESULT_OK = "000"
RESULT_CODE_MESSAGES = {
    "001": "Invalid API key - please contact support",
    "002": "Missing or duplicate parameters - please retry",
    "003": "Invalid phone number format - please check your phone number",
    "004": "Insufficient funds - please top up your mobile money account",
    "005": "Payment canceled - you can retry the payment",
    "999": "Gateway error - please try again",
}
# A new attempt cannot fix these.
NON_RETRYABLE_RESULT_CODES = frozenset({"001", "003"})
# Status lookups for a reference the provider never registered.
UNKNOWN_REFERENCE = "UNKNOWN_REFERENCE"


class PaymentState(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PollOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


def classify_status(raw: Optional[str]) -> PaymentState:
    """Map a provider status string onto success, failure or still pending."""
    value = (raw or "").strip().upper()
    if value in SUCCESS_STATUSES:
        return PaymentState.SUCCEEDED
    if value in FAILURE_STATUSES:
        return PaymentState.FAILED
    return PaymentState.PENDING


def normalize_tz_phone(raw: str) -> str:
    """Normalize a Tanzanian mobile number to the local ``0XXXXXXXXX`` form.

    Accepts ``0XXXXXXXXX``, ``255XXXXXXXXX`` (with or without ``+``) and the
    bare 9-digit subscriber number.

    Raises:
        InvalidInput: Anything else.
    """
    digits = re.sub(r"\D", "", str(raw or ""))
    if len(digits) == 10 and digits.startswith("0"):
        return digits
    if len(digits) == 12 and digits.startswith("255"):
        return "0" + digits[3:]
    if len(digits) == 9:
        return "0" + digits
    raise InvalidInput(reason="INVALID_PHONE", phone_number=raw)


def provider_channel(provider: str) -> Optional[str]:
    return PROVIDER_CHANNELS.get(provider)


def generate_reference() -> str:
    """Unique, provider-safe transaction reference (upper-case alphanumerics)."""
    ts = format(int(time.time() * 1000), "X")
    return f"PAY{ts}{secrets.token_hex(4).upper()}"


def provider_error_for(result_code: str, message: Optional[str] = None) -> ProviderError:
    """Build the ``ProviderError`` for a non-``000`` provider result code."""
    code = str(result_code)
    text = RESULT_CODE_MESSAGES.get(code) or message or "Payment failed"
    return ProviderError(text, retryable=code not in NON_RETRYABLE_RESULT_CODES, result_code=code)


# ---- Provider port ----
@dataclass(frozen=True)
class Buyer:
    name: str
    email: Optional[str]
    phone: str


@dataclass(frozen=True)
class ProviderAck:
    """Provider accepted the push request."""

    gateway_transaction_id: Optional[str] = None
    message: str = ""


@dataclass(frozen=True)
class ProviderStatus:
    status: str
    gateway_transaction_id: Optional[str] = None


class PaymentProviderPort(Protocol):
    """Mobile-money gateway."""

    def initiate(
        self, *, reference: str, amount_cents: int, currency: str, provider: str, phone_number: str, buyer: Buyer
    ) -> ProviderAck:
        """Ask the provider to prompt the payer.

        Raises:
            ProviderError: Transport failure or a rejected request.
        """
        raise NotImplementedError()

    def status(self, reference: str) -> ProviderStatus:
        """Single status round-trip for a reference we initiated."""
        raise NotImplementedError()


# ---- Orchestrator DTOs ----
@dataclass(frozen=True)
class MobileCheckout:
    """A mobile-money purchase request.

    Attributes:
        command: The normalized checkout (items, address, contact).
        provider: One of ``MOBILE_MONEY_PROVIDERS``.
        phone_number: Payer's phone in any accepted format.
        amount_cents: Total the client displayed, if it sent one. Only used
            to detect a stale cart; never used as the charged amount.
    """

    command: PlaceOrderCommand
    provider: str
    phone_number: str
    amount_cents: Optional[int] = None


@dataclass(frozen=True)
class PaymentAttempt:
    reference: str
    checkout_id: str
    attempt: int
    status: str
    amount_cents: int
    currency: str
    provider: str
    phone_number: str
    gateway_transaction_id: Optional[str] = None
    message: str = ""


@dataclass(frozen=True)
class PollResult:
    """Outcome of one status check.

    ``state`` is the caller-facing classification; ``transaction_status`` is
    the stored payment transaction status after the check.
    """

    reference: str
    state: PaymentState
    transaction_status: str
    order: Optional[Order] = None
    message: str = ""


@dataclass(frozen=True)
class WaitResult:
    outcome: PollOutcome
    last: Optional[PollResult]
    polls: int


@dataclass(frozen=True)
class ReconcileReport:
    """References touched by one reconcile sweep, by outcome."""

    checked: int
    completed: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    pending: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()


def wait_for_payment(
    poll: Callable[[], PollResult],
    interval: float = 2.0,
    timeout: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> WaitResult:
    """Poll until the attempt reaches a terminal state or ``timeout`` elapses.

    A timeout is not a failure: the attempt stays ``pending`` and a later
    provider signal (or a retry) can still complete the checkout.

    Args:
        poll: Zero-argument callable performing one status check.
        interval: Seconds between checks.
        timeout: Overall budget in seconds.
        sleep: Injected for tests.
        clock: Monotonic clock, injected for tests.

    Returns:
        WaitResult: Final outcome, the last poll result and the poll count.
    """
    deadline = clock() + timeout
    polls = 0
    while True:
        last = poll()
        polls += 1
        if last.state is PaymentState.SUCCEEDED:
            return WaitResult(PollOutcome.SUCCEEDED, last, polls)
        if last.state is PaymentState.FAILED:
            return WaitResult(PollOutcome.FAILED, last, polls)
        remaining = deadline - clock()
        if remaining <= 0:
            return WaitResult(PollOutcome.TIMED_OUT, last, polls)
        sleep(min(interval, remaining))


class PaymentOrchestrator:
    """Drive mobile-money checkouts from initiation to order creation."""

    def __init__(
        self,
        pricing: PricingValidator,
        orders,
        transactions,
        provider: PaymentProviderPort,
        side_effects,
        max_attempts: int = 5,
    ):
        """Initialize the orchestrator.

        Args:
            pricing: Validator used to price the checkout at initiation.
            orders: ``OrderRepository``.
            transactions: ``PaymentTransactionRepository``.
            provider: Mobile-money gateway client.
            side_effects: ``SideEffectDispatcher`` fired when an order is
                created from a confirmed payment.
            max_attempts: Cap on attempts per checkout, the first included.
        """
        self.pricing = pricing
        self.orders = orders
        self.transactions = transactions
        self.provider = provider
        self.side_effects = side_effects
        self.max_attempts = max_attempts

    def initiate(self, identity: Optional[Identity], checkout: MobileCheckout) -> PaymentAttempt:
        """Start a new checkout with its first payment attempt.

        Raises:
            Unauthorized: No identity.
            InvalidInput: Empty items, unsupported provider, bad phone number
                or a client amount that differs from the validated total.
            ShippingAddressRequired: No usable address.
            ProductNotFound, InsufficientStock: From pricing.
            ProviderError: The provider rejected the request or was never
                reached; the attempt is marked ``failed``. When the request
                may have reached the provider the attempt is returned
                ``pending`` instead.
        """
        identity = require_identity(identity)
        command = checkout.command
        validate_checkout(command)
        if checkout.provider not in MOBILE_MONEY_PROVIDERS:
            raise InvalidInput(reason="UNSUPPORTED_PROVIDER", provider=checkout.provider)
        phone = normalize_tz_phone(checkout.phone_number)

        priced = self.pricing.validate(command.items)
        if checkout.amount_cents is not None and int(checkout.amount_cents) != priced.total_cents:
            raise InvalidInput(
                reason="AMOUNT_MISMATCH", expected_cents=priced.total_cents, received_cents=checkout.amount_cents
            )

        draft = OrderDraft.build(identity, command, priced)
        if not is_mobile_money(draft.payment_method):
            draft = replace(draft, payment_method=f"Mobile Money - {checkout.provider}")
        return self._start_attempt(draft, checkout.provider, phone, uuid.uuid4(), attempt=1)

    def poll(self, identity: Optional[Identity], reference: str) -> PollResult:
        """One status round-trip for the caller's attempt.

        Terminal attempts answer from storage without calling the provider.
        A failed status check is reported as still pending.
        """
        identity = require_identity(identity)
        tx = self.transactions.get(reference, owner_id=identity.id)
        if tx.status == PaymentTransactionModel.Status.COMPLETED:
            order = self.orders.get(tx.order_id) if tx.order_id else None
            return PollResult(reference, PaymentState.SUCCEEDED, tx.status, order=order)
        if tx.status == PaymentTransactionModel.Status.FAILED:
            return PollResult(reference, PaymentState.FAILED, tx.status, message=tx.failure_reason or "")

        try:
            report = self.provider.status(reference)
        except ProviderError as err:
            log.warning(
                "payment status check failed",
                extra={"event": "payment_status_error", "reference": reference, "error": err.details.get("message")},
            )
            return PollResult(reference, PaymentState.PENDING, tx.status, message=err.details.get("message") or "")

        return self._apply_status(reference, report.status, report.gateway_transaction_id)

    def retry(self, identity: Optional[Identity], reference: str) -> PaymentAttempt:
        """Start a new attempt for the checkout that ``reference`` belongs to.

        The stored payload is reused as-is (no re-pricing). Earlier attempts
        are left untouched, so a late confirmation of one of them still
        completes the checkout, at most once.

        Raises:
            NotFound: Unknown reference or not the caller's.
            AlreadyPaid: The checkout already produced an order.
            RetryLimitReached: ``max_attempts`` attempts already exist.
        """
        identity = require_identity(identity)
        tx = self.transactions.get(reference, owner_id=identity.id)
        if tx.status == PaymentTransactionModel.Status.COMPLETED or self.transactions.checkout_order_id(tx.checkout_id):
            raise AlreadyPaid(reference=reference)
        if not tx.pending_order or not tx.checkout_id:
            raise InvalidInput(reason="NOT_RETRYABLE", reference=reference)

        attempts = self.transactions.attempts_for(tx.checkout_id)
        if attempts >= self.max_attempts:
            raise RetryLimitReached(max_attempts=self.max_attempts)

        draft = OrderDraft.from_payload(tx.pending_order)
        log.info(
            "retrying mobile money payment",
            extra={"event": "payment_retry", "reference": reference, "attempt": attempts + 1},
        )
        return self._start_attempt(draft, tx.provider, tx.phone_number, tx.checkout_id, attempt=attempts + 1)

    def confirm(self, reference: str, provider_status: str, gateway_transaction_id: Optional[str] = None) -> PollResult:
        """Completion signal pushed by the provider (webhook).

        Idempotent: confirming an attempt whose checkout already has an
        order only finalizes the attempt.
        """
        self.transactions.get(reference)
        return self._apply_status(reference, provider_status, gateway_transaction_id)

    def reconcile(self, identity: Optional[Identity], older_than_secs: float = 600, limit: int = 50) -> ReconcileReport:
        """Settle attempts nobody is polling and no webhook has reached.

        Administrative and on demand. Each ``pending`` attempt older than
        ``older_than_secs`` (oldest first, at most ``limit``) is re-queried
        and the answer goes through the same completion path as ``poll``
        and ``confirm``, so a paid checkout still gets exactly one order.
        An attempt the provider has no record of is marked ``failed``.

        Raises:
            Unauthorized / Forbidden: Caller is not an administrator.
        """
        require_admin(identity)
        buckets: dict[str, list[str]] = {"completed": [], "failed": [], "pending": [], "errors": []}
        references = self.transactions.stale_pending(older_than_secs, limit)
        for reference in references:
            try:
                report = self.provider.status(reference)
            except ProviderError as err:
                if err.result_code == UNKNOWN_REFERENCE and self.transactions.mark_failed(
                    reference, "provider has no record of this payment"
                ):
                    buckets["failed"].append(reference)
                else:
                    buckets["errors"].append(reference)
                continue
            try:
                result = self._apply_status(reference, report.status, report.gateway_transaction_id)
            except OrderPersistenceError:
                buckets["errors"].append(reference)
                continue
            key = {PaymentState.SUCCEEDED: "completed", PaymentState.FAILED: "failed"}.get(result.state, "pending")
            buckets[key].append(reference)

        log.info(
            "pending payments reconciled",
            extra={"event": "payment_reconcile", "checked": len(references), **{k: len(v) for k, v in buckets.items()}},
        )
        return ReconcileReport(checked=len(references), **{k: tuple(v) for k, v in buckets.items()})

    # ---- internals ----
    def _start_attempt(self, draft: OrderDraft, provider: str, phone: str, checkout_id, attempt: int) -> PaymentAttempt:
        reference = generate_reference()
        self.transactions.create_attempt(
            reference=reference,
            draft=draft,
            provider=provider,
            phone_number=phone,
            checkout_id=checkout_id,
            attempt=attempt,
        )
        buyer = Buyer(
            name=(draft.customer_email or "").split("@")[0] or "Customer",
            email=draft.customer_email,
            phone=phone,
        )
        try:
            ack = self.provider.initiate(
                reference=reference,
                amount_cents=draft.total_cents,
                currency=draft.currency,
                provider=provider,
                phone_number=phone,
                buyer=buyer,
            )
        except ProviderError as err:
            if err.outcome_unknown:
                # The prompt may be live; a poll, webhook or reconcile settles it.
                log.warning(
                    "payment initiation outcome unknown",
                    extra={"event": "payment_initiate_unknown", "reference": reference, "attempt": attempt},
                )
                return self._attempt_view(
                    draft, reference, checkout_id, attempt, provider, phone, None,
                    "Payment request may have reached your phone. Checking its status.",
                )
            self.transactions.mark_failed(reference, err.details.get("message") or str(err))
            log.warning(
                "payment initiation failed",
                extra={
                    "event": "payment_initiate_failed",
                    "reference": reference,
                    "result_code": err.result_code,
                    "retryable": err.retryable,
                },
            )
            raise

        self.transactions.set_gateway_id(reference, ack.gateway_transaction_id)
        log.info(
            "payment initiated",
            extra={"event": "payment_initiated", "reference": reference, "attempt": attempt, "provider": provider},
        )
        return self._attempt_view(
            draft, reference, checkout_id, attempt, provider, phone, ack.gateway_transaction_id,
            ack.message or f"Payment request sent to {phone}. Please approve on your phone.",
        )

    @staticmethod
    def _attempt_view(draft, reference, checkout_id, attempt, provider, phone, gateway_id, message) -> PaymentAttempt:
        return PaymentAttempt(
            reference=reference,
            checkout_id=str(checkout_id),
            attempt=attempt,
            status=PaymentTransactionModel.Status.PENDING.value,
            amount_cents=draft.total_cents,
            currency=draft.currency,
            provider=provider,
            phone_number=phone,
            gateway_transaction_id=gateway_id,
            message=message,
        )

    def _apply_status(self, reference: str, raw_status: str, gateway_transaction_id: Optional[str]) -> PollResult:
        state = classify_status(raw_status)
        if state is PaymentState.SUCCEEDED:
            return self._complete(reference, gateway_transaction_id)
        if state is PaymentState.FAILED:
            self.transactions.mark_failed(reference, f"provider reported {raw_status}")
            tx = self.transactions.get(reference)
            if tx.status == PaymentTransactionModel.Status.COMPLETED:
                # Already completed through another signal; terminal states stick.
                return self._complete(reference, gateway_transaction_id)
            log.info("payment failed", extra={"event": "payment_failed", "reference": reference, "status": raw_status})
            return PollResult(reference, PaymentState.FAILED, tx.status, message=tx.failure_reason or "")
        return PollResult(reference, PaymentState.PENDING, PaymentTransactionModel.Status.PENDING.value)

    def _complete(self, reference: str, gateway_transaction_id: Optional[str]) -> PollResult:
        order, created = self.transactions.complete(reference, self.orders, gateway_transaction_id=gateway_transaction_id)
        if order is None:
            return PollResult(reference, PaymentState.FAILED, PaymentTransactionModel.Status.FAILED.value)
        if created:
            self.side_effects.order_created(order)
            self.side_effects.payment_succeeded(
                order, transaction_reference=reference, payment_method=order.payment_method
            )
        return PollResult(reference, PaymentState.SUCCEEDED, PaymentTransactionModel.Status.COMPLETED.value, order=order)
