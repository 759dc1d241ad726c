"""Repository layer for orders and payment transactions.

This module is the Order Store: it creates, reads and updates orders
using the Django ORM and maps rows to the domain ``Order`` dataclass so
the domain layer is not coupled to ORM types. Every multi-row mutation
runs in a database transaction; concurrency guarantees come from row
locks (``SELECT ... FOR UPDATE``) and compare-and-set ``UPDATE``
statements, never from process-local locks, because several web workers
may serve the same order.
"""

import logging
import time
import uuid
from datetime import timedelta
from typing import Optional

from django.core.paginator import Paginator
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Case, F, Value, When
from django.utils import timezone

from apps.catalog.models import ProductModel

from .domain import (
    Order,
    OrderDraft,
    OrderStatus,
    PaymentStatus,
    PricedLineItem,
    append_note,
    check_transition,
)
from .errors import (
    AlreadyPaid,
    IllegalTransition,
    InsufficientStock,
    InvalidInput,
    NotFound,
    OrderNotModifiable,
    OrderPersistenceError,
    ShippingAddressRequired,
)
from .models import OrderItemModel, OrderModel, PaymentTransactionModel

log = logging.getLogger(__name__)

MUTABLE_FIELDS = ("shipping_address", "notes")


def _as_uuid(value) -> uuid.UUID:
    try:
        return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise NotFound(order_id=str(value))


def to_domain(obj: OrderModel, items=None) -> Order:
    """Map an ``OrderModel`` (and its items) to the domain ``Order``."""
    if items is None:
        items = obj.items.all()
    return Order(
        id=str(obj.id),
        user_id=obj.user_id,
        items=[PricedLineItem(i.product_id, i.quantity, i.price_cents) for i in items],
        total_cents=obj.total_cents,
        currency=obj.currency,
        payment_method=obj.payment_method,
        status=OrderStatus(obj.status),
        payment_status=PaymentStatus(obj.payment_status),
        shipping_address=obj.shipping_address,
        notes=obj.notes,
        number=obj.internal_id,
        customer_email=obj.customer_email,
        customer_phone=obj.customer_phone,
        checkout_id=str(obj.checkout_id) if obj.checkout_id else None,
        created_at=obj.created_at,
        updated_at=obj.updated_at,
        paid_at=obj.paid_at,
    )


def office_reference(order_id) -> str:
    return f"OFFICE_{str(order_id)[:8]}_{int(time.time() * 1000)}"


class OrderRepository:
    """Persist and mutate orders.

    The only place product stock is ever decremented is ``deliver``.
    """

    def create(self, draft: OrderDraft) -> Order:
        """Insert an order and its items.

        The order row is inserted first with ``pending``/``pending``
        status, then all items in one batch. When the item insert fails
        the order row is deleted again before the error is surfaced, so no
        order without items is ever reachable.

        Args:
            draft: Priced order data.

        Returns:
            Order: The persisted order.

        Raises:
            OrderPersistenceError: When the items could not be stored.
            IntegrityError: When ``draft.checkout_id`` already has an order.
        """
        obj = OrderModel.objects.create(
            user_id=draft.user_id,
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            total_cents=draft.total_cents,
            currency=draft.currency,
            payment_method=draft.payment_method,
            shipping_address=draft.shipping_address,
            notes=draft.notes or "",
            customer_email=draft.customer_email,
            customer_phone=draft.customer_phone,
            checkout_id=draft.checkout_id,
        )
        rows = [
            OrderItemModel(order=obj, product_id=li.product_id, quantity=li.quantity, price_cents=li.price_cents)
            for li in draft.line_items
        ]
        try:
            # Savepoint: a failed batch must not poison an enclosing transaction.
            with transaction.atomic():
                OrderItemModel.objects.bulk_create(rows)
        except DatabaseError as exc:
            log.error(
                "order items insert failed, removing order",
                extra={"event": "order_rollback", "order_id": str(obj.id)},
            )
            OrderModel.objects.filter(pk=obj.pk).delete()
            raise OrderPersistenceError(order_id=str(obj.id)) from exc

        log.info(
            "order created",
            extra={"event": "order_created", "order_id": str(obj.id), "total_cents": obj.total_cents},
        )
        return to_domain(obj, rows)

    def get(self, order_id, owner_id: Optional[str] = None) -> Order:
        """Load an order.

        Args:
            order_id: Order UUID.
            owner_id: When given, orders owned by someone else are reported
                as missing. ``None`` is reserved for the administrative path.

        Raises:
            NotFound: Unknown order or ownership mismatch.
        """
        qs = OrderModel.objects.filter(pk=_as_uuid(order_id))
        if owner_id is not None:
            qs = qs.filter(user_id=owner_id)
        obj = qs.prefetch_related("items").first()
        if obj is None:
            raise NotFound(order_id=str(order_id))
        return to_domain(obj)

    def list_for_user(self, user_id: str, page: int = 1, page_size: int = 20):
        """Return ``(orders, total_count, page_number)`` for the user's orders, newest first."""
        qs = OrderModel.objects.filter(user_id=user_id).prefetch_related("items").order_by("-created_at")
        p = Paginator(qs, page_size)
        page_obj = p.get_page(page)
        return [to_domain(o) for o in page_obj.object_list], p.count, page_obj.number

    def set_status(self, order_id, target: OrderStatus, reason: Optional[str] = None) -> Order:
        """Plain status write guarded by the state machine.

        Raises:
            NotFound: Unknown order.
            IllegalTransition: Current status does not allow ``target``.
        """
        pk = _as_uuid(order_id)
        with transaction.atomic():
            obj = OrderModel.objects.select_for_update().filter(pk=pk).first()
            if obj is None:
                raise NotFound(order_id=str(order_id))
            check_transition(obj.status, target)
            updated = OrderModel.objects.filter(pk=pk, status=obj.status).update(
                status=OrderStatus(target).value,
                notes=append_note(obj.notes, reason),
                updated_at=timezone.now(),
            )
            if not updated:
                raise IllegalTransition(obj.status, OrderStatus(target).value)
        return self.get(pk)

    def deliver(self, order_id, reason: Optional[str] = None) -> Order:
        """Mark an order delivered and decrement stock, all-or-nothing.

        The status compare-and-set runs first, so of two concurrent calls
        only one can match ``status=<current>``; the other sees zero rows
        and fails without touching stock. Products with untracked (NULL)
        stock are left alone.

        Raises:
            NotFound: Unknown order.
            IllegalTransition: Current status does not allow delivery
                (including an order that is already delivered).
            InsufficientStock: A tracked stock is below an item quantity;
                nothing is changed.
        """
        pk = _as_uuid(order_id)
        with transaction.atomic():
            obj = OrderModel.objects.select_for_update().filter(pk=pk).first()
            if obj is None:
                raise NotFound(order_id=str(order_id))
            check_transition(obj.status, OrderStatus.DELIVERED)

            updated = OrderModel.objects.filter(pk=pk, status=obj.status).update(
                status=OrderStatus.DELIVERED.value,
                notes=append_note(obj.notes, reason),
                updated_at=timezone.now(),
            )
            if not updated:
                raise IllegalTransition(obj.status, OrderStatus.DELIVERED.value)

            for item in obj.items.all():
                decremented = ProductModel.objects.filter(
                    pk=item.product_id, stock_quantity__gte=item.quantity
                ).update(stock_quantity=F("stock_quantity") - item.quantity)
                if decremented:
                    continue
                row = ProductModel.objects.filter(pk=item.product_id).values("stock_quantity").first()
                if row is None:
                    log.warning(
                        "delivered item references a missing product",
                        extra={"event": "deliver_missing_product", "order_id": str(pk), "product_id": item.product_id},
                    )
                    continue
                if row["stock_quantity"] is None:
                    continue
                raise InsufficientStock(item.product_id, item.quantity, row["stock_quantity"])

        log.info("order delivered", extra={"event": "order_delivered", "order_id": str(pk)})
        return self.get(pk)

    def patch_mutable_fields(self, order_id, owner_id: str, fields: dict) -> Order:
        """Update shipping address and/or append to notes while ``pending``.

        Raises:
            InvalidInput: No allowed field in ``fields``.
            NotFound: Unknown order or not owned by ``owner_id``.
            OrderNotModifiable: Order is no longer pending.
            ShippingAddressRequired: Blank address supplied.
        """
        updates = {k: v for k, v in fields.items() if k in MUTABLE_FIELDS}
        if not updates:
            raise InvalidInput(reason="NO_VALID_FIELDS", allowed=list(MUTABLE_FIELDS))
        pk = _as_uuid(order_id)
        with transaction.atomic():
            obj = OrderModel.objects.select_for_update().filter(pk=pk, user_id=owner_id).first()
            if obj is None:
                raise NotFound(order_id=str(order_id))
            if obj.status != OrderStatus.PENDING.value:
                raise OrderNotModifiable(status=obj.status)
            if "shipping_address" in updates:
                address = str(updates["shipping_address"] or "").strip()
                if not address:
                    raise ShippingAddressRequired()
                updates["shipping_address"] = address
            if "notes" in updates:
                updates["notes"] = append_note(obj.notes, updates["notes"])
            OrderModel.objects.filter(pk=pk, status=OrderStatus.PENDING.value).update(
                **updates, updated_at=timezone.now()
            )
        return self.get(pk)

    def record_payment(self, order_id) -> bool:
        """Flip payment_status pending -> paid.

        Only a ``pending`` order moves on to ``processing``; an order that
        is already further along (or terminal) keeps its status.

        Returns:
            bool: False when the order was already paid.
        """
        now = timezone.now()
        updated = OrderModel.objects.filter(
            pk=_as_uuid(order_id), payment_status=PaymentStatus.PENDING.value
        ).update(
            payment_status=PaymentStatus.PAID.value,
            status=Case(
                When(status=OrderStatus.PENDING.value, then=Value(OrderStatus.PROCESSING.value)),
                default=F("status"),
            ),
            paid_at=now,
            updated_at=now,
        )
        return bool(updated)

    def mark_paid_at_office(self, order_id):
        """Record an office payment for an order, bypassing owner scoping.

        Returns:
            tuple[Order, str]: The updated order and the synthesized
            transaction reference.

        Raises:
            NotFound: Unknown order.
            AlreadyPaid: payment_status is already ``paid``.
        """
        pk = _as_uuid(order_id)
        with transaction.atomic():
            obj = OrderModel.objects.select_for_update().filter(pk=pk).first()
            if obj is None:
                raise NotFound(order_id=str(order_id))
            if not self.record_payment(pk):
                raise AlreadyPaid(order_id=str(pk))
            reference = office_reference(pk)
            PaymentTransactionModel.objects.create(
                reference=reference,
                user_id=obj.user_id,
                amount_cents=obj.total_cents,
                currency=obj.currency,
                provider="office",
                payment_type=PaymentTransactionModel.PaymentType.OFFICE_PAYMENT,
                status=PaymentTransactionModel.Status.COMPLETED,
                order=obj,
                completed_at=timezone.now(),
            )
        log.info("order marked paid at office", extra={"event": "office_payment", "order_id": str(pk)})
        return self.get(pk), reference


class PaymentTransactionRepository:
    """Persist mobile-money payment attempts.

    A transaction moves ``pending -> completed`` or ``pending -> failed``
    and never leaves a terminal state.
    """

    def create_attempt(
        self,
        *,
        reference: str,
        draft: OrderDraft,
        provider: str,
        phone_number: str,
        checkout_id: uuid.UUID,
        attempt: int,
    ) -> PaymentTransactionModel:
        return PaymentTransactionModel.objects.create(
            reference=reference,
            user_id=draft.user_id,
            amount_cents=draft.total_cents,
            currency=draft.currency,
            provider=provider,
            payment_type=PaymentTransactionModel.PaymentType.MOBILE_MONEY,
            phone_number=phone_number,
            status=PaymentTransactionModel.Status.PENDING,
            checkout_id=checkout_id,
            attempt=attempt,
            pending_order=draft.to_payload(),
        )

    def get(self, reference: str, owner_id: Optional[str] = None) -> PaymentTransactionModel:
        qs = PaymentTransactionModel.objects.filter(reference=reference)
        if owner_id is not None:
            qs = qs.filter(user_id=owner_id)
        tx = qs.first()
        if tx is None:
            raise NotFound(reference=reference)
        return tx

    def stale_pending(self, older_than_secs: float, limit: int = 50) -> list[str]:
        """References of mobile-money attempts still ``pending`` after ``older_than_secs``, oldest first."""
        cutoff = timezone.now() - timedelta(seconds=older_than_secs)
        qs = PaymentTransactionModel.objects.filter(
            status=PaymentTransactionModel.Status.PENDING,
            payment_type=PaymentTransactionModel.PaymentType.MOBILE_MONEY,
            created_at__lt=cutoff,
        ).order_by("created_at")
        return list(qs.values_list("reference", flat=True)[:limit])

    def attempts_for(self, checkout_id) -> int:
        return PaymentTransactionModel.objects.filter(checkout_id=checkout_id).count()

    def checkout_order_id(self, checkout_id) -> Optional[str]:
        oid = OrderModel.objects.filter(checkout_id=checkout_id).values_list("id", flat=True).first()
        return str(oid) if oid else None

    def set_gateway_id(self, reference: str, gateway_transaction_id: Optional[str]) -> None:
        if not gateway_transaction_id:
            return
        PaymentTransactionModel.objects.filter(reference=reference).update(
            gateway_transaction_id=gateway_transaction_id, updated_at=timezone.now()
        )

    def mark_failed(self, reference: str, reason: str) -> bool:
        """pending -> failed. Returns False when the attempt was already terminal."""
        updated = PaymentTransactionModel.objects.filter(
            reference=reference, status=PaymentTransactionModel.Status.PENDING
        ).update(
            status=PaymentTransactionModel.Status.FAILED,
            failure_reason=reason,
            updated_at=timezone.now(),
        )
        return bool(updated)

    def complete(self, reference: str, orders: OrderRepository, gateway_transaction_id: Optional[str] = None):
        """Finalize a successful attempt, creating its order exactly once.

        Runs in one transaction with the attempt row locked. If the attempt
        already has an order, or another attempt of the same checkout
        already produced one, no order is created and only the
        transaction's status/completed_at are finalized. A race between two
        attempts of one checkout is settled by the unique ``checkout_id``
        on orders.

        Returns:
            tuple[Order | None, bool]: The checkout's order and whether this
            call created it. ``(None, False)`` for an attempt that had
            already failed.

        Raises:
            NotFound: Unknown reference.
            OrderPersistenceError: The order could not be stored; the
                attempt stays ``pending`` so a later signal can finish it.
        """
        with transaction.atomic():
            tx = PaymentTransactionModel.objects.select_for_update().filter(reference=reference).first()
            if tx is None:
                raise NotFound(reference=reference)
            if tx.status == PaymentTransactionModel.Status.FAILED:
                log.error(
                    "provider reported success for a failed attempt",
                    extra={"event": "late_success_on_failed_attempt", "reference": reference},
                )
                return None, False

            order_id = tx.order_id
            if order_id is None and tx.checkout_id:
                order_id = OrderModel.objects.filter(checkout_id=tx.checkout_id).values_list("id", flat=True).first()

            created = False
            if order_id is None:
                draft = OrderDraft.from_payload(tx.pending_order, checkout_id=tx.checkout_id)
                try:
                    with transaction.atomic():
                        order = orders.create(draft)
                except IntegrityError as exc:
                    # Only a concurrent order for this checkout is expected here.
                    order_id = (
                        OrderModel.objects.filter(checkout_id=tx.checkout_id).values_list("id", flat=True).first()
                    )
                    if order_id is None:
                        log.error(
                            "order insert conflicted for a checkout without an order",
                            extra={"event": "order_insert_conflict", "reference": reference},
                        )
                        raise OrderPersistenceError(reference=reference) from exc
                else:
                    order_id = _as_uuid(order.id)
                    orders.record_payment(order_id)
                    created = True

            tx.order_id = order_id
            tx.status = PaymentTransactionModel.Status.COMPLETED
            tx.completed_at = tx.completed_at or timezone.now()
            if gateway_transaction_id:
                tx.gateway_transaction_id = gateway_transaction_id
            tx.save(update_fields=["order", "status", "completed_at", "gateway_transaction_id", "updated_at"])

        log.info(
            "payment attempt completed",
            extra={"event": "payment_completed", "reference": reference, "order_id": str(order_id), "order_created": created},
        )
        return orders.get(order_id), created
