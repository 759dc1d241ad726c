import uuid
from django.db import IntegrityError, models, transaction


class OrderModel(models.Model):
    # UUID PK exposed by the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Human-facing incremental order number
    internal_id = models.BigIntegerField(unique=True, editable=False, null=True)

    class Status(models.TextChoices):
        PENDING = "pending"
        PROCESSING = "processing"
        SHIPPED = "shipped"
        DELIVERED = "delivered"
        CANCELLED = "cancelled"

    class PaymentStatus(models.TextChoices):
        PENDING = "pending"
        PAID = "paid"

    user_id = models.CharField(max_length=128, db_index=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    payment_status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PENDING)
    total_cents = models.PositiveBigIntegerField(default=0)
    currency = models.CharField(max_length=3, default="TZS")
    payment_method = models.CharField(max_length=128, blank=True, default="")
    shipping_address = models.TextField()
    notes = models.TextField(blank=True, default="")
    customer_email = models.CharField(max_length=254, null=True, blank=True)
    customer_phone = models.CharField(max_length=32, null=True, blank=True)
    # One mobile-money checkout (all its retry attempts) yields at most one order.
    checkout_id = models.UUIDField(null=True, blank=True, unique=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "orders"
        ordering = ["-internal_id"]

    def save(self, *args, **kwargs):
        # Assign incremental `internal_id` only on creation
        if self.internal_id is None:
            self.internal_id = OrderNumberCounter.next_value("orders")

        super().save(*args, **kwargs)


class OrderNumberCounter(models.Model):
    """Hands out order numbers.

    ``next_value`` bumps the row with a single ``UPDATE value = value + 1``;
    the row lock it takes is held until the caller's transaction ends, so
    concurrent creates queue on it and never read the same value.
    """

    name = models.CharField(max_length=32, primary_key=True)
    value = models.BigIntegerField(default=0)

    class Meta:
        db_table = "order_number_counters"

    @classmethod
    def next_value(cls, name: str) -> int:
        with transaction.atomic():
            while True:
                if cls.objects.filter(name=name).update(value=models.F("value") + 1):
                    return cls.objects.filter(name=name).values_list("value", flat=True).get()
                # First use: continue after any numbers already issued.
                start = OrderModel.objects.aggregate(top=models.Max("internal_id"))["top"] or 0
                try:
                    with transaction.atomic():
                        cls.objects.create(name=name, value=start + 1)
                    return start + 1
                except IntegrityError:
                    # Another worker created the row first; bump it instead.
                    continue


class OrderItemModel(models.Model):
    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="items")
    product_id = models.CharField(max_length=64)
    quantity = models.PositiveIntegerField()
    # Snapshot price at order time, never a live catalog lookup.
    price_cents = models.PositiveBigIntegerField()

    class Meta:
        db_table = "order_items"
        ordering = ["id"]


class PaymentTransactionModel(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    class Status(models.TextChoices):
        PENDING = "pending"
        COMPLETED = "completed"
        FAILED = "failed"

    class PaymentType(models.TextChoices):
        MOBILE_MONEY = "mobile_money"
        OFFICE_PAYMENT = "office_payment"

    reference = models.CharField(max_length=64, unique=True)
    user_id = models.CharField(max_length=128, db_index=True)
    amount_cents = models.PositiveBigIntegerField()
    currency = models.CharField(max_length=3)
    provider = models.CharField(max_length=32)
    payment_type = models.CharField(max_length=16, choices=PaymentType.choices)
    phone_number = models.CharField(max_length=16, blank=True, default="")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    order = models.ForeignKey(
        OrderModel, null=True, blank=True, on_delete=models.SET_NULL, related_name="payment_transactions"
    )
    # Shared by every attempt of one mobile-money checkout.
    checkout_id = models.UUIDField(null=True, blank=True, db_index=True)
    attempt = models.PositiveIntegerField(default=1)
    # Validated order payload captured at initiation (mobile money only).
    pending_order = models.JSONField(null=True, blank=True)
    gateway_transaction_id = models.CharField(max_length=128, null=True, blank=True)
    failure_reason = models.TextField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "payment_transactions"
        ordering = ["-created_at"]


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200)
    user_id = models.CharField(max_length=128)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order = models.ForeignKey(OrderModel, null=True, blank=True, on_delete=models.SET_NULL)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
        constraints = [
            models.UniqueConstraint(fields=["user_id", "key"], name="ux_idempotency_user_key"),
        ]
