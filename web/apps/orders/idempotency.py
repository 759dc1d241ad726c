"""Idempotency-Key handling for order creation.

A client that retries ``POST /api/orders/`` with the same
``Idempotency-Key`` gets the stored response back instead of a second
order. Keys are scoped per user, so two customers cannot collide.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .errors import IdempotencyConflict
from .models import IdempotencyKey


def request_hash(payload: dict) -> str:
    """Stable SHA-256 of a JSON payload (sorted keys, compact separators)."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(user_id: str, key: str, payload: dict):
    """Get-or-create the record for ``(user_id, key)``.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``. ``existing`` is
        False when this call created the record and the caller must run the
        operation and ``finalize`` it.

    Raises:
        IdempotencyConflict: The key was already used with another payload.
    """
    h = request_hash(payload)
    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(user_id=user_id, key=key, request_hash=h)
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(user_id=user_id, key=key)
        if rec.request_hash != h:
            raise IdempotencyConflict(key=key)
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None) -> None:
    """Store the response so retries can replay it."""
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order"])


def release(rec: IdempotencyKey) -> None:
    """Forget a key whose request failed, so the client may retry it."""
    IdempotencyKey.objects.filter(pk=rec.pk, response_status=0).delete()
