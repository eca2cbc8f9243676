"""Idempotency keys for client retries of checkout.

A client that sends ``Idempotency-Key`` with ``POST /api/checkout/`` gets
the stored response back on retries instead of a second reservation and
payment session. Reusing a key with a different body is a conflict.
"""

import hashlib
import json
from typing import Optional, Tuple

from django.db import IntegrityError, transaction

from .errors import DomainError
from .models import IdempotencyKey


class IdempotencyConflict(DomainError):
    code = "IDEMPOTENCY_CONFLICT"
    http_status = 409


def _hash(payload: dict) -> str:
    """Stable SHA-256 of a JSON-serializable payload (sorted keys, compact)."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, payload: dict) -> Tuple[bool, IdempotencyKey]:
    """Get-or-create the record for ``key``.

    The create runs in a nested savepoint so an IntegrityError only rolls
    that block back; the existing row is then locked (SELECT ... FOR UPDATE)
    and its request hash compared.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``; ``existing`` is True
        when the key was seen before with the same payload.

    Raises:
        IdempotencyConflict: Same key, different payload.
    """
    h = _hash(payload)
    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=key, request_hash=h, response_status=0, response_body={})
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise IdempotencyConflict("idempotency key reused with a different payload")
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, reference: Optional[str] = None) -> None:
    """Store the response so retries can replay it."""
    rec.response_status = status_code
    rec.response_body = body
    if reference is not None:
        rec.payment_reference = reference
    rec.save(update_fields=["response_status", "response_body", "payment_reference"])
