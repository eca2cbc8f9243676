import logging

from django.core.cache import cache
from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.orders.models import OrderModel, RefundObligation

logger = logging.getLogger(__name__)


def _db_ok() -> bool:
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        return True
    except DatabaseError:
        logger.warning("health: database unreachable")
        return False


def _cache_ok() -> bool:
    try:
        cache.set("health:probe", "1", 5)
        return cache.get("health:probe") == "1"
    except Exception:
        logger.warning("health: cache unreachable")
        return False


def liveness_view(_request):
    """Process is up; no dependency checks."""
    return JsonResponse({"ok": True})


def health_view(_request):
    """Readiness probe: database, cache and a few backlog gauges."""
    db_ok = _db_ok()
    cache_ok = _cache_ok()

    backlog = {}
    if db_ok:
        backlog = {
            "pending_commit": OrderModel.objects.filter(status="pending_commit").count(),
            "pending_refunds": RefundObligation.objects.filter(status="pending").count(),
        }

    ok = db_ok and cache_ok
    return JsonResponse(
        {"ok": ok, "components": {"db": {"ok": db_ok}, "cache": {"ok": cache_ok}}, "backlog": backlog},
        status=200 if ok else 503,
    )
