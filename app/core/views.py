"""
Infrastructure endpoints.

The health check is polled by the load balancer and by the external
scheduler before it fires the billing job.
"""

import logging

from django.core.cache import cache
from django.db import DatabaseError, connection
from django.http import JsonResponse

logger = logging.getLogger(__name__)


def health_check(request):
    """
    Report database and cache connectivity.

    Returns 200 when the database answers and 503 otherwise. The cache
    backs the billing run lease, but an unreachable cache only shows as
    "disconnected": the job itself refuses to run without its lease.

    Example Response:
        {"status": "healthy", "database": "connected", "cache": "connected"}
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "cache": "unknown",
    }
    is_healthy = True

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        health_status["database"] = "connected"
    except DatabaseError:
        logger.exception("Health check: database unreachable")
        health_status["database"] = "disconnected"
        health_status["status"] = "unhealthy"
        is_healthy = False

    try:
        cache.set("health_check", "ok", timeout=1)
        connected = cache.get("health_check") == "ok"
    except Exception:
        logger.warning("Health check: cache unreachable", exc_info=True)
        connected = False
    health_status["cache"] = "connected" if connected else "disconnected"

    return JsonResponse(health_status, status=200 if is_healthy else 503)
