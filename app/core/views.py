"""
Core views providing infrastructure endpoints.
"""

from django.db import connection
from django.http import JsonResponse


def health_check(request):
    """
    Health check endpoint for load balancers and container probes.

    Returns 200 when the database is reachable and 503 otherwise. Cache
    (Redis) failures are reported but do not fail the check. The number of
    registered payment gateways is included so a bad deploy that lost an
    adapter import is visible.

    Example Response:
        {
            "status": "healthy",
            "database": "connected",
            "cache": "connected",
            "payment_providers": 8
        }
    """
    from payments.adapters.registry import list_providers

    health_status = {
        "status": "healthy",
        "database": "unknown",
        "cache": "unknown",
        "payment_providers": len(list_providers()),
    }
    is_healthy = True

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        health_status["database"] = "connected"
    except Exception:
        health_status["database"] = "disconnected"
        health_status["status"] = "unhealthy"
        is_healthy = False

    try:
        from django.core.cache import cache

        cache.set("health_check", "ok", timeout=1)
        if cache.get("health_check") == "ok":
            health_status["cache"] = "connected"
        else:
            health_status["cache"] = "disconnected"
    except Exception:
        health_status["cache"] = "disconnected"

    status_code = 200 if is_healthy else 503

    return JsonResponse(health_status, status=status_code)
