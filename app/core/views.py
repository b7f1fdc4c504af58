"""
Core views providing infrastructure endpoints.

health_check is used by container orchestration and load balancers.
Besides database and cache connectivity it reports whether the wallet
ledger projection still agrees with its history log and whether the
payment verification circuit is open.
"""

import logging

from django.db import connection
from django.http import JsonResponse

logger = logging.getLogger(__name__)


def health_check(request):
    """
    Health check endpoint for monitoring and orchestration.

    HTTP Status Codes:
        200: Database reachable (cache, ledger and circuit are informative)
        503: Database unreachable

    Example Response:
        {
            "status": "healthy",
            "database": "connected",
            "cache": "connected",
            "ledger": "consistent",
            "payment_verification": "closed"
        }
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "cache": "unknown",
        "ledger": "unknown",
        "payment_verification": "unknown",
    }
    is_healthy = True

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        health_status["database"] = "connected"
    except Exception:
        logger.exception("Health check: database unreachable")
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
        # Cache failure degrades but does not fail the probe
        logger.warning("Health check: cache unreachable", exc_info=True)
        health_status["cache"] = "disconnected"

    if is_healthy:
        from payments.ledger import ledger

        mismatches = ledger.find_inconsistent_balances(limit=1)
        health_status["ledger"] = "inconsistent" if mismatches else "consistent"
        if mismatches:
            logger.error(
                "Health check: ledger projection disagrees with history",
                extra={"user_id": mismatches[0].user_id},
            )

    if health_status["cache"] == "connected":
        from payments.verification import verification_circuit

        health_status["payment_verification"] = verification_circuit().state.value

    status_code = 200 if is_healthy else 503
    return JsonResponse(health_status, status=status_code)
