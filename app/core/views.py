"""
Infrastructure endpoints.
"""

import logging

from django.db import DatabaseError, connection
from django.http import JsonResponse

logger = logging.getLogger(__name__)


def health_check(request):
    """Liveness probe: 200 when the database answers SELECT 1, 503 otherwise."""
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except DatabaseError:
        logger.error("Health check database probe failed", exc_info=True)
        return JsonResponse({"status": "unhealthy", "database": "disconnected"}, status=503)

    return JsonResponse({"status": "healthy", "database": "connected"})
