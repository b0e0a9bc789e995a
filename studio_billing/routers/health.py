"""
Health check endpoint.

- GET /api/health  — cheap: process alive, version, uptime, database ping
"""
import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from studio_billing.core.structured_logging import APP_VERSION, SERVICE_NAME

logger = logging.getLogger(__name__)

router = APIRouter()

_STARTED = time.monotonic()


@router.get("/health")
def health_check(request: Request):
    """Liveness plus a one-statement database check."""
    database = "ok"
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Health check: database unreachable: %s", exc)
        database = "down"

    return {
        "status": "ok" if database == "ok" else "degraded",
        "version": APP_VERSION,
        "service": SERVICE_NAME,
        "database": database,
        "uptime_s": round(time.monotonic() - _STARTED, 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
