# backend/stocksync/routes/system.py
"""
System health endpoint.

Unauthenticated: reports only whether the database answers and how many
runs are still open, never store or credential details.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import ReconciliationRun, Store
from ..models.sync import OPEN_RUN_STATUSES
from stocksync.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        store_count = db.session.query(Store).count()
        open_runs = db.session.query(ReconciliationRun).filter(
            ReconciliationRun.status.in_(OPEN_RUN_STATUSES)
        ).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "stores": store_count,
                "open_runs": open_runs,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: database reachable
    - 503: database unreachable
    """
    database_health = check_database_health()
    http_status = 200 if database_health["status"] == "healthy" else 503

    return {
        "status": database_health["status"],
        "timestamp": utcnow().isoformat() + "Z",
        "checks": {
            "database": database_health,
        }
    }, http_status
