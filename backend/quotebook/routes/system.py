# backend/quotebook/routes/system.py
"""
System health endpoint.

Checks database connectivity and reports the audit retry backlog so a
stuck queue is visible before anyone goes looking for missing entries.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy import text

from ..extensions import db
from ..models import DocumentCounter
from ..services import audit_service
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        counter_count = db.session.query(DocumentCounter).count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "dialect": db.session.get_bind().dialect.name,
                "document_counters": counter_count,
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


def check_audit_health() -> dict:
    """Queued audit entries mean writes are failing; degraded, not down."""
    pending = audit_service.pending_count()
    if pending:
        return {
            "status": "degraded",
            "warning": f"{pending} audit events awaiting retry",
            "details": {"pending": pending},
        }
    return {"status": "healthy", "details": {"pending": 0}}


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: Healthy or degraded
    - 503: Database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    audit_health = check_audit_health()

    all_checks = [database_health, audit_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status = "unhealthy"
        http_status = 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "audit": audit_health,
        }
    }

    return response, http_status
