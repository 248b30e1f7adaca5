# backend/stockroom/routes/system.py
"""
System health endpoint.

Checks the database and the stock balance view so deployments can tell a
dead process from a drifting ledger.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import StockMovement, OrderEvent
from ..services.ledger_service import verify_balances
from stockroom.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        movement_count = db.session.query(StockMovement).count()
        event_count = db.session.query(OrderEvent).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "stock_movements": movement_count,
                "order_events": event_count,
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


def check_balance_view_health() -> dict:
    """Compare the stock_balances view with the ledger fold."""
    start_time = time.time()
    try:
        mismatches = verify_balances()
        elapsed_ms = (time.time() - start_time) * 1000
        if mismatches:
            return {
                "status": "degraded",
                "latency_ms": round(elapsed_ms, 2),
                "warning": f"{len(mismatches)} product balance(s) disagree with the ledger",
                "details": {"mismatches": mismatches[:20]},
            }
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Balance view health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Balance view error"
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded (still operational)
    - 503: one or more checks unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    balance_health = check_balance_view_health()

    all_checks = [database_health, balance_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
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
            "balance_view": balance_health,
        }
    }

    return response, http_status
