"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — database round trip + scheduler state
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from app.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1), "dialect": db.engine.dialect.name}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Scheduler ────────────────────────────────────────────────────
    scheduler = current_app.extensions.get("scheduler")
    checks["scheduler"] = {
        "status": "running" if scheduler is not None and scheduler._running else "idle",
        "enabled": bool(current_app.config.get("SCHEDULER_ENABLED")),
    }

    # ── Collaborators ────────────────────────────────────────────────
    checks["order_service"] = {"mode": "http" if current_app.config.get("ORDER_SERVICE_URL") else "local"}
    checks["availability_service"] = {
        "mode": "http" if current_app.config.get("AVAILABILITY_SERVICE_URL") else "always_open",
    }

    checks["app"] = {
        "name": "Bookable Fulfillment Platform",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
