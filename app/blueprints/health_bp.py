"""
Health check blueprint.

Endpoints:
    GET /api/v1/health        — minimal status for uptime checks
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — dependency status (database, workflow tables, cache)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import SQLAlchemyError

from app.models import db
from app.services import cache_service

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")

WORKFLOW_TABLES = ("workflow_steps", "workflow_progress")


@health_bp.route("", methods=["GET"])
def health():
    return jsonify({"status": "ok", "app": "Trade Ops Workflow Service"})


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
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}

        tables = set(sa_inspect(db.engine).get_table_names())
        missing = [t for t in WORKFLOW_TABLES if t not in tables]
        checks["workflow_tables"] = (
            {"status": "ok"} if not missing else {"status": "missing", "tables": missing}
        )
        overall = not missing
    except SQLAlchemyError as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Cache (optional, never fails overall health) ─────────────────
    checks["cache"] = cache_service.health_check()

    checks["app"] = {
        "name": "Trade Ops Workflow Service",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
