"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  simple 200 for load balancers
    GET /api/v1/health/live   detailed system health (DB, upload folder)
"""

import logging
import os
import time

from flask import Blueprint, current_app, jsonify

from campusflow.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe; always 200 if app is running."""
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
    except Exception as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    # ── Attachment storage ───────────────────────────────────────────
    folder = current_app.config.get("UPLOAD_FOLDER", "")
    if folder and os.path.isdir(folder):
        writable = os.access(folder, os.W_OK)
        checks["uploads"] = {"status": "ok" if writable else "error", "path": folder}
        overall = overall and writable
    else:
        # Created lazily on first upload.
        checks["uploads"] = {"status": "missing", "path": folder}

    # ── App info ─────────────────────────────────────────────────────
    checks["app"] = {
        "name": "Campus Request Routing",
        "debug": current_app.debug,
        "testing": current_app.testing,
        "delegation_authority": bool(current_app.config.get("DELEGATION_AUTHORITY_ENABLED")),
    }

    status_code = 200 if overall else 503
    return jsonify({"status": "ok" if overall else "degraded", "checks": checks}), status_code
