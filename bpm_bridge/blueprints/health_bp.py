"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready   simple 200 for load balancers
    GET /api/v1/health/live    dependency status (DB, BPM settings, mirror drift)

BPM itself is never called from here.
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from bpm_bridge.integrations.bpm_gateway import get_bpm_gateway
from bpm_bridge.models import db
from bpm_bridge.models.bpm_form import BpmForm, BpmFormSyncLog, SyncStatus

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe: always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


def _mirror_stats() -> dict:
    """Mirrored form count and the number of remote mutations whose local write failed."""
    forms = db.session.execute(select(func.count()).select_from(BpmForm)).scalar_one()
    drift = db.session.execute(
        select(func.count()).select_from(BpmFormSyncLog).where(
            BpmFormSyncLog.sync_status == SyncStatus.SUCCESS,
            BpmFormSyncLog.local_status == SyncStatus.FAILED,
        )
    ).scalar_one()
    return {"forms": forms, "local_write_failures": drift}


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
        checks["mirror"] = _mirror_stats()
    except SQLAlchemyError as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    # ── BPM gateway settings ─────────────────────────────────────────
    settings = get_bpm_gateway().settings
    checks["bpm"] = {
        "status": "configured" if settings.base_url else "missing",
        "base_url": settings.base_url,
        "environment": settings.environment,
        "timeout_s": settings.timeout,
    }
    if not settings.base_url:
        overall = False

    checks["app"] = {"debug": current_app.debug, "testing": current_app.testing}

    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), 200 if overall else 503
