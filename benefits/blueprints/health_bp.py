"""
Health check blueprint.

Endpoints:
    GET /health        — liveness with database round-trip
    GET /health/ready  — simple 200 for load balancers
"""

import logging
import time

from flask import Blueprint, jsonify
from sqlalchemy.exc import SQLAlchemyError

from benefits.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness check — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("", methods=["GET"])
def live():
    """Liveness check including the database."""
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
    except SQLAlchemyError as exc:
        logger.error("Health check — database failed: %s", exc)
        return jsonify({"status": "degraded", "database": {"status": "error"}}), 503
    return jsonify({
        "status": "ok",
        "app": "Benefit Request Engine",
        "database": {"status": "ok", "latency_ms": round(db_ms, 1)},
    }), 200
