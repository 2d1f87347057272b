"""
Probes for the load balancer and the on-call dashboard.

    GET /api/v1/health/ready    process is up
    GET /api/v1/health/live     database round-trip and limiter storage
    GET /api/v1/health/db-diag  row counts per engine table
"""

import logging
import time

import redis
from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from merchops.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")

_ENGINE_TABLES = (
    "vendors", "vendor_aliases", "po_headers", "projections",
    "projection_po_allocations", "expired_projections", "projection_history", "audit_logs",
)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 1)


def _probe_database() -> dict:
    started = time.perf_counter()
    try:
        db.session.execute(db.text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Liveness probe: database unreachable: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": _elapsed_ms(started)}


def _probe_limiter_storage() -> dict:
    url = current_app.config.get("REDIS_URL", "")
    if not url.startswith(("redis://", "rediss://")):
        return {"status": "skipped", "detail": "in-memory limiter storage"}
    started = time.perf_counter()
    try:
        redis.from_url(url, socket_timeout=2).ping()
    except redis.RedisError as exc:
        logger.warning("Liveness probe: limiter storage unreachable: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": _elapsed_ms(started)}


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Only the database decides the verdict; a lost limiter store just degrades throttling."""
    checks = {
        "database": _probe_database(),
        "redis": _probe_limiter_storage(),
        "app": {
            "name": "Merchandising Operations Platform",
            "debug": current_app.debug,
            "testing": current_app.testing,
        },
    }
    healthy = checks["database"]["status"] == "ok"
    return jsonify({
        "status": "healthy" if healthy else "degraded",
        "checks": checks,
    }), 200 if healthy else 503


@health_bp.route("/db-diag", methods=["GET"])
def db_diagnostic():
    """Row count per engine table, or the error a missing table raises."""
    results = {}
    for table in _ENGINE_TABLES:
        try:
            count = db.session.execute(db.text(f"SELECT COUNT(*) FROM {table}")).scalar()
        except SQLAlchemyError as exc:
            db.session.rollback()
            results[table] = {"status": "error", "detail": str(exc)}
            continue
        results[table] = {"status": "ok", "count": count}
    return jsonify(results), 200
