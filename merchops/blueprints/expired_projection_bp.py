"""
Expired projection blueprint: verification workflow over expired records.

Endpoints:
    GET  /api/v1/expired-projections                list (?status=pending|verified|cancelled|restored)
    GET  /api/v1/expired-projections/summary        counts per verification status
    GET  /api/v1/expired-projections/<id>
    POST /api/v1/expired-projections/<id>/verify    {"status", "verified_by", "notes"?}
    POST /api/v1/expired-projections/<id>/restore   {"restored_by"}
"""

import logging

from flask import Blueprint, jsonify, request

from merchops import limiter
from merchops.blueprints import register_error_handlers, request_actor
from merchops.middleware.rate_limiter import WRITE_LIMIT
from merchops.services import expired_verification
from merchops.services.projection_store import ProjectionFilters, get_expired_projection
from merchops.utils.errors import E, api_error

logger = logging.getLogger(__name__)

expired_projection_bp = Blueprint("expired_projection", __name__, url_prefix="/api/v1")
register_error_handlers(expired_projection_bp)

write_limit = limiter.shared_limit(WRITE_LIMIT, scope="expired_projection_write")


@expired_projection_bp.route("/expired-projections", methods=["GET"])
def list_expired():
    rows = expired_verification.get_expired_projections(
        ProjectionFilters.from_args(request.args),
        status=request.args.get("status") or None,
    )
    return jsonify({"items": [r.to_dict() for r in rows], "total": len(rows)}), 200


@expired_projection_bp.route("/expired-projections/summary", methods=["GET"])
def expired_summary():
    summary = expired_verification.get_expired_projections_summary(
        ProjectionFilters.from_args(request.args),
    )
    return jsonify(summary), 200


@expired_projection_bp.route("/expired-projections/<int:expired_id>", methods=["GET"])
def get_expired(expired_id):
    return jsonify(get_expired_projection(expired_id).to_dict()), 200


@expired_projection_bp.route("/expired-projections/<int:expired_id>/verify", methods=["POST"])
@write_limit
def verify(expired_id):
    """Record a decision: status "verified" (no longer needed) or "cancelled"."""
    data = request.get_json(silent=True) or {}
    if not data.get("status"):
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    verified_by = request_actor(data, "verified_by")
    record = expired_verification.verify_expired_projection(
        expired_id, data["status"], verified_by, notes=data.get("notes"),
    )
    return jsonify(record.to_dict()), 200


@expired_projection_bp.route("/expired-projections/<int:expired_id>/restore", methods=["POST"])
@write_limit
def restore(expired_id):
    """Put the originating projection back into the open pool."""
    data = request.get_json(silent=True) or {}
    record = expired_verification.restore_expired_projection(
        expired_id, request_actor(data, "restored_by"),
    )
    return jsonify(record.to_dict()), 200
