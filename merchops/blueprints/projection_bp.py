"""
Projection blueprint: reconciliation, manual overrides and dashboard reads.

Endpoint groups:
  Listing                 GET   /api/v1/projections
                          GET   /api/v1/projections/<id>
                          GET   /api/v1/projections/filter-options
                          GET   /api/v1/projections/<id>/audit
  Batch runs              POST  /api/v1/projections/match
                          POST  /api/v1/projections/expire-check
                          POST  /api/v1/projections/import
  Manual overrides        POST  /api/v1/projections/<id>/match
                          POST  /api/v1/projections/<id>/unmatch
                          POST  /api/v1/projections/<id>/remove
                          PATCH /api/v1/projections/<id>/order-type
  Validation report       GET   /api/v1/projections/validation-summary
                          GET   /api/v1/projections/overdue
                          GET   /api/v1/projections/variance
                          GET   /api/v1/projections/spo
  Forecast history        GET   /api/v1/vendors/<id>/projection-history

Filters on the read endpoints: vendor_id, brand, year, month.
Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from merchops import limiter
from merchops.blueprints import paginate_query, register_error_handlers, request_actor
from merchops.middleware.rate_limiter import BATCH_LIMIT, WRITE_LIMIT
from merchops.models.audit import audit_trail
from merchops.models.projection import MATCH_STATUSES, ORDER_TYPES, Projection
from merchops.models.purchasing import POFact
from merchops.services import (
    expiration_scanner,
    projection_import,
    projection_matching,
    projection_validation_report as report,
)
from merchops.services.projection_store import ProjectionFilters, get_projection
from merchops.utils.errors import E, api_error
from merchops.utils.helpers import parse_date

logger = logging.getLogger(__name__)

projection_bp = Blueprint("projection", __name__, url_prefix="/api/v1")
register_error_handlers(projection_bp)

batch_limit = limiter.shared_limit(BATCH_LIMIT, scope="projection_batch")
write_limit = limiter.shared_limit(WRITE_LIMIT, scope="projection_write")


def _filters() -> ProjectionFilters:
    return ProjectionFilters.from_args(request.args)


# ═════════════════════════════════════════════════════════════════════════
# Listing
# ═════════════════════════════════════════════════════════════════════════


@projection_bp.route("/projections", methods=["GET"])
def list_projections():
    """Paginated projections.

    Query params: vendor_id, brand, year, month, status, order_type, limit, offset
    """
    query = _filters().apply(Projection.query)

    status = request.args.get("status")
    if status:
        if status not in MATCH_STATUSES:
            return api_error(E.VALIDATION_INVALID, f"Unknown status '{status}'")
        query = query.filter(Projection.match_status == status)
    order_type = request.args.get("order_type")
    if order_type:
        if order_type not in ORDER_TYPES:
            return api_error(E.VALIDATION_INVALID, f"Unknown order_type '{order_type}'")
        query = query.filter(Projection.order_type == order_type)

    items, total = paginate_query(query.order_by(Projection.year, Projection.month, Projection.id))
    return jsonify({"items": [p.to_dict() for p in items], "total": total}), 200


@projection_bp.route("/projections/<int:projection_id>", methods=["GET"])
def get_projection_detail(projection_id):
    projection = get_projection(projection_id)
    data = projection.to_dict()
    data["allocations"] = [a.to_dict() for a in projection.allocations]
    return jsonify(data), 200


@projection_bp.route("/projections/<int:projection_id>/audit", methods=["GET"])
def projection_audit(projection_id):
    get_projection(projection_id)
    return jsonify([entry.to_dict() for entry in audit_trail("projection", projection_id)]), 200


@projection_bp.route("/projections/filter-options", methods=["GET"])
def filter_options():
    return jsonify(report.get_projection_filter_options()), 200


# ═════════════════════════════════════════════════════════════════════════
# Batch runs
# ═════════════════════════════════════════════════════════════════════════


@projection_bp.route("/projections/match", methods=["POST"])
@batch_limit
def match_projections():
    """Reconcile a batch of PO facts against open projections.

    Body: {"purchase_orders": [{po_number, vendor, sku, order_quantity,
           total_value, po_date, original_ship_date, program_description?,
           client?, sku_description?}, ...]}
    Returns: run summary {matched, variances, errors, processed, partial, skipped}.
    """
    data = request.get_json(silent=True) or {}
    rows = data.get("purchase_orders")
    if not isinstance(rows, list):
        return api_error(E.VALIDATION_REQUIRED, "purchase_orders must be a list")
    if not all(isinstance(row, dict) for row in rows):
        return api_error(E.VALIDATION_INVALID, "each purchase order must be an object")

    summary = projection_matching.match_projections_to_pos([POFact.from_dict(row) for row in rows])
    return jsonify(summary), 200


@projection_bp.route("/projections/expire-check", methods=["POST"])
@batch_limit
def expire_check():
    """Snapshot open projections whose order window has closed.

    Body (optional): {"as_of": "YYYY-MM-DD"}: defaults to today.
    Returns: {regularExpired, spoExpired, expiredCount, errors}
    """
    data = request.get_json(silent=True) or {}
    as_of = None
    if data.get("as_of"):
        as_of = parse_date(data["as_of"])
        if as_of is None:
            return api_error(E.VALIDATION_INVALID, "as_of must be a date (YYYY-MM-DD)")
    return jsonify(expiration_scanner.check_expired_projections(today=as_of)), 200


@projection_bp.route("/projections/import", methods=["POST"])
@batch_limit
def import_projections():
    """Land forecast rows.

    Body: {"import_batch_id", "rows": [...], "source_file"?, "projection_run_date"?}
    Returns: {created, updated, skipped, errors}
    """
    data = request.get_json(silent=True) or {}
    rows = data.get("rows")
    if not isinstance(rows, list):
        return api_error(E.VALIDATION_REQUIRED, "rows must be a list")
    batch_id = (data.get("import_batch_id") or "").strip()
    if not batch_id:
        return api_error(E.VALIDATION_REQUIRED, "import_batch_id is required")

    result = projection_import.import_projections(
        rows,
        import_batch_id=batch_id,
        source_file=data.get("source_file"),
        projection_run_date=data.get("projection_run_date"),
        actor=request_actor(data),
    )
    status = 201 if result["created"] else 200
    return jsonify(result), status


# ═════════════════════════════════════════════════════════════════════════
# Manual overrides
# ═════════════════════════════════════════════════════════════════════════


@projection_bp.route("/projections/<int:projection_id>/match", methods=["POST"])
@write_limit
def manual_match(projection_id):
    """Body: {"po_number"}"""
    data = request.get_json(silent=True) or {}
    po_number = (data.get("po_number") or "").strip()
    if not po_number:
        return api_error(E.VALIDATION_REQUIRED, "po_number is required")
    projection = projection_matching.manual_match_projection(
        projection_id, po_number, actor=request_actor(data),
    )
    return jsonify(projection.to_dict()), 200


@projection_bp.route("/projections/<int:projection_id>/unmatch", methods=["POST"])
@write_limit
def unmatch(projection_id):
    data = request.get_json(silent=True) or {}
    projection = projection_matching.unmatch_projection(projection_id, actor=request_actor(data))
    return jsonify(projection.to_dict()), 200


@projection_bp.route("/projections/<int:projection_id>/remove", methods=["POST"])
@write_limit
def remove(projection_id):
    """Body: {"reason"}: required, stored on the projection."""
    data = request.get_json(silent=True) or {}
    projection = projection_matching.mark_projection_removed(
        projection_id, data.get("reason") or "", actor=request_actor(data),
    )
    return jsonify(projection.to_dict()), 200


@projection_bp.route("/projections/<int:projection_id>/order-type", methods=["PATCH"])
@write_limit
def update_order_type(projection_id):
    """Body: {"order_type": "regular" | "mto" | "spo"}"""
    data = request.get_json(silent=True) or {}
    if not data.get("order_type"):
        return api_error(E.VALIDATION_REQUIRED, "order_type is required")
    projection = projection_matching.update_projection_order_type(
        projection_id, data["order_type"], actor=request_actor(data),
    )
    return jsonify(projection.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Validation report
# ═════════════════════════════════════════════════════════════════════════


@projection_bp.route("/projections/validation-summary", methods=["GET"])
def validation_summary():
    return jsonify(report.get_projection_validation_summary(_filters())), 200


@projection_bp.route("/projections/overdue", methods=["GET"])
def overdue():
    """Query params: threshold_days (defaults to each projection's order-type window)."""
    threshold = request.args.get("threshold_days", type=int)
    if threshold is not None and threshold < 0:
        return api_error(E.VALIDATION_INVALID, "threshold_days must be >= 0")
    rows = report.get_overdue_projections(threshold, _filters())
    return jsonify({"items": rows, "total": len(rows)}), 200


@projection_bp.route("/projections/variance", methods=["GET"])
def variance():
    """Query params: min_variance_pct (default 10)."""
    min_pct = request.args.get("min_variance_pct", default=10, type=float)
    rows = report.get_projections_with_variance(min_pct, _filters())
    return jsonify({"items": [p.to_dict() for p in rows], "total": len(rows)}), 200


@projection_bp.route("/projections/spo", methods=["GET"])
def spo():
    rows = report.get_spo_projections(_filters())
    return jsonify({"items": rows, "total": len(rows)}), 200


@projection_bp.route("/vendors/<int:vendor_id>/projection-history", methods=["GET"])
def vendor_projection_history(vendor_id):
    """Query params: sku, year"""
    rows = report.get_vendor_sku_projection_history(
        vendor_id,
        sku=request.args.get("sku") or None,
        year=request.args.get("year", type=int),
    )
    return jsonify({"items": [h.to_dict() for h in rows], "total": len(rows)}), 200
