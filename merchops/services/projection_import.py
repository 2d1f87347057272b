"""
Projection import: lands vendor forecast rows without duplicating open lines.

Rows are keyed by (vendor_id, sku, year, month, order_type):

  - no row for the key            → new ``unmatched`` projection
  - live row (unmatched/partial/matched) from an earlier batch
                                  → archived to ProjectionHistory, forecast
                                    overwritten, variance and status re-derived
  - live row from the same batch  → skipped (re-running an import is a no-op)
  - only terminal rows (removed / expired / verified_unmatched)
                                  → skipped

Parsing the vendor's spreadsheet happens upstream; this service receives
plain dicts.

Usage:
    from merchops.services.projection_import import import_projections

    result = import_projections(rows, import_batch_id="2025-03-run", source_file="fcst.xlsx")
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from merchops.core.exceptions import ConcurrentModificationError, ValidationError
from merchops.models.audit import write_audit
from merchops.models.projection import (
    MATCHED_STATUSES,
    ORDER_TYPES,
    Projection,
    ProjectionHistory,
)
from merchops.services.projection_matching import score_projection
from merchops.services.projection_store import commit_or_conflict, resolve_session
from merchops.services.variance import coverage_status
from merchops.services.vendor_resolver import VendorResolver, normalize_brand
from merchops.utils.helpers import parse_date, parse_int

logger = logging.getLogger(__name__)

LIVE_STATUSES = ("unmatched", "partial", "matched")
_FORECAST_FIELDS = ("vendor_code", "sku_description", "collection", "brand", "quantity", "projection_value")


# ═══════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════

def _amount(raw):
    """Blank → 0; anything non-integer → None."""
    if raw is None or raw == "":
        return 0
    return parse_int(raw)


def validate_projection_rows(rows: list[dict], resolver: VendorResolver) -> dict:
    """
    Validate all rows before import.
    Returns {"valid": [...], "errors": [...]}
    """
    valid = []
    errors = []

    for row_num, row in enumerate(rows, start=1):
        row_errors = []

        vendor_id = parse_int(row.get("vendor_id"))
        if vendor_id is None:
            vendor_id = resolver.resolve(row.get("vendor"))
        if vendor_id is None:
            row_errors.append(f"Unknown vendor: {row.get('vendor') or row.get('vendor_id')!r}")

        sku = str(row.get("sku") or "").strip()
        if not sku:
            row_errors.append("sku is required")

        brand = normalize_brand(row.get("brand"))
        if not brand:
            row_errors.append("brand is required")

        year = parse_int(row.get("year"))
        month = parse_int(row.get("month"))
        if year is None or not 2000 <= year <= 2100:
            row_errors.append(f"Invalid year: {row.get('year')!r}")
        if month is None or not 1 <= month <= 12:
            row_errors.append(f"Invalid month: {row.get('month')!r}")

        order_type = str(row.get("order_type") or "regular").strip().lower()
        if order_type not in ORDER_TYPES:
            row_errors.append(f"Unknown order_type '{order_type}'")

        quantity = _amount(row.get("quantity"))
        value = _amount(row.get("projection_value"))
        if quantity is None or quantity < 0:
            row_errors.append("quantity must be a non-negative integer")
        if value is None or value < 0:
            row_errors.append("projection_value must be a non-negative integer")

        if row_errors:
            errors.append({"row_num": row_num, "sku": sku, "errors": row_errors})
            continue

        valid.append({
            "row_num": row_num,
            "vendor_id": vendor_id,
            "vendor_code": row.get("vendor_code"),
            "sku": sku,
            "sku_description": row.get("sku_description"),
            "collection": (row.get("collection") or "").strip().lower() or None,
            "brand": brand,
            "year": year,
            "month": month,
            "order_type": order_type,
            "quantity": quantity,
            "projection_value": value,
        })

    return {"valid": valid, "errors": errors}


# ═══════════════════════════════════════════════════════════════
# Execution
# ═══════════════════════════════════════════════════════════════

def _rows_for_key(sess, row: dict) -> list[Projection]:
    stmt = (
        select(Projection)
        .where(
            Projection.vendor_id == row["vendor_id"],
            Projection.sku == row["sku"],
            Projection.year == row["year"],
            Projection.month == row["month"],
            Projection.order_type == row["order_type"],
        )
        .order_by(Projection.id.desc())
    )
    return list(sess.execute(stmt).scalars())


def _supersede(sess, projection: Projection, row: dict, provenance: dict) -> dict:
    """Archive the current forecast, then overwrite it in place."""
    sess.add(ProjectionHistory.archive_of(projection))
    diff = {}
    for field in _FORECAST_FIELDS:
        if getattr(projection, field) != row[field]:
            diff[field] = {"old": getattr(projection, field), "new": row[field]}
            setattr(projection, field, row[field])
    for field, value in provenance.items():
        setattr(projection, field, value)

    if projection.match_status in MATCHED_STATUSES:
        score_projection(projection)
        new_status = coverage_status(projection.quantity, projection.actual_quantity)
        if new_status != projection.match_status:
            diff["match_status"] = {"old": projection.match_status, "new": new_status}
            projection.match_status = new_status
    return diff


def import_projections(
    rows: list[dict],
    *,
    import_batch_id: str,
    source_file: str | None = None,
    projection_run_date: date | str | None = None,
    actor: str = "system",
    session=None,
) -> dict:
    """Validate and land a batch of forecast rows, one commit per row.

    Returns:
        {"created", "updated", "skipped", "errors": [{"row_num", "errors"}]}
    """
    import_batch_id = (import_batch_id or "").strip()
    if not import_batch_id:
        raise ValidationError("import_batch_id is required", {"import_batch_id": "required"})

    sess = resolve_session(session)
    run_date = parse_date(projection_run_date) or date.today()
    provenance = {
        "import_batch_id": import_batch_id,
        "projection_run_date": run_date,
        "source_file": source_file,
    }

    validation = validate_projection_rows(rows, VendorResolver.load(sess))
    result = {"created": 0, "updated": 0, "skipped": 0, "errors": list(validation["errors"])}

    for row in validation["valid"]:
        existing = _rows_for_key(sess, row)
        live = next((p for p in existing if p.match_status in LIVE_STATUSES), None)

        if live is None and existing:
            result["skipped"] += 1
            continue
        if live is not None and live.import_batch_id == import_batch_id:
            result["skipped"] += 1
            continue

        try:
            if live is None:
                fields = {k: v for k, v in row.items() if k != "row_num"}
                projection = Projection(match_status="unmatched", **fields, **provenance)
                sess.add(projection)
                sess.flush()
                diff = {"created": True, "quantity": row["quantity"], "projection_value": row["projection_value"]}
                outcome = "created"
            else:
                projection = live
                diff = _supersede(sess, projection, row, provenance)
                outcome = "updated"

            write_audit(
                entity_type="projection",
                entity_id=projection.id,
                action="projection.import",
                actor=actor,
                diff={"import_batch_id": import_batch_id, **diff},
                session=sess,
            )
            commit_or_conflict("Projection", projection.id, session=sess)
        except (ConcurrentModificationError, SQLAlchemyError) as exc:
            sess.rollback()
            result["errors"].append({"row_num": row["row_num"], "sku": row["sku"], "errors": [str(exc)]})
            logger.warning("Projection import row %d failed: %s", row["row_num"], exc)
            continue

        result[outcome] += 1

    logger.info(
        "Projection import %s: %d created, %d updated, %d skipped, %d errors",
        import_batch_id, result["created"], result["updated"], result["skipped"], len(result["errors"]),
    )
    return result
