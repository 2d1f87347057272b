"""
Projection validation report: read-only aggregates for the dashboards.

Nothing here mutates state. Days are counted against the last day of the
target month:

    days_until_due = month_end(year, month) − today
    overdue        ⇔ unmatched and days_until_due < 0
    at risk        ⇔ open and 0 ≤ days_until_due ≤ threshold(order_type)

A partial projection already has a PO, so it can be at risk but never
overdue.

Severity labels (UI only): overdue, critical (≤ ⅓ of threshold left),
warning (≤ ½), watch.

Regular projections feed the overdue / at-risk / variance figures; mto and
spo projections are tracked separately in the ``spo*`` counts.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import select

from merchops.core.exceptions import NotFoundError
from merchops.models.projection import (
    OPEN_MATCH_STATUSES,
    SHORT_WINDOW_ORDER_TYPES,
    VARIANCE_ALERT_PCT,
    Projection,
    ProjectionHistory,
)
from merchops.models.purchasing import Vendor
from merchops.services.projection_store import ProjectionFilters, list_projections, resolve_session
from merchops.services.variance import is_significant
from merchops.services.vendor_resolver import EXCLUDED_BRANDS, normalize_brand

logger = logging.getLogger(__name__)


def days_until_due(projection: Projection, today: date) -> int:
    return (projection.target_month_end - today).days


def severity(days_left: int, threshold_days: int) -> str:
    if days_left < 0:
        return "overdue"
    if days_left <= threshold_days / 3:
        return "critical"
    if days_left <= threshold_days / 2:
        return "warning"
    return "watch"


def _annotated(projection: Projection, today: date, threshold_days: int | None = None) -> dict:
    threshold = threshold_days if threshold_days is not None else projection.threshold_days
    days_left = days_until_due(projection, today)
    data = projection.to_dict()
    data["days_until_due"] = days_left
    data["is_overdue"] = days_left < 0
    data["severity"] = severity(days_left, threshold)
    return data


def get_projection_validation_summary(
    filters: ProjectionFilters | None = None,
    *,
    today: date | None = None,
    session=None,
) -> dict:
    """Counts consumed verbatim by the projections dashboard (camelCase keys)."""
    today = today or date.today()
    projections = list_projections(filters, session=session)

    summary = {
        "totalProjections": len(projections),
        "unmatched": 0,
        "partial": 0,
        "matched": 0,
        "removed": 0,
        "expired": 0,
        "overdueCount": 0,
        "atRiskCount": 0,
        "withVariance": 0,
        "spoTotal": 0,
        "spoMatched": 0,
        "spoUnmatched": 0,
    }

    for proj in projections:
        if proj.match_status in summary:
            summary[proj.match_status] += 1

        if proj.order_type in SHORT_WINDOW_ORDER_TYPES:
            summary["spoTotal"] += 1
            if proj.match_status == "matched":
                summary["spoMatched"] += 1
            elif proj.match_status == "unmatched":
                summary["spoUnmatched"] += 1
            continue

        if proj.match_status in OPEN_MATCH_STATUSES:
            days_left = days_until_due(proj, today)
            if days_left < 0:
                if proj.match_status == "unmatched":
                    summary["overdueCount"] += 1
            elif days_left <= proj.threshold_days:
                summary["atRiskCount"] += 1
        elif proj.match_status == "matched" and is_significant(proj.variance_pct):
            summary["withVariance"] += 1

    return summary


def get_overdue_projections(
    threshold_days: int | None = None,
    filters: ProjectionFilters | None = None,
    *,
    today: date | None = None,
    session=None,
) -> list[dict]:
    """Open regular projections due within *threshold_days*, plus unmatched ones already overdue.

    With no explicit threshold each projection uses its order-type window.
    Most urgent first.
    """
    today = today or date.today()
    rows = []
    for proj in list_projections(filters, statuses=OPEN_MATCH_STATUSES, order_types=("regular",), session=session):
        threshold = threshold_days if threshold_days is not None else proj.threshold_days
        days_left = days_until_due(proj, today)
        if days_left < 0 and proj.match_status != "unmatched":
            continue
        if days_left <= threshold:
            rows.append(_annotated(proj, today, threshold))
    rows.sort(key=lambda r: (r["days_until_due"], r["id"]))
    return rows


def get_projections_with_variance(
    min_variance_pct: float = VARIANCE_ALERT_PCT,
    filters: ProjectionFilters | None = None,
    *,
    session=None,
) -> list[Projection]:
    """Matched regular projections with |variance_pct| above *min_variance_pct*, largest first."""
    matched = list_projections(filters, statuses=("matched",), order_types=("regular",), session=session)
    flagged = [p for p in matched if is_significant(p.variance_pct, min_variance_pct)]
    flagged.sort(key=lambda p: (-abs(p.variance_pct), p.id))
    return flagged


def get_spo_projections(
    filters: ProjectionFilters | None = None,
    *,
    today: date | None = None,
    session=None,
) -> list[dict]:
    """MTO/SPO projections, latest target month first; open rows carry due-date annotations."""
    today = today or date.today()
    projections = list_projections(filters, order_types=sorted(SHORT_WINDOW_ORDER_TYPES), session=session)
    projections.sort(key=lambda p: (-p.year, -p.month, p.id))
    return [
        _annotated(proj, today) if proj.is_open else proj.to_dict()
        for proj in projections
    ]


def get_projection_filter_options(*, session=None) -> dict:
    """Vendors and brands present in projections, for the filter dropdowns."""
    sess = resolve_session(session)

    vendor_rows = sess.execute(
        select(Projection.vendor_id, Projection.vendor_code, Vendor.name)
        .join(Vendor, Vendor.id == Projection.vendor_id, isouter=True)
        .distinct()
        .order_by(Vendor.name)
    ).all()
    vendors = {}
    for vendor_id, vendor_code, name in vendor_rows:
        if not vendor_id or vendor_id in vendors:
            continue
        vendors[vendor_id] = {
            "id": vendor_id,
            "name": name or vendor_code or f"Vendor ID {vendor_id}",
            "vendor_code": vendor_code or "",
        }

    brands = set()
    for (brand,) in sess.execute(select(Projection.brand).distinct()):
        normalized = normalize_brand(brand)
        if normalized and normalized not in EXCLUDED_BRANDS:
            brands.add(normalized)

    return {"vendors": list(vendors.values()), "brands": sorted(brands)}


def get_vendor_sku_projection_history(
    vendor_id: int,
    *,
    sku: str | None = None,
    year: int | None = None,
    session=None,
) -> list[ProjectionHistory]:
    """Archived forecasts for a vendor, most recent archive first."""
    sess = resolve_session(session)
    if sess.get(Vendor, vendor_id) is None:
        raise NotFoundError("Vendor", vendor_id)

    stmt = select(ProjectionHistory).where(ProjectionHistory.vendor_id == vendor_id)
    if sku:
        stmt = stmt.where(ProjectionHistory.sku == sku)
    if year:
        stmt = stmt.where(ProjectionHistory.year == year)
    stmt = stmt.order_by(ProjectionHistory.archived_at.desc(), ProjectionHistory.id.desc())
    return list(sess.execute(stmt).scalars())
