"""
Projection matching engine: reconciles PO facts against open projections.

Automatic run:
    match_projections_to_pos(po_facts) → {"processed", "matched", "partial",
                                           "variances", "skipped", "errors"}

Manual overrides (fail fast, nothing persisted on error):
    manual_match_projection, unmatch_projection,
    mark_projection_removed, update_projection_order_type

Candidate rules for one PO fact:
  - same vendor (PO vendor name → vendor id through name, code or alias)
  - open projection (unmatched / partial)
  - target (year, month) equal to or one month either side of the ship month
  - brand equal when the PO carries one
  - SKU equal; else normalised SKU description equal; else, for MTO/SPO
    projections, collection equal to the one named in the program description

Tie-break: exact month, then oldest projection_run_date, then smallest
|remaining quantity − PO quantity|. Still tied → ambiguous, PO skipped.

Transaction policy: the automatic run commits once per PO fact so a single
conflict never rolls back the rest of the batch. Manual overrides commit
once and roll back entirely on any error.
"""

import logging
from datetime import date, datetime, timezone

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError

from merchops.core.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from merchops.models.audit import write_audit
from merchops.models.projection import (
    MATCHED_STATUSES,
    OPEN_MATCH_STATUSES,
    ORDER_TYPES,
    SHORT_WINDOW_ORDER_TYPES,
    Projection,
    ProjectionPoAllocation,
    validate_projection_transition,
)
from merchops.models.purchasing import POFact, PurchaseOrder
from merchops.services.projection_store import (
    commit_or_conflict,
    conflict_guard,
    flush_or_conflict,
    get_projection,
    resolve_session,
)
from merchops.services.variance import compute_variance, coverage_status, is_significant
from merchops.services.vendor_resolver import (
    VendorResolver,
    extract_mto_collection,
    normalize_brand,
    normalize_text,
)

logger = logging.getLogger(__name__)

_MATCH_FIELDS = (
    "match_status", "matched_po_number", "actual_quantity", "actual_value",
    "quantity_variance", "value_variance", "variance_pct",
)


class AmbiguousMatchError(Exception):
    """More than one candidate survived every tie-break."""

    def __init__(self, po_number: str, projection_ids: list[int]):
        self.po_number = po_number
        self.projection_ids = projection_ids
        ids = ", ".join(str(pid) for pid in projection_ids)
        super().__init__(f"PO {po_number} matches projections {ids} equally; skipped")


# ── Helpers ──────────────────────────────────────────────────────────────────


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def _match_snapshot(projection: Projection) -> dict:
    return {field: getattr(projection, field) for field in _MATCH_FIELDS}


def _snapshot_diff(before: dict, after: dict) -> dict:
    return {
        field: {"old": before[field], "new": after[field]}
        for field in before
        if before[field] != after[field]
    }


def _fact_error(fact: POFact, position: int) -> str | None:
    if not fact.po_number:
        return f"PO fact #{position} has no po_number; skipped"
    if not fact.vendor:
        return f"PO {fact.po_number} has no vendor; skipped"
    if fact.ship_date is None:
        return f"PO {fact.po_number} has no ship date or PO date; skipped"
    for field in ("order_quantity", "total_value"):
        if getattr(fact, field) is None:
            return f"PO {fact.po_number} has an invalid {field}; skipped"
    return None


def _is_allocated(sess, po_number: str) -> bool:
    stmt = select(ProjectionPoAllocation.id).where(ProjectionPoAllocation.po_number == po_number)
    return sess.execute(stmt).first() is not None


def find_candidates(fact: POFact, vendor_id: int, *, session=None) -> list[Projection]:
    """Open projections the PO fact may satisfy, before tie-breaking."""
    sess = resolve_session(session)
    ship = fact.ship_date
    months = [_shift_month(ship.year, ship.month, delta) for delta in (-1, 0, 1)]
    stmt = (
        select(Projection)
        .where(
            Projection.vendor_id == vendor_id,
            Projection.match_status.in_(OPEN_MATCH_STATUSES),
            or_(*[and_(Projection.year == y, Projection.month == m) for y, m in months]),
        )
        .order_by(Projection.id)
    )
    pool = list(sess.execute(stmt).scalars())

    brand = normalize_brand(fact.client)
    if brand:
        pool = [p for p in pool if normalize_brand(p.brand) == brand]
    if not pool:
        return []

    sku = (fact.sku or "").strip().lower()
    if sku:
        hits = [p for p in pool if (p.sku or "").strip().lower() == sku]
        if hits:
            return hits

    description = normalize_text(fact.sku_description)
    if description:
        hits = [p for p in pool if normalize_text(p.sku_description) == description]
        if hits:
            return hits

    collection = extract_mto_collection(fact.program_description)
    if collection:
        return [
            p for p in pool
            if p.order_type in SHORT_WINDOW_ORDER_TYPES
            and normalize_text(p.collection) == collection
        ]
    return []


def _rank(projection: Projection, fact: POFact) -> tuple:
    ship = fact.ship_date
    exact = (projection.year, projection.month) == (ship.year, ship.month)
    remaining = (projection.quantity or 0) - (projection.actual_quantity or 0)
    return (
        0 if exact else 1,
        projection.projection_run_date or date.max,
        abs(remaining - (fact.order_quantity or 0)),
    )


def pick_candidate(candidates: list[Projection], fact: POFact) -> Projection:
    """Apply the tie-break order; raise AmbiguousMatchError on a dead heat."""
    ranked = sorted(candidates, key=lambda p: (_rank(p, fact), p.id))
    best = _rank(ranked[0], fact)
    tied = [p for p in ranked if _rank(p, fact) == best]
    if len(tied) > 1:
        raise AmbiguousMatchError(fact.po_number, [p.id for p in tied])
    return ranked[0]


def score_projection(projection: Projection) -> None:
    variance = compute_variance(
        projection.quantity,
        projection.projection_value,
        projection.actual_quantity,
        projection.actual_value,
    )
    projection.quantity_variance = variance.quantity_variance
    projection.value_variance = variance.value_variance
    projection.variance_pct = variance.variance_pct


def apply_po(projection: Projection, fact: POFact, *, source: str, now: datetime) -> str:
    """Count *fact* toward *projection*; return the resulting match status.

    Actuals accumulate across allocations so a partial projection can be
    topped up by a later PO.
    """
    projection.allocations.append(
        ProjectionPoAllocation(
            po_number=fact.po_number,
            quantity=fact.order_quantity or 0,
            value=fact.total_value or 0,
            source=source,
            allocated_at=now,
        )
    )
    projection.actual_quantity = (projection.actual_quantity or 0) + (fact.order_quantity or 0)
    projection.actual_value = (projection.actual_value or 0) + (fact.total_value or 0)
    projection.matched_po_number = fact.po_number
    projection.matched_at = now
    score_projection(projection)

    new_status = coverage_status(projection.quantity, projection.actual_quantity)
    if not validate_projection_transition(projection.match_status, new_status):
        raise InvalidTransitionError(
            "Projection", projection.id, action="match", current=projection.match_status,
        )
    projection.match_status = new_status
    return new_status


# ── Automatic run ────────────────────────────────────────────────────────────


def match_projections_to_pos(po_facts, *, session=None, now: datetime | None = None) -> dict:
    """Reconcile a batch of PO facts against the open projection pool.

    Args:
        po_facts: iterable of POFact (or dicts accepted by POFact.from_dict).
        now: match timestamp; defaults to the current UTC time.

    Returns:
        Run summary. ``matched`` counts projections that moved into
        ``matched``; ``variances`` counts projections touched by this run
        that end matched/partial with |variance_pct| above the alert level.
    """
    sess = resolve_session(session)
    now = now or datetime.now(timezone.utc)
    resolver = VendorResolver.load(sess)

    summary = {"processed": 0, "matched": 0, "partial": 0, "variances": 0, "skipped": 0, "errors": []}
    touched: set[int] = set()

    for position, raw in enumerate(po_facts, start=1):
        fact = raw if isinstance(raw, POFact) else POFact.from_dict(raw)
        summary["processed"] += 1

        problem = _fact_error(fact, position)
        if problem:
            summary["errors"].append(problem)
            summary["skipped"] += 1
            continue

        vendor_id = resolver.resolve(fact.vendor)
        if vendor_id is None:
            logger.info("PO %s: vendor %r not known, skipped", fact.po_number, fact.vendor)
            summary["skipped"] += 1
            continue

        if _is_allocated(sess, fact.po_number):
            logger.debug("PO %s already allocated, skipped", fact.po_number)
            summary["skipped"] += 1
            continue

        candidates = find_candidates(fact, vendor_id, session=sess)
        if not candidates:
            summary["skipped"] += 1
            continue

        try:
            projection = pick_candidate(candidates, fact)
        except AmbiguousMatchError as exc:
            summary["errors"].append(str(exc))
            summary["skipped"] += 1
            continue

        projection_id = projection.id
        previous_status = projection.match_status
        try:
            before = _match_snapshot(projection)
            new_status = apply_po(projection, fact, source="auto", now=now)
            write_audit(
                entity_type="projection",
                entity_id=projection_id,
                action="projection.match",
                diff={"po_number": fact.po_number, **_snapshot_diff(before, _match_snapshot(projection))},
                session=sess,
            )
            commit_or_conflict("Projection", projection_id, session=sess)
        except (ConcurrentModificationError, InvalidTransitionError, SQLAlchemyError) as exc:
            sess.rollback()
            summary["errors"].append(f"Failed to match PO {fact.po_number} to projection {projection_id}: {exc}")
            logger.warning("PO %s → projection %s failed: %s", fact.po_number, projection_id, exc)
            continue

        touched.add(projection_id)
        if new_status == "matched" and previous_status != "matched":
            summary["matched"] += 1
        elif new_status == "partial":
            summary["partial"] += 1

    for projection_id in sorted(touched):
        projection = sess.get(Projection, projection_id)
        if projection and projection.match_status in MATCHED_STATUSES and is_significant(projection.variance_pct):
            summary["variances"] += 1

    logger.info(
        "Projection matching: %d processed, %d matched, %d partial, %d variances, %d errors",
        summary["processed"], summary["matched"], summary["partial"],
        summary["variances"], len(summary["errors"]),
    )
    return summary


# ── Manual overrides ─────────────────────────────────────────────────────────


def manual_match_projection(
    projection_id: int,
    po_number: str,
    *,
    actor: str = "system",
    session=None,
    now: datetime | None = None,
) -> Projection:
    """Match a projection to one PO by hand, replacing any previous match.

    Raises:
        ValidationError: po_number blank.
        NotFoundError: projection or PO missing.
        InvalidTransitionError: projection removed, expired or verified_unmatched.
        ConflictError: the PO already counts toward another projection.
    """
    sess = resolve_session(session)
    po_number = (po_number or "").strip()
    if not po_number:
        raise ValidationError("po_number is required", {"po_number": "required"})

    projection = get_projection(projection_id, session=sess)
    if projection.match_status not in ("unmatched", *MATCHED_STATUSES):
        raise InvalidTransitionError(
            "Projection", projection_id, action="manual_match", current=projection.match_status,
        )

    po = sess.execute(
        select(PurchaseOrder).where(PurchaseOrder.po_number == po_number)
    ).scalar_one_or_none()
    if po is None:
        raise NotFoundError("PurchaseOrder", po_number)

    existing = sess.execute(
        select(ProjectionPoAllocation).where(ProjectionPoAllocation.po_number == po_number)
    ).scalar_one_or_none()
    if existing is not None and existing.projection_id != projection.id:
        raise ConflictError("ProjectionPoAllocation", "po_number", po_number)

    now = now or datetime.now(timezone.utc)
    before = _match_snapshot(projection)
    with conflict_guard("Projection", projection_id, session=sess):
        # Release the old allocations before re-inserting, po_number is unique.
        projection.clear_match()
        flush_or_conflict("Projection", projection_id, session=sess)
        apply_po(projection, POFact.from_model(po), source="manual", now=now)
        write_audit(
            entity_type="projection",
            entity_id=projection_id,
            action="projection.manual_match",
            actor=actor,
            diff={"po_number": po_number, **_snapshot_diff(before, _match_snapshot(projection))},
            session=sess,
        )
        commit_or_conflict("Projection", projection_id, session=sess)
    logger.info("Projection %s manually matched to PO %s by %s", projection_id, po_number, actor)
    return projection


def unmatch_projection(projection_id: int, *, actor: str = "system", session=None) -> Projection:
    """Clear every match attribute and return the projection to ``unmatched``."""
    sess = resolve_session(session)
    projection = get_projection(projection_id, session=sess)
    if projection.match_status == "unmatched":
        return projection
    if projection.match_status not in MATCHED_STATUSES:
        raise InvalidTransitionError(
            "Projection", projection_id, action="unmatch", current=projection.match_status,
        )

    before = _match_snapshot(projection)
    with conflict_guard("Projection", projection_id, session=sess):
        projection.clear_match()
        projection.match_status = "unmatched"
        write_audit(
            entity_type="projection",
            entity_id=projection_id,
            action="projection.unmatch",
            actor=actor,
            diff=_snapshot_diff(before, _match_snapshot(projection)),
            session=sess,
        )
        commit_or_conflict("Projection", projection_id, session=sess)
    logger.info("Projection %s unmatched by %s", projection_id, actor)
    return projection


def mark_projection_removed(
    projection_id: int,
    reason: str,
    *,
    actor: str = "system",
    session=None,
    now: datetime | None = None,
) -> Projection:
    """Terminal transition to ``removed``; *reason* is mandatory."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("reason is required", {"reason": "required"})

    sess = resolve_session(session)
    projection = get_projection(projection_id, session=sess)
    if not validate_projection_transition(projection.match_status, "removed"):
        raise InvalidTransitionError(
            "Projection", projection_id, action="remove", current=projection.match_status,
            reason="only unmatched or partial projections can be removed",
        )

    previous = projection.match_status
    projection.match_status = "removed"
    projection.removal_reason = reason
    projection.removed_at = now or datetime.now(timezone.utc)
    write_audit(
        entity_type="projection",
        entity_id=projection_id,
        action="projection.remove",
        actor=actor,
        diff={"match_status": {"old": previous, "new": "removed"}, "reason": reason},
        session=sess,
    )
    commit_or_conflict("Projection", projection_id, session=sess)
    logger.info("Projection %s removed by %s: %s", projection_id, actor, reason)
    return projection


def update_projection_order_type(
    projection_id: int,
    order_type: str,
    *,
    actor: str = "system",
    session=None,
) -> Projection:
    """Reclassify a projection; match state is untouched, the expiry threshold follows."""
    order_type = (order_type or "").strip().lower()
    if order_type not in ORDER_TYPES:
        raise ValidationError(
            f"order_type must be one of {sorted(ORDER_TYPES)}",
            {"order_type": "invalid"},
        )

    sess = resolve_session(session)
    projection = get_projection(projection_id, session=sess)
    if projection.match_status in ("removed", "verified_unmatched"):
        raise InvalidTransitionError(
            "Projection", projection_id, action="update_order_type", current=projection.match_status,
        )
    if projection.order_type == order_type:
        return projection

    previous = projection.order_type
    projection.order_type = order_type
    write_audit(
        entity_type="projection",
        entity_id=projection_id,
        action="projection.order_type",
        actor=actor,
        diff={"order_type": {"old": previous, "new": order_type}},
        session=sess,
    )
    commit_or_conflict("Projection", projection_id, session=sess)
    logger.info("Projection %s order type %s → %s", projection_id, previous, order_type)
    return projection
