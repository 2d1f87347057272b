"""
Verification workflow for expired projections.

State machine over ExpiredProjection.verification_status:

    pending ──verify(verified)──▶ verified    (projection → verified_unmatched)
    pending ──verify(cancelled)─▶ cancelled   (projection stays expired)
    pending ──restore──────────▶ restored     (projection → unmatched, residue cleared)

verified, cancelled and restored are terminal for the record; a restored
projection is back in the matching pool and may expire again later.

Usage:
    from merchops.services.expired_verification import verify_expired_projection

    record = verify_expired_projection(12, "verified", "j.doe", notes="Dropped from range")
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from merchops.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from merchops.models.audit import write_audit
from merchops.models.projection import (
    OPEN_MATCH_STATUSES,
    VERIFICATION_DECISIONS,
    VERIFICATION_STATUSES,
    ExpiredProjection,
    Projection,
    validate_projection_transition,
    validate_verification_transition,
)
from merchops.services.projection_store import (
    ProjectionFilters,
    commit_or_conflict,
    conflict_guard,
    get_expired_projection,
    resolve_session,
)

logger = logging.getLogger(__name__)


def verify_expired_projection(
    expired_id: int,
    status: str,
    verified_by: str,
    notes: str | None = None,
    *,
    session=None,
    now: datetime | None = None,
) -> ExpiredProjection:
    """Record the human decision on a pending expired projection.

    Args:
        status: ``verified`` (no longer needed) or ``cancelled``.
        verified_by: Who made the decision; required.

    Raises:
        ValidationError, NotFoundError, InvalidTransitionError
    """
    status = (status or "").strip().lower()
    if status not in VERIFICATION_DECISIONS:
        raise ValidationError(
            f"status must be one of {sorted(VERIFICATION_DECISIONS)}",
            {"status": "invalid"},
        )
    verified_by = (verified_by or "").strip()
    if not verified_by:
        raise ValidationError("verified_by is required", {"verified_by": "required"})

    sess = resolve_session(session)
    expired = get_expired_projection(expired_id, session=sess)
    if not validate_verification_transition(expired.verification_status, status):
        raise InvalidTransitionError(
            "ExpiredProjection", expired_id, action="verify", current=expired.verification_status,
            reason="only pending records can be verified or cancelled",
        )

    projection = None
    if status == "verified":
        projection = sess.get(Projection, expired.original_projection_id)
        if projection is None:
            logger.warning(
                "Expired projection %s: original projection %s is missing",
                expired_id, expired.original_projection_id,
            )

    previous = expired.verification_status
    with conflict_guard("ExpiredProjection", expired_id, session=sess):
        expired.verification_status = status
        expired.verified_at = now or datetime.now(timezone.utc)
        expired.verified_by = verified_by
        expired.verification_notes = notes
        if projection is not None and validate_projection_transition(projection.match_status, "verified_unmatched"):
            projection.match_status = "verified_unmatched"

        write_audit(
            entity_type="expired_projection",
            entity_id=expired_id,
            action="expired_projection.verify" if status == "verified" else "expired_projection.cancel",
            actor=verified_by,
            diff={"verification_status": {"old": previous, "new": status}, "notes": notes},
            session=sess,
        )
        commit_or_conflict("ExpiredProjection", expired_id, session=sess)
    logger.info("Expired projection %s %s by %s", expired_id, status, verified_by)
    return expired


def restore_expired_projection(
    expired_id: int,
    restored_by: str,
    *,
    session=None,
    now: datetime | None = None,
) -> ExpiredProjection:
    """Return the originating projection to the open pool as ``unmatched``.

    Raises:
        ValidationError: restored_by blank.
        NotFoundError: expired record or its projection missing.
        InvalidTransitionError: record not pending, or projection terminal.
    """
    restored_by = (restored_by or "").strip()
    if not restored_by:
        raise ValidationError("restored_by is required", {"restored_by": "required"})

    sess = resolve_session(session)
    expired = get_expired_projection(expired_id, session=sess)
    if not validate_verification_transition(expired.verification_status, "restored"):
        raise InvalidTransitionError(
            "ExpiredProjection", expired_id, action="restore", current=expired.verification_status,
        )

    projection = sess.get(Projection, expired.original_projection_id)
    if projection is None:
        raise NotFoundError("Projection", expired.original_projection_id)
    if projection.match_status not in ("expired", *OPEN_MATCH_STATUSES):
        raise InvalidTransitionError(
            "Projection", projection.id, action="restore", current=projection.match_status,
        )

    previous_status = projection.match_status
    with conflict_guard("ExpiredProjection", expired_id, session=sess):
        projection.clear_match()
        projection.match_status = "unmatched"

        expired.verification_status = "restored"
        expired.restored_at = now or datetime.now(timezone.utc)
        expired.restored_by = restored_by

        write_audit(
            entity_type="expired_projection",
            entity_id=expired_id,
            action="expired_projection.restore",
            actor=restored_by,
            diff={
                "verification_status": {"old": "pending", "new": "restored"},
                "projection_id": projection.id,
                "match_status": {"old": previous_status, "new": "unmatched"},
            },
            session=sess,
        )
        commit_or_conflict("ExpiredProjection", expired_id, session=sess)
    logger.info("Expired projection %s restored by %s (projection %s)", expired_id, restored_by, projection.id)
    return expired


# ── Read side ────────────────────────────────────────────────────────────────


def get_expired_projections(
    filters: ProjectionFilters | None = None,
    *,
    status: str | None = None,
    session=None,
) -> list[ExpiredProjection]:
    """Expired-projection records, newest first."""
    if status and status not in VERIFICATION_STATUSES:
        raise ValidationError(
            f"status must be one of {sorted(VERIFICATION_STATUSES)}", {"status": "invalid"},
        )
    stmt = select(ExpiredProjection)
    if filters:
        stmt = filters.apply(stmt, model=ExpiredProjection)
    if status:
        stmt = stmt.where(ExpiredProjection.verification_status == status)
    stmt = stmt.order_by(ExpiredProjection.expired_at.desc(), ExpiredProjection.id.desc())
    return list(resolve_session(session).execute(stmt).scalars())


def get_expired_projections_summary(filters: ProjectionFilters | None = None, *, session=None) -> dict:
    """Record counts per verification status plus a total."""
    stmt = select(ExpiredProjection.verification_status, func.count(ExpiredProjection.id))
    if filters:
        stmt = filters.apply(stmt, model=ExpiredProjection)
    stmt = stmt.group_by(ExpiredProjection.verification_status)

    summary = {status: 0 for status in sorted(VERIFICATION_STATUSES)}
    for status, count in resolve_session(session).execute(stmt):
        summary[status] = count
    summary["total"] = sum(summary.values())
    return summary
