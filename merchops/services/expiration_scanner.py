"""
Expiration scanner: moves stale open projections into ExpiredProjection.

A projection is eligible once its order window has closed:

    deadline = last day of target month + threshold(order_type)
    eligible  ⇔ deadline < today

Each eligible projection gets one ``pending`` ExpiredProjection snapshot and
is itself tagged ``expired`` so it leaves the matching pool. A projection
that already has a pending or cancelled snapshot is never snapshotted again;
after a restore it is open again and may expire in a later run.

Invoked on demand (HTTP, or ``flask check-expired-projections`` from cron).
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from merchops.core.exceptions import ConcurrentModificationError
from merchops.models.audit import write_audit
from merchops.models.projection import (
    BLOCKING_VERIFICATION_STATUSES,
    SHORT_WINDOW_ORDER_TYPES,
    ExpiredProjection,
    Projection,
    validate_projection_transition,
)
from merchops.services.projection_store import (
    commit_or_conflict,
    iter_open_projection_chunks,
    resolve_session,
)

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 500


def expiration_reason(projection: Projection) -> str:
    if projection.match_status == "partial":
        detail = "order window passed with partial PO coverage"
    else:
        detail = "order window passed with no matching PO"
    return f"past_{projection.threshold_days}_day_window: {detail}"


def is_expiration_due(projection: Projection, today: date) -> bool:
    return projection.expiration_deadline < today


def _blocked_ids(sess, projection_ids: list[int]) -> set[int]:
    stmt = select(ExpiredProjection.original_projection_id).where(
        ExpiredProjection.original_projection_id.in_(projection_ids),
        ExpiredProjection.verification_status.in_(BLOCKING_VERIFICATION_STATUSES),
    )
    return set(sess.execute(stmt).scalars())


def check_expired_projections(
    *,
    session=None,
    today: date | None = None,
    chunk_size: int | None = None,
) -> dict[str, Any]:
    """Snapshot every open projection whose order window has closed.

    Returns:
        {"regularExpired": int, "spoExpired": int, "expiredCount": int,
         "errors": [str]}; mto and spo both count toward ``spoExpired``.
    """
    sess = resolve_session(session)
    today = today or date.today()
    chunk_size = chunk_size or current_app.config.get("PROJECTION_SCAN_CHUNK_SIZE", DEFAULT_CHUNK_SIZE)

    results: dict[str, Any] = {"regularExpired": 0, "spoExpired": 0, "expiredCount": 0, "errors": []}
    scanned = 0

    for chunk in iter_open_projection_chunks(chunk_size, session=sess):
        scanned += len(chunk)
        due = [p for p in chunk if is_expiration_due(p, today)]
        if not due:
            continue
        blocked = _blocked_ids(sess, [p.id for p in due])

        for projection in due:
            projection_id = projection.id
            if projection_id in blocked:
                logger.debug("Projection %s already has an open expiration record", projection_id)
                continue
            if not validate_projection_transition(projection.match_status, "expired"):
                continue

            order_type = projection.order_type
            try:
                snapshot = ExpiredProjection.snapshot_of(
                    projection, today=today, reason=expiration_reason(projection),
                )
                sess.add(snapshot)
                previous = projection.match_status
                projection.match_status = "expired"
                write_audit(
                    entity_type="projection",
                    entity_id=projection_id,
                    action="projection.expire",
                    diff={
                        "match_status": {"old": previous, "new": "expired"},
                        "threshold_days": snapshot.threshold_days,
                        "days_overdue": snapshot.days_overdue,
                    },
                    session=sess,
                )
                commit_or_conflict("Projection", projection_id, session=sess)
            except (ConcurrentModificationError, SQLAlchemyError) as exc:
                sess.rollback()
                results["errors"].append(f"Failed to expire projection {projection_id}: {exc}")
                logger.warning("Expiring projection %s failed: %s", projection_id, exc)
                continue

            results["expiredCount"] += 1
            if order_type in SHORT_WINDOW_ORDER_TYPES:
                results["spoExpired"] += 1
            else:
                results["regularExpired"] += 1

    logger.info(
        "Expiration scan (%s): %d open scanned, %d regular + %d mto/spo expired, %d errors",
        today.isoformat(), scanned, results["regularExpired"], results["spoExpired"],
        len(results["errors"]),
    )
    return results
