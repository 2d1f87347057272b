"""ProjectionStore: lookups, filters and the optimistic-lock write path.

Every service in the projection engine takes an explicit ``session`` and
falls back to the request-scoped ``db.session``. Writes go through
``commit_or_conflict`` so a zero-row versioned UPDATE surfaces as
ConcurrentModificationError instead of leaking SQLAlchemy internals.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from merchops.core.exceptions import ConcurrentModificationError, NotFoundError
from merchops.models import db
from merchops.models.projection import ExpiredProjection, OPEN_MATCH_STATUSES, Projection
from merchops.services.vendor_resolver import normalize_brand
from merchops.utils.helpers import parse_int

logger = logging.getLogger(__name__)


def resolve_session(session: Session | None) -> Session:
    return session if session is not None else db.session


@dataclass(frozen=True)
class ProjectionFilters:
    """Optional narrowing shared by every read path."""

    vendor_id: int | None = None
    brand: str | None = None
    year: int | None = None
    month: int | None = None

    @classmethod
    def from_args(cls, args) -> "ProjectionFilters":
        """Build from a request.args-like mapping; bad numbers are ignored, brands normalised."""
        return cls(
            vendor_id=parse_int(args.get("vendor_id")),
            brand=normalize_brand(args.get("brand")),
            year=parse_int(args.get("year")),
            month=parse_int(args.get("month")),
        )

    def apply(self, stmt, model=Projection):
        if self.vendor_id:
            stmt = stmt.where(model.vendor_id == self.vendor_id)
        if self.brand:
            stmt = stmt.where(model.brand == self.brand)
        if self.year:
            stmt = stmt.where(model.year == self.year)
        if self.month:
            stmt = stmt.where(model.month == self.month)
        return stmt


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_projection(projection_id: int, *, session: Session | None = None) -> Projection:
    """Return the projection or raise NotFoundError."""
    projection = resolve_session(session).get(Projection, projection_id)
    if projection is None:
        raise NotFoundError("Projection", projection_id)
    return projection


def get_expired_projection(expired_id: int, *, session: Session | None = None) -> ExpiredProjection:
    """Return the expired-projection record or raise NotFoundError."""
    expired = resolve_session(session).get(ExpiredProjection, expired_id)
    if expired is None:
        raise NotFoundError("ExpiredProjection", expired_id)
    return expired


def list_projections(
    filters: ProjectionFilters | None = None,
    *,
    statuses=None,
    order_types=None,
    session: Session | None = None,
) -> list[Projection]:
    stmt = select(Projection)
    if filters:
        stmt = filters.apply(stmt)
    if statuses:
        stmt = stmt.where(Projection.match_status.in_(list(statuses)))
    if order_types:
        stmt = stmt.where(Projection.order_type.in_(list(order_types)))
    stmt = stmt.order_by(Projection.year, Projection.month, Projection.id)
    return list(resolve_session(session).execute(stmt).scalars())


def iter_open_projection_chunks(
    chunk_size: int,
    *,
    session: Session | None = None,
) -> Iterator[list[Projection]]:
    """Yield open projections in id-ordered chunks (keyset pagination).

    Each chunk is a fresh query, so rows committed or rolled back while a
    previous chunk was processed never pin a long-running read.
    """
    sess = resolve_session(session)
    last_id = 0
    while True:
        chunk = list(
            sess.execute(
                select(Projection)
                .where(
                    Projection.match_status.in_(OPEN_MATCH_STATUSES),
                    Projection.id > last_id,
                )
                .order_by(Projection.id)
                .limit(chunk_size)
            ).scalars()
        )
        if not chunk:
            return
        last_id = chunk[-1].id
        yield chunk


# ── Write path ───────────────────────────────────────────────────────────────


@contextmanager
def conflict_guard(resource: str, resource_id, *, session: Session | None = None) -> Iterator[Session]:
    """Scope one read-modify-write on a versioned row.

    Autoflush is off inside the block, so the only UPDATE is the explicit
    flush or commit. A stale versioned row raised anywhere in the block
    becomes ConcurrentModificationError; any failure rolls the session back.
    """
    sess = resolve_session(session)
    try:
        with sess.no_autoflush:
            yield sess
    except StaleDataError as exc:
        sess.rollback()
        logger.warning("Optimistic lock conflict on %s %s: %s", resource, resource_id, exc)
        raise ConcurrentModificationError(resource, resource_id) from exc
    except Exception:
        sess.rollback()
        raise


def commit_or_conflict(resource: str, resource_id, *, session: Session | None = None) -> None:
    """Commit the unit of work; a stale versioned row becomes ConcurrentModificationError."""
    with conflict_guard(resource, resource_id, session=session) as sess:
        sess.commit()


def flush_or_conflict(resource: str, resource_id, *, session: Session | None = None) -> None:
    """Flush mid-operation with the same stale-row mapping as ``commit_or_conflict``."""
    with conflict_guard(resource, resource_id, session=session) as sess:
        sess.flush()
