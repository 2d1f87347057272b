"""
Merchandising Operations Platform
Blueprint registry and shared view helpers.
"""

import logging

from flask import request
from sqlalchemy.exc import SQLAlchemyError

from merchops.models import db
from merchops.core.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from merchops.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit:  max items (default 200, capped at max_limit)
        offset: starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def request_actor(data: dict | None = None, field: str = "actor") -> str:
    """Who is acting: body field, then X-Actor header, then "system"."""
    data = data or {}
    return (data.get(field) or request.headers.get("X-Actor") or "system").strip()


def register_error_handlers(bp):
    """Map the domain exception hierarchy to JSON errors on *bp*."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)

    @bp.errorhandler(InvalidTransitionError)
    def _handle_transition(error: InvalidTransitionError):
        return api_error(
            E.CONFLICT_STATE, str(error),
            details={"action": error.action, "current_status": error.current_status},
        )

    @bp.errorhandler(ConcurrentModificationError)
    def _handle_concurrent(error: ConcurrentModificationError):
        return api_error(E.CONFLICT_CONCURRENT, str(error))

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error), details={"field": error.field})

    @bp.errorhandler(SQLAlchemyError)
    def _handle_database(error: SQLAlchemyError):
        db.session.rollback()
        logger.exception("Database error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.DATABASE, "Database error")
