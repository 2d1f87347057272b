"""Shared parsing helpers for blueprints and import services.

parse_date:  lenient (returns None on bad input)
parse_int:   lenient integer coercion with a fallback
month_end:   last calendar day of a (year, month)
"""
import calendar
import logging
from datetime import date, datetime

logger = logging.getLogger(__name__)


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (European format used by some vendor exports)
    - MM/DD/YYYY (OS340 export format)
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    for fmt in ("%d.%m.%Y", "%m/%d/%Y"):
        try:
            return datetime.strptime(str(value), fmt).date()
        except (ValueError, TypeError):
            continue
    return None


def parse_int(value, default=None):
    """Coerce *value* to int, returning *default* when empty or invalid."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def month_end(year: int, month: int) -> date:
    """Return the last calendar day of the given month."""
    return date(year, month, calendar.monthrange(year, month)[1])
