"""
Date parsing for intake files.

Source files mix ISO dates, US month-first dates and the occasional
day-first export; everything is reduced to a ``datetime.date`` before it is
validated or written.
"""

import logging
import re
from collections import Counter
from datetime import date, datetime
from typing import Any, Optional

import pandas as pd

from debt_intake.core.config import settings

logger = logging.getLogger(__name__)

_NUMERIC_DATE = re.compile(r"^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{2}|\d{4})$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")

# Per-field failure counts; only the first few values of each field are logged.
_failures: Counter = Counter()
_LOGGED_PER_FIELD = 5


def _note_failure(value: Any, field: Optional[str]) -> None:
    key = field or "date"
    _failures[key] += 1
    seen = _failures[key]
    if seen <= _LOGGED_PER_FIELD:
        logger.debug("Unparseable %s value %r", key, value)
    elif seen % 100 == 0:
        logger.info("%d unparseable values so far for %s", seen, key)


def _expand_year(year: int) -> int:
    if year >= 100:
        return year
    pivot = date.today().year % 100
    return 2000 + year if year <= pivot else 1900 + year


def _from_numeric_parts(first: int, second: int, year: int) -> Optional[date]:
    """Build a date from ``a/b/yyyy``, deciding which part is the month."""
    if first > 12:
        candidates = [(second, first)]
    elif second > 12:
        candidates = [(first, second)]
    elif settings.date_default_dayfirst:
        candidates = [(second, first), (first, second)]
    else:
        candidates = [(first, second), (second, first)]

    for month, day in candidates:
        try:
            return date(_expand_year(year), month, day)
        except ValueError:
            continue
    return None


def parse_flexible_date(value: Any, *, log_context: Optional[str] = None, log_failures: bool = True) -> Optional[date]:
    """
    Parse a date value from a cell.

    Handles ``YYYY-MM-DD``, ``MM/DD/YYYY`` and ``DD/MM/YYYY`` (day-first when
    the first part cannot be a month or ``date_default_dayfirst`` is set).
    Anything else, such as "March 15, 2024", goes through pandas inference.

    Args:
        value: Raw cell value
        log_context: Field name used when logging failures
        log_failures: Set False to parse silently

    Returns:
        ``datetime.date`` or None when the value is empty or unparseable
    """
    if value is None or value is pd.NaT or (isinstance(value, float) and pd.isna(value)):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return None

    parsed: Optional[date] = None
    match = _NUMERIC_DATE.match(text)
    if match:
        first, second, year = (int(part) for part in match.groups())
        parsed = _from_numeric_parts(first, second, year)
    elif _ISO_DATE.match(text):
        try:
            parsed = date.fromisoformat(text[:10])
        except ValueError:
            parsed = None
    else:
        try:
            stamp = pd.to_datetime(text, errors="raise")
        except (ValueError, TypeError, OverflowError):
            stamp = None
        if stamp is not None and not pd.isna(stamp):
            parsed = stamp.date()

    if parsed is None and log_failures:
        _note_failure(text, log_context)
    return parsed
