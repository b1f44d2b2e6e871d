"""
Normalization of the date values different sources hand back into the
'YYYY-MM-DD HH:MM:SS' text ClickHouse accepts for DateTime columns.
"""
import logging
import re
from datetime import date, datetime, timezone
from typing import Any, Optional

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

CLICKHOUSE_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
CLICKHOUSE_DATE_FORMAT = "%Y-%m-%d"
EPOCH_DATETIME = "1970-01-01 00:00:00"
EPOCH_DATE = "1970-01-01"

_ISO_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})[T ](\d{2}:\d{2}:\d{2})")
_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DAY_FIRST_RE = re.compile(r"^(\d{2})[-/.](\d{2})[-/.](\d{4})(?:\s+(\d{2}:\d{2}:\d{2}))?")
_US_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})(?:\s+(\d{2}:\d{2}:\d{2}))?")

# Epoch values above this are milliseconds
_MILLIS_THRESHOLD = 100_000_000_000


def to_clickhouse_datetime(value: Any) -> Optional[str]:
    """Convert a driver value or date-ish string to ClickHouse DateTime text.

    Returns None for empty or unrecognized input.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.strftime(CLICKHOUSE_DATETIME_FORMAT)

    if isinstance(value, date):
        return value.strftime(CLICKHOUSE_DATE_FORMAT) + " 00:00:00"

    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) >= _MILLIS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime(CLICKHOUSE_DATETIME_FORMAT)
        except (OverflowError, OSError, ValueError):
            return None

    text = str(value).strip()

    match = _ISO_RE.match(text)
    if match and not _has_offset(text):
        return f"{match.group(1)} {match.group(2)}"

    if _DATE_ONLY_RE.match(text):
        return f"{text} 00:00:00"

    match = _DAY_FIRST_RE.match(text)
    if match:
        first, second, year = int(match.group(1)), int(match.group(2)), match.group(3)
        clock = match.group(4) or "00:00:00"
        if second > 12 and first <= 12:
            # Only month/day/year is possible
            return f"{year}-{match.group(1)}-{match.group(2)} {clock}"
        return f"{year}-{match.group(2)}-{match.group(1)} {clock}"

    match = _US_RE.match(text)
    if match:
        month, day, year = match.group(1).zfill(2), match.group(2).zfill(2), match.group(3)
        clock = match.group(4) or "00:00:00"
        return f"{year}-{month}-{day} {clock}"

    try:
        parsed = date_parser.parse(text)
    except (ValueError, OverflowError):
        logger.warning(f"Unknown date format, storing NULL: {text!r}")
        return None
    return to_clickhouse_datetime(parsed)


def to_clickhouse_date(value: Any) -> Optional[str]:
    converted = to_clickhouse_datetime(value)
    return converted[:10] if converted else None


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a cursor or ClickHouse value back into a naive datetime"""
    text = to_clickhouse_datetime(value)
    if text is None:
        return None
    return datetime.strptime(text, CLICKHOUSE_DATETIME_FORMAT)


def _has_offset(text: str) -> bool:
    return bool(re.search(r"[+-]\d{2}:?\d{2}$", text[19:]))
