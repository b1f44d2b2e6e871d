import re

from ..core.exceptions import ConfigurationError

_LIMIT_RE = re.compile(r"\s+LIMIT\s+\d+(\s+OFFSET\s+\d+)?\s*;?\s*$", re.IGNORECASE)
_TOP_RE = re.compile(r"\bSELECT\s+TOP\s*\(?\d+\)?\s+", re.IGNORECASE)
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")


def remove_query_limits(query: str) -> str:
    """Strip a trailing LIMIT and any SELECT TOP n so preview queries read everything"""
    cleaned = query.strip().rstrip(";").strip()
    cleaned = _LIMIT_RE.sub("", cleaned)
    cleaned = _TOP_RE.sub("SELECT ", cleaned)
    return cleaned.strip()


def validate_identifier(name: str) -> str:
    """Reject identifiers that cannot be quoted safely"""
    parts = name.split(".")
    if not parts or not all(_IDENTIFIER_RE.match(part) for part in parts):
        raise ConfigurationError(f"Invalid SQL identifier: {name!r}")
    return name


def quote_literal(value) -> str:
    """Single-quoted SQL literal"""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{text}'"
