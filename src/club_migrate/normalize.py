"""Normalization functions for legacy club-export ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

_US_DATE_RE = re.compile(
    r"^(\d{1,2})/(\d{1,2})/(\d{4})(?:[ T]+(\d{1,2}):(\d{2})(?::(\d{2}))?)?$"
)
_ISO_YEAR_RE = re.compile(r"^\d{4}")

_TRUE_VALUES = frozenset({"1", "true", "yes", "y", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "n", "off"})


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_email  (member identity key)
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 3: parse_datetime
# ---------------------------------------------------------------------------

def parse_datetime(value: str | None) -> datetime | None:
    """Parse an ISO 8601 or 'MM/DD/YYYY[ HH:MM]' timestamp.

    ISO is tried first when the string contains 'T' or starts with a
    4-digit year; the US form is tried otherwise, and each falls back to
    the other.  Naive results are treated as UTC.  Returns None when
    neither form parses.
    """
    v = trim(value)
    if v is None:
        return None
    if "T" in v or _ISO_YEAR_RE.match(v):
        parsed = _parse_iso(v) or _parse_us(v)
    else:
        parsed = _parse_us(v) or _parse_iso(v)
    return parsed


def _parse_iso(v: str) -> datetime | None:
    candidate = v[:-1] + "+00:00" if v.endswith("Z") else v
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_us(v: str) -> datetime | None:
    m = _US_DATE_RE.match(v)
    if not m:
        return None
    month, day, year, hour, minute, second = m.groups()
    try:
        return datetime(
            int(year), int(month), int(day),
            int(hour or 0), int(minute or 0), int(second or 0),
            tzinfo=timezone.utc,
        )
    except ValueError:
        return None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Rule 4: parse_positive_int
# ---------------------------------------------------------------------------

def parse_positive_int(value: str | None) -> int | None:
    """Parse a whole number; non-positive or unparsable values yield None."""
    v = trim(value)
    if v is None:
        return None
    try:
        n = int(v.replace(",", ""))
    except ValueError:
        return None
    return n if n > 0 else None


# ---------------------------------------------------------------------------
# Rule 5: parse_bool
# ---------------------------------------------------------------------------

def parse_bool(value: str | None) -> bool | None:
    v = trim(value)
    if v is None:
        return None
    lowered = v.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return None


# ---------------------------------------------------------------------------
# Identity keys
# ---------------------------------------------------------------------------

def truncate_to_hour(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def event_identity_key(title: str | None, start_time: datetime) -> str:
    """Return '<lower trimmed title>|<start hour, ISO UTC>'.

    Two events whose titles differ only by case or outer whitespace and
    whose start times fall in the same hour share a key.
    """
    norm_title = (trim(title) or "").lower()
    return f"{norm_title}|{truncate_to_hour(start_time).isoformat()}"
