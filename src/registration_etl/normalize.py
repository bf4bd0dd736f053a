"""Normalization functions for registration spreadsheet ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

_DMY_RE = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{4})$")
_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[ T]00:00:00)?$")

MIN_YEAR = 1900
MAX_YEAR = 2100


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
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: normalize_header
# ---------------------------------------------------------------------------

def normalize_header(value: str | None) -> str:
    """Header key used for matching: trimmed, trailing '*' removed, lowercased.

    Template headers mark required columns with a trailing asterisk
    ("Student Name*"); users frequently delete or keep it, so matching
    ignores it along with case and surrounding whitespace.
    """
    v = normalize_space(value)
    if v is None:
        return ""
    v = v.rstrip("*").strip()
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 5: parse_dmy_date
# ---------------------------------------------------------------------------

def parse_dmy_date(value: str | None) -> date | None:
    """Parse DD/MM/YYYY (or DD-MM-YYYY) into a date.

    Returns None for malformed input, impossible dates (31/02/2024) and
    years outside [1900, 2100].
    """
    v = trim(value)
    if v is None:
        return None
    m = _DMY_RE.match(v)
    if not m:
        return None
    day, month, year = (int(g) for g in m.groups())
    if not (MIN_YEAR <= year <= MAX_YEAR):
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_iso_date(value: str | None) -> date | None:
    """Parse YYYY-MM-DD (optionally with a midnight time part)."""
    v = trim(value)
    if v is None:
        return None
    m = _ISO_DATE_RE.match(v)
    if not m:
        return None
    year, month, day = (int(g) for g in m.groups())
    try:
        return date(year, month, day)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Rule 6: format_dmy
# ---------------------------------------------------------------------------

def format_dmy(value: date | datetime) -> str:
    """Render a date as DD/MM/YYYY, the format users type into templates."""
    return value.strftime("%d/%m/%Y")


# ---------------------------------------------------------------------------
# Rule 7: parse_decimal
# ---------------------------------------------------------------------------

def parse_decimal(value: str | None) -> Decimal | None:
    """Parse a numeric string, ignoring thousands separators.

    Returns None for blank, unparseable, NaN or infinite input.
    """
    v = trim(value)
    if v is None:
        return None
    v = v.replace(",", "")
    try:
        d = Decimal(v)
    except InvalidOperation:
        return None
    if not d.is_finite():
        return None
    return d


# ---------------------------------------------------------------------------
# Rule 8: number_to_text
# ---------------------------------------------------------------------------

def number_to_text(value: int | float | Decimal) -> str:
    """Render a spreadsheet number without a spurious '.0' suffix."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return str(int(value))
        return format(value.normalize(), "f")
    return str(value)
