"""Per-type validation rules for dynamic event form fields.

Every validator takes a FieldDefinition and a trimmed, non-empty raw string
and returns a FieldCheck carrying either the coerced value or a failure
message.  Validators never raise, so callers can aggregate every error in a
row in one pass.

Coerced value types:
    text, textarea, url, file  -> str
    email                      -> str (lowercased)
    number                     -> int when integral, else float
    date                       -> datetime.date
    select                     -> str (declared option spelling)
    checkbox                   -> bool
"""

from __future__ import annotations

import re
import urllib.parse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Callable

from registration_etl.event_config import FieldDefinition
from registration_etl.normalize import (
    format_dmy,
    normalize_email,
    number_to_text,
    parse_decimal,
    parse_dmy_date,
    parse_iso_date,
)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

CHECKBOX_TRUE = frozenset({"yes", "true", "1"})
CHECKBOX_FALSE = frozenset({"no", "false", "0"})


@dataclass(frozen=True)
class FieldCheck:
    value: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _fail(message: str) -> FieldCheck:
    return FieldCheck(error=message)


# ---------------------------------------------------------------------------
# text / textarea
# ---------------------------------------------------------------------------

def check_text(fd: FieldDefinition, raw: str) -> FieldCheck:
    rules = fd.validation
    if rules.min_length is not None and len(raw) < rules.min_length:
        return _fail(f"Minimum length is {rules.min_length} characters")
    if rules.max_length is not None and len(raw) > rules.max_length:
        return _fail(f"Maximum length is {rules.max_length} characters")
    if rules.pattern is not None and re.search(rules.pattern, raw) is None:
        return _fail("Value does not match required pattern")
    return FieldCheck(value=raw)


# ---------------------------------------------------------------------------
# number
# ---------------------------------------------------------------------------

def check_number(fd: FieldDefinition, raw: str) -> FieldCheck:
    d = parse_decimal(raw)
    if d is None:
        return _fail(f"Invalid number: {raw}")
    rules = fd.validation
    if rules.min is not None and d < rules.min:
        return _fail(f"Value must be at least {number_to_text(rules.min)}")
    if rules.max is not None and d > rules.max:
        return _fail(f"Value must not exceed {number_to_text(rules.max)}")
    return FieldCheck(value=decimal_to_primitive(d))


def decimal_to_primitive(d: Decimal) -> int | float:
    if d == d.to_integral_value():
        return int(d)
    return float(d)


# ---------------------------------------------------------------------------
# email
# ---------------------------------------------------------------------------

def check_email(fd: FieldDefinition, raw: str) -> FieldCheck:
    if not _EMAIL_RE.match(raw):
        return _fail(f"Invalid email format: {raw}")
    return FieldCheck(value=normalize_email(raw))


# ---------------------------------------------------------------------------
# date
# ---------------------------------------------------------------------------

def check_date(fd: FieldDefinition, raw: str) -> FieldCheck:
    parsed = parse_dmy_date(raw)
    if parsed is None:
        return _fail(f"Invalid date format. Use DD/MM/YYYY: {raw}")
    return FieldCheck(value=parsed)


# ---------------------------------------------------------------------------
# select
# ---------------------------------------------------------------------------

def check_select(fd: FieldDefinition, raw: str) -> FieldCheck:
    wanted = raw.casefold()
    for option in fd.options:
        if option.strip().casefold() == wanted:
            return FieldCheck(value=option)
    return _fail(f"Invalid option. Must be one of: {', '.join(fd.options)}")


# ---------------------------------------------------------------------------
# checkbox
# ---------------------------------------------------------------------------

def check_checkbox(fd: FieldDefinition, raw: str) -> FieldCheck:
    v = raw.lower()
    if v in CHECKBOX_TRUE:
        return FieldCheck(value=True)
    if v in CHECKBOX_FALSE:
        return FieldCheck(value=False)
    return _fail("Invalid checkbox value. Use: Yes/No, True/False, or 1/0")


# ---------------------------------------------------------------------------
# url / file
# ---------------------------------------------------------------------------

def check_url(fd: FieldDefinition, raw: str) -> FieldCheck:
    """Absolute http(s) link.  File fields hold links to externally hosted files."""
    message = (
        "Invalid URL. Please provide a public link "
        f"(e.g., Google Drive, Dropbox): {raw}"
    )
    if any(c.isspace() for c in raw):
        return _fail(message)
    try:
        parts = urllib.parse.urlsplit(raw)
    except ValueError:
        return _fail(message)
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        return _fail(message)
    return FieldCheck(value=raw)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

VALIDATORS: dict[str, Callable[[FieldDefinition, str], FieldCheck]] = {
    "text": check_text,
    "textarea": check_text,
    "number": check_number,
    "email": check_email,
    "date": check_date,
    "select": check_select,
    "checkbox": check_checkbox,
    "url": check_url,
    "file": check_url,
}


def check_value(fd: FieldDefinition, raw: str) -> FieldCheck:
    """Validate and coerce one non-empty cell value for `fd`."""
    validator = VALIDATORS.get(fd.type)
    if validator is None:
        return _fail(f"Unsupported field type: {fd.type}")
    return validator(fd, raw.strip())


# ---------------------------------------------------------------------------
# Edge conversions
# ---------------------------------------------------------------------------

def to_json_value(value: Any) -> Any:
    """Coerced value -> JSON-safe primitive (dates as ISO strings)."""
    if isinstance(value, date):
        return value.isoformat()
    return value


def from_json_value(fd: FieldDefinition | None, value: Any) -> Any:
    """Inverse of to_json_value, keyed by the field's declared type."""
    if fd is not None and fd.type == "date" and isinstance(value, str):
        return parse_iso_date(value)
    return value


def to_display_value(value: Any) -> str:
    """Coerced value -> text for templates and exported sheets."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, date):
        return format_dmy(value)
    if isinstance(value, (int, float, Decimal)):
        return number_to_text(value)
    return str(value)
