"""registration_etl.event_config

YAML-based event configuration: the dynamic registration form, discount
tiers, per-currency unit fees and the registration window.

Responsibilities:
  - Load and validate YAML event files from config/events/*.yml
  - Produce immutable snapshots (EventConfig) that are passed explicitly into
    the validator and pricing code
  - Register snapshots into the DB (event table) and read them back
  - Hash YAML content for traceability

Usage:
    from pathlib import Path
    from registration_etl.event_config import load_event_config

    event = load_event_config(Path("config/events/example_event.yml"))
    event.is_accepting_registrations(datetime.now(timezone.utc))
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import psycopg
import yaml
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from registration_etl.normalize import (
    format_dmy,
    normalize_header,
    parse_dmy_date,
    parse_iso_date,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FIELD_TYPES = frozenset({
    "text", "textarea", "number", "email", "date", "select", "checkbox", "url", "file",
})

EVENT_STATUSES = ("draft", "active", "closed", "archived")

CURRENCIES = ("INR", "USD")

REQUIRED_YAML_KEYS = frozenset({"event_ref", "title", "status", "unit_fees", "form_fields"})

VALIDATION_KEYS = frozenset({"min", "max", "min_length", "max_length", "pattern"})

# Columns every registration sheet carries regardless of the event form.
RESERVED_FIELD_IDS = frozenset({"s_no", "student_name", "grade", "section"})
RESERVED_LABELS = frozenset({"s.no", "student name", "grade", "class", "section"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class EventConfigValidationError(ValueError):
    """Raised when an event YAML file fails schema validation."""


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldValidation:
    min: Decimal | None = None
    max: Decimal | None = None
    min_length: int | None = None
    max_length: int | None = None
    pattern: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.min is not None:
            out["min"] = str(self.min)
        if self.max is not None:
            out["max"] = str(self.max)
        if self.min_length is not None:
            out["min_length"] = self.min_length
        if self.max_length is not None:
            out["max_length"] = self.max_length
        if self.pattern is not None:
            out["pattern"] = self.pattern
        return out


@dataclass(frozen=True)
class FieldDefinition:
    """One dynamic form field declared by an event."""

    id: str
    label: str
    type: str
    required: bool = False
    options: tuple[str, ...] = ()
    validation: FieldValidation = field(default_factory=FieldValidation)
    order: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "type": self.type,
            "required": self.required,
            "options": list(self.options),
            "validation": self.validation.to_dict(),
            "order": self.order,
        }


@dataclass(frozen=True)
class DiscountTier:
    min_students: int
    discount_percent: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "min_students": self.min_students,
            "discount_percent": str(self.discount_percent),
        }


@dataclass(frozen=True)
class School:
    school_ref: str
    name: str
    preferred_currency: str = "INR"


@dataclass
class EventConfig:
    """Parsed, validated event snapshot."""

    event_ref: str
    title: str
    status: str
    unit_fees: dict[str, Decimal]
    fields: list[FieldDefinition]
    discount_tiers: list[DiscountTier] = field(default_factory=list)
    registration_start: date | None = None
    registration_deadline: date | None = None
    config_hash: str = ""
    raw_yaml: str = field(repr=False, default="")

    def unit_fee_for(self, currency: str) -> Decimal | None:
        return self.unit_fees.get(currency.upper())

    def field_by_id(self, field_id: str) -> FieldDefinition | None:
        for f in self.fields:
            if f.id == field_id:
                return f
        return None

    def closed_reason(self, now: datetime) -> str | None:
        """Return why the event refuses registrations at `now`, or None.

        The deadline is inclusive: registrations are accepted until the end
        of the deadline day.
        """
        if self.status != "active":
            return f"Event is not accepting registrations (status: {self.status})"
        today = now.date()
        if self.registration_start is not None and today < self.registration_start:
            return (
                "Registration has not opened yet "
                f"(opens {format_dmy(self.registration_start)})"
            )
        if self.registration_deadline is not None and today > self.registration_deadline:
            return (
                "Registration deadline has passed "
                f"(closed {format_dmy(self.registration_deadline)})"
            )
        return None

    def is_accepting_registrations(self, now: datetime) -> bool:
        return self.closed_reason(now) is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_ref": self.event_ref,
            "title": self.title,
            "status": self.status,
            "registration_start": (
                self.registration_start.isoformat() if self.registration_start else None
            ),
            "registration_deadline": (
                self.registration_deadline.isoformat() if self.registration_deadline else None
            ),
            "unit_fees": {k: str(v) for k, v in self.unit_fees.items()},
            "form_fields": [f.to_dict() for f in self.fields],
            "discount_tiers": [t.to_dict() for t in self.discount_tiers],
        }


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_event_config(yaml_path: Path) -> EventConfig:
    """Load, validate, and return an EventConfig from a YAML file.

    Raises:
        EventConfigValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_event_config(data)
    cfg = event_config_from_dict(data)
    cfg.config_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    cfg.raw_yaml = raw
    return cfg


def validate_event_config(data: dict[str, Any]) -> None:
    """Raise EventConfigValidationError if data does not match required schema.

    Validates:
      - Required top-level keys present, status one of EVENT_STATUSES
      - unit_fees keyed by a known currency, values numeric and >= 0
      - form_fields: unique ids, known types, options iff select,
        validation keys known, patterns compile
      - discount_tiers: min_students >= 1 and unique, percent in [0, 100]
      - registration window dates parse and start <= deadline
    """
    if not isinstance(data, dict):
        raise EventConfigValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise EventConfigValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    status = data.get("status")
    if status not in EVENT_STATUSES:
        raise EventConfigValidationError(
            f"Invalid status '{status}'. Must be one of {list(EVENT_STATUSES)}."
        )

    unit_fees = data.get("unit_fees") or {}
    if not isinstance(unit_fees, dict) or not unit_fees:
        raise EventConfigValidationError("'unit_fees' must be a non-empty mapping.")
    for currency, fee in unit_fees.items():
        if str(currency).upper() not in CURRENCIES:
            raise EventConfigValidationError(
                f"Unknown currency '{currency}'. Must be one of {list(CURRENCIES)}."
            )
        d = _as_decimal(fee)
        if d is None or d < 0:
            raise EventConfigValidationError(
                f"unit_fees['{currency}'] value '{fee}' must be a number >= 0."
            )

    _validate_form_fields(data.get("form_fields"))
    _validate_discount_tiers(data.get("discount_tiers") or [])

    start = _coerce_date(data.get("registration_start"), "registration_start")
    deadline = _coerce_date(data.get("registration_deadline"), "registration_deadline")
    if start and deadline and start > deadline:
        raise EventConfigValidationError(
            "'registration_start' must not be after 'registration_deadline'."
        )


def _validate_form_fields(form_fields: Any) -> None:
    if not isinstance(form_fields, list):
        raise EventConfigValidationError("'form_fields' must be a list.")

    seen_ids: set[str] = set()
    seen_labels: set[str] = set()
    for idx, fd in enumerate(form_fields):
        if not isinstance(fd, dict):
            raise EventConfigValidationError(f"form_fields[{idx}] must be a mapping.")
        fid = str(fd.get("id") or "").strip()
        if not fid:
            raise EventConfigValidationError(f"form_fields[{idx}] is missing 'id'.")
        if fid in seen_ids:
            raise EventConfigValidationError(f"Duplicate field id '{fid}'.")
        if fid in RESERVED_FIELD_IDS:
            raise EventConfigValidationError(
                f"Field id '{fid}' is reserved for a built-in column."
            )
        seen_ids.add(fid)

        label_key = normalize_header(str(fd.get("label") or ""))
        if not label_key:
            raise EventConfigValidationError(f"Field '{fid}' is missing 'label'.")
        if label_key in seen_labels or label_key in RESERVED_LABELS:
            raise EventConfigValidationError(
                f"Field '{fid}' label '{fd['label']}' duplicates another column."
            )
        seen_labels.add(label_key)

        ftype = fd.get("type")
        if ftype not in FIELD_TYPES:
            raise EventConfigValidationError(
                f"Field '{fid}' has invalid type '{ftype}'. Must be one of {sorted(FIELD_TYPES)}."
            )

        options = fd.get("options") or []
        if ftype == "select" and not options:
            raise EventConfigValidationError(f"Select field '{fid}' must declare 'options'.")
        if ftype != "select" and options:
            raise EventConfigValidationError(
                f"Field '{fid}' declares 'options' but is not a select field."
            )

        rules = fd.get("validation") or {}
        if not isinstance(rules, dict):
            raise EventConfigValidationError(f"Field '{fid}' 'validation' must be a mapping.")
        unknown = set(rules.keys()) - VALIDATION_KEYS
        if unknown:
            raise EventConfigValidationError(
                f"Field '{fid}' has unknown validation keys: {sorted(unknown)}"
            )
        for key in ("min", "max"):
            if rules.get(key) is not None and _as_decimal(rules[key]) is None:
                raise EventConfigValidationError(
                    f"Field '{fid}' validation '{key}' value '{rules[key]}' is not numeric."
                )
        for key in ("min_length", "max_length"):
            val = rules.get(key)
            if val is not None and (not isinstance(val, int) or isinstance(val, bool) or val < 0):
                raise EventConfigValidationError(
                    f"Field '{fid}' validation '{key}' must be a non-negative integer."
                )
        pattern = rules.get("pattern")
        if pattern is not None:
            try:
                re.compile(str(pattern))
            except re.error as exc:
                raise EventConfigValidationError(
                    f"Field '{fid}' validation pattern does not compile: {exc}"
                )


def _validate_discount_tiers(tiers: Any) -> None:
    if not isinstance(tiers, list):
        raise EventConfigValidationError("'discount_tiers' must be a list.")
    seen_min: set[int] = set()
    for idx, tier in enumerate(tiers):
        if not isinstance(tier, dict):
            raise EventConfigValidationError(f"discount_tiers[{idx}] must be a mapping.")
        min_students = tier.get("min_students")
        if not isinstance(min_students, int) or isinstance(min_students, bool) or min_students < 1:
            raise EventConfigValidationError(
                f"discount_tiers[{idx}] 'min_students' must be an integer >= 1."
            )
        if min_students in seen_min:
            raise EventConfigValidationError(
                f"Duplicate discount tier for min_students={min_students}."
            )
        seen_min.add(min_students)
        pct = _as_decimal(tier.get("discount_percent"))
        if pct is None or not (Decimal(0) <= pct <= Decimal(100)):
            raise EventConfigValidationError(
                f"discount_tiers[{idx}] 'discount_percent' must be in [0, 100]."
            )
        if pct != pct.quantize(Decimal("0.01")):
            raise EventConfigValidationError(
                f"discount_tiers[{idx}] 'discount_percent' allows at most 2 decimal places."
            )


def event_config_from_dict(data: dict[str, Any]) -> EventConfig:
    """Build an EventConfig from already-validated YAML or DB data."""
    fields = [
        FieldDefinition(
            id=str(fd["id"]).strip(),
            label=str(fd["label"]).strip(),
            type=fd["type"],
            required=bool(fd.get("required", False)),
            options=tuple(str(o) for o in (fd.get("options") or [])),
            validation=_field_validation(fd.get("validation") or {}),
            order=int(fd.get("order", idx)),
        )
        for idx, fd in enumerate(data.get("form_fields") or [])
    ]
    fields.sort(key=lambda f: f.order)
    tiers = [
        DiscountTier(
            min_students=int(t["min_students"]),
            discount_percent=_as_decimal(t["discount_percent"]),
        )
        for t in (data.get("discount_tiers") or [])
    ]
    return EventConfig(
        event_ref=str(data["event_ref"]),
        title=str(data["title"]),
        status=data["status"],
        unit_fees={str(k).upper(): _as_decimal(v) for k, v in data["unit_fees"].items()},
        fields=fields,
        discount_tiers=tiers,
        registration_start=_coerce_date(data.get("registration_start"), "registration_start"),
        registration_deadline=_coerce_date(
            data.get("registration_deadline"), "registration_deadline"
        ),
    )


def _field_validation(rules: dict[str, Any]) -> FieldValidation:
    return FieldValidation(
        min=_as_decimal(rules["min"]) if rules.get("min") is not None else None,
        max=_as_decimal(rules["max"]) if rules.get("max") is not None else None,
        min_length=rules.get("min_length"),
        max_length=rules.get("max_length"),
        pattern=str(rules["pattern"]) if rules.get("pattern") is not None else None,
    )


def _as_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        d = Decimal(str(value))
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


def _coerce_date(value: Any, key: str) -> date | None:
    """YAML yields date objects for ISO literals; strings may be ISO or DD/MM/YYYY."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value)
    parsed = parse_iso_date(text) or parse_dmy_date(text)
    if parsed is None:
        raise EventConfigValidationError(f"'{key}' value '{value}' is not a valid date.")
    return parsed


# ---------------------------------------------------------------------------
# DB registration
# ---------------------------------------------------------------------------

def register_event_config(conn: psycopg.Connection, cfg: EventConfig) -> None:
    """Upsert the event snapshot.  Caller manages transaction."""
    snap = cfg.to_dict()
    conn.execute(
        """
        INSERT INTO event
          (event_ref, title, status, registration_start, registration_deadline,
           unit_fees, form_fields, discount_tiers, config_hash)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (event_ref) DO UPDATE SET
          title = EXCLUDED.title,
          status = EXCLUDED.status,
          registration_start = EXCLUDED.registration_start,
          registration_deadline = EXCLUDED.registration_deadline,
          unit_fees = EXCLUDED.unit_fees,
          form_fields = EXCLUDED.form_fields,
          discount_tiers = EXCLUDED.discount_tiers,
          config_hash = EXCLUDED.config_hash,
          updated_at = now()
        """,
        (
            cfg.event_ref, cfg.title, cfg.status,
            cfg.registration_start, cfg.registration_deadline,
            Jsonb(snap["unit_fees"]), Jsonb(snap["form_fields"]),
            Jsonb(snap["discount_tiers"]), cfg.config_hash or None,
        ),
    )


def fetch_event_config(conn: psycopg.Connection, event_ref: str) -> EventConfig | None:
    with conn.cursor(row_factory=dict_row) as cur:
        row = cur.execute(
            """
            SELECT event_ref, title, status, registration_start, registration_deadline,
                   unit_fees, form_fields, discount_tiers, config_hash
            FROM event WHERE event_ref = %s
            """,
            (event_ref,),
        ).fetchone()
    if row is None:
        return None
    cfg = event_config_from_dict(row)
    cfg.config_hash = row["config_hash"] or ""
    return cfg


def upsert_school(conn: psycopg.Connection, school: School) -> None:
    """Insert or refresh a school row.  Caller manages transaction."""
    if school.preferred_currency not in CURRENCIES:
        raise EventConfigValidationError(
            f"Unknown currency '{school.preferred_currency}' for school {school.school_ref}."
        )
    conn.execute(
        """
        INSERT INTO school (school_ref, name, preferred_currency)
        VALUES (%s, %s, %s)
        ON CONFLICT (school_ref) DO UPDATE SET
          name = EXCLUDED.name,
          preferred_currency = EXCLUDED.preferred_currency
        """,
        (school.school_ref, school.name, school.preferred_currency),
    )


def fetch_school(conn: psycopg.Connection, school_ref: str) -> School | None:
    row = conn.execute(
        "SELECT school_ref, name, preferred_currency FROM school WHERE school_ref = %s",
        (school_ref,),
    ).fetchone()
    if row is None:
        return None
    return School(school_ref=row[0], name=row[1], preferred_currency=row[2])
