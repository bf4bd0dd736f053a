"""Row and header validation against an event's dynamic form.

validate_row() turns one header-keyed sheet row into a CleanRow (built-in
student columns plus coerced dynamic_data) or a complete list of RowErrors.
Every field is checked; one bad cell never hides another.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from registration_etl.event_config import FieldDefinition
from registration_etl.field_types import check_value, from_json_value, to_json_value
from registration_etl.normalize import normalize_header, normalize_space, trim
from registration_etl.shared import HeaderError, RowError

STUDENT_NAME_MAX_LENGTH = 200

# Built-in columns: (canonical label, accepted normalized header spellings)
SERIAL_HEADERS = frozenset({"s.no", "s. no", "s no", "sno", "sl.no", "sl. no", "serial no"})
STUDENT_NAME_HEADERS = frozenset({"student name", "student_name"})
GRADE_HEADERS = frozenset({"grade", "class"})
SECTION_HEADERS = frozenset({"section"})

BASELINE_HEADERS: tuple[tuple[str, frozenset[str]], ...] = (
    ("S.No", SERIAL_HEADERS),
    ("Student Name", STUDENT_NAME_HEADERS),
    ("Grade", GRADE_HEADERS),
)

SKIP_BLANK = "blank"
SKIP_SAMPLE = "sample"


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass
class CleanRow:
    """A validated registration row with dynamic values already coerced."""

    row_number: int
    student_name: str
    grade: str
    section: str | None = None
    dynamic_data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form, used for cached validation sessions."""
        return {
            "row_number": self.row_number,
            "student_name": self.student_name,
            "grade": self.grade,
            "section": self.section,
            "dynamic_data": {k: to_json_value(v) for k, v in self.dynamic_data.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], fields: Sequence[FieldDefinition]) -> CleanRow:
        by_id = {f.id: f for f in fields}
        return cls(
            row_number=int(data["row_number"]),
            student_name=data["student_name"],
            grade=data["grade"],
            section=data.get("section"),
            dynamic_data={
                k: from_json_value(by_id.get(k), v)
                for k, v in (data.get("dynamic_data") or {}).items()
            },
        )


@dataclass
class RowOutcome:
    row_number: int
    record: CleanRow | None = None
    errors: list[RowError] = field(default_factory=list)
    skipped: str | None = None


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------

def _field_keys(fd: FieldDefinition) -> tuple[str, str]:
    return normalize_header(fd.label), fd.id.strip().lower()


def validate_headers(
    headers: Sequence[str | None],
    fields: Sequence[FieldDefinition],
) -> list[RowError]:
    """Return one error per missing baseline or required column (row 1)."""
    present = {normalize_header(h) for h in headers if h is not None}
    errors: list[RowError] = []
    for label, accepted in BASELINE_HEADERS:
        if not (present & accepted):
            errors.append(RowError(1, "Headers", f"Missing required column: {label}"))
    for fd in fields:
        if not fd.required:
            continue
        label_key, id_key = _field_keys(fd)
        if label_key not in present and id_key not in present:
            errors.append(RowError(1, "Headers", f"Missing required column: {fd.label}"))
    return errors


def require_headers(
    headers: Sequence[str | None],
    fields: Sequence[FieldDefinition],
) -> None:
    """Raise HeaderError if validate_headers() finds anything."""
    errors = validate_headers(headers, fields)
    if errors:
        raise HeaderError(errors)


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------

def _lookup(row: Mapping[str, Any]) -> dict[str, str | None]:
    """Normalized header -> trimmed cell text.  First occurrence wins."""
    out: dict[str, str | None] = {}
    for key, value in row.items():
        if key is None:
            continue
        nk = normalize_header(key)
        if nk and nk not in out:
            out[nk] = trim(value if value is None else str(value))
    return out


def _first(lookup: Mapping[str, str | None], keys: frozenset[str]) -> str | None:
    for k in sorted(keys):
        if lookup.get(k) is not None:
            return lookup[k]
    return None


def resolve_field_value(lookup: Mapping[str, str | None], fd: FieldDefinition) -> str | None:
    """Case-insensitive label match, falling back to the field id."""
    label_key, id_key = _field_keys(fd)
    value = lookup.get(label_key)
    if value is None:
        value = lookup.get(id_key)
    return value


def skip_reason(lookup: Mapping[str, str | None]) -> str | None:
    name = _first(lookup, STUDENT_NAME_HEADERS)
    grade = _first(lookup, GRADE_HEADERS)
    section = _first(lookup, SECTION_HEADERS)
    if name is None and grade is None and section is None:
        return SKIP_BLANK
    if name is not None and "sample" in name.lower():
        return SKIP_SAMPLE
    return None


def validate_row(
    row: Mapping[str, Any],
    fields: Sequence[FieldDefinition],
    row_number: int,
) -> RowOutcome:
    """Validate one header-keyed row.

    Blank spacer rows and the template's sample row come back with
    `skipped` set and no errors.
    """
    lookup = _lookup(row)
    outcome = RowOutcome(row_number=row_number)

    reason = skip_reason(lookup)
    if reason is not None:
        outcome.skipped = reason
        return outcome

    student_name = normalize_space(_first(lookup, STUDENT_NAME_HEADERS))
    grade = _first(lookup, GRADE_HEADERS)
    section = _first(lookup, SECTION_HEADERS)

    if student_name is None:
        outcome.errors.append(RowError(row_number, "Student Name", "Student Name is required"))
    elif len(student_name) > STUDENT_NAME_MAX_LENGTH:
        outcome.errors.append(RowError(
            row_number, "Student Name",
            f"Student Name cannot exceed {STUDENT_NAME_MAX_LENGTH} characters",
        ))
    if grade is None:
        outcome.errors.append(RowError(row_number, "Grade", "Grade is required"))

    dynamic_data: dict[str, Any] = {}
    for fd in fields:
        raw = resolve_field_value(lookup, fd)
        if raw is None:
            if fd.required:
                outcome.errors.append(RowError(row_number, fd.label, f"{fd.label} is required"))
            continue
        check = check_value(fd, raw)
        if check.ok:
            dynamic_data[fd.id] = check.value
        else:
            outcome.errors.append(RowError(row_number, fd.label, check.error))

    if not outcome.errors:
        outcome.record = CleanRow(
            row_number=row_number,
            student_name=student_name,
            grade=grade,
            section=section,
            dynamic_data=dynamic_data,
        )
    return outcome
