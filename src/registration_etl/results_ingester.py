"""registration_etl.results_ingester

Bulk exam-result ingestion for one event.

Pipeline:
  1. parse_results_file    xlsx/csv -> ResultRow list; header must carry
                           registration_id
  2. validate_results      per-row checks: id present and unique in file,
                           score >= 0, rank a positive integer
  3. existence check       one query for every surviving id; unknown ids
                           are dropped and reported
  4. bulk_update_results   one set-based UPDATE of registration.result;
                           rows whose result is already identical are not
                           touched, so re-running a file is a no-op

set_registration_result() applies the same rules to one registration.

Row errors come back as data (RowError).  Nothing here commits.
Caller manages transaction.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

import psycopg
from openpyxl import Workbook

from registration_etl.field_types import decimal_to_primitive
from registration_etl.normalize import normalize_header, normalize_space, parse_decimal, trim
from registration_etl.shared import PreconditionError, RowError
from registration_etl.spreadsheet import UnreadableFileError, open_table
from registration_etl.templates import csv_bytes, style_header_row, workbook_bytes

log = logging.getLogger(__name__)

RESULTS_SHEET = "Results"
IDENTITY_COLUMNS = ("registration_id", "student_name", "grade", "section")
RESULT_COLUMNS = ("score", "rank", "award", "remarks")
TEMPLATE_COLUMNS = IDENTITY_COLUMNS + RESULT_COLUMNS
TEMPLATE_STATUSES = ("confirmed", "attended")


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass
class ResultRow:
    row_number: int
    registration_id: str
    score: int | float | None = None
    rank: int | None = None
    award: str | None = None
    remarks: str | None = None

    def result_document(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "rank": self.rank,
            "award": self.award,
            "remarks": self.remarks,
        }


@dataclass
class ResultsSummary:
    total: int = 0
    matched: int = 0
    updated: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"total": self.total, "matched": self.matched, "updated": self.updated}


@dataclass
class ResultsIngestResult:
    rows_read: int = 0
    summary: ResultsSummary = field(default_factory=ResultsSummary)
    errors: list[RowError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_read": self.rows_read,
            "summary": self.summary.to_dict(),
            "errors": [e.to_dict() for e in self.errors],
        }


# ---------------------------------------------------------------------------
# Parse
# ---------------------------------------------------------------------------

def results_key(header: str | None) -> str:
    """'Registration ID' -> 'registration_id'."""
    return normalize_header(header).replace(" ", "_")


def parse_results_file(
    source: bytes | Path,
    filename: str,
) -> tuple[list[tuple[int, dict[str, str | None]]], list[RowError]]:
    """Return ([(row_number, {column_key: text})], file/header errors).

    Fully blank rows are dropped.
    """
    try:
        table = open_table(source, filename, preferred_sheet=RESULTS_SHEET)
    except UnreadableFileError as exc:
        return [], [RowError(0, "File", str(exc))]

    keys = {results_key(h) for h in table.headers}
    if "registration_id" not in keys:
        table.close()
        return [], [RowError(1, "Headers", "Missing required column: registration_id")]

    parsed: list[tuple[int, dict[str, str | None]]] = []
    try:
        for row_number, row in table.rows:
            out: dict[str, str | None] = {}
            for header, value in row.items():
                k = results_key(header)
                if k and k not in out:
                    out[k] = trim(value)
            if any(v is not None for v in out.values()):
                parsed.append((row_number, out))
    except UnreadableFileError as exc:
        return [], [RowError(0, "File", str(exc))]
    finally:
        table.close()
    return parsed, []


# ---------------------------------------------------------------------------
# Validate
# ---------------------------------------------------------------------------

def _parse_score(raw: str | None) -> tuple[int | float | None, bool]:
    if raw is None:
        return None, True
    d = parse_decimal(raw)
    if d is None or d < 0:
        return None, False
    return decimal_to_primitive(d), True


def _parse_rank(raw: str | None) -> tuple[int | None, bool]:
    if raw is None:
        return None, True
    d = parse_decimal(raw)
    if d is None or d != d.to_integral_value() or d < 1:
        return None, False
    return int(d), True


def validate_results(
    rows: Sequence[tuple[int, dict[str, str | None]]],
) -> tuple[list[ResultRow], list[RowError]]:
    """Row-level checks.  The first occurrence of a duplicated id is kept."""
    valid: list[ResultRow] = []
    errors: list[RowError] = []
    seen: dict[str, int] = {}

    for row_number, row in rows:
        row_errors: list[RowError] = []
        reg_id = row.get("registration_id")
        if reg_id is None:
            errors.append(RowError(row_number, "registration_id", "Missing registration_id"))
            continue
        if reg_id in seen:
            errors.append(RowError(
                row_number, "registration_id",
                f"Duplicate registration_id '{reg_id}' (first seen on row {seen[reg_id]})",
            ))
            continue
        seen[reg_id] = row_number

        score, ok = _parse_score(row.get("score"))
        if not ok:
            row_errors.append(RowError(
                row_number, "score",
                f"Invalid score '{row.get('score')}'. Must be a non-negative number",
            ))
        rank, ok = _parse_rank(row.get("rank"))
        if not ok:
            row_errors.append(RowError(
                row_number, "rank",
                f"Invalid rank '{row.get('rank')}'. Must be a positive integer",
            ))
        if row_errors:
            errors.extend(row_errors)
            continue
        valid.append(ResultRow(
            row_number=row_number,
            registration_id=reg_id,
            score=score,
            rank=rank,
            award=normalize_space(row.get("award")),
            remarks=normalize_space(row.get("remarks")),
        ))
    return valid, errors


def existing_registration_ids(
    conn: psycopg.Connection,
    event_ref: str,
    registration_ids: Sequence[str],
) -> set[str]:
    if not registration_ids:
        return set()
    rows = conn.execute(
        """
        SELECT registration_id FROM registration
        WHERE event_ref = %s AND registration_id = ANY(%s)
        """,
        (event_ref, list(registration_ids)),
    ).fetchall()
    return {str(r[0]) for r in rows}


def drop_unknown_registrations(
    conn: psycopg.Connection,
    event_ref: str,
    rows: Sequence[ResultRow],
) -> tuple[list[ResultRow], list[RowError]]:
    existing = existing_registration_ids(conn, event_ref, [r.registration_id for r in rows])
    kept: list[ResultRow] = []
    errors: list[RowError] = []
    for r in rows:
        if r.registration_id in existing:
            kept.append(r)
        else:
            errors.append(RowError(
                r.row_number, "registration_id",
                f"Registration ID '{r.registration_id}' not found for this event",
            ))
    return kept, errors


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------

def bulk_update_results(
    conn: psycopg.Connection,
    event_ref: str,
    rows: Sequence[ResultRow],
) -> ResultsSummary:
    """Set registration.result for every row in one statement.

    matched counts registrations found for the event; updated counts those
    whose stored result actually changed.
    """
    summary = ResultsSummary(total=len(rows))
    if not rows:
        return summary
    ids = [r.registration_id for r in rows]
    docs = [json.dumps(r.result_document(), sort_keys=True) for r in rows]
    matched, updated = conn.execute(
        """
        WITH incoming AS (
            SELECT t.registration_id, t.result_json::jsonb AS result
            FROM unnest(%s::text[], %s::text[]) AS t(registration_id, result_json)
        ),
        matched AS (
            SELECT r.registration_id, i.result
            FROM registration r
            JOIN incoming i ON i.registration_id = r.registration_id
            WHERE r.event_ref = %s
        ),
        updated AS (
            UPDATE registration r
            SET result = m.result, updated_at = now()
            FROM matched m
            WHERE r.registration_id = m.registration_id
              AND r.result IS DISTINCT FROM m.result
            RETURNING r.registration_id
        )
        SELECT (SELECT count(*) FROM matched), (SELECT count(*) FROM updated)
        """,
        (ids, docs, event_ref),
    ).fetchone()
    summary.matched = int(matched)
    summary.updated = int(updated)
    return summary


def _require_event(conn: psycopg.Connection, event_ref: str) -> None:
    row = conn.execute("SELECT 1 FROM event WHERE event_ref = %s", (event_ref,)).fetchone()
    if row is None:
        raise PreconditionError(f"Event {event_ref} not found")


def ingest_results(
    conn: psycopg.Connection,
    event_ref: str,
    source: bytes | Path,
    filename: str,
) -> ResultsIngestResult:
    _require_event(conn, event_ref)
    result = ResultsIngestResult()

    parsed, file_errors = parse_results_file(source, filename)
    if file_errors:
        result.errors = file_errors
        return result
    result.rows_read = len(parsed)

    valid, row_errors = validate_results(parsed)
    kept, ref_errors = drop_unknown_registrations(conn, event_ref, valid)
    result.errors = sorted(row_errors + ref_errors, key=lambda e: e.row)
    result.summary = bulk_update_results(conn, event_ref, kept)
    log.info(
        "Results for %s from %s: read=%d total=%d matched=%d updated=%d errors=%d",
        event_ref, filename, result.rows_read, result.summary.total,
        result.summary.matched, result.summary.updated, len(result.errors),
    )
    return result


def clear_event_results(conn: psycopg.Connection, event_ref: str) -> int:
    """Remove every stored result for the event; returns rows cleared."""
    _require_event(conn, event_ref)
    return conn.execute(
        """
        UPDATE registration SET result = NULL, updated_at = now()
        WHERE event_ref = %s AND result IS NOT NULL
        """,
        (event_ref,),
    ).rowcount


def _raw(value: Any) -> str | None:
    return trim(None if value is None else str(value))


def set_registration_result(
    conn: psycopg.Connection,
    event_ref: str,
    registration_id: str,
    score: Any = None,
    rank: Any = None,
    award: str | None = None,
    remarks: str | None = None,
) -> dict[str, Any]:
    """Replace one registration's result; same rules as a results file row.

    Raises PreconditionError for an unknown registration or a bad
    score/rank.  Returns the stored result document.
    """
    _require_event(conn, event_ref)
    parsed_score, ok = _parse_score(_raw(score))
    if not ok:
        raise PreconditionError(f"Invalid score '{score}'. Must be a non-negative number")
    parsed_rank, ok = _parse_rank(_raw(rank))
    if not ok:
        raise PreconditionError(f"Invalid rank '{rank}'. Must be a positive integer")

    row = ResultRow(
        row_number=0,
        registration_id=registration_id,
        score=parsed_score,
        rank=parsed_rank,
        award=normalize_space(award),
        remarks=normalize_space(remarks),
    )
    summary = bulk_update_results(conn, event_ref, [row])
    if summary.matched == 0:
        raise PreconditionError(
            f"Registration ID '{registration_id}' not found for this event"
        )
    log.info("Result for %s set (changed=%s)", registration_id, bool(summary.updated))
    return row.result_document()


# ---------------------------------------------------------------------------
# Template
# ---------------------------------------------------------------------------

def results_template_rows(conn: psycopg.Connection, event_ref: str) -> list[tuple[Any, ...]]:
    rows = conn.execute(
        """
        SELECT registration_id, student_name, grade, section
        FROM registration
        WHERE event_ref = %s AND status = ANY(%s)
        ORDER BY student_name, registration_id
        """,
        (event_ref, list(TEMPLATE_STATUSES)),
    ).fetchall()
    return [tuple(r) + (None,) * len(RESULT_COLUMNS) for r in rows]


def generate_results_template(
    conn: psycopg.Connection,
    event_ref: str,
    fmt: str = "xlsx",
) -> bytes:
    """One skeleton row per confirmed/attended registration, result columns blank."""
    _require_event(conn, event_ref)
    rows = results_template_rows(conn, event_ref)
    if fmt == "csv":
        return csv_bytes(TEMPLATE_COLUMNS, rows)
    if fmt != "xlsx":
        raise ValueError(f"Unsupported template format: {fmt}")
    wb = Workbook()
    ws = wb.active
    ws.title = RESULTS_SHEET
    ws.append(list(TEMPLATE_COLUMNS))
    for row in rows:
        ws.append(list(row))
    style_header_row(ws)
    return workbook_bytes(wb)
