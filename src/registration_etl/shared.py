"""registration_etl.shared

Shared utilities used by the registration and results pipelines.
Includes the exception taxonomy, RowError, RejectWriter, RunCounters,
reference generation and report-writing support.
"""

from __future__ import annotations

import csv
import json
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import groupby
from pathlib import Path
from typing import Any, Iterable


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RegistrationEtlError(Exception):
    """Base class for errors raised by registration_etl."""


class HeaderError(RegistrationEtlError):
    """Raised when a sheet's header row does not satisfy the event form."""

    def __init__(self, errors: list[RowError]) -> None:
        self.errors = errors
        super().__init__("; ".join(e.message for e in errors))


class PreconditionError(RegistrationEtlError):
    """Raised when an operation targets an entity in a forbidden state.

    Always raised before any mutation.
    """


class StudentValidationError(PreconditionError):
    """Raised when a single-student batch edit fails row validation."""

    def __init__(self, errors: list[RowError]) -> None:
        self.errors = errors
        super().__init__("; ".join(f"{e.field}: {e.message}" for e in errors))


class ConsistencyError(RegistrationEtlError):
    """Raised when a multi-record write failed and could not be fully undone."""


# ---------------------------------------------------------------------------
# RowError
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RowError:
    """One (row, field, message) problem found in an uploaded file.

    `row` is the 1-based sheet row number (the header is row 1); 0 means
    the file as a whole.
    """

    row: int
    field: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"row": self.row, "field": self.field, "message": self.message}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RowError:
        return cls(row=int(data["row"]), field=str(data["field"]), message=str(data["message"]))


def format_errors(errors: Iterable[RowError]) -> str:
    """Group errors by row into one human-readable line per row."""
    lines = []
    ordered = sorted(errors, key=lambda e: e.row)
    for row, group in groupby(ordered, key=lambda e: e.row):
        parts = "; ".join(f"{e.field}: {e.message}" for e in group)
        prefix = "File" if row == 0 else f"Row {row}"
        lines.append(f"{prefix}: {parts}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def write_errors(self, errors: Iterable[RowError]) -> int:
        n = 0
        for err in errors:
            self.write({"row": err.row, "field": err.field}, err.message)
            n += 1
        return n

    @property
    def opened(self) -> bool:
        return self._fh is not None

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    # Ingestion
    rows_read: int = 0
    rows_valid: int = 0
    rows_invalid: int = 0
    rows_rejected: int = 0
    # Batch assembly / lifecycle
    registrations_inserted: int = 0
    batches_created: int = 0
    payments_created: int = 0
    registrations_confirmed: int = 0
    registrations_cancelled: int = 0
    registrations_deleted: int = 0
    registrations_updated: int = 0
    # Results
    results_total: int = 0
    results_matched: int = 0
    results_updated: int = 0
    results_cleared: int = 0
    # Maintenance
    orphans_found: int = 0
    orphans_purged: int = 0
    sessions_purged: int = 0
    db_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_read": self.rows_read,
            "rows_valid": self.rows_valid,
            "rows_invalid": self.rows_invalid,
            "rows_rejected": self.rows_rejected,
            "registrations_inserted": self.registrations_inserted,
            "batches_created": self.batches_created,
            "payments_created": self.payments_created,
            "registrations_confirmed": self.registrations_confirmed,
            "registrations_cancelled": self.registrations_cancelled,
            "registrations_deleted": self.registrations_deleted,
            "registrations_updated": self.registrations_updated,
            "results_total": self.results_total,
            "results_matched": self.results_matched,
            "results_updated": self.results_updated,
            "results_cleared": self.results_cleared,
            "orphans_found": self.orphans_found,
            "orphans_purged": self.orphans_purged,
            "sessions_purged": self.sessions_purged,
            "db_errors": self.db_errors,
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# Reference generation
# ---------------------------------------------------------------------------

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, rem = divmod(n, 36)
        out.append(_BASE36[rem])
    return "".join(reversed(out))


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def new_reference(prefix: str, random_length: int = 6) -> str:
    """Human-legible unique reference: PREFIX-<base36 millis>-<random>.

    The time part keeps references roughly sortable; the random part makes
    concurrent collisions negligible.  UNIQUE constraints are the backstop.
    """
    millis = int(time.time() * 1000)
    return f"{prefix}-{_base36(millis)}-{_random_suffix(random_length)}"


def new_batch_reference() -> str:
    return new_reference("BATCH", 5)


def new_registration_id() -> str:
    return new_reference("REG", 8)


def new_payment_reference() -> str:
    return new_reference("PAY", 6)


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: RunCounters,
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = Path(f"./artifacts/reports/{run_id}.json")
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
