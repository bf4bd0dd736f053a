"""Spreadsheet ingestion for bulk registration uploads.

Reads an .xlsx workbook (openpyxl) or a .csv file into header-keyed rows of
plain strings, then validates each row against the event form.

Cell normalization happens here and nowhere else: rich text, hyperlinks,
formula results, dates and numbers all leave this module as str | None.

Sheet selection for workbooks:
  1. a sheet named "Registrations" (case-insensitive)
  2. else the first visible sheet
  3. else the first sheet

Header problems abort the file with zero rows processed.  Row problems are
collected in sheet order and the remaining rows keep going.
"""

from __future__ import annotations

import csv
import io
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterator, Sequence

from openpyxl import load_workbook
from openpyxl.cell.rich_text import CellRichText
from openpyxl.utils.exceptions import InvalidFileException

from registration_etl.event_config import FieldDefinition
from registration_etl.normalize import format_dmy, normalize_header, number_to_text
from registration_etl.schema_validator import CleanRow, validate_headers, validate_row
from registration_etl.shared import RegistrationEtlError, RowError

log = logging.getLogger(__name__)

REGISTRATION_SHEET = "Registrations"
XLSX_SUFFIXES = (".xlsx", ".xlsm")
CSV_SUFFIXES = (".csv",)
LINK_FIELD_TYPES = frozenset({"url", "file"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class UnreadableFileError(RegistrationEtlError):
    """Raised when an upload cannot be opened or decoded at all."""


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class IngestSummary:
    total: int = 0
    valid: int = 0
    invalid: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "valid": self.valid,
            "invalid": self.invalid,
            "skipped": self.skipped,
        }


@dataclass
class IngestResult:
    """Outcome of one validation pass over an uploaded file.

    `success` is True only when no errors of any kind were found.
    `aborted` marks header or file failures, where no row was processed.
    """

    success: bool
    rows: list[CleanRow] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)
    summary: IngestSummary = field(default_factory=IngestSummary)
    aborted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "rows": [r.to_dict() for r in self.rows] if not self.aborted else None,
            "errors": [e.to_dict() for e in self.errors],
            "summary": self.summary.to_dict(),
        }


@dataclass
class Table:
    headers: list[str]
    rows: Iterator[tuple[int, dict[str, str | None]]]
    close: Callable[[], None] = lambda: None


# ---------------------------------------------------------------------------
# Cell normalization
# ---------------------------------------------------------------------------

def cell_text(cell: Any, use_link_target: bool = False) -> str | None:
    """Render one openpyxl cell as plain text.

    Hyperlink cells yield their display text, or the link target when
    `use_link_target` is set and the cell carries one.
    """
    link = getattr(cell, "hyperlink", None)
    if use_link_target and link is not None and link.target:
        return str(link.target).strip()
    return value_text(cell.value)


def value_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, CellRichText):
        return str(value)
    if isinstance(value, (datetime, date)):
        return format_dmy(value)
    if isinstance(value, time):
        return value.isoformat()
    if isinstance(value, (bool, int, float, Decimal)):
        return number_to_text(value)
    return str(value)


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------

def _suffix(filename: str) -> str:
    return Path(filename).suffix.lower()


def select_sheet(wb: Any, preferred: str = REGISTRATION_SHEET) -> Any:
    sheets = wb.worksheets
    if not sheets:
        raise UnreadableFileError("Workbook contains no worksheets")
    for ws in sheets:
        if ws.title.strip().lower() == preferred.lower():
            return ws
    for ws in sheets:
        if ws.sheet_state == "visible":
            return ws
    return sheets[0]


def _open_xlsx(
    source: bytes | Path,
    preferred_sheet: str,
    link_header: Callable[[str], bool],
) -> Table:
    stream = io.BytesIO(source) if isinstance(source, bytes) else source
    try:
        # Full (not read-only) mode: read-only cells drop hyperlink targets.
        wb = load_workbook(stream, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as exc:
        raise UnreadableFileError(f"Could not read workbook: {exc}") from exc

    ws = select_sheet(wb, preferred_sheet)
    rows_iter = ws.iter_rows()
    try:
        header_cells = next(rows_iter)
    except StopIteration:
        raise UnreadableFileError("File is empty")
    headers = [(value_text(c.value) or "").strip() for c in header_cells]
    use_target = [bool(h) and link_header(normalize_header(h)) for h in headers]

    def _rows() -> Iterator[tuple[int, dict[str, str | None]]]:
        for cells in rows_iter:
            out: dict[str, str | None] = {}
            row_number = None
            for idx, c in enumerate(cells):
                if row_number is None and getattr(c, "row", None) is not None:
                    row_number = c.row
                if idx >= len(headers) or not headers[idx] or headers[idx] in out:
                    continue
                out[headers[idx]] = cell_text(c, use_target[idx])
            yield row_number or 0, out

    return Table(headers=headers, rows=_rows(), close=wb.close)


def _open_csv(source: bytes | Path) -> Table:
    if isinstance(source, bytes):
        fh = io.TextIOWrapper(io.BytesIO(source), encoding="utf-8-sig", newline="")
    else:
        try:
            fh = open(source, encoding="utf-8-sig", newline="")
        except OSError as exc:
            raise UnreadableFileError(f"Could not read CSV: {exc}") from exc
    reader = csv.reader(fh)
    try:
        raw_headers = next(reader)
    except StopIteration:
        fh.close()
        raise UnreadableFileError("File is empty")
    except (UnicodeDecodeError, csv.Error) as exc:
        fh.close()
        raise UnreadableFileError(f"Could not read CSV: {exc}") from exc
    headers = [h.strip() for h in raw_headers]

    def _rows() -> Iterator[tuple[int, dict[str, str | None]]]:
        try:
            for idx, values in enumerate(reader, start=2):
                out: dict[str, str | None] = {}
                for h, v in zip(headers, values):
                    if h and h not in out:
                        out[h] = v
                yield idx, out
        except (UnicodeDecodeError, csv.Error) as exc:
            raise UnreadableFileError(f"Could not read CSV: {exc}") from exc
    return Table(headers=headers, rows=_rows(), close=fh.close)


def open_table(
    source: bytes | Path,
    filename: str,
    *,
    preferred_sheet: str = REGISTRATION_SHEET,
    link_header: Callable[[str], bool] | None = None,
) -> Table:
    """Open an upload as a header row plus a lazy iterator of (row_number, row).

    `link_header(normalized_header)` decides which xlsx columns take the
    hyperlink target instead of the display text.
    """
    suffix = _suffix(filename)
    if suffix in XLSX_SUFFIXES:
        return _open_xlsx(source, preferred_sheet, link_header or (lambda _h: False))
    if suffix in CSV_SUFFIXES:
        return _open_csv(source)
    raise UnreadableFileError(
        f"Unsupported file type '{suffix or filename}'. Upload an .xlsx or .csv file."
    )


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

def _link_headers(fields: Sequence[FieldDefinition]) -> frozenset[str]:
    keys: set[str] = set()
    for fd in fields:
        if fd.type in LINK_FIELD_TYPES:
            keys.add(normalize_header(fd.label))
            keys.add(fd.id.strip().lower())
    return frozenset(keys)


def _file_failure(message: str) -> IngestResult:
    return IngestResult(
        success=False,
        errors=[RowError(0, "File", message)],
        aborted=True,
    )


def ingest_spreadsheet(
    source: bytes | Path,
    filename: str,
    fields: Sequence[FieldDefinition],
) -> IngestResult:
    """Parse and validate a registration upload.

    Returns an IngestResult; never raises for bad input.
    """
    link_keys = _link_headers(fields)
    try:
        table = open_table(source, filename, link_header=lambda h: h in link_keys)
    except UnreadableFileError as exc:
        log.warning("Unreadable upload %s: %s", filename, exc)
        return _file_failure(str(exc))

    header_errors = validate_headers(table.headers, fields)
    if header_errors:
        log.info("Header validation failed for %s: %d missing column(s)",
                 filename, len(header_errors))
        table.close()
        return IngestResult(success=False, errors=header_errors, aborted=True)

    result = IngestResult(success=False)
    try:
        for row_number, row in table.rows:
            outcome = validate_row(row, fields, row_number)
            if outcome.skipped:
                result.summary.skipped += 1
                continue
            result.summary.total += 1
            if outcome.errors:
                result.summary.invalid += 1
                result.errors.extend(outcome.errors)
            else:
                result.summary.valid += 1
                result.rows.append(outcome.record)
    except UnreadableFileError as exc:
        log.warning("Upload %s became unreadable mid-file: %s", filename, exc)
        return _file_failure(str(exc))
    finally:
        table.close()

    result.success = not result.errors and result.summary.valid > 0
    if result.summary.total == 0:
        result.errors.append(RowError(0, "File", "No student rows found in file"))
    log.info(
        "Ingested %s: total=%d valid=%d invalid=%d skipped=%d",
        filename, result.summary.total, result.summary.valid,
        result.summary.invalid, result.summary.skipped,
    )
    return result
