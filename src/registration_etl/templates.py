"""Downloadable templates, error reports and batch exports.

The registration template is generated from the same FieldDefinition list
the validator uses, so a template and its validator cannot drift apart.
"""

from __future__ import annotations

import csv
import io
from typing import Any, Iterable, Sequence

import psycopg
from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.datavalidation import DataValidation

from registration_etl.event_config import FieldDefinition, fetch_event_config
from registration_etl.field_types import from_json_value, to_display_value
from registration_etl.normalize import format_dmy, number_to_text
from registration_etl.shared import PreconditionError, RowError
from registration_etl.spreadsheet import REGISTRATION_SHEET
from registration_etl.store import fetch_batch, fetch_registrations_for_batch

SAMPLE_STUDENT_NAME = "Sample Student (DELETE THIS ROW)"
BASE_HEADERS = ("S.No", "Student Name*", "Grade*", "Section")
SAMPLE_BASE_VALUES = (1, SAMPLE_STUDENT_NAME, "5", "A")
VALIDATION_ROWS = 1000

_HEADER_FONT = Font(bold=True, color="FFFFFF")
_HEADER_FILL = PatternFill("solid", fgColor="1F4E78")
_SAMPLE_FONT = Font(italic=True, color="808080")

_SAMPLE_BY_TYPE = {
    "text": "Sample Text",
    "textarea": "Sample description",
    "email": "student@school.com",
    "date": "15/01/2024",
    "checkbox": "Yes",
    "url": "https://drive.google.com/file/d/sample/view",
    "file": "https://drive.google.com/file/d/sample/view",
}

_TYPE_HINTS = {
    "text": "Text",
    "textarea": "Text (long)",
    "number": "Number",
    "email": "Email address (name@domain.com)",
    "date": "Date in DD/MM/YYYY format",
    "select": "One of the listed options",
    "checkbox": "Yes/No, True/False, or 1/0",
    "url": "Public http(s) link",
    "file": "Public link to the file (Google Drive, Dropbox, ...)",
}


# ---------------------------------------------------------------------------
# Shared writers
# ---------------------------------------------------------------------------

def workbook_bytes(wb: Workbook) -> bytes:
    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()


def csv_bytes(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> bytes:
    """UTF-8 with BOM so spreadsheet apps detect the encoding."""
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(headers)
    for row in rows:
        writer.writerow(["" if v is None else v for v in row])
    return buf.getvalue().encode("utf-8-sig")


def style_header_row(ws: Any, width: int = 18) -> None:
    for cell in ws[1]:
        cell.font = _HEADER_FONT
        cell.fill = _HEADER_FILL
        cell.alignment = Alignment(horizontal="center", vertical="center")
    for idx in range(1, ws.max_column + 1):
        ws.column_dimensions[get_column_letter(idx)].width = width
    ws.freeze_panes = "A2"


# ---------------------------------------------------------------------------
# Registration template
# ---------------------------------------------------------------------------

def header_label(fd: FieldDefinition) -> str:
    return f"{fd.label}*" if fd.required else fd.label


def template_headers(fields: Sequence[FieldDefinition]) -> list[str]:
    return [*BASE_HEADERS, *(header_label(fd) for fd in fields)]


def sample_value(fd: FieldDefinition) -> str:
    if fd.type == "select":
        return fd.options[0] if fd.options else ""
    if fd.type == "number":
        rules = fd.validation
        if rules.min is not None:
            return number_to_text(rules.min)
        if rules.max is not None and rules.max < 15:
            return number_to_text(rules.max)
        return "15"
    return _SAMPLE_BY_TYPE.get(fd.type, "")


def _describe(fd: FieldDefinition) -> str:
    parts = [_TYPE_HINTS.get(fd.type, fd.type)]
    rules = fd.validation
    if fd.type == "select":
        parts.append("Options: " + ", ".join(fd.options))
    if rules.min is not None:
        parts.append(f"min {to_display_value(rules.min)}")
    if rules.max is not None:
        parts.append(f"max {to_display_value(rules.max)}")
    if rules.min_length is not None:
        parts.append(f"at least {rules.min_length} characters")
    if rules.max_length is not None:
        parts.append(f"at most {rules.max_length} characters")
    return "; ".join(parts)


def _add_list_validation(wb: Workbook, ws: Any, col: int, options: Sequence[str]) -> None:
    letter = get_column_letter(col)
    joined = ",".join(options)
    if len(joined) <= 250 and '"' not in joined:
        formula = f'"{joined}"'
    else:
        # Long option lists live on a hidden sheet; inline lists cap at 255 chars.
        lists = wb["Lists"] if "Lists" in wb.sheetnames else wb.create_sheet("Lists")
        lists.sheet_state = "hidden"
        for row_idx, option in enumerate(options, start=1):
            lists.cell(row=row_idx, column=col, value=option)
        formula = f"Lists!${letter}$1:${letter}${len(options)}"
    dv = DataValidation(type="list", formula1=formula, allow_blank=True)
    dv.error = "Pick a value from the list"
    ws.add_data_validation(dv)
    dv.add(f"{letter}2:{letter}{VALIDATION_ROWS}")


def build_registration_template(
    fields: Sequence[FieldDefinition],
    fmt: str = "xlsx",
    event_title: str | None = None,
) -> bytes:
    headers = template_headers(fields)
    sample = [*SAMPLE_BASE_VALUES, *(sample_value(fd) for fd in fields)]

    if fmt == "csv":
        return csv_bytes(headers, [sample])
    if fmt != "xlsx":
        raise ValueError(f"Unsupported template format: {fmt}")

    wb = Workbook()
    ws = wb.active
    ws.title = REGISTRATION_SHEET
    ws.append(headers)
    ws.append(sample)
    style_header_row(ws)
    for cell in ws[2]:
        cell.font = _SAMPLE_FONT

    offset = len(BASE_HEADERS)
    for idx, fd in enumerate(fields, start=offset + 1):
        if fd.type == "select" and fd.options:
            _add_list_validation(wb, ws, idx, fd.options)
        elif fd.type == "checkbox":
            _add_list_validation(wb, ws, idx, ("Yes", "No"))

    info = wb.create_sheet("Instructions")
    info.append(["Column", "Required", "Format"])
    info.append(["S.No", "Yes", "Row number"])
    info.append(["Student Name", "Yes", "Full name, at most 200 characters"])
    info.append(["Grade", "Yes", "Class or grade"])
    info.append(["Section", "No", "Section letter"])
    for fd in fields:
        info.append([fd.label, "Yes" if fd.required else "No", _describe(fd)])
    info.append([])
    if event_title:
        info.append([f"Event: {event_title}"])
    info.append(["Columns marked * are required. Delete the grey sample row before uploading."])
    info.append(["Rows with no student name, grade or section are ignored."])
    style_header_row(info, width=30)
    info.column_dimensions["C"].width = 60
    return workbook_bytes(wb)


# ---------------------------------------------------------------------------
# Error report
# ---------------------------------------------------------------------------

ERROR_REPORT_HEADERS = ("Row", "Field", "Error")


def build_error_report(errors: Sequence[RowError], fmt: str = "xlsx") -> bytes:
    rows = [(e.row, e.field, e.message) for e in sorted(errors, key=lambda e: e.row)]
    if fmt == "csv":
        return csv_bytes(ERROR_REPORT_HEADERS, rows)
    if fmt != "xlsx":
        raise ValueError(f"Unsupported report format: {fmt}")
    wb = Workbook()
    ws = wb.active
    ws.title = "Errors"
    ws.append(list(ERROR_REPORT_HEADERS))
    for row in rows:
        ws.append(list(row))
    style_header_row(ws, width=24)
    ws.column_dimensions["C"].width = 70
    return workbook_bytes(wb)


# ---------------------------------------------------------------------------
# Batch export
# ---------------------------------------------------------------------------

EXPORT_TRAILING_HEADERS = ("Registration ID", "Registered On")


def batch_export_rows(
    fields: Sequence[FieldDefinition],
    registrations: Sequence[dict[str, Any]],
) -> list[list[Any]]:
    """One display row per registration, oldest first, numbered from 1."""
    ordered = sorted(registrations, key=lambda r: (r["created_at"], r["registration_id"]))
    rows = []
    for idx, reg in enumerate(ordered, start=1):
        dynamic = reg["dynamic_data"] or {}
        rows.append([
            idx,
            reg["student_name"],
            reg["grade"],
            reg["section"] or "",
            *(to_display_value(from_json_value(fd, dynamic.get(fd.id))) for fd in fields),
            reg["registration_id"],
            format_dmy(reg["created_at"]),
        ])
    return rows


def build_batch_export(
    conn: psycopg.Connection,
    batch_reference: str,
    fmt: str = "csv",
) -> bytes:
    """Every registration of a batch with its dynamic answers, as csv or xlsx."""
    batch = fetch_batch(conn, batch_reference)
    if batch is None:
        raise PreconditionError(f"Batch {batch_reference} not found")
    event = fetch_event_config(conn, batch["event_ref"])
    if event is None:
        raise PreconditionError(f"Event {batch['event_ref']} not found")

    headers = [
        *(h.rstrip("*") for h in BASE_HEADERS),
        *(fd.label for fd in event.fields),
        *EXPORT_TRAILING_HEADERS,
    ]
    rows = batch_export_rows(event.fields, fetch_registrations_for_batch(conn, batch_reference))
    if fmt == "csv":
        return csv_bytes(headers, rows)
    if fmt != "xlsx":
        raise ValueError(f"Unsupported export format: {fmt}")
    wb = Workbook()
    ws = wb.active
    ws.title = REGISTRATION_SHEET
    ws.append(headers)
    for row in rows:
        ws.append(row)
    style_header_row(ws)
    return workbook_bytes(wb)
