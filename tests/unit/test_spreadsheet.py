"""Unit tests for registration_etl.spreadsheet: xlsx/csv ingestion."""

from __future__ import annotations

import io
from datetime import datetime

from openpyxl import Workbook
from openpyxl.cell.rich_text import CellRichText, TextBlock
from openpyxl.cell.text import InlineFont

from registration_etl.event_config import FieldDefinition
from registration_etl.shared import RowError
from registration_etl.spreadsheet import (
    ingest_spreadsheet,
    select_sheet,
    value_text,
)

FIELDS = [
    FieldDefinition(id="parent_email", label="Parent Email", type="email", required=True, order=1),
    FieldDefinition(id="dob", label="Date of Birth", type="date", order=2),
    FieldDefinition(id="project", label="Project Link", type="url", order=3),
]

HEADERS = ["S.No", "Student Name*", "Grade*", "Section", "Parent Email*", "Date of Birth", "Project Link"]


def _xlsx(rows: list[list], headers: list[str] = HEADERS, sheet: str = "Registrations") -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = sheet
    ws.append(headers)
    for row in rows:
        ws.append(row)
    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()


def _csv(lines: list[str]) -> bytes:
    return ("\n".join(lines) + "\n").encode("utf-8")


# ---------------------------------------------------------------------------
# Cell normalization
# ---------------------------------------------------------------------------

class TestValueText:
    def test_date_rendered_dmy(self):
        assert value_text(datetime(2014, 1, 15)) == "15/01/2014"

    def test_integral_float(self):
        assert value_text(5.0) == "5"

    def test_rich_text_flattened(self):
        rich = CellRichText(["Asha ", TextBlock(InlineFont(b=True), "Rao")])
        assert value_text(rich) == "Asha Rao"

    def test_none(self):
        assert value_text(None) is None


class TestSelectSheet:
    def test_prefers_registrations_sheet(self):
        wb = Workbook()
        wb.active.title = "Instructions"
        target = wb.create_sheet("registrations")
        assert select_sheet(wb) is target

    def test_first_visible_sheet(self):
        wb = Workbook()
        hidden = wb.active
        hidden.title = "Lists"
        hidden.sheet_state = "hidden"
        visible = wb.create_sheet("Sheet2")
        assert select_sheet(wb) is visible


# ---------------------------------------------------------------------------
# xlsx ingestion
# ---------------------------------------------------------------------------

class TestIngestXlsx:
    def test_valid_rows(self):
        data = _xlsx([
            [1, "Asha Rao", 5, "A", "asha@example.com", datetime(2014, 1, 15), None],
            [2, "Ravi Kumar", "6", "B", "ravi@example.com", "02/03/2013", None],
        ])
        result = ingest_spreadsheet(data, "upload.xlsx", FIELDS)
        assert result.success is True
        assert result.summary.total == 2
        assert result.summary.valid == 2
        assert [r.row_number for r in result.rows] == [2, 3]
        assert result.rows[0].grade == "5"
        assert result.rows[0].dynamic_data["dob"].isoformat() == "2014-01-15"

    def test_partial_failure_keeps_valid_rows(self):
        data = _xlsx([
            [1, "Asha Rao", 5, "A", "asha@example.com", None, None],
            [2, "Ravi Kumar", 6, "B", None, None, None],
            [3, "Meera Iyer", 7, "C", "meera@example.com", None, None],
        ])
        result = ingest_spreadsheet(data, "upload.xlsx", FIELDS)
        assert result.success is False
        assert result.errors == [RowError(3, "Parent Email", "Parent Email is required")]
        assert [r.student_name for r in result.rows] == ["Asha Rao", "Meera Iyer"]
        assert result.summary.to_dict() == {"total": 3, "valid": 2, "invalid": 1, "skipped": 0}

    def test_sample_and_blank_rows_skipped(self):
        data = _xlsx([
            [1, "Sample Student (DELETE THIS ROW)", 5, "A", "s@example.com", None, None],
            [None, None, None, None, None, None, None],
            [2, "Asha Rao", 5, "A", "asha@example.com", None, None],
        ])
        result = ingest_spreadsheet(data, "upload.xlsx", FIELDS)
        assert result.summary.total == 1
        assert result.summary.skipped == 2
        assert result.rows[0].row_number == 4

    def test_header_error_aborts(self):
        data = _xlsx(
            [[1, "Asha Rao", 5, "A"]],
            headers=["S.No", "Student Name", "Grade", "Section"],
        )
        result = ingest_spreadsheet(data, "upload.xlsx", FIELDS)
        assert result.aborted is True
        assert result.rows == []
        assert result.summary.total == 0
        assert result.errors == [RowError(1, "Headers", "Missing required column: Parent Email")]
        assert result.to_dict()["rows"] is None

    def test_hyperlink_target_used_for_url_fields(self):
        wb = Workbook()
        ws = wb.active
        ws.title = "Registrations"
        ws.append(HEADERS)
        ws.append([1, "Asha Rao", 5, "A", "asha@example.com", None, "My project"])
        ws["G2"].hyperlink = "https://drive.google.com/file/d/abc/view"
        out = io.BytesIO()
        wb.save(out)
        result = ingest_spreadsheet(out.getvalue(), "upload.xlsx", FIELDS)
        assert result.errors == []
        assert result.rows[0].dynamic_data["project"] == "https://drive.google.com/file/d/abc/view"

    def test_hyperlink_display_text_for_other_fields(self):
        wb = Workbook()
        ws = wb.active
        ws.title = "Registrations"
        ws.append(HEADERS)
        ws.append([1, "Asha Rao", 5, "A", "asha@example.com", None, None])
        ws["E2"].hyperlink = "mailto:asha@example.com"
        out = io.BytesIO()
        wb.save(out)
        result = ingest_spreadsheet(out.getvalue(), "upload.xlsx", FIELDS)
        assert result.rows[0].dynamic_data["parent_email"] == "asha@example.com"

    def test_corrupt_workbook(self):
        result = ingest_spreadsheet(b"not a zip file", "upload.xlsx", FIELDS)
        assert result.aborted is True
        assert result.errors[0].row == 0
        assert result.errors[0].field == "File"

    def test_no_student_rows(self):
        result = ingest_spreadsheet(_xlsx([]), "upload.xlsx", FIELDS)
        assert result.success is False
        assert result.errors == [RowError(0, "File", "No student rows found in file")]


# ---------------------------------------------------------------------------
# csv ingestion
# ---------------------------------------------------------------------------

class TestIngestCsv:
    def test_valid_csv_with_bom(self):
        data = b"\xef\xbb\xbf" + _csv([
            "S.No,Student Name*,Grade*,Section,Parent Email*",
            "1,Asha Rao,5,A,asha@example.com",
        ])
        result = ingest_spreadsheet(data, "upload.csv", FIELDS)
        assert result.success is True
        assert result.rows[0].dynamic_data == {"parent_email": "asha@example.com"}

    def test_row_numbers_follow_sheet_rows(self):
        data = _csv([
            "S.No,Student Name,Grade,Section,Parent Email",
            "1,Asha Rao,5,A,asha@example.com",
            "2,Ravi Kumar,6,B,bad-email",
        ])
        result = ingest_spreadsheet(data, "upload.csv", FIELDS)
        assert result.errors == [RowError(3, "Parent Email", "Invalid email format: bad-email")]

    def test_quoted_commas(self):
        data = _csv([
            "S.No,Student Name,Grade,Section,Parent Email",
            '1,"Rao, Asha",5,A,asha@example.com',
        ])
        result = ingest_spreadsheet(data, "upload.csv", FIELDS)
        assert result.rows[0].student_name == "Rao, Asha"

    def test_not_utf8(self):
        data = "S.No,Student Name,Grade,Parent Email\n1,Zoë,5,z@example.com\n".encode("utf-16")
        result = ingest_spreadsheet(data, "upload.csv", FIELDS)
        assert result.aborted is True
        assert result.errors[0].field == "File"

    def test_empty_file(self):
        result = ingest_spreadsheet(b"", "upload.csv", FIELDS)
        assert result.aborted is True
        assert result.errors == [RowError(0, "File", "File is empty")]

    def test_unsupported_extension(self):
        result = ingest_spreadsheet(b"whatever", "upload.pdf", FIELDS)
        assert result.aborted is True
        assert "Unsupported file type" in result.errors[0].message

    def test_missing_csv_path(self, tmp_path):
        result = ingest_spreadsheet(tmp_path / "missing.csv", "missing.csv", FIELDS)
        assert result.aborted is True
        assert result.errors[0].row == 0
        assert result.errors[0].message.startswith("Could not read CSV")
