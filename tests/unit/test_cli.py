"""Unit tests for registration_etl.cli: flag handling that needs no database."""

from __future__ import annotations

from pathlib import Path

from click.testing import CliRunner
from openpyxl import load_workbook

from registration_etl.cli import build_run_report, main, parse_student_fields
from registration_etl.shared import RunCounters

EXAMPLE_EVENT = Path(__file__).parent.parent.parent / "config" / "events" / "example_event.yml"


class TestTemplateFromYaml:
    def test_writes_xlsx_without_db(self, tmp_path):
        out = tmp_path / "template.xlsx"
        result = CliRunner().invoke(main, [
            "--mode", "template",
            "--event-config", str(EXAMPLE_EVENT),
            "--output", str(out),
        ], env={"REGISTRATION_DB_DSN": ""})
        assert result.exit_code == 0, result.output
        wb = load_workbook(out)
        assert "Registrations" in wb.sheetnames

    def test_writes_csv(self, tmp_path):
        out = tmp_path / "template.csv"
        result = CliRunner().invoke(main, [
            "--mode", "template",
            "--event-config", str(EXAMPLE_EVENT),
            "--output", str(out),
            "--format", "csv",
        ])
        assert result.exit_code == 0, result.output
        assert out.read_bytes().startswith(b"\xef\xbb\xbf")

    def test_invalid_yaml_is_fatal(self, tmp_path):
        bad = tmp_path / "bad.yml"
        bad.write_text("event_ref: x\n", encoding="utf-8")
        result = CliRunner().invoke(main, [
            "--mode", "template",
            "--event-config", str(bad),
            "--output", str(tmp_path / "t.xlsx"),
        ])
        assert result.exit_code == 1
        assert "FATAL" in result.output


class TestFlagValidation:
    def test_db_dsn_required(self):
        result = CliRunner().invoke(main, ["--mode", "results_clear", "--event-ref", "e"],
                                    env={"REGISTRATION_DB_DSN": ""})
        assert result.exit_code == 1
        assert "--db-dsn" in result.output

    def test_lifecycle_mode_requires_batch_ref(self):
        result = CliRunner().invoke(main, ["--mode", "delete", "--db-dsn", "dbname=unused"])
        assert result.exit_code == 1
        assert "delete mode requires: --batch-ref" in result.output

    def test_reject_requires_admin_and_reason(self):
        result = CliRunner().invoke(main, [
            "--mode", "reject_offline", "--db-dsn", "dbname=unused", "--batch-ref", "B",
        ])
        assert result.exit_code == 1
        assert "--admin-id" in result.output
        assert "--reason" in result.output

    def test_unknown_mode(self):
        result = CliRunner().invoke(main, ["--mode", "explode"])
        assert result.exit_code == 2

    def test_update_student_requires_registration_and_fields(self):
        result = CliRunner().invoke(main, [
            "--mode", "update_student", "--db-dsn", "dbname=unused", "--batch-ref", "B",
        ])
        assert result.exit_code == 1
        assert "update_student mode requires: --registration-id, --student-field" in result.output

    def test_malformed_student_field_is_fatal(self):
        result = CliRunner().invoke(main, [
            "--mode", "add_student", "--db-dsn", "dbname=unused", "--batch-ref", "B",
            "--student-field", "=7",
        ])
        assert result.exit_code == 1
        assert "--student-field expects LABEL=VALUE, got '=7'" in result.output

    def test_results_set_requires_registration_id(self):
        result = CliRunner().invoke(main, [
            "--mode", "results_set", "--db-dsn", "dbname=unused", "--event-ref", "e",
        ])
        assert result.exit_code == 1
        assert "results_set mode requires: --registration-id" in result.output


class TestParseStudentFields:
    def test_splits_on_first_equals(self):
        assert parse_student_fields("r", ("Student Name=Asha", "Notes=a=b", " Grade =5")) == {
            "Student Name": "Asha",
            "Notes": "a=b",
            "Grade": "5",
        }


class TestBuildRunReport:
    def test_includes_counters_and_warnings(self):
        ctrs = RunCounters(rows_read=12, rows_valid=10, warnings=["batch B has no payment"])
        report = build_run_report("reconcile", ctrs, dry_run=True)
        assert "Registration ETL Report (reconcile)" in report
        assert "dry_run: True" in report
        assert "Rows read:                 12" in report
        assert "batch B has no payment" in report
