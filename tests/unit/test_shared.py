"""Unit tests for registration_etl.shared."""

from __future__ import annotations

import csv
import json
import re

from registration_etl.shared import (
    HeaderError,
    RejectWriter,
    RowError,
    RunCounters,
    format_errors,
    new_batch_reference,
    new_registration_id,
    write_run_report,
)


class TestRowError:
    def test_dict_round_trip(self):
        err = RowError(4, "Parent Email", "Parent Email is required")
        assert RowError.from_dict(err.to_dict()) == err


class TestFormatErrors:
    def test_groups_by_row(self):
        text = format_errors([
            RowError(3, "Grade", "Grade is required"),
            RowError(2, "Age", "Invalid number: x"),
            RowError(3, "Age", "Value must be at least 5"),
            RowError(0, "File", "No student rows found in file"),
        ])
        assert text.splitlines() == [
            "File: File: No student rows found in file",
            "Row 2: Age: Invalid number: x",
            "Row 3: Grade: Grade is required; Age: Value must be at least 5",
        ]


class TestHeaderError:
    def test_message_joins_errors(self):
        exc = HeaderError([
            RowError(1, "Headers", "Missing required column: S.No"),
            RowError(1, "Headers", "Missing required column: Grade"),
        ])
        assert str(exc) == "Missing required column: S.No; Missing required column: Grade"


class TestReferences:
    def test_format(self):
        assert re.fullmatch(r"BATCH-[0-9A-Z]+-[0-9A-Z]{5}", new_batch_reference())
        assert re.fullmatch(r"REG-[0-9A-Z]+-[0-9A-Z]{8}", new_registration_id())

    def test_unique(self):
        ids = {new_registration_id() for _ in range(500)}
        assert len(ids) == 500


class TestRejectWriter:
    def test_lazy_open(self, tmp_path):
        writer = RejectWriter(tmp_path / "rejects.csv")
        writer.close()
        assert not writer.opened
        assert not (tmp_path / "rejects.csv").exists()

    def test_write_errors(self, tmp_path):
        path = tmp_path / "sub" / "rejects.csv"
        writer = RejectWriter(path)
        n = writer.write_errors([
            RowError(2, "Grade", "Grade is required"),
            RowError(5, "Age", "Invalid number: x"),
        ])
        writer.close()
        assert n == 2
        with path.open(newline="", encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert rows[0] == {"row": "2", "field": "Grade", "_reject_reason": "Grade is required"}
        assert len(rows) == 2


class TestRunCounters:
    def test_warnings_truncated_to_50(self):
        ctrs = RunCounters(warnings=[f"w{i}" for i in range(100)])
        assert len(ctrs.to_dict()["warnings"]) == 50

    def test_write_run_report(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        ctrs = RunCounters(rows_read=3, batches_created=1)
        path = write_run_report("run-1", "2025-01-01T00:00:00", "upload", False, {"file": "a.xlsx"}, ctrs)
        report = json.loads(path.read_text())
        assert report["mode"] == "upload"
        assert report["file"] == "a.xlsx"
        assert report["counters"]["rows_read"] == 3
