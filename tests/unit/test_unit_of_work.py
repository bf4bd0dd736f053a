"""Unit tests for registration_etl.unit_of_work: strategy behaviour with mock connections."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from registration_etl.shared import ConsistencyError
from registration_etl.unit_of_work import (
    SequentialUnitOfWork,
    Step,
    TransactionalUnitOfWork,
    UnitOfWork,
    select_unit_of_work,
)


def _recording_steps(log: list[str], fail_at: str | None = None, bad_compensation: str | None = None):
    def apply(name):
        def _apply(conn):
            if name == fail_at:
                raise RuntimeError(f"{name} exploded")
            log.append(f"apply:{name}")
            return name
        return _apply

    def compensate(name):
        def _compensate(conn):
            if name == bad_compensation:
                raise RuntimeError(f"undo {name} exploded")
            log.append(f"undo:{name}")
        return _compensate

    return [Step(n, apply(n), compensate(n)) for n in ("registrations", "batch", "payment")]


class TestSelectUnitOfWork:
    def test_base_class_is_abstract(self):
        with pytest.raises(TypeError):
            UnitOfWork()

    def test_default_is_transactional(self):
        assert isinstance(select_unit_of_work(), TransactionalUnitOfWork)

    def test_sequential(self):
        assert isinstance(select_unit_of_work(transactional=False), SequentialUnitOfWork)


class TestTransactionalUnitOfWork:
    def test_runs_steps_inside_transaction(self):
        conn = MagicMock()
        log: list[str] = []
        results = TransactionalUnitOfWork().run(conn, _recording_steps(log))
        conn.transaction.assert_called_once()
        assert results == ["registrations", "batch", "payment"]
        assert log == ["apply:registrations", "apply:batch", "apply:payment"]

    def test_failure_propagates_without_compensation(self):
        conn = MagicMock()
        log: list[str] = []
        with pytest.raises(RuntimeError):
            TransactionalUnitOfWork().run(conn, _recording_steps(log, fail_at="batch"))
        assert log == ["apply:registrations"]


class TestSequentialUnitOfWork:
    def test_success_runs_in_order(self):
        log: list[str] = []
        SequentialUnitOfWork().run(MagicMock(), _recording_steps(log))
        assert log == ["apply:registrations", "apply:batch", "apply:payment"]

    def test_failure_compensates_in_reverse(self):
        log: list[str] = []
        with pytest.raises(RuntimeError, match="payment exploded"):
            SequentialUnitOfWork().run(MagicMock(), _recording_steps(log, fail_at="payment"))
        assert log == [
            "apply:registrations",
            "apply:batch",
            "undo:batch",
            "undo:registrations",
        ]

    def test_failed_compensation_raises_consistency_error(self):
        log: list[str] = []
        with pytest.raises(ConsistencyError, match="registrations"):
            SequentialUnitOfWork().run(
                MagicMock(),
                _recording_steps(log, fail_at="payment", bad_compensation="registrations"),
            )
        assert "undo:batch" in log

    def test_step_without_compensation_is_skipped(self):
        log: list[str] = []
        steps = [
            Step("first", lambda c: log.append("apply:first")),
            Step("second", lambda c: (_ for _ in ()).throw(RuntimeError("boom"))),
        ]
        with pytest.raises(RuntimeError):
            SequentialUnitOfWork().run(MagicMock(), steps)
        assert log == ["apply:first"]

    def test_failed_step_cleans_up_only_its_own_writes(self):
        log: list[str] = []
        steps = _recording_steps(log)
        steps[1] = Step(
            "batch",
            lambda c: (_ for _ in ()).throw(RuntimeError("duplicate key")),
            compensate=lambda c: log.append("undo:batch"),
            cleanup=lambda c: log.append("cleanup:batch"),
        )
        with pytest.raises(RuntimeError, match="duplicate key"):
            SequentialUnitOfWork().run(MagicMock(), steps)
        assert log == ["apply:registrations", "cleanup:batch", "undo:registrations"]

    def test_failed_cleanup_raises_consistency_error(self):
        def bad_cleanup(conn):
            raise RuntimeError("cleanup exploded")

        steps = [
            Step(
                "registrations",
                lambda c: (_ for _ in ()).throw(RuntimeError("boom")),
                cleanup=bad_cleanup,
            ),
        ]
        with pytest.raises(ConsistencyError, match="registrations: cleanup exploded"):
            SequentialUnitOfWork().run(MagicMock(), steps)
