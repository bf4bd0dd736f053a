"""Integration tests for batch / payment / registration status transitions."""

from __future__ import annotations

import psycopg
import pytest

from registration_etl import batch_lifecycle
from registration_etl.batch_assembler import submit_bulk_registration
from registration_etl.batch_lifecycle import (
    cancel_batch,
    delete_batch,
    mark_online_payment_completed,
    mark_online_payment_failed,
    reject_offline_payment,
    submit_batch,
    submit_offline_payment,
    verify_offline_payment,
)
from registration_etl.shared import ConsistencyError, PreconditionError
from registration_etl.store import fetch_batch, fetch_payment_for_batch, snapshot_batch
from registration_etl.unit_of_work import SequentialUnitOfWork

from builders import count, student_rows, upload_bytes


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _registration_statuses(conn: psycopg.Connection, batch_reference: str) -> set[str]:
    rows = conn.execute(
        "SELECT DISTINCT status FROM registration WHERE batch_reference = %s",
        (batch_reference,),
    ).fetchall()
    return {r[0] for r in rows}


def _state(conn: psycopg.Connection, batch_reference: str) -> tuple:
    """Everything a transition could touch, for before/after comparison."""
    batch = fetch_batch(conn, batch_reference)
    payment = fetch_payment_for_batch(conn, batch_reference)
    regs = conn.execute(
        """
        SELECT registration_id, status, updated_at FROM registration
        WHERE batch_reference = %s ORDER BY registration_id
        """,
        (batch_reference,),
    ).fetchall()
    return batch, payment, regs


@pytest.fixture
def batch_ref(seeded):
    """A submitted online batch of three students, committed."""
    conn, event, school = seeded
    result = submit_bulk_registration(
        conn, event, school,
        upload=upload_bytes(student_rows(3)), filename="students.xlsx",
    )
    conn.commit()
    return conn, result.batch.batch_reference


@pytest.fixture
def offline_ref(batch_ref):
    conn, ref = batch_ref
    submit_offline_payment(
        conn, ref,
        transaction_reference="UTR-998877",
        bank_name="State Bank",
        receipt_url="https://drive.google.com/file/d/receipt/view",
        paid_on="2025-06-10",
    )
    conn.commit()
    return conn, ref


# ---------------------------------------------------------------------------
# submit
# ---------------------------------------------------------------------------

class TestSubmitBatch:
    def test_draft_to_submitted(self, seeded):
        conn, event, school = seeded
        result = submit_bulk_registration(
            conn, event, school,
            upload=upload_bytes(student_rows(1)), filename="students.xlsx",
            submit=False,
        )
        ref = result.batch.batch_reference
        outcome = submit_batch(conn, ref)
        conn.commit()
        assert outcome.batch_status == "submitted"
        assert fetch_batch(conn, ref)["status"] == "submitted"

    def test_already_submitted_rejected(self, batch_ref):
        conn, ref = batch_ref
        with pytest.raises(PreconditionError, match="cannot be submitted from status 'submitted'"):
            submit_batch(conn, ref)

    def test_unknown_batch(self, db_conn):
        conn, _ = db_conn
        with pytest.raises(PreconditionError, match="not found"):
            submit_batch(conn, "BATCH-NOPE")


# ---------------------------------------------------------------------------
# Online payment
# ---------------------------------------------------------------------------

class TestOnlinePayment:
    def test_completed_confirms_everything(self, batch_ref):
        conn, ref = batch_ref
        outcome = mark_online_payment_completed(
            conn, ref, gateway_order_id="order_123", gateway_payment_id="pay_456",
        )
        conn.commit()

        assert outcome.registrations_affected == 3
        batch = fetch_batch(conn, ref)
        assert batch["status"] == "confirmed"
        assert batch["payment_status"] == "completed"
        payment = fetch_payment_for_batch(conn, ref)
        assert payment["status"] == "completed"
        assert payment["gateway_order_id"] == "order_123"
        assert payment["gateway_payment_id"] == "pay_456"
        assert payment["paid_at"] is not None
        assert _registration_statuses(conn, ref) == {"confirmed"}

    def test_second_completion_rejected(self, batch_ref):
        conn, ref = batch_ref
        mark_online_payment_completed(conn, ref)
        conn.commit()
        with pytest.raises(PreconditionError, match="Payment already completed"):
            mark_online_payment_completed(conn, ref)

    def test_failed_leaves_registrations_registered(self, batch_ref):
        conn, ref = batch_ref
        outcome = mark_online_payment_failed(conn, ref, reason="card declined")
        conn.commit()
        assert outcome.payment_status == "failed"
        assert fetch_batch(conn, ref)["payment_status"] == "failed"
        assert fetch_batch(conn, ref)["status"] == "submitted"
        assert fetch_payment_for_batch(conn, ref)["verification_notes"] == "card declined"
        assert _registration_statuses(conn, ref) == {"registered"}

    def test_failed_then_offline_resubmission(self, batch_ref):
        conn, ref = batch_ref
        mark_online_payment_failed(conn, ref)
        conn.commit()
        outcome = submit_offline_payment(conn, ref, transaction_reference="UTR-1")
        conn.commit()
        assert outcome.payment_status == "pending_verification"
        assert fetch_batch(conn, ref)["payment_mode"] == "offline"

    def test_online_completion_on_offline_batch_rejected(self, offline_ref):
        conn, ref = offline_ref
        with pytest.raises(PreconditionError, match="not an online payment"):
            mark_online_payment_completed(conn, ref)


# ---------------------------------------------------------------------------
# Offline payment
# ---------------------------------------------------------------------------

class TestOfflinePayment:
    def test_submission_records_details(self, offline_ref):
        conn, ref = offline_ref
        batch = fetch_batch(conn, ref)
        payment = fetch_payment_for_batch(conn, ref)
        assert batch["payment_mode"] == "offline"
        assert batch["payment_status"] == "pending_verification"
        assert payment["status"] == "pending_verification"
        assert payment["offline_details"] == {
            "transaction_reference": "UTR-998877",
            "bank_name": "State Bank",
            "receipt_url": "https://drive.google.com/file/d/receipt/view",
            "paid_on": "2025-06-10",
        }

    def test_submission_requires_transaction_reference(self, batch_ref):
        conn, ref = batch_ref
        with pytest.raises(PreconditionError, match="transaction reference is required"):
            submit_offline_payment(conn, ref, transaction_reference="  ")

    def test_verify_confirms_and_stamps(self, offline_ref):
        conn, ref = offline_ref
        outcome = verify_offline_payment(conn, ref, "admin-7", "Matched bank statement")
        conn.commit()

        assert outcome.registrations_affected == 3
        batch = fetch_batch(conn, ref)
        payment = fetch_payment_for_batch(conn, ref)
        assert batch["status"] == "confirmed"
        assert batch["payment_status"] == "completed"
        for row in (batch, payment):
            assert row["verified_by"] == "admin-7"
            assert row["verified_at"] is not None
            assert row["verification_notes"] == "Matched bank statement"
        assert payment["status"] == "completed"
        assert _registration_statuses(conn, ref) == {"confirmed"}

    def test_verify_twice_rejected(self, offline_ref):
        conn, ref = offline_ref
        verify_offline_payment(conn, ref, "admin-7")
        conn.commit()
        with pytest.raises(PreconditionError, match="already verified"):
            verify_offline_payment(conn, ref, "admin-7")

    def test_verify_online_batch_rejected(self, batch_ref):
        conn, ref = batch_ref
        with pytest.raises(PreconditionError, match="not an offline payment"):
            verify_offline_payment(conn, ref, "admin-7")

    def test_reject_marks_failed_and_keeps_batch_status(self, offline_ref):
        conn, ref = offline_ref
        outcome = reject_offline_payment(conn, ref, "admin-7", "Amount mismatch")
        conn.commit()

        assert outcome.payment_status == "failed"
        batch = fetch_batch(conn, ref)
        payment = fetch_payment_for_batch(conn, ref)
        assert batch["status"] == "submitted"
        assert batch["payment_status"] == "failed"
        assert payment["status"] == "failed"
        assert batch["verification_notes"] == "REJECTED: Amount mismatch"
        assert payment["verified_by"] == "admin-7"
        assert _registration_statuses(conn, ref) == {"registered"}

    def test_reject_requires_reason(self, offline_ref):
        conn, ref = offline_ref
        with pytest.raises(PreconditionError, match="rejection reason is required"):
            reject_offline_payment(conn, ref, "admin-7", "")

    def test_resubmit_after_rejection(self, offline_ref):
        conn, ref = offline_ref
        reject_offline_payment(conn, ref, "admin-7", "Blurry receipt")
        conn.commit()
        submit_offline_payment(conn, ref, transaction_reference="UTR-2")
        conn.commit()
        assert fetch_payment_for_batch(conn, ref)["status"] == "pending_verification"


# ---------------------------------------------------------------------------
# cancel / delete
# ---------------------------------------------------------------------------

class TestCancel:
    def test_cancel_flags_batch_and_registrations(self, batch_ref):
        conn, ref = batch_ref
        outcome = cancel_batch(conn, ref, reason="School withdrew")
        conn.commit()

        assert outcome.registrations_affected == 3
        batch = fetch_batch(conn, ref)
        assert batch["status"] == "cancelled"
        assert batch["is_cancelled"] is True
        assert batch["cancelled_at"] is not None
        assert batch["cancellation_reason"] == "School withdrew"
        assert _registration_statuses(conn, ref) == {"cancelled"}
        assert count(conn, "registration") == 3

    def test_cancel_twice_rejected(self, batch_ref):
        conn, ref = batch_ref
        cancel_batch(conn, ref)
        conn.commit()
        with pytest.raises(PreconditionError, match="is cancelled"):
            cancel_batch(conn, ref)

    def test_cancel_after_completed_payment_rejected(self, batch_ref):
        conn, ref = batch_ref
        mark_online_payment_completed(conn, ref)
        conn.commit()
        with pytest.raises(PreconditionError, match="contact support for refunds"):
            cancel_batch(conn, ref)
        assert _registration_statuses(conn, ref) == {"confirmed"}

    def test_cancelled_batch_refuses_offline_submission(self, batch_ref):
        conn, ref = batch_ref
        cancel_batch(conn, ref)
        conn.commit()
        with pytest.raises(PreconditionError, match="is cancelled"):
            submit_offline_payment(conn, ref, transaction_reference="UTR-3")


class TestDelete:
    def test_delete_removes_all_rows(self, batch_ref):
        conn, ref = batch_ref
        outcome = delete_batch(conn, ref)
        conn.commit()
        assert outcome.registrations_affected == 3
        assert count(conn, "payment") == 0
        assert count(conn, "batch") == 0
        assert count(conn, "registration") == 0

    def test_delete_with_completed_payment_mutates_nothing(self, batch_ref):
        conn, ref = batch_ref
        mark_online_payment_completed(conn, ref)
        conn.commit()
        before = _state(conn, ref)

        with pytest.raises(PreconditionError, match="Cannot delete batch with completed payment"):
            delete_batch(conn, ref)
        conn.rollback()

        assert _state(conn, ref) == before
        assert count(conn, "registration") == 3

    def test_delete_unknown_batch(self, db_conn):
        conn, _ = db_conn
        with pytest.raises(PreconditionError, match="not found"):
            delete_batch(conn, "BATCH-NOPE")

    def test_snapshot_locks_batch_row(self, db_conn, batch_ref):
        _, dsn = db_conn
        conn, ref = batch_ref
        snapshot_batch(conn, ref)
        with psycopg.connect(dsn) as other:
            with pytest.raises(psycopg.errors.LockNotAvailable):
                other.execute(
                    "SELECT 1 FROM batch WHERE batch_reference = %s FOR UPDATE NOWAIT",
                    (ref,),
                )
        conn.rollback()

    def test_payment_completed_after_snapshot_aborts_delete(self, batch_ref, monkeypatch):
        conn, ref = batch_ref
        stale = snapshot_batch(conn, ref)
        mark_online_payment_completed(conn, ref)
        conn.commit()
        before = _state(conn, ref)

        monkeypatch.setattr(batch_lifecycle, "snapshot_batch", lambda c, r: stale)
        with pytest.raises(PreconditionError, match="Cannot delete batch with completed payment"):
            delete_batch(conn, ref)
        conn.rollback()

        assert _state(conn, ref) == before
        assert fetch_payment_for_batch(conn, ref)["status"] == "completed"


# ---------------------------------------------------------------------------
# Sequential strategy (autocommit connection)
# ---------------------------------------------------------------------------

class TestSequentialStrategy:
    def test_transitions_work_without_transactions(self, batch_ref):
        conn, ref = batch_ref
        conn.autocommit = True
        mark_online_payment_completed(conn, ref, uow=SequentialUnitOfWork())
        assert fetch_batch(conn, ref)["status"] == "confirmed"
        assert _registration_statuses(conn, ref) == {"confirmed"}

    def test_failed_delete_restores_payment_and_batch(self, batch_ref, monkeypatch):
        conn, ref = batch_ref
        conn.autocommit = True
        before_batch = fetch_batch(conn, ref)
        before_payment = fetch_payment_for_batch(conn, ref)

        def boom(c, ids):
            raise RuntimeError("registration store unavailable")

        monkeypatch.setattr(batch_lifecycle, "delete_registrations", boom)
        with pytest.raises(RuntimeError, match="registration store unavailable"):
            delete_batch(conn, ref, uow=SequentialUnitOfWork())

        assert fetch_batch(conn, ref) == before_batch
        assert fetch_payment_for_batch(conn, ref) == before_payment
        assert count(conn, "registration") == 3

    def test_failed_confirmation_restores_statuses(self, batch_ref, monkeypatch):
        conn, ref = batch_ref
        conn.autocommit = True
        real_update_batch = batch_lifecycle.update_batch
        calls = []

        def flaky_update_batch(c, batch_reference, **changes):
            calls.append(changes)
            if len(calls) == 1:
                raise RuntimeError("batch write timed out")
            return real_update_batch(c, batch_reference, **changes)

        monkeypatch.setattr(batch_lifecycle, "update_batch", flaky_update_batch)
        with pytest.raises(RuntimeError, match="batch write timed out"):
            mark_online_payment_completed(conn, ref, uow=SequentialUnitOfWork())

        assert fetch_payment_for_batch(conn, ref)["status"] == "pending"
        batch = fetch_batch(conn, ref)
        assert batch["status"] == "submitted"
        assert batch["payment_status"] == "pending"
        assert _registration_statuses(conn, ref) == {"registered"}

    def test_failed_compensation_raises_consistency_error(self, batch_ref, monkeypatch):
        conn, ref = batch_ref
        conn.autocommit = True

        def boom(*args, **kwargs):
            raise RuntimeError("registration store unavailable")

        real_update_payment = batch_lifecycle.update_payment
        payment_writes = []

        def update_payment_once(c, batch_reference, **changes):
            payment_writes.append(changes)
            if len(payment_writes) > 1:
                raise RuntimeError("payment store unavailable")
            return real_update_payment(c, batch_reference, **changes)

        monkeypatch.setattr(batch_lifecycle, "update_payment", update_payment_once)
        monkeypatch.setattr(batch_lifecycle, "_set_registration_status", boom)
        with pytest.raises(ConsistencyError, match="payment: payment store unavailable"):
            mark_online_payment_completed(conn, ref, uow=SequentialUnitOfWork())

        assert fetch_payment_for_batch(conn, ref)["status"] == "completed"
        assert fetch_batch(conn, ref)["payment_status"] == "pending"
