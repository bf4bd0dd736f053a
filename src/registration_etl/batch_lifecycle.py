"""registration_etl.batch_lifecycle

State machine for Batch / Payment / Registration status.

Batch status:      draft -> submitted -> {confirmed | cancelled}
Payment overlay:   pending -> {completed | failed | pending_verification}
                   pending_verification -> {completed | failed}
                   failed -> pending_verification  (offline resubmission)

Operations:
  submit_batch                      draft -> submitted
  mark_online_payment_completed     online: payment completed, batch
                                    confirmed, registrations confirmed
  mark_online_payment_failed        online: payment failed
  submit_offline_payment            payment_mode -> offline,
                                    payment -> pending_verification
  verify_offline_payment            offline: completed + verifier stamps on
                                    Batch and Payment, cascade confirmation
  reject_offline_payment            offline: failed + rejection stamps
  cancel_batch                      soft cancel while payment not completed
  delete_batch                      hard delete while payment not completed

Pre-payment editing, refused once payment is completed or the batch is
cancelled.  Adding or removing a student re-prices the batch and mirrors
the new total onto the Payment amount in the same UnitOfWork:
  add_student, update_student, remove_student, batch_editable_status

Every precondition is checked before the first write; failures raise
PreconditionError and mutate nothing.  Writes touching more than one table
go through a UnitOfWork.  Caller manages the outer transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

import psycopg

from registration_etl.event_config import EventConfig, FieldDefinition, fetch_event_config
from registration_etl.field_types import from_json_value, to_display_value, to_json_value
from registration_etl.normalize import normalize_header
from registration_etl.pricing import PricingResult, compute_total
from registration_etl.schema_validator import (
    GRADE_HEADERS,
    SECTION_HEADERS,
    SKIP_BLANK,
    SKIP_SAMPLE,
    STUDENT_NAME_HEADERS,
    CleanRow,
    validate_row,
)
from registration_etl.shared import (
    PreconditionError,
    RowError,
    StudentValidationError,
    new_registration_id,
)
from registration_etl.store import (
    delete_batch_row,
    delete_payment_row,
    delete_registrations,
    fetch_batch,
    fetch_payment_for_batch,
    fetch_registrations_for_batch,
    insert_registrations,
    insert_row,
    insert_rows,
    snapshot_batch,
    update_batch,
    update_payment,
    update_registration,
)
from registration_etl.unit_of_work import Step, TransactionalUnitOfWork, UnitOfWork

log = logging.getLogger(__name__)

REJECTION_PREFIX = "REJECTED: "

_PAID_DELETE_MESSAGE = (
    "Cannot delete batch with completed payment. Please contact support for refunds."
)


@dataclass
class TransitionResult:
    batch_reference: str
    batch_status: str
    payment_status: str
    registrations_affected: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_reference": self.batch_reference,
            "batch_status": self.batch_status,
            "payment_status": self.payment_status,
            "registrations_affected": self.registrations_affected,
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _load(
    conn: psycopg.Connection,
    batch_reference: str,
) -> tuple[dict[str, Any], dict[str, Any]]:
    batch = fetch_batch(conn, batch_reference, for_update=not conn.autocommit)
    if batch is None:
        raise PreconditionError(f"Batch {batch_reference} not found")
    payment = fetch_payment_for_batch(conn, batch_reference)
    if payment is None:
        raise PreconditionError(f"Batch {batch_reference} has no payment record")
    return batch, payment


def _require_not_cancelled(batch: dict[str, Any]) -> None:
    if batch["is_cancelled"] or batch["status"] == "cancelled":
        raise PreconditionError(f"Batch {batch['batch_reference']} is cancelled")


def _require_offline(batch: dict[str, Any], payment: dict[str, Any]) -> None:
    if batch["payment_mode"] != "offline" or payment["payment_mode"] != "offline":
        raise PreconditionError("This is not an offline payment")


def _registration_ids_in(
    conn: psycopg.Connection,
    batch_reference: str,
    statuses: tuple[str, ...],
) -> list[str]:
    rows = conn.execute(
        """
        SELECT registration_id FROM registration
        WHERE batch_reference = %s AND status = ANY(%s)
        ORDER BY registration_id
        """,
        (batch_reference, list(statuses)),
    ).fetchall()
    return [str(r[0]) for r in rows]


def _set_registration_status(
    conn: psycopg.Connection,
    registration_ids: list[str],
    status: str,
) -> int:
    if not registration_ids:
        return 0
    return conn.execute(
        """
        UPDATE registration SET status = %s, updated_at = now()
        WHERE registration_id = ANY(%s)
        """,
        (status, registration_ids),
    ).rowcount


def _restore(row: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
    return {k: row[k] for k in changes}


def _status_steps(
    batch: dict[str, Any],
    payment: dict[str, Any],
    batch_changes: dict[str, Any],
    payment_changes: dict[str, Any],
    registration_ids: list[str] | None = None,
    registration_from: str | None = None,
    registration_to: str | None = None,
) -> list[Step]:
    """Payment -> Batch -> Registrations update steps with restoring compensations."""
    ref = batch["batch_reference"]
    batch_before = _restore(batch, batch_changes)
    payment_before = _restore(payment, payment_changes)
    steps = []
    if payment_changes:
        steps.append(Step(
            "payment",
            apply=lambda c: update_payment(c, ref, **payment_changes),
            compensate=lambda c: update_payment(c, ref, **payment_before),
        ))
    if batch_changes:
        steps.append(Step(
            "batch",
            apply=lambda c: update_batch(c, ref, **batch_changes),
            compensate=lambda c: update_batch(c, ref, **batch_before),
        ))
    if registration_ids:
        steps.append(Step(
            "registrations",
            apply=lambda c: _set_registration_status(c, registration_ids, registration_to),
            compensate=lambda c: _set_registration_status(c, registration_ids, registration_from),
        ))
    return steps


# ---------------------------------------------------------------------------
# submit
# ---------------------------------------------------------------------------

def submit_batch(conn: psycopg.Connection, batch_reference: str) -> TransitionResult:
    batch, payment = _load(conn, batch_reference)
    _require_not_cancelled(batch)
    if batch["status"] != "draft":
        raise PreconditionError(
            f"Batch {batch_reference} cannot be submitted from status '{batch['status']}'"
        )
    update_batch(conn, batch_reference, status="submitted")
    log.info("Batch %s submitted", batch_reference)
    return TransitionResult(batch_reference, "submitted", batch["payment_status"])


# ---------------------------------------------------------------------------
# Online payment
# ---------------------------------------------------------------------------

def mark_online_payment_completed(
    conn: psycopg.Connection,
    batch_reference: str,
    *,
    gateway_order_id: str | None = None,
    gateway_payment_id: str | None = None,
    uow: UnitOfWork | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    now = now or _utcnow()
    batch, payment = _load(conn, batch_reference)
    _require_not_cancelled(batch)
    if batch["payment_mode"] != "online":
        raise PreconditionError("This is not an online payment")
    if batch["payment_status"] == "completed":
        raise PreconditionError("Payment already completed")
    if batch["payment_status"] != "pending":
        raise PreconditionError(
            f"Online payment cannot complete from status '{batch['payment_status']}'"
        )
    if batch["status"] not in ("draft", "submitted"):
        raise PreconditionError(
            f"Batch {batch_reference} cannot be confirmed from status '{batch['status']}'"
        )

    to_confirm = _registration_ids_in(conn, batch_reference, ("registered",))
    payment_changes = {"status": "completed", "paid_at": now}
    if gateway_order_id is not None:
        payment_changes["gateway_order_id"] = gateway_order_id
    if gateway_payment_id is not None:
        payment_changes["gateway_payment_id"] = gateway_payment_id
    steps = _status_steps(
        batch, payment,
        batch_changes={"payment_status": "completed", "status": "confirmed"},
        payment_changes=payment_changes,
        registration_ids=to_confirm,
        registration_from="registered",
        registration_to="confirmed",
    )
    (uow or TransactionalUnitOfWork()).run(conn, steps)
    log.info("Batch %s online payment completed; %d registration(s) confirmed",
             batch_reference, len(to_confirm))
    return TransitionResult(batch_reference, "confirmed", "completed", len(to_confirm))


def mark_online_payment_failed(
    conn: psycopg.Connection,
    batch_reference: str,
    *,
    reason: str | None = None,
    uow: UnitOfWork | None = None,
) -> TransitionResult:
    batch, payment = _load(conn, batch_reference)
    if batch["payment_mode"] != "online":
        raise PreconditionError("This is not an online payment")
    if batch["payment_status"] != "pending":
        raise PreconditionError(
            f"Online payment cannot fail from status '{batch['payment_status']}'"
        )
    payment_changes: dict[str, Any] = {"status": "failed"}
    if reason:
        payment_changes["verification_notes"] = reason
    steps = _status_steps(
        batch, payment,
        batch_changes={"payment_status": "failed"},
        payment_changes=payment_changes,
    )
    (uow or TransactionalUnitOfWork()).run(conn, steps)
    log.info("Batch %s online payment failed: %s", batch_reference, reason or "-")
    return TransitionResult(batch_reference, batch["status"], "failed")


# ---------------------------------------------------------------------------
# Offline payment
# ---------------------------------------------------------------------------

def submit_offline_payment(
    conn: psycopg.Connection,
    batch_reference: str,
    *,
    transaction_reference: str,
    bank_name: str | None = None,
    receipt_url: str | None = None,
    paid_on: str | None = None,
    uow: UnitOfWork | None = None,
) -> TransitionResult:
    """Record offline payment proof and queue it for admin verification."""
    if not (transaction_reference or "").strip():
        raise PreconditionError("A transaction reference is required for offline payment")
    batch, payment = _load(conn, batch_reference)
    _require_not_cancelled(batch)
    if batch["payment_status"] not in ("pending", "failed"):
        raise PreconditionError(
            f"Offline payment cannot be submitted from status '{batch['payment_status']}'"
        )

    details = {
        "transaction_reference": transaction_reference.strip(),
        "bank_name": bank_name,
        "receipt_url": receipt_url,
        "paid_on": paid_on,
    }
    batch_changes: dict[str, Any] = {
        "payment_mode": "offline",
        "payment_status": "pending_verification",
    }
    if batch["status"] == "draft":
        batch_changes["status"] = "submitted"
    steps = _status_steps(
        batch, payment,
        batch_changes=batch_changes,
        payment_changes={
            "payment_mode": "offline",
            "status": "pending_verification",
            "offline_details": details,
        },
    )
    (uow or TransactionalUnitOfWork()).run(conn, steps)
    log.info("Batch %s offline payment submitted (txn %s)",
             batch_reference, details["transaction_reference"])
    return TransitionResult(
        batch_reference, batch_changes.get("status", batch["status"]), "pending_verification",
    )


def verify_offline_payment(
    conn: psycopg.Connection,
    batch_reference: str,
    admin_id: str,
    notes: str | None = None,
    *,
    uow: UnitOfWork | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    now = now or _utcnow()
    batch, payment = _load(conn, batch_reference)
    _require_offline(batch, payment)
    if batch["payment_status"] == "completed":
        raise PreconditionError("Payment already verified")
    if batch["payment_status"] not in ("pending", "pending_verification"):
        raise PreconditionError(
            f"Offline payment cannot be verified from status '{batch['payment_status']}'"
        )
    _require_not_cancelled(batch)

    stamps = {"verified_by": admin_id, "verified_at": now, "verification_notes": notes}
    to_confirm = _registration_ids_in(conn, batch_reference, ("registered",))
    steps = _status_steps(
        batch, payment,
        batch_changes={"payment_status": "completed", "status": "confirmed", **stamps},
        payment_changes={"status": "completed", "paid_at": now, **stamps},
        registration_ids=to_confirm,
        registration_from="registered",
        registration_to="confirmed",
    )
    (uow or TransactionalUnitOfWork()).run(conn, steps)
    log.info("Batch %s offline payment verified by %s; %d registration(s) confirmed",
             batch_reference, admin_id, len(to_confirm))
    return TransitionResult(batch_reference, "confirmed", "completed", len(to_confirm))


def reject_offline_payment(
    conn: psycopg.Connection,
    batch_reference: str,
    admin_id: str,
    reason: str,
    *,
    uow: UnitOfWork | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    now = now or _utcnow()
    if not (reason or "").strip():
        raise PreconditionError("A rejection reason is required")
    batch, payment = _load(conn, batch_reference)
    _require_offline(batch, payment)
    if batch["payment_status"] == "completed":
        raise PreconditionError("Payment already verified")
    if batch["payment_status"] not in ("pending", "pending_verification"):
        raise PreconditionError(
            f"Offline payment cannot be rejected from status '{batch['payment_status']}'"
        )

    stamps = {
        "verified_by": admin_id,
        "verified_at": now,
        "verification_notes": REJECTION_PREFIX + reason.strip(),
    }
    steps = _status_steps(
        batch, payment,
        batch_changes={"payment_status": "failed", **stamps},
        payment_changes={"status": "failed", **stamps},
    )
    (uow or TransactionalUnitOfWork()).run(conn, steps)
    log.info("Batch %s offline payment rejected by %s: %s",
             batch_reference, admin_id, reason.strip())
    return TransitionResult(batch_reference, batch["status"], "failed")


# ---------------------------------------------------------------------------
# cancel / delete
# ---------------------------------------------------------------------------

def cancel_batch(
    conn: psycopg.Connection,
    batch_reference: str,
    reason: str | None = None,
    *,
    uow: UnitOfWork | None = None,
    now: datetime | None = None,
) -> TransitionResult:
    """Soft cancel: flag the batch and cancel its live registrations."""
    now = now or _utcnow()
    batch, payment = _load(conn, batch_reference)
    if batch["payment_status"] == "completed" or payment["status"] == "completed":
        raise PreconditionError(
            "Cannot cancel batch with completed payment. Please contact support for refunds."
        )
    _require_not_cancelled(batch)

    # Each registration is restored to its own prior status.
    prior = {
        str(r[0]): r[1]
        for r in conn.execute(
            """
            SELECT registration_id, status FROM registration
            WHERE batch_reference = %s AND status IN ('registered', 'confirmed')
            """,
            (batch_reference,),
        ).fetchall()
    }
    to_cancel = sorted(prior)
    steps = _status_steps(
        batch, payment,
        batch_changes={
            "status": "cancelled",
            "is_cancelled": True,
            "cancelled_at": now,
            "cancellation_reason": reason,
        },
        payment_changes={},
    )
    if to_cancel:
        steps.append(Step(
            "registrations",
            apply=lambda c: _set_registration_status(c, to_cancel, "cancelled"),
            compensate=lambda c: [
                _set_registration_status(c, [rid], status) for rid, status in prior.items()
            ],
        ))
    (uow or TransactionalUnitOfWork()).run(conn, steps)
    log.info("Batch %s cancelled (%d registration(s)): %s",
             batch_reference, len(to_cancel), reason or "-")
    return TransitionResult(batch_reference, "cancelled", batch["payment_status"], len(to_cancel))


def delete_batch(
    conn: psycopg.Connection,
    batch_reference: str,
    *,
    uow: UnitOfWork | None = None,
) -> TransitionResult:
    """Hard delete Payment -> Batch -> Registrations.

    Refused while any payment for the batch is completed.  The snapshot
    locks the batch row, and each delete re-checks the payment status, so a
    payment completed concurrently aborts the delete.  The snapshot also
    lets the sequential strategy re-insert everything if a later step fails.
    """
    snap = snapshot_batch(conn, batch_reference)
    if snap is None:
        raise PreconditionError(f"Batch {batch_reference} not found")
    if snap.batch["payment_status"] == "completed" or (
        snap.payment is not None and snap.payment["status"] == "completed"
    ):
        raise PreconditionError(_PAID_DELETE_MESSAGE)

    registration_ids = sorted(
        {r["registration_id"] for r in snap.registrations} | set(snap.batch["registration_ids"])
    )

    def delete_unpaid(delete_row):
        def _apply(c: psycopg.Connection) -> int:
            if delete_row(c, batch_reference, unless_paid=True) == 0:
                raise PreconditionError(_PAID_DELETE_MESSAGE)
            return 1
        return _apply

    steps = []
    if snap.payment is not None:
        steps.append(Step(
            "payment",
            apply=delete_unpaid(delete_payment_row),
            compensate=lambda c: insert_row(c, "payment", snap.payment, skip_existing=True),
        ))
    steps.append(Step(
        "batch",
        apply=delete_unpaid(delete_batch_row),
        compensate=lambda c: insert_row(c, "batch", snap.batch, skip_existing=True),
    ))
    steps.append(Step(
        "registrations",
        apply=lambda c: delete_registrations(c, registration_ids),
        compensate=lambda c: insert_rows(c, "registration", snap.registrations, skip_existing=True),
    ))
    (uow or TransactionalUnitOfWork()).run(conn, steps)
    log.info("Batch %s deleted with %d registration(s)", batch_reference, len(registration_ids))
    return TransitionResult(batch_reference, "deleted", "deleted", len(registration_ids))


# ---------------------------------------------------------------------------
# Pre-payment batch editing
# ---------------------------------------------------------------------------

EDIT_BLOCKED_REASON = "Payment has been completed. Batch cannot be modified."


@dataclass
class EditResult:
    batch_reference: str
    registration_id: str
    pricing: PricingResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_reference": self.batch_reference,
            "registration_id": self.registration_id,
            "batch_totals": self.pricing.to_dict(),
        }


def batch_editable_status(conn: psycopg.Connection, batch_reference: str) -> dict[str, Any]:
    batch = fetch_batch(conn, batch_reference)
    if batch is None:
        raise PreconditionError(f"Batch {batch_reference} not found")
    editable = batch["payment_status"] != "completed" and not batch["is_cancelled"]
    reason = None
    if batch["payment_status"] == "completed":
        reason = EDIT_BLOCKED_REASON
    elif batch["is_cancelled"]:
        reason = "Batch is cancelled."
    return {
        "editable": editable,
        "payment_status": batch["payment_status"],
        "batch_status": batch["status"],
        "reason": reason,
    }


def _load_editable(
    conn: psycopg.Connection,
    batch_reference: str,
) -> tuple[dict[str, Any], dict[str, Any], EventConfig]:
    batch, payment = _load(conn, batch_reference)
    if batch["payment_status"] == "completed" or payment["status"] == "completed":
        raise PreconditionError("Cannot modify batch after payment is completed")
    _require_not_cancelled(batch)
    event = fetch_event_config(conn, batch["event_ref"])
    if event is None:
        raise PreconditionError(f"Event {batch['event_ref']} not found")
    return batch, payment, event


def _fetch_batch_registration(
    conn: psycopg.Connection,
    batch_reference: str,
    registration_id: str,
) -> dict[str, Any]:
    for reg in fetch_registrations_for_batch(conn, batch_reference):
        if reg["registration_id"] == registration_id:
            return reg
    raise PreconditionError(
        f"Registration {registration_id} not found in batch {batch_reference}"
    )


def _validated_student(row: Mapping[str, Any], fields: Sequence[FieldDefinition]) -> CleanRow:
    outcome = validate_row(row, fields, row_number=0)
    if outcome.skipped == SKIP_BLANK:
        raise StudentValidationError([
            RowError(0, "Student Name", "Student name and grade are required"),
        ])
    if outcome.skipped == SKIP_SAMPLE:
        raise StudentValidationError([
            RowError(0, "Student Name", "The template sample row cannot be registered"),
        ])
    if outcome.errors:
        raise StudentValidationError(outcome.errors)
    assert outcome.record is not None
    return outcome.record


def _canonical_key(key: str, fields: Sequence[FieldDefinition]) -> str:
    """Map a label, field id or built-in header spelling to the display label."""
    nk = normalize_header(key)
    if nk in STUDENT_NAME_HEADERS:
        return "Student Name"
    if nk in GRADE_HEADERS:
        return "Grade"
    if nk in SECTION_HEADERS:
        return "Section"
    for fd in fields:
        if nk in (normalize_header(fd.label), fd.id.strip().lower()):
            return fd.label
    return key


def _student_row(registration: dict[str, Any], fields: Sequence[FieldDefinition]) -> dict[str, Any]:
    """A stored registration rendered back into label-keyed sheet cells."""
    dynamic = registration["dynamic_data"] or {}
    row: dict[str, Any] = {
        "Student Name": registration["student_name"],
        "Grade": registration["grade"],
        "Section": registration["section"],
    }
    for fd in fields:
        if fd.id in dynamic:
            row[fd.label] = to_display_value(from_json_value(fd, dynamic[fd.id]))
    return row


def _repriced(
    batch: dict[str, Any],
    event: EventConfig,
    student_count: int,
    registration_ids: list[str],
) -> tuple[PricingResult, dict[str, Any]]:
    # Unit fee stays as quoted on the batch; tiers follow the event.
    pricing = compute_total(student_count, batch["unit_fee"], event.discount_tiers, batch["currency"])
    return pricing, {
        "registration_ids": registration_ids,
        "total_students": pricing.student_count,
        "base_amount": pricing.base_amount,
        "discount_percent": pricing.discount_percent,
        "discount_amount": pricing.discount_amount,
        "total_amount": pricing.total_amount,
    }


def _pricing_steps(
    batch: dict[str, Any],
    payment: dict[str, Any],
    batch_changes: dict[str, Any],
) -> list[Step]:
    """Batch totals and the mirrored payment amount, with restoring compensations."""
    ref = batch["batch_reference"]
    batch_before = _restore(batch, batch_changes)
    amount_before = payment["amount"]
    amount = batch_changes["total_amount"]
    return [
        Step(
            "batch",
            apply=lambda c: update_batch(c, ref, **batch_changes),
            compensate=lambda c: update_batch(c, ref, **batch_before),
        ),
        Step(
            "payment",
            apply=lambda c: update_payment(c, ref, amount=amount),
            compensate=lambda c: update_payment(c, ref, amount=amount_before),
        ),
    ]


def add_student(
    conn: psycopg.Connection,
    batch_reference: str,
    student: Mapping[str, Any],
    *,
    uow: UnitOfWork | None = None,
    now: datetime | None = None,
) -> EditResult:
    """Add one student to an unpaid batch and re-price it.

    `student` is keyed like a sheet row: field labels or ids plus
    Student Name / Grade / Section.
    """
    now = now or _utcnow()
    batch, payment, event = _load_editable(conn, batch_reference)
    reason = event.closed_reason(now)
    if reason:
        raise PreconditionError(reason)
    record = _validated_student(
        {_canonical_key(k, event.fields): v for k, v in student.items()}, event.fields,
    )

    registration_id = new_registration_id()
    reg_row = {
        "registration_id": registration_id,
        "batch_reference": batch_reference,
        "event_ref": batch["event_ref"],
        "school_ref": batch["school_ref"],
        "student_name": record.student_name,
        "grade": record.grade,
        "section": record.section,
        "dynamic_data": {k: to_json_value(v) for k, v in record.dynamic_data.items()},
        "status": "registered",
        "result": None,
    }
    ids = [*batch["registration_ids"], registration_id]
    pricing, batch_changes = _repriced(batch, event, batch["total_students"] + 1, ids)
    steps = [
        Step(
            "registrations",
            apply=lambda c: insert_registrations(c, [reg_row]),
            compensate=lambda c: delete_registrations(c, [registration_id]),
        ),
        *_pricing_steps(batch, payment, batch_changes),
    ]
    (uow or TransactionalUnitOfWork()).run(conn, steps)
    log.info("Student %s added to batch %s; total now %s %s",
             registration_id, batch_reference, pricing.total_amount, pricing.currency)
    return EditResult(batch_reference, registration_id, pricing)


def update_student(
    conn: psycopg.Connection,
    batch_reference: str,
    registration_id: str,
    changes: Mapping[str, Any],
) -> dict[str, Any]:
    """Merge `changes` into one registration of an unpaid batch.

    The merged row is validated as a whole.  Pricing is unaffected.
    Returns the stored registration columns that changed.
    """
    batch, _, event = _load_editable(conn, batch_reference)
    registration = _fetch_batch_registration(conn, batch_reference, registration_id)
    merged = _student_row(registration, event.fields)
    merged.update({_canonical_key(k, event.fields): v for k, v in changes.items()})
    record = _validated_student(merged, event.fields)

    updates = {
        "student_name": record.student_name,
        "grade": record.grade,
        "section": record.section,
        "dynamic_data": {k: to_json_value(v) for k, v in record.dynamic_data.items()},
    }
    updates = {k: v for k, v in updates.items() if registration[k] != v}
    update_registration(conn, registration_id, **updates)
    log.info("Student %s in batch %s updated: %s",
             registration_id, batch_reference, ", ".join(sorted(updates)) or "no changes")
    return updates


def remove_student(
    conn: psycopg.Connection,
    batch_reference: str,
    registration_id: str,
    *,
    uow: UnitOfWork | None = None,
) -> EditResult:
    """Remove one student from an unpaid batch and re-price it.

    The batch stops listing the registration before the row is deleted.
    """
    batch, payment, event = _load_editable(conn, batch_reference)
    if batch["total_students"] <= 1:
        raise PreconditionError("Cannot remove the last student. Delete the batch instead.")
    registration = _fetch_batch_registration(conn, batch_reference, registration_id)

    ids = [rid for rid in batch["registration_ids"] if rid != registration_id]
    pricing, batch_changes = _repriced(batch, event, batch["total_students"] - 1, ids)
    steps = [
        *_pricing_steps(batch, payment, batch_changes),
        Step(
            "registrations",
            apply=lambda c: delete_registrations(c, [registration_id]),
            compensate=lambda c: insert_row(c, "registration", registration, skip_existing=True),
        ),
    ]
    (uow or TransactionalUnitOfWork()).run(conn, steps)
    log.info("Student %s removed from batch %s; total now %s %s",
             registration_id, batch_reference, pricing.total_amount, pricing.currency)
    return EditResult(batch_reference, registration_id, pricing)
