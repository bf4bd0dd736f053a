"""registration_etl.batch_assembler

Turns validated registration rows into one Batch, N Registrations and one
Payment, written through a UnitOfWork in the fixed order
Registrations -> Batch -> Payment.

Entry points:
  submit_bulk_registration()  full flow: preconditions, cached session or
                              fresh ingestion, then assemble_batch()
  assemble_batch()            persistence only, for already-validated rows
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Sequence

import psycopg

from registration_etl.batch_lifecycle import submit_batch
from registration_etl.event_config import EventConfig, School
from registration_etl.field_types import to_json_value
from registration_etl.pricing import PricingResult, compute_total
from registration_etl.schema_validator import CleanRow
from registration_etl.shared import (
    PreconditionError,
    RowError,
    new_batch_reference,
    new_payment_reference,
    new_registration_id,
)
from registration_etl.spreadsheet import ingest_spreadsheet
from registration_etl.store import (
    delete_batch_registrations,
    delete_batch_row,
    delete_payment_row,
    delete_registrations,
    insert_batch,
    insert_payment,
    insert_registrations,
)
from registration_etl.unit_of_work import Step, TransactionalUnitOfWork, UnitOfWork
from registration_etl.validation_cache import take_validation_session

log = logging.getLogger(__name__)

PAYMENT_MODES = ("online", "offline")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class AssemblyResult:
    batch_reference: str
    payment_reference: str
    registration_ids: list[str]
    pricing: PricingResult
    validation_errors: list[RowError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_reference": self.batch_reference,
            "payment_reference": self.payment_reference,
            "registration_ids": self.registration_ids,
            "pricing": self.pricing.to_dict(),
            "validation_errors": [e.to_dict() for e in self.validation_errors],
        }


@dataclass
class SubmissionResult:
    """Outcome of submit_bulk_registration().

    File-content problems come back here as data (accepted=False);
    event or batch state problems raise PreconditionError instead.
    """

    accepted: bool
    errors: list[RowError] = field(default_factory=list)
    summary: dict[str, int] = field(default_factory=dict)
    batch: AssemblyResult | None = None
    from_cache: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "from_cache": self.from_cache,
            "summary": self.summary,
            "errors": [e.to_dict() for e in self.errors],
            "batch": self.batch.to_dict() if self.batch else None,
        }


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------

def check_event_open(event: EventConfig, now: datetime) -> None:
    reason = event.closed_reason(now)
    if reason:
        raise PreconditionError(reason)


def resolve_unit_fee(event: EventConfig, currency: str) -> Decimal:
    fee = event.unit_fee_for(currency)
    if fee is None:
        raise PreconditionError(
            f"Event {event.event_ref} has no fee configured for currency {currency}"
        )
    return fee


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def _registration_rows(
    rows: Sequence[CleanRow],
    batch_reference: str,
    event: EventConfig,
    school: School,
) -> list[dict[str, Any]]:
    return [
        {
            "registration_id": new_registration_id(),
            "batch_reference": batch_reference,
            "event_ref": event.event_ref,
            "school_ref": school.school_ref,
            "student_name": r.student_name,
            "grade": r.grade,
            "section": r.section,
            "dynamic_data": {k: to_json_value(v) for k, v in r.dynamic_data.items()},
            "status": "registered",
            "result": None,
        }
        for r in rows
    ]


def assemble_batch(
    conn: psycopg.Connection,
    event: EventConfig,
    school: School,
    rows: Sequence[CleanRow],
    *,
    currency: str | None = None,
    payment_mode: str = "online",
    validation_errors: Sequence[RowError] = (),
    uow: UnitOfWork | None = None,
    now: datetime | None = None,
) -> AssemblyResult:
    """Price and persist a batch for already-validated rows.

    Raises PreconditionError before any write when the event is closed,
    the currency has no fee, or there are no rows.
    """
    now = now or datetime.now(timezone.utc)
    currency = (currency or school.preferred_currency).upper()
    if payment_mode not in PAYMENT_MODES:
        raise PreconditionError(f"Invalid payment mode '{payment_mode}'")
    check_event_open(event, now)
    unit_fee = resolve_unit_fee(event, currency)
    if not rows:
        raise PreconditionError("No valid student rows to register")

    uow = uow or TransactionalUnitOfWork()
    pricing = compute_total(len(rows), unit_fee, event.discount_tiers, currency)
    batch_reference = new_batch_reference()
    payment_reference = new_payment_reference()
    reg_rows = _registration_rows(rows, batch_reference, event, school)
    registration_ids = [r["registration_id"] for r in reg_rows]

    batch_row = {
        "batch_reference": batch_reference,
        "school_ref": school.school_ref,
        "event_ref": event.event_ref,
        "registration_ids": registration_ids,
        "total_students": pricing.student_count,
        "unit_fee": pricing.unit_fee,
        "base_amount": pricing.base_amount,
        "discount_percent": pricing.discount_percent,
        "discount_amount": pricing.discount_amount,
        "total_amount": pricing.total_amount,
        "currency": currency,
        "status": "draft",
        "payment_status": "pending",
        "payment_mode": payment_mode,
        "validation_errors": [e.to_dict() for e in validation_errors],
    }
    payment_row = {
        "payment_reference": payment_reference,
        "batch_reference": batch_reference,
        "school_ref": school.school_ref,
        "event_ref": event.event_ref,
        "amount": pricing.total_amount,
        "currency": currency,
        "status": "pending",
        "payment_mode": payment_mode,
    }

    uow.run(conn, [
        Step(
            "registrations",
            apply=lambda c: insert_registrations(c, reg_rows),
            compensate=lambda c: delete_registrations(c, registration_ids),
            cleanup=lambda c: delete_batch_registrations(c, batch_reference, registration_ids),
        ),
        Step(
            "batch",
            apply=lambda c: insert_batch(c, batch_row),
            compensate=lambda c: delete_batch_row(c, batch_reference),
        ),
        Step(
            "payment",
            apply=lambda c: insert_payment(c, payment_row),
            compensate=lambda c: delete_payment_row(c, batch_reference),
        ),
    ])

    log.info(
        "Assembled batch %s via %s: %d registration(s), total=%s %s (discount %s%%)",
        batch_reference, uow.name, len(registration_ids),
        pricing.total_amount, currency, pricing.discount_percent,
    )
    return AssemblyResult(
        batch_reference=batch_reference,
        payment_reference=payment_reference,
        registration_ids=registration_ids,
        pricing=pricing,
        validation_errors=list(validation_errors),
    )


# ---------------------------------------------------------------------------
# Full submission flow
# ---------------------------------------------------------------------------

def submit_bulk_registration(
    conn: psycopg.Connection,
    event: EventConfig,
    school: School,
    *,
    upload: bytes | Path | None = None,
    filename: str | None = None,
    validation_token: str | None = None,
    currency: str | None = None,
    payment_mode: str = "online",
    strict: bool = False,
    submit: bool = True,
    uow: UnitOfWork | None = None,
    now: datetime | None = None,
) -> SubmissionResult:
    """Validate (or reuse a cached validation) and persist one bulk registration.

    Event state is checked before the upload is read.  Rows with errors
    are left out of the batch and recorded on batch.validation_errors,
    unless `strict` is set, in which case any error rejects the upload.
    """
    now = now or datetime.now(timezone.utc)
    currency = (currency or school.preferred_currency).upper()
    check_event_open(event, now)
    resolve_unit_fee(event, currency)

    rows: list[CleanRow] | None = None
    errors: list[RowError] = []
    summary: dict[str, int] = {}
    from_cache = False

    if validation_token:
        session = take_validation_session(
            conn, validation_token, school.school_ref, event.event_ref, event.fields, now=now,
        )
        if session is not None:
            rows, errors, summary = session.rows, session.errors, session.summary
            from_cache = True

    if rows is None:
        if upload is None or filename is None:
            raise PreconditionError(
                "Validation session expired or not found; upload the file again"
            )
        result = ingest_spreadsheet(upload, filename, event.fields)
        if result.aborted:
            return SubmissionResult(
                accepted=False, errors=result.errors, summary=result.summary.to_dict(),
            )
        rows, errors, summary = result.rows, result.errors, result.summary.to_dict()

    if strict and errors:
        return SubmissionResult(
            accepted=False, errors=errors, summary=summary, from_cache=from_cache,
        )
    if not rows:
        if not any(e.row == 0 for e in errors):
            errors = [*errors, RowError(0, "File", "No valid student rows to register")]
        return SubmissionResult(
            accepted=False, errors=errors, summary=summary, from_cache=from_cache,
        )

    uow = uow or TransactionalUnitOfWork()
    assembled = assemble_batch(
        conn, event, school, rows,
        currency=currency,
        payment_mode=payment_mode,
        validation_errors=errors,
        uow=uow,
        now=now,
    )
    if submit:
        submit_batch(conn, assembled.batch_reference)
    return SubmissionResult(
        accepted=True,
        errors=errors,
        summary=summary,
        batch=assembled,
        from_cache=from_cache,
    )
