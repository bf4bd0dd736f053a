"""registration_etl.cli

Unified CLI entrypoint for bulk registration ingestion.

Modes (--mode):
  register_event    load an event YAML and upsert it (optionally a school too)
  template          write the registration template for an event
  validate          preview an upload; stores a validation session token
  upload            validate (or reuse a token) and create the batch
  submit            move a draft batch to submitted
  offline_submit    record offline payment proof for a batch
  online_completed  mark an online payment as completed
  online_failed     mark an online payment as failed
  verify_offline    admin verification of an offline payment
  reject_offline    admin rejection of an offline payment
  cancel            soft-cancel a batch
  delete            hard-delete a batch, its payment and registrations
  add_student       add one student to an unpaid batch (re-prices it)
  update_student    edit one student of an unpaid batch
  remove_student    remove one student from an unpaid batch (re-prices it)
  editable          report whether a batch can still be edited
  export            write every registration of a batch as csv/xlsx
  results_upload    ingest an exam-results file for an event
  results_template  write the results skeleton for an event
  results_clear     remove every stored result for an event
  results_set       set the result of one registration
  reconcile         report (and optionally purge) partial-write debris

Usage (upload):
    registration-etl \\
        --mode upload \\
        --db-dsn "$REGISTRATION_DB_DSN" \\
        --event-ref "olympiad-2025" \\
        --school-ref "SCH-001" \\
        --file "uploads/sch001_registrations.xlsx" \\
        --rejects-path "artifacts/rejects/sch001_rejects.csv"

Usage (verify_offline):
    registration-etl \\
        --mode verify_offline \\
        --batch-ref "BATCH-LX2K9Q1-7H3FD" \\
        --admin-id "ops@example.org" \\
        --notes "UTR matched bank statement"

Every DB mode runs in one transaction: committed on success, rolled back on
--dry-run, on a rejected transition and on any error.  --sequential runs on an
autocommit connection and undoes partial writes with compensating steps.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import click
import psycopg

from registration_etl.batch_assembler import submit_bulk_registration
from registration_etl.batch_lifecycle import (
    TransitionResult,
    add_student,
    batch_editable_status,
    cancel_batch,
    delete_batch,
    mark_online_payment_completed,
    mark_online_payment_failed,
    reject_offline_payment,
    remove_student,
    submit_batch,
    submit_offline_payment,
    update_student,
    verify_offline_payment,
)
from registration_etl.event_config import (
    CURRENCIES,
    EventConfig,
    EventConfigValidationError,
    School,
    fetch_event_config,
    fetch_school,
    load_event_config,
    register_event_config,
    upsert_school,
)
from registration_etl.results_ingester import (
    clear_event_results,
    generate_results_template,
    ingest_results,
    set_registration_result,
)
from registration_etl.shared import (
    ConsistencyError,
    PreconditionError,
    RejectWriter,
    RunCounters,
    format_errors,
    write_run_report,
)
from registration_etl.spreadsheet import ingest_spreadsheet
from registration_etl.templates import (
    build_batch_export,
    build_error_report,
    build_registration_template,
)
from registration_etl.unit_of_work import (
    DEFAULT_ORPHAN_GRACE,
    find_batches_missing_payment,
    find_batches_with_missing_registrations,
    find_orphaned_registrations,
    purge_orphaned_registrations,
    select_unit_of_work,
)
from registration_etl.validation_cache import (
    DEFAULT_TTL_SECONDS,
    purge_expired_sessions,
    store_validation_session,
)

MODES = [
    "register_event",
    "template",
    "validate",
    "upload",
    "submit",
    "offline_submit",
    "online_completed",
    "online_failed",
    "verify_offline",
    "reject_offline",
    "cancel",
    "delete",
    "add_student",
    "update_student",
    "remove_student",
    "editable",
    "export",
    "results_upload",
    "results_template",
    "results_clear",
    "results_set",
    "reconcile",
]

# Modes that only need --batch-ref plus their own flags.
TRANSITION_MODES = {
    "submit", "offline_submit", "online_completed", "online_failed",
    "verify_offline", "reject_offline", "cancel", "delete",
}

EDIT_MODES = {"add_student", "update_student", "remove_student"}


@click.command()
@click.option("--mode", required=True, type=click.Choice(MODES), help="Operation to run")
@click.option("--db-dsn", envvar="REGISTRATION_DB_DSN", default=None, help="PostgreSQL DSN")
@click.option("--event-config", default=None, type=click.Path(), help="[register_event|template] Event YAML")
@click.option("--event-ref", default=None, help="Event reference")
@click.option("--school-ref", default=None, help="[validate|upload] School reference")
@click.option("--school-name", default=None, help="Create the school with this name if missing")
@click.option(
    "--currency",
    default=None,
    type=click.Choice(list(CURRENCIES), case_sensitive=False),
    help="[upload] Override the school's preferred currency",
)
@click.option("--file", "file_path", default=None, type=click.Path(), help="Input xlsx/csv file")
@click.option("--output", default=None, type=click.Path(), help="Output path for templates and error reports")
@click.option(
    "--format", "fmt",
    default="xlsx",
    type=click.Choice(["xlsx", "csv"]),
    show_default=True,
    help="[template|results_template|validate|export] Output format",
)
@click.option("--validation-token", default=None, help="[upload] Token from a previous validate run")
@click.option(
    "--validation-ttl-seconds",
    default=DEFAULT_TTL_SECONDS,
    type=int,
    show_default=True,
    help="[validate] Lifetime of the stored validation session",
)
@click.option("--payment-mode", default="online", type=click.Choice(["online", "offline"]), show_default=True)
@click.option("--strict", is_flag=True, default=False, help="[upload] Reject the whole file on any row error")
@click.option("--draft", is_flag=True, default=False, help="[upload] Leave the new batch in draft")
@click.option("--batch-ref", default=None, help="Batch reference for lifecycle modes")
@click.option("--admin-id", default=None, help="[verify_offline|reject_offline] Acting admin")
@click.option("--notes", default=None, help="[verify_offline] Verification notes")
@click.option("--reason", default=None, help="[reject_offline|online_failed|cancel] Reason text")
@click.option("--transaction-reference", default=None, help="[offline_submit] Bank transaction reference")
@click.option("--bank-name", default=None, help="[offline_submit]")
@click.option("--receipt-url", default=None, help="[offline_submit]")
@click.option("--paid-on", default=None, help="[offline_submit] Payment date as DD/MM/YYYY")
@click.option("--gateway-order-id", default=None, help="[online_completed]")
@click.option("--gateway-payment-id", default=None, help="[online_completed]")
@click.option("--registration-id", default=None, help="[results_set|update_student|remove_student] Registration to update")
@click.option(
    "--student-field", "student_fields",
    multiple=True,
    help="[add_student|update_student] LABEL=VALUE, repeatable (Student Name, Grade, Section or a form field)",
)
@click.option("--score", default=None, help="[results_set]")
@click.option("--rank", default=None, help="[results_set]")
@click.option("--award", default=None, help="[results_set]")
@click.option("--remarks", default=None, help="[results_set]")
@click.option("--sequential", is_flag=True, default=False, help="Use compensating steps instead of one transaction")
@click.option("--grace-minutes", default=int(DEFAULT_ORPHAN_GRACE.total_seconds() // 60), type=int, show_default=True, help="[reconcile]")
@click.option("--purge", is_flag=True, default=False, help="[reconcile] Delete orphaned registrations and expired sessions")
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/rejects.csv",
    show_default=True,
    type=click.Path(),
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--verbose", is_flag=True, default=False, help="Log at INFO level")
def main(
    mode: str,
    db_dsn: str | None,
    event_config: str | None,
    event_ref: str | None,
    school_ref: str | None,
    school_name: str | None,
    currency: str | None,
    file_path: str | None,
    output: str | None,
    fmt: str,
    validation_token: str | None,
    validation_ttl_seconds: int,
    payment_mode: str,
    strict: bool,
    draft: bool,
    batch_ref: str | None,
    admin_id: str | None,
    notes: str | None,
    reason: str | None,
    transaction_reference: str | None,
    bank_name: str | None,
    receipt_url: str | None,
    paid_on: str | None,
    gateway_order_id: str | None,
    gateway_payment_id: str | None,
    registration_id: str | None,
    student_fields: tuple[str, ...],
    score: str | None,
    rank: str | None,
    award: str | None,
    remarks: str | None,
    sequential: bool,
    grace_minutes: int,
    purge: bool,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    verbose: bool,
) -> None:
    """Bulk event-registration ingestion CLI."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    counters = RunCounters()
    rejects = RejectWriter(Path(rejects_path))
    uow = select_unit_of_work(transactional=not sequential)

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    # Offline template rendering straight from YAML needs no database.
    if mode == "template" and event_config:
        _require_flags(mode, run_id, {"--output": output})
        cfg = _load_config(event_config, run_id)
        _write_output(output, build_registration_template(cfg.fields, fmt, cfg.title), run_id)  # type: ignore[arg-type]
        return

    if not db_dsn:
        click.echo(f"[{run_id}] FATAL: --db-dsn or REGISTRATION_DB_DSN is required", err=True)
        sys.exit(1)
    if sequential and dry_run:
        click.echo(f"[{run_id}] FATAL: --dry-run cannot be combined with --sequential", err=True)
        sys.exit(1)

    details: dict[str, Any] = {}

    if mode == "register_event":
        _require_flags(mode, run_id, {"--event-config": event_config})
        cfg = _load_config(event_config, run_id)  # type: ignore[arg-type]

        def action(conn: psycopg.Connection) -> None:
            register_event_config(conn, cfg)
            details.update({"event_ref": cfg.event_ref, "config_hash": cfg.config_hash})
            if school_ref and school_name:
                upsert_school(conn, School(school_ref, school_name, (currency or "INR").upper()))
                details["school_ref"] = school_ref
            click.echo(f"[{run_id}] Event {cfg.event_ref} registered (hash {cfg.config_hash[:12]})")

    elif mode == "template":
        _require_flags(mode, run_id, {"--event-ref": event_ref, "--output": output})

        def action(conn: psycopg.Connection) -> None:
            event = _require_event(conn, event_ref)  # type: ignore[arg-type]
            _write_output(output, build_registration_template(event.fields, fmt, event.title), run_id)  # type: ignore[arg-type]

    elif mode == "validate":
        _require_flags(mode, run_id, {
            "--event-ref": event_ref, "--school-ref": school_ref, "--file": file_path,
        })

        def action(conn: psycopg.Connection) -> None:
            event = _require_event(conn, event_ref)  # type: ignore[arg-type]
            school = _resolve_school(conn, school_ref, school_name, currency, run_id)  # type: ignore[arg-type]
            path = Path(file_path)  # type: ignore[arg-type]
            result = ingest_spreadsheet(path, path.name, event.fields)
            _count_rows(counters, result.summary.to_dict())
            counters.rows_rejected += rejects.write_errors(result.errors)
            if result.errors:
                click.echo(format_errors(result.errors))
                if output:
                    _write_output(output, build_error_report(result.errors, fmt), run_id)
            token = store_validation_session(
                conn, school.school_ref, event.event_ref, result, ttl_seconds=validation_ttl_seconds,
            )
            details.update({"success": result.success, "validation_token": token})
            click.echo(json.dumps(result.to_dict() | {"validation_token": token}, indent=2, default=str))

    elif mode == "upload":
        _require_flags(mode, run_id, {
            "--event-ref": event_ref, "--school-ref": school_ref,
            "--file or --validation-token": file_path or validation_token,
        })

        def action(conn: psycopg.Connection) -> None:
            event = _require_event(conn, event_ref)  # type: ignore[arg-type]
            school = _resolve_school(conn, school_ref, school_name, currency, run_id)  # type: ignore[arg-type]
            path = Path(file_path) if file_path else None
            result = submit_bulk_registration(
                conn, event, school,
                upload=path,
                filename=path.name if path else None,
                validation_token=validation_token,
                currency=currency,
                payment_mode=payment_mode,
                strict=strict,
                submit=not draft,
                uow=uow,
            )
            _count_rows(counters, result.summary)
            counters.rows_rejected += rejects.write_errors(result.errors)
            if result.errors:
                click.echo(format_errors(result.errors))
                if output:
                    _write_output(output, build_error_report(result.errors, fmt), run_id)
            details.update({"accepted": result.accepted, "from_cache": result.from_cache})
            if not result.accepted:
                raise PreconditionError("Upload rejected; no batch was created")
            assert result.batch is not None
            counters.registrations_inserted += len(result.batch.registration_ids)
            counters.batches_created += 1
            counters.payments_created += 1
            details["batch_reference"] = result.batch.batch_reference
            click.echo(json.dumps(result.to_dict(), indent=2, default=str))

    elif mode in TRANSITION_MODES:
        action = _transition_action(
            mode, run_id, counters, details,
            batch_ref=batch_ref,
            admin_id=admin_id,
            notes=notes,
            reason=reason,
            transaction_reference=transaction_reference,
            bank_name=bank_name,
            receipt_url=receipt_url,
            paid_on=paid_on,
            gateway_order_id=gateway_order_id,
            gateway_payment_id=gateway_payment_id,
            uow=uow,
        )

    elif mode in EDIT_MODES:
        action = _edit_action(
            mode, run_id, counters, details,
            batch_ref=batch_ref,
            registration_id=registration_id,
            student_fields=student_fields,
            uow=uow,
        )

    elif mode == "editable":
        _require_flags(mode, run_id, {"--batch-ref": batch_ref})

        def action(conn: psycopg.Connection) -> None:
            status = batch_editable_status(conn, batch_ref)  # type: ignore[arg-type]
            details.update(status)
            click.echo(json.dumps(status, indent=2))

    elif mode == "export":
        _require_flags(mode, run_id, {"--batch-ref": batch_ref, "--output": output})

        def action(conn: psycopg.Connection) -> None:
            _write_output(output, build_batch_export(conn, batch_ref, fmt), run_id)  # type: ignore[arg-type]

    elif mode == "results_upload":
        _require_flags(mode, run_id, {"--event-ref": event_ref, "--file": file_path})

        def action(conn: psycopg.Connection) -> None:
            path = Path(file_path)  # type: ignore[arg-type]
            result = ingest_results(conn, event_ref, path, path.name)  # type: ignore[arg-type]
            counters.rows_read += result.rows_read
            counters.results_total += result.summary.total
            counters.results_matched += result.summary.matched
            counters.results_updated += result.summary.updated
            counters.rows_rejected += rejects.write_errors(result.errors)
            if result.errors:
                click.echo(format_errors(result.errors))
            details.update(result.summary.to_dict())
            click.echo(json.dumps(result.to_dict(), indent=2, default=str))

    elif mode == "results_template":
        _require_flags(mode, run_id, {"--event-ref": event_ref, "--output": output})

        def action(conn: psycopg.Connection) -> None:
            _write_output(output, generate_results_template(conn, event_ref, fmt), run_id)  # type: ignore[arg-type]

    elif mode == "results_clear":
        _require_flags(mode, run_id, {"--event-ref": event_ref})

        def action(conn: psycopg.Connection) -> None:
            counters.results_cleared += clear_event_results(conn, event_ref)  # type: ignore[arg-type]

    elif mode == "results_set":
        _require_flags(mode, run_id, {"--event-ref": event_ref, "--registration-id": registration_id})

        def action(conn: psycopg.Connection) -> None:
            stored = set_registration_result(
                conn, event_ref, registration_id,  # type: ignore[arg-type]
                score=score, rank=rank, award=award, remarks=remarks,
            )
            counters.results_updated += 1
            details["registration_id"] = registration_id
            click.echo(f"[{run_id}] {registration_id}: {json.dumps(stored)}")

    else:  # reconcile
        grace = timedelta(minutes=grace_minutes)

        def action(conn: psycopg.Connection) -> None:
            orphans = find_orphaned_registrations(conn, grace)
            counters.orphans_found += len(orphans)
            for rid, ref in orphans[:20]:
                counters.warnings.append(f"orphaned registration {rid} (batch {ref})")
            for ref in find_batches_missing_payment(conn, grace):
                counters.warnings.append(f"batch {ref} has no payment")
            for ref in find_batches_with_missing_registrations(conn):
                counters.warnings.append(f"batch {ref} lists missing registrations")
            if purge:
                counters.orphans_purged += purge_orphaned_registrations(conn, grace)
                counters.sessions_purged += purge_expired_sessions(conn)

    ok = _run_in_transaction(db_dsn, run_id, dry_run, counters, action, autocommit=sequential)
    rejects.close()
    if rejects.opened:
        click.echo(f"[{run_id}] Rejects written to {rejects_path}")

    click.echo(build_run_report(mode, counters, dry_run))
    report_path = write_run_report(
        run_id, started_at, mode, dry_run,
        {k: str(v) for k, v in {
            "event_ref": event_ref, "school_ref": school_ref, "batch_ref": batch_ref,
            "file": file_path, **details,
        }.items() if v is not None},
        counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if not ok:
        sys.exit(1)
    click.echo(f"[{run_id}] Done.")


# ---------------------------------------------------------------------------
# Lifecycle modes
# ---------------------------------------------------------------------------

def _transition_action(
    mode: str,
    run_id: str,
    counters: RunCounters,
    details: dict[str, Any],
    *,
    batch_ref: str | None,
    admin_id: str | None,
    notes: str | None,
    reason: str | None,
    transaction_reference: str | None,
    bank_name: str | None,
    receipt_url: str | None,
    paid_on: str | None,
    gateway_order_id: str | None,
    gateway_payment_id: str | None,
    uow: Any,
) -> Callable[[psycopg.Connection], None]:
    required: dict[str, Any] = {"--batch-ref": batch_ref}
    if mode in ("verify_offline", "reject_offline"):
        required["--admin-id"] = admin_id
    if mode == "reject_offline":
        required["--reason"] = reason
    if mode == "offline_submit":
        required["--transaction-reference"] = transaction_reference
    _require_flags(mode, run_id, required)
    ref: str = batch_ref  # type: ignore[assignment]

    def action(conn: psycopg.Connection) -> None:
        if mode == "submit":
            res: TransitionResult = submit_batch(conn, ref)
        elif mode == "offline_submit":
            res = submit_offline_payment(
                conn, ref,
                transaction_reference=transaction_reference,  # type: ignore[arg-type]
                bank_name=bank_name, receipt_url=receipt_url, paid_on=paid_on, uow=uow,
            )
        elif mode == "online_completed":
            res = mark_online_payment_completed(
                conn, ref,
                gateway_order_id=gateway_order_id,
                gateway_payment_id=gateway_payment_id,
                uow=uow,
            )
            counters.registrations_confirmed += res.registrations_affected
        elif mode == "online_failed":
            res = mark_online_payment_failed(conn, ref, reason=reason, uow=uow)
        elif mode == "verify_offline":
            res = verify_offline_payment(conn, ref, admin_id, notes, uow=uow)  # type: ignore[arg-type]
            counters.registrations_confirmed += res.registrations_affected
        elif mode == "reject_offline":
            res = reject_offline_payment(conn, ref, admin_id, reason, uow=uow)  # type: ignore[arg-type]
        elif mode == "cancel":
            res = cancel_batch(conn, ref, reason, uow=uow)
            counters.registrations_cancelled += res.registrations_affected
        else:
            res = delete_batch(conn, ref, uow=uow)
            counters.registrations_deleted += res.registrations_affected
        details.update(res.to_dict())
        click.echo(
            f"[{run_id}] {ref}: batch={res.batch_status} payment={res.payment_status} "
            f"registrations_affected={res.registrations_affected}"
        )

    return action


def parse_student_fields(run_id: str, pairs: tuple[str, ...]) -> dict[str, str]:
    student: dict[str, str] = {}
    for pair in pairs:
        label, sep, value = pair.partition("=")
        if not sep or not label.strip():
            click.echo(f"[{run_id}] FATAL: --student-field expects LABEL=VALUE, got {pair!r}", err=True)
            sys.exit(1)
        student[label.strip()] = value
    return student


def _edit_action(
    mode: str,
    run_id: str,
    counters: RunCounters,
    details: dict[str, Any],
    *,
    batch_ref: str | None,
    registration_id: str | None,
    student_fields: tuple[str, ...],
    uow: Any,
) -> Callable[[psycopg.Connection], None]:
    required: dict[str, Any] = {"--batch-ref": batch_ref}
    if mode != "add_student":
        required["--registration-id"] = registration_id
    if mode != "remove_student":
        required["--student-field"] = student_fields or None
    _require_flags(mode, run_id, required)
    student = parse_student_fields(run_id, student_fields)
    ref: str = batch_ref  # type: ignore[assignment]

    def action(conn: psycopg.Connection) -> None:
        if mode == "update_student":
            changed = update_student(conn, ref, registration_id, student)  # type: ignore[arg-type]
            counters.registrations_updated += 1 if changed else 0
            details["registration_id"] = registration_id
            click.echo(f"[{run_id}] {registration_id}: updated {', '.join(sorted(changed)) or 'nothing'}")
            return
        if mode == "add_student":
            res = add_student(conn, ref, student, uow=uow)
            counters.registrations_inserted += 1
        else:
            res = remove_student(conn, ref, registration_id, uow=uow)  # type: ignore[arg-type]
            counters.registrations_deleted += 1
        details.update(res.to_dict())
        click.echo(json.dumps(res.to_dict(), indent=2, default=str))

    return action


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _run_in_transaction(
    db_dsn: str,
    run_id: str,
    dry_run: bool,
    counters: RunCounters,
    action: Callable[[psycopg.Connection], None],
    autocommit: bool = False,
) -> bool:
    """Run `action` in one transaction.  Returns False when the run failed.

    With `autocommit` (the sequential strategy) every statement commits on
    its own and the final commit is a no-op.
    """
    conn = psycopg.connect(db_dsn, autocommit=autocommit)
    try:
        action(conn)
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] DRY RUN - rolled back.")
        else:
            conn.commit()
            click.echo(f"[{run_id}] Committed.")
        return True
    except PreconditionError as exc:
        conn.rollback()
        click.echo(f"[{run_id}] REJECTED: {exc}", err=True)
        return False
    except ConsistencyError as exc:
        conn.rollback()
        counters.db_errors += 1
        click.echo(f"[{run_id}] FATAL: {exc} - run reconcile", err=True)
        return False
    except psycopg.Error as exc:
        if not conn.closed:
            conn.rollback()
        counters.db_errors += 1
        click.echo(f"[{run_id}] {counters.db_errors} DB errors - rolled back: {exc}", err=True)
        return False
    finally:
        if not conn.closed:
            conn.close()


def _require_flags(mode: str, run_id: str, required: dict[str, Any]) -> None:
    missing = [k for k, v in required.items() if v is None]
    if missing:
        click.echo(
            f"[{run_id}] FATAL: {mode} mode requires: {', '.join(missing)}",
            err=True,
        )
        sys.exit(1)


def _load_config(path: str, run_id: str) -> EventConfig:
    try:
        return load_event_config(Path(path))
    except (OSError, EventConfigValidationError) as exc:
        click.echo(f"[{run_id}] FATAL: invalid event config {path}: {exc}", err=True)
        sys.exit(1)


def _require_event(conn: psycopg.Connection, event_ref: str) -> EventConfig:
    event = fetch_event_config(conn, event_ref)
    if event is None:
        raise PreconditionError(f"Event {event_ref} not found; run register_event first")
    return event


def _resolve_school(
    conn: psycopg.Connection,
    school_ref: str,
    school_name: str | None,
    currency: str | None,
    run_id: str,
) -> School:
    school = fetch_school(conn, school_ref)
    if school is not None:
        return school
    if not school_name:
        raise PreconditionError(f"School {school_ref} not found; pass --school-name to create it")
    school = School(school_ref, school_name, (currency or "INR").upper())
    upsert_school(conn, school)
    click.echo(f"[{run_id}] Created school {school_ref}")
    return school


def _write_output(output: str, payload: bytes, run_id: str) -> None:
    path = Path(output)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)
    click.echo(f"[{run_id}] Wrote {path} ({len(payload)} bytes)")


def _count_rows(counters: RunCounters, summary: dict[str, Any]) -> None:
    counters.rows_read += int(summary.get("total", 0))
    counters.rows_valid += int(summary.get("valid", 0))
    counters.rows_invalid += int(summary.get("invalid", 0))


def build_run_report(mode: str, counters: RunCounters, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        f"Registration ETL Report ({mode})",
        f"  dry_run: {dry_run}",
        "=" * 60,
        f"Rows read:                 {counters.rows_read}",
        f"  valid:                   {counters.rows_valid}",
        f"  invalid:                 {counters.rows_invalid}",
        f"  errors written:          {counters.rows_rejected}",
        f"Batches created:           {counters.batches_created}",
        f"  registrations inserted:  {counters.registrations_inserted}",
        f"  payments created:        {counters.payments_created}",
        f"Registrations updated:     {counters.registrations_updated}",
        f"Registrations confirmed:   {counters.registrations_confirmed}",
        f"Registrations cancelled:   {counters.registrations_cancelled}",
        f"Registrations deleted:     {counters.registrations_deleted}",
        f"Results total:             {counters.results_total}",
        f"  matched:                 {counters.results_matched}",
        f"  updated:                 {counters.results_updated}",
        f"  cleared:                 {counters.results_cleared}",
        f"Orphans found / purged:    {counters.orphans_found} / {counters.orphans_purged}",
        f"Sessions purged:           {counters.sessions_purged}",
        f"DB errors:                 {counters.db_errors}",
    ]
    if counters.warnings:
        lines.append(f"\nWarnings ({len(counters.warnings)}):")
        for w in counters.warnings[:20]:
            lines.append(f"  {w}")
        if len(counters.warnings) > 20:
            lines.append(f"  ... and {len(counters.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)


if __name__ == "__main__":
    main()
