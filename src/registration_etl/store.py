"""registration_etl.store

Row-level DB helpers for the registration, batch and payment tables.

All functions take an open psycopg connection and never commit.
Caller manages transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

JSONB_COLUMNS = frozenset({"dynamic_data", "result", "validation_errors", "offline_details"})


# ---------------------------------------------------------------------------
# Generic helpers
# ---------------------------------------------------------------------------

def _adapt(column: str, value: Any) -> Any:
    if column in JSONB_COLUMNS and value is not None:
        return Jsonb(value)
    return value


def _insert_query(table: str, cols: Sequence[str], skip_existing: bool) -> sql.Composed:
    query = sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
        sql.Identifier(table),
        sql.SQL(", ").join(sql.Identifier(c) for c in cols),
        sql.SQL(", ").join(sql.Placeholder() for _ in cols),
    )
    if skip_existing:
        query += sql.SQL(" ON CONFLICT DO NOTHING")
    return query


def _update_where(
    conn: psycopg.Connection,
    table: str,
    key_column: str,
    key: str,
    changes: dict[str, Any],
) -> int:
    if not changes:
        return 0
    assignments = [
        sql.SQL("{} = {}").format(sql.Identifier(col), sql.Placeholder())
        for col in changes
    ]
    query = sql.SQL("UPDATE {} SET {}, updated_at = now() WHERE {} = {}").format(
        sql.Identifier(table),
        sql.SQL(", ").join(assignments),
        sql.Identifier(key_column),
        sql.Placeholder(),
    )
    params = [_adapt(c, v) for c, v in changes.items()] + [key]
    return conn.execute(query, params).rowcount


def insert_row(
    conn: psycopg.Connection,
    table: str,
    row: dict[str, Any],
    skip_existing: bool = False,
) -> None:
    cols = list(row.keys())
    query = _insert_query(table, cols, skip_existing)
    conn.execute(query, [_adapt(c, row[c]) for c in cols])


def insert_rows(
    conn: psycopg.Connection,
    table: str,
    rows: Sequence[dict[str, Any]],
    skip_existing: bool = False,
) -> int:
    """Insert rows sharing the same keys with one executemany round trip."""
    if not rows:
        return 0
    cols = list(rows[0].keys())
    query = _insert_query(table, cols, skip_existing)
    with conn.cursor() as cur:
        cur.executemany(query, [[_adapt(c, r[c]) for c in cols] for r in rows])
    return len(rows)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

def insert_registrations(conn: psycopg.Connection, rows: Sequence[dict[str, Any]]) -> int:
    return insert_rows(conn, "registration", rows)


def fetch_registrations_for_batch(
    conn: psycopg.Connection,
    batch_reference: str,
) -> list[dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        return cur.execute(
            "SELECT * FROM registration WHERE batch_reference = %s ORDER BY registration_id",
            (batch_reference,),
        ).fetchall()


def delete_registrations(conn: psycopg.Connection, registration_ids: Iterable[str]) -> int:
    ids = list(registration_ids)
    if not ids:
        return 0
    cur = conn.execute(
        "DELETE FROM registration WHERE registration_id = ANY(%s)",
        (ids,),
    )
    return cur.rowcount


def update_registration(conn: psycopg.Connection, registration_id: str, **changes: Any) -> int:
    return _update_where(conn, "registration", "registration_id", registration_id, changes)


def delete_batch_registrations(
    conn: psycopg.Connection,
    batch_reference: str,
    registration_ids: Iterable[str],
) -> int:
    """Delete only the listed ids that belong to `batch_reference`."""
    ids = list(registration_ids)
    if not ids:
        return 0
    return conn.execute(
        "DELETE FROM registration WHERE registration_id = ANY(%s) AND batch_reference = %s",
        (ids, batch_reference),
    ).rowcount


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

def insert_batch(conn: psycopg.Connection, row: dict[str, Any]) -> None:
    insert_row(conn, "batch", row)


def fetch_batch(
    conn: psycopg.Connection,
    batch_reference: str,
    for_update: bool = False,
) -> dict[str, Any] | None:
    query = "SELECT * FROM batch WHERE batch_reference = %s"
    if for_update:
        query += " FOR UPDATE"
    with conn.cursor(row_factory=dict_row) as cur:
        return cur.execute(query, (batch_reference,)).fetchone()


def update_batch(conn: psycopg.Connection, batch_reference: str, **changes: Any) -> int:
    return _update_where(conn, "batch", "batch_reference", batch_reference, changes)


def delete_batch_row(
    conn: psycopg.Connection,
    batch_reference: str,
    unless_paid: bool = False,
) -> int:
    query = "DELETE FROM batch WHERE batch_reference = %s"
    if unless_paid:
        query += " AND payment_status <> 'completed'"
    return conn.execute(query, (batch_reference,)).rowcount


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------

def insert_payment(conn: psycopg.Connection, row: dict[str, Any]) -> None:
    insert_row(conn, "payment", row)


def fetch_payment_for_batch(
    conn: psycopg.Connection,
    batch_reference: str,
) -> dict[str, Any] | None:
    with conn.cursor(row_factory=dict_row) as cur:
        return cur.execute(
            "SELECT * FROM payment WHERE batch_reference = %s",
            (batch_reference,),
        ).fetchone()


def update_payment(conn: psycopg.Connection, batch_reference: str, **changes: Any) -> int:
    return _update_where(conn, "payment", "batch_reference", batch_reference, changes)


def delete_payment_row(
    conn: psycopg.Connection,
    batch_reference: str,
    unless_paid: bool = False,
) -> int:
    query = "DELETE FROM payment WHERE batch_reference = %s"
    if unless_paid:
        query += " AND status <> 'completed'"
    return conn.execute(query, (batch_reference,)).rowcount


# ---------------------------------------------------------------------------
# Snapshots (used to compensate non-transactional deletes)
# ---------------------------------------------------------------------------

@dataclass
class BatchSnapshot:
    batch: dict[str, Any]
    payment: dict[str, Any] | None
    registrations: list[dict[str, Any]] = field(default_factory=list)


def snapshot_batch(conn: psycopg.Connection, batch_reference: str) -> BatchSnapshot | None:
    """Batch, payment and registrations.  Locks the batch row inside a transaction."""
    batch = fetch_batch(conn, batch_reference, for_update=not conn.autocommit)
    if batch is None:
        return None
    return BatchSnapshot(
        batch=batch,
        payment=fetch_payment_for_batch(conn, batch_reference),
        registrations=fetch_registrations_for_batch(conn, batch_reference),
    )
