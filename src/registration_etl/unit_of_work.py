"""registration_etl.unit_of_work

Multi-record write strategies for Batch + Registrations + Payment.

Two strategies share one interface, run(conn, steps):

  TransactionalUnitOfWork
      All steps inside conn.transaction().  Any failure rolls every step
      back.  On a connection already inside a transaction this is a
      SAVEPOINT; the caller still commits.

  SequentialUnitOfWork
      For stores or connections without multi-statement transactions
      (autocommit).  Steps run in the given order, each committing on its
      own.  On failure the failed step runs its own cleanup (rows it wrote
      before failing, never rows matching its keys that it did not write),
      then every completed step is compensated in reverse order, so
      compensations must be idempotent.  If any of that fails,
      ConsistencyError is raised and the leftovers are findable with
      find_orphaned_registrations().

Write order for creation is always Registrations -> Batch -> Payment, so a
crash between steps leaves orphaned children (detectable, purgeable) and
never a batch pointing at missing registrations.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Sequence

import psycopg

from registration_etl.shared import ConsistencyError

log = logging.getLogger(__name__)

DEFAULT_ORPHAN_GRACE = timedelta(minutes=15)


# ---------------------------------------------------------------------------
# Steps + strategies
# ---------------------------------------------------------------------------

@dataclass
class Step:
    """One write.

    `compensate` undoes a completed apply.  `cleanup` runs only when apply
    itself raised, and must touch nothing apply did not write.
    """

    name: str
    apply: Callable[[psycopg.Connection], Any]
    compensate: Callable[[psycopg.Connection], Any] | None = None
    cleanup: Callable[[psycopg.Connection], Any] | None = None


class UnitOfWork(ABC):
    name = "abstract"

    @abstractmethod
    def run(self, conn: psycopg.Connection, steps: Sequence[Step]) -> list[Any]:
        ...


class TransactionalUnitOfWork(UnitOfWork):
    name = "transactional"

    def run(self, conn: psycopg.Connection, steps: Sequence[Step]) -> list[Any]:
        results: list[Any] = []
        with conn.transaction():
            for step in steps:
                results.append(step.apply(conn))
        return results


class SequentialUnitOfWork(UnitOfWork):
    name = "sequential"

    def run(self, conn: psycopg.Connection, steps: Sequence[Step]) -> list[Any]:
        results: list[Any] = []
        done: list[Step] = []
        for step in steps:
            try:
                results.append(step.apply(conn))
            except Exception as exc:
                log.error(
                    "Step '%s' failed (%s); compensating %d step(s)",
                    step.name, exc, len(done),
                )
                failures = self._cleanup(step, conn) + self._compensate(done, conn)
                if failures:
                    raise ConsistencyError(
                        f"Step '{step.name}' failed and compensation did not complete: "
                        + "; ".join(failures)
                    ) from exc
                raise
            done.append(step)
        return results

    @staticmethod
    def _cleanup(step: Step, conn: psycopg.Connection) -> list[str]:
        if step.cleanup is None:
            return []
        try:
            step.cleanup(conn)
        except Exception as exc:
            log.error("Cleanup for failed step '%s' failed: %s", step.name, exc)
            return [f"{step.name}: {exc}"]
        return []

    @staticmethod
    def _compensate(steps: Sequence[Step], conn: psycopg.Connection) -> list[str]:
        failures: list[str] = []
        for step in reversed(steps):
            if step.compensate is None:
                continue
            try:
                step.compensate(conn)
            except Exception as exc:
                log.error("Compensation for step '%s' failed: %s", step.name, exc)
                failures.append(f"{step.name}: {exc}")
        return failures


def select_unit_of_work(transactional: bool = True) -> UnitOfWork:
    return TransactionalUnitOfWork() if transactional else SequentialUnitOfWork()


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def find_orphaned_registrations(
    conn: psycopg.Connection,
    grace: timedelta = DEFAULT_ORPHAN_GRACE,
) -> list[tuple[str, str]]:
    """Registrations whose batch row does not exist.

    Rows younger than `grace` are ignored so an in-flight sequential write
    is not mistaken for debris.  Returns (registration_id, batch_reference).
    """
    rows = conn.execute(
        """
        SELECT r.registration_id, r.batch_reference
        FROM registration r
        LEFT JOIN batch b ON b.batch_reference = r.batch_reference
        WHERE b.batch_reference IS NULL
          AND r.created_at < now() - %s
        ORDER BY r.batch_reference, r.registration_id
        """,
        (grace,),
    ).fetchall()
    return [(str(r[0]), str(r[1])) for r in rows]


def find_batches_missing_payment(
    conn: psycopg.Connection,
    grace: timedelta = DEFAULT_ORPHAN_GRACE,
) -> list[str]:
    rows = conn.execute(
        """
        SELECT b.batch_reference
        FROM batch b
        LEFT JOIN payment p ON p.batch_reference = b.batch_reference
        WHERE p.payment_reference IS NULL
          AND b.created_at < now() - %s
        ORDER BY b.batch_reference
        """,
        (grace,),
    ).fetchall()
    return [str(r[0]) for r in rows]


def find_batches_with_missing_registrations(conn: psycopg.Connection) -> list[str]:
    """Batches listing registration ids that no longer exist."""
    rows = conn.execute(
        """
        SELECT b.batch_reference
        FROM batch b
        WHERE EXISTS (
            SELECT 1 FROM unnest(b.registration_ids) AS rid
            LEFT JOIN registration r ON r.registration_id = rid
            WHERE r.registration_id IS NULL
        )
        ORDER BY b.batch_reference
        """
    ).fetchall()
    return [str(r[0]) for r in rows]


def purge_orphaned_registrations(
    conn: psycopg.Connection,
    grace: timedelta = DEFAULT_ORPHAN_GRACE,
) -> int:
    """Delete registrations found by find_orphaned_registrations().

    Caller manages transaction.
    """
    orphans = find_orphaned_registrations(conn, grace)
    if not orphans:
        return 0
    ids = [rid for rid, _ in orphans]
    deleted = conn.execute(
        """
        DELETE FROM registration r
        WHERE r.registration_id = ANY(%s)
          AND NOT EXISTS (
              SELECT 1 FROM batch b WHERE b.batch_reference = r.batch_reference
          )
        """,
        (ids,),
    ).rowcount
    log.warning("Purged %d orphaned registration(s) across %d batch reference(s)",
                deleted, len({b for _, b in orphans}))
    return deleted
