"""Short-lived validation sessions.

A preview run (validate mode) stores its clean rows under a token so the
following submit can skip re-parsing the upload.  Sessions are scoped to
one school + event, expire after a TTL and are deleted when taken.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

import psycopg
from psycopg.types.json import Jsonb

from registration_etl.event_config import FieldDefinition
from registration_etl.schema_validator import CleanRow
from registration_etl.shared import RowError
from registration_etl.spreadsheet import IngestResult

log = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 1800


@dataclass
class ValidationSession:
    token: str
    school_ref: str
    event_ref: str
    rows: list[CleanRow]
    errors: list[RowError] = field(default_factory=list)
    summary: dict[str, Any] = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def store_validation_session(
    conn: psycopg.Connection,
    school_ref: str,
    event_ref: str,
    result: IngestResult,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
    now: datetime | None = None,
) -> str | None:
    """Cache the clean rows of `result`; return the token, or None if nothing to cache.

    Caller manages transaction.
    """
    if result.aborted or not result.rows:
        return None
    now = now or _utcnow()
    token = str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO validation_session
          (token, school_ref, event_ref, rows, errors, summary, created_at, expires_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (
            token, school_ref, event_ref,
            Jsonb([r.to_dict() for r in result.rows]),
            Jsonb([e.to_dict() for e in result.errors]),
            Jsonb(result.summary.to_dict()),
            now, now + timedelta(seconds=ttl_seconds),
        ),
    )
    log.info("Stored validation session %s (%d rows, ttl=%ds)",
             token, len(result.rows), ttl_seconds)
    return token


def take_validation_session(
    conn: psycopg.Connection,
    token: str,
    school_ref: str,
    event_ref: str,
    fields: Sequence[FieldDefinition],
    now: datetime | None = None,
) -> ValidationSession | None:
    """Delete and return a live session, or None if missing, expired or out of scope.

    Dynamic values are re-coerced from their JSON form using `fields`.
    """
    now = now or _utcnow()
    row = conn.execute(
        """
        DELETE FROM validation_session
        WHERE token = %s
          AND school_ref = %s
          AND event_ref = %s
          AND expires_at > %s
        RETURNING rows, errors, summary
        """,
        (token, school_ref, event_ref, now),
    ).fetchone()
    if row is None:
        log.info("Validation session %s not usable (missing, expired or out of scope)", token)
        return None
    return ValidationSession(
        token=token,
        school_ref=school_ref,
        event_ref=event_ref,
        rows=[CleanRow.from_dict(r, fields) for r in row[0]],
        errors=[RowError.from_dict(e) for e in row[1]],
        summary=dict(row[2] or {}),
    )


def purge_expired_sessions(conn: psycopg.Connection, now: datetime | None = None) -> int:
    """Caller manages transaction."""
    now = now or _utcnow()
    return conn.execute(
        "DELETE FROM validation_session WHERE expires_at <= %s",
        (now,),
    ).rowcount
