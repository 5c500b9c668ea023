"""crm_import.batch_lifecycle

Batch Lifecycle Manager.

States:
    open ──complete──▶ completed ──rollback──▶ rolled_back
      └───discard───▶ discarded

discarded and rolled_back are terminal; completed only moves on to
rolled_back.  Any other change raises InvalidTransition (AlreadyRolledBack
for a second rollback).  The same table is enforced in the database by the
trg_import_batch_transition trigger.

Single open batch:
    Guaranteed by the partial unique index uq_import_batch_single_open, not by
    a read-then-insert.  create_batch inserts under a SAVEPOINT and maps the
    unique violation to OpenBatchExistsError naming the batch that won.

All functions run inside the caller's transaction; the caller commits.

Depends on: migrations/0003_import_batches.sql
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import psycopg
import psycopg.errors

from crm_import.shared import (
    AlreadyRolledBack,
    BatchNotFoundError,
    BatchNotOpenError,
    BatchStatus,
    InvalidTransition,
    OpenBatchExistsError,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ALLOWED_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.OPEN:        frozenset({BatchStatus.COMPLETED, BatchStatus.DISCARDED}),
    BatchStatus.COMPLETED:   frozenset({BatchStatus.ROLLED_BACK}),
    BatchStatus.DISCARDED:   frozenset(),
    BatchStatus.ROLLED_BACK: frozenset(),
}

SINGLE_OPEN_CONSTRAINT = "uq_import_batch_single_open"

_BATCH_COLS = (
    "id, source_filename, source_type, content_hash, status, created_at, created_by, "
    "completed_at, discarded_at, rolled_back_at, rolled_back_by, "
    "stats_total, stats_conflicts, stats_new, stats_updated, stats_skipped"
)


# ---------------------------------------------------------------------------
# ImportBatch record
# ---------------------------------------------------------------------------

@dataclass
class ImportBatch:
    id: str
    source_filename: str
    source_type: str
    content_hash: str | None
    status: BatchStatus
    created_at: datetime
    created_by: str | None
    completed_at: datetime | None = None
    discarded_at: datetime | None = None
    rolled_back_at: datetime | None = None
    rolled_back_by: str | None = None
    stats_total: int = 0
    stats_conflicts: int = 0
    stats_new: int | None = None
    stats_updated: int | None = None
    stats_skipped: int | None = None
    created_by_name: str | None = None
    rolled_back_by_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = dict(self.__dict__)
        d["status"] = self.status.value
        return d


def _row_to_batch(row: tuple, names: tuple[str | None, str | None] = (None, None)) -> ImportBatch:
    def _id(v: Any) -> str | None:
        return str(v) if v is not None else None

    return ImportBatch(
        id=str(row[0]),
        source_filename=row[1],
        source_type=row[2],
        content_hash=row[3],
        status=BatchStatus(row[4]),
        created_at=row[5],
        created_by=_id(row[6]),
        completed_at=row[7],
        discarded_at=row[8],
        rolled_back_at=row[9],
        rolled_back_by=_id(row[10]),
        stats_total=row[11],
        stats_conflicts=row[12],
        stats_new=row[13],
        stats_updated=row[14],
        stats_skipped=row[15],
        created_by_name=names[0],
        rolled_back_by_name=names[1],
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_batch(conn: psycopg.Connection, batch_id: str, for_update: bool = False) -> ImportBatch:
    """Fetch one batch; ``for_update`` locks it for the rest of the transaction."""
    sql = f"SELECT {_BATCH_COLS} FROM import_batch WHERE id = %s"
    if for_update:
        sql += " FOR UPDATE"
    row = conn.execute(sql, (batch_id,)).fetchone()
    if row is None:
        raise BatchNotFoundError(batch_id)
    return _row_to_batch(row)


def get_open_batch(conn: psycopg.Connection) -> ImportBatch | None:
    row = conn.execute(
        f"SELECT {_BATCH_COLS} FROM import_batch WHERE status = 'open'"
    ).fetchone()
    return _row_to_batch(row) if row is not None else None


def require_open(conn: psycopg.Connection, batch_id: str) -> ImportBatch:
    """Lock the batch and fail with BatchNotOpenError unless it is open."""
    batch = get_batch(conn, batch_id, for_update=True)
    if batch.status is not BatchStatus.OPEN:
        raise BatchNotOpenError(batch_id, batch.status.value)
    return batch


def list_batches(conn: psycopg.Connection, limit: int = 50) -> list[ImportBatch]:
    """Batch history, newest first, with creator / rollback actor names."""
    cols = ", ".join(f"b.{c.strip()}" for c in _BATCH_COLS.split(","))
    rows = conn.execute(
        f"""
        SELECT {cols}, cu.name, ru.name
        FROM import_batch b
        LEFT JOIN users cu ON cu.id = b.created_by
        LEFT JOIN users ru ON ru.id = b.rolled_back_by
        ORDER BY b.created_at DESC, b.id
        LIMIT %s
        """,
        (limit,),
    ).fetchall()
    return [_row_to_batch(r[:16], (r[16], r[17])) for r in rows]


# ---------------------------------------------------------------------------
# Transition guard
# ---------------------------------------------------------------------------

def check_transition(batch_id: str, from_status: BatchStatus, to_status: BatchStatus) -> None:
    from_status = BatchStatus(from_status)
    to_status = BatchStatus(to_status)
    if to_status is BatchStatus.ROLLED_BACK and from_status is BatchStatus.ROLLED_BACK:
        raise AlreadyRolledBack(batch_id)
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise InvalidTransition(batch_id, from_status.value, to_status.value)


def _transition(
    conn: psycopg.Connection,
    batch_id: str,
    to_status: BatchStatus,
    set_sql: str = "",
    params: tuple = (),
) -> ImportBatch:
    batch = get_batch(conn, batch_id, for_update=True)
    check_transition(batch_id, batch.status, to_status)
    extra = f", {set_sql}" if set_sql else ""
    row = conn.execute(
        f"""
        UPDATE import_batch
        SET status = %s{extra}
        WHERE id = %s AND status = %s
        RETURNING {_BATCH_COLS}
        """,
        (to_status.value, *params, batch_id, batch.status.value),
    ).fetchone()
    if row is None:
        raise InvalidTransition(batch_id, batch.status.value, to_status.value)
    log.info("import batch %s: %s -> %s", batch_id, batch.status.value, to_status.value)
    return _row_to_batch(row)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

def create_batch(
    conn: psycopg.Connection,
    source_filename: str,
    created_by: str | None,
    *,
    source_type: str = "crm_export",
    content_hash: str | None = None,
    stats_total: int = 0,
    stats_conflicts: int = 0,
) -> ImportBatch:
    """Insert a new open batch.

    Raises:
        OpenBatchExistsError: another batch is open (including one committed by
            a concurrent caller while this insert waited on the index).
    """
    conn.execute("SAVEPOINT import_batch_create")
    try:
        row = conn.execute(
            f"""
            INSERT INTO import_batch
                (source_filename, source_type, content_hash, status, created_by,
                 stats_total, stats_conflicts)
            VALUES (%s, %s, %s, 'open', %s, %s, %s)
            RETURNING {_BATCH_COLS}
            """,
            (source_filename, source_type, content_hash, created_by,
             stats_total, stats_conflicts),
        ).fetchone()
    except psycopg.errors.UniqueViolation as exc:
        conn.execute("ROLLBACK TO SAVEPOINT import_batch_create")
        if exc.diag.constraint_name != SINGLE_OPEN_CONSTRAINT:
            raise
        existing = get_open_batch(conn)
        log.warning(
            "refused to open a batch for %s: batch %s is already open",
            source_filename, existing.id if existing else "?",
        )
        raise OpenBatchExistsError(existing.id if existing else None) from exc
    conn.execute("RELEASE SAVEPOINT import_batch_create")
    batch = _row_to_batch(row)
    log.info("opened import batch %s for %s", batch.id, source_filename)
    return batch


def discard_batch(conn: psycopg.Connection, batch_id: str) -> int:
    """Abandon an open batch: purge its staging rows, mark it discarded.

    Returns the number of staging rows purged.  Never touches the permanent
    store.
    """
    batch = get_batch(conn, batch_id, for_update=True)
    check_transition(batch_id, batch.status, BatchStatus.DISCARDED)
    purged = conn.execute(
        "DELETE FROM import_staging WHERE batch_id = %s", (batch_id,)
    ).rowcount
    _transition(conn, batch_id, BatchStatus.DISCARDED, "discarded_at = now()")
    log.info("discarded import batch %s (%d staging rows purged)", batch_id, purged)
    return purged


def complete_batch(
    conn: psycopg.Connection,
    batch_id: str,
    stats_new: int,
    stats_updated: int,
    stats_skipped: int,
) -> ImportBatch:
    """Final step of a successful commit: store counters, drop staging rows."""
    batch = get_batch(conn, batch_id, for_update=True)
    check_transition(batch_id, batch.status, BatchStatus.COMPLETED)
    conn.execute("DELETE FROM import_staging WHERE batch_id = %s", (batch_id,))
    return _transition(
        conn,
        batch_id,
        BatchStatus.COMPLETED,
        "completed_at = now(), stats_new = %s, stats_updated = %s, stats_skipped = %s",
        (stats_new, stats_updated, stats_skipped),
    )


def mark_rolled_back(conn: psycopg.Connection, batch_id: str, actor_id: str | None) -> ImportBatch:
    return _transition(
        conn,
        batch_id,
        BatchStatus.ROLLED_BACK,
        "rolled_back_at = now(), rolled_back_by = %s",
        (actor_id,),
    )
