"""crm_import.commit_engine

Commit Engine: apply the selected rows of an open batch to the permanent
lead / opportunity store.

Order and durability:
    Rows are applied one at a time in export order, each in its own
    transaction.  The first row that fails stops the commit; rows applied
    before it stay applied and the batch stays open.  A retried commit skips
    rows already applied (staging.applied_at), so fixing the failing row and
    committing again finishes the batch.

Per-row semantics:
    new      -- reuse the lead carrying the same external id, or insert one
                tagged with the batch; upsert the opportunity on external_id,
                tagged with the batch.  Unowned auto-eligible rows are inserted
                without user_id and keep the export owner note.
    changed  -- update only the differing tracked columns of the matched
                opportunity; everything else is preserved.  The written
                changes map is recorded in import_batch_change.

Completion:
    When every selected row is applied the batch is completed with
    new / updated / skipped counters computed from all applied rows (this
    attempt and earlier ones) and its staging rows are purged.

The caller hands in an idle connection; this module owns the transaction
boundaries.

Depends on: migrations/0002_core_entities.sql, 0003_import_batches.sql
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import psycopg
from psycopg import pq
from psycopg.types.json import Jsonb

from crm_import.batch_lifecycle import ImportBatch, complete_batch, require_open
from crm_import.matcher import TRACKED_COLUMNS
from crm_import.shared import MatchStatus, RowPersistError, UnresolvedConflictError
from crm_import.staging import StagedRow, get_row, list_rows

log = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

LEAD_SOURCE = "crm_import"


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class CommitResult:
    batch_id: str
    success: bool = False
    total: int = 0
    committed: int = 0
    new: int = 0
    updated: int = 0
    previously_applied: int = 0
    committed_row_numbers: list[int] = field(default_factory=list)
    error: RowPersistError | None = None
    batch: ImportBatch | None = None
    elapsed_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "success": self.success,
            "total": self.total,
            "committed": self.committed,
            "new": self.new,
            "updated": self.updated,
            "previously_applied": self.previously_applied,
            "committed_row_numbers": self.committed_row_numbers,
            "error": self.error.to_dict() if self.error else None,
            "batch_status": self.batch.status.value if self.batch else None,
            "stats_new": self.batch.stats_new if self.batch else None,
            "stats_updated": self.batch.stats_updated if self.batch else None,
            "stats_skipped": self.batch.stats_skipped if self.batch else None,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


# ---------------------------------------------------------------------------
# Progress estimate
# ---------------------------------------------------------------------------

def estimate_remaining_seconds(current: int, total: int, elapsed: float) -> float | None:
    """Average time per completed row × rows left; None before the first row."""
    if current <= 0 or total <= 0:
        return None
    remaining = max(total - current, 0)
    return (elapsed / current) * remaining


def format_remaining(seconds: float | None) -> str:
    if seconds is None:
        return "estimating..."
    if seconds < 60:
        return f"~{max(int(round(seconds)), 0)} seconds remaining"
    return f"~{int(round(seconds / 60))} minutes remaining"


# ---------------------------------------------------------------------------
# Per-row writes
# ---------------------------------------------------------------------------

def _find_lead_by_external_id(conn: psycopg.Connection, external_id: str | None) -> str | None:
    if not external_id:
        return None
    row = conn.execute(
        "SELECT id FROM lead WHERE external_id = %s ORDER BY created_at, id LIMIT 1",
        (external_id,),
    ).fetchone()
    return str(row[0]) if row else None


def _apply_new(
    conn: psycopg.Connection,
    batch_id: str,
    row: StagedRow,
) -> tuple[str | None, str]:
    """Insert lead (unless reusable) + upsert opportunity.

    Returns (created lead id or None when reused, opportunity id).
    """
    created_lead_id = None
    lead_id = _find_lead_by_external_id(conn, row.external_id)
    if lead_id is None:
        lead_row = conn.execute(
            """
            INSERT INTO lead
                (user_id, company_name, lead_source, notes, external_id, import_batch_id)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (row.matched_user_id, row.company_name, LEAD_SOURCE, row.owner_note,
             row.external_id, batch_id),
        ).fetchone()
        lead_id = created_lead_id = str(lead_row[0])

    opp_row = conn.execute(
        """
        INSERT INTO opportunity
            (lead_id, user_id, name, stage, expected_close_date, export_created_date,
             rating, next_step, notes, export_owner_name, external_id, import_batch_id)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (external_id) WHERE external_id IS NOT NULL DO UPDATE SET
            stage = EXCLUDED.stage,
            stage_changed_at = CASE
                WHEN opportunity.stage IS DISTINCT FROM EXCLUDED.stage THEN now()
                ELSE opportunity.stage_changed_at
            END,
            expected_close_date = EXCLUDED.expected_close_date,
            rating = EXCLUDED.rating,
            next_step = EXCLUDED.next_step,
            export_owner_name = EXCLUDED.export_owner_name,
            updated_at = now()
        RETURNING id
        """,
        (lead_id, row.matched_user_id, row.opportunity_name or row.company_name,
         row.stage, row.close_date, row.created_date, row.rating, row.next_step,
         row.owner_note, row.owner_name, row.external_id, batch_id),
    ).fetchone()
    return created_lead_id, str(opp_row[0])


def _apply_changed(conn: psycopg.Connection, batch_id: str, row: StagedRow) -> str:
    if row.matched_opportunity_id is None:
        raise RowPersistError(
            row.row_number, row.external_id, "matched opportunity no longer exists"
        )
    values = {
        "stage": row.stage,
        "close_date": row.close_date,
        "rating": row.rating,
        "next_step": row.next_step,
    }
    sets: list[str] = []
    params: list[Any] = []
    for name in row.changes:
        sets.append(f"{TRACKED_COLUMNS[name]} = %s")
        params.append(values[name])
    if "stage" in row.changes:
        sets.append("stage_changed_at = now()")
    sets.append("updated_at = now()")

    updated = conn.execute(
        f"UPDATE opportunity SET {', '.join(sets)} WHERE id = %s RETURNING id",
        [*params, row.matched_opportunity_id],
    ).fetchone()
    if updated is None:
        raise RowPersistError(
            row.row_number,
            row.external_id,
            f"opportunity {row.matched_opportunity_id} no longer exists",
        )
    conn.execute(
        """
        INSERT INTO import_batch_change (batch_id, opportunity_id, row_number, changes)
        VALUES (%s, %s, %s, %s)
        """,
        (batch_id, row.matched_opportunity_id, row.row_number, Jsonb(row.changes)),
    )
    return row.matched_opportunity_id


def _apply_row(conn: psycopg.Connection, batch_id: str, row: StagedRow) -> bool:
    """Apply one staging row.  Returns False if it was applied concurrently."""
    require_open(conn, batch_id)
    current = get_row(conn, batch_id, row.row_number, for_update=True)
    if current.applied_at is not None:
        return False
    lead_id = None
    if current.match_status is MatchStatus.NEW:
        lead_id, opp_id = _apply_new(conn, batch_id, current)
    else:
        opp_id = _apply_changed(conn, batch_id, current)
    conn.execute(
        """
        UPDATE import_staging
        SET applied_at = now(), created_lead_id = %s, created_opportunity_id = %s
        WHERE id = %s
        """,
        (lead_id, opp_id if current.match_status is MatchStatus.NEW else None, current.id),
    )
    return True


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------

def _complete(conn: psycopg.Connection, batch_id: str) -> ImportBatch:
    with conn.transaction():
        require_open(conn, batch_id)
        total, new, updated = conn.execute(
            """
            SELECT count(*),
                   count(*) FILTER (WHERE applied_at IS NOT NULL AND match_status = 'new'),
                   count(*) FILTER (WHERE applied_at IS NOT NULL AND match_status = 'changed')
            FROM import_staging
            WHERE batch_id = %s
            """,
            (batch_id,),
        ).fetchone()
        return complete_batch(conn, batch_id, new, updated, total - new - updated)


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

def commit_batch(
    conn: psycopg.Connection,
    batch_id: str,
    actor_id: str | None = None,
    on_progress: ProgressCallback | None = None,
) -> CommitResult:
    """Apply every selected new / changed row of an open batch.

    Args:
        conn: Idle psycopg connection (no transaction in progress).
        batch_id: The open batch.
        actor_id: User running the commit (logged only).
        on_progress: Called with (rows done, rows total) before the first row
            and after every applied row.  Observational only.

    Returns:
        CommitResult; success=False with ``error`` set when a row failed.

    Raises:
        UnresolvedConflictError: a selected row is still conflict / pending.
        BatchNotOpenError, BatchNotFoundError.
    """
    if conn.info.transaction_status != pq.TransactionStatus.IDLE:
        raise ValueError("commit_batch needs an idle connection; commit or roll back first")

    started = time.monotonic()
    result = CommitResult(batch_id=batch_id)

    with conn.transaction():
        require_open(conn, batch_id)
        selected = list_rows(conn, batch_id, selected=True)
    unresolved = [
        r.row_number for r in selected
        if r.applied_at is None
        and r.match_status in (MatchStatus.CONFLICT, MatchStatus.PENDING)
    ]
    if unresolved:
        raise UnresolvedConflictError(batch_id, unresolved)

    todo = [
        r for r in selected
        if r.applied_at is None
        and r.match_status in (MatchStatus.NEW, MatchStatus.CHANGED)
    ]
    result.previously_applied = sum(1 for r in selected if r.applied_at is not None)
    result.total = len(todo)
    log.info("committing batch %s: %d rows (actor %s)", batch_id, result.total, actor_id)

    if on_progress is not None:
        on_progress(0, result.total)

    for idx, row in enumerate(todo, start=1):
        try:
            with conn.transaction():
                applied = _apply_row(conn, batch_id, row)
        except psycopg.Error as exc:
            reason = (exc.diag.message_primary if exc.diag else None) or str(exc)
            result.error = RowPersistError(row.row_number, row.external_id, reason)
        except RowPersistError as exc:
            result.error = exc
        if result.error is not None:
            log.error(
                "batch %s: row %d failed, commit stopped after %d rows: %s",
                batch_id, row.row_number, result.committed, result.error.reason,
            )
            result.elapsed_seconds = time.monotonic() - started
            return result

        if applied:
            result.committed += 1
            result.committed_row_numbers.append(row.row_number)
            if row.match_status is MatchStatus.NEW:
                result.new += 1
            else:
                result.updated += 1
        if on_progress is not None:
            on_progress(idx, result.total)

    result.batch = _complete(conn, batch_id)
    result.success = True
    result.elapsed_seconds = time.monotonic() - started
    log.info(
        "batch %s completed: new=%s updated=%s skipped=%s",
        batch_id, result.batch.stats_new, result.batch.stats_updated, result.batch.stats_skipped,
    )
    return result


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def build_commit_report(result: CommitResult) -> str:
    lines = [
        "=" * 60,
        "CRM Import Commit Report",
        f"  batch:   {result.batch_id}",
        f"  success: {result.success}",
        "=" * 60,
        f"  rows to apply:       {result.total}",
        f"  rows committed:      {result.committed}",
        f"    new:               {result.new}",
        f"    updated:           {result.updated}",
        f"  applied previously:  {result.previously_applied}",
    ]
    if result.batch is not None:
        lines += [
            f"  batch status:        {result.batch.status.value}",
            f"  batch new:           {result.batch.stats_new}",
            f"  batch updated:       {result.batch.stats_updated}",
            f"  batch skipped:       {result.batch.stats_skipped}",
        ]
    if result.error is not None:
        lines += [
            "",
            f"FAILED at row {result.error.row_number}"
            + (f" ({result.error.external_id})" if result.error.external_id else ""),
            f"  {result.error.reason}",
            "  The batch is still open. Fix the row (or deselect it) and commit again.",
        ]
    lines.append("=" * 60)
    return "\n".join(lines)
