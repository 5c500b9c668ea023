"""crm_import.rollback_engine

Rollback Engine: undo a completed batch.

Deletes every opportunity and lead tagged with the batch id.  Go-Live records
pointing at a deleted opportunity or lead are decoupled (reference set to
NULL) and never deleted.

Each record is removed under its own SAVEPOINT; a record that cannot be
removed (e.g. another opportunity still points at the lead) is reported and
the rollback carries on.  The batch is marked rolled_back at the end
regardless, since the commit it compensates already happened.

Updates made to pre-existing opportunities (changed rows) are not reverted.
Their count is reported as updates_not_reverted; the written values are in
import_batch_change.

Runs inside the caller's transaction; the caller commits (or rolls back for
a dry run).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import psycopg

from crm_import.batch_lifecycle import (
    ImportBatch,
    check_transition,
    get_batch,
    mark_rolled_back,
)
from crm_import.shared import BatchStatus

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class RollbackCounters:
    batch_id: str
    leads_deleted: int = 0
    opportunities_deleted: int = 0
    go_lives_decoupled: int = 0
    updates_not_reverted: int = 0
    record_errors: int = 0
    batch: ImportBatch | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "leads_deleted": self.leads_deleted,
            "opportunities_deleted": self.opportunities_deleted,
            "go_lives_decoupled": self.go_lives_decoupled,
            "updates_not_reverted": self.updates_not_reverted,
            "record_errors": self.record_errors,
            "batch_status": self.batch.status.value if self.batch else None,
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# Per-record removal
# ---------------------------------------------------------------------------

_DECOUPLE_SQL = {
    "opportunity": "UPDATE go_live SET opportunity_id = NULL WHERE opportunity_id = %s RETURNING id",
    "lead":        "UPDATE go_live SET lead_id = NULL WHERE lead_id = %s RETURNING id",
}


def _remove_record(
    conn: psycopg.Connection,
    table: str,
    record_id: str,
    sp: str,
    decoupled: set[str],
    ctrs: RollbackCounters,
) -> bool:
    """Decouple Go-Lives then delete one record.  Returns True if deleted."""
    conn.execute(f"SAVEPOINT {sp}")
    try:
        go_lives = conn.execute(_DECOUPLE_SQL[table], (record_id,)).fetchall()
        deleted = conn.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,)).rowcount
        conn.execute(f"RELEASE SAVEPOINT {sp}")
    except psycopg.Error as exc:
        conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
        reason = (exc.diag.message_primary if exc.diag else None) or str(exc)
        ctrs.record_errors += 1
        ctrs.warnings.append(f"{table} {record_id}: {reason}")
        log.warning("rollback of batch %s: %s %s not deleted: %s",
                    ctrs.batch_id, table, record_id, reason)
        return False
    decoupled.update(str(r[0]) for r in go_lives)
    if not deleted:
        ctrs.warnings.append(f"{table} {record_id}: already deleted")
        return False
    return True


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

def rollback_batch(
    conn: psycopg.Connection,
    batch_id: str,
    actor_id: str | None,
) -> RollbackCounters:
    """Delete the records a completed batch created and mark it rolled_back.

    Raises:
        AlreadyRolledBack: the batch was rolled back before.
        InvalidTransition: the batch is open or discarded.
        BatchNotFoundError.
    """
    batch = get_batch(conn, batch_id, for_update=True)
    check_transition(batch_id, batch.status, BatchStatus.ROLLED_BACK)

    ctrs = RollbackCounters(batch_id=batch_id)
    ctrs.updates_not_reverted = conn.execute(
        "SELECT count(*) FROM import_batch_change WHERE batch_id = %s", (batch_id,)
    ).fetchone()[0]

    decoupled: set[str] = set()
    opp_ids = [
        str(r[0]) for r in conn.execute(
            "SELECT id FROM opportunity WHERE import_batch_id = %s ORDER BY created_at, id",
            (batch_id,),
        ).fetchall()
    ]
    for idx, opp_id in enumerate(opp_ids):
        if _remove_record(conn, "opportunity", opp_id, f"rb_opp_{idx}", decoupled, ctrs):
            ctrs.opportunities_deleted += 1

    lead_ids = [
        str(r[0]) for r in conn.execute(
            "SELECT id FROM lead WHERE import_batch_id = %s ORDER BY created_at, id",
            (batch_id,),
        ).fetchall()
    ]
    for idx, lead_id in enumerate(lead_ids):
        if _remove_record(conn, "lead", lead_id, f"rb_lead_{idx}", decoupled, ctrs):
            ctrs.leads_deleted += 1

    ctrs.go_lives_decoupled = len(decoupled)
    ctrs.batch = mark_rolled_back(conn, batch_id, actor_id)
    log.info(
        "rolled back batch %s: %d opportunities, %d leads deleted, %d go-lives decoupled",
        batch_id, ctrs.opportunities_deleted, ctrs.leads_deleted, ctrs.go_lives_decoupled,
    )
    return ctrs


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def build_rollback_report(ctrs: RollbackCounters, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        "CRM Import Rollback Report",
        f"  batch:   {ctrs.batch_id}",
        f"  dry_run: {dry_run}",
        "=" * 60,
        f"  opportunities deleted:  {ctrs.opportunities_deleted}",
        f"  leads deleted:          {ctrs.leads_deleted}",
        f"  go-lives decoupled:     {ctrs.go_lives_decoupled}",
        f"  updates not reverted:   {ctrs.updates_not_reverted}",
        f"  record errors:          {ctrs.record_errors}",
    ]
    if ctrs.warnings:
        lines.append(f"\nWarnings ({len(ctrs.warnings)}):")
        for w in ctrs.warnings[:20]:
            lines.append(f"  {w}")
        if len(ctrs.warnings) > 20:
            lines.append(f"  ... and {len(ctrs.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)
