"""crm_import.staging

Staging Store: one batch of matcher output held as reviewable rows.

Operator actions (all scoped to an open batch, run in the caller's
transaction, and lock the batch row first so they serialize with commit,
discard, and each other):

    list_rows                 -- optionally filtered by match_status / selection
    set_selection             -- one row
    set_selection_bulk        -- every row, optionally one match_status
    assign_user               -- one row → manual owner
    bulk_assign_by_owner_name -- every conflict row with that export owner name
    bulk_assign_all_conflicts -- every conflict row
    conflict_owner_names      -- distinct owner names of conflict rows
    batch_stats               -- per-status counts for an open batch

Rules:
  - an unchanged row can never be selected (rejected, not ignored; the
    ck_unchanged_not_selected constraint backs this up)
  - rows already applied by an earlier commit attempt are frozen
  - reassignment goes through matcher.classify, the same rule the matcher used

Depends on: migrations/0003_import_batches.sql (import_staging)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable

import psycopg
from psycopg.types.json import Jsonb

from crm_import.batch_lifecycle import ImportBatch, get_batch, require_open
from crm_import.matcher import StagingRow, classify
from crm_import.normalize import normalize_space
from crm_import.shared import (
    MatchStatus,
    SelectionRejectedError,
    StagingRowNotFoundError,
    UnknownUserError,
    UserMatchStatus,
    user_exists,
)

log = logging.getLogger(__name__)

_ROW_COLS = (
    "id, batch_id, row_number, parsed_company_name, parsed_opportunity_name, "
    "parsed_stage, parsed_close_date, parsed_created_date, parsed_owner_name, "
    "parsed_rating, parsed_next_step, external_id, base_status, match_status, "
    "matched_opportunity_id, matched_user_id, user_match_status, owner_note, "
    "changes, is_selected, applied_at, created_lead_id, created_opportunity_id, raw_data"
)


# ---------------------------------------------------------------------------
# Stored row
# ---------------------------------------------------------------------------

@dataclass
class StagedRow:
    id: str
    batch_id: str
    row_number: int
    company_name: str | None
    opportunity_name: str | None
    stage: str | None
    close_date: date | None
    created_date: date | None
    owner_name: str | None
    rating: str | None
    next_step: str | None
    external_id: str | None
    base_status: MatchStatus
    match_status: MatchStatus
    matched_opportunity_id: str | None
    matched_user_id: str | None
    user_match_status: UserMatchStatus
    owner_note: str | None
    changes: dict[str, dict[str, str | None]]
    is_selected: bool
    applied_at: datetime | None = None
    created_lead_id: str | None = None
    created_opportunity_id: str | None = None
    raw_data: dict[str, str] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "raw_data"}
        d["base_status"] = self.base_status.value
        d["match_status"] = self.match_status.value
        d["user_match_status"] = self.user_match_status.value
        return d


def _id(value: Any) -> str | None:
    return str(value) if value is not None else None


def _row_to_staged(row: tuple) -> StagedRow:
    return StagedRow(
        id=str(row[0]),
        batch_id=str(row[1]),
        row_number=row[2],
        company_name=row[3],
        opportunity_name=row[4],
        stage=row[5],
        close_date=row[6],
        created_date=row[7],
        owner_name=row[8],
        rating=row[9],
        next_step=row[10],
        external_id=row[11],
        base_status=MatchStatus(row[12]),
        match_status=MatchStatus(row[13]),
        matched_opportunity_id=_id(row[14]),
        matched_user_id=_id(row[15]),
        user_match_status=UserMatchStatus(row[16]),
        owner_note=row[17],
        changes=row[18] or {},
        is_selected=row[19],
        applied_at=row[20],
        created_lead_id=_id(row[21]),
        created_opportunity_id=_id(row[22]),
        raw_data=row[23] or {},
    )


@dataclass
class BatchStats:
    total: int = 0
    new: int = 0
    changed: int = 0
    unchanged: int = 0
    conflict: int = 0
    pending: int = 0
    selected: int = 0
    applied: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


# ---------------------------------------------------------------------------
# Insert (used when a batch is staged)
# ---------------------------------------------------------------------------

def insert_staging_rows(
    conn: psycopg.Connection,
    batch_id: str,
    rows: Iterable[StagingRow],
) -> int:
    params = [
        (
            batch_id,
            r.row_number,
            Jsonb(r.parsed.raw),
            r.parsed.company_name,
            r.parsed.opportunity_name,
            r.parsed.stage,
            r.parsed.close_date,
            r.parsed.created_date,
            r.parsed.owner_name,
            r.parsed.rating,
            r.parsed.next_step,
            r.parsed.external_id,
            r.base_status.value,
            r.match_status.value,
            r.matched_opportunity_id,
            r.matched_user_id,
            r.user_match_status.value,
            r.owner_note,
            Jsonb(r.changes) if r.changes else None,
            r.is_selected,
        )
        for r in rows
    ]
    if not params:
        return 0
    with conn.cursor() as cur:
        cur.executemany(
            """
            INSERT INTO import_staging
                (batch_id, row_number, raw_data, parsed_company_name,
                 parsed_opportunity_name, parsed_stage, parsed_close_date,
                 parsed_created_date, parsed_owner_name, parsed_rating,
                 parsed_next_step, external_id, base_status, match_status,
                 matched_opportunity_id, matched_user_id, user_match_status,
                 owner_note, changes, is_selected)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                    %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            params,
        )
    return len(params)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def list_rows(
    conn: psycopg.Connection,
    batch_id: str,
    match_status: MatchStatus | str | None = None,
    selected: bool | None = None,
) -> list[StagedRow]:
    """Rows of a batch in export order, optionally filtered."""
    get_batch(conn, batch_id)
    clauses = ["batch_id = %s"]
    params: list[Any] = [batch_id]
    if match_status is not None:
        clauses.append("match_status = %s")
        params.append(MatchStatus(match_status).value)
    if selected is not None:
        clauses.append("is_selected = %s")
        params.append(selected)
    rows = conn.execute(
        f"SELECT {_ROW_COLS} FROM import_staging WHERE {' AND '.join(clauses)} "
        "ORDER BY row_number",
        params,
    ).fetchall()
    return [_row_to_staged(r) for r in rows]


def get_row(
    conn: psycopg.Connection,
    batch_id: str,
    row_number: int,
    for_update: bool = False,
) -> StagedRow:
    sql = f"SELECT {_ROW_COLS} FROM import_staging WHERE batch_id = %s AND row_number = %s"
    if for_update:
        sql += " FOR UPDATE"
    row = conn.execute(sql, (batch_id, row_number)).fetchone()
    if row is None:
        raise StagingRowNotFoundError(batch_id, row_number)
    return _row_to_staged(row)


def batch_stats(conn: psycopg.Connection, batch_id: str) -> BatchStats:
    get_batch(conn, batch_id)
    rows = conn.execute(
        """
        SELECT match_status,
               count(*),
               count(*) FILTER (WHERE is_selected),
               count(*) FILTER (WHERE applied_at IS NOT NULL)
        FROM import_staging
        WHERE batch_id = %s
        GROUP BY match_status
        """,
        (batch_id,),
    ).fetchall()
    stats = BatchStats()
    for status, count, selected, applied in rows:
        setattr(stats, MatchStatus(status).value, count)
        stats.total += count
        stats.selected += selected
        stats.applied += applied
    return stats


def conflict_owner_names(conn: psycopg.Connection, batch_id: str) -> list[tuple[str | None, int]]:
    """(export owner name, conflict row count), most frequent first."""
    get_batch(conn, batch_id)
    rows = conn.execute(
        """
        SELECT parsed_owner_name, count(*)
        FROM import_staging
        WHERE batch_id = %s AND match_status = 'conflict'
        GROUP BY parsed_owner_name
        ORDER BY count(*) DESC, parsed_owner_name NULLS LAST
        """,
        (batch_id,),
    ).fetchall()
    return [(r[0], r[1]) for r in rows]


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def set_selection(
    conn: psycopg.Connection,
    batch_id: str,
    row_number: int,
    selected: bool,
) -> StagedRow:
    require_open(conn, batch_id)
    row = get_row(conn, batch_id, row_number, for_update=True)
    if row.applied_at is not None:
        raise SelectionRejectedError(
            f"row {row_number} was already applied and can no longer change",
            batch_id=batch_id,
            row_number=row_number,
        )
    if selected and row.match_status is MatchStatus.UNCHANGED:
        raise SelectionRejectedError(
            f"row {row_number} is unchanged; selecting it would not change anything",
            batch_id=batch_id,
            row_number=row_number,
            match_status=row.match_status.value,
        )
    updated = conn.execute(
        f"""
        UPDATE import_staging SET is_selected = %s
        WHERE id = %s
        RETURNING {_ROW_COLS}
        """,
        (selected, row.id),
    ).fetchone()
    return _row_to_staged(updated)


def set_selection_bulk(
    conn: psycopg.Connection,
    batch_id: str,
    selected: bool,
    match_status: MatchStatus | str | None = None,
) -> int:
    """Select / deselect every unapplied row, optionally only one match_status.

    Selecting without a filter leaves unchanged rows unselected; selecting
    with match_status=unchanged is rejected.
    """
    require_open(conn, batch_id)
    status = MatchStatus(match_status) if match_status is not None else None
    if selected and status is MatchStatus.UNCHANGED:
        raise SelectionRejectedError(
            "unchanged rows cannot be selected",
            batch_id=batch_id,
            match_status=status.value,
        )
    clauses = ["batch_id = %s", "applied_at IS NULL", "is_selected <> %s"]
    params: list[Any] = [batch_id, selected]
    if selected:
        clauses.append("match_status <> 'unchanged'")
    if status is not None:
        clauses.append("match_status = %s")
        params.append(status.value)
    count = conn.execute(
        f"UPDATE import_staging SET is_selected = %s WHERE {' AND '.join(clauses)}",
        [selected, *params],
    ).rowcount
    log.debug("batch %s: %s %d rows", batch_id, "selected" if selected else "deselected", count)
    return count


# ---------------------------------------------------------------------------
# Owner assignment
# ---------------------------------------------------------------------------

def _assign(conn: psycopg.Connection, row: StagedRow, user_id: str) -> StagedRow:
    if row.applied_at is not None:
        raise SelectionRejectedError(
            f"row {row.row_number} was already applied and can no longer change",
            batch_id=row.batch_id,
            row_number=row.row_number,
        )
    status = classify(row.base_status, UserMatchStatus.MANUAL, row.stage)
    updated = conn.execute(
        f"""
        UPDATE import_staging
        SET matched_user_id   = %s,
            user_match_status = 'manual',
            owner_note        = NULL,
            match_status      = %s,
            is_selected       = %s
        WHERE id = %s
        RETURNING {_ROW_COLS}
        """,
        (
            user_id,
            status.value,
            row.is_selected and status is not MatchStatus.UNCHANGED,
            row.id,
        ),
    ).fetchone()
    return _row_to_staged(updated)


def _require_user(conn: psycopg.Connection, user_id: str) -> None:
    if not user_exists(conn, user_id):
        raise UnknownUserError(user_id)


def assign_user(
    conn: psycopg.Connection,
    batch_id: str,
    row_number: int,
    user_id: str,
) -> StagedRow:
    """Manually assign an owner to one row and reclassify it."""
    require_open(conn, batch_id)
    _require_user(conn, user_id)
    row = get_row(conn, batch_id, row_number, for_update=True)
    return _assign(conn, row, user_id)


def _assign_conflicts(
    conn: psycopg.Connection,
    batch_id: str,
    user_id: str,
    owner_name: str | None = None,
    by_name: bool = False,
) -> int:
    require_open(conn, batch_id)
    _require_user(conn, user_id)
    sql = (
        f"SELECT {_ROW_COLS} FROM import_staging "
        "WHERE batch_id = %s AND match_status = 'conflict' AND applied_at IS NULL"
    )
    params: list[Any] = [batch_id]
    if by_name:
        sql += " AND parsed_owner_name = %s"
        params.append(owner_name)
    sql += " ORDER BY row_number FOR UPDATE"
    rows = [_row_to_staged(r) for r in conn.execute(sql, params).fetchall()]
    for row in rows:
        _assign(conn, row, user_id)
    log.info("batch %s: assigned %d conflict rows to user %s", batch_id, len(rows), user_id)
    return len(rows)


def bulk_assign_by_owner_name(
    conn: psycopg.Connection,
    batch_id: str,
    owner_name: str,
    user_id: str,
) -> int:
    """Assign every conflict row carrying exactly this export owner name."""
    return _assign_conflicts(
        conn, batch_id, user_id, owner_name=normalize_space(owner_name), by_name=True
    )


def bulk_assign_all_conflicts(conn: psycopg.Connection, batch_id: str, user_id: str) -> int:
    return _assign_conflicts(conn, batch_id, user_id)


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def build_review_report(
    batch: ImportBatch,
    stats: BatchStats,
    rows: list[StagedRow],
    owners: list[tuple[str | None, int]],
) -> str:
    lines = [
        "=" * 60,
        "CRM Import Batch Review",
        f"  batch:  {batch.id} ({batch.status.value})",
        f"  file:   {batch.source_filename}",
        "=" * 60,
        f"  rows total:      {stats.total}",
        f"  new:             {stats.new}",
        f"  changed:         {stats.changed}",
        f"  unchanged:       {stats.unchanged}",
        f"  conflict:        {stats.conflict}",
        f"  pending:         {stats.pending}",
        f"  selected:        {stats.selected}",
        f"  already applied: {stats.applied}",
    ]
    if owners:
        lines.append("\nUnresolved owners:")
        for name, count in owners:
            lines.append(f"  {name or '(blank)'}: {count}")
    if rows:
        lines.append(f"\nRows ({len(rows)}):")
        for r in rows:
            mark = "x" if r.is_selected else " "
            owner = r.owner_name or "-"
            detail = ""
            if r.changes:
                detail = "  " + ", ".join(
                    f"{k}: {v.get('from')!r} -> {v.get('to')!r}" for k, v in r.changes.items()
                )
            lines.append(
                f"  [{mark}] {r.row_number:>4} {r.match_status.value:<9} "
                f"{r.external_id or '-':<12} {r.company_name or '-'} ({owner}){detail}"
            )
    lines.append("=" * 60)
    return "\n".join(lines)
