"""crm_import.import_crm_export

Unified CLI entrypoint for CRM export reconciliation, plus the staging
orchestration (parse → match → open batch → stage rows).

Modes (--mode):
  stage     -- parse an export, match it, open a batch and stage its rows
  review    -- list staged rows, per-status counts and unresolved owners
  select    -- select / deselect one row or many
  assign    -- assign an owner to one row, every row of one export owner,
              or every conflict row
  commit    -- apply the selected rows; completes the batch on success
  discard   -- abandon an open batch
  rollback  -- undo a completed batch
  history   -- list batches, newest first

Usage:
    python -m crm_import.import_crm_export \\
        --mode stage \\
        --db-dsn "$DB_DSN" \\
        --csv-path "exports/opportunities_2025-03.csv" \\
        --actor-id "<user uuid>"

    python -m crm_import.import_crm_export --mode assign \\
        --batch-id "<batch uuid>" --owner-name "Hans Müller" --user-id "<user uuid>"

    python -m crm_import.import_crm_export --mode commit \\
        --batch-id "<batch uuid>" --actor-id "<user uuid>"
"""

from __future__ import annotations

import hashlib
import logging
import sys
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import click
import psycopg

from crm_import.batch_lifecycle import (
    ImportBatch,
    create_batch,
    discard_batch,
    get_batch,
    get_open_batch,
    list_batches,
)
from crm_import.commit_engine import (
    build_commit_report,
    commit_batch,
    estimate_remaining_seconds,
    format_remaining,
)
from crm_import.export_config import (
    TERMINAL_STAGES,
    ExportConfig,
    ExportConfigValidationError,
    load_export_config,
)
from crm_import.matcher import match_rows
from crm_import.record_parser import parse_export
from crm_import.rollback_engine import build_rollback_report, rollback_batch
from crm_import.shared import (
    ImportPipelineError,
    MatchStatus,
    StageCounters,
    load_existing_opportunities,
    load_user_directory,
    write_run_report,
)
from crm_import.staging import (
    assign_user,
    batch_stats,
    build_review_report,
    bulk_assign_all_conflicts,
    bulk_assign_by_owner_name,
    conflict_owner_names,
    insert_staging_rows,
    list_rows,
    set_selection,
    set_selection_bulk,
)

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Staging orchestration
# ---------------------------------------------------------------------------

def stage_export(
    conn: psycopg.Connection,
    raw: bytes,
    source_filename: str,
    created_by: str | None,
    encoding: str | None = None,
    config: ExportConfig | None = None,
) -> tuple[ImportBatch, StageCounters]:
    """Parse, match and stage one export as a new open batch.

    Parsing happens before any database write, so a broken export never
    leaves a batch behind.  Runs in the caller's transaction.

    Raises:
        EncodingError, SchemaError, MalformedRowError, EmptyExportError,
        OpenBatchExistsError.
    """
    parsed = parse_export(raw, encoding=encoding, config=config)
    ctrs = StageCounters(
        rows_read=parsed.rows_read,
        rows_skipped_blank=parsed.rows_skipped_blank,
        encoding=parsed.encoding,
    )
    ctrs.warnings.extend(parsed.warnings)

    users = load_user_directory(conn)
    existing = load_existing_opportunities(conn)
    terminal = config.terminal_stages if config is not None else TERMINAL_STAGES
    staged = match_rows(parsed.rows, users, existing, terminal)

    for row in staged:
        ctrs.rows_staged += 1
        if row.match_status is MatchStatus.NEW:
            ctrs.rows_new += 1
        elif row.match_status is MatchStatus.CHANGED:
            ctrs.rows_changed += 1
        elif row.match_status is MatchStatus.UNCHANGED:
            ctrs.rows_unchanged += 1
        elif row.match_status is MatchStatus.CONFLICT:
            ctrs.rows_conflict += 1
        if row.auto_eligible:
            ctrs.rows_auto_eligible += 1
        if row.parsed.external_id is None:
            ctrs.rows_without_external_id += 1
            ctrs.warnings.append(
                f"row {row.row_number}: no external id in link column; can only be new"
            )

    batch = create_batch(
        conn,
        source_filename,
        created_by,
        content_hash=hashlib.sha256(raw).hexdigest(),
        stats_total=ctrs.rows_staged,
        stats_conflicts=ctrs.rows_conflict,
    )
    insert_staging_rows(conn, batch.id, staged)
    log.info("staged %d rows from %s into batch %s", ctrs.rows_staged, source_filename, batch.id)
    return batch, ctrs


def build_stage_report(ctrs: StageCounters, batch: ImportBatch, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        "CRM Export Staging Report",
        f"  batch:    {batch.id}",
        f"  file:     {batch.source_filename}",
        f"  encoding: {ctrs.encoding}",
        f"  dry_run:  {dry_run}",
        "=" * 60,
        f"  rows read:              {ctrs.rows_read}",
        f"  rows skipped (blank):   {ctrs.rows_skipped_blank}",
        f"  rows staged:            {ctrs.rows_staged}",
        f"    new:                  {ctrs.rows_new}",
        f"      without owner:      {ctrs.rows_auto_eligible}",
        f"    changed:              {ctrs.rows_changed}",
        f"    unchanged:            {ctrs.rows_unchanged}",
        f"    conflict:             {ctrs.rows_conflict}",
        f"  rows without ext. id:   {ctrs.rows_without_external_id}",
    ]
    if ctrs.warnings:
        lines.append(f"\nWarnings ({len(ctrs.warnings)}):")
        for w in ctrs.warnings[:20]:
            lines.append(f"  {w}")
        if len(ctrs.warnings) > 20:
            lines.append(f"  ... and {len(ctrs.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)


def build_history_report(batches: list[ImportBatch]) -> str:
    lines = ["=" * 60, "CRM Import Batch History", "=" * 60]
    if not batches:
        lines.append("  (no batches)")
    for b in batches:
        created = b.created_at.strftime("%Y-%m-%d %H:%M") if b.created_at else "-"
        lines.append(
            f"  {created}  {b.status.value:<11} {b.id}  {b.source_filename}"
            f"  by {b.created_by_name or '-'}"
        )
        if b.stats_new is not None:
            lines.append(
                f"      new={b.stats_new} updated={b.stats_updated} skipped={b.stats_skipped}"
            )
        if b.rolled_back_at is not None:
            lines.append(
                f"      rolled back {b.rolled_back_at:%Y-%m-%d %H:%M}"
                f" by {b.rolled_back_by_name or '-'}"
            )
    lines.append("=" * 60)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# CLI helpers
# ---------------------------------------------------------------------------

def _validate_flags(mode: str, run_id: str, required: dict[str, Any]) -> None:
    missing = [k for k, v in required.items() if v is None]
    if missing:
        click.echo(
            f"[{run_id}] FATAL: {mode} mode requires: {', '.join(missing)}",
            err=True,
        )
        sys.exit(1)


def _in_transaction(
    db_dsn: str,
    run_id: str,
    dry_run: bool,
    fn: Callable[[psycopg.Connection], Any],
) -> Any:
    """Run fn in one transaction; commit unless dry_run."""
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        result = fn(conn)
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] DRY RUN: rolled back.")
        else:
            conn.commit()
            click.echo(f"[{run_id}] Committed.")
        return result
    except Exception:
        if not conn.closed:
            conn.rollback()
        raise
    finally:
        conn.close()


def _read_only(db_dsn: str, fn: Callable[[psycopg.Connection], Any]) -> Any:
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        return fn(conn)
    finally:
        if not conn.closed:
            conn.rollback()
        conn.close()


def _resolve_batch_id(conn: psycopg.Connection, batch_id: str | None, run_id: str) -> str:
    if batch_id is not None:
        return batch_id
    batch = get_open_batch(conn)
    if batch is None:
        click.echo(f"[{run_id}] FATAL: no open batch; pass --batch-id", err=True)
        sys.exit(1)
    return batch.id


# ---------------------------------------------------------------------------
# Unified CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="stage",
    type=click.Choice([
        "stage", "review", "select", "assign",
        "commit", "discard", "rollback", "history",
    ]),
    show_default=True,
    help="Pipeline step",
)
@click.option("--db-dsn", required=True, envvar="DB_DSN", help="PostgreSQL DSN (env DB_DSN)")
# stage flags
@click.option("--csv-path", default=None, type=click.Path(), help="[stage] CRM export file")
@click.option("--encoding", default=None, help="[stage] Declared encoding (default: auto-detect)")
@click.option(
    "--config-path",
    default=None,
    type=click.Path(),
    help="[stage] Export profile YAML (default: built-in profile)",
)
# batch / row addressing
@click.option("--actor-id", default=None, help="[stage|commit|discard|rollback] Acting user id")
@click.option("--batch-id", default=None, help="Batch id (default: the open batch)")
@click.option("--row-number", default=None, type=int, help="[select|assign] Staging row number")
@click.option(
    "--match-status",
    default=None,
    type=click.Choice([s.value for s in MatchStatus]),
    help="[review|select] Restrict to one match status",
)
@click.option("--selected-only", is_flag=True, default=False, help="[review] Only selected rows")
@click.option("--select/--deselect", "select", default=True, help="[select] Target selection state")
@click.option("--user-id", default=None, help="[assign] User to assign")
@click.option("--owner-name", default=None, help="[assign] Export owner name to bulk-assign")
@click.option("--all-conflicts", is_flag=True, default=False, help="[assign] Assign every conflict row")
# shared
@click.option("--dry-run", is_flag=True, default=False, help="Roll back instead of committing")
@click.option("--run-id", default=None, help="Run id for logs and the JSON report")
@click.option("--verbose", is_flag=True, default=False, help="DEBUG logging")
def main(
    mode: str,
    db_dsn: str,
    csv_path: str | None,
    encoding: str | None,
    config_path: str | None,
    actor_id: str | None,
    batch_id: str | None,
    row_number: int | None,
    match_status: str | None,
    selected_only: bool,
    select: bool,
    user_id: str | None,
    owner_name: str | None,
    all_conflicts: bool,
    dry_run: bool,
    run_id: str | None,
    verbose: bool,
) -> None:
    """Unified CRM export reconciliation CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    try:
        if mode == "stage":
            _run_stage(run_id, started_at, db_dsn, csv_path, encoding, config_path,
                       actor_id, dry_run)
        elif mode == "review":
            _run_review(run_id, db_dsn, batch_id, match_status, selected_only)
        elif mode == "select":
            _run_select(run_id, started_at, db_dsn, batch_id, row_number,
                        match_status, select, dry_run)
        elif mode == "assign":
            _run_assign(run_id, started_at, db_dsn, batch_id, user_id, row_number,
                        owner_name, all_conflicts, dry_run)
        elif mode == "commit":
            _run_commit(run_id, started_at, db_dsn, batch_id, actor_id)
        elif mode == "discard":
            _run_discard(run_id, started_at, db_dsn, batch_id, actor_id, dry_run)
        elif mode == "rollback":
            _run_rollback(run_id, started_at, db_dsn, batch_id, actor_id, dry_run)
        else:
            click.echo(build_history_report(_read_only(db_dsn, list_batches)))
    except ImportPipelineError as exc:
        click.echo(f"[{run_id}] ERROR: {exc.message}", err=True)
        if exc.detail:
            click.echo(f"[{run_id}] detail: {exc.to_dict()}", err=True)
        sys.exit(1)

    click.echo(f"[{run_id}] Done.")


# ---------------------------------------------------------------------------
# Mode runners
# ---------------------------------------------------------------------------

def _run_stage(
    run_id: str,
    started_at: str,
    db_dsn: str,
    csv_path: str | None,
    encoding: str | None,
    config_path: str | None,
    actor_id: str | None,
    dry_run: bool,
) -> None:
    _validate_flags("stage", run_id, {"--csv-path": csv_path, "--actor-id": actor_id})
    try:
        config = load_export_config(Path(config_path) if config_path else None)
    except (ExportConfigValidationError, FileNotFoundError) as exc:
        click.echo(f"[{run_id}] FATAL: export profile: {exc}", err=True)
        sys.exit(1)

    csv_file = Path(csv_path)  # type: ignore[arg-type]
    raw = csv_file.read_bytes()
    click.echo(
        f"[{run_id}] stage file={csv_file.name} bytes={len(raw)} "
        f"profile={config.version}"
    )

    batch, ctrs = _in_transaction(
        db_dsn, run_id, dry_run,
        lambda conn: stage_export(conn, raw, csv_file.name, actor_id,
                                  encoding=encoding, config=config),
    )
    click.echo(build_stage_report(ctrs, batch, dry_run=dry_run))
    report_path = write_run_report(
        run_id, started_at, "stage", dry_run,
        {"csv_path": str(csv_file), "batch_id": batch.id,
         "config_version": config.version, "config_hash": config.yaml_hash},
        ctrs,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


def _run_review(
    run_id: str,
    db_dsn: str,
    batch_id: str | None,
    match_status: str | None,
    selected_only: bool,
) -> None:
    def _review(conn: psycopg.Connection) -> str:
        bid = _resolve_batch_id(conn, batch_id, run_id)
        batch = get_batch(conn, bid)
        rows = list_rows(conn, bid, match_status=match_status,
                         selected=True if selected_only else None)
        return build_review_report(batch, batch_stats(conn, bid), rows,
                                   conflict_owner_names(conn, bid))

    click.echo(_read_only(db_dsn, _review))


def _run_select(
    run_id: str,
    started_at: str,
    db_dsn: str,
    batch_id: str | None,
    row_number: int | None,
    match_status: str | None,
    select: bool,
    dry_run: bool,
) -> None:
    def _apply(conn: psycopg.Connection) -> int:
        bid = _resolve_batch_id(conn, batch_id, run_id)
        if row_number is not None:
            set_selection(conn, bid, row_number, select)
            return 1
        return set_selection_bulk(conn, bid, select, match_status=match_status)

    count = _in_transaction(db_dsn, run_id, dry_run, _apply)
    click.echo(f"[{run_id}] {'Selected' if select else 'Deselected'} {count} row(s).")
    write_run_report(
        run_id, started_at, "select", dry_run,
        {"batch_id": batch_id, "row_number": row_number, "match_status": match_status,
         "select": select, "rows_changed": count},
        None,
    )


def _run_assign(
    run_id: str,
    started_at: str,
    db_dsn: str,
    batch_id: str | None,
    user_id: str | None,
    row_number: int | None,
    owner_name: str | None,
    all_conflicts: bool,
    dry_run: bool,
) -> None:
    _validate_flags("assign", run_id, {"--user-id": user_id})
    targets = [t for t in (row_number is not None, owner_name is not None, all_conflicts) if t]
    if len(targets) != 1:
        click.echo(
            f"[{run_id}] FATAL: assign mode requires exactly one of "
            "--row-number, --owner-name, --all-conflicts",
            err=True,
        )
        sys.exit(1)

    def _apply(conn: psycopg.Connection) -> int:
        bid = _resolve_batch_id(conn, batch_id, run_id)
        if row_number is not None:
            assign_user(conn, bid, row_number, user_id)  # type: ignore[arg-type]
            return 1
        if owner_name is not None:
            return bulk_assign_by_owner_name(conn, bid, owner_name, user_id)  # type: ignore[arg-type]
        return bulk_assign_all_conflicts(conn, bid, user_id)  # type: ignore[arg-type]

    count = _in_transaction(db_dsn, run_id, dry_run, _apply)
    click.echo(f"[{run_id}] Assigned {count} row(s) to user {user_id}.")
    write_run_report(
        run_id, started_at, "assign", dry_run,
        {"batch_id": batch_id, "user_id": user_id, "row_number": row_number,
         "owner_name": owner_name, "all_conflicts": all_conflicts, "rows_changed": count},
        None,
    )


def _run_commit(
    run_id: str,
    started_at: str,
    db_dsn: str,
    batch_id: str | None,
    actor_id: str | None,
) -> None:
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        bid = _resolve_batch_id(conn, batch_id, run_id)
        conn.rollback()
        t0 = time.monotonic()

        def _progress(current: int, total: int) -> None:
            eta = estimate_remaining_seconds(current, total, time.monotonic() - t0)
            click.echo(f"[{run_id}] {current}/{total} ({format_remaining(eta)})")

        result = commit_batch(conn, bid, actor_id=actor_id, on_progress=_progress)
    finally:
        conn.close()

    click.echo(build_commit_report(result))
    report_path = write_run_report(
        run_id, started_at, "commit", False, {"batch_id": bid, "actor_id": actor_id}, result,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if not result.success:
        click.echo(
            f"[{run_id}] Commit stopped at row {result.error.row_number}, exiting non-zero",  # type: ignore[union-attr]
            err=True,
        )
        sys.exit(1)


def _run_discard(
    run_id: str,
    started_at: str,
    db_dsn: str,
    batch_id: str | None,
    actor_id: str | None,
    dry_run: bool,
) -> None:
    _validate_flags("discard", run_id, {"--batch-id": batch_id})
    purged = _in_transaction(
        db_dsn, run_id, dry_run, lambda conn: discard_batch(conn, batch_id)  # type: ignore[arg-type]
    )
    click.echo(f"[{run_id}] Batch {batch_id} discarded ({purged} staging rows purged).")
    write_run_report(
        run_id, started_at, "discard", dry_run,
        {"batch_id": batch_id, "actor_id": actor_id, "staging_rows_purged": purged},
        None,
    )


def _run_rollback(
    run_id: str,
    started_at: str,
    db_dsn: str,
    batch_id: str | None,
    actor_id: str | None,
    dry_run: bool,
) -> None:
    _validate_flags("rollback", run_id, {"--batch-id": batch_id, "--actor-id": actor_id})
    ctrs = _in_transaction(
        db_dsn, run_id, dry_run,
        lambda conn: rollback_batch(conn, batch_id, actor_id),  # type: ignore[arg-type]
    )
    click.echo(build_rollback_report(ctrs, dry_run=dry_run))
    report_path = write_run_report(
        run_id, started_at, "rollback", dry_run, {"batch_id": batch_id, "actor_id": actor_id}, ctrs,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


if __name__ == "__main__":
    main()
