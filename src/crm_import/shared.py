"""crm_import.shared

Shared types used across the import pipeline: the exception taxonomy,
closed status enumerations, directory / permanent-store lookups handed to the
matcher, and report-writing support.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import psycopg


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ImportPipelineError(Exception):
    """Base class for every operator-facing pipeline error.

    ``detail`` carries structured context (row number, field, batch id) so an
    operator can fix the export or a mis-assignment without guessing.
    """

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = {k: v for k, v in detail.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message, **self.detail}


class EncodingError(ImportPipelineError):
    """Raised when the export bytes cannot be decoded with any allowed encoding."""


class SchemaError(ImportPipelineError):
    """Raised when a required column is missing from the export header."""

    def __init__(self, missing_columns: list[str], headers: list[str]) -> None:
        super().__init__(
            f"export is missing required column(s): {', '.join(missing_columns)}",
            missing_columns=missing_columns,
            headers=headers,
        )
        self.missing_columns = missing_columns


class MalformedRowError(ImportPipelineError):
    """Raised when a data row cannot be split into the header's columns."""

    def __init__(self, row_number: int, reason: str, line_number: int | None = None) -> None:
        super().__init__(
            f"row {row_number}: {reason}",
            row_number=row_number,
            line_number=line_number,
            reason=reason,
        )
        self.row_number = row_number
        self.reason = reason


class EmptyExportError(ImportPipelineError):
    """Raised when an export has a header but no usable data rows."""


class OpenBatchExistsError(ImportPipelineError):
    """Raised when creating a batch while another batch is still open."""

    def __init__(self, open_batch_id: str | None) -> None:
        super().__init__(
            "an open import batch already exists; commit or discard it first"
            + (f" (batch {open_batch_id})" if open_batch_id else ""),
            open_batch_id=open_batch_id,
        )
        self.open_batch_id = open_batch_id


class BatchNotFoundError(ImportPipelineError):
    def __init__(self, batch_id: str) -> None:
        super().__init__(f"import batch {batch_id} not found", batch_id=batch_id)
        self.batch_id = batch_id


class BatchNotOpenError(ImportPipelineError):
    """Raised when staging data of a batch that is no longer open is mutated."""

    def __init__(self, batch_id: str, status: str) -> None:
        super().__init__(
            f"import batch {batch_id} is {status}; only open batches can be changed",
            batch_id=batch_id,
            status=status,
        )
        self.batch_id = batch_id
        self.status = status


class InvalidTransition(ImportPipelineError):
    """Raised for any batch status change outside the allowed lifecycle."""

    def __init__(self, batch_id: str, from_status: str, to_status: str) -> None:
        super().__init__(
            f"import batch {batch_id} cannot move from {from_status} to {to_status}",
            batch_id=batch_id,
            from_status=from_status,
            to_status=to_status,
        )
        self.batch_id = batch_id
        self.from_status = from_status
        self.to_status = to_status


class AlreadyRolledBack(InvalidTransition):
    def __init__(self, batch_id: str) -> None:
        super().__init__(batch_id, "rolled_back", "rolled_back")
        self.message = f"import batch {batch_id} has already been rolled back"
        self.args = (self.message,)


class StagingRowNotFoundError(ImportPipelineError):
    def __init__(self, batch_id: str, row_number: int) -> None:
        super().__init__(
            f"batch {batch_id} has no staging row {row_number}",
            batch_id=batch_id,
            row_number=row_number,
        )


class SelectionRejectedError(ImportPipelineError):
    """Raised when a staging row cannot take the requested selection / assignment."""


class UnknownUserError(ImportPipelineError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"user {user_id} is not in the user directory", user_id=user_id)
        self.user_id = user_id


class UnresolvedConflictError(ImportPipelineError):
    """Raised when a commit would include rows whose owner is still unresolved."""

    def __init__(self, batch_id: str, row_numbers: list[int]) -> None:
        shown = ", ".join(str(n) for n in row_numbers[:20])
        more = f" and {len(row_numbers) - 20} more" if len(row_numbers) > 20 else ""
        super().__init__(
            f"selected rows still in conflict: {shown}{more}; "
            "assign an owner or deselect them before committing",
            batch_id=batch_id,
            row_numbers=row_numbers,
        )
        self.row_numbers = row_numbers


class RowPersistError(ImportPipelineError):
    """A single staging row failed to persist during commit."""

    def __init__(self, row_number: int, external_id: str | None, reason: str) -> None:
        super().__init__(
            f"row {row_number} failed to persist: {reason}",
            row_number=row_number,
            external_id=external_id,
            reason=reason,
        )
        self.row_number = row_number
        self.external_id = external_id
        self.reason = reason


# ---------------------------------------------------------------------------
# Closed enumerations
# ---------------------------------------------------------------------------

class BatchStatus(str, Enum):
    OPEN = "open"
    COMPLETED = "completed"
    DISCARDED = "discarded"
    ROLLED_BACK = "rolled_back"


class MatchStatus(str, Enum):
    NEW = "new"
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    CONFLICT = "conflict"
    PENDING = "pending"


class UserMatchStatus(str, Enum):
    MATCHED = "matched"
    MANUAL = "manual"
    UNMATCHED = "unmatched"


# ---------------------------------------------------------------------------
# Collaborator records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DirectoryUser:
    id: str
    name: str
    role: str | None = None


@dataclass(frozen=True)
class ExistingOpportunity:
    """Snapshot of a permanent opportunity, keyed by external id for matching."""

    id: str
    external_id: str
    stage: str | None
    close_date: date | None = None
    rating: str | None = None
    next_step: str | None = None
    lead_id: str | None = None


def load_user_directory(conn: psycopg.Connection) -> list[DirectoryUser]:
    rows = conn.execute("SELECT id, name, role FROM users ORDER BY name, id").fetchall()
    return [DirectoryUser(id=str(r[0]), name=r[1], role=r[2]) for r in rows]


def load_existing_opportunities(conn: psycopg.Connection) -> dict[str, ExistingOpportunity]:
    """Return every permanent opportunity that carries an external id."""
    rows = conn.execute(
        """
        SELECT id, external_id, stage, expected_close_date, rating, next_step, lead_id
        FROM opportunity
        WHERE external_id IS NOT NULL
        """
    ).fetchall()
    return {
        r[1]: ExistingOpportunity(
            id=str(r[0]),
            external_id=r[1],
            stage=r[2],
            close_date=r[3],
            rating=r[4],
            next_step=r[5],
            lead_id=str(r[6]) if r[6] else None,
        )
        for r in rows
    }


def user_exists(conn: psycopg.Connection, user_id: str) -> bool:
    row = conn.execute("SELECT 1 FROM users WHERE id = %s", (user_id,)).fetchone()
    return row is not None


# ---------------------------------------------------------------------------
# Warnings-bearing counters
# ---------------------------------------------------------------------------

@dataclass
class StageCounters:
    rows_read: int = 0
    rows_skipped_blank: int = 0
    rows_staged: int = 0
    rows_new: int = 0
    rows_changed: int = 0
    rows_unchanged: int = 0
    rows_conflict: int = 0
    rows_auto_eligible: int = 0
    rows_without_external_id: int = 0
    encoding: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    params: dict[str, Any],
    counters: Any,
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **params,
        "counters": counters.to_dict() if counters is not None else None,
    }
    report_path = Path(f"./artifacts/reports/{run_id}.json")
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
