"""Unit tests for counters, progress estimates, report builders and the error taxonomy."""

from __future__ import annotations

from datetime import datetime

import pytest

from crm_import.batch_lifecycle import ALLOWED_TRANSITIONS, ImportBatch, check_transition
from crm_import.commit_engine import (
    CommitResult,
    build_commit_report,
    estimate_remaining_seconds,
    format_remaining,
)
from crm_import.import_crm_export import build_history_report, build_stage_report
from crm_import.rollback_engine import RollbackCounters, build_rollback_report
from crm_import.shared import (
    AlreadyRolledBack,
    BatchStatus,
    ImportPipelineError,
    InvalidTransition,
    MatchStatus,
    OpenBatchExistsError,
    RowPersistError,
    StageCounters,
    UnresolvedConflictError,
    UserMatchStatus,
)
from crm_import.staging import BatchStats, StagedRow, build_review_report


def _batch(**kwargs) -> ImportBatch:
    defaults = {
        "id": "b-1",
        "source_filename": "opportunities.csv",
        "source_type": "crm_export",
        "content_hash": "abc",
        "status": BatchStatus.OPEN,
        "created_at": datetime(2025, 3, 1, 9, 30),
        "created_by": "u-1",
    }
    defaults.update(kwargs)
    return ImportBatch(**defaults)


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------

class TestErrors:
    def test_detail_drops_none(self):
        err = RowPersistError(6, None, "boom")
        assert err.to_dict() == {
            "error": "RowPersistError",
            "message": "row 6 failed to persist: boom",
            "row_number": 6,
            "reason": "boom",
        }

    def test_already_rolled_back_is_invalid_transition(self):
        err = AlreadyRolledBack("b-1")
        assert isinstance(err, InvalidTransition)
        assert isinstance(err, ImportPipelineError)
        assert "already been rolled back" in str(err)

    def test_open_batch_named(self):
        err = OpenBatchExistsError("b-7")
        assert "b-7" in err.message
        assert err.detail == {"open_batch_id": "b-7"}

    def test_unresolved_conflicts_truncated(self):
        err = UnresolvedConflictError("b-1", list(range(1, 26)))
        assert "and 5 more" in err.message
        assert err.row_numbers == list(range(1, 26))


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------

class TestCheckTransition:
    @pytest.mark.parametrize("from_status,to_status", [
        (BatchStatus.OPEN, BatchStatus.COMPLETED),
        (BatchStatus.OPEN, BatchStatus.DISCARDED),
        (BatchStatus.COMPLETED, BatchStatus.ROLLED_BACK),
    ])
    def test_allowed(self, from_status, to_status):
        check_transition("b-1", from_status, to_status)

    @pytest.mark.parametrize("from_status,to_status", [
        (BatchStatus.OPEN, BatchStatus.ROLLED_BACK),
        (BatchStatus.COMPLETED, BatchStatus.DISCARDED),
        (BatchStatus.DISCARDED, BatchStatus.OPEN),
        (BatchStatus.DISCARDED, BatchStatus.ROLLED_BACK),
        (BatchStatus.ROLLED_BACK, BatchStatus.COMPLETED),
    ])
    def test_rejected(self, from_status, to_status):
        with pytest.raises(InvalidTransition):
            check_transition("b-1", from_status, to_status)

    def test_second_rollback(self):
        with pytest.raises(AlreadyRolledBack):
            check_transition("b-1", "rolled_back", "rolled_back")

    def test_terminal_states_have_no_exits(self):
        assert ALLOWED_TRANSITIONS[BatchStatus.DISCARDED] == frozenset()
        assert ALLOWED_TRANSITIONS[BatchStatus.ROLLED_BACK] == frozenset()


# ---------------------------------------------------------------------------
# Progress estimate
# ---------------------------------------------------------------------------

class TestProgressEstimate:
    def test_none_before_first_row(self):
        assert estimate_remaining_seconds(0, 10, 0.0) is None

    def test_none_for_empty_commit(self):
        assert estimate_remaining_seconds(0, 0, 1.0) is None

    def test_linear_estimate(self):
        assert estimate_remaining_seconds(2, 10, 4.0) == pytest.approx(16.0)

    def test_zero_when_done(self):
        assert estimate_remaining_seconds(10, 10, 30.0) == 0.0

    def test_format_estimating(self):
        assert format_remaining(None) == "estimating..."

    def test_format_seconds(self):
        assert format_remaining(16.4) == "~16 seconds remaining"

    def test_format_minutes(self):
        assert format_remaining(185.0) == "~3 minutes remaining"


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

class TestCounters:
    def test_stage_counters_warnings_truncated(self):
        ctrs = StageCounters(rows_read=3, warnings=[f"w{i}" for i in range(60)])
        d = ctrs.to_dict()
        assert d["rows_read"] == 3
        assert len(d["warnings"]) == 50

    def test_rollback_counters(self):
        ctrs = RollbackCounters(batch_id="b-1", leads_deleted=2, opportunities_deleted=3)
        d = ctrs.to_dict()
        assert d["leads_deleted"] == 2
        assert d["opportunities_deleted"] == 3
        assert d["batch_status"] is None

    def test_commit_result_failure(self):
        result = CommitResult(batch_id="b-1", total=10, committed=5,
                              error=RowPersistError(6, "OPP-6", "boom"))
        d = result.to_dict()
        assert d["success"] is False
        assert d["error"]["row_number"] == 6
        assert d["batch_status"] is None

    def test_commit_result_success(self):
        batch = _batch(status=BatchStatus.COMPLETED, stats_new=2, stats_updated=1, stats_skipped=4)
        d = CommitResult(batch_id="b-1", success=True, batch=batch).to_dict()
        assert d["batch_status"] == "completed"
        assert (d["stats_new"], d["stats_updated"], d["stats_skipped"]) == (2, 1, 4)

    def test_batch_to_dict_status_value(self):
        assert _batch().to_dict()["status"] == "open"


# ---------------------------------------------------------------------------
# Report builders
# ---------------------------------------------------------------------------

class TestReports:
    def test_stage_report(self):
        ctrs = StageCounters(rows_read=4, rows_staged=4, rows_new=2, rows_conflict=2,
                             encoding="cp1252", warnings=["row 3: blank opportunity name, skipped"])
        report = build_stage_report(ctrs, _batch())
        assert "b-1" in report
        assert "cp1252" in report
        assert "row 3: blank opportunity name" in report

    def test_commit_report_failure_names_row(self):
        result = CommitResult(batch_id="b-1", total=10, committed=5,
                              error=RowPersistError(6, "OPP-6", "boom"))
        report = build_commit_report(result)
        assert "FAILED at row 6 (OPP-6)" in report
        assert "still open" in report

    def test_commit_report_success(self):
        batch = _batch(status=BatchStatus.COMPLETED, stats_new=2, stats_updated=1, stats_skipped=0)
        report = build_commit_report(CommitResult(batch_id="b-1", success=True, batch=batch))
        assert "batch status:        completed" in report
        assert "FAILED" not in report

    def test_rollback_report_warnings_capped(self):
        ctrs = RollbackCounters(batch_id="b-1", warnings=[f"lead {i}: x" for i in range(25)])
        report = build_rollback_report(ctrs, dry_run=True)
        assert "dry_run: True" in report
        assert "... and 5 more" in report

    def test_review_report_lists_owners_and_changes(self):
        row = StagedRow(
            id="s-1", batch_id="b-1", row_number=4, company_name="Acme",
            opportunity_name="Acme-", stage="Proposal", close_date=None, created_date=None,
            owner_name="Alice Schmidt", rating=None, next_step=None, external_id="OPP-4",
            base_status=MatchStatus.CHANGED, match_status=MatchStatus.CHANGED,
            matched_opportunity_id="o-1", matched_user_id="u-1",
            user_match_status=UserMatchStatus.MATCHED, owner_note=None,
            changes={"stage": {"from": "Qualification", "to": "Proposal"}},
            is_selected=True,
        )
        report = build_review_report(
            _batch(), BatchStats(total=3, changed=1, conflict=2, selected=3), [row],
            [("Hans Müller", 2)],
        )
        assert "Hans Müller: 2" in report
        assert "stage: 'Qualification' -> 'Proposal'" in report
        assert "[x]" in report

    def test_history_report(self):
        done = _batch(id="b-2", status=BatchStatus.ROLLED_BACK, created_by_name="Alice Schmidt",
                      stats_new=1, stats_updated=0, stats_skipped=0,
                      rolled_back_at=datetime(2025, 3, 2, 8, 0), rolled_back_by_name="Bob Meier")
        report = build_history_report([done])
        assert "rolled_back" in report
        assert "by Alice Schmidt" in report
        assert "rolled back 2025-03-02 08:00 by Bob Meier" in report

    def test_history_report_empty(self):
        assert "(no batches)" in build_history_report([])
