"""Integration tests for crm_import.batch_lifecycle.

Tests:
  - create_batch opens a batch; a second create raises OpenBatchExistsError
  - concurrent creates from separate connections: exactly one wins
  - discard purges staging rows, frees the open slot, never touches the store
  - transition guard in Python and in the trg_import_batch_transition trigger
  - list_batches returns history newest first with actor names
"""

from __future__ import annotations

import threading

import psycopg
import psycopg.errors
import pytest

from conftest import export_bytes, insert_opportunity, insert_user
from crm_import.batch_lifecycle import (
    complete_batch,
    create_batch,
    discard_batch,
    get_batch,
    get_open_batch,
    list_batches,
    mark_rolled_back,
    require_open,
)
from crm_import.import_crm_export import stage_export
from crm_import.shared import (
    AlreadyRolledBack,
    BatchNotFoundError,
    BatchNotOpenError,
    BatchStatus,
    InvalidTransition,
    OpenBatchExistsError,
)

MISSING_ID = "00000000-0000-0000-0000-000000000000"


# ---------------------------------------------------------------------------
# create_batch
# ---------------------------------------------------------------------------

class TestCreateBatch:
    def test_opens_batch(self, db_conn):
        conn, _ = db_conn
        actor = insert_user(conn, "Alice Schmidt")
        batch = create_batch(conn, "export.csv", actor, content_hash="h1",
                             stats_total=3, stats_conflicts=1)
        conn.commit()

        assert batch.status is BatchStatus.OPEN
        assert batch.created_by == actor
        assert batch.stats_total == 3
        assert batch.stats_conflicts == 1
        assert get_open_batch(conn).id == batch.id

    def test_second_open_batch_refused(self, db_conn):
        conn, _ = db_conn
        first = create_batch(conn, "a.csv", None)
        conn.commit()

        with pytest.raises(OpenBatchExistsError) as exc_info:
            create_batch(conn, "b.csv", None)
        assert exc_info.value.open_batch_id == first.id

        # The refused insert is rolled back to its savepoint; the transaction survives.
        assert conn.execute("SELECT count(*) FROM import_batch").fetchone()[0] == 1

    def test_new_batch_after_discard(self, db_conn):
        conn, _ = db_conn
        first = create_batch(conn, "a.csv", None)
        discard_batch(conn, first.id)
        second = create_batch(conn, "b.csv", None)
        conn.commit()
        assert second.id != first.id
        assert get_open_batch(conn).id == second.id

    def test_concurrent_creates_single_winner(self, db_conn):
        _, dsn = db_conn
        workers = 5
        barrier = threading.Barrier(workers)
        created: list[str] = []
        refused: list[OpenBatchExistsError] = []
        lock = threading.Lock()

        def _worker(i: int) -> None:
            with psycopg.connect(dsn, autocommit=False) as conn:
                barrier.wait()
                try:
                    batch = create_batch(conn, f"race-{i}.csv", None)
                    conn.commit()
                except OpenBatchExistsError as exc:
                    conn.rollback()
                    with lock:
                        refused.append(exc)
                    return
                with lock:
                    created.append(batch.id)

        threads = [threading.Thread(target=_worker, args=(i,)) for i in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(created) == 1
        assert len(refused) == workers - 1
        assert all(exc.open_batch_id == created[0] for exc in refused)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

class TestReads:
    def test_get_missing_batch(self, db_conn):
        conn, _ = db_conn
        with pytest.raises(BatchNotFoundError):
            get_batch(conn, MISSING_ID)

    def test_no_open_batch(self, db_conn):
        conn, _ = db_conn
        assert get_open_batch(conn) is None

    def test_require_open_rejects_discarded(self, db_conn):
        conn, _ = db_conn
        batch = create_batch(conn, "a.csv", None)
        discard_batch(conn, batch.id)
        with pytest.raises(BatchNotOpenError) as exc_info:
            require_open(conn, batch.id)
        assert exc_info.value.status == "discarded"

    def test_history_newest_first_with_names(self, db_conn):
        conn, _ = db_conn
        alice = insert_user(conn, "Alice Schmidt")
        bob = insert_user(conn, "Bob Meier")
        conn.commit()

        first = create_batch(conn, "first.csv", alice)
        conn.commit()
        complete_batch(conn, first.id, 0, 0, 0)
        mark_rolled_back(conn, first.id, bob)
        conn.commit()
        second = create_batch(conn, "second.csv", bob)
        conn.commit()

        history = list_batches(conn)
        assert [b.id for b in history] == [second.id, first.id]
        assert history[0].created_by_name == "Bob Meier"
        assert history[1].status is BatchStatus.ROLLED_BACK
        assert history[1].created_by_name == "Alice Schmidt"
        assert history[1].rolled_back_by_name == "Bob Meier"
        assert history[1].rolled_back_at is not None


# ---------------------------------------------------------------------------
# discard_batch
# ---------------------------------------------------------------------------

class TestDiscard:
    def test_purges_staging_only(self, db_conn):
        conn, _ = db_conn
        actor = insert_user(conn, "Alice Schmidt")
        insert_opportunity(conn, "OPP-1", "sql", user_id=actor)
        batch, _ = stage_export(
            conn,
            export_bytes([
                ("Existing Co-", "Closed Won", "Alice Schmidt", "OPP-1"),
                ("Fresh Co-", "SQL", "Alice Schmidt", "OPP-2"),
            ]),
            "export.csv",
            actor,
        )
        conn.commit()

        purged = discard_batch(conn, batch.id)
        conn.commit()

        assert purged == 2
        assert get_batch(conn, batch.id).status is BatchStatus.DISCARDED
        assert get_batch(conn, batch.id).discarded_at is not None
        assert conn.execute(
            "SELECT count(*) FROM import_staging WHERE batch_id = %s", (batch.id,)
        ).fetchone()[0] == 0
        stage = conn.execute(
            "SELECT stage FROM opportunity WHERE external_id = 'OPP-1'"
        ).fetchone()[0]
        assert stage == "sql"
        assert conn.execute("SELECT count(*) FROM opportunity").fetchone()[0] == 1

    def test_discard_twice_rejected(self, db_conn):
        conn, _ = db_conn
        batch = create_batch(conn, "a.csv", None)
        discard_batch(conn, batch.id)
        with pytest.raises(InvalidTransition):
            discard_batch(conn, batch.id)

    def test_discard_completed_rejected(self, db_conn):
        conn, _ = db_conn
        batch = create_batch(conn, "a.csv", None)
        complete_batch(conn, batch.id, 0, 0, 0)
        with pytest.raises(InvalidTransition):
            discard_batch(conn, batch.id)


# ---------------------------------------------------------------------------
# Transition guards
# ---------------------------------------------------------------------------

class TestTransitions:
    def test_complete_stores_counters(self, db_conn):
        conn, _ = db_conn
        batch = create_batch(conn, "a.csv", None)
        done = complete_batch(conn, batch.id, 2, 1, 3)
        assert done.status is BatchStatus.COMPLETED
        assert (done.stats_new, done.stats_updated, done.stats_skipped) == (2, 1, 3)
        assert done.completed_at is not None

    def test_rollback_of_open_batch_rejected(self, db_conn):
        conn, _ = db_conn
        batch = create_batch(conn, "a.csv", None)
        with pytest.raises(InvalidTransition):
            mark_rolled_back(conn, batch.id, None)

    def test_second_rollback_rejected(self, db_conn):
        conn, _ = db_conn
        batch = create_batch(conn, "a.csv", None)
        complete_batch(conn, batch.id, 0, 0, 0)
        mark_rolled_back(conn, batch.id, None)
        with pytest.raises(AlreadyRolledBack):
            mark_rolled_back(conn, batch.id, None)

    def test_trigger_blocks_reopen(self, db_conn):
        conn, _ = db_conn
        batch = create_batch(conn, "a.csv", None)
        complete_batch(conn, batch.id, 0, 0, 0)
        conn.commit()
        with pytest.raises(psycopg.errors.CheckViolation):
            conn.execute("UPDATE import_batch SET status = 'open' WHERE id = %s", (batch.id,))
        conn.rollback()
