"""Tests for the state database.

Tests cover:
- Run records: creation, attempts on resume, finishing with error details
- Durable step results: memoization, first result wins
- Node status log: history ordering, latest status per node
- Foreign key enforcement and schema setup
"""

from __future__ import annotations

import sqlite3

import pytest

from flowcore.core.models import ExecutionStatus, RunStatus
from flowcore.core.state import Database, safe_json_dumps

# =============================================================================
# Run Records
# =============================================================================


class TestRuns:
    def test_start_run_creates_record(self, test_db):
        attempt = test_db.start_run("run-1", "wf-1", "Lead Intake")

        run = test_db.get_run("run-1")
        assert attempt == 1
        assert run.status == RunStatus.RUNNING
        assert run.workflow_name == "Lead Intake"
        assert run.started_at is not None
        assert run.completed_at is None

    def test_restart_increments_attempts_and_clears_error(self, test_db):
        test_db.start_run("run-1", "wf-1")
        test_db.finish_run("run-1", RunStatus.FAILED, error="boom", failed_node="B")

        attempt = test_db.start_run("run-1", "wf-1")

        run = test_db.get_run("run-1")
        assert attempt == 2
        assert run.attempts == 2
        assert run.status == RunStatus.RUNNING
        assert run.error is None
        assert run.failed_node is None

    def test_finish_run_stores_context(self, test_db):
        test_db.start_run("run-1", "wf-1")

        test_db.finish_run("run-1", RunStatus.COMPLETED, context={"lead": {"name": "Ada"}})

        run = test_db.get_run("run-1")
        assert run.status == RunStatus.COMPLETED
        assert run.context == {"lead": {"name": "Ada"}}
        assert run.completed_at is not None

    def test_get_unknown_run(self, test_db):
        assert test_db.get_run("missing") is None

    def test_list_runs_filters_by_workflow(self, test_db):
        test_db.start_run("run-1", "wf-1")
        test_db.start_run("run-2", "wf-1")
        test_db.start_run("run-3", "wf-2")

        assert {run.id for run in test_db.list_runs()} == {"run-1", "run-2", "run-3"}
        assert {run.id for run in test_db.list_runs("wf-1")} == {"run-1", "run-2"}
        assert len(test_db.list_runs(limit=1)) == 1


# =============================================================================
# Durable Step Results
# =============================================================================


class TestStepResults:
    def test_missing_step(self, test_db):
        test_db.start_run("run-1", "wf-1")
        assert test_db.get_step_result("run-1", "A:create-contact") == (False, None)

    def test_save_and_replay(self, test_db):
        test_db.start_run("run-1", "wf-1")

        test_db.save_step_result("run-1", "A:create-contact", safe_json_dumps({"id": "c-1"}))

        assert test_db.get_step_result("run-1", "A:create-contact") == (True, {"id": "c-1"})

    def test_null_result_is_found(self, test_db):
        test_db.start_run("run-1", "wf-1")

        test_db.save_step_result("run-1", "A:noop", safe_json_dumps(None))

        assert test_db.get_step_result("run-1", "A:noop") == (True, None)

    def test_first_result_wins(self, test_db):
        test_db.start_run("run-1", "wf-1")

        test_db.save_step_result("run-1", "A:step", safe_json_dumps(1))
        test_db.save_step_result("run-1", "A:step", safe_json_dumps(2))

        assert test_db.get_step_result("run-1", "A:step") == (True, 1)

    def test_results_scoped_per_run(self, test_db):
        test_db.start_run("run-1", "wf-1")
        test_db.start_run("run-2", "wf-1")

        test_db.save_step_result("run-1", "A:step", safe_json_dumps("one"))

        assert test_db.get_step_result("run-2", "A:step") == (False, None)
        assert test_db.get_step_keys("run-1") == ["A:step"]

    def test_step_requires_run(self, test_db):
        with pytest.raises(sqlite3.IntegrityError):
            test_db.save_step_result("no-run", "A:step", "1")


# =============================================================================
# Node Status Log
# =============================================================================


class TestStatusLog:
    def test_history_in_publish_order(self, test_db):
        test_db.start_run("run-1", "wf-1")
        test_db.record_status("run-1", "A", ExecutionStatus.LOADING)
        test_db.record_status("run-1", "A", ExecutionStatus.SUCCESS)
        test_db.record_status("run-1", "B", ExecutionStatus.LOADING)

        history = test_db.get_status_history("run-1")

        assert [(e.node_id, e.status) for e in history] == [
            ("A", ExecutionStatus.LOADING),
            ("A", ExecutionStatus.SUCCESS),
            ("B", ExecutionStatus.LOADING),
        ]
        assert [e.status for e in test_db.get_status_history("run-1", "B")] == [
            ExecutionStatus.LOADING
        ]

    def test_latest_statuses_across_attempts(self, test_db):
        test_db.start_run("run-1", "wf-1")
        test_db.record_status("run-1", "A", ExecutionStatus.LOADING, attempt=1)
        test_db.record_status("run-1", "A", ExecutionStatus.ERROR, attempt=1)
        test_db.record_status("run-1", "A", ExecutionStatus.LOADING, attempt=2)
        test_db.record_status("run-1", "A", ExecutionStatus.SUCCESS, attempt=2)

        assert test_db.get_latest_statuses("run-1") == {"A": ExecutionStatus.SUCCESS}
        assert [e.attempt for e in test_db.get_status_history("run-1")] == [1, 1, 2, 2]


class TestSchema:
    def test_creates_parent_directory(self, tmp_path):
        db = Database(tmp_path / "nested" / "dir" / "state.db")
        assert db.db_path.exists()

    def test_wal_mode_enabled(self, test_db):
        with test_db._connect() as conn:
            mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode == "wal"

    def test_reopen_keeps_data(self, tmp_path):
        Database(tmp_path / "state.db").start_run("run-1", "wf-1")

        assert Database(tmp_path / "state.db").get_run("run-1").workflow_id == "wf-1"
