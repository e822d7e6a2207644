"""SQLite state for workflow runs.

Three tables:
- workflow_runs: one row per run id (attempt counter bumps on every retry)
- step_results: durable step results keyed by (run_id, step_key); a step
  recorded here is never executed again for that run
- node_status_events: append-only log of every published node status
"""

import json
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from flowcore.core.models import ExecutionStatus, RunRecord, RunStatus, StatusEvent


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime and Pydantic models.

    Prevents TypeError when serializing step results containing:
    - datetime objects (converted to ISO format strings)
    - Pydantic BaseModel instances (converted via model_dump)
    - Path objects (converted to strings)
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def safe_json_dumps(obj: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


class Database:
    """SQLite database holding run state, durable step results and status history."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS workflow_runs (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        workflow_name TEXT,
        status TEXT CHECK(status IN ('running', 'completed', 'failed', 'stopped')),
        attempts INTEGER DEFAULT 1,
        error TEXT,
        failed_node TEXT,
        context JSON,
        started_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        completed_at TIMESTAMP
    );

    -- Durable step results (memoized per run)
    CREATE TABLE IF NOT EXISTS step_results (
        run_id TEXT NOT NULL,
        step_key TEXT NOT NULL,
        result JSON,
        completed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (run_id, step_key),
        FOREIGN KEY (run_id) REFERENCES workflow_runs(id)
    );

    -- Node status log (append-only)
    CREATE TABLE IF NOT EXISTS node_status_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        status TEXT CHECK(status IN ('initial', 'loading', 'success', 'error')),
        attempt INTEGER DEFAULT 1,
        timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (run_id) REFERENCES workflow_runs(id)
    );

    CREATE INDEX IF NOT EXISTS idx_status_events_run ON node_status_events(run_id, node_id);
    CREATE INDEX IF NOT EXISTS idx_runs_workflow ON workflow_runs(workflow_id, status);
    """

    def __init__(self, db_path: str | Path = ".flowcore/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ========== Runs ==========

    def start_run(self, run_id: str, workflow_id: str, workflow_name: str | None = None) -> int:
        """Create the run record, or reopen it for another attempt.

        Returns the attempt number (1 for a fresh run).
        """
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflow_runs (id, workflow_id, workflow_name, status, attempts)
                VALUES (?, ?, ?, 'running', 1)
                ON CONFLICT(id) DO UPDATE SET
                    status = 'running',
                    attempts = attempts + 1,
                    error = NULL,
                    failed_node = NULL,
                    completed_at = NULL
            """,
                (run_id, workflow_id, workflow_name),
            )
            row = conn.execute(
                "SELECT attempts FROM workflow_runs WHERE id=?", (run_id,)
            ).fetchone()
            return row[0]

    def finish_run(
        self,
        run_id: str,
        status: RunStatus,
        error: str | None = None,
        failed_node: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE workflow_runs
                SET status=?, error=?, failed_node=?, context=?, completed_at=CURRENT_TIMESTAMP
                WHERE id=?
            """,
                (
                    status.value,
                    error,
                    failed_node,
                    safe_json_dumps(context) if context is not None else None,
                    run_id,
                ),
            )

    def get_run(self, run_id: str) -> RunRecord | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM workflow_runs WHERE id=?", (run_id,)).fetchone()
            return self._row_to_run(row) if row else None

    def list_runs(self, workflow_id: str | None = None, limit: int = 20) -> list[RunRecord]:
        with self._connect() as conn:
            if workflow_id:
                rows = conn.execute(
                    "SELECT * FROM workflow_runs WHERE workflow_id=? "
                    "ORDER BY started_at DESC LIMIT ?",
                    (workflow_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM workflow_runs ORDER BY started_at DESC LIMIT ?", (limit,)
                ).fetchall()
            return [self._row_to_run(row) for row in rows]

    def _row_to_run(self, row: sqlite3.Row) -> RunRecord:
        return RunRecord(
            id=row["id"],
            workflow_id=row["workflow_id"],
            workflow_name=row["workflow_name"],
            status=RunStatus(row["status"]),
            attempts=row["attempts"],
            error=row["error"],
            failed_node=row["failed_node"],
            context=json.loads(row["context"]) if row["context"] else None,
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    # ========== Durable steps ==========

    def get_step_result(self, run_id: str, step_key: str) -> tuple[bool, Any]:
        """Return (found, result) for a memoized step."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT result FROM step_results WHERE run_id=? AND step_key=?",
                (run_id, step_key),
            ).fetchone()
            if row is None:
                return False, None
            return True, json.loads(row[0]) if row[0] is not None else None

    def save_step_result(self, run_id: str, step_key: str, result_json: str) -> None:
        """Persist a completed step. The first recorded result wins."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO step_results (run_id, step_key, result)
                VALUES (?, ?, ?)
                ON CONFLICT(run_id, step_key) DO NOTHING
            """,
                (run_id, step_key, result_json),
            )

    def get_step_keys(self, run_id: str) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT step_key FROM step_results WHERE run_id=? ORDER BY completed_at, rowid",
                (run_id,),
            ).fetchall()
            return [row[0] for row in rows]

    # ========== Node status log ==========

    def record_status(
        self, run_id: str, node_id: str, status: ExecutionStatus, attempt: int = 1
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO node_status_events (run_id, node_id, status, attempt) "
                "VALUES (?, ?, ?, ?)",
                (run_id, node_id, status.value, attempt),
            )

    def get_status_history(self, run_id: str, node_id: str | None = None) -> list[StatusEvent]:
        with self._connect() as conn:
            if node_id:
                rows = conn.execute(
                    "SELECT * FROM node_status_events WHERE run_id=? AND node_id=? ORDER BY id",
                    (run_id, node_id),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM node_status_events WHERE run_id=? ORDER BY id", (run_id,)
                ).fetchall()
            return [
                StatusEvent(
                    id=row["id"],
                    run_id=row["run_id"],
                    node_id=row["node_id"],
                    status=ExecutionStatus(row["status"]),
                    attempt=row["attempt"],
                    timestamp=row["timestamp"],
                )
                for row in rows
            ]

    def get_latest_statuses(self, run_id: str) -> dict[str, ExecutionStatus]:
        """Last published status per node (what the canvas displays)."""
        latest: dict[str, ExecutionStatus] = {}
        for event in self.get_status_history(run_id):
            latest[event.node_id] = event.status
        return latest
