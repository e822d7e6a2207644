"""Data models for workflow runs.

Uses Pydantic for records read back from the state database.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ExecutionStatus(str, Enum):
    """Status of one node within one run, as shown on the canvas."""

    INITIAL = "initial"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class RunStatus(str, Enum):
    """Status of a whole workflow run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"  # A stop-workflow node ended the run early


class StatusEvent(BaseModel):
    """Entry in the append-only node status log."""

    id: int | None = None
    run_id: str
    node_id: str
    status: ExecutionStatus
    attempt: int = 1
    timestamp: datetime | None = None


class RunRecord(BaseModel):
    """Persisted run state."""

    id: str
    workflow_id: str
    workflow_name: str | None = None
    status: RunStatus
    attempts: int = 1
    error: str | None = None
    failed_node: str | None = None
    context: dict[str, Any] | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class RunResult(BaseModel):
    """Outcome returned by WorkflowRunner.execute()."""

    run_id: str
    status: RunStatus
    context: dict[str, Any] = Field(default_factory=dict)
    statuses: dict[str, ExecutionStatus] = Field(default_factory=dict)
    executed: list[str] = Field(default_factory=list)
