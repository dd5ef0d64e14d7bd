"""Domain models for the generation task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    """Durable task lifecycle states.

    Legal transitions: ``Pending -> Processing -> Completed | Failed``.
    """

    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.COMPLETED, TaskStatus.FAILED}


class FailureReason(str, Enum):
    """Normalized reasons recorded on failed tasks."""

    NON_ZERO_EXIT = "non_zero_exit"
    TIMED_OUT = "timed_out"
    ARTIFACT_MISSING = "artifact_missing"
    LAUNCH_ERROR = "launch_error"
    EXCEPTION = "exception"
    INTERRUPTED = "interrupted"


@dataclass(slots=True, frozen=True)
class TaskView:
    """Readable snapshot of one task row."""

    id: int
    prompt: str
    status: TaskStatus
    result_path: str | None
    failure_reason: FailureReason | None
    error_summary: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    timeouts: int = 0
    idle_polls: int = 0
    storage_errors: int = 0
    failed_task_ids: list[int] = field(default_factory=list)

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.timeouts += other.timeouts
        self.idle_polls += other.idle_polls
        self.storage_errors += other.storage_errors
        self.failed_task_ids.extend(other.failed_task_ids)
