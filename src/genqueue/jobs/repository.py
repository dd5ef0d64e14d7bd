"""Persistent queue repository for generation tasks."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from genqueue.jobs.errors import StorageError
from genqueue.jobs.models import FailureReason, TaskStatus, TaskView
from genqueue.storage.alembic_runner import upgrade_head
from genqueue.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from genqueue.storage.sqlmodel_models import GenerationTask

logger = logging.getLogger(__name__)

MAX_ERROR_SUMMARY_CHARS = 4000

EnqueueListener = Callable[[TaskView], None]


class TaskRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    All status changes are conditional updates on the expected current status,
    so concurrent callers (threads or processes sharing the database file)
    can never move the same task twice. Every SQLAlchemy failure surfaces as
    :class:`StorageError`; "nothing to do" is reported as ``None``.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)
        self._listeners: list[EnqueueListener] = []
        self._listeners_lock = threading.Lock()

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        with _storage_errors("schema migration"):
            upgrade_head(self.db_path)

    def add_enqueue_listener(self, listener: EnqueueListener) -> None:
        """Call ``listener`` after every successful enqueue in this process."""

        with self._listeners_lock:
            self._listeners.append(listener)

    def enqueue_task(self, prompt: str) -> TaskView:
        """Create a pending task."""

        now = to_db_datetime(utc_now())
        with _storage_errors("enqueue"), Session(self.engine) as session:
            row = GenerationTask(
                prompt=prompt,
                status=TaskStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            task = _to_task_view(row)

        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(task)
            except Exception:  # noqa: BLE001
                logger.exception("Enqueue listener failed for task %s", task.id)
        return task

    def claim_next_task(self) -> TaskView | None:
        """Atomically move the oldest pending task to processing."""

        while True:
            with _storage_errors("claim"), Session(self.engine) as session:
                candidate = session.exec(
                    select(GenerationTask)
                    .where(GenerationTask.status == TaskStatus.PENDING.value)
                    .order_by(
                        col(GenerationTask.created_at).asc(),
                        col(GenerationTask.id).asc(),
                    )
                    .limit(1)
                    .with_for_update(),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(GenerationTask)
                    .where(
                        col(GenerationTask.id) == candidate.id,
                        col(GenerationTask.status) == TaskStatus.PENDING.value,
                    )
                    .values(
                        status=TaskStatus.PROCESSING.value,
                        updated_at=to_db_datetime(utc_now()),
                    ),
                )
                if result.rowcount != 1:
                    # Another claimer won this row; pick the next candidate.
                    session.rollback()
                    continue

                session.commit()
                session.refresh(candidate)
                return _to_task_view(candidate)

    def complete_task(self, *, task_id: int, result_path: str) -> TaskView | None:
        """Mark a processing task as completed with its artifact reference."""

        return self._transition(
            task_id=task_id,
            operation="complete",
            status_to=TaskStatus.COMPLETED,
            values={"result_path": result_path},
        )

    def fail_task(
        self,
        *,
        task_id: int,
        failure_reason: FailureReason,
        error_summary: str | None = None,
    ) -> TaskView | None:
        """Mark a processing task as failed."""

        return self._transition(
            task_id=task_id,
            operation="fail",
            status_to=TaskStatus.FAILED,
            values={
                "failure_reason": failure_reason.value,
                "error_summary": _truncate_summary(error_summary),
            },
        )

    def fail_interrupted_tasks(self, *, started_before: datetime) -> list[TaskView]:
        """Fail tasks left in processing by a previous worker process."""

        with _storage_errors("list interrupted"), Session(self.engine) as session:
            task_ids = session.exec(
                select(GenerationTask.id)
                .where(
                    GenerationTask.status == TaskStatus.PROCESSING.value,
                    col(GenerationTask.updated_at) < to_db_datetime(started_before),
                )
                .order_by(col(GenerationTask.id).asc()),
            ).all()

        failed: list[TaskView] = []
        for task_id in task_ids:
            if task_id is None:
                continue
            task = self.fail_task(
                task_id=task_id,
                failure_reason=FailureReason.INTERRUPTED,
                error_summary="Worker stopped before the task finished.",
            )
            if task is not None:
                failed.append(task)
        return failed

    def get_task(self, task_id: int) -> TaskView | None:
        with _storage_errors("get"), Session(self.engine) as session:
            row = session.get(GenerationTask, task_id)
            return _to_task_view(row) if row is not None else None

    def list_recent_tasks(self, *, limit: int = 20) -> list[TaskView]:
        """List up to ``limit`` tasks, newest first."""

        if limit < 1:
            return []
        with _storage_errors("history"), Session(self.engine) as session:
            rows = session.exec(
                select(GenerationTask)
                .order_by(
                    col(GenerationTask.created_at).desc(),
                    col(GenerationTask.id).desc(),
                )
                .limit(limit),
            ).all()
            return [_to_task_view(row) for row in rows]

    def _transition(
        self,
        *,
        task_id: int,
        operation: str,
        status_to: TaskStatus,
        values: dict[str, object],
    ) -> TaskView | None:
        with _storage_errors(operation), Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.id) == task_id,
                    col(GenerationTask.status) == TaskStatus.PROCESSING.value,
                )
                .values(
                    status=status_to.value,
                    updated_at=to_db_datetime(utc_now()),
                    **values,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning(
                    "Refused %s for task %s: task is not %s",
                    operation,
                    task_id,
                    TaskStatus.PROCESSING.value,
                )
                return None
            session.commit()
            row = session.get(GenerationTask, task_id)
            return _to_task_view(row) if row is not None else None


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as error:
        raise StorageError(f"Task store {operation} failed: {error}") from error


def _truncate_summary(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if len(value) <= MAX_ERROR_SUMMARY_CHARS:
        return value
    # Keep the tail.
    return "..." + value[-(MAX_ERROR_SUMMARY_CHARS - 3) :]


def _to_task_view(row: GenerationTask) -> TaskView:
    if row.id is None:
        raise RuntimeError("Task row has no id; was it flushed?")
    return TaskView(
        id=row.id,
        prompt=row.prompt,
        status=TaskStatus(row.status),
        result_path=row.result_path,
        failure_reason=(
            FailureReason(row.failure_reason) if row.failure_reason is not None else None
        ),
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
