"""Controllers for queue CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from genqueue.config import Settings
from genqueue.jobs.backend import CliImageBackend
from genqueue.jobs.models import TaskView
from genqueue.jobs.repository import TaskRepository
from genqueue.jobs.worker import GenerationWorker


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for task enqueue."""

    db_path: Path | None
    prompt: str


@dataclass(slots=True)
class HistoryCommand:
    """CLI input for recent task listing."""

    db_path: Path | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: int


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for headless worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    recover: bool = False
    max_idle_polls: int | None = None


class JobsCliController:
    """Coordinates queue, worker, and inspection CLI operations."""

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.enqueue_task(command.prompt)
        return [f"Task enqueued: id={task.id} status={task.status.value}"]

    def history(self, command: HistoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            tasks = repository.list_recent_tasks(limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(_task_line(task) for task in tasks)
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.get_task(command.task_id)
        if task is None:
            return [f"Task not found: {command.task_id}"]

        return [
            f"Task: {task.id}",
            f"Prompt: {task.prompt}",
            f"Status: {task.status.value}",
            f"Result: {task.result_path or '-'}",
            f"Failure reason: {task.failure_reason.value if task.failure_reason else '-'}",
            f"Error: {task.error_summary or '-'}",
            f"Created: {task.created_at.isoformat()}",
            f"Updated: {task.updated_at.isoformat()}",
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository:
            worker = GenerationWorker(
                repository=repository,
                backend=CliImageBackend(
                    command_template=settings.generator.command,
                    output_dir=settings.output_dir,
                    workdir=settings.generator.workdir,
                ),
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                generation_timeout_seconds=settings.worker.generation_timeout_seconds,
                max_consecutive_storage_errors=settings.worker.max_consecutive_storage_errors,
                wake_on_enqueue=False,
            )
            recovered = worker.recover_interrupted_tasks() if command.recover else []
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        lines = [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} timeouts={summary.timeouts} "
            f"idle_polls={summary.idle_polls} storage_errors={summary.storage_errors}",
        ]
        if recovered:
            lines.append(f"Recovered interrupted tasks: {', '.join(str(t.id) for t in recovered)}")
        if summary.failed_task_ids:
            lines.append(f"Failed tasks: {', '.join(str(i) for i in summary.failed_task_ids)}")
        return lines


def _task_line(task: TaskView) -> str:
    return (
        f"  {task.id} status={task.status.value} "
        f"result={task.result_path or '-'} created_at={task.created_at.isoformat()} "
        f"prompt={task.prompt!r}"
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
