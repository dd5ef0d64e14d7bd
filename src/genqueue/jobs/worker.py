"""Queue worker that runs generation tasks one at a time."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from functools import partial

from genqueue.jobs.backend import GenerationRequest, ImageBackend
from genqueue.jobs.errors import GenerationFailedError, StorageError, StorageUnavailableError
from genqueue.jobs.models import FailureReason, TaskView, WorkerRunSummary
from genqueue.jobs.repository import TaskRepository
from genqueue.storage.common import utc_now

logger = logging.getLogger(__name__)

TaskNotifier = Callable[[TaskView], object]


class GenerationWorker:
    """Consumes pending tasks sequentially and executes them via backend.

    Each cycle claims the oldest pending task, notifies observers that it is
    processing, blocks on the backend, records the final status and notifies
    again. When the queue is empty the worker sleeps ``poll_interval_seconds``;
    with ``wake_on_enqueue`` an enqueue through the same repository instance
    cuts that sleep short.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        backend: ImageBackend,
        notify: TaskNotifier | None = None,
        poll_interval_seconds: float = 2.0,
        generation_timeout_seconds: float | None = None,
        max_consecutive_storage_errors: int = 5,
        wake_on_enqueue: bool = True,
    ) -> None:
        self.repository = repository
        self.backend = backend
        self.notify = notify
        self.poll_interval_seconds = poll_interval_seconds
        self.generation_timeout_seconds = generation_timeout_seconds
        self.max_consecutive_storage_errors = max(1, max_consecutive_storage_errors)
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._consecutive_storage_errors = 0
        if wake_on_enqueue:
            repository.add_enqueue_listener(self._on_enqueue)

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        """Stop after the in-flight task, if any, is finalized."""

        self._stop.set()
        self._wake.set()

    def recover_interrupted_tasks(self) -> list[TaskView]:
        """Fail tasks a previous process left in processing and notify observers.

        Only safe while no other worker is running against the same database.
        """

        recovered = self.repository.fail_interrupted_tasks(started_before=utc_now())
        for task in recovered:
            logger.warning("Task %s interrupted by a previous shutdown, marked failed", task.id)
            self._notify(task)
        return recovered

    def run_once(self) -> WorkerRunSummary:
        """Process at most one task from the queue."""

        summary = WorkerRunSummary()
        if self._stop.is_set():
            summary.idle_polls = 1
            return summary

        self._wake.clear()
        try:
            task = self.repository.claim_next_task()
        except StorageError as error:
            self._record_storage_error(error, summary)
            return summary
        self._consecutive_storage_errors = 0

        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        logger.info("Processing task %s: %s", task.id, task.prompt)
        self._notify(task)

        final = self._execute(task, summary)
        if final is not None:
            self._notify(final)
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run worker loop until stopped.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: Stop after this many consecutive empty polls
                (None = keep polling).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while not self._stop.is_set():
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    break

                summary = self.run_once()
                aggregate.add(summary)
                if summary.processed:
                    consecutive_idle = 0
                    continue

                if summary.idle_polls:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                self._wake.wait(self.poll_interval_seconds)
        return aggregate

    def start_in_thread(
        self,
        *,
        on_fatal: Callable[[BaseException], None] | None = None,
    ) -> threading.Thread:
        """Run the loop in a daemon thread; ``on_fatal`` is called if it dies."""

        def _target() -> None:
            try:
                self.run_loop()
            except Exception as error:
                logger.critical("Worker stopped: %s", error, exc_info=True)
                if on_fatal is not None:
                    on_fatal(error)

        thread = threading.Thread(target=_target, name="genqueue-worker", daemon=True)
        thread.start()
        return thread

    def _execute(self, task: TaskView, summary: WorkerRunSummary) -> TaskView | None:
        request = GenerationRequest(
            task_id=task.id,
            prompt=task.prompt,
            timeout_seconds=self.generation_timeout_seconds,
        )
        try:
            result = self.backend.generate(request)
        except GenerationFailedError as error:
            logger.warning("Task %s failed (%s): %s", task.id, error.reason.value, error)
            if error.output.strip():
                logger.warning("Generator output for task %s:\n%s", task.id, error.output.strip())
            return self._fail(
                task,
                reason=error.reason,
                error_summary=f"{error}\n{error.output}",
                summary=summary,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Task %s failed: generation backend raised", task.id)
            return self._fail(
                task,
                reason=FailureReason.EXCEPTION,
                error_summary=f"{type(error).__name__}: {error}",
                summary=summary,
            )

        final = self._finalize(
            partial(
                self.repository.complete_task,
                task_id=task.id,
                result_path=result.artifact_ref,
            ),
            summary,
        )
        if final is not None:
            summary.succeeded = 1
            logger.info("Task %s completed: %s", task.id, result.artifact_ref)
        return final

    def _fail(
        self,
        task: TaskView,
        *,
        reason: FailureReason,
        error_summary: str,
        summary: WorkerRunSummary,
    ) -> TaskView | None:
        final = self._finalize(
            partial(
                self.repository.fail_task,
                task_id=task.id,
                failure_reason=reason,
                error_summary=error_summary,
            ),
            summary,
        )
        if final is not None:
            summary.failed = 1
            summary.failed_task_ids.append(task.id)
            if reason is FailureReason.TIMED_OUT:
                summary.timeouts = 1
        else:
            logger.warning("Task %s was already settled; failure not recorded", task.id)
        return final

    def _finalize(
        self,
        transition: Callable[[], TaskView | None],
        summary: WorkerRunSummary,
    ) -> TaskView | None:
        """Apply a terminal transition, retrying store errors until it lands.

        Attempts are spaced by ``poll_interval_seconds``; the consecutive error
        limit ends the retries with ``StorageUnavailableError``.
        """

        while True:
            try:
                final = transition()
            except StorageError as error:
                self._record_storage_error(error, summary)
                time.sleep(self.poll_interval_seconds)
                continue
            self._consecutive_storage_errors = 0
            return final

    def _record_storage_error(self, error: StorageError, summary: WorkerRunSummary) -> None:
        summary.storage_errors += 1
        self._consecutive_storage_errors += 1
        logger.error(
            "Task store error (%s/%s): %s",
            self._consecutive_storage_errors,
            self.max_consecutive_storage_errors,
            error,
        )
        if self._consecutive_storage_errors >= self.max_consecutive_storage_errors:
            raise StorageUnavailableError(
                f"Task store failed {self._consecutive_storage_errors} times in a row: {error}",
            ) from error

    def _notify(self, task: TaskView) -> None:
        if self.notify is None:
            return
        try:
            self.notify(task)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to publish update for task %s", task.id)

    def _on_enqueue(self, _: TaskView) -> None:
        self._wake.set()

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        # Signal handlers can only be installed in main thread.
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; stopping after the current task", name)
            self.request_stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
