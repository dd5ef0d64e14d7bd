"""Error taxonomy for the generation queue."""

from __future__ import annotations

from genqueue.jobs.models import FailureReason


class StorageError(RuntimeError):
    """Task store operation failed; safe to retry on the next loop iteration."""


class StorageUnavailableError(StorageError):
    """Task store keeps failing; the process should stop."""


class GenerationFailedError(RuntimeError):
    """Generation backend reported a failed run."""

    def __init__(
        self,
        message: str,
        *,
        reason: FailureReason,
        exit_code: int | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.exit_code = exit_code
        self.output = output
