"""Backend interface for generation task execution."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(slots=True)
class GenerationRequest:
    """Inputs required to generate one artifact."""

    task_id: int
    prompt: str
    timeout_seconds: float | None = None


@dataclass(slots=True)
class GenerationResult:
    """Successful generation outcome."""

    artifact_ref: str
    output: str = ""


class ImageBackend(Protocol):
    """Protocol implemented by generation backends.

    Implementations return a result on success and raise
    ``GenerationFailedError`` on any failed run.
    """

    def generate(self, request: GenerationRequest) -> GenerationResult:
        """Run one generation synchronously."""
