"""Generation backend implementations."""

from genqueue.jobs.backend.base import GenerationRequest, GenerationResult, ImageBackend
from genqueue.jobs.backend.cli_backend import CliImageBackend

__all__ = [
    "CliImageBackend",
    "GenerationRequest",
    "GenerationResult",
    "ImageBackend",
]
