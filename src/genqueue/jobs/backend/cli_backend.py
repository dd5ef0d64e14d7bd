"""Subprocess-based backend running an external image generator command."""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from collections.abc import Callable
from pathlib import Path

from genqueue.jobs.backend.base import GenerationRequest, GenerationResult
from genqueue.jobs.errors import GenerationFailedError
from genqueue.jobs.models import FailureReason

logger = logging.getLogger(__name__)

REQUIRED_PLACEHOLDERS = ("{prompt}", "{output}")


class CliImageBackend:
    """Execute the configured generator command once per task.

    The command template is rendered with shell-quoted ``{prompt}`` and
    ``{output}`` values and run without a shell in ``workdir``. A run succeeds
    when the process exits with status zero and the artifact exists at the
    output path; the artifact reference is the file name inside
    ``output_dir``.
    """

    def __init__(
        self,
        *,
        command_template: str,
        output_dir: Path,
        workdir: Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        validate_command_template(command_template)
        self.command_template = command_template
        self.output_dir = output_dir
        self.workdir = workdir
        self.clock = clock

    def artifact_name(self, task_id: int) -> str:
        return f"task_{task_id}_{int(self.clock())}.png"

    def generate(self, request: GenerationRequest) -> GenerationResult:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        file_name = self.artifact_name(request.task_id)
        output_path = self.output_dir.resolve() / file_name

        run_args = _build_run_args(
            command_template=self.command_template,
            prompt=request.prompt,
            output_path=output_path,
        )
        logger.debug("Running generator for task %s: %s", request.task_id, run_args[0])

        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=self.workdir,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as error:
            raise GenerationFailedError(
                f"Generator command not found: {run_args[0]} (workdir={self.workdir})",
                reason=FailureReason.LAUNCH_ERROR,
            ) from error
        except OSError as error:
            raise GenerationFailedError(
                f"Generator failed to start: {error}",
                reason=FailureReason.LAUNCH_ERROR,
            ) from error

        try:
            output, _ = process.communicate(timeout=request.timeout_seconds)
        except subprocess.TimeoutExpired as error:
            output = _terminate_process(process)
            raise GenerationFailedError(
                f"Generator timed out after {request.timeout_seconds}s",
                reason=FailureReason.TIMED_OUT,
                output=output,
            ) from error

        output = output or ""
        if process.returncode != 0:
            raise GenerationFailedError(
                f"Generator exited with code {process.returncode}",
                reason=FailureReason.NON_ZERO_EXIT,
                exit_code=process.returncode,
                output=output,
            )
        if not output_path.is_file():
            raise GenerationFailedError(
                f"Generator exited cleanly but wrote no artifact at {output_path}",
                reason=FailureReason.ARTIFACT_MISSING,
                exit_code=0,
                output=output,
            )
        return GenerationResult(artifact_ref=file_name, output=output)


def validate_command_template(command_template: str) -> None:
    """Raise ``ValueError`` if the template cannot render a generator command."""

    stripped = command_template.strip()
    if not stripped:
        raise ValueError("Generator command template is empty.")
    for placeholder in REQUIRED_PLACEHOLDERS:
        if placeholder not in stripped:
            raise ValueError(f"Generator command template must include {placeholder}.")
    try:
        argv = shlex.split(stripped.format(prompt="probe", output="probe.png"))
    except (KeyError, IndexError) as error:
        raise ValueError(f"Unsupported command template placeholder: {error}") from error
    except ValueError as error:
        raise ValueError(f"Generator command template is malformed: {error}") from error
    if not argv:
        raise ValueError("Generator command template rendered empty command.")


def _build_run_args(*, command_template: str, prompt: str, output_path: Path) -> list[str]:
    rendered = command_template.strip().format(
        prompt=shlex.quote(prompt),
        output=shlex.quote(str(output_path)),
    )
    return shlex.split(rendered)


def _terminate_process(process: subprocess.Popen[str]) -> str:
    try:
        process.terminate()
    except OSError:
        pass
    try:
        output, _ = process.communicate(timeout=2)
    except subprocess.TimeoutExpired:
        process.kill()
        output, _ = process.communicate()
    return output or ""
