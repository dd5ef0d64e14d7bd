from __future__ import annotations

import shlex
import sys
import time
from pathlib import Path

import allure
import pytest

from genqueue.jobs.backend import CliImageBackend, GenerationRequest, demo_generator
from genqueue.jobs.backend.cli_backend import _build_run_args, validate_command_template
from genqueue.jobs.errors import GenerationFailedError
from genqueue.jobs.models import FailureReason

pytestmark = [
    allure.epic("Generation Queue"),
    allure.feature("Generator Command"),
]

_PYTHON = shlex.quote(sys.executable)
_DEMO_TEMPLATE = (
    f"{_PYTHON} {shlex.quote(demo_generator.__file__)} --prompt {{prompt}} --output {{output}}"
)


def _backend(tmp_path: Path, command_template: str, **kwargs) -> CliImageBackend:
    return CliImageBackend(
        command_template=command_template,
        output_dir=tmp_path / "www" / "images",
        clock=lambda: 1_700_000_000.0,
        **kwargs,
    )


def test_generate_writes_artifact_and_returns_file_name(tmp_path: Path) -> None:
    backend = _backend(tmp_path, _DEMO_TEMPLATE)

    result = backend.generate(GenerationRequest(task_id=7, prompt="a cat; rm -rf / 'quoted'"))

    assert result.artifact_ref == "task_7_1700000000.png"
    artifact = tmp_path / "www" / "images" / "task_7_1700000000.png"
    assert artifact.read_bytes().startswith(b"\x89PNG")
    assert "a cat; rm -rf / 'quoted'" in result.output


def test_generate_runs_in_configured_workdir(tmp_path: Path) -> None:
    workdir = tmp_path / "Z-Image"
    workdir.mkdir()
    template = (
        f"{_PYTHON} -c "
        '"import os, sys; open(sys.argv[2], \'wb\').write(b\'png\'); print(os.getcwd())" '
        "{prompt} {output}"
    )
    backend = _backend(tmp_path, template, workdir=workdir)

    result = backend.generate(GenerationRequest(task_id=1, prompt="p"))

    assert Path(result.output.strip()).resolve() == workdir.resolve()


def test_non_zero_exit_is_reported_with_output(tmp_path: Path) -> None:
    script = "import sys; print('CUDA error'); sys.exit(3)"
    template = f"{_PYTHON} -c \"{script}\" {{prompt}} {{output}}"
    backend = _backend(tmp_path, template)

    with pytest.raises(GenerationFailedError) as error_info:
        backend.generate(GenerationRequest(task_id=2, prompt="p"))

    error = error_info.value
    assert error.reason == FailureReason.NON_ZERO_EXIT
    assert error.exit_code == 3
    assert "CUDA error" in error.output


def test_clean_exit_without_artifact_is_failure(tmp_path: Path) -> None:
    template = f"{_PYTHON} -c \"print('nothing written')\" {{prompt}} {{output}}"
    backend = _backend(tmp_path, template)

    with pytest.raises(GenerationFailedError) as error_info:
        backend.generate(GenerationRequest(task_id=3, prompt="p"))

    assert error_info.value.reason == FailureReason.ARTIFACT_MISSING
    assert error_info.value.exit_code == 0


def test_timeout_terminates_generator(tmp_path: Path) -> None:
    backend = _backend(tmp_path, _DEMO_TEMPLATE + " --delay 10")

    started = time.monotonic()
    with pytest.raises(GenerationFailedError) as error_info:
        backend.generate(GenerationRequest(task_id=4, prompt="p", timeout_seconds=0.5))

    assert error_info.value.reason == FailureReason.TIMED_OUT
    assert time.monotonic() - started < 8
    assert not (tmp_path / "www" / "images" / "task_4_1700000000.png").exists()


def test_missing_executable_is_launch_error(tmp_path: Path) -> None:
    backend = _backend(tmp_path, "genqueue-no-such-generator {prompt} {output}")

    with pytest.raises(GenerationFailedError) as error_info:
        backend.generate(GenerationRequest(task_id=5, prompt="p"))

    assert error_info.value.reason == FailureReason.LAUNCH_ERROR


def test_missing_workdir_is_launch_error(tmp_path: Path) -> None:
    backend = _backend(tmp_path, _DEMO_TEMPLATE, workdir=tmp_path / "missing")

    with pytest.raises(GenerationFailedError) as error_info:
        backend.generate(GenerationRequest(task_id=6, prompt="p"))

    assert error_info.value.reason == FailureReason.LAUNCH_ERROR


def test_build_run_args_keeps_prompt_as_single_argument() -> None:
    run_args = _build_run_args(
        command_template="python run_z_image.py --prompt {prompt} --output {output}",
        prompt='a "red" cat $(whoami)',
        output_path=Path("/srv/www html/images/task_1_1.png"),
    )

    assert run_args == [
        "python",
        "run_z_image.py",
        "--prompt",
        'a "red" cat $(whoami)',
        "--output",
        "/srv/www html/images/task_1_1.png",
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("python gen.py --prompt {prompt}", "{output}"),
        ("python gen.py --output {output}", "{prompt}"),
        ("python gen.py {model} {prompt} {output}", "placeholder"),
        ("python 'gen.py {prompt} {output}", "malformed"),
    ],
)
def test_validate_command_template_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        validate_command_template(template)

    with pytest.raises(ValueError):
        CliImageBackend(command_template=template, output_dir=Path("images"))
