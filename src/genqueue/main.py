"""CLI entrypoint for genqueue."""

import logging
from pathlib import Path

import rich_click as click
import uvicorn

from genqueue import __version__
from genqueue.config import DEFAULT_ENV_FILE, Settings, load_env_file
from genqueue.jobs.controllers import (
    EnqueueCommand,
    HistoryCommand,
    InspectTaskCommand,
    JobsCliController,
    WorkerCommand,
)
from genqueue.web.app import create_app

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="genqueue")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Root logger level.",
)
@click.option(
    "--env-file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=DEFAULT_ENV_FILE,
    show_default=True,
    help="KEY=VALUE file loaded before reading the environment.",
)
def genqueue(log_level: str, env_file: Path) -> None:
    """Image generation queue with live websocket updates."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)
    load_env_file(env_file)


@genqueue.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--host", default=None, help="Bind address (default: GENQUEUE_HOST).")
@click.option(
    "--port",
    type=click.IntRange(min=1, max=65535),
    default=None,
    help="Bind port (default: GENQUEUE_PORT).",
)
@click.option(
    "--worker/--no-worker",
    "run_worker",
    default=True,
    show_default=True,
    help="Run the generation worker inside the server process.",
)
def serve(db_path: Path | None, host: str | None, port: int | None, run_worker: bool) -> None:
    """Serve the websocket endpoint, static files and generated images."""

    settings = Settings.from_env(db_path=db_path)
    if host is not None:
        settings.server.host = host
    if port is not None:
        settings.server.port = port
    try:
        settings.validate()
    except ValueError as error:
        raise click.ClickException(str(error)) from error

    app = create_app(settings, start_worker=run_worker)
    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,
    )


@genqueue.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until stopped.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
@click.option(
    "--recover/--no-recover",
    default=False,
    show_default=True,
    help="Fail tasks left processing by a crashed process before starting.",
)
def worker(db_path: Path | None, once: bool, max_tasks: int | None, recover: bool) -> None:
    """Run the generation worker without the web server (no live updates)."""

    try:
        lines = JOBS_CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                recover=recover,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@genqueue.command("enqueue")
@click.argument("prompt")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def enqueue(prompt: str, db_path: Path | None) -> None:
    """Queue a generation task."""

    if not prompt.strip():
        raise click.BadParameter("Prompt must not be empty.", param_hint="PROMPT")
    _emit_lines(JOBS_CONTROLLER.enqueue(EnqueueCommand(db_path=db_path, prompt=prompt)))


@genqueue.command("history")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max tasks to print, newest first.",
)
def history(db_path: Path | None, limit: int) -> None:
    """List recent tasks."""

    _emit_lines(JOBS_CONTROLLER.history(HistoryCommand(db_path=db_path, limit=limit)))


@genqueue.command("inspect")
@click.argument("task_id", type=int)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def inspect(task_id: int, db_path: Path | None) -> None:
    """Show one task including failure details."""

    _emit_lines(
        JOBS_CONTROLLER.inspect_task(InspectTaskCommand(db_path=db_path, task_id=task_id)),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    genqueue()
