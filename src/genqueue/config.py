"""Runtime configuration for the generation queue server and worker."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from genqueue.jobs.backend.cli_backend import validate_command_template

logger = logging.getLogger(__name__)

DEFAULT_ENV_FILE = Path("envfile")
DEFAULT_GENERATOR_COMMAND = "python run_z_image.py --prompt {prompt} --output {output}"
IMAGES_DIR_NAME = "images"


@dataclass(slots=True)
class ServerSettings:
    """HTTP/websocket server settings."""

    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080
    document_root: Path = Path("www/html")
    history_limit: int = 20
    send_timeout_seconds: float = 10.0


@dataclass(slots=True)
class WorkerSettings:
    """Queue worker settings."""

    poll_interval_seconds: float = 2.0
    wake_on_enqueue: bool = True
    generation_timeout_seconds: float | None = None
    max_consecutive_storage_errors: int = 5
    recover_interrupted: bool = True


@dataclass(slots=True)
class GeneratorSettings:
    """External image generator command."""

    command: str = DEFAULT_GENERATOR_COMMAND
    workdir: Path | None = Path("Z-Image")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by component."""

    db_path: Path = Path("queue.db")
    sqlite_busy_timeout_ms: int = 5000
    server: ServerSettings = field(default_factory=ServerSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    generator: GeneratorSettings = field(default_factory=GeneratorSettings)

    @property
    def output_dir(self) -> Path:
        """Directory generated images are written to and served from."""

        return self.server.document_root / IMAGES_DIR_NAME

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment.

        ``DBPath``, ``PORT`` and ``DocumentRoot`` are honoured as fallbacks so
        an existing ``envfile`` keeps working.
        """

        workdir_raw = os.getenv("GENQUEUE_GENERATOR_WORKDIR", "Z-Image").strip()
        return cls(
            db_path=db_path or _db_path_from_env(),
            sqlite_busy_timeout_ms=int(os.getenv("GENQUEUE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            server=ServerSettings(
                host=os.getenv("GENQUEUE_HOST", "0.0.0.0"),  # noqa: S104
                port=int(os.getenv("GENQUEUE_PORT", os.getenv("PORT", "8080"))),
                document_root=Path(
                    os.getenv("GENQUEUE_DOCUMENT_ROOT", os.getenv("DocumentRoot", "www/html")),
                ),
                history_limit=int(os.getenv("GENQUEUE_HISTORY_LIMIT", "20")),
                send_timeout_seconds=float(os.getenv("GENQUEUE_SEND_TIMEOUT_SECONDS", "10")),
            ),
            worker=WorkerSettings(
                poll_interval_seconds=float(os.getenv("GENQUEUE_POLL_INTERVAL_SECONDS", "2.0")),
                wake_on_enqueue=_env_bool("GENQUEUE_WAKE_ON_ENQUEUE", default=True),
                generation_timeout_seconds=_env_optional_float(
                    "GENQUEUE_GENERATION_TIMEOUT_SECONDS",
                ),
                max_consecutive_storage_errors=int(
                    os.getenv("GENQUEUE_MAX_STORAGE_ERRORS", "5"),
                ),
                recover_interrupted=_env_bool("GENQUEUE_RECOVER_INTERRUPTED", default=True),
            ),
            generator=GeneratorSettings(
                command=os.getenv("GENQUEUE_GENERATOR_COMMAND", DEFAULT_GENERATOR_COMMAND),
                workdir=Path(workdir_raw) if workdir_raw else None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the server cannot run with."""

        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("GENQUEUE_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if not 0 < self.server.port < 65536:
            raise ValueError(f"GENQUEUE_PORT must be in 1..65535, got {self.server.port}.")
        if self.server.history_limit < 1:
            raise ValueError("GENQUEUE_HISTORY_LIMIT must be >= 1.")
        if self.server.send_timeout_seconds <= 0:
            raise ValueError("GENQUEUE_SEND_TIMEOUT_SECONDS must be > 0.")
        if self.worker.poll_interval_seconds <= 0:
            raise ValueError("GENQUEUE_POLL_INTERVAL_SECONDS must be > 0.")
        if (
            self.worker.generation_timeout_seconds is not None
            and self.worker.generation_timeout_seconds <= 0
        ):
            raise ValueError("GENQUEUE_GENERATION_TIMEOUT_SECONDS must be > 0 when set.")
        if self.worker.max_consecutive_storage_errors < 1:
            raise ValueError("GENQUEUE_MAX_STORAGE_ERRORS must be >= 1.")
        try:
            validate_command_template(self.generator.command)
        except ValueError as error:
            raise ValueError(f"GENQUEUE_GENERATOR_COMMAND: {error}") from error


def load_env_file(path: Path = DEFAULT_ENV_FILE) -> bool:
    """Load ``KEY=VALUE`` pairs from ``path``; variables already set win."""

    if not path.is_file():
        logger.debug("Env file %s not found; using process environment only", path)
        return False
    loaded = load_dotenv(dotenv_path=path, override=False)
    logger.debug("Loaded env file %s", path)
    return loaded


def _db_path_from_env() -> Path:
    explicit = os.getenv("GENQUEUE_DB_PATH", "").strip()
    if explicit:
        return Path(explicit)
    # DBPath is a directory prefix concatenated with the file name.
    return Path(os.getenv("DBPath", "") + "queue.db")


def _env_optional_float(name: str) -> float | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
