"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from genqueue.jobs.repository import TaskRepository

_ENV_PREFIX = "GENQUEUE_"
_KNOWN_ENV_NAMES = (
    "GENQUEUE_DB_PATH",
    "GENQUEUE_SQLITE_BUSY_TIMEOUT_MS",
    "GENQUEUE_HOST",
    "GENQUEUE_PORT",
    "GENQUEUE_DOCUMENT_ROOT",
    "GENQUEUE_POLL_INTERVAL_SECONDS",
    "GENQUEUE_WAKE_ON_ENQUEUE",
    "GENQUEUE_GENERATION_TIMEOUT_SECONDS",
    "GENQUEUE_MAX_STORAGE_ERRORS",
    "GENQUEUE_RECOVER_INTERRUPTED",
    "GENQUEUE_GENERATOR_COMMAND",
    "GENQUEUE_GENERATOR_WORKDIR",
    "GENQUEUE_HISTORY_LIMIT",
    "GENQUEUE_SEND_TIMEOUT_SECONDS",
    "DBPath",
    "PORT",
    "DocumentRoot",
    "TemplateRoot",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Hide host configuration and undo anything an env file loads."""

    names = set(_KNOWN_ENV_NAMES)
    names.update(name for name in os.environ if name.startswith(_ENV_PREFIX))
    for name in sorted(names):
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[TaskRepository]:
    repo = TaskRepository(tmp_path / "queue.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()
