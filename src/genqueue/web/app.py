"""FastAPI application wiring the store, worker, hub and client sessions."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.staticfiles import StaticFiles

from genqueue import __version__
from genqueue.broadcast.hub import BroadcastHub
from genqueue.broadcast.messages import update_message
from genqueue.broadcast.session import ClientSession
from genqueue.config import Settings
from genqueue.jobs.backend import CliImageBackend, ImageBackend
from genqueue.jobs.models import TaskView
from genqueue.jobs.repository import TaskRepository
from genqueue.jobs.worker import GenerationWorker
from genqueue.web.connection import WebSocketConnection

logger = logging.getLogger(__name__)

WORKER_JOIN_TIMEOUT_SECONDS = 5.0


def create_app(
    settings: Settings,
    *,
    repository: TaskRepository | None = None,
    backend: ImageBackend | None = None,
    start_worker: bool = True,
) -> FastAPI:
    """Build the application; components start and stop with its lifespan."""

    repository = repository or TaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    backend = backend or CliImageBackend(
        command_template=settings.generator.command,
        output_dir=settings.output_dir,
        workdir=settings.generator.workdir,
    )
    hub = BroadcastHub(send_timeout_seconds=settings.server.send_timeout_seconds)

    def _publish_update(task: TaskView) -> bool:
        return hub.publish(update_message(task))

    worker = GenerationWorker(
        repository=repository,
        backend=backend,
        notify=_publish_update,
        poll_interval_seconds=settings.worker.poll_interval_seconds,
        generation_timeout_seconds=settings.worker.generation_timeout_seconds,
        max_consecutive_storage_errors=settings.worker.max_consecutive_storage_errors,
        wake_on_enqueue=settings.worker.wake_on_enqueue,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await asyncio.to_thread(repository.init_schema)
        await hub.start()
        worker_thread: threading.Thread | None = None
        if start_worker:
            if settings.worker.recover_interrupted:
                await asyncio.to_thread(worker.recover_interrupted_tasks)
            worker_thread = worker.start_in_thread(on_fatal=_terminate_on_fatal)
        logger.info("genqueue %s ready (db=%s)", __version__, settings.db_path)
        try:
            yield
        finally:
            worker.request_stop()
            if worker_thread is not None:
                await asyncio.to_thread(worker_thread.join, WORKER_JOIN_TIMEOUT_SECONDS)
                if worker_thread.is_alive():
                    logger.warning("Worker is still running a task; leaving it behind")
            await hub.stop()
            repository.close()

    app = FastAPI(title="genqueue", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.repository = repository
    app.state.hub = hub
    app.state.worker = worker

    @app.get("/health")
    async def health() -> dict[str, object]:
        return {"status": "ok", "connections": hub.connection_count}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        session = ClientSession(
            connection=WebSocketConnection(websocket),
            hub=hub,
            repository=repository,
            history_limit=settings.server.history_limit,
        )
        await session.serve()

    # Images live under the document root; mount them first so "/" does not shadow them.
    settings.output_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/images", StaticFiles(directory=settings.output_dir), name="images")
    app.mount(
        "/",
        StaticFiles(directory=settings.server.document_root, html=True),
        name="static",
    )
    return app


def _terminate_on_fatal(error: BaseException) -> None:
    logger.critical("Shutting down: worker cannot continue (%s)", error)
    os.kill(os.getpid(), signal.SIGTERM)
