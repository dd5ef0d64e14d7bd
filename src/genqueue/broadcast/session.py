"""Per-client websocket protocol handling."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from pydantic import ValidationError

from genqueue.broadcast.hub import BroadcastHub
from genqueue.broadcast.messages import (
    CreateTaskRequest,
    GetHistoryRequest,
    history_message,
    new_task_message,
    parse_inbound,
)
from genqueue.jobs.errors import StorageError
from genqueue.jobs.repository import TaskRepository

logger = logging.getLogger(__name__)


class ConnectionClosedError(RuntimeError):
    """Client connection is gone; no further reads or writes are possible."""


class SessionConnection(Protocol):
    async def receive_text(self) -> str: ...

    async def send_text(self, data: str) -> None: ...

    async def close(self) -> None: ...


class ClientSession:
    """Serve one client: answer history queries and accept new tasks.

    History replies go to this client only. New tasks are announced to every
    client through the hub, this one included. Store calls run in a worker
    thread so a slow database never stalls the event loop.
    """

    def __init__(
        self,
        *,
        connection: SessionConnection,
        hub: BroadcastHub,
        repository: TaskRepository,
        history_limit: int = 20,
    ) -> None:
        self.connection = connection
        self.hub = hub
        self.repository = repository
        self.history_limit = history_limit

    async def serve(self) -> None:
        """Read and handle client messages until the connection closes."""

        self.hub.register(self.connection)
        try:
            while True:
                raw = await self.connection.receive_text()
                await self.handle_message(raw)
        except ConnectionClosedError as error:
            logger.debug("Client session ended: %s", error)
        finally:
            self.hub.unregister(self.connection)

    async def handle_message(self, raw: str) -> None:
        try:
            request = parse_inbound(raw)
        except ValidationError as error:
            logger.warning(
                "Ignoring malformed client message %r: %s",
                raw[:200],
                _first_error(error),
            )
            return

        if isinstance(request, GetHistoryRequest):
            await self._send_history()
        elif isinstance(request, CreateTaskRequest):
            await self._create_task(request.prompt)

    async def _send_history(self) -> None:
        try:
            tasks = await asyncio.to_thread(
                self.repository.list_recent_tasks,
                limit=self.history_limit,
            )
        except StorageError as error:
            logger.error("History query failed: %s", error)
            return
        await self.connection.send_text(history_message(tasks).to_json())

    async def _create_task(self, prompt: str) -> None:
        try:
            task = await asyncio.to_thread(self.repository.enqueue_task, prompt)
        except StorageError as error:
            logger.error("Could not enqueue task: %s", error)
            return
        logger.info("Task %s queued: %s", task.id, task.prompt)
        self.hub.publish(new_task_message(task))


def _first_error(error: ValidationError) -> str:
    errors = error.errors()
    if not errors:
        return str(error)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "message"
    return f"{location}: {first.get('msg', 'invalid')}"
