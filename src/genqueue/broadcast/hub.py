"""Fan-out of task events to every live client connection."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Protocol

from genqueue.broadcast.messages import OutboundMessage

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """Write side of a client connection as seen by the hub."""

    async def send_text(self, data: str) -> None: ...

    async def close(self) -> None: ...


class BroadcastHub:
    """Single ordered event queue drained by one dispatcher task.

    ``publish`` may be called from any thread. Every event is serialized once
    and written to each connection registered at dispatch time, one
    connection after another, so all connections observe events in publish
    order. A connection whose write fails or takes longer than
    ``send_timeout_seconds`` is unregistered and closed. Delivery is
    best-effort: there is no retry or replay.
    """

    def __init__(self, *, send_timeout_seconds: float = 10.0) -> None:
        self.send_timeout_seconds = send_timeout_seconds
        self._connections: list[Connection] = []
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[OutboundMessage | None] | None = None
        self._dispatcher: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._loop is not None

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    async def start(self) -> None:
        """Bind to the running event loop and start dispatching."""

        if self._dispatcher is not None:
            raise RuntimeError("Broadcast hub is already running.")
        self._queue = asyncio.Queue()
        self._dispatcher = asyncio.create_task(self._dispatch(), name="genqueue-broadcast")
        self._loop = asyncio.get_running_loop()

    async def stop(self) -> None:
        """Deliver already published events, then stop the dispatcher."""

        dispatcher = self._dispatcher
        queue = self._queue
        if dispatcher is None or queue is None:
            return
        self._loop = None
        # Sentinel goes behind callbacks scheduled by earlier publishes.
        await asyncio.sleep(0)
        queue.put_nowait(None)
        await dispatcher
        self._dispatcher = None
        self._queue = None
        with self._lock:
            self._connections.clear()

    def register(self, connection: Connection) -> None:
        with self._lock:
            if not any(existing is connection for existing in self._connections):
                self._connections.append(connection)

    def unregister(self, connection: Connection) -> None:
        with self._lock:
            self._connections = [
                existing for existing in self._connections if existing is not connection
            ]

    def publish(self, message: OutboundMessage) -> bool:
        """Queue ``message`` for delivery; ``False`` means the hub is not running."""

        loop = self._loop
        queue = self._queue
        if loop is None or queue is None:
            logger.debug("Dropping %s event: broadcast hub is not running", message.type)
            return False
        try:
            loop.call_soon_threadsafe(queue.put_nowait, message)
        except RuntimeError:
            logger.debug("Dropping %s event: event loop is closed", message.type)
            return False
        return True

    async def wait_idle(self) -> None:
        """Wait until every event published so far has been dispatched."""

        queue = self._queue
        if queue is None:
            return
        await asyncio.sleep(0)
        await queue.join()

    def _snapshot(self) -> list[Connection]:
        with self._lock:
            return list(self._connections)

    async def _dispatch(self) -> None:
        queue = self._queue
        assert queue is not None
        while True:
            message = await queue.get()
            try:
                if message is None:
                    return
                await self._deliver(message)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to dispatch %s event", getattr(message, "type", None))
            finally:
                queue.task_done()

    async def _deliver(self, message: OutboundMessage) -> None:
        payload = message.to_json()
        for connection in self._snapshot():
            try:
                await asyncio.wait_for(
                    connection.send_text(payload),
                    timeout=self.send_timeout_seconds,
                )
            except Exception as error:  # noqa: BLE001
                logger.info(
                    "Dropping client connection after failed send: %s",
                    error or type(error).__name__,
                )
                self.unregister(connection)
                await self._close_quietly(connection)

    async def _close_quietly(self, connection: Connection) -> None:
        try:
            await connection.close()
        except Exception as error:  # noqa: BLE001
            logger.debug("Closing dropped connection failed: %s", error)
