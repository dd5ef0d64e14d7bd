"""Starlette websocket adapter for hub and session connections."""

from __future__ import annotations

import asyncio
import logging

from fastapi import WebSocket, WebSocketDisconnect

from genqueue.broadcast.session import ConnectionClosedError

logger = logging.getLogger(__name__)


class WebSocketConnection:
    """Serialize writes to one websocket and normalize disconnect errors.

    The hub dispatcher and the owning session may write concurrently; the
    lock keeps frames whole and in the order the writers acquired it.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def receive_text(self) -> str:
        if self._closed:
            raise ConnectionClosedError("connection already closed")
        try:
            message = await self.websocket.receive()
        except RuntimeError as error:
            self._closed = True
            raise ConnectionClosedError(str(error)) from error
        if message["type"] == "websocket.disconnect":
            self._closed = True
            raise ConnectionClosedError(f"client disconnected (code {message.get('code')})")
        text = message.get("text")
        if text is not None:
            return text
        return (message.get("bytes") or b"").decode("utf-8", errors="replace")

    async def send_text(self, data: str) -> None:
        async with self._send_lock:
            if self._closed:
                raise ConnectionClosedError("connection already closed")
            try:
                await self.websocket.send_text(data)
            except (WebSocketDisconnect, RuntimeError, OSError) as error:
                self._closed = True
                raise ConnectionClosedError(f"send failed: {error!r}") from error

    async def close(self) -> None:
        async with self._send_lock:
            if self._closed:
                return
            self._closed = True
            try:
                await self.websocket.close()
            except RuntimeError as error:
                logger.debug("Websocket already closed: %s", error)
