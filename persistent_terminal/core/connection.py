"""
Client Connections - Per-Connection State and Broadcast Fan-out.

Each WebSocket gets a ClientConnection with its own outbound queue drained by
a dedicated writer task. send() never awaits, so the Session Manager can fan
out output to any number of clients without being blocked by a slow one, and
per-connection message order is preserved.

Author: Backend Lead Developer
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Iterator, Optional, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)

__all__ = ["ClientConnection", "ConnectionRegistry"]

_CLOSE = object()


class ClientConnection:
    """
    Ephemeral state for one client.

    Attributes:
        client_ip: Remote address (X-Forwarded-For aware)
        is_authenticated: Passed the PIN gate (or no PIN configured)
        is_alive: Cleared by each heartbeat sweep, set again by ping
        attached_session_id: Non-owning back-reference to the attached session
    """

    def __init__(self, websocket: Optional[WebSocket], client_ip: str = "unknown"):
        self.websocket = websocket
        self.client_ip = client_ip
        self.is_authenticated = False
        self.is_alive = True
        self.attached_session_id: Optional[str] = None

        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._writer: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"ClientConnection({self.client_ip}, session={self.attached_session_id})"

    @property
    def is_open(self) -> bool:
        return not self._closed

    def send(self, message: dict) -> None:
        """Queue a message for delivery. Dropped silently once closed."""
        if self._closed:
            return
        self._queue.put_nowait(message)

    def start_writer(self) -> asyncio.Task:
        self._writer = asyncio.create_task(self._write_loop(), name=f"ws_writer_{self.client_ip}")
        return self._writer

    async def _write_loop(self) -> None:
        while True:
            message = await self._queue.get()
            if message is _CLOSE:
                break
            try:
                await self.websocket.send_text(json.dumps(message))
            except Exception as e:
                logger.debug(f"Send to {self.client_ip} failed: {e}")
                self._closed = True
                break

    async def close(self, code: int = 1000) -> None:
        """Stop the writer after flushing queued messages, then close the socket."""
        if self._writer is not None and not self._writer.done():
            self._queue.put_nowait(_CLOSE)
            try:
                await asyncio.wait_for(self._writer, timeout=5.0)
            except asyncio.TimeoutError:
                self._writer.cancel()
        self._closed = True

        if (
            self.websocket is not None
            and self.websocket.application_state == WebSocketState.CONNECTED
            and self.websocket.client_state == WebSocketState.CONNECTED
        ):
            try:
                await self.websocket.close(code=code)
            except Exception as e:
                logger.debug(f"Close for {self.client_ip} failed: {e}")

    def terminate(self) -> None:
        """Hard-close without flushing (stale connection)."""
        self._closed = True
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
        if self.websocket is not None:
            self._writer = asyncio.create_task(self._close_quietly())

    async def _close_quietly(self) -> None:
        try:
            await self.websocket.close(code=1001)
        except Exception as e:
            logger.debug(f"Terminate for {self.client_ip} failed: {e}")


class ConnectionRegistry:
    """All live client connections, for session-list broadcasts and reaping."""

    def __init__(self):
        self._connections: Set[ClientConnection] = set()

    def add(self, connection: ClientConnection) -> None:
        self._connections.add(connection)

    def remove(self, connection: ClientConnection) -> None:
        self._connections.discard(connection)

    def __iter__(self) -> Iterator[ClientConnection]:
        return iter(list(self._connections))

    def __len__(self) -> int:
        return len(self._connections)

    def broadcast(self, message: dict) -> int:
        """
        Send to every authenticated, open connection.

        Returns:
            Number of connections the message was queued for
        """
        sent = 0
        for connection in self:
            if connection.is_open and connection.is_authenticated:
                connection.send(message)
                sent += 1
        return sent

    async def close_all(self) -> None:
        await asyncio.gather(
            *(connection.close(code=1001) for connection in self),
            return_exceptions=True,
        )
        self._connections.clear()
