"""
WebSocket Handler - Client Session Protocol Endpoint.

One handler instance serves every connection. Each connection gets a
ClientConnection (auth flag, liveness flag, attached session) and a receive
loop that decodes frames and maps them 1:1 onto Session Manager operations.

Connection Flow:
1. Accept, register, start the outbound writer
2. No PIN configured -> authenticated immediately, session list sent
   PIN configured    -> auth_required{pinLength} sent
3. Receive loop until disconnect
4. Detach from any session, unregister, close

Error Handling:
- Non-auth message while unauthenticated -> error "Not authenticated"
- Unknown message type                   -> ignored
- Malformed payload                      -> logged and dropped, connection stays open
- Failure while applying a message       -> logged, connection stays open

Author: Backend Lead Developer
"""

from __future__ import annotations

import logging
from typing import Union

from fastapi import WebSocket, WebSocketDisconnect

from .auth import PinProvider, verify_pin
from .connection import ClientConnection, ConnectionRegistry
from .session_manager import SessionManager, SessionNotFoundError
from . import protocol
from .protocol import (
    MessageType,
    ProtocolError,
    AuthMessage,
    ListMessage,
    CreateMessage,
    AttachMessage,
    DetachMessage,
    InputMessage,
    ResizeMessage,
    TerminateMessage,
    ReactivateMessage,
    DeleteMessage,
    RenameMessage,
    PingMessage,
)
from .. import observability

logger = logging.getLogger(__name__)

__all__ = ["WebSocketHandler", "client_address"]


def client_address(websocket: WebSocket) -> str:
    """Remote address, preferring the first X-Forwarded-For hop."""
    forwarded = websocket.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if websocket.client is not None:
        return websocket.client.host
    return "unknown"


class WebSocketHandler:
    """
    Client Session Protocol handler.

    Args:
        session_manager: Running Session Manager
        registry: Registry of live connections (broadcast targets)
        pin_provider: Returns the current PinConfig, or None when no PIN is set
    """

    __slots__ = ('session_manager', 'registry', 'pin_provider')

    def __init__(
        self,
        session_manager: SessionManager,
        registry: ConnectionRegistry,
        pin_provider: PinProvider,
    ):
        self.session_manager = session_manager
        self.registry = registry
        self.pin_provider = pin_provider

    async def handle_connection(self, websocket: WebSocket) -> None:
        await websocket.accept()

        client = ClientConnection(websocket, client_address(websocket))
        client.start_writer()
        self.registry.add(client)
        observability.record_websocket_connection()
        logger.info(f"Client connected from {client.client_ip}")

        try:
            await self._greet(client)

            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break

                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is None:
                    continue

                await self.handle_message(client, raw)

        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"WebSocket error for {client.client_ip}: {e}", exc_info=True)
        finally:
            await self._cleanup(client)

    async def _greet(self, client: ClientConnection) -> None:
        pin = await self.pin_provider()
        if pin is None:
            client.is_authenticated = True
            client.send(protocol.sessions(await self.session_manager.list_sessions()))
        else:
            client.send(protocol.auth_required(pin.length))

    async def _cleanup(self, client: ClientConnection) -> None:
        if self.session_manager.is_running:
            await self.session_manager.detach(client)
        self.registry.remove(client)
        await client.close()
        observability.record_websocket_disconnection()
        logger.info(f"Client disconnected from {client.client_ip}")

    async def handle_message(self, client: ClientConnection, raw: Union[str, bytes]) -> None:
        """
        Process one inbound frame.

        The authentication gate runs before dispatch: nothing but ``auth``
        reaches the Session Manager from an unauthenticated connection.
        """
        try:
            payload = protocol.decode_frame(raw)
            msg_type = payload.get("type")

            if msg_type == MessageType.AUTH:
                await self._handle_auth(client, protocol.parse_message(payload))
                return

            if not client.is_authenticated:
                client.send(protocol.error("Not authenticated"))
                return

            if msg_type not in protocol.CLIENT_MESSAGE_TYPES:
                logger.debug(f"Ignoring unknown message type: {msg_type!r}")
                return

            observability.record_message_received(msg_type)
            await self._dispatch(client, protocol.parse_message(payload))

        except ProtocolError as e:
            observability.record_protocol_error()
            logger.warning(f"Dropped message from {client.client_ip}: {e}")
        except Exception as e:
            logger.error(f"Failed to handle message from {client.client_ip}: {e}", exc_info=True)

    async def _handle_auth(self, client: ClientConnection, message: AuthMessage) -> None:
        pin = await self.pin_provider()

        if pin is None or verify_pin(message.pin, pin.hash):
            client.is_authenticated = True
            client.send(protocol.auth_success())
            client.send(protocol.sessions(await self.session_manager.list_sessions()))
            logger.info(f"Client {client.client_ip} authenticated")
        else:
            client.send(protocol.auth_failed())
            observability.record_auth_failure()
            logger.warning(f"Failed PIN attempt from {client.client_ip}")

    async def _dispatch(self, client: ClientConnection, message) -> None:
        manager = self.session_manager

        if isinstance(message, ListMessage):
            client.send(protocol.sessions(await manager.list_sessions()))

        elif isinstance(message, CreateMessage):
            session_id = await manager.create(message.name, requester=client)
            if session_id is None:
                client.send(protocol.error("Failed to create session"))

        elif isinstance(message, AttachMessage):
            try:
                await manager.attach(client, message.session_id)
            except SessionNotFoundError:
                client.send(protocol.error("Session not found"))

        elif isinstance(message, DetachMessage):
            await manager.detach(client)

        elif isinstance(message, InputMessage):
            await manager.write_input(client, message.data)

        elif isinstance(message, ResizeMessage):
            if message.cols > 0 and message.rows > 0:
                await manager.resize(client, message.cols, message.rows)

        elif isinstance(message, TerminateMessage):
            await manager.terminate(message.session_id)

        elif isinstance(message, ReactivateMessage):
            await manager.reactivate(message.session_id)

        elif isinstance(message, DeleteMessage):
            await manager.delete(message.session_id)

        elif isinstance(message, RenameMessage):
            if message.name:
                await manager.rename(message.session_id, message.name)

        elif isinstance(message, PingMessage):
            client.is_alive = True
            client.send(protocol.pong())
