"""
Core terminal service modules.

This package contains the session table and its lifecycle, the dtach and PTY
bridges, the record store, and the WebSocket client protocol.
"""

from .output_buffer import OutputBuffer
from .session_store import SessionStore, SessionRecord, SessionStatus
from .pty_manager import PTYManager, PTYHandle
from .dtach_bridge import DtachBridge, ConfigurationError, SpawnFailure, resolve_dtach_path
from .connection import ClientConnection, ConnectionRegistry
from .session_manager import SessionManager, TerminalSession, SessionNotFoundError
from .websocket_handler import WebSocketHandler
from .housekeeping import Housekeeper

__all__ = [
    "OutputBuffer",
    "SessionStore",
    "SessionRecord",
    "SessionStatus",
    "PTYManager",
    "PTYHandle",
    "DtachBridge",
    "ConfigurationError",
    "SpawnFailure",
    "resolve_dtach_path",
    "ClientConnection",
    "ConnectionRegistry",
    "SessionManager",
    "TerminalSession",
    "SessionNotFoundError",
    "WebSocketHandler",
    "Housekeeper",
]
