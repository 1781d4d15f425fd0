"""
Persistent Terminal Configuration.

Environment-driven configuration using Pydantic Settings.
Every field can be overridden with a ``PWT_``-prefixed environment variable
(e.g. ``PWT_PORT=3001``) or from a local ``.env`` file.

Directory Layout (under base_dir):
- sessions/   One JSON record per session
- sockets/    One dtach socket per live (or recently live) session
- config.json PIN hash/length, written by external tooling

Author: Backend Lead Developer
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_shell() -> str:
    return os.environ.get("SHELL") or "/bin/bash"


class TerminalConfig(BaseSettings):
    """
    Configuration for the persistent terminal service.

    Configuration Sources (priority order):
    1. Environment variables (PWT_*)
    2. .env file
    3. Default values
    """

    model_config = SettingsConfigDict(
        env_prefix="PWT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    base_dir: Path = Field(default_factory=lambda: Path.home() / ".web-terminal")

    # Session behaviour
    max_buffer_size: int = 100_000  # characters of scrollback per session
    persist_interval: float = 30.0  # seconds between full flushes
    heartbeat_interval: float = 45.0  # seconds between liveness sweeps

    # Backing holder (dtach)
    dtach_path: Optional[str] = None
    shell: str = Field(default_factory=_default_shell)
    kill_grace_delay: float = 0.1  # seconds before force-removing a socket
    subprocess_timeout: float = 5.0

    # PTY defaults for attach
    pty_cols: int = 120
    pty_rows: int = 30

    # Observability
    log_level: str = "INFO"

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 3000

    @property
    def sessions_dir(self) -> Path:
        return self.base_dir / "sessions"

    @property
    def sockets_dir(self) -> Path:
        return self.base_dir / "sockets"

    @property
    def config_file(self) -> Path:
        return self.base_dir / "config.json"

    def ensure_directories(self) -> None:
        """Create the sessions and sockets directories if missing."""
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self.sockets_dir.mkdir(parents=True, exist_ok=True)
