"""
Test configuration and fixtures.

Fixes import paths and provides shared test doubles:
- FakeHandle: stands in for a PTY attached to a dtach holder
- FakeBridge: DtachBridge whose holders are plain files in a temp directory
- RecordingConnection: ClientConnection that records outbound messages
"""

import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import pytest
import pytest_asyncio

# Add parent directory to path for imports
backend_dir = Path(__file__).parent.parent.parent
sys.path.insert(0, str(backend_dir))

from persistent_terminal.config import TerminalConfig
from persistent_terminal.core.connection import ClientConnection, ConnectionRegistry
from persistent_terminal.core.dtach_bridge import DtachBridge, KillOutcome, KillReport, SpawnFailure
from persistent_terminal.core.pty_manager import PTYManager
from persistent_terminal.core.session_manager import SessionManager
from persistent_terminal.core.session_store import SessionStore


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: end-to-end tests through the FastAPI app")


class FakeHandle:
    """PTY handle double. Tests drive output and exit explicitly."""

    def __init__(self, session_id, on_data, on_exit):
        self.session_id = session_id
        self.on_data = on_data
        self.on_exit = on_exit
        self.written: List[str] = []
        self.sizes: List[tuple] = []
        self.killed = False

    def write(self, data: str) -> int:
        self.written.append(data)
        return len(data)

    def resize(self, cols: int, rows: int) -> None:
        self.sizes.append((cols, rows))

    def kill(self) -> None:
        self.killed = True

    def feed(self, text: str) -> None:
        self.on_data(text)

    def exit(self, returncode: Optional[int] = 0) -> None:
        self.on_exit(self, returncode)


class FakeBridge(DtachBridge):
    """Holders are represented by the presence of their socket file."""

    def __init__(self, sockets_dir: Path):
        super().__init__(
            dtach_path="/usr/bin/dtach",
            sockets_dir=sockets_dir,
            pty_manager=PTYManager(),
            kill_grace_delay=0,
        )
        self.sockets_dir.mkdir(parents=True, exist_ok=True)
        self.fail_spawn = False
        self.fail_attach = False
        self.spawned: List[str] = []
        self.killed: List[str] = []
        self.handles: dict = {}
        # When set, holder spawns and kills wait on these events
        self.spawn_gate: Optional[asyncio.Event] = None
        self.kill_gate: Optional[asyncio.Event] = None

    async def spawn(self, session_id: str) -> None:
        await self._wait(self.spawn_gate)
        if self.fail_spawn:
            raise SpawnFailure(f"dtach -n exited with status 1 for {session_id}")
        self.socket_path(session_id).touch()
        self.spawned.append(session_id)

    async def attach_pty(self, session_id, on_data, on_exit):
        if self.fail_attach or not self.socket_exists(session_id):
            raise FileNotFoundError(str(self.socket_path(session_id)))
        handle = FakeHandle(session_id, on_data, on_exit)
        self.handles[session_id] = handle
        return handle

    async def kill_socket(self, socket_path: Path) -> KillReport:
        await self._wait(self.kill_gate)
        socket_path = Path(socket_path)
        report = KillReport(socket_path=socket_path)
        if socket_path.exists():
            socket_path.unlink()
            report.fuser = KillOutcome.SIGNALED
            report.removed = True
            self.killed.append(socket_path.stem)
        return report

    @staticmethod
    async def _wait(gate: Optional[asyncio.Event]) -> None:
        if gate is None:
            await asyncio.sleep(0)
        else:
            await gate.wait()

    def drop_socket(self, session_id: str) -> None:
        """Simulate the holder exiting on its own."""
        self.socket_path(session_id).unlink()


class RecordingConnection(ClientConnection):
    """Client connection that keeps every message it was sent."""

    def __init__(self, client_ip: str = "127.0.0.1", authenticated: bool = True):
        super().__init__(None, client_ip)
        self.is_authenticated = authenticated
        self.sent: List[dict] = []

    def send(self, message: dict) -> None:
        if self.is_open:
            self.sent.append(message)

    def types(self) -> List[str]:
        return [m["type"] for m in self.sent]

    def of_type(self, msg_type: str) -> List[dict]:
        return [m for m in self.sent if m["type"] == msg_type]

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture
def config(tmp_path):
    """Configuration rooted in a temporary state directory."""
    return TerminalConfig(
        base_dir=tmp_path / "state",
        dtach_path="/usr/bin/dtach",
        persist_interval=3600,
        heartbeat_interval=3600,
    )


@pytest.fixture
def make_bridge(config):
    """Factory for fresh fake bridges over the same sockets directory."""
    def factory() -> FakeBridge:
        return FakeBridge(config.sockets_dir)
    return factory


@pytest.fixture
def bridge(make_bridge):
    return make_bridge()


@pytest.fixture
def store(config):
    config.ensure_directories()
    return SessionStore(config.sessions_dir)


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def make_client(registry):
    """Factory for registered recording connections."""
    def factory(client_ip: str = "127.0.0.1", authenticated: bool = True) -> RecordingConnection:
        client = RecordingConnection(client_ip, authenticated)
        registry.add(client)
        return client
    return factory


@pytest_asyncio.fixture
async def manager(bridge, store, registry):
    """Started session manager over the fake bridge."""
    session_manager = SessionManager(bridge=bridge, store=store, registry=registry, max_buffer_size=1000)
    await session_manager.start()
    yield session_manager
    await session_manager.stop()
