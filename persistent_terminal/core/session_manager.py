"""
Session Manager - Authoritative Session Table and Lifecycle State Machine.

Single owner of the session table. Every mutation is a command processed, one
at a time and in submission order, by a dedicated actor task. Public methods
only enqueue a command and await its result, so no caller ever observes a
half-applied operation, even while a command is awaiting a subprocess.

State Machine:
    detached   --attach (socket present)-->      running
    running    --PTY exit, socket present-->     detached
    running/detached --terminate | socket gone--> terminated
    terminated --reactivate-->                   detached
    any        --delete-->                       (removed)

Terminate tears the PTY down before flipping status, so an attach queued
behind it sees "terminated" and never reopens a killed handle.

Broadcast Policy:
- output       -> clients attached to that session only
- sessions     -> every authenticated connection
- terminated / reactivated -> clients attached to that session only

Author: Backend Lead Developer
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union, get_args

from .connection import ClientConnection, ConnectionRegistry
from .dtach_bridge import DtachBridge, SpawnFailure
from .output_buffer import OutputBuffer, DEFAULT_MAX_BUFFER_SIZE
from .pty_manager import PTYHandle
from .session_store import SessionStore, SessionRecord, SessionStatus
from . import protocol
from .. import observability

logger = logging.getLogger(__name__)

__all__ = ["SessionManager", "TerminalSession", "SessionNotFoundError"]

ID_ALPHABET = string.ascii_lowercase + string.digits
ID_LENGTH = 8


class SessionNotFoundError(Exception):
    """Raised when session does not exist."""
    pass


@dataclass(eq=False)
class TerminalSession:
    """
    In-memory session state.

    Attributes:
        session_id: Opaque unique id
        name: Display name (mutable)
        status: Lifecycle status
        created_at: Creation time in epoch milliseconds
        buffer: Bounded scrollback
        clients: Attached connections (not persisted)
        pty: Live PTY handle, present iff status is running
    """
    session_id: str
    name: str
    status: SessionStatus
    created_at: int
    buffer: OutputBuffer
    clients: Set[ClientConnection] = field(default_factory=set)
    pty: Optional[PTYHandle] = None

    def to_record(self) -> SessionRecord:
        return SessionRecord(
            id=self.session_id,
            name=self.name,
            buffer=self.buffer.snapshot(),
            status=self.status,
            created_at=self.created_at,
        )

    def summary(self) -> dict:
        return {
            "id": self.session_id,
            "name": self.name,
            "status": self.status.value,
            "createdAt": self.created_at,
        }

    def notify(self, message: dict) -> None:
        for client in list(self.clients):
            if client.is_open:
                client.send(message)


# Commands. The Command union is closed: the manager refuses to start unless
# every member has a handler.

@dataclass(frozen=True)
class CreateSession:
    name: Optional[str] = None
    requester: Optional[ClientConnection] = None


@dataclass(frozen=True)
class AttachClient:
    client: ClientConnection
    session_id: str


@dataclass(frozen=True)
class DetachClient:
    client: ClientConnection


@dataclass(frozen=True)
class WriteInput:
    client: ClientConnection
    data: str


@dataclass(frozen=True)
class ResizeTerminal:
    client: ClientConnection
    cols: int
    rows: int


@dataclass(frozen=True)
class TerminateSession:
    session_id: str


@dataclass(frozen=True)
class ReactivateSession:
    session_id: str


@dataclass(frozen=True)
class RenameSession:
    session_id: str
    name: str


@dataclass(frozen=True)
class DeleteSession:
    session_id: str


@dataclass(frozen=True)
class ListSessions:
    pass


@dataclass(frozen=True)
class PtyExited:
    session_id: str
    handle: PTYHandle


@dataclass(frozen=True)
class FlushSessions:
    pass


@dataclass(frozen=True)
class ShutdownSessions:
    pass


Command = Union[
    CreateSession,
    AttachClient,
    DetachClient,
    WriteInput,
    ResizeTerminal,
    TerminateSession,
    ReactivateSession,
    RenameSession,
    DeleteSession,
    ListSessions,
    PtyExited,
    FlushSessions,
    ShutdownSessions,
]


@dataclass
class _Envelope:
    command: Command
    future: Optional[asyncio.Future] = None


class SessionManager:
    """
    Actor owning the session table.

    Data Structures:
    - sessions: Dict[str, TerminalSession] - O(1) lookup by id
    - _queue: asyncio.Queue of commands, consumed by a single worker task

    Concurrency Model:
    - One worker task applies commands sequentially
    - PTY output callbacks append to buffers on the event loop directly
      (no await, so they can never interleave with a partial mutation)
    - PTY exits are fed back in as PtyExited commands
    """

    def __init__(
        self,
        bridge: DtachBridge,
        store: SessionStore,
        registry: ConnectionRegistry,
        max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
    ):
        self.bridge = bridge
        self.store = store
        self.registry = registry
        self.max_buffer_size = max_buffer_size

        self.sessions: Dict[str, TerminalSession] = {}
        self.stats = {
            'sessions_created': 0,
            'sessions_terminated': 0,
            'sessions_reactivated': 0,
            'sessions_deleted': 0,
            'spawn_failures': 0,
        }

        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._stopping = False

        self._handlers: Dict[type, Callable[[Any], Awaitable[Any]]] = {
            CreateSession: self._create,
            AttachClient: self._attach,
            DetachClient: self._detach,
            WriteInput: self._input,
            ResizeTerminal: self._resize,
            TerminateSession: self._terminate,
            ReactivateSession: self._reactivate,
            RenameSession: self._rename,
            DeleteSession: self._delete,
            ListSessions: self._list,
            PtyExited: self._pty_exited,
            FlushSessions: self._flush,
            ShutdownSessions: self._shutdown,
        }
        missing = set(get_args(Command)) - set(self._handlers)
        if missing:
            raise TypeError(f"No handler for commands: {sorted(c.__name__ for c in missing)}")

    # ------------------------------------------------------------------
    # Actor plumbing
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done() and not self._stopping

    async def start(self) -> None:
        """Start the command worker."""
        if self._worker is not None and not self._worker.done():
            return
        self._stopping = False
        self._worker = asyncio.create_task(self._run(), name="session_manager")
        logger.info("Session manager started")

    async def stop(self) -> None:
        """Drain queued commands, then stop the worker."""
        if not self.is_running:
            return
        self._stopping = True
        self._queue.put_nowait(None)
        await self._worker
        self._worker = None
        self._fail_pending()
        logger.info("Session manager stopped")

    def _fail_pending(self) -> None:
        """Fail whatever was queued behind the stop sentinel."""
        while not self._queue.empty():
            envelope = self._queue.get_nowait()
            if envelope is not None and envelope.future is not None and not envelope.future.done():
                envelope.future.set_exception(RuntimeError("Session manager is not running"))

    async def _run(self) -> None:
        while True:
            envelope = await self._queue.get()
            if envelope is None:
                break

            try:
                result = await self._handlers[type(envelope.command)](envelope.command)
            except Exception as e:
                if envelope.future is not None and not envelope.future.done():
                    envelope.future.set_exception(e)
                else:
                    logger.error(
                        f"Command {type(envelope.command).__name__} failed: {e}",
                        exc_info=True,
                    )
            else:
                if envelope.future is not None and not envelope.future.done():
                    envelope.future.set_result(result)

    async def submit(self, command: Command) -> Any:
        """Enqueue a command and wait for its result."""
        if not self.is_running:
            raise RuntimeError("Session manager is not running")
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Envelope(command, future))
        return await future

    def post(self, command: Command) -> None:
        """Enqueue a command without waiting (callbacks, fire-and-forget)."""
        self._queue.put_nowait(_Envelope(command))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create(self, name: Optional[str] = None, requester: Optional[ClientConnection] = None) -> Optional[str]:
        """Create a session. Returns the new id, or None if the holder failed to spawn."""
        return await self.submit(CreateSession(name, requester))

    async def attach(self, client: ClientConnection, session_id: str) -> SessionStatus:
        """Attach a client. Raises SessionNotFoundError for unknown ids."""
        return await self.submit(AttachClient(client, session_id))

    async def detach(self, client: ClientConnection) -> None:
        await self.submit(DetachClient(client))

    async def write_input(self, client: ClientConnection, data: str) -> None:
        await self.submit(WriteInput(client, data))

    async def resize(self, client: ClientConnection, cols: int, rows: int) -> None:
        await self.submit(ResizeTerminal(client, cols, rows))

    async def terminate(self, session_id: str) -> bool:
        return await self.submit(TerminateSession(session_id))

    async def reactivate(self, session_id: str) -> bool:
        return await self.submit(ReactivateSession(session_id))

    async def rename(self, session_id: str, name: str) -> bool:
        return await self.submit(RenameSession(session_id, name))

    async def delete(self, session_id: str) -> bool:
        return await self.submit(DeleteSession(session_id))

    async def list_sessions(self) -> List[dict]:
        return await self.submit(ListSessions())

    async def flush(self) -> int:
        return await self.submit(FlushSessions())

    async def shutdown(self) -> None:
        """Detach all PTYs and persist every session. Holders keep running."""
        await self.submit(ShutdownSessions())

    async def load(self) -> int:
        """
        Restore sessions from the record store (before start()).

        Reconciliation rule:
        - recorded "terminated" stays terminated
        - otherwise detached if the socket exists, else terminated

        Returns:
            Number of sessions restored
        """
        records = await self.store.load_all()

        for record in records:
            if record.status == SessionStatus.TERMINATED:
                status = SessionStatus.TERMINATED
            elif self.bridge.socket_exists(record.id):
                status = SessionStatus.DETACHED
            else:
                status = SessionStatus.TERMINATED
                observability.record_session_terminated("reconciled")

            self.sessions[record.id] = TerminalSession(
                session_id=record.id,
                name=record.name,
                status=status,
                created_at=record.created_at,
                buffer=OutputBuffer(record.buffer, max_size=self.max_buffer_size),
            )
            logger.info(f"Restored session {record.name} ({record.id}) as {status.value}")

        self._update_gauges()
        return len(records)

    def get_stats(self) -> dict:
        """Get session manager statistics."""
        return {
            **self.stats,
            **self._status_counts(),
            'total_sessions': len(self.sessions),
            'attached_clients': sum(len(s.clients) for s in self.sessions.values()),
        }

    # ------------------------------------------------------------------
    # Helpers (actor context only)
    # ------------------------------------------------------------------

    def _generate_id(self) -> str:
        while True:
            session_id = "".join(secrets.choice(ID_ALPHABET) for _ in range(ID_LENGTH))
            if (
                session_id not in self.sessions
                and not self.store.exists(session_id)
                and not self.bridge.socket_exists(session_id)
            ):
                return session_id

    def _ordered(self) -> List[TerminalSession]:
        return sorted(self.sessions.values(), key=lambda s: s.created_at)

    def _summaries(self) -> List[dict]:
        return [s.summary() for s in self._ordered()]

    def _status_counts(self) -> dict:
        counts = {status.value: 0 for status in SessionStatus}
        for session in self.sessions.values():
            counts[session.status.value] += 1
        return counts

    def _update_gauges(self) -> None:
        observability.update_session_counts(self._status_counts())

    def _broadcast_sessions(self) -> None:
        self.registry.broadcast(protocol.sessions(self._summaries()))
        self._update_gauges()

    async def _persist(self, session: TerminalSession) -> None:
        await self.store.save(session.to_record())

    def _remove_client(self, client: ClientConnection) -> None:
        if client.attached_session_id is None:
            return
        previous = self.sessions.get(client.attached_session_id)
        if previous is not None:
            previous.clients.discard(client)
        client.attached_session_id = None

    def _make_output_callback(self, session: TerminalSession) -> Callable[[str], None]:
        session_id = session.session_id

        def on_data(data: str) -> None:
            session.buffer.append(data)
            session.notify(protocol.output(session_id, data))

        return on_data

    def _on_pty_exit(self, handle: PTYHandle, returncode: Optional[int]) -> None:
        if self.is_running:
            self.post(PtyExited(handle.session_id, handle))

    def _teardown_pty(self, session: TerminalSession) -> None:
        # Clear first so the exit callback recognises the handle as stale
        handle, session.pty = session.pty, None
        if handle is not None:
            handle.kill()

    async def _bridge_attach(self, session: TerminalSession) -> None:
        """Open a PTY onto the holder, reconciling to terminated on failure."""
        session_id = session.session_id

        if not self.bridge.socket_exists(session_id):
            logger.warning(f"Socket gone for {session_id}, marking terminated")
            session.status = SessionStatus.TERMINATED
            observability.record_session_terminated("reconciled")
            await self._persist(session)
            self._broadcast_sessions()
            return

        try:
            handle = await self.bridge.attach_pty(
                session_id,
                on_data=self._make_output_callback(session),
                on_exit=self._on_pty_exit,
            )
        except OSError as e:
            # Socket vanished between the check and the attach, or no PTY
            logger.warning(f"Attach to {session_id} failed ({e}), marking terminated")
            session.status = SessionStatus.TERMINATED
            observability.record_session_terminated("reconciled")
            await self._persist(session)
            self._broadcast_sessions()
            return

        session.pty = handle
        session.status = SessionStatus.RUNNING
        await self._persist(session)
        self._broadcast_sessions()

    # ------------------------------------------------------------------
    # Command handlers (actor context only)
    # ------------------------------------------------------------------

    async def _create(self, cmd: CreateSession) -> Optional[str]:
        session_id = self._generate_id()

        try:
            await self.bridge.spawn(session_id)
        except SpawnFailure as e:
            logger.error(f"Failed to create session: {e}")
            self.stats['spawn_failures'] += 1
            observability.record_spawn_failure()
            return None

        session = TerminalSession(
            session_id=session_id,
            name=cmd.name or f"Session {len(self.sessions) + 1}",
            status=SessionStatus.DETACHED,
            created_at=int(time.time() * 1000),
            buffer=OutputBuffer(max_size=self.max_buffer_size),
        )
        self.sessions[session_id] = session
        await self._persist(session)

        self.stats['sessions_created'] += 1
        observability.record_session_created()
        logger.info(f"Created session {session.name} ({session_id})")

        if cmd.requester is not None:
            cmd.requester.send(protocol.created(session_id))
        self._broadcast_sessions()

        return session_id

    async def _attach(self, cmd: AttachClient) -> SessionStatus:
        session = self.sessions.get(cmd.session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {cmd.session_id} not found")

        self._remove_client(cmd.client)

        if session.pty is None and session.status != SessionStatus.TERMINATED:
            await self._bridge_attach(session)

        cmd.client.attached_session_id = cmd.session_id
        session.clients.add(cmd.client)

        cmd.client.send(protocol.attached(cmd.session_id, session.name, session.status.value))
        if session.buffer:
            cmd.client.send(protocol.history(cmd.session_id, session.buffer.snapshot()))
            observability.record_history_replay()

        logger.debug(f"Client {cmd.client.client_ip} attached to {cmd.session_id}")
        return session.status

    async def _detach(self, cmd: DetachClient) -> None:
        self._remove_client(cmd.client)

    async def _input(self, cmd: WriteInput) -> None:
        session = self.sessions.get(cmd.client.attached_session_id or "")
        if session is None or session.pty is None or session.status != SessionStatus.RUNNING:
            return
        session.pty.write(cmd.data)

    async def _resize(self, cmd: ResizeTerminal) -> None:
        session = self.sessions.get(cmd.client.attached_session_id or "")
        if session is None or session.pty is None:
            return
        if cmd.cols > 0 and cmd.rows > 0:
            session.pty.resize(cmd.cols, cmd.rows)

    async def _terminate(self, cmd: TerminateSession) -> bool:
        session = self.sessions.get(cmd.session_id)
        if session is None:
            return False

        self._teardown_pty(session)

        report = await self.bridge.kill_session(cmd.session_id)
        observability.record_kill_report(report)

        session.status = SessionStatus.TERMINATED
        await self._persist(session)

        session.notify(protocol.terminated(cmd.session_id))
        self.stats['sessions_terminated'] += 1
        observability.record_session_terminated("explicit")
        logger.info(f"Terminated session {session.name} ({cmd.session_id})")

        self._broadcast_sessions()
        return True

    async def _reactivate(self, cmd: ReactivateSession) -> bool:
        session = self.sessions.get(cmd.session_id)
        if session is None or session.status != SessionStatus.TERMINATED:
            return False

        # A leftover socket would make dtach refuse to bind
        if self.bridge.socket_exists(cmd.session_id):
            await self.bridge.kill_session(cmd.session_id)

        try:
            await self.bridge.spawn(cmd.session_id)
        except SpawnFailure as e:
            logger.error(f"Failed to reactivate {cmd.session_id}: {e}")
            self.stats['spawn_failures'] += 1
            observability.record_spawn_failure()
            return False

        session.status = SessionStatus.DETACHED
        await self._persist(session)

        session.notify(protocol.reactivated(cmd.session_id))
        self.stats['sessions_reactivated'] += 1
        observability.record_session_reactivated()
        logger.info(f"Reactivated session {session.name} ({cmd.session_id})")

        self._broadcast_sessions()
        return True

    async def _rename(self, cmd: RenameSession) -> bool:
        session = self.sessions.get(cmd.session_id)
        if session is None or not cmd.name:
            return False

        session.name = cmd.name
        await self._persist(session)
        logger.info(f"Renamed session {cmd.session_id} to {cmd.name}")

        self._broadcast_sessions()
        return True

    async def _delete(self, cmd: DeleteSession) -> bool:
        session = self.sessions.pop(cmd.session_id, None)
        if session is None:
            return False

        self._teardown_pty(session)
        for client in list(session.clients):
            if client.attached_session_id == cmd.session_id:
                client.attached_session_id = None
        session.clients.clear()

        await self.store.delete(cmd.session_id)

        report = await self.bridge.kill_session(cmd.session_id)
        observability.record_kill_report(report)
        self.bridge.remove_socket(cmd.session_id)

        self.stats['sessions_deleted'] += 1
        observability.record_session_deleted()
        logger.warning(f"Deleted session {session.name} ({cmd.session_id})")

        self._broadcast_sessions()
        return True

    async def _list(self, cmd: ListSessions) -> List[dict]:
        return self._summaries()

    async def _pty_exited(self, cmd: PtyExited) -> None:
        session = self.sessions.get(cmd.session_id)
        if session is None or session.pty is not cmd.handle:
            # Stale handle from terminate, delete or shutdown
            return

        session.pty = None
        if self.bridge.socket_exists(cmd.session_id):
            session.status = SessionStatus.DETACHED
        else:
            session.status = SessionStatus.TERMINATED
            observability.record_session_terminated("reconciled")

        logger.info(f"PTY exited for {cmd.session_id}, now {session.status.value}")
        await self._persist(session)
        self._broadcast_sessions()

    async def _flush(self, cmd: FlushSessions) -> int:
        for session in list(self.sessions.values()):
            await self._persist(session)
        return len(self.sessions)

    async def _shutdown(self, cmd: ShutdownSessions) -> None:
        for session in list(self.sessions.values()):
            self._teardown_pty(session)
            if self.bridge.socket_exists(session.session_id):
                session.status = SessionStatus.DETACHED
            else:
                session.status = SessionStatus.TERMINATED
            await self._persist(session)
        logger.info(f"Persisted {len(self.sessions)} sessions for shutdown")
