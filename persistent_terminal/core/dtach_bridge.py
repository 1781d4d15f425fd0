"""
Dtach Bridge - External Process Bridge to Backing Shell Holders.

Each session's shell lives inside a dtach holder bound to a per-session Unix
socket. The holder survives restarts of this process; the bridge only tracks
it. Socket presence is the sole liveness signal used for reconciliation:

    socket present  -> holder believed alive  (detached / running)
    socket missing  -> holder assumed gone    (terminated)

A stale socket with no listener looks alive under this rule. Nothing connects
to the socket to tell the two apart.

Kill Strategy (ordered, best-effort):
1. fuser -k <socket>      OS terminates every holder of the socket
2. lsof -t <socket>       enumerate holder pids, SIGTERM each
3. sleep KILL_GRACE_DELAY then unlink the socket regardless

Author: Backend Lead Developer
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
import signal
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from .pty_manager import PTYManager, PTYHandle, DataCallback, ExitCallback

logger = logging.getLogger(__name__)

__all__ = [
    "DtachBridge",
    "ConfigurationError",
    "SpawnFailure",
    "KillOutcome",
    "KillReport",
    "resolve_dtach_path",
    "KILL_GRACE_DELAY",
]

DTACH_SEARCH_PATHS = (
    "/opt/homebrew/bin/dtach",  # Apple Silicon Homebrew
    "/usr/local/bin/dtach",  # Intel Homebrew
    "/usr/bin/dtach",  # System
)

# Seconds between signalling the holders and force-removing the socket. The
# holder unlinks its own socket on exit; unlinking first would race it.
KILL_GRACE_DELAY = 0.1

TERMINAL_ENV = {
    "TERM": "xterm-256color",
    "COLORTERM": "truecolor",
}


class ConfigurationError(Exception):
    """Raised when the dtach binary cannot be resolved. Fatal at startup."""
    pass


class SpawnFailure(Exception):
    """Raised when launching a backing holder fails."""
    pass


class KillOutcome(Enum):
    """Result of one step of the kill fallback chain."""
    SIGNALED = "signaled"
    NOT_FOUND = "not_found"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass
class KillReport:
    """Per-step outcomes of kill_socket()."""
    socket_path: Path
    fuser: KillOutcome = KillOutcome.NOT_FOUND
    lsof: KillOutcome = KillOutcome.NOT_FOUND
    signaled_pids: List[int] = field(default_factory=list)
    removed: bool = False

    @property
    def signaled(self) -> bool:
        return KillOutcome.SIGNALED in (self.fuser, self.lsof)


def resolve_dtach_path(configured: Optional[str] = None) -> str:
    """
    Locate the dtach binary.

    Search order: configured path, well-known install locations, PATH.

    Raises:
        ConfigurationError: If dtach cannot be found
    """
    candidates = [configured] if configured else []
    candidates.extend(DTACH_SEARCH_PATHS)

    for candidate in candidates:
        if candidate and os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate

    found = shutil.which("dtach")
    if found:
        return found

    raise ConfigurationError(
        "dtach is not installed (install with your package manager, "
        "e.g. 'brew install dtach' or 'apt install dtach')"
    )


class DtachBridge:
    """
    Owns the session id -> socket -> holder process mapping.

    The bridge never guarantees durability itself; dtach does. It launches
    holders, attaches PTYs to them, and kills them on request.
    """

    def __init__(
        self,
        dtach_path: str,
        sockets_dir: Path,
        shell: str = "/bin/bash",
        pty_manager: Optional[PTYManager] = None,
        kill_grace_delay: float = KILL_GRACE_DELAY,
        subprocess_timeout: float = 5.0,
        cwd: Optional[str] = None,
    ):
        self.dtach_path = dtach_path
        self.sockets_dir = Path(sockets_dir)
        self.shell = shell
        self.pty_manager = pty_manager or PTYManager()
        self.kill_grace_delay = kill_grace_delay
        self.subprocess_timeout = subprocess_timeout
        self.cwd = cwd or str(Path.home())

    def _environment(self) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(TERMINAL_ENV)
        return env

    def socket_path(self, session_id: str) -> Path:
        """Get dtach socket path for session."""
        return self.sockets_dir / f"{session_id}.sock"

    def socket_exists(self, session_id: str) -> bool:
        """Liveness signal: True if the session's socket handle exists."""
        return self.socket_path(session_id).exists()

    async def spawn(self, session_id: str) -> None:
        """
        Launch a detached dtach holder running the shell.

        dtach flags:
        -n  create the session without attaching
        -E  disable the detach escape character
        -z  disable suspend key processing

        Raises:
            SpawnFailure: If dtach cannot be launched or exits non-zero
        """
        socket_path = self.socket_path(session_id)
        argv = [self.dtach_path, "-n", str(socket_path), "-Ez", *shlex.split(self.shell)]

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                cwd=self.cwd,
                env=self._environment(),
            )
            returncode = await asyncio.wait_for(proc.wait(), timeout=self.subprocess_timeout)
        except asyncio.TimeoutError:
            raise SpawnFailure(f"dtach -n timed out for {session_id}")
        except OSError as e:
            raise SpawnFailure(f"Failed to launch dtach for {session_id}: {e}") from e

        if returncode != 0:
            raise SpawnFailure(f"dtach -n exited with status {returncode} for {session_id}")

        logger.info(f"Spawned dtach holder for {session_id} at {socket_path}")

    async def attach_pty(
        self,
        session_id: str,
        on_data: DataCallback,
        on_exit: ExitCallback,
    ) -> PTYHandle:
        """
        Attach a fresh PTY to the session's holder.

        Raises:
            OSError: If the PTY or the attach client cannot be created
        """
        argv = [self.dtach_path, "-a", str(self.socket_path(session_id)), "-Ez"]
        return await self.pty_manager.spawn(
            session_id,
            argv,
            on_data=on_data,
            on_exit=on_exit,
            cwd=self.cwd,
            env=self._environment(),
        )

    async def _run_tool(self, *argv: str) -> Optional[tuple]:
        """
        Run a helper tool, returning (returncode, stdout) or None if the tool
        is unavailable. Raises asyncio.TimeoutError on timeout.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            return None

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.subprocess_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise

        return proc.returncode, stdout.decode("utf-8", errors="replace")

    async def _fuser_kill(self, socket_path: Path) -> KillOutcome:
        try:
            result = await self._run_tool("fuser", "-k", str(socket_path))
        except asyncio.TimeoutError:
            return KillOutcome.TIMED_OUT
        except OSError as e:
            logger.debug(f"fuser failed for {socket_path}: {e}")
            return KillOutcome.FAILED

        if result is None:
            return KillOutcome.FAILED
        # fuser exits non-zero when nothing holds the file
        return KillOutcome.SIGNALED if result[0] == 0 else KillOutcome.NOT_FOUND

    async def _lsof_kill(self, socket_path: Path, report: KillReport) -> KillOutcome:
        try:
            result = await self._run_tool("lsof", "-t", str(socket_path))
        except asyncio.TimeoutError:
            return KillOutcome.TIMED_OUT
        except OSError as e:
            logger.debug(f"lsof failed for {socket_path}: {e}")
            return KillOutcome.FAILED

        if result is None:
            return KillOutcome.FAILED

        pids = [int(tok) for tok in result[1].split() if tok.isdigit()]
        for pid in pids:
            try:
                os.kill(pid, signal.SIGTERM)
                report.signaled_pids.append(pid)
            except ProcessLookupError:
                pass
            except PermissionError as e:
                logger.warning(f"Cannot signal holder pid {pid}: {e}")

        return KillOutcome.SIGNALED if report.signaled_pids else KillOutcome.NOT_FOUND

    async def kill_socket(self, socket_path: Path) -> KillReport:
        """
        Best-effort termination of the holder behind a socket.

        Every step is attempted in order; failures are logged and never
        raised. The socket is always force-removed after the grace delay.

        Returns:
            KillReport with the outcome of each step
        """
        socket_path = Path(socket_path)
        report = KillReport(socket_path=socket_path)

        if not socket_path.exists():
            return report

        report.fuser = await self._fuser_kill(socket_path)
        report.lsof = await self._lsof_kill(socket_path, report)

        await asyncio.sleep(self.kill_grace_delay)

        try:
            socket_path.unlink()
            report.removed = True
        except FileNotFoundError:
            # Holder released it during the grace delay
            report.removed = True
        except OSError as e:
            logger.warning(f"Failed to remove socket {socket_path}: {e}")

        logger.info(
            f"Killed holder at {socket_path.name}: fuser={report.fuser.value}, "
            f"lsof={report.lsof.value}, pids={report.signaled_pids}, removed={report.removed}"
        )

        return report

    async def kill_session(self, session_id: str) -> KillReport:
        return await self.kill_socket(self.socket_path(session_id))

    def remove_socket(self, session_id: str) -> None:
        """Unconditionally remove a session's socket (delete path)."""
        try:
            self.socket_path(session_id).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove socket for {session_id}: {e}")
