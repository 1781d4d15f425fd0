"""
PTY Manager - Pseudo-Terminal Attachment to Backing Shells.

Opens a PTY pair and runs the dtach attach client on the slave side, so the
master side carries the byte stream of a shell that lives in a dtach holder.
Killing the attach client only detaches; the holder and its shell keep running.

Platform Support:
- Linux/Unix only (pty, fcntl, termios)

Engineering Standards:
- Non-blocking master FD driven by loop.add_reader (no polling threads)
- Incremental UTF-8 decoding so multi-byte characters split across reads
  are never mangled
- Exit is reported exactly once, whichever of EOF or process exit comes first

Author: Backend Lead Developer
"""

from __future__ import annotations

import asyncio
import codecs
import errno
import fcntl
import logging
import os
import pty
import signal
import struct
import termios
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

__all__ = ["PTYManager", "PTYHandle", "DataCallback", "ExitCallback"]

DataCallback = Callable[[str], None]
ExitCallback = Callable[["PTYHandle", Optional[int]], None]

READ_CHUNK_SIZE = 16384  # 16KB


def _set_terminal_size(fd: int, rows: int, cols: int) -> None:
    """Set terminal window size via TIOCSWINSZ ioctl."""
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


@dataclass(eq=False)
class PTYHandle:
    """
    Live in-process PTY attachment for one session.

    Attributes:
        session_id: Session this handle belongs to
        process: The attach client subprocess
        master_fd: PTY master file descriptor
        rows: Current terminal rows
        cols: Current terminal columns
        created_at: Unix timestamp of attachment
    """
    session_id: str
    process: asyncio.subprocess.Process
    master_fd: int
    rows: int
    cols: int
    on_data: DataCallback
    on_exit: ExitCallback
    created_at: float = field(default_factory=time.time)
    closed: bool = False
    exit_task: Optional[asyncio.Task] = None
    _decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )

    @property
    def pid(self) -> int:
        return self.process.pid

    def write(self, data: str) -> int:
        """
        Write client input to the PTY.

        Returns:
            Number of bytes written (0 if closed or the PTY buffer is full)
        """
        if self.closed:
            return 0
        try:
            return os.write(self.master_fd, data.encode("utf-8", errors="replace"))
        except BlockingIOError:
            logger.warning(f"PTY buffer full for {self.session_id}, input dropped")
            return 0
        except OSError as e:
            logger.warning(f"Write failed for {self.session_id}: {e}")
            return 0

    def resize(self, cols: int, rows: int) -> None:
        """Resize the PTY and nudge the attach client with SIGWINCH."""
        if self.closed:
            return
        try:
            _set_terminal_size(self.master_fd, rows, cols)
            self.rows, self.cols = rows, cols
        except (OSError, struct.error) as e:
            logger.warning(f"Resize failed for {self.session_id}: {e}")
            return

        # The slave is not our controlling terminal, so the kernel will not
        # deliver SIGWINCH on its own.
        try:
            os.kill(self.process.pid, signal.SIGWINCH)
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        """
        Detach from the backing holder.

        Sends SIGHUP to the attach client only; the dtach holder keeps the
        shell alive.
        """
        if self.process.returncode is None:
            try:
                self.process.send_signal(signal.SIGHUP)
            except ProcessLookupError:
                pass
        self._close_fd()

    def _read_ready(self) -> None:
        """add_reader callback: drain available output."""
        try:
            data = os.read(self.master_fd, READ_CHUNK_SIZE)
        except BlockingIOError:
            return
        except OSError as e:
            # EIO means the slave side is gone
            if e.errno != errno.EIO:
                logger.warning(f"PTY read failed for {self.session_id}: {e}")
            data = b""

        if not data:
            self._close_fd()
            return

        text = self._decoder.decode(data)
        if text:
            self.on_data(text)

    def _close_fd(self) -> None:
        if self.closed:
            return
        self.closed = True

        loop = asyncio.get_running_loop()
        loop.remove_reader(self.master_fd)

        tail = self._decoder.decode(b"", final=True)
        if tail:
            self.on_data(tail)

        try:
            os.close(self.master_fd)
        except OSError:
            pass


class PTYManager:
    """
    Registry of PTY attachments keyed by session id.

    Concurrency Model:
    - Lock-free (asyncio single-threaded event loop)
    - Data and exit callbacks run on the event loop thread
    """

    def __init__(self, default_cols: int = 120, default_rows: int = 30):
        self.handles: Dict[str, PTYHandle] = {}
        self.default_cols = default_cols
        self.default_rows = default_rows

    async def spawn(
        self,
        session_id: str,
        argv: List[str],
        on_data: DataCallback,
        on_exit: ExitCallback,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        rows: Optional[int] = None,
        cols: Optional[int] = None,
    ) -> PTYHandle:
        """
        Run argv on a fresh PTY and stream its output.

        Process:
        1. Open PTY pair (master, slave) and set the window size
        2. Spawn argv in a new session with the slave as stdio
        3. Close the slave in the parent, set master non-blocking
        4. Register the master with the event loop reader

        Raises:
            OSError: If the PTY or the process cannot be created
        """
        rows = rows or self.default_rows
        cols = cols or self.default_cols

        master_fd, slave_fd = pty.openpty()
        try:
            _set_terminal_size(master_fd, rows, cols)
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                env=env,
                start_new_session=True,
            )
        except Exception:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        flags = fcntl.fcntl(master_fd, fcntl.F_GETFL)
        fcntl.fcntl(master_fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)

        handle = PTYHandle(
            session_id=session_id,
            process=process,
            master_fd=master_fd,
            rows=rows,
            cols=cols,
            on_data=on_data,
            on_exit=on_exit,
        )

        loop = asyncio.get_running_loop()
        loop.add_reader(master_fd, handle._read_ready)
        self.handles[session_id] = handle
        handle.exit_task = asyncio.create_task(
            self._watch_exit(handle),
            name=f"pty_exit_{session_id}",
        )

        logger.info(
            f"Attached PTY for {session_id}: pid={process.pid}, "
            f"fd={master_fd}, size={cols}x{rows}"
        )

        return handle

    async def _watch_exit(self, handle: PTYHandle) -> None:
        """Wait for the attach client to exit, then report it once."""
        returncode = await handle.process.wait()

        # Give the reader a chance to drain what the process wrote last
        await asyncio.sleep(0)
        handle._close_fd()

        if self.handles.get(handle.session_id) is handle:
            del self.handles[handle.session_id]

        logger.info(f"PTY detached for {handle.session_id} (exit={returncode})")

        try:
            handle.on_exit(handle, returncode)
        except Exception as e:
            logger.error(f"PTY exit callback failed for {handle.session_id}: {e}", exc_info=True)

    def get_handle(self, session_id: str) -> Optional[PTYHandle]:
        return self.handles.get(session_id)

    def get_stats(self) -> dict:
        """Get PTY manager statistics."""
        now = time.time()
        return {
            "attached": len(self.handles),
            "handles": [
                {
                    "id": h.session_id,
                    "pid": h.pid,
                    "size": f"{h.cols}x{h.rows}",
                    "uptime": int(now - h.created_at),
                }
                for h in self.handles.values()
            ],
        }

