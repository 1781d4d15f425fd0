"""
Housekeeping - Periodic Persistence and Stale Connection Reaping.

Two independent loops:

### Persist loop (default 30s)
- Flushes every session record through the Session Manager
- Bounds scrollback loss on a crash to one interval

### Heartbeat loop (default 45s)
- A connection that has not sent ``ping`` since the previous sweep is
  terminated without flushing
- Every surviving connection has its liveness flag cleared for the next round

Author: Backend Lead Developer
"""

from __future__ import annotations

import asyncio
import logging
from typing import List

from .connection import ConnectionRegistry
from .session_manager import SessionManager
from .. import observability

logger = logging.getLogger(__name__)

__all__ = ["Housekeeper"]


class Housekeeper:
    """Owns the persist and heartbeat background tasks."""

    def __init__(
        self,
        session_manager: SessionManager,
        registry: ConnectionRegistry,
        persist_interval: float = 30.0,
        heartbeat_interval: float = 45.0,
    ):
        self.session_manager = session_manager
        self.registry = registry
        self.persist_interval = persist_interval
        self.heartbeat_interval = heartbeat_interval

        self._tasks: List[asyncio.Task] = []

    def sweep_connections(self) -> int:
        """
        Run one heartbeat round.

        Returns:
            Number of connections terminated
        """
        reaped = 0
        for connection in self.registry:
            if not connection.is_alive:
                logger.info(f"Terminating stale connection from {connection.client_ip}")
                connection.terminate()
                self.registry.remove(connection)
                observability.record_stale_connection()
                reaped += 1
            else:
                connection.is_alive = False
        return reaped

    async def persist_loop(self):
        logger.info(f"Started persist loop (interval={self.persist_interval}s)")

        while True:
            try:
                await asyncio.sleep(self.persist_interval)
                count = await self.session_manager.flush()
                logger.debug(f"Persisted {count} sessions")

            except asyncio.CancelledError:
                logger.info("Persist loop cancelled")
                break
            except Exception as e:
                logger.error(f"Error in persist loop: {e}", exc_info=True)

    async def heartbeat_loop(self):
        logger.info(f"Started heartbeat loop (interval={self.heartbeat_interval}s)")

        while True:
            try:
                await asyncio.sleep(self.heartbeat_interval)
                reaped = self.sweep_connections()
                if reaped:
                    logger.info(f"Reaped {reaped} stale connections")

            except asyncio.CancelledError:
                logger.info("Heartbeat loop cancelled")
                break
            except Exception as e:
                logger.error(f"Error in heartbeat loop: {e}", exc_info=True)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks.append(asyncio.create_task(self.persist_loop(), name="persist_loop"))
        self._tasks.append(asyncio.create_task(self.heartbeat_loop(), name="heartbeat_loop"))

    async def stop(self) -> None:
        """Cancel both loops and wait for them to finish."""
        for task in self._tasks:
            task.cancel()

        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
