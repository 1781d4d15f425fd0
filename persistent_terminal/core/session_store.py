"""
Session Store - Durable Per-Session JSON Records.

Persists the disk projection of each session so the session table survives
restarts of this process. The live shells themselves survive via dtach; this
store only remembers *which* sessions exist and what they last printed.

Data Model:
- {sessions_dir}/{session_id}.json -> {id, name, buffer, status, createdAt}
- Absence of a record file means the session does not exist

Write Strategy:
- Write to a temporary sibling then os.replace() (no torn records)
- Write failures are logged, never raised; the next periodic flush retries

Author: Backend Lead Developer
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from typing import List, Optional

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)

__all__ = ["SessionStore", "SessionRecord", "SessionStatus"]


class SessionStatus(str, Enum):
    """Lifecycle status of a terminal session."""
    DETACHED = "detached"  # holder alive, no PTY attached in-process
    RUNNING = "running"  # PTY attached and streaming
    TERMINATED = "terminated"  # holder confirmed or assumed gone


@dataclass
class SessionRecord:
    """
    On-disk projection of a session.

    Attributes:
        id: Session identifier
        name: Display name
        buffer: Scrollback snapshot
        status: Last known status
        created_at: Creation time in epoch milliseconds
    """
    id: str
    name: str
    buffer: str
    status: SessionStatus
    created_at: int

    def to_dict(self) -> dict:
        """Serialize using the wire field names."""
        data = asdict(self)
        data["status"] = self.status.value
        data["createdAt"] = data.pop("created_at")
        return data

    @classmethod
    def from_dict(cls, data: dict) -> SessionRecord:
        """Deserialize, tolerating missing optional fields."""
        try:
            status = SessionStatus(data.get("status", SessionStatus.DETACHED.value))
        except ValueError:
            status = SessionStatus.DETACHED

        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            buffer=data.get("buffer") or "",
            status=status,
            created_at=int(data.get("createdAt") or 0),
        )


class SessionStore:
    """
    JSON-file record store, one file per session.

    The store never decides session status; it only serializes what the
    Session Manager hands it.
    """

    __slots__ = ("sessions_dir",)

    def __init__(self, sessions_dir: Path):
        self.sessions_dir = Path(sessions_dir)

    def path_for(self, session_id: str) -> Path:
        """Get record file path for session."""
        return self.sessions_dir / f"{session_id}.json"

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    async def save(self, record: SessionRecord) -> bool:
        """
        Write a record atomically.

        Returns:
            True if written, False if the write failed (logged)
        """
        path = self.path_for(record.id)
        tmp_path = path.with_name(f".{path.name}.tmp")

        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as fh:
                await fh.write(json.dumps(record.to_dict()))
            await aiofiles.os.replace(tmp_path, path)
            return True
        except OSError as e:
            logger.error(f"Failed to save session {record.id}: {e}")
            return False

    async def delete(self, session_id: str) -> bool:
        """Remove a record file. Returns False if it did not exist."""
        try:
            await aiofiles.os.remove(self.path_for(session_id))
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"Failed to delete record for {session_id}: {e}")
            return False

    async def load(self, session_id: str) -> Optional[SessionRecord]:
        """Read a single record, None if missing or unreadable."""
        path = self.path_for(session_id)
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as fh:
                return SessionRecord.from_dict(json.loads(await fh.read()))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Failed to read session record {path.name}: {e}")
            return None

    async def load_all(self) -> List[SessionRecord]:
        """
        Read every record in the sessions directory.

        Unreadable files are logged and skipped individually so one corrupt
        record cannot hide the others.
        """
        if not self.sessions_dir.is_dir():
            return []

        records = []
        for name in sorted(os.listdir(self.sessions_dir)):
            if not name.endswith(".json") or name.startswith("."):
                continue
            record = await self.load(name[:-len(".json")])
            if record is not None:
                records.append(record)

        return records
