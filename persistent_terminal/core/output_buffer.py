"""
Output Buffer - Bounded Scrollback for Terminal Sessions.

Keeps the most recent ``max_size`` characters of terminal output so that
newly attaching clients can be replayed the session history.

Invariant:
- len(buffer) <= max_size at all times
- The retained text is always a suffix of everything ever appended
  (oldest characters are dropped first)

Author: Backend Lead Developer
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

__all__ = ["OutputBuffer", "DEFAULT_MAX_BUFFER_SIZE"]

DEFAULT_MAX_BUFFER_SIZE = 100_000


class OutputBuffer:
    """
    Character ring buffer holding a session's scrollback.

    Algorithmic Complexity:
    - append(): O(n) worst case when trimming, n = max_size
    - snapshot(): O(1) (strings are immutable)
    """

    __slots__ = ("max_size", "_data")

    def __init__(self, initial: str = "", max_size: int = DEFAULT_MAX_BUFFER_SIZE):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._data = initial[-max_size:] if initial else ""

    def append(self, text: str) -> None:
        """Append output, dropping the oldest characters beyond max_size."""
        if not text:
            return
        if len(text) >= self.max_size:
            self._data = text[-self.max_size:]
            return
        self._data += text
        if len(self._data) > self.max_size:
            self._data = self._data[-self.max_size:]

    def snapshot(self) -> str:
        """Return the retained history."""
        return self._data

    def clear(self) -> None:
        self._data = ""

    def __len__(self) -> int:
        return len(self._data)

    def __bool__(self) -> bool:
        return bool(self._data)

    def __repr__(self) -> str:
        return f"OutputBuffer(len={len(self._data)}, max_size={self.max_size})"
