"""
In-memory error log.

Newest entries first, oldest dropped once capacity is reached. One
instance per app (app.state.error_log); nothing is persisted.
"""

import itertools
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Deque, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000
DEFAULT_QUERY_LIMIT = 50

_LEVEL_MAP = {
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
}


@dataclass
class ErrorLogEntry:
    id: str
    source: str
    level: str
    message: str
    details: Any = None
    url: Optional[str] = None
    userAgent: Optional[str] = None
    timestamp: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class ErrorLogService:
    """Bounded, newest-first error log."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._entries: Deque[ErrorLogEntry] = deque(maxlen=capacity)
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._entries)

    def record(
        self,
        source: str,
        level: str,
        message: str,
        details: Any = None,
        url: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ErrorLogEntry:
        """Store an entry and mirror it to the Python logger."""
        entry = ErrorLogEntry(
            id=f"log_{next(self._ids)}",
            source=source,
            level=level,
            message=message,
            details=details,
            url=url,
            userAgent=user_agent,
            timestamp=int(time.time() * 1000),
        )
        # appendleft on a full deque drops the oldest entry from the right
        self._entries.appendleft(entry)

        logger.log(
            _LEVEL_MAP.get(level, logging.INFO),
            f"[{source}] {message}" + (f" {details}" if details else ""),
        )
        return entry

    def query(
        self,
        limit: int = DEFAULT_QUERY_LIMIT,
        source: Optional[str] = None,
        level: Optional[str] = None,
    ) -> Tuple[List[ErrorLogEntry], int]:
        """Return (newest `limit` matching entries, total matching count)."""
        matched = [
            e
            for e in self._entries
            if (not source or e.source == source) and (not level or e.level == level)
        ]
        return matched[: max(limit, 0)], len(matched)

    def clear(self) -> None:
        self._entries.clear()
