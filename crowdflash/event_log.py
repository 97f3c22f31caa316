"""
Event log - bounded, most-recent-first record of operational events.

The log is what the admin console shows in its event feed. It holds at
most ``capacity`` entries; appending past capacity evicts the oldest.
Entries are kept newest-first so a snapshot can be replayed verbatim.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100


class LogType(str, Enum):
    """Event categories shown in the admin feed."""

    SYS = "SYS"
    NET = "NET"
    CMD = "CMD"
    ERR = "ERR"


@dataclass(frozen=True)
class LogEntry:
    """A single event log entry."""

    time: str  # Local wall-clock time, HH:MM:SS
    type: LogType
    message: str
    timestamp: int  # Epoch milliseconds

    def to_dict(self) -> dict:
        return {
            "time": self.time,
            "type": self.type.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }


class EventLog:
    """Ring buffer of :class:`LogEntry` objects, newest first."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY, clock: Callable[[], float] = time.time):
        if capacity <= 0:
            raise ValueError(f"Event log capacity must be positive, got: {capacity}")
        self._capacity = capacity
        self._clock = clock
        # appendleft + maxlen drops from the right, i.e. the oldest entry
        self._entries: Deque[LogEntry] = deque(maxlen=capacity)
        self.total_appended = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, log_type: LogType, message: str) -> LogEntry:
        """Record an event and return the new entry."""
        now = self._clock()
        entry = LogEntry(
            time=time.strftime("%H:%M:%S", time.localtime(now)),
            type=LogType(log_type),
            message=message,
            timestamp=int(now * 1000),
        )
        self._entries.appendleft(entry)
        self.total_appended += 1
        logger.info(f"[{entry.type.value}] {message}")
        return entry

    def snapshot(self, n: Optional[int] = None) -> List[LogEntry]:
        """Return up to ``n`` most recent entries, newest first."""
        if n is None or n >= len(self._entries):
            return list(self._entries)
        if n <= 0:
            return []
        return [self._entries[i] for i in range(n)]

    def clear(self):
        self._entries.clear()
