"""Bounded buffer of recent file changes and the conflict queries over it."""

from __future__ import annotations

import dataclasses
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Optional

from nebulus_sentinel.changes.conflicts import (
    CRITICAL_AGENT_COUNT,
    CRITICAL_WINDOW,
    Conflict,
    RecordedFileChange,
    detect_conflicts,
)
from nebulus_sentinel.timeutil import Clock, utc_now

DEFAULT_STORE_LIMIT = 500


class FileChangeStore:
    """Keeps the most recent ``limit`` file changes, oldest evicted first.

    Args:
        limit: Capacity; non-positive values fall back to the default.
        clock: Stamps records added without a timestamp.
    """

    def __init__(self, limit: int = DEFAULT_STORE_LIMIT, clock: Clock = utc_now) -> None:
        if limit <= 0:
            limit = DEFAULT_STORE_LIMIT
        self.limit = limit
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: deque[RecordedFileChange] = deque(maxlen=limit)

    def add(self, entry: RecordedFileChange) -> RecordedFileChange:
        """Record a change, returning it as stored."""
        if entry.timestamp is None:
            entry = dataclasses.replace(entry, timestamp=self._clock())
        with self._lock:
            self._entries.append(entry)
        return entry

    def since(self, ts: datetime) -> list[RecordedFileChange]:
        """Changes stamped strictly after ``ts``, oldest first."""
        with self._lock:
            return [e for e in self._entries if e.timestamp is not None and e.timestamp > ts]

    def all(self) -> list[RecordedFileChange]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def conflicts_recent(
    store: FileChangeStore,
    window: timedelta,
    now: Optional[datetime] = None,
    critical_window: timedelta = CRITICAL_WINDOW,
    critical_agents: int = CRITICAL_AGENT_COUNT,
) -> list[Conflict]:
    """Conflicts among the changes recorded within ``window`` of ``now``."""
    now = now or utc_now()
    return detect_conflicts(store.since(now - window), critical_window, critical_agents)


def conflicts_since(
    store: FileChangeStore,
    ts: datetime,
    session: Optional[str] = None,
    critical_window: timedelta = CRITICAL_WINDOW,
    critical_agents: int = CRITICAL_AGENT_COUNT,
) -> list[Conflict]:
    """Conflicts among changes after ``ts``, optionally limited to one session."""
    changes = [c for c in store.since(ts) if not session or c.session == session]
    return detect_conflicts(changes, critical_window, critical_agents)
