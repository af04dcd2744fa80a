"""Concurrent-edit conflicts: several agents modifying the same file."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable, Optional

from nebulus_sentinel.alerts.types import Severity
from nebulus_sentinel.timeutil import parse_timestamp

CRITICAL_WINDOW = timedelta(minutes=10)
CRITICAL_AGENT_COUNT = 3


class FileChangeType(Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class FileChange:
    path: str
    type: FileChangeType

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "type": self.type.value}


@dataclass(frozen=True)
class RecordedFileChange:
    """A file change attributed to the agents active in a session."""

    change: FileChange
    timestamp: Optional[datetime] = None
    session: str = ""
    agents: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "session": self.session,
            "agents": list(self.agents),
            "change": self.change.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecordedFileChange":
        """Build a record from its JSON form.

        Raises:
            ValueError: If the change block is missing or its type is unknown.
        """
        change = data.get("change")
        if not isinstance(change, dict) or not change.get("path"):
            raise ValueError("file change record has no change.path")
        return cls(
            change=FileChange(
                path=str(change["path"]),
                type=FileChangeType(change.get("type", "")),
            ),
            timestamp=parse_timestamp(data.get("timestamp")),
            session=data.get("session", "") or "",
            agents=tuple(data.get("agents") or ()),
        )


@dataclass
class Conflict:
    path: str
    severity: Severity
    agents: list[str]
    last_at: Optional[datetime]
    changes: list[RecordedFileChange] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "severity": self.severity.value,
            "agents": list(self.agents),
            "last_at": self.last_at.isoformat() if self.last_at else None,
            "changes": [c.to_dict() for c in self.changes],
        }


def _severity(
    changes: list[RecordedFileChange],
    agent_count: int,
    critical_window: timedelta,
    critical_agents: int,
) -> Severity:
    if agent_count >= critical_agents:
        return Severity.CRITICAL
    stamps = [c.timestamp for c in changes if c.timestamp is not None]
    if stamps and max(stamps) - min(stamps) <= critical_window:
        return Severity.CRITICAL
    return Severity.WARNING


def detect_conflicts(
    changes: Iterable[RecordedFileChange],
    critical_window: timedelta = CRITICAL_WINDOW,
    critical_agents: int = CRITICAL_AGENT_COUNT,
) -> list[Conflict]:
    """Group modifications by path and report paths touched by 2+ agents.

    Additions and deletions are ignored. A conflict is critical when
    ``critical_agents`` or more agents touched the path, or when all of its
    edits fall within ``critical_window``; otherwise it is a warning.
    Results are sorted by path.
    """
    by_path: dict[str, list[RecordedFileChange]] = {}
    for change in changes:
        if change.change.type is FileChangeType.MODIFIED:
            by_path.setdefault(change.change.path, []).append(change)

    conflicts = []
    for path in sorted(by_path):
        path_changes = by_path[path]
        if len(path_changes) < 2:
            continue
        agents = sorted({agent for c in path_changes for agent in c.agents})
        if len(agents) < 2:
            continue
        stamps = [c.timestamp for c in path_changes if c.timestamp is not None]
        conflicts.append(
            Conflict(
                path=path,
                severity=_severity(path_changes, len(agents), critical_window, critical_agents),
                agents=agents,
                last_at=max(stamps) if stamps else None,
                changes=path_changes,
            )
        )
    return conflicts
