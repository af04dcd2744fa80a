"""Alert records, severities and identifiers."""

from __future__ import annotations

import copy
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, Union

from nebulus_sentinel.timeutil import parse_timestamp


class AlertType(Enum):
    AGENT_STUCK = "agent_stuck"
    AGENT_CRASHED = "agent_crashed"
    AGENT_ERROR = "agent_error"
    HIGH_CPU = "high_cpu"  # reserved
    DISK_LOW = "disk_low"
    BEAD_STALE = "bead_stale"
    MAIL_BACKLOG = "mail_backlog"
    DEPENDENCY_CYCLE = "dependency_cycle"
    RATE_LIMIT = "rate_limit"


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


_SEVERITY_RANKS = {
    Severity.INFO: 1,
    Severity.WARNING: 2,
    Severity.ERROR: 3,
    Severity.CRITICAL: 4,
}


def severity_rank(severity: Union[Severity, str, None]) -> int:
    """Numeric rank for comparisons; anything unrecognised ranks 0."""
    if isinstance(severity, str):
        try:
            severity = Severity(severity)
        except ValueError:
            return 0
    return _SEVERITY_RANKS.get(severity, 0)  # type: ignore[arg-type]


def generate_alert_id(alert_type: AlertType, session: str, pane: str) -> str:
    """Deterministic ID used to deduplicate alerts across cycles.

    Hex of the first 8 bytes of SHA-256 over ``"<type>:<session>:<pane>"``.
    Bead-scoped alerts pass ``""`` for session and the bead ID for pane.
    """
    data = f"{alert_type.value}:{session}:{pane}".encode("utf-8")
    return hashlib.sha256(data).digest()[:8].hex()


def truncate(text: str, max_len: int) -> str:
    """Shorten ``text`` to ``max_len`` characters, ending in ``...``."""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Alert:
    """A detected problem condition and its lifecycle timestamps."""

    id: str
    type: AlertType
    severity: Severity
    message: str
    session: str = ""
    pane: str = ""
    source: str = ""
    bead_id: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    count: int = 0
    resolved_at: Optional[datetime] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def duration(self, now: datetime) -> timedelta:
        """How long the alert was (or has been) active."""
        if self.created_at is None:
            return timedelta(0)
        end = self.resolved_at or now
        return end - self.created_at

    def copy(self) -> "Alert":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "source": self.source,
            "message": self.message,
            "session": self.session,
            "pane": self.pane,
            "bead_id": self.bead_id,
            "context": self.context,
            "created_at": _iso(self.created_at),
            "last_seen_at": _iso(self.last_seen_at),
            "count": self.count,
        }
        if self.resolved_at is not None:
            data["resolved_at"] = _iso(self.resolved_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Alert":
        return cls(
            id=data["id"],
            type=AlertType(data["type"]),
            severity=Severity(data["severity"]),
            message=data.get("message", ""),
            session=data.get("session", ""),
            pane=data.get("pane", ""),
            source=data.get("source", ""),
            bead_id=data.get("bead_id", ""),
            context=dict(data.get("context") or {}),
            created_at=parse_timestamp(data.get("created_at")),
            last_seen_at=parse_timestamp(data.get("last_seen_at")),
            count=int(data.get("count", 0)),
            resolved_at=parse_timestamp(data.get("resolved_at")),
        )


@dataclass
class AlertSummary:
    total_active: int = 0
    total_resolved: int = 0
    by_severity: dict[str, int] = field(default_factory=dict)
    by_type: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_active": self.total_active,
            "total_resolved": self.total_resolved,
            "by_severity": dict(self.by_severity),
            "by_type": dict(self.by_type),
        }
