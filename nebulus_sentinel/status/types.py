"""Agent state and error category types."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional


class AgentState(Enum):
    """Observed state of an agent pane."""

    IDLE = "idle"
    WORKING = "working"
    ERROR = "error"
    UNKNOWN = "unknown"

    @property
    def icon(self) -> str:
        return _STATE_ICONS[self]


_STATE_ICONS = {
    AgentState.IDLE: "●",
    AgentState.WORKING: "▶",
    AgentState.ERROR: "✗",
    AgentState.UNKNOWN: "?",
}


class ErrorCategory(Enum):
    """Kind of error seen in pane output, in detection priority order."""

    NONE = ""
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    CONNECTION = "connection"
    CRASH = "crash"
    GENERIC = "error"

    @property
    def is_error(self) -> bool:
        return self is not ErrorCategory.NONE

    @property
    def message(self) -> str:
        """Human-readable description."""
        return _ERROR_MESSAGES[self]


_ERROR_MESSAGES = {
    ErrorCategory.NONE: "",
    ErrorCategory.RATE_LIMIT: "Rate limited - too many requests",
    ErrorCategory.AUTH: "Authentication error",
    ErrorCategory.CONNECTION: "Connection error",
    ErrorCategory.CRASH: "Agent crashed",
    ErrorCategory.GENERIC: "Error detected",
}


# Short pane-title codes and the long names agents are also known by
AGENT_ALIASES = {
    "claude": "cc",
    "codex": "cod",
    "gemini": "gmi",
}

KNOWN_AGENT_TYPES = frozenset(
    {"cc", "cod", "gmi", "cursor", "windsurf", "aider"} | set(AGENT_ALIASES)
)


def normalize_agent_type(agent_type: str) -> str:
    """Map long agent names to their short codes (``claude`` -> ``cc``)."""
    key = (agent_type or "").strip().lower()
    return AGENT_ALIASES.get(key, key)


def is_known_agent(agent_type: str) -> bool:
    """True for AI agent types, False for user shells and unknown types."""
    return normalize_agent_type(agent_type) in KNOWN_AGENT_TYPES


@dataclass
class AgentStatus:
    """Snapshot of one pane's classified state."""

    pane_id: str
    pane_name: str = ""
    agent_type: str = ""
    state: AgentState = AgentState.UNKNOWN
    error_category: ErrorCategory = ErrorCategory.NONE
    last_active: Optional[datetime] = None
    last_output: str = ""
    updated_at: Optional[datetime] = None
    session: str = ""
    pane_index: int = 0

    @property
    def is_healthy(self) -> bool:
        return self.state in (AgentState.IDLE, AgentState.WORKING)

    def idle_duration(self, now: datetime) -> timedelta:
        """Time since last activity; zero unless the pane is idle."""
        if self.state is not AgentState.IDLE or self.last_active is None:
            return timedelta(0)
        return max(now - self.last_active, timedelta(0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "pane_id": self.pane_id,
            "pane_name": self.pane_name,
            "agent_type": self.agent_type,
            "session": self.session,
            "pane_index": self.pane_index,
            "state": self.state.value,
            "error_type": self.error_category.value,
            "last_active": self.last_active.isoformat() if self.last_active else None,
            "last_output": self.last_output,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
