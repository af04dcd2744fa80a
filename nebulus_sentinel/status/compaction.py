"""Context compaction detection.

Agents summarize or truncate their conversation when the context window fills
up. The banner they print is the cue to re-send project instructions.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from nebulus_sentinel.status.patterns import strip_ansi
from nebulus_sentinel.status.rules import DEFAULT_RULES, RuleSet
from nebulus_sentinel.timeutil import Clock, utc_now

DEFAULT_EVENT_WINDOW = timedelta(minutes=5)


@dataclass(frozen=True)
class CompactionEvent:
    """A detected compaction in one pane."""

    pane_id: str
    agent_type: str
    detected_at: datetime
    matched_text: str
    pattern_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "pane_id": self.pane_id,
            "agent_type": self.agent_type,
            "detected_at": self.detected_at.isoformat(),
            "matched_text": self.matched_text,
            "pattern": self.pattern_id,
        }


def detect_compaction(
    text: str,
    agent_type: str,
    pane_id: str = "",
    now: Optional[datetime] = None,
    rules: RuleSet = DEFAULT_RULES,
) -> Optional[CompactionEvent]:
    """Return the first compaction match for ``agent_type``, or None.

    Agent-specific patterns are checked in order, then the cross-agent
    fallbacks. ``agent_type`` may be a short code (``cc``) or a long name
    (``claude``).
    """
    clean = strip_ansi(text)
    for rule in rules.compaction_rules_for(agent_type):
        matched = rule.search(clean)
        if matched:
            return CompactionEvent(
                pane_id=pane_id,
                agent_type=agent_type,
                detected_at=now or utc_now(),
                matched_text=matched,
                pattern_id=rule.pattern_id,
            )
    return None


def has_compaction(text: str, agent_type: str, rules: RuleSet = DEFAULT_RULES) -> bool:
    return detect_compaction(text, agent_type, rules=rules) is not None


class CompactionDetector:
    """Remembers compaction events seen in the last few minutes."""

    def __init__(
        self,
        max_age: timedelta = DEFAULT_EVENT_WINDOW,
        clock: Clock = utc_now,
        rules: Optional[RuleSet] = None,
    ):
        self.max_age = max_age or DEFAULT_EVENT_WINDOW
        self._clock = clock
        self._rules = rules
        self._lock = threading.Lock()
        self._events: list[CompactionEvent] = []

    def check(
        self, text: str, agent_type: str, pane_id: str, rules: Optional[RuleSet] = None
    ) -> Optional[CompactionEvent]:
        """Detect compaction in ``text`` and record any event found."""
        event = detect_compaction(
            text,
            agent_type,
            pane_id=pane_id,
            now=self._clock(),
            rules=rules or self._rules or DEFAULT_RULES,
        )
        if event is not None:
            with self._lock:
                self._events.append(event)
                self._prune()
        return event

    def events(self) -> list[CompactionEvent]:
        with self._lock:
            self._prune()
            return list(self._events)

    def events_for_pane(self, pane_id: str) -> list[CompactionEvent]:
        with self._lock:
            self._prune()
            return [e for e in self._events if e.pane_id == pane_id]

    def has_recent_compaction(self, pane_id: str, within: timedelta) -> bool:
        cutoff = self._clock() - within
        with self._lock:
            return any(
                e.pane_id == pane_id and e.detected_at > cutoff for e in self._events
            )

    def clear(self) -> None:
        with self._lock:
            self._events = []

    def _prune(self) -> None:
        cutoff = self._clock() - self.max_age
        self._events = [e for e in self._events if e.detected_at > cutoff]
