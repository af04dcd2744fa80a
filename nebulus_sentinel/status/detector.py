"""Status detection for live panes: capture, classify, report."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import timedelta
from typing import Optional

from nebulus_sentinel.config import DetectorConfig
from nebulus_sentinel.errors import SentinelError
from nebulus_sentinel.integrations.tmux_client import Pane, PaneProvider
from nebulus_sentinel.logging import pane_logger
from nebulus_sentinel.status.classifier import classify
from nebulus_sentinel.status.rules import PatternRegistry
from nebulus_sentinel.status.types import AgentState, AgentStatus
from nebulus_sentinel.timeutil import Clock, utc_now

logger = logging.getLogger(__name__)


def truncate_output(text: str, max_len: int) -> str:
    """Keep the last ``max_len`` characters of trimmed output."""
    text = text.strip()
    if len(text) <= max_len:
        return text
    return text[len(text) - max_len :]


class StatusDetector:
    """Classifies every pane a ``PaneProvider`` knows about.

    Args:
        panes: Source of sessions, panes, captures and activity times.
        config: Scan window and activity threshold.
        registry: Pattern registry; ``registry.rules`` is read once per pane.
        clock: Time source.
    """

    def __init__(
        self,
        panes: PaneProvider,
        config: Optional[DetectorConfig] = None,
        registry: Optional[PatternRegistry] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.panes = panes
        self.config = config or DetectorConfig()
        self.registry = registry or PatternRegistry()
        self._clock = clock

    def detect(self, pane: Pane, session: str = "") -> AgentStatus:
        """Classify one pane.

        Raises:
            SentinelError: If the pane's output cannot be captured.
        """
        now = self._clock()
        status = AgentStatus(
            pane_id=pane.id,
            pane_name=pane.title,
            agent_type=pane.type,
            session=session,
            pane_index=pane.index,
            updated_at=now,
        )

        try:
            status.last_active = self.panes.get_pane_activity(pane.id)
        except SentinelError as e:
            pane_logger(session, pane.id).debug(f"No activity timestamp: {e}")

        output = self.panes.capture_pane_output(pane.id, self.config.scan_lines)
        status.last_output = truncate_output(output, self.config.output_preview_length)

        state, category = classify(
            output,
            pane.type,
            last_active=status.last_active,
            now=now,
            activity_threshold=timedelta(seconds=self.config.activity_threshold_seconds),
            rules=self.registry.rules,
            scan_lines=self.config.scan_lines,
        )
        status.state = state
        status.error_category = category
        return status

    def detect_all(self, session: str) -> list[AgentStatus]:
        """Classify every pane of a session.

        A pane whose capture fails is reported ``unknown``; the rest of the
        batch still runs.

        Raises:
            SentinelError: If the session's panes cannot be listed.
        """
        statuses = []
        for pane in self.panes.get_panes(session):
            try:
                statuses.append(self.detect(pane, session))
            except SentinelError as e:
                pane_logger(session, pane.id).warning(f"Capture failed: {e}")
                statuses.append(
                    AgentStatus(
                        pane_id=pane.id,
                        pane_name=pane.title,
                        agent_type=pane.type,
                        session=session,
                        pane_index=pane.index,
                        state=AgentState.UNKNOWN,
                        updated_at=self._clock(),
                    )
                )
        return statuses


def state_summary(statuses: list[AgentStatus]) -> dict[AgentState, int]:
    return dict(Counter(s.state for s in statuses))


def filter_by_state(statuses: list[AgentStatus], state: AgentState) -> list[AgentStatus]:
    return [s for s in statuses if s.state is state]


def filter_by_agent_type(statuses: list[AgentStatus], agent_type: str) -> list[AgentStatus]:
    return [s for s in statuses if s.agent_type == agent_type]


def has_errors(statuses: list[AgentStatus]) -> bool:
    return any(s.state is AgentState.ERROR for s in statuses)


def all_healthy(statuses: list[AgentStatus]) -> bool:
    """True when there is at least one pane and every pane is idle or working."""
    return bool(statuses) and all(s.is_healthy for s in statuses)
