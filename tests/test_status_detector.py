"""Tests for the pane status detector."""

from __future__ import annotations

from datetime import timedelta

from nebulus_sentinel.config import DetectorConfig
from nebulus_sentinel.errors import ToolError
from nebulus_sentinel.status.detector import (
    StatusDetector,
    all_healthy,
    filter_by_agent_type,
    filter_by_state,
    has_errors,
    state_summary,
    truncate_output,
)
from nebulus_sentinel.status.rules import PatternRegistry
from nebulus_sentinel.status.types import AgentState, AgentStatus, ErrorCategory


class TestTruncateOutput:
    def test_keeps_tail(self) -> None:
        assert truncate_output("  abcdef  ", 3) == "def"

    def test_short_text_untouched(self) -> None:
        assert truncate_output("abc\n", 10) == "abc"


class TestStatusDetector:
    def test_detect_idle_and_working(self, panes, clock) -> None:
        panes.add_pane("proj", "%1", 1, "cc", "done\nclaude> ")
        panes.add_pane(
            "proj", "%2", 2, "cod", "Writing tests...", last_active=clock() - timedelta(seconds=1)
        )
        detector = StatusDetector(panes, clock=clock)

        statuses = detector.detect_all("proj")

        assert [s.state for s in statuses] == [AgentState.IDLE, AgentState.WORKING]
        assert statuses[0].session == "proj"
        assert statuses[0].pane_index == 1
        assert statuses[0].updated_at == clock()

    def test_detect_error(self, panes, clock) -> None:
        panes.add_pane("proj", "%1", 1, "cc", "Error: 429 Too Many Requests")
        status = StatusDetector(panes, clock=clock).detect_all("proj")[0]
        assert status.state is AgentState.ERROR
        assert status.error_category is ErrorCategory.RATE_LIMIT

    def test_capture_failure_reports_unknown(self, panes, clock) -> None:
        panes.add_pane("proj", "%1", 1, "cc", "claude> ")
        panes.add_pane("proj", "%2", 2, "cc", "claude> ")
        panes.broken.add("%1")

        statuses = StatusDetector(panes, clock=clock).detect_all("proj")

        assert statuses[0].state is AgentState.UNKNOWN
        assert statuses[1].state is AgentState.IDLE

    def test_activity_failure_is_tolerated(self, panes, clock) -> None:
        pane = panes.add_pane("proj", "%1", 1, "cc", "claude> ")

        def broken_activity(pane_id):
            raise ToolError("tmux", ["display-message"], message="gone")

        panes.get_pane_activity = broken_activity
        status = StatusDetector(panes, clock=clock).detect(pane, "proj")
        assert status.state is AgentState.IDLE
        assert status.last_active is None

    def test_preview_is_truncated(self, panes, clock) -> None:
        pane = panes.add_pane("proj", "%1", 1, "cc", "x" * 500 + "\nclaude> ")
        config = DetectorConfig(output_preview_length=20)
        status = StatusDetector(panes, config, clock=clock).detect(pane, "proj")
        assert len(status.last_output) == 20
        assert status.last_output.endswith("claude>")

    def test_uses_registry_patterns(self, panes, clock) -> None:
        pane = panes.add_pane("proj", "%1", 1, "cc", "upstream gone")
        registry = PatternRegistry()
        registry.add_error_pattern(ErrorCategory.CONNECTION, r"upstream gone", "custom")
        status = StatusDetector(panes, registry=registry, clock=clock).detect(pane, "proj")
        assert status.error_category is ErrorCategory.CONNECTION


class TestStatusHelpers:
    def _statuses(self) -> list[AgentStatus]:
        return [
            AgentStatus(pane_id="%1", agent_type="cc", state=AgentState.IDLE),
            AgentStatus(pane_id="%2", agent_type="cod", state=AgentState.WORKING),
            AgentStatus(pane_id="%3", agent_type="cc", state=AgentState.ERROR),
        ]

    def test_summary(self) -> None:
        summary = state_summary(self._statuses())
        assert summary == {AgentState.IDLE: 1, AgentState.WORKING: 1, AgentState.ERROR: 1}

    def test_filters(self) -> None:
        statuses = self._statuses()
        assert [s.pane_id for s in filter_by_state(statuses, AgentState.ERROR)] == ["%3"]
        assert [s.pane_id for s in filter_by_agent_type(statuses, "cc")] == ["%1", "%3"]

    def test_health_checks(self) -> None:
        statuses = self._statuses()
        assert has_errors(statuses) is True
        assert all_healthy(statuses) is False
        assert all_healthy(statuses[:2]) is True
        assert all_healthy([]) is False
