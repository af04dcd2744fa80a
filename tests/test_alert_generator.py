"""Tests for alert generation across every probe."""

from __future__ import annotations

from datetime import timedelta

import pytest

from nebulus_sentinel.alerts.generator import (
    SOURCE_AGENTS,
    SOURCE_CYCLES,
    SOURCE_DISK,
    SOURCE_STALE,
    AlertGenerator,
)
from nebulus_sentinel.alerts.types import AlertType, Severity, generate_alert_id
from nebulus_sentinel.config import AlertConfig
from nebulus_sentinel.errors import ToolError, ToolNotInstalledError
from nebulus_sentinel.integrations.beads_client import Cycle, InProgressTask, Insights


def plenty_of_disk(path: str) -> float:
    return 100.0


@pytest.fixture
def generator(panes, beads, clock) -> AlertGenerator:
    return AlertGenerator(
        config=AlertConfig(),
        panes=panes,
        insights=beads,
        tasks=beads,
        disk_probe=plenty_of_disk,
        clock=clock,
    )


class TestAgentErrors:
    @pytest.mark.parametrize(
        "output,alert_type,severity",
        [
            ("Error: 429 Too Many Requests", AlertType.RATE_LIMIT, Severity.WARNING),
            ("panic: runtime error", AlertType.AGENT_ERROR, Severity.CRITICAL),
            ("Error: 401 Unauthorized", AlertType.AGENT_ERROR, Severity.ERROR),
            ("dial tcp: connection refused", AlertType.AGENT_ERROR, Severity.WARNING),
            ("error: build broke", AlertType.AGENT_ERROR, Severity.ERROR),
        ],
    )
    def test_category_mapping(self, generator, panes, output, alert_type, severity) -> None:
        panes.add_pane("proj", "%1", 1, "cc", output)
        alerts, failed = generator.generate_all()
        assert failed == []
        (alert,) = alerts
        assert alert.type is alert_type
        assert alert.severity is severity
        assert alert.source == SOURCE_AGENTS
        assert alert.id == generate_alert_id(alert_type, "proj", "%1")

    def test_rate_limit_message(self, generator, panes) -> None:
        panes.add_pane("proj", "%1", 1, "cc", "Too many requests")
        (alert,), _ = generator.generate_all()
        assert alert.message == "Rate limiting detected"

    def test_crash_context(self, generator, panes) -> None:
        panes.add_pane("proj", "%1", 1, "cod", "working\npanic: nil map\ngoroutine 1")
        (alert,), _ = generator.generate_all()
        assert alert.message == "Agent crashed in agent output"
        assert alert.context["matched_line"] == "panic: nil map"
        assert alert.context["error_category"] == "crash"
        assert alert.context["agent_type"] == "cod"

    def test_capture_failure_is_crash(self, generator, panes) -> None:
        panes.add_pane("proj", "%1", 1, "cc", "claude> ")
        panes.broken.add("%1")
        (alert,), failed = generator.generate_all()
        assert alert.type is AlertType.AGENT_CRASHED
        assert alert.severity is Severity.ERROR
        assert "may have crashed" in alert.message
        assert failed == []

    def test_shell_prompt_in_agent_pane(self, generator, panes) -> None:
        panes.add_pane("proj", "%1", 1, "cc", "Goodbye!\nuser@host:~/src$ ")
        (alert,), _ = generator.generate_all()
        assert alert.type is AlertType.AGENT_CRASHED
        assert alert.context["last_line"] == "user@host:~/src$"

    def test_shell_prompt_in_user_pane_is_fine(self, generator, panes) -> None:
        panes.add_pane("proj", "%1", 1, "user", "user@host:~/src$ ")
        alerts, _ = generator.generate_all()
        assert alerts == []

    def test_percentage_is_not_shell_prompt(self, generator, panes, clock) -> None:
        panes.add_pane("proj", "%1", 1, "cc", "Downloading 100%", last_active=clock())
        alerts, _ = generator.generate_all()
        assert alerts == []


class TestStuck:
    def test_silent_agent_is_stuck(self, generator, panes, clock) -> None:
        panes.add_pane(
            "proj", "%1", 1, "cc", "Reading files\nthinking", last_active=clock() - timedelta(minutes=6)
        )
        (alert,), _ = generator.generate_all()
        assert alert.type is AlertType.AGENT_STUCK
        assert alert.severity is Severity.WARNING
        assert alert.message == "No output from agent for 6 minutes"
        assert alert.context["minutes_since"] == 6

    def test_recent_activity(self, generator, panes, clock) -> None:
        panes.add_pane(
            "proj", "%1", 1, "cc", "thinking", last_active=clock() - timedelta(minutes=2)
        )
        assert generator.generate_all()[0] == []

    def test_idle_at_prompt_is_not_stuck(self, generator, panes, clock) -> None:
        panes.add_pane(
            "proj", "%1", 1, "cc", "Done.\nclaude> ", last_active=clock() - timedelta(hours=3)
        )
        assert generator.generate_all()[0] == []

    def test_unknown_activity(self, generator, panes) -> None:
        panes.add_pane("proj", "%1", 1, "cc", "thinking", last_active=None)
        assert generator.generate_all()[0] == []


class TestSessions:
    def test_session_filter(self, generator, panes) -> None:
        panes.add_pane("proj", "%1", 1, "cc", "panic: a")
        panes.add_pane("other", "%2", 1, "cc", "panic: b")
        generator.config.session_filter = "proj"
        alerts, _ = generator.generate_all()
        assert [a.session for a in alerts] == ["proj"]

    def test_pane_listing_failure_marks_source_failed(self, generator, panes) -> None:
        panes.add_pane("proj", "%1", 1, "cc", "panic: a")
        panes.add_pane("broken", "%2", 1, "cc", "panic: b")
        real_get_panes = panes.get_panes

        def get_panes(session):
            if session == "broken":
                raise ToolError("tmux", ["list-panes"], message="no such session")
            return real_get_panes(session)

        panes.get_panes = get_panes
        alerts, failed = generator.generate_all()
        assert [a.session for a in alerts] == ["proj"]
        assert failed == [SOURCE_AGENTS]


class TestDisk:
    def _generator(self, clock, probe, projects_dir=None) -> AlertGenerator:
        config = AlertConfig(disk_low_threshold_gb=5.0, projects_dir=projects_dir)
        return AlertGenerator(config=config, disk_probe=probe, clock=clock)

    def test_enough_space(self, clock) -> None:
        assert self._generator(clock, lambda p: 5.0).check_disk_space() == []

    def test_warning(self, clock) -> None:
        (alert,) = self._generator(clock, lambda p: 2.5).check_disk_space()
        assert alert.type is AlertType.DISK_LOW
        assert alert.severity is Severity.WARNING
        assert alert.message == "Low disk space: 2.5 GB remaining on /"
        assert alert.context == {"free_gb": 2.5, "threshold_gb": 5.0, "path": "/"}

    def test_critical_below_one_gb(self, clock) -> None:
        (alert,) = self._generator(clock, lambda p: 0.4).check_disk_space()
        assert alert.severity is Severity.CRITICAL

    def test_falls_back_to_root(self, clock) -> None:
        seen = []

        def probe(path: str) -> float:
            seen.append(path)
            if path != "/":
                raise FileNotFoundError(path)
            return 1.5

        (alert,) = self._generator(clock, probe, projects_dir="/missing").check_disk_space()
        assert seen == ["/missing", "/"]
        assert alert.context["path"] == "/"

    def test_root_failure_fails_source(self, clock) -> None:
        def probe(path: str) -> float:
            raise OSError("statvfs failed")

        generator = self._generator(clock, probe)
        alerts, failed = generator.generate_all()
        assert alerts == []
        assert SOURCE_DISK in failed


class TestBeads:
    def test_cycles(self, generator, beads) -> None:
        beads.insights = Insights(cycles=[Cycle(["bd-1", "bd-2", "bd-1"]), Cycle(["bd-3", "bd-3"])])
        (alert,), _ = generator.generate_all()
        assert alert.type is AlertType.DEPENDENCY_CYCLE
        assert alert.severity is Severity.ERROR
        assert alert.source == SOURCE_CYCLES
        assert alert.message == "Dependency cycle detected: 2 cycle(s) found"
        assert alert.context["cycles"] == ["bd-1 -> bd-2 -> bd-1", "bd-3 -> bd-3"]

    def test_stale_beads(self, generator, beads, clock) -> None:
        beads.in_progress = [
            InProgressTask(id="bd-1", title="Old", assignee="cc", updated_at=clock() - timedelta(hours=25)),
            InProgressTask(id="bd-2", title="Fresh", updated_at=clock() - timedelta(hours=2)),
            InProgressTask(id="bd-3", title="Unknown"),
        ]
        (alert,), _ = generator.generate_all()
        assert alert.type is AlertType.BEAD_STALE
        assert alert.source == SOURCE_STALE
        assert alert.bead_id == "bd-1"
        assert alert.id == generate_alert_id(AlertType.BEAD_STALE, "", "bd-1")
        assert alert.message == "Bead bd-1 has been in_progress for >24 hours without update"
        assert alert.context["hours_since"] == 25
        assert alert.context["assignee"] == "cc"


class TestProbeIsolation:
    def test_missing_tools_fail_quietly(self, clock) -> None:
        generator = AlertGenerator(disk_probe=plenty_of_disk, clock=clock)
        alerts, failed = generator.generate_all()
        assert alerts == []
        assert failed == [SOURCE_AGENTS, SOURCE_CYCLES, SOURCE_STALE]

    def test_beads_failure_does_not_stop_agents(self, generator, panes, beads) -> None:
        panes.add_pane("proj", "%1", 1, "cc", "panic: a")
        beads.error = ToolNotInstalledError("bv")
        alerts, failed = generator.generate_all()
        assert [a.type for a in alerts] == [AlertType.AGENT_ERROR]
        assert failed == [SOURCE_CYCLES, SOURCE_STALE]

    def test_unexpected_error_is_contained(self, generator, beads) -> None:
        beads.error = RuntimeError("bad json")
        alerts, failed = generator.generate_all()
        assert failed == [SOURCE_CYCLES, SOURCE_STALE]

    def test_disabled(self, generator, panes) -> None:
        panes.add_pane("proj", "%1", 1, "cc", "panic: a")
        generator.config.enabled = False
        assert generator.generate_all() == ([], [])
