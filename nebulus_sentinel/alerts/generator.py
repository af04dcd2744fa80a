"""Alert generation: one pass over every signal source.

Each probe runs in isolation. A probe that raises is reported by name in the
failed-source list so the tracker keeps its previous alerts instead of
resolving them; the remaining probes still run.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Callable, Optional

from nebulus_sentinel.alerts.types import Alert, AlertType, Severity, generate_alert_id, truncate
from nebulus_sentinel.config import AlertConfig
from nebulus_sentinel.errors import SentinelError, ToolNotInstalledError
from nebulus_sentinel.integrations.beads_client import InsightProvider, TaskProvider
from nebulus_sentinel.integrations.tmux_client import Pane, PaneProvider
from nebulus_sentinel.logging import pane_logger
from nebulus_sentinel.status.errors import ErrorMatch, find_error
from nebulus_sentinel.status.patterns import (
    detect_idle,
    is_shell_prompt,
    last_non_empty_line,
    strip_ansi,
)
from nebulus_sentinel.status.rules import DEFAULT_RULES, RuleSet
from nebulus_sentinel.status.types import ErrorCategory, is_known_agent
from nebulus_sentinel.timeutil import Clock, utc_now

logger = logging.getLogger(__name__)

SOURCE_AGENTS = "agents"
SOURCE_DISK = "disk"
SOURCE_CYCLES = "beads_cycles"
SOURCE_STALE = "beads_stale"

CRITICAL_DISK_GB = 1.0
MATCHED_LINE_LIMIT = 200

DiskProbe = Callable[[str], float]


def statvfs_free_gb(path: str) -> float:
    """Free space available to unprivileged users at ``path``, in GiB."""
    st = os.statvfs(path)
    return st.f_bavail * st.f_frsize / (1024**3)


# Error category -> (alert type, severity)
_ERROR_ALERTS = {
    ErrorCategory.RATE_LIMIT: (AlertType.RATE_LIMIT, Severity.WARNING),
    ErrorCategory.CRASH: (AlertType.AGENT_ERROR, Severity.CRITICAL),
    ErrorCategory.AUTH: (AlertType.AGENT_ERROR, Severity.ERROR),
    ErrorCategory.CONNECTION: (AlertType.AGENT_ERROR, Severity.WARNING),
    ErrorCategory.GENERIC: (AlertType.AGENT_ERROR, Severity.ERROR),
}


def _matched_line(output: str, match: ErrorMatch) -> str:
    """The most recent output line containing the match."""
    for line in reversed(strip_ansi(output).split("\n")):
        if match.matched_text and match.matched_text in line:
            return truncate(line.strip(), MATCHED_LINE_LIMIT)
    return truncate(match.matched_text, MATCHED_LINE_LIMIT)


class AlertGenerator:
    """Builds the candidate alert batch for one monitoring cycle.

    Args:
        config: Alert thresholds.
        panes: Pane provider for the agent probe.
        insights: Dependency insight provider for the cycle probe.
        tasks: Task provider for the stale-task probe.
        disk_probe: Returns free GiB for a path; raises OSError on failure.
        clock: Time source.
        project_path: Directory the beads tools run in.
        rules: Classification tables for pane output.
    """

    def __init__(
        self,
        config: Optional[AlertConfig] = None,
        panes: Optional[PaneProvider] = None,
        insights: Optional[InsightProvider] = None,
        tasks: Optional[TaskProvider] = None,
        disk_probe: DiskProbe = statvfs_free_gb,
        clock: Clock = utc_now,
        project_path: str = "",
        rules: RuleSet = DEFAULT_RULES,
    ) -> None:
        self.config = config or AlertConfig()
        self.panes = panes
        self.insights = insights
        self.tasks = tasks
        self.disk_probe = disk_probe
        self.project_path = project_path
        self.rules = rules
        self._clock = clock

    def generate_all(self) -> tuple[list[Alert], list[str]]:
        """Run every probe.

        Returns:
            The detected alerts and the names of the sources that failed.
        """
        if not self.config.enabled:
            return [], []

        alerts: list[Alert] = []
        failed: list[str] = []
        probes = [
            (SOURCE_AGENTS, lambda: self.check_agents(failed)),
            (SOURCE_DISK, self.check_disk_space),
            (SOURCE_CYCLES, self.check_dependency_cycles),
            (SOURCE_STALE, self.check_stale_beads),
        ]
        for source, probe in probes:
            try:
                alerts.extend(probe())
            except ToolNotInstalledError as e:
                logger.debug(f"Skipping {source} probe: {e}")
                failed.append(source)
            except Exception as e:
                logger.warning(f"Alert probe '{source}' failed: {e}")
                failed.append(source)

        logger.debug(f"Generated {len(alerts)} alerts, failed sources: {failed}")
        return alerts, failed

    def _alert(
        self,
        alert_type: AlertType,
        severity: Severity,
        message: str,
        source: str,
        session: str = "",
        pane: str = "",
        bead_id: str = "",
        context: Optional[dict] = None,
        key: Optional[str] = None,
    ) -> Alert:
        now = self._clock()
        return Alert(
            id=generate_alert_id(alert_type, session, key if key is not None else pane),
            type=alert_type,
            severity=severity,
            message=message,
            session=session,
            pane=pane,
            source=source,
            bead_id=bead_id,
            context=context or {},
            created_at=now,
            last_seen_at=now,
            count=1,
        )

    def check_agents(self, failed: list[str]) -> list[Alert]:
        """Classify every pane of every (filtered) session.

        A session whose panes cannot be listed is skipped and the agents
        source is marked failed, keeping its earlier alerts alive.
        """
        if self.panes is None:
            raise ToolNotInstalledError("tmux")

        alerts: list[Alert] = []
        session_filter = self.config.session_filter
        for session in self.panes.list_sessions():
            if session_filter and session.name != session_filter:
                continue
            try:
                panes = self.panes.get_panes(session.name)
            except SentinelError as e:
                logger.warning(f"Cannot list panes of {session.name}: {e}")
                if SOURCE_AGENTS not in failed:
                    failed.append(SOURCE_AGENTS)
                continue
            for pane in panes:
                alert = self._check_pane(session.name, pane)
                if alert is not None:
                    alerts.append(alert)
        return alerts

    def _check_pane(self, session: str, pane: Pane) -> Optional[Alert]:
        log = pane_logger(session, pane.id)
        try:
            output = self.panes.capture_pane_output(pane.id, self.config.capture_lines)
        except SentinelError as e:
            # Unreadable pane is evidence of failure, not a reason to skip it
            log.warning(f"Capture failed: {e}")
            return self._alert(
                AlertType.AGENT_CRASHED,
                Severity.ERROR,
                f"Cannot capture output from pane {pane.id} (may have crashed)",
                SOURCE_AGENTS,
                session=session,
                pane=pane.id,
                context={"agent_type": pane.type, "error": str(e)},
            )

        match = find_error(output, self.rules)
        if match is not None:
            alert_type, severity = _ERROR_ALERTS[match.category]
            message = (
                "Rate limiting detected"
                if alert_type is AlertType.RATE_LIMIT
                else f"{match.category.message} in agent output"
            )
            return self._alert(
                alert_type,
                severity,
                message,
                SOURCE_AGENTS,
                session=session,
                pane=pane.id,
                context={
                    "matched_line": _matched_line(output, match),
                    "error_category": match.category.value,
                    "agent_type": pane.type,
                },
            )

        if not is_known_agent(pane.type):
            return None

        last_line = last_non_empty_line(output)
        if is_shell_prompt(last_line):
            return self._alert(
                AlertType.AGENT_CRASHED,
                Severity.ERROR,
                f"Agent process exited in pane {pane.id} (shell prompt visible)",
                SOURCE_AGENTS,
                session=session,
                pane=pane.id,
                context={"agent_type": pane.type, "last_line": truncate(last_line, MATCHED_LINE_LIMIT)},
            )

        return self._check_stuck(session, pane, output)

    def _check_stuck(self, session: str, pane: Pane, output: str) -> Optional[Alert]:
        # Waiting at a prompt is not being stuck
        if detect_idle(output, pane.type, self.rules):
            return None
        try:
            last_active = self.panes.get_pane_activity(pane.id)
        except SentinelError as e:
            pane_logger(session, pane.id).debug(f"No activity timestamp: {e}")
            return None
        if last_active is None:
            return None

        now = self._clock()
        threshold = timedelta(minutes=self.config.agent_stuck_minutes)
        silent_for = now - last_active
        if silent_for < threshold:
            return None
        return self._alert(
            AlertType.AGENT_STUCK,
            Severity.WARNING,
            f"No output from agent for {int(silent_for.total_seconds() // 60)} minutes",
            SOURCE_AGENTS,
            session=session,
            pane=pane.id,
            context={
                "agent_type": pane.type,
                "last_active": last_active.isoformat(),
                "minutes_since": int(silent_for.total_seconds() // 60),
            },
        )

    def check_disk_space(self) -> list[Alert]:
        """Alert when free space under ``projects_dir`` (or ``/``) runs low."""
        path = self.config.projects_dir or "/"
        try:
            free_gb = self.disk_probe(path)
        except OSError:
            if path == "/":
                raise
            path = "/"
            free_gb = self.disk_probe(path)

        if free_gb >= self.config.disk_low_threshold_gb:
            return []
        severity = Severity.CRITICAL if free_gb < CRITICAL_DISK_GB else Severity.WARNING
        return [
            self._alert(
                AlertType.DISK_LOW,
                severity,
                f"Low disk space: {free_gb:.1f} GB remaining on {path}",
                SOURCE_DISK,
                context={
                    "free_gb": round(free_gb, 2),
                    "threshold_gb": self.config.disk_low_threshold_gb,
                    "path": path,
                },
            )
        ]

    def check_dependency_cycles(self) -> list[Alert]:
        """One alert summarising every dependency cycle in the task graph."""
        if self.insights is None:
            raise ToolNotInstalledError("bv")
        insights = self.insights.get_insights(self.project_path)
        if not insights.cycles:
            return []
        return [
            self._alert(
                AlertType.DEPENDENCY_CYCLE,
                Severity.ERROR,
                f"Dependency cycle detected: {len(insights.cycles)} cycle(s) found",
                SOURCE_CYCLES,
                context={
                    "cycle_count": len(insights.cycles),
                    "cycles": [" -> ".join(c.nodes) for c in insights.cycles],
                },
            )
        ]

    def check_stale_beads(self) -> list[Alert]:
        """In-progress tasks with no update inside the stale window."""
        if self.tasks is None:
            raise ToolNotInstalledError("bd")
        now = self._clock()
        hours = self.config.bead_stale_hours
        threshold = timedelta(hours=hours)

        alerts = []
        for bead in self.tasks.get_in_progress_list(self.project_path, 100):
            if bead.updated_at is None or now - bead.updated_at <= threshold:
                continue
            alerts.append(
                self._alert(
                    AlertType.BEAD_STALE,
                    Severity.WARNING,
                    f"Bead {bead.id} has been in_progress for >{hours} hours without update",
                    SOURCE_STALE,
                    bead_id=bead.id,
                    key=bead.id,
                    context={
                        "title": bead.title,
                        "assignee": bead.assignee,
                        "last_updated": _rfc3339(bead.updated_at),
                        "hours_since": int((now - bead.updated_at).total_seconds() // 3600),
                    },
                )
            )
        return alerts


def _rfc3339(value: datetime) -> str:
    return value.isoformat(timespec="seconds")
