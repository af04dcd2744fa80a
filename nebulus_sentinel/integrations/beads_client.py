"""Beads task tracking (``bd``) and dependency insights (``bv``).

Both tools are external processes whose JSON output is consumed as data. A
missing binary raises ``ToolNotInstalledError`` so callers can treat it as an
expected condition without inspecting error text.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from nebulus_sentinel.errors import SentinelError, ToolError, ToolNotInstalledError
from nebulus_sentinel.timeutil import parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


@dataclass
class Cycle:
    nodes: list[str] = field(default_factory=list)


@dataclass
class NodeScore:
    id: str
    value: float = 0.0


@dataclass
class Insights:
    """Dependency graph analysis from ``bv -robot-insights``."""

    bottlenecks: list[NodeScore] = field(default_factory=list)
    cycles: list[Cycle] = field(default_factory=list)


@dataclass
class Recommendation:
    issue_id: str
    title: str = ""


class DriftStatus(Enum):
    OK = "OK"
    CRITICAL = "critical"
    WARNING = "warning"
    NO_BASELINE = "no baseline"


@dataclass
class HealthSummary:
    drift_status: DriftStatus = DriftStatus.NO_BASELINE
    drift_message: str = ""
    top_bottleneck: str = ""
    bottleneck_count: int = 0

    @property
    def has_drift(self) -> bool:
        return self.drift_status in (DriftStatus.CRITICAL, DriftStatus.WARNING)


@dataclass
class InProgressTask:
    id: str
    title: str = ""
    assignee: str = ""
    updated_at: Optional[datetime] = None


@dataclass
class Blocker:
    id: str
    title: str = ""
    blocked_by: list[str] = field(default_factory=list)


@dataclass
class DependencyContext:
    in_progress: list[InProgressTask] = field(default_factory=list)
    blocked_count: int = 0
    ready_count: int = 0
    top_blockers: list[Blocker] = field(default_factory=list)


@runtime_checkable
class InsightProvider(Protocol):
    def get_insights(self, path: str = "") -> Insights: ...


@runtime_checkable
class TaskProvider(Protocol):
    """Task queries used by stale-task alerts and recovery prompts."""

    def get_in_progress_list(self, path: str = "", limit: int = 100) -> list[InProgressTask]: ...

    def get_top_bottlenecks(self, path: str = "", n: int = 3) -> list[NodeScore]: ...

    def get_next_actions(self, path: str = "", n: int = 3) -> list[Recommendation]: ...

    def get_health_summary(self, path: str = "") -> HealthSummary: ...

    def get_dependency_context(self, path: str = "", n: int = 5) -> DependencyContext: ...


def _no_beads_db(stderr: str) -> bool:
    s = stderr.lower()
    return "no beads database found" in s or "use 'bd --no-db'" in s


class BeadsClient:
    """``InsightProvider`` and ``TaskProvider`` backed by ``bv`` and ``bd``.

    Args:
        default_path: Project directory used when a call passes no path.
        timeout: Seconds before a tool call is abandoned.
    """

    def __init__(self, default_path: str = "", timeout: int = DEFAULT_TIMEOUT) -> None:
        self.default_path = default_path
        self.timeout = timeout
        self._bd_no_db = False

    def _cwd(self, path: str) -> str:
        return path or self.default_path or os.getcwd()

    def _exec(self, tool: str, args: list[str], path: str) -> subprocess.CompletedProcess:
        binary = shutil.which(tool)
        if binary is None:
            raise ToolNotInstalledError(tool)
        try:
            return subprocess.run(
                [binary] + args,
                cwd=self._cwd(path),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ToolError(tool, args, message=f"timed out after {self.timeout}s") from e
        except OSError as e:
            raise ToolError(tool, args, message=str(e)) from e

    def _run_bv(self, args: list[str], path: str = "") -> str:
        result = self._exec("bv", args, path)
        if result.returncode != 0:
            raise ToolError("bv", args, stderr=result.stderr)
        return result.stdout.strip()

    def _run_bd(self, args: list[str], path: str = "") -> str:
        if self._bd_no_db and "--no-db" not in args:
            args = ["--no-db"] + args
        result = self._exec("bd", args, path)
        if result.returncode != 0:
            if not self._bd_no_db and _no_beads_db(result.stderr):
                # Remember for the rest of this client's life
                self._bd_no_db = True
                return self._run_bd(args, path)
            raise ToolError("bd", args, stderr=result.stderr)
        return result.stdout.strip()

    @staticmethod
    def _json(tool: str, args: list[str], output: str) -> Any:
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise ToolError(tool, args, message=f"invalid JSON output: {e}") from e

    def get_insights(self, path: str = "") -> Insights:
        """Graph insights: bottlenecks and dependency cycles.

        Raises:
            ToolNotInstalledError: If ``bv`` is not on PATH.
            ToolError: If ``bv`` fails or prints unparsable output.
        """
        args = ["-robot-insights"]
        data = self._json("bv", args, self._run_bv(args, path)) or {}
        if not isinstance(data, dict):
            raise ToolError("bv", args, message="expected a JSON object")
        try:
            bottlenecks = [
                NodeScore(id=str(b.get("ID", "")), value=float(b.get("Value", 0) or 0))
                for b in data.get("Bottlenecks") or []
                if isinstance(b, dict)
            ]
            cycles = [
                Cycle(nodes=[str(n) for n in c.get("nodes") or []])
                for c in data.get("Cycles") or []
                if isinstance(c, dict)
            ]
        except (TypeError, ValueError) as e:
            raise ToolError("bv", args, message=f"unexpected insights output: {e}") from e
        return Insights(bottlenecks=bottlenecks, cycles=cycles)

    def get_top_bottlenecks(self, path: str = "", n: int = 3) -> list[NodeScore]:
        return self.get_insights(path).bottlenecks[:n]

    def get_next_actions(self, path: str = "", n: int = 3) -> list[Recommendation]:
        args = ["-robot-priority"]
        data = self._json("bv", args, self._run_bv(args, path)) or {}
        recs = (data.get("recommendations") or []) if isinstance(data, dict) else []
        if not isinstance(recs, list):
            raise ToolError("bv", args, message="expected a list of recommendations")
        return [
            Recommendation(issue_id=str(r.get("issue_id", "")), title=str(r.get("title", "")))
            for r in recs[:n]
            if isinstance(r, dict)
        ]

    def check_drift(self, path: str = "") -> tuple[DriftStatus, str]:
        """Compare the project against its saved baseline.

        ``bv -check-drift`` exits 0 for no drift, 1 for critical drift (or no
        baseline) and 2 for a warning.
        """
        cwd = Path(self._cwd(path))
        if not (cwd / ".beads").is_dir():
            return DriftStatus.NO_BASELINE, f"no .beads directory in {cwd}"
        result = self._exec("bv", ["-check-drift"], path)
        message = result.stdout.strip() or result.stderr.strip()
        if result.returncode == 0:
            return DriftStatus.OK, message
        if result.returncode == 1:
            if "No baseline" in message:
                return DriftStatus.NO_BASELINE, message
            return DriftStatus.CRITICAL, message
        if result.returncode == 2:
            return DriftStatus.WARNING, message
        return DriftStatus.NO_BASELINE, message

    def get_health_summary(self, path: str = "") -> HealthSummary:
        status, message = self.check_drift(path)
        summary = HealthSummary(drift_status=status, drift_message=message)
        try:
            bottlenecks = self.get_top_bottlenecks(path, 5)
        except ToolError as e:
            logger.debug(f"Skipping bottlenecks in health summary: {e}")
            return summary
        summary.bottleneck_count = len(bottlenecks)
        if bottlenecks:
            summary.top_bottleneck = bottlenecks[0].id
        return summary

    def get_in_progress_list(self, path: str = "", limit: int = 100) -> list[InProgressTask]:
        """In-progress tasks with assignee and last update time.

        Raises:
            ToolNotInstalledError: If ``bd`` is not on PATH.
            ToolError: If ``bd`` fails or prints unparsable output.
        """
        args = ["list", "--status=in_progress", "--json"]
        data = self._json("bd", args, self._run_bd(args, path)) or []
        if not isinstance(data, list):
            raise ToolError("bd", args, message="expected a JSON array")
        return [
            InProgressTask(
                id=str(item.get("id", "")),
                title=str(item.get("title", "")),
                assignee=str(item.get("assignee") or ""),
                updated_at=parse_timestamp(item.get("updated_at")),
            )
            for item in data[:limit]
            if isinstance(item, dict)
        ]

    def get_dependency_context(self, path: str = "", n: int = 5) -> DependencyContext:
        """Blocked/ready counts, in-progress tasks and top blockers.

        Each ``bd`` query is optional; a failing one leaves its part empty.

        Raises:
            ToolNotInstalledError: If ``bd`` is not on PATH.
        """
        ctx = DependencyContext()

        try:
            stats = self._json("bd", ["stats"], self._run_bd(["stats", "--json"], path))
            if isinstance(stats, dict):
                ctx.blocked_count = int(stats.get("blocked_issues") or 0)
                ctx.ready_count = int(stats.get("ready_issues") or 0)
        except ToolNotInstalledError:
            raise
        except (SentinelError, TypeError, ValueError) as e:
            logger.debug(f"bd stats unavailable: {e}")

        try:
            ctx.in_progress = self.get_in_progress_list(path, n)
        except ToolNotInstalledError:
            raise
        except SentinelError as e:
            logger.debug(f"bd in-progress list unavailable: {e}")

        try:
            blocked = self._json("bd", ["blocked"], self._run_bd(["blocked", "--json"], path))
            for item in (blocked or [])[:n]:
                if isinstance(item, dict):
                    ctx.top_blockers.append(
                        Blocker(
                            id=str(item.get("id", "")),
                            title=str(item.get("title", "")),
                            blocked_by=[str(b) for b in item.get("blocked_by") or []],
                        )
                    )
        except ToolNotInstalledError:
            raise
        except (SentinelError, TypeError) as e:
            logger.debug(f"bd blocked unavailable: {e}")

        return ctx
