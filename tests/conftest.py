"""Shared fixtures for sentinel tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from nebulus_sentinel.errors import PaneCaptureError, SendKeysError
from nebulus_sentinel.integrations.beads_client import (
    DependencyContext,
    HealthSummary,
    InProgressTask,
    Insights,
    NodeScore,
    Recommendation,
)
from nebulus_sentinel.integrations.tmux_client import Pane, Session

T0 = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakePanes:
    """In-memory ``PaneProvider``.

    ``outputs`` maps pane id to captured text; a pane id in ``broken`` fails
    capture. ``sent`` records every ``send_keys`` call.
    """

    def __init__(self) -> None:
        self.sessions: dict[str, list[Pane]] = {}
        self.outputs: dict[str, str] = {}
        self.activity: dict[str, Optional[datetime]] = {}
        self.broken: set[str] = set()
        self.sent: list[tuple[str, str, bool]] = []
        self.send_error: Optional[Exception] = None

    def add_pane(
        self,
        session: str,
        pane_id: str,
        index: int,
        agent_type: str = "cc",
        output: str = "",
        last_active: Optional[datetime] = None,
    ) -> Pane:
        pane = Pane(id=pane_id, index=index, title=f"{session}__{agent_type}_{index}", type=agent_type)
        self.sessions.setdefault(session, []).append(pane)
        self.outputs[pane_id] = output
        self.activity[pane_id] = last_active
        return pane

    def list_sessions(self) -> list[Session]:
        return [Session(name=name) for name in self.sessions]

    def get_panes(self, session: str) -> list[Pane]:
        return list(self.sessions.get(session, []))

    def capture_pane_output(self, pane_id: str, max_lines: int) -> str:
        if pane_id in self.broken:
            raise PaneCaptureError("tmux", ["capture-pane"], message=f"cannot capture {pane_id}")
        return self.outputs.get(pane_id, "")

    def get_pane_activity(self, pane_id: str) -> Optional[datetime]:
        return self.activity.get(pane_id)

    def send_keys(self, target: str, text: str, submit: bool = True) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((target, text, submit))


class FakeBeads:
    """In-memory ``InsightProvider`` and ``TaskProvider``."""

    def __init__(self) -> None:
        self.insights = Insights()
        self.in_progress: list[InProgressTask] = []
        self.error: Optional[Exception] = None

    def _check(self) -> None:
        if self.error is not None:
            raise self.error

    def get_insights(self, path: str = "") -> Insights:
        self._check()
        return self.insights

    def get_in_progress_list(self, path: str = "", limit: int = 100) -> list[InProgressTask]:
        self._check()
        return self.in_progress[:limit]

    def get_top_bottlenecks(self, path: str = "", n: int = 3) -> list[NodeScore]:
        self._check()
        return self.insights.bottlenecks[:n]

    def get_next_actions(self, path: str = "", n: int = 3) -> list[Recommendation]:
        self._check()
        return []

    def get_health_summary(self, path: str = "") -> HealthSummary:
        self._check()
        return HealthSummary()

    def get_dependency_context(self, path: str = "", n: int = 5) -> DependencyContext:
        self._check()
        return DependencyContext(in_progress=self.in_progress[:n])


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def panes() -> FakePanes:
    return FakePanes()


@pytest.fixture
def beads() -> FakeBeads:
    return FakeBeads()


@pytest.fixture
def send_failure() -> SendKeysError:
    return SendKeysError("tmux", ["send-keys"], message="cannot send keys")
