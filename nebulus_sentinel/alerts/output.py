"""Machine-readable alert output."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from nebulus_sentinel.alerts.generator import AlertGenerator
from nebulus_sentinel.alerts.tracker import AlertTracker
from nebulus_sentinel.alerts.types import Alert, AlertSummary
from nebulus_sentinel.timeutil import utc_now


@dataclass
class AlertsOutput:
    """The JSON envelope printed by ``sentinel alerts --json``."""

    generated_at: datetime
    active: list[Alert]
    summary: AlertSummary
    config: dict[str, Any] = field(default_factory=dict)
    resolved: Optional[list[Alert]] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "generated_at": self.generated_at.isoformat(),
            "active": [a.to_dict() for a in self.active],
        }
        if self.resolved:
            data["resolved"] = [a.to_dict() for a in self.resolved]
        data["summary"] = self.summary.to_dict()
        data["config"] = self.config
        return data

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)


def generate_and_track(generator: AlertGenerator, tracker: AlertTracker) -> AlertTracker:
    """Run one generation cycle and fold it into ``tracker``."""
    detected, failed = generator.generate_all()
    tracker.update(detected, failed)
    return tracker


def build_output(
    tracker: AlertTracker,
    config: Optional[dict[str, Any]] = None,
    include_resolved: bool = False,
    now: Optional[datetime] = None,
) -> AlertsOutput:
    active, resolved = tracker.get_all()
    return AlertsOutput(
        generated_at=now or utc_now(),
        active=active,
        summary=tracker.summary(),
        config=config or {},
        resolved=resolved if include_resolved else None,
    )


def alert_strings(alerts: list[Alert]) -> list[str]:
    """One-line renderings: ``session: message (pane X)``."""
    lines = []
    for alert in alerts:
        text = alert.message
        if alert.session:
            text = f"{alert.session}: {text}"
        if alert.pane:
            text = f"{text} (pane {alert.pane})"
        lines.append(text)
    return lines
