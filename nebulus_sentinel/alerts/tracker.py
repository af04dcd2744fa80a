"""Alert lifecycle: dedup, escalation, resolution and pruning across cycles."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Iterable, Optional

from nebulus_sentinel.alerts.types import (
    Alert,
    AlertSummary,
    AlertType,
    Severity,
    severity_rank,
)
from nebulus_sentinel.rwlock import RWLock
from nebulus_sentinel.timeutil import Clock, utc_now

logger = logging.getLogger(__name__)

DEFAULT_PRUNE_AFTER = timedelta(minutes=60)


class AlertTracker:
    """Owns the active and recently-resolved alert sets.

    Every read returns copies; ``update``, ``manual_resolve`` and ``clear``
    are the only writers.

    Args:
        prune_after: How long resolved alerts are kept.
        clock: Time source.
    """

    def __init__(
        self,
        prune_after: timedelta = DEFAULT_PRUNE_AFTER,
        clock: Clock = utc_now,
    ) -> None:
        self._prune_after = prune_after
        self._clock = clock
        self._lock = RWLock()
        self._active: dict[str, Alert] = {}
        self._resolved: list[Alert] = []

    def update(self, detected: Iterable[Alert], failed_sources: Iterable[str] = ()) -> None:
        """Fold one cycle's detections into the tracked state.

        1. Known IDs are refreshed: ``last_seen_at`` and ``count`` move on,
           severity only ever rises, context is replaced.
        2. Active alerts missing from ``detected`` are resolved, unless their
           source is in ``failed_sources``: a probe that could not run says
           nothing about whether its alerts cleared.
        3. Resolved alerts older than the prune window are dropped.
        """
        failed = set(failed_sources)
        with self._lock.write():
            now = self._clock()
            seen: set[str] = set()

            for alert in detected:
                repeat = alert.id in seen
                seen.add(alert.id)
                existing = self._active.get(alert.id)
                if existing is not None:
                    # One count per cycle however often a batch repeats an ID
                    if not repeat:
                        existing.last_seen_at = now
                        existing.count += 1
                    if severity_rank(alert.severity) > severity_rank(existing.severity):
                        logger.info(
                            f"Alert {alert.id} escalated "
                            f"{existing.severity.value} -> {alert.severity.value}"
                        )
                        existing.severity = alert.severity
                    if alert.context:
                        existing.context = dict(alert.context)
                    continue

                fresh = alert.copy()
                fresh.created_at = now
                fresh.last_seen_at = now
                fresh.count = 1
                fresh.resolved_at = None
                self._active[alert.id] = fresh
                logger.info(f"New {fresh.severity.value} alert: {fresh.message}")

            for alert_id in [i for i in self._active if i not in seen]:
                alert = self._active[alert_id]
                if alert.source in failed:
                    continue
                alert.resolved_at = now
                self._resolved.append(alert)
                del self._active[alert_id]
                logger.info(f"Alert resolved: {alert.message}")

            self._prune(now)

    def _prune(self, now: datetime) -> None:
        self._resolved = [a for a in self._resolved if self._retained(a, now)]

    def _retained(self, alert: Alert, now: datetime) -> bool:
        return alert.resolved_at is not None and now - alert.resolved_at <= self._prune_after

    def get_active(self) -> list[Alert]:
        with self._lock.read():
            return [a.copy() for a in self._active.values()]

    def get_active_filtered(
        self,
        alert_type: Optional[AlertType] = None,
        min_severity: Optional[Severity] = None,
    ) -> list[Alert]:
        """Active alerts of one type and/or at or above a severity."""
        floor = severity_rank(min_severity) if min_severity is not None else 0
        with self._lock.read():
            return [
                a.copy()
                for a in self._active.values()
                if (alert_type is None or a.type is alert_type)
                and severity_rank(a.severity) >= floor
            ]

    def get_resolved(self) -> list[Alert]:
        """Resolved alerts still inside the prune window."""
        with self._lock.read():
            now = self._clock()
            return [a.copy() for a in self._resolved if self._retained(a, now)]

    def get_all(self) -> tuple[list[Alert], list[Alert]]:
        """Active and resolved alerts from one consistent snapshot."""
        with self._lock.read():
            now = self._clock()
            active = [a.copy() for a in self._active.values()]
            resolved = [a.copy() for a in self._resolved if self._retained(a, now)]
        return active, resolved

    def get_by_id(self, alert_id: str) -> Optional[Alert]:
        """Look up an alert in the active set, then the resolved list."""
        with self._lock.read():
            alert = self._active.get(alert_id)
            if alert is not None:
                return alert.copy()
            now = self._clock()
            for resolved in self._resolved:
                if resolved.id == alert_id and self._retained(resolved, now):
                    return resolved.copy()
        return None

    def summary(self) -> AlertSummary:
        with self._lock.read():
            now = self._clock()
            active = list(self._active.values())
            return AlertSummary(
                total_active=len(active),
                total_resolved=sum(1 for a in self._resolved if self._retained(a, now)),
                by_severity=dict(Counter(a.severity.value for a in active)),
                by_type=dict(Counter(a.type.value for a in active)),
            )

    def manual_resolve(self, alert_id: str) -> bool:
        """Resolve an active alert by hand. False if it is not active."""
        with self._lock.write():
            alert = self._active.pop(alert_id, None)
            if alert is None:
                return False
            alert.resolved_at = self._clock()
            self._resolved.append(alert)
            logger.info(f"Alert manually resolved: {alert.message}")
            return True

    def clear(self) -> None:
        with self._lock.write():
            self._active.clear()
            self._resolved.clear()

    def set_prune_after(self, prune_after: timedelta) -> None:
        with self._lock.write():
            self._prune_after = prune_after
