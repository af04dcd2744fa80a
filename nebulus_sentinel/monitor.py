"""Monitoring loop: alerts and compaction recovery, once per cycle.

The alert path (generator -> tracker) and the recovery path (capture ->
compaction check -> recovery send) are independent. Each may see a slightly
different snapshot of the same pane within one cycle.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from nebulus_sentinel.alerts.generator import AlertGenerator
from nebulus_sentinel.alerts.tracker import AlertTracker
from nebulus_sentinel.config import SentinelConfig
from nebulus_sentinel.errors import SentinelError
from nebulus_sentinel.integrations.beads_client import BeadsClient
from nebulus_sentinel.integrations.tmux_client import PaneProvider
from nebulus_sentinel.logging import new_cycle_id, pane_logger
from nebulus_sentinel.status.compaction import CompactionDetector, CompactionEvent
from nebulus_sentinel.status.recovery import CompactionRecovery, RecoveryManager
from nebulus_sentinel.status.rules import PatternRegistry
from nebulus_sentinel.status.types import is_known_agent
from nebulus_sentinel.timeutil import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    """What one monitoring cycle observed and did."""

    cycle_id: str
    detected: int = 0
    failed_sources: list[str] = field(default_factory=list)
    compactions: list[CompactionEvent] = field(default_factory=list)
    recoveries_sent: int = 0
    recovery_errors: int = 0


class Monitor:
    """Drives alert generation, tracking and compaction recovery.

    Args:
        config: Full sentinel configuration.
        panes: Pane provider shared by both paths.
        generator: Alert generator for the alert path.
        tracker: Alert tracker the generator's batches are folded into.
        recovery: Compaction recovery for the recovery path; None disables it.
    """

    def __init__(
        self,
        config: SentinelConfig,
        panes: PaneProvider,
        generator: AlertGenerator,
        tracker: AlertTracker,
        recovery: Optional[CompactionRecovery] = None,
    ) -> None:
        self.config = config
        self.panes = panes
        self.generator = generator
        self.tracker = tracker
        self.recovery = recovery
        self._stop_event = threading.Event()
        self._running = False

    @classmethod
    def from_config(
        cls,
        config: SentinelConfig,
        panes: PaneProvider,
        beads: Optional[BeadsClient] = None,
        registry: Optional[PatternRegistry] = None,
        clock: Clock = utc_now,
        project_path: str = "",
    ) -> "Monitor":
        """Wire the default component graph from configuration."""
        registry = registry or PatternRegistry()
        rules = registry.rules
        generator = AlertGenerator(
            config=config.alerts,
            panes=panes,
            insights=beads,
            tasks=beads,
            clock=clock,
            project_path=project_path,
            rules=rules,
        )
        tracker = AlertTracker(
            prune_after=timedelta(minutes=config.alerts.resolved_prune_minutes),
            clock=clock,
        )
        manager = RecoveryManager(
            config=config.recovery,
            sender=panes,
            tasks=beads,
            clock=clock,
            project_path=project_path,
        )
        recovery = CompactionRecovery(manager, CompactionDetector(clock=clock, rules=rules))
        return cls(config, panes, generator, tracker, recovery)

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        self._stop_event.set()

    def run_cycle(self) -> CycleResult:
        """Run both paths once under a fresh correlation ID."""
        result = CycleResult(cycle_id=new_cycle_id())

        detected, failed = self.generator.generate_all()
        self.tracker.update(detected, failed)
        result.detected = len(detected)
        result.failed_sources = list(failed)

        if self.recovery is not None:
            self._recovery_pass(result)

        logger.info(
            f"Cycle done: {result.detected} detected, "
            f"{len(result.compactions)} compaction(s), "
            f"{result.recoveries_sent} recovery prompt(s) sent"
        )
        return result

    def _recovery_pass(self, result: CycleResult) -> None:
        session_filter = self.config.alerts.session_filter
        try:
            sessions = self.panes.list_sessions()
        except SentinelError as e:
            logger.warning(f"Recovery pass skipped, cannot list sessions: {e}")
            return

        for session in sessions:
            if session_filter and session.name != session_filter:
                continue
            try:
                panes = self.panes.get_panes(session.name)
            except SentinelError as e:
                logger.warning(f"Recovery pass cannot list panes of {session.name}: {e}")
                continue

            for pane in panes:
                if not is_known_agent(pane.type):
                    continue
                log = pane_logger(session.name, pane.id)
                try:
                    text = self.panes.capture_pane_output(
                        pane.id, self.config.alerts.capture_lines
                    )
                    event, sent = self.recovery.check_and_recover(
                        text, pane.type, session.name, pane.index
                    )
                except SentinelError as e:
                    log.warning(f"Recovery check failed: {e}")
                    result.recovery_errors += 1
                    continue
                except Exception as e:
                    log.exception(f"Unexpected recovery failure: {e}")
                    result.recovery_errors += 1
                    continue
                if event is not None:
                    result.compactions.append(event)
                if sent:
                    result.recoveries_sent += 1

    def run(
        self,
        interval: Optional[float] = None,
        cycles: Optional[int] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> int:
        """Run cycles until stopped, or until ``cycles`` have completed.

        Returns:
            The number of cycles run.
        """
        interval = self.config.monitor_interval_seconds if interval is None else interval
        stop = stop_event or self._stop_event
        self._running = True
        logger.info(f"Sentinel monitor starting (interval={interval}s)")

        completed = 0
        try:
            while not stop.is_set():
                self.run_cycle()
                completed += 1
                if cycles is not None and completed >= cycles:
                    break
                stop.wait(interval)
        finally:
            self._running = False
            logger.info(f"Sentinel monitor stopped after {completed} cycle(s)")
        return completed
