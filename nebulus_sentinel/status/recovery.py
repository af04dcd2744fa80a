"""Compaction recovery: re-send project instructions after context loss.

When an agent compacts its context it forgets the project rules it was
given. The recovery manager types a short reminder into the pane, gated by a
per-pane cooldown and a cap on attempts so a flapping detector cannot spam
the agent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, Protocol

from nebulus_sentinel.config import RecoveryConfig
from nebulus_sentinel.errors import SentinelError
from nebulus_sentinel.integrations.beads_client import TaskProvider
from nebulus_sentinel.logging import pane_logger
from nebulus_sentinel.rwlock import RWLock
from nebulus_sentinel.status.compaction import CompactionDetector, CompactionEvent
from nebulus_sentinel.timeutil import Clock, utc_now

logger = logging.getLogger(__name__)


class RecoveryPhase(Enum):
    ELIGIBLE = "eligible"
    COOLING_DOWN = "cooling_down"
    EXHAUSTED = "exhausted"


class PromptSender(Protocol):
    def send_keys(self, target: str, text: str, submit: bool = True) -> None: ...


def make_pane_key(session: str, pane_index: int) -> str:
    return f"{session}:{pane_index}"


@dataclass(frozen=True)
class RecoveryEvent:
    """One recovery prompt delivered to a pane."""

    pane_id: str
    session: str
    pane_index: int
    sent_at: datetime
    prompt: str
    trigger_text: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "pane_id": self.pane_id,
            "session": self.session,
            "pane_index": self.pane_index,
            "sent_at": self.sent_at.isoformat(),
            "prompt": self.prompt,
            "trigger_text": self.trigger_text,
        }


@dataclass
class BeadContext:
    """Project state appended to recovery prompts."""

    top_bottlenecks: list[str] = field(default_factory=list)
    next_actions: list[str] = field(default_factory=list)
    health_status: str = ""
    has_drift: bool = False
    in_progress_tasks: list[str] = field(default_factory=list)
    blocked_count: int = 0
    ready_count: int = 0
    top_blockers: list[str] = field(default_factory=list)


def build_context_aware_prompt(base_prompt: str, context: Optional[BeadContext]) -> str:
    """Append a markdown project-context block to ``base_prompt``."""
    if context is None:
        return base_prompt

    parts = [base_prompt, "\n\n# Project Context from Beads\n"]

    if context.top_bottlenecks:
        parts.append("\n## Current Bottlenecks (resolve these to unblock progress):\n")
        parts.extend(f"- {b}\n" for b in context.top_bottlenecks)

    if context.next_actions:
        parts.append("\n## Recommended Next Actions:\n")
        parts.extend(f"- {a}\n" for a in context.next_actions)

    if context.health_status:
        parts.append(f"\n## Project Health: {context.health_status}\n")

    if context.has_drift:
        parts.append(
            "\n**Warning**: Project has drifted from baseline. "
            "Consider running `bv` to review.\n"
        )

    if context.in_progress_tasks or context.blocked_count > 0 or context.top_blockers:
        parts.append("\n## Dependency Summary\n")

        if context.in_progress_tasks:
            parts.append("\n### Tasks In Progress:\n")
            parts.extend(f"- {t}\n" for t in context.in_progress_tasks)

        if context.blocked_count > 0 or context.ready_count > 0:
            parts.append(
                f"\n**Status**: {context.blocked_count} blocked, "
                f"{context.ready_count} ready to work on\n"
            )

        if context.top_blockers:
            parts.append("\n### Top Blockers (completing these unblocks many tasks):\n")
            parts.extend(f"- {b}\n" for b in context.top_blockers)

    return "".join(parts)


def fetch_bead_context(tasks: TaskProvider, path: str = "") -> Optional[BeadContext]:
    """Collect project context; every query is optional.

    Returns None when no query succeeded (typically: tools not installed).
    """
    ctx = BeadContext()
    answered = 0

    try:
        ctx.top_bottlenecks = [b.id for b in tasks.get_top_bottlenecks(path, 3)]
        answered += 1
    except SentinelError as e:
        logger.debug(f"Bottlenecks unavailable: {e}")
    except Exception as e:
        logger.warning(f"Bottlenecks query failed: {e}")

    try:
        ctx.next_actions = [
            f"[{a.issue_id}] {a.title}" for a in tasks.get_next_actions(path, 3)
        ]
        answered += 1
    except SentinelError as e:
        logger.debug(f"Next actions unavailable: {e}")
    except Exception as e:
        logger.warning(f"Next actions query failed: {e}")

    try:
        health = tasks.get_health_summary(path)
        ctx.health_status = health.drift_status.value
        ctx.has_drift = health.has_drift
        answered += 1
    except SentinelError as e:
        logger.debug(f"Health summary unavailable: {e}")
    except Exception as e:
        logger.warning(f"Health summary query failed: {e}")

    try:
        deps = tasks.get_dependency_context(path, 5)
        ctx.blocked_count = deps.blocked_count
        ctx.ready_count = deps.ready_count
        ctx.in_progress_tasks = [f"[{t.id}] {t.title}" for t in deps.in_progress]
        for blocker in deps.top_blockers:
            suffix = (
                f" (blocked by: {', '.join(blocker.blocked_by)})"
                if blocker.blocked_by
                else ""
            )
            ctx.top_blockers.append(f"[{blocker.id}] {blocker.title}{suffix}")
        answered += 1
    except SentinelError as e:
        logger.debug(f"Dependency context unavailable: {e}")
    except Exception as e:
        logger.warning(f"Dependency context query failed: {e}")

    return ctx if answered else None


class RecoveryManager:
    """Per-pane cooldown and attempt cap around recovery prompts.

    ``send`` builds the prompt with no lock held, then re-checks the gate and
    sends under one exclusive lock, so two callers racing on the same pane
    cannot both get through.
    ``can_send`` is advisory only.

    Args:
        config: Cooldown, cap, prompt and failed-send policy.
        sender: Delivers keystrokes to a ``session:index`` target.
        tasks: Optional task provider for the project-context block.
        clock: Time source.
        project_path: Directory the task tools run in.
    """

    def __init__(
        self,
        config: Optional[RecoveryConfig] = None,
        sender: Optional[PromptSender] = None,
        tasks: Optional[TaskProvider] = None,
        clock: Clock = utc_now,
        project_path: str = "",
    ) -> None:
        config = config or RecoveryConfig()
        self.sender = sender
        self.tasks = tasks
        self.project_path = project_path
        self._clock = clock
        self._lock = RWLock()

        self._cooldown = timedelta(seconds=config.cooldown_seconds)
        self._prompt = config.prompt
        self._max_recoveries = config.max_recoveries
        self._max_event_age = timedelta(seconds=config.max_event_age_seconds)
        self._include_context = config.include_bead_context
        self._refund_failed = config.failed_send_policy == "refund"

        self._last_recovery: dict[str, datetime] = {}
        self._counts: dict[str, int] = {}
        self._events: list[RecoveryEvent] = []

    @property
    def clock(self) -> Clock:
        return self._clock

    def _refusal(self, pane_key: str, now: datetime) -> str:
        """Reason the gate is closed for ``pane_key``, or empty when open."""
        last = self._last_recovery.get(pane_key)
        if last is not None:
            remaining = self._cooldown - (now - last)
            if remaining > timedelta(0):
                return f"cooldown: {round(remaining.total_seconds())}s remaining"
        count = self._counts.get(pane_key, 0)
        if count >= self._max_recoveries:
            return f"max recoveries reached: {count}/{self._max_recoveries}"
        return ""

    def can_send(self, pane_key: str) -> tuple[bool, str]:
        """Whether a recovery could be sent right now, and why not."""
        with self._lock.read():
            reason = self._refusal(pane_key, self._clock())
        return (not reason, reason)

    def pane_state(self, pane_key: str) -> RecoveryPhase:
        with self._lock.read():
            now = self._clock()
            last = self._last_recovery.get(pane_key)
            if last is not None and now - last < self._cooldown:
                return RecoveryPhase.COOLING_DOWN
            if self._counts.get(pane_key, 0) >= self._max_recoveries:
                return RecoveryPhase.EXHAUSTED
            return RecoveryPhase.ELIGIBLE

    def _build_prompt(self) -> str:
        with self._lock.read():
            base = self._prompt
        if not self._include_context or self.tasks is None:
            return base
        return build_context_aware_prompt(
            base, fetch_bead_context(self.tasks, self.project_path)
        )

    def send(
        self,
        session: str,
        pane_index: int,
        pane_key: Optional[str] = None,
        trigger_text: str = "",
    ) -> bool:
        """Send the recovery prompt if the pane's gate is open.

        Returns:
            True if the prompt was sent, False if the cooldown or the attempt
            cap refused it.

        Raises:
            SendKeysError: If delivery fails. Under the ``consume`` policy the
                attempt still counts and the cooldown starts; under ``refund``
                the pane's state is left as it was.
        """
        pane_key = pane_key or make_pane_key(session, pane_index)
        log = pane_logger(session, pane_key)

        ok, reason = self.can_send(pane_key)
        if not ok:
            log.debug(f"Recovery skipped: {reason}")
            return False
        if self.sender is None:
            raise SentinelError("Recovery manager has no prompt sender")

        # Context queries shell out to bd/bv and must not run under the lock
        prompt = self._build_prompt()

        with self._lock.write():
            now = self._clock()
            reason = self._refusal(pane_key, now)
            if reason:
                log.debug(f"Recovery skipped: {reason}")
                return False

            try:
                self.sender.send_keys(make_pane_key(session, pane_index), prompt, submit=True)
            except Exception:
                if not self._refund_failed:
                    self._last_recovery[pane_key] = now
                    self._counts[pane_key] = self._counts.get(pane_key, 0) + 1
                log.warning("Recovery prompt delivery failed")
                raise

            self._last_recovery[pane_key] = now
            self._counts[pane_key] = self._counts.get(pane_key, 0) + 1
            self._events.append(
                RecoveryEvent(
                    pane_id=pane_key,
                    session=session,
                    pane_index=pane_index,
                    sent_at=now,
                    prompt=prompt,
                    trigger_text=trigger_text,
                )
            )
            self._prune_events(now)
            log.info(
                f"Recovery prompt sent ({self._counts[pane_key]}/{self._max_recoveries})"
            )
            return True

    def handle_compaction_event(
        self, event: Optional[CompactionEvent], session: str, pane_index: int
    ) -> bool:
        """Send recovery in response to a compaction event (None sends nothing)."""
        if event is None:
            return False
        return self.send(
            session,
            pane_index,
            make_pane_key(session, pane_index),
            event.matched_text,
        )

    def events(self) -> list[RecoveryEvent]:
        """Recent recovery events, oldest first."""
        with self._lock.write():
            self._prune_events(self._clock())
            return list(self._events)

    def recovery_count(self, pane_key: str) -> int:
        with self._lock.read():
            return self._counts.get(pane_key, 0)

    def last_recovery_time(self, pane_key: str) -> Optional[datetime]:
        with self._lock.read():
            return self._last_recovery.get(pane_key)

    def reset(self, pane_key: str) -> None:
        """Forget a pane's cooldown and attempts, e.g. after a human stepped in."""
        with self._lock.write():
            self._last_recovery.pop(pane_key, None)
            self._counts.pop(pane_key, None)

    def reset_all(self) -> None:
        with self._lock.write():
            self._last_recovery.clear()
            self._counts.clear()
            self._events.clear()

    def set_prompt(self, prompt: str) -> None:
        with self._lock.write():
            self._prompt = prompt

    def set_cooldown(self, seconds: float) -> None:
        with self._lock.write():
            self._cooldown = timedelta(seconds=seconds)

    def _prune_events(self, now: datetime) -> None:
        cutoff = now - self._max_event_age
        self._events = [e for e in self._events if e.sent_at > cutoff]


class CompactionRecovery:
    """Compaction detection wired straight into recovery."""

    def __init__(
        self,
        manager: RecoveryManager,
        detector: Optional[CompactionDetector] = None,
    ) -> None:
        self.manager = manager
        self.detector = detector or CompactionDetector(clock=manager.clock)

    def check_and_recover(
        self, text: str, agent_type: str, session: str, pane_index: int
    ) -> tuple[Optional[CompactionEvent], bool]:
        """Detect compaction in ``text`` and send recovery when found.

        Returns:
            The compaction event (or None) and whether a prompt was sent.

        Raises:
            SendKeysError: Propagated from the recovery send.
        """
        pane_key = make_pane_key(session, pane_index)
        event = self.detector.check(text, agent_type, pane_key)
        if event is None:
            return None, False
        return event, self.manager.handle_compaction_event(event, session, pane_index)
