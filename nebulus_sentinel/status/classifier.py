"""Pane output classification: text in, (state, error category) out."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from nebulus_sentinel.status.errors import ERROR_SCAN_LINES, detect_error
from nebulus_sentinel.status.patterns import detect_idle, strip_ansi
from nebulus_sentinel.status.rules import DEFAULT_RULES, RuleSet
from nebulus_sentinel.status.types import AgentState, ErrorCategory, is_known_agent
from nebulus_sentinel.timeutil import utc_now

DEFAULT_ACTIVITY_THRESHOLD = timedelta(seconds=5)


class Classification(NamedTuple):
    state: AgentState
    error_category: ErrorCategory


def classify(
    text: str,
    agent_type: str,
    last_active: Optional[datetime] = None,
    now: Optional[datetime] = None,
    activity_threshold: timedelta = DEFAULT_ACTIVITY_THRESHOLD,
    rules: RuleSet = DEFAULT_RULES,
    scan_lines: int = ERROR_SCAN_LINES,
) -> Classification:
    """Classify captured pane text.

    Precedence is error, then idle, then working, then unknown:

    - any error pattern in the recent window makes the pane ``error``;
    - a prompt in the last few non-empty lines makes it ``idle``;
    - empty output is ``idle`` for user shells and ``unknown`` for agents;
    - output within ``activity_threshold`` of ``last_active`` is ``working``.
      Without an activity timestamp, non-prompt output counts as working.

    Args:
        text: Raw pane output, ANSI included.
        agent_type: Agent code or name (``cc``, ``claude``, ``user``, ...).
        last_active: When the pane last produced output, if known.
        now: Current time; defaults to the wall clock.
        activity_threshold: How recent output must be to count as working.
        rules: Pattern tables to classify with.
        scan_lines: How many trailing lines to scan for errors.
    """
    category = detect_error(text, rules, scan_lines)
    if category.is_error:
        return Classification(AgentState.ERROR, category)

    if detect_idle(text, agent_type, rules):
        return Classification(AgentState.IDLE, ErrorCategory.NONE)

    if not strip_ansi(text).strip():
        if is_known_agent(agent_type):
            return Classification(AgentState.UNKNOWN, ErrorCategory.NONE)
        return Classification(AgentState.IDLE, ErrorCategory.NONE)

    if last_active is None:
        return Classification(AgentState.WORKING, ErrorCategory.NONE)

    elapsed = (now or utc_now()) - last_active
    if elapsed < activity_threshold:
        return Classification(AgentState.WORKING, ErrorCategory.NONE)
    return Classification(AgentState.UNKNOWN, ErrorCategory.NONE)
