"""Error detection in agent pane output."""

from __future__ import annotations

from typing import NamedTuple, Optional

from nebulus_sentinel.status.patterns import strip_ansi, tail_lines
from nebulus_sentinel.status.rules import DEFAULT_RULES, RuleSet
from nebulus_sentinel.status.types import ErrorCategory

# Only the most recent output is relevant to the current state
ERROR_SCAN_LINES = 50


class ErrorMatch(NamedTuple):
    category: ErrorCategory
    matched_text: str
    description: str


def _recent(text: str, scan_lines: int) -> str:
    return tail_lines(strip_ansi(text), scan_lines)


def find_error(
    text: str,
    rules: RuleSet = DEFAULT_RULES,
    scan_lines: int = ERROR_SCAN_LINES,
) -> Optional[ErrorMatch]:
    """Return the first error match in priority order, or None."""
    recent = _recent(text, scan_lines)
    for rule in rules.errors:
        matched = rule.search(recent)
        if matched is not None:
            return ErrorMatch(ErrorCategory(rule.key), matched, rule.description)
    return None


def detect_error(
    text: str,
    rules: RuleSet = DEFAULT_RULES,
    scan_lines: int = ERROR_SCAN_LINES,
) -> ErrorCategory:
    """Classify the most recent output into an error category.

    Rate-limit and auth patterns are tried before crash and generic ones;
    the first match wins. ``ErrorCategory.NONE`` when nothing matches.
    """
    match = find_error(text, rules, scan_lines)
    return match.category if match else ErrorCategory.NONE


def detect_all_errors(
    text: str,
    rules: RuleSet = DEFAULT_RULES,
    scan_lines: int = ERROR_SCAN_LINES,
) -> list[ErrorCategory]:
    """Every category present in recent output, deduplicated, in priority order."""
    recent = _recent(text, scan_lines)
    found: list[ErrorCategory] = []
    for rule in rules.errors:
        category = ErrorCategory(rule.key)
        if category in found:
            continue
        if rule.search(recent) is not None:
            found.append(category)
    return found
