"""ANSI stripping and idle-prompt detection."""

from __future__ import annotations

import re

from nebulus_sentinel.status.rules import DEFAULT_RULES, RuleSet
from nebulus_sentinel.status.types import is_known_agent, normalize_agent_type

# CSI sequences (including private "?" modes) and OSC sequences such as titles
ANSI_ESCAPE_RE = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]|\x1b\][^\a\x1b]*(\a|\x1b\\)")

# Optional user@host:path or shell-version prefix, then $ or %
SHELL_PROMPT_RE = re.compile(r"^(?:\S*[@:~/]\S*|[\w.]+-\d[\d.]*)?\s?[$%]$")

# Non-empty lines inspected from the bottom when looking for a prompt
PROMPT_WINDOW = 3


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences."""
    return ANSI_ESCAPE_RE.sub("", text)


def is_at_prompt(line: str, agent_type: str, rules: RuleSet = DEFAULT_RULES) -> bool:
    """Check whether a single line looks like an idle prompt.

    Agent-specific patterns are tried first, then the generic ones. The
    generic shell-prompt fallback is skipped for known agent types: a ``$``
    prompt in a claude/codex/gemini pane means the agent exited.
    """
    line = strip_ansi(line).strip()
    if not line:
        return False

    known = is_known_agent(agent_type)
    for rule in rules.prompt_rules_for(agent_type):
        if rule.shell_fallback and known:
            continue
        if rule.endswith(line):
            return True
    return False


def detect_idle(text: str, agent_type: str, rules: RuleSet = DEFAULT_RULES) -> bool:
    """Decide whether pane output ends at an idle prompt.

    Looks at up to the last three non-empty lines so a little trailing output
    does not hide the prompt. Empty output is idle only for user shells and
    untyped panes.
    """
    clean = strip_ansi(text)
    agent = normalize_agent_type(agent_type)

    if not is_known_agent(agent) and clean.strip().endswith("$"):
        return True

    checked = 0
    for line in reversed(clean.split("\n")):
        if checked >= PROMPT_WINDOW:
            break
        line = line.strip()
        if not line:
            continue
        checked += 1
        if is_at_prompt(line, agent, rules):
            return True

    return checked == 0 and agent in ("", "user")


def is_shell_prompt(line: str) -> bool:
    """True when a line is a bare shell prompt (``$``, ``user@host:~/src$``).

    Stricter than the idle fallback so output such as ``100%`` is not
    mistaken for an exited agent.
    """
    return SHELL_PROMPT_RE.match(strip_ansi(line).strip()) is not None


def last_non_empty_line(text: str) -> str:
    """Return the last non-blank line, ANSI-stripped and trimmed."""
    for line in reversed(strip_ansi(text).split("\n")):
        line = line.strip()
        if line:
            return line
    return ""


def tail_lines(text: str, n: int) -> str:
    """Return the last ``n`` lines of ``text``."""
    lines = text.split("\n")
    return "\n".join(lines[-n:]) if n > 0 else ""
