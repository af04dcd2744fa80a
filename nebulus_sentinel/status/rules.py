"""Declarative pattern tables and the immutable rule sets built from them.

Every classifier function takes a ``RuleSet``. The module-level
``DEFAULT_RULES`` is frozen at import. Callers that need extra patterns at
runtime own a ``PatternRegistry`` and pass ``registry.rules`` along; the
registry swaps in a rebuilt ``RuleSet`` on each addition so readers never see
a half-updated table.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, replace
from typing import Optional, Pattern

from nebulus_sentinel.errors import ConfigError
from nebulus_sentinel.status.types import ErrorCategory, normalize_agent_type

GENERIC = ""
ALL_AGENTS = "*"


@dataclass(frozen=True)
class Rule:
    """One pattern: a compiled regex or a plain substring.

    ``key`` is the agent type (prompt and compaction rules) or the error
    category value (error rules). ``pattern_id`` is the source text of the
    pattern, reported back on matches.
    """

    key: str
    description: str
    regex: Optional[Pattern[str]] = None
    literal: str = ""
    shell_fallback: bool = False

    @property
    def pattern_id(self) -> str:
        return self.regex.pattern if self.regex is not None else self.literal

    def search(self, text: str) -> Optional[str]:
        """Return the matched text, or None."""
        if self.regex is not None:
            m = self.regex.search(text)
            return m.group(0) if m else None
        if self.literal and self.literal in text:
            return self.literal
        return None

    def endswith(self, line: str) -> bool:
        """Prompt check: regexes are anchored themselves, literals are suffixes."""
        if self.regex is not None:
            return self.regex.search(line) is not None
        return bool(self.literal) and line.endswith(self.literal)


def _rx(key: str, pattern: str, description: str, flags: int = 0, **kw) -> Rule:
    return Rule(key=key, description=description, regex=re.compile(pattern, flags), **kw)


def _lit(key: str, literal: str, description: str) -> Rule:
    return Rule(key=key, description=description, literal=literal)


# Agent-specific prompts first, generic fallbacks last.
PROMPT_RULES: tuple[Rule, ...] = (
    _rx("cc", r"(?i)claude>?\s*$", "Claude prompt"),
    _rx("cc", r">\s*$", "Claude simple prompt"),
    _rx("cod", r"(?i)codex>?\s*$", "Codex prompt"),
    _rx("gmi", r"(?i)gemini>?\s*$", "Gemini prompt"),
    _rx("cursor", r"(?i)cursor>?\s*$", "Cursor prompt"),
    _rx("windsurf", r"(?i)windsurf>?\s*$", "Windsurf prompt"),
    _rx("aider", r"(?i)aider>?\s*$", "Aider prompt"),
    _rx("aider", r">\s*$", "Aider simple prompt"),
    _rx("user", r"[$%>]\s*$", "Standard shell prompt"),
    _rx("user", r"❯\s*$", "Fancy shell prompt"),
    _rx("user", r"\$\s*$", "Dollar prompt"),
    _rx(GENERIC, r">\s*$", "Generic > prompt"),
    # A shell prompt in a known agent's pane means the agent exited
    _rx(GENERIC, r"[$%]\s*$", "Generic shell prompt", shell_fallback=True),
)

_RATE = ErrorCategory.RATE_LIMIT.value
_AUTH = ErrorCategory.AUTH.value
_CONN = ErrorCategory.CONNECTION.value
_CRASH = ErrorCategory.CRASH.value
_ERR = ErrorCategory.GENERIC.value

# Priority order: status codes and the words "error"/"failed" are ambiguous
# on their own, so the specific categories are tried before the generic ones.
ERROR_RULES: tuple[Rule, ...] = (
    _rx(_RATE, r"(?i)rate[\s._-]?limit", "Rate limit message"),
    _rx(_RATE, r"(?i)(http|status|error|code).{0,10}\b429\b", "HTTP 429 status"),
    _rx(_RATE, r"(?i)\b429\b.{0,10}(too many|rate|limit)", "429 with message"),
    _rx(_RATE, r"(?i)too many requests", "Too many requests"),
    _rx(_RATE, r"(?i)quota exceeded", "Quota exceeded"),
    _rx(_RATE, r"(?i)try again (later|in)", "Retry message"),
    _rx(_RATE, r"(?i)requests per (minute|second|hour)", "Rate description"),
    _rx(_RATE, r"(?i)throttl(ed|ing)", "Throttling"),
    _rx(_AUTH, r"(?i)(http|status|error|code).{0,10}\b401\b", "HTTP 401"),
    _rx(_AUTH, r"(?i)\b401\b.{0,10}(unauthorized|error|denied)", "401 with message"),
    _rx(_AUTH, r"(?i)(http|status|error|code).{0,10}\b403\b", "HTTP 403"),
    _rx(_AUTH, r"(?i)\b403\b.{0,10}(forbidden|error|denied)", "403 with message"),
    _rx(_AUTH, r"(?i)\bunauthorized\b", "Unauthorized"),
    _rx(_AUTH, r"(?i)\bforbidden\b", "Forbidden"),
    _rx(
        _AUTH,
        r"(?i)(invalid|expired|missing)[\s._-]?(api[\s._-]?)?(key|token|credential)",
        "Invalid credentials",
    ),
    _rx(_AUTH, r"(?i)authentication (failed|error|required)", "Auth failure"),
    _rx(_AUTH, r"(?i)access denied", "Access denied"),
    _rx(
        _CONN,
        r"(?i)connection (refused|reset|closed|timed?\s*out)",
        "Connection issue",
    ),
    _lit(_CONN, "ECONNREFUSED", "ECONNREFUSED"),
    _lit(_CONN, "ECONNRESET", "ECONNRESET"),
    _lit(_CONN, "ETIMEDOUT", "ETIMEDOUT"),
    _lit(_CONN, "ENOTFOUND", "ENOTFOUND"),
    _rx(_CONN, r"(?i)network (error|unreachable)", "Network error"),
    _rx(_CONN, r"(?i)dns (error|resolution|lookup)", "DNS error"),
    _rx(_CONN, r"(?i)socket hang up", "Socket hang up"),
    _rx(_CONN, r"(?i)no route to host", "No route"),
    _rx(_CONN, r"(?i)host (not found|unreachable)", "Host unreachable"),
    _lit(_CRASH, "panic:", "Go panic"),
    _lit(_CRASH, "fatal:", "Fatal error"),
    _lit(_CRASH, "FATAL:", "Fatal error uppercase"),
    _lit(_CRASH, "segmentation fault", "Segfault"),
    _lit(_CRASH, "Segmentation fault", "Segfault capitalized"),
    _lit(_CRASH, "SIGSEGV", "SIGSEGV signal"),
    _lit(_CRASH, "SIGKILL", "SIGKILL signal"),
    _lit(_CRASH, "SIGTERM", "SIGTERM signal"),
    _lit(_CRASH, "Traceback (most recent", "Python traceback"),
    _rx(_CRASH, r"(?i)unhandled (exception|error|rejection)", "Unhandled exception"),
    _rx(_CRASH, r"(?i)stack trace:", "Stack trace"),
    _rx(_CRASH, r"at [A-Za-z_./\\]\S*:\d+:\d+", "JS stack frame"),
    _rx(_ERR, r"(?i)^error:", "Error prefix", re.MULTILINE),
    _rx(_ERR, r"(?i)\berror\b.*\bfailed\b", "Error failed"),
)

# Keyed by short agent code; ALL_AGENTS rules are the cross-agent fallback.
COMPACTION_RULES: tuple[Rule, ...] = (
    # The literal Claude Code banner is the single strongest signal
    _rx("cc", r"Conversation compacted", "Claude compaction banner"),
    _rx("cc", r"(?i)conversation.*summarized", "Conversation summarized"),
    _rx("cc", r"(?i)context.*compacted", "Context compacted"),
    _rx("cc", r"(?i)continued from.*previous.*conversation", "Continued"),
    _rx("cc", r"(?i)ran out of context", "Out of context"),
    _rx("cc", r"(?i)session is being continued", "Session continued"),
    _rx("cc", r"(?i)conversation.*truncated", "Conversation truncated"),
    _rx("cc", r"(?i)previous.*context.*lost", "Context lost"),
    _rx(
        "cc",
        r"This session is being continued from a previous conversation",
        "Continuation banner",
    ),
    _rx("cod", r"(?i)context limit reached", "Context limit reached"),
    _rx("cod", r"(?i)conversation truncated", "Conversation truncated"),
    _rx("cod", r"(?i)history.*cleared", "History cleared"),
    _rx("cod", r"(?i)context.*reset", "Context reset"),
    _rx("gmi", r"(?i)context window exceeded", "Context window exceeded"),
    _rx("gmi", r"(?i)conversation reset", "Conversation reset"),
    _rx("gmi", r"(?i)context.*limit", "Context limit"),
    _rx("gmi", r"(?i)history.*truncated", "History truncated"),
    _rx(ALL_AGENTS, r"(?i)continuing.*from.*summary", "Continuing from summary"),
    _rx(ALL_AGENTS, r"(?i)previous.*session.*summarized", "Session summarized"),
)


@dataclass(frozen=True)
class RuleSet:
    """An immutable snapshot of every classification table."""

    prompt: tuple[Rule, ...] = PROMPT_RULES
    errors: tuple[Rule, ...] = ERROR_RULES
    compaction: tuple[Rule, ...] = COMPACTION_RULES

    def prompt_rules_for(self, agent_type: str) -> tuple[Rule, ...]:
        """Rules for one agent type followed by the generic fallbacks."""
        agent = normalize_agent_type(agent_type)
        specific = tuple(r for r in self.prompt if r.key == agent and r.key)
        generic = tuple(r for r in self.prompt if r.key == GENERIC)
        return specific + generic

    def compaction_rules_for(self, agent_type: str) -> tuple[Rule, ...]:
        agent = normalize_agent_type(agent_type)
        specific = tuple(
            r for r in self.compaction if r.key == agent and r.key != ALL_AGENTS
        )
        generic = tuple(r for r in self.compaction if r.key == ALL_AGENTS)
        return specific + generic

    def with_prompt(self, rule: Rule) -> "RuleSet":
        # New agent rules go ahead of the generic fallbacks
        if rule.key == GENERIC:
            return replace(self, prompt=self.prompt + (rule,))
        cut = next(
            (i for i, r in enumerate(self.prompt) if r.key == GENERIC),
            len(self.prompt),
        )
        return replace(self, prompt=self.prompt[:cut] + (rule,) + self.prompt[cut:])

    def with_error(self, rule: Rule) -> "RuleSet":
        # Appended after the last rule of its own category to keep priority
        last = -1
        for i, r in enumerate(self.errors):
            if r.key == rule.key:
                last = i
        if last < 0:
            return replace(self, errors=self.errors + (rule,))
        return replace(
            self, errors=self.errors[: last + 1] + (rule,) + self.errors[last + 1 :]
        )

    def with_compaction(self, rule: Rule) -> "RuleSet":
        return replace(self, compaction=self.compaction + (rule,))


DEFAULT_RULES = RuleSet()


def _compile(pattern: str, flags: int = 0) -> Pattern[str]:
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        raise ConfigError(f"Invalid pattern {pattern!r}: {e}") from e


class PatternRegistry:
    """Copy-on-write holder of a ``RuleSet``.

    Writers serialize on the registry lock and publish a whole new
    ``RuleSet``; ``rules`` is a plain attribute read and needs no lock.
    """

    def __init__(self, rules: RuleSet = DEFAULT_RULES):
        self._lock = threading.Lock()
        self._rules = rules

    @property
    def rules(self) -> RuleSet:
        return self._rules

    def add_prompt_pattern(self, agent_type: str, pattern: str, description: str) -> None:
        """Register an extra idle-prompt regex for ``agent_type``.

        Raises:
            ConfigError: If the pattern does not compile.
        """
        key = normalize_agent_type(agent_type) if agent_type else GENERIC
        rule = Rule(key=key, description=description, regex=_compile(pattern))
        with self._lock:
            self._rules = self._rules.with_prompt(rule)

    def add_error_pattern(
        self, category: ErrorCategory, pattern: str, description: str
    ) -> None:
        """Register an extra error regex within ``category``'s priority band.

        Raises:
            ConfigError: If the pattern does not compile or the category is NONE.
        """
        if not category.is_error:
            raise ConfigError("Error patterns need a real error category")
        rule = Rule(key=category.value, description=description, regex=_compile(pattern))
        with self._lock:
            self._rules = self._rules.with_error(rule)

    def add_compaction_pattern(
        self, agent_type: str, pattern: str, description: str = ""
    ) -> None:
        """Register an extra compaction regex (``"*"`` for every agent).

        Raises:
            ConfigError: If the pattern does not compile.
        """
        key = ALL_AGENTS if agent_type in ("", ALL_AGENTS) else normalize_agent_type(
            agent_type
        )
        rule = Rule(key=key, description=description or pattern, regex=_compile(pattern))
        with self._lock:
            self._rules = self._rules.with_compaction(rule)

    def reset(self) -> None:
        """Drop all runtime additions."""
        with self._lock:
            self._rules = DEFAULT_RULES
