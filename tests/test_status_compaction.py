"""Tests for context compaction detection."""

from __future__ import annotations

from datetime import timedelta

from nebulus_sentinel.status.compaction import (
    CompactionDetector,
    detect_compaction,
    has_compaction,
)
from nebulus_sentinel.status.rules import PatternRegistry


class TestDetectCompaction:
    def test_claude_banner(self) -> None:
        event = detect_compaction("Conversation compacted", "claude")
        assert event is not None
        assert event.matched_text == "Conversation compacted"
        assert event.agent_type == "claude"

    def test_short_code(self, clock) -> None:
        event = detect_compaction("... Conversation compacted ...", "cc", pane_id="s:1", now=clock())
        assert event is not None
        assert event.pane_id == "s:1"
        assert event.detected_at == clock()
        assert event.pattern_id == "Conversation compacted"

    def test_codex_pattern(self) -> None:
        event = detect_compaction("warning: context limit reached", "cod")
        assert event is not None
        assert event.matched_text.lower() == "context limit reached"

    def test_gemini_pattern(self) -> None:
        assert has_compaction("Context window exceeded, starting over", "gemini") is True

    def test_cross_agent_fallback(self) -> None:
        assert has_compaction("Continuing from the summary above", "aider") is True

    def test_no_match(self) -> None:
        assert detect_compaction("All tests passed", "cc") is None

    def test_agent_specific_pattern_not_applied_to_others(self) -> None:
        assert detect_compaction("Conversation compacted", "user") is None

    def test_ansi_stripped(self) -> None:
        assert has_compaction("\x1b[2mConversation compacted\x1b[0m", "cc") is True

    def test_runtime_pattern(self) -> None:
        registry = PatternRegistry()
        registry.add_compaction_pattern("aider", r"(?i)chat history squashed")
        event = detect_compaction("Chat history squashed", "aider", rules=registry.rules)
        assert event is not None
        assert event.pattern_id == "(?i)chat history squashed"

    def test_to_dict(self, clock) -> None:
        event = detect_compaction("Conversation compacted", "cc", pane_id="%1", now=clock())
        data = event.to_dict()
        assert data["pane_id"] == "%1"
        assert data["detected_at"] == clock().isoformat()
        assert data["pattern"] == "Conversation compacted"


class TestCompactionDetector:
    def test_records_events(self, clock) -> None:
        detector = CompactionDetector(clock=clock)
        assert detector.check("Conversation compacted", "cc", "s:1") is not None
        assert detector.check("nothing here", "cc", "s:2") is None
        assert [e.pane_id for e in detector.events()] == ["s:1"]

    def test_events_expire(self, clock) -> None:
        detector = CompactionDetector(max_age=timedelta(minutes=5), clock=clock)
        detector.check("Conversation compacted", "cc", "s:1")
        clock.advance(minutes=6)
        assert detector.events() == []

    def test_events_for_pane_and_recent(self, clock) -> None:
        detector = CompactionDetector(clock=clock)
        detector.check("Conversation compacted", "cc", "s:1")
        detector.check("Conversation compacted", "cc", "s:2")
        assert len(detector.events_for_pane("s:1")) == 1
        clock.advance(minutes=2)
        assert detector.has_recent_compaction("s:1", timedelta(minutes=3)) is True
        assert detector.has_recent_compaction("s:1", timedelta(minutes=1)) is False

    def test_clear(self, clock) -> None:
        detector = CompactionDetector(clock=clock)
        detector.check("Conversation compacted", "cc", "s:1")
        detector.clear()
        assert detector.events() == []
