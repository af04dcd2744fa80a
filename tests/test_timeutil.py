"""Tests for timestamp parsing."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from nebulus_sentinel.timeutil import parse_timestamp, utc_now


class TestParseTimestamp:
    def test_zulu(self) -> None:
        assert parse_timestamp("2025-01-15T12:00:00Z") == datetime(2025, 1, 15, 12, tzinfo=timezone.utc)

    def test_offset_preserved(self) -> None:
        parsed = parse_timestamp("2025-01-15T14:00:00+02:00")
        assert parsed.utcoffset() == timedelta(hours=2)
        assert parsed == datetime(2025, 1, 15, 12, tzinfo=timezone.utc)

    def test_nanoseconds_trimmed(self) -> None:
        parsed = parse_timestamp("2025-01-15T12:00:00.123456789Z")
        assert parsed.microsecond == 123456

    def test_naive_is_utc(self) -> None:
        assert parse_timestamp("2025-01-15T12:00:00").tzinfo is timezone.utc
        assert parse_timestamp(datetime(2025, 1, 15)).tzinfo is timezone.utc

    @pytest.mark.parametrize("value", [None, "", "yesterday", 42])
    def test_invalid(self, value) -> None:
        assert parse_timestamp(value) is None


def test_utc_now_is_aware() -> None:
    assert utc_now().utcoffset() == timedelta(0)
