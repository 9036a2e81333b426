"""Tests for helper functions and text matching."""

from datetime import datetime, timedelta, timezone

import pytest

from nudge_engine.helpers import (
    days_between,
    decision_request_from_dict,
    format_age,
    from_db_time,
    parse_memory_type,
    to_db_time,
)
from nudge_engine.models import MemoryType, NudgePriority
from nudge_engine.text_matching import contains_any, is_near_duplicate, normalize_text

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class TestTimestamps:
    def test_db_time_round_trip(self):
        assert from_db_time(to_db_time(NOW)) == NOW

    def test_db_time_sorts_as_text(self):
        earlier = to_db_time(NOW - timedelta(microseconds=1))
        later = to_db_time(NOW + timedelta(days=400))
        assert earlier < to_db_time(NOW) < later

    def test_aware_times_normalized_to_utc(self):
        plus_two = timezone(timedelta(hours=2))
        assert to_db_time(datetime(2026, 3, 10, 14, 0, tzinfo=plus_two)) == to_db_time(NOW)

    def test_from_db_time_empty(self):
        assert from_db_time(None) is None
        assert from_db_time("") is None

    def test_days_between(self):
        assert days_between(NOW, NOW + timedelta(hours=36)) == pytest.approx(1.5)

    @pytest.mark.parametrize(
        "delta,expected",
        [
            (timedelta(minutes=5), "just now"),
            (timedelta(hours=3), "3 hours"),
            (timedelta(days=1), "1 day"),
            (timedelta(days=15), "2 weeks"),
            (timedelta(days=65), "2 months"),
            (timedelta(days=400), "1 year"),
        ],
    )
    def test_format_age(self, delta, expected):
        assert format_age(NOW - delta, now=NOW) == expected


class TestParsing:
    def test_parse_memory_type(self):
        assert parse_memory_type("preferred_time") == MemoryType.PREFERRED_TIME
        assert parse_memory_type("nope") is None

    def test_decision_request_minimal(self):
        request = decision_request_from_dict(
            {"user_id": "u1", "protocol": {"id": "nsdr", "name": "NSDR"}}
        )
        assert request.protocol.id == "nsdr"
        assert request.nudge_priority == NudgePriority.STANDARD
        assert request.day_state is None
        assert request.preferences.timezone is None

    def test_decision_request_full(self):
        request = decision_request_from_dict(
            {
                "user_id": "u1",
                "protocol": {"id": "nsdr", "name": "NSDR", "citations": ["doi:1"]},
                "primary_goal": "better_sleep",
                "module_id": "sleep_optimization",
                "nudge_priority": "adaptive",
                "preferences": {"timezone": "Europe/London", "quiet_hours_start": "23:00"},
                "day_state": {
                    "nudges_delivered_today": 1,
                    "last_nudge_delivered_at": "2026-03-10T09:30:00Z",
                    "current_streak": 9,
                },
                "other_protocols": [{"id": "cold", "name": "Cold Plunge"}],
                "is_morning_anchor": True,
            }
        )
        assert request.nudge_priority == NudgePriority.ADAPTIVE
        assert request.preferences.quiet_hours_start == "23:00"
        assert request.day_state.last_nudge_delivered_at == NOW - timedelta(hours=2, minutes=30)
        assert request.day_state.current_streak == 9
        assert request.other_protocols[0].name == "Cold Plunge"
        assert request.protocol.citations == ["doi:1"]
        assert request.is_morning_anchor is True

    def test_non_string_timezone_dropped(self):
        request = decision_request_from_dict(
            {"user_id": "u1", "protocol": {"id": "x"}, "preferences": {"timezone": 5}}
        )
        assert request.preferences.timezone is None

    def test_unknown_priority_is_standard(self):
        request = decision_request_from_dict(
            {"user_id": "u1", "protocol": {"id": "x"}, "nudge_priority": "urgent"}
        )
        assert request.nudge_priority == NudgePriority.STANDARD

    def test_missing_protocol_raises(self):
        with pytest.raises(KeyError):
            decision_request_from_dict({"user_id": "u1"})


class TestTextMatching:
    def test_normalize(self):
        assert normalize_text("  Morning\t\tLight ") == "morning light"
        assert normalize_text("Morning  Light", case_sensitive=True) == "Morning Light"

    def test_prefix_match(self):
        existing = "Prefers breathing exercises over meditation apps"
        assert is_near_duplicate(existing, "prefers breathing exercises")
        assert not is_near_duplicate(existing, "prefers cold exposure")

    def test_prefix_length_limits_comparison(self):
        existing = "Morning light exposure within an hour of waking"
        candidate = "Morning light exposure, but only on weekends"
        assert not is_near_duplicate(existing, candidate)
        assert is_near_duplicate(existing, candidate, prefix_length=22)

    def test_empty_candidate_never_matches(self):
        assert not is_near_duplicate("anything", "   ")

    def test_contains_any(self):
        assert contains_any("Evening NSDR session", ["nsdr"])
        assert not contains_any("Morning walk", ("sleep", "nsdr"))
