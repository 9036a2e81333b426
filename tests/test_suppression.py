"""Tests for suppression rules and the rule evaluation engine."""

from datetime import datetime, timedelta, timezone

import pytest

from nudge_engine.models import NudgePriority, SuppressionCheckResult, SuppressionRule
from nudge_engine.suppression import (
    SUPPRESSION_RULES,
    build_suppression_context,
    evaluate_suppression,
    get_rule_by_id,
    get_user_local_hour,
    parse_quiet_hour,
    stable_hash,
)

# 12:00 UTC on a Tuesday; outside default quiet hours
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

RULE_ORDER = [
    "daily_cap",
    "quiet_hours",
    "cooldown",
    "fatigue_detection",
    "meeting_awareness",
    "low_recovery",
    "streak_respect",
    "low_confidence",
    "mvd_active",
]


def make_context(**overrides):
    fields = {
        "nudge_priority": NudgePriority.STANDARD,
        "confidence_score": 0.75,
        "user_local_hour": 12,
        "now": NOW,
    }
    fields.update(overrides)
    return build_suppression_context(**fields)


class TestRuleTable:
    def test_rules_sorted_by_priority(self):
        assert [rule.id for rule in SUPPRESSION_RULES] == RULE_ORDER
        assert [rule.priority for rule in SUPPRESSION_RULES] == list(range(1, 10))

    def test_override_sets(self):
        overridable = {
            rule.id: rule.override_by for rule in SUPPRESSION_RULES if rule.can_be_overridden
        }
        assert overridable == {
            "daily_cap": frozenset({NudgePriority.CRITICAL}),
            "cooldown": frozenset({NudgePriority.CRITICAL}),
            "meeting_awareness": frozenset({NudgePriority.CRITICAL, NudgePriority.ADAPTIVE}),
        }

    def test_get_rule_by_id(self):
        assert get_rule_by_id("quiet_hours").name == "Quiet Hours"
        assert get_rule_by_id("no_such_rule") is None

    def test_every_check_returns_a_result(self):
        context = make_context()
        for rule in SUPPRESSION_RULES:
            result = rule.check(context)
            assert isinstance(result, SuppressionCheckResult)
            assert result.suppress is False


class TestEvaluateSuppression:
    """Tests for the rule evaluation fold."""

    def test_all_clear_checks_every_rule(self):
        result = evaluate_suppression(make_context())
        assert result.should_deliver is True
        assert result.rules_checked == RULE_ORDER
        assert result.suppressed_by is None
        assert result.was_overridden is False
        assert result.failed_rules == []

    def test_first_suppressing_rule_stops_evaluation(self):
        result = evaluate_suppression(make_context(nudges_delivered_today=5, dismissals_today=4))
        assert result.should_deliver is False
        assert result.suppressed_by == "daily_cap"
        assert result.reason == "Daily cap (5) reached"
        assert result.rules_checked == ["daily_cap"]

    def test_override_continues_evaluation(self):
        """An overridden rule is recorded and later rules still run."""
        result = evaluate_suppression(
            make_context(
                nudge_priority=NudgePriority.CRITICAL,
                nudges_delivered_today=6,
                dismissals_today=3,
            )
        )
        assert result.should_deliver is False
        assert result.suppressed_by == "fatigue_detection"
        assert result.was_overridden is True
        assert result.overridden_rule == "daily_cap"
        assert result.rules_checked == RULE_ORDER[:4]

    def test_last_override_is_reported(self):
        result = evaluate_suppression(
            make_context(
                nudge_priority=NudgePriority.CRITICAL,
                nudges_delivered_today=7,
                last_nudge_delivered_at=NOW - timedelta(minutes=10),
            )
        )
        assert result.should_deliver is True
        assert result.overridden_rule == "cooldown"

    def test_failing_rule_fails_open(self):
        def explode(context):
            raise RuntimeError("calendar unavailable")

        rules = (
            SuppressionRule("broken", "Broken", 1, False, frozenset(), explode),
            SuppressionRule(
                "never", "Never", 2, False, frozenset(), lambda c: SuppressionCheckResult(False)
            ),
        )
        result = evaluate_suppression(make_context(), rules)
        assert result.should_deliver is True
        assert result.failed_rules == ["broken"]
        assert result.rules_checked == ["broken", "never"]

    def test_meeting_scenario(self):
        """Standard nudge on a meeting-heavy day is held back."""
        result = evaluate_suppression(
            make_context(confidence_score=0.75, nudges_delivered_today=2, meeting_hours_today=3)
        )
        assert result.should_deliver is False
        assert result.suppressed_by == "meeting_awareness"

    def test_critical_over_cap_scenario(self):
        """Critical nudge goes out despite the daily cap."""
        result = evaluate_suppression(
            make_context(
                confidence_score=0.8,
                nudge_priority=NudgePriority.CRITICAL,
                nudges_delivered_today=6,
            )
        )
        assert result.should_deliver is True
        assert result.was_overridden is True
        assert result.overridden_rule == "daily_cap"
        assert len(result.rules_checked) == 9


class TestQuietHours:
    @pytest.mark.parametrize("hour,suppressed", [(23, True), (22, True), (5, True),
                                                 (6, False), (12, False), (21, False)])
    def test_default_window_wraps_midnight(self, hour, suppressed):
        result = evaluate_suppression(make_context(user_local_hour=hour, is_morning_anchor=True))
        assert (result.suppressed_by == "quiet_hours") is suppressed

    def test_reason(self):
        result = evaluate_suppression(make_context(user_local_hour=23))
        assert result.reason == "Quiet hours (22:00-6:00)"

    def test_daytime_window(self):
        inside = make_context(user_local_hour=14, quiet_hours_start="13:00",
                              quiet_hours_end="15:00")
        edge = make_context(user_local_hour=15, quiet_hours_start="13:00",
                            quiet_hours_end="15:00")
        assert evaluate_suppression(inside).suppressed_by == "quiet_hours"
        assert evaluate_suppression(edge).should_deliver is True

    def test_not_overridable(self):
        result = evaluate_suppression(
            make_context(user_local_hour=2, nudge_priority=NudgePriority.CRITICAL)
        )
        assert result.suppressed_by == "quiet_hours"


class TestCooldown:
    def test_minutes_remaining(self):
        result = evaluate_suppression(
            make_context(last_nudge_delivered_at=NOW - timedelta(minutes=90))
        )
        assert result.suppressed_by == "cooldown"
        assert result.reason == "2-hour cooldown not elapsed (30 min remaining)"

    def test_partial_minute_rounds_up(self):
        result = evaluate_suppression(
            make_context(last_nudge_delivered_at=NOW - timedelta(minutes=119, seconds=30))
        )
        assert result.reason == "2-hour cooldown not elapsed (1 min remaining)"

    def test_elapsed_exactly(self):
        result = evaluate_suppression(
            make_context(last_nudge_delivered_at=NOW - timedelta(hours=2))
        )
        assert result.should_deliver is True

    def test_critical_overrides(self):
        result = evaluate_suppression(
            make_context(
                last_nudge_delivered_at=NOW - timedelta(minutes=5),
                nudge_priority=NudgePriority.CRITICAL,
            )
        )
        assert result.should_deliver is True
        assert result.overridden_rule == "cooldown"


class TestFatigueAndMeetings:
    def test_fatigue(self):
        result = evaluate_suppression(
            make_context(dismissals_today=3, nudge_priority=NudgePriority.CRITICAL)
        )
        assert result.suppressed_by == "fatigue_detection"
        assert result.reason == "3+ dismissals today - pausing until tomorrow"

    def test_below_fatigue_threshold(self):
        assert evaluate_suppression(make_context(dismissals_today=2)).should_deliver is True

    def test_meeting_reason(self):
        result = evaluate_suppression(make_context(meeting_hours_today=3))
        assert result.reason == "3+ meeting hours - suppressing STANDARD nudge"

    def test_adaptive_overrides_meetings(self):
        result = evaluate_suppression(
            make_context(meeting_hours_today=4, nudge_priority=NudgePriority.ADAPTIVE)
        )
        assert result.should_deliver is True
        assert result.overridden_rule == "meeting_awareness"

    def test_light_meeting_day(self):
        assert evaluate_suppression(make_context(meeting_hours_today=1.5)).should_deliver


class TestLowRecovery:
    def test_afternoon_suppressed(self):
        result = evaluate_suppression(make_context(recovery_score=20))
        assert result.suppressed_by == "low_recovery"
        assert result.reason == "Recovery 20% (<30%) - morning-only mode"

    def test_morning_allowed(self):
        assert evaluate_suppression(
            make_context(recovery_score=20, user_local_hour=7)
        ).should_deliver

    def test_morning_anchor_allowed(self):
        assert evaluate_suppression(
            make_context(recovery_score=20, is_morning_anchor=True)
        ).should_deliver

    def test_threshold(self):
        assert evaluate_suppression(make_context(recovery_score=30)).should_deliver


class TestStreakRespect:
    """Streak suppression is a stable hash of (UTC date, streak)."""

    def test_stable_hash_values(self):
        assert stable_hash("") == 0
        assert stable_hash("a") == 97
        assert stable_hash("hello") == 99162322
        # Signed 32-bit result is negative; absolute value is returned
        assert stable_hash("2026-03-10-7") == 273441848

    def test_even_hash_suppresses(self):
        result = evaluate_suppression(make_context(current_streak=7))
        assert result.suppressed_by == "streak_respect"
        assert result.reason == "7-day streak - reducing frequency (earned autonomy)"

    def test_odd_hash_delivers(self):
        assert evaluate_suppression(make_context(current_streak=8)).should_deliver
        next_day = NOW + timedelta(days=1)
        assert evaluate_suppression(make_context(current_streak=7, now=next_day)).should_deliver

    def test_short_streak_ignored(self):
        assert evaluate_suppression(make_context(current_streak=6)).should_deliver

    def test_deterministic_within_day(self):
        morning = make_context(current_streak=10, now=NOW.replace(hour=1))
        evening = make_context(current_streak=10, now=NOW.replace(hour=23))
        assert evaluate_suppression(morning).suppressed_by == "streak_respect"
        assert evaluate_suppression(evening).suppressed_by == "streak_respect"


class TestLowConfidenceAndMvd:
    def test_just_below_threshold(self):
        result = evaluate_suppression(make_context(confidence_score=0.39))
        assert result.suppressed_by == "low_confidence"
        assert result.reason == "Confidence 39% (<40%) - below threshold"
        assert "40%" in result.reason

    def test_at_threshold(self):
        assert evaluate_suppression(make_context(confidence_score=0.40)).should_deliver

    def test_mvd_blocks_unapproved(self):
        result = evaluate_suppression(make_context(mvd_active=True))
        assert result.suppressed_by == "mvd_active"
        assert result.reason == "MVD mode active - only essential nudges allowed"

    def test_mvd_allows_approved(self):
        assert evaluate_suppression(
            make_context(mvd_active=True, is_mvd_approved_nudge=True)
        ).should_deliver


class TestContextBuilding:
    def test_defaults(self):
        context = build_suppression_context(
            nudge_priority=NudgePriority.STANDARD, confidence_score=0.5, user_local_hour=9
        )
        assert context.quiet_hours_start == 22
        assert context.quiet_hours_end == 6
        assert context.recovery_score == 100
        assert context.current_streak == 0
        assert context.mvd_active is False
        assert context.now.tzinfo is not None

    def test_invalid_quiet_hours_fall_back(self):
        context = make_context(quiet_hours_start="late", quiet_hours_end="25:00")
        assert (context.quiet_hours_start, context.quiet_hours_end) == (22, 6)

    def test_context_is_frozen(self):
        context = make_context()
        with pytest.raises(AttributeError):
            context.nudges_delivered_today = 3

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("22:00", 22),
            ("7:30", 7),
            (" 06:00 ", 6),
            ("24:00", None),
            ("noon", None),
            ("12", None),
            (None, None),
            (6, 6),
            (25, None),
            (6.5, None),
        ],
    )
    def test_parse_quiet_hour(self, value, expected):
        assert parse_quiet_hour(value) == expected


class TestUserLocalHour:
    def test_timezone_conversion(self):
        assert get_user_local_hour(NOW, "Asia/Tokyo") == 21

    def test_missing_timezone_is_utc(self):
        assert get_user_local_hour(NOW, None) == 12

    def test_invalid_timezone_falls_back_to_utc(self):
        assert get_user_local_hour(NOW, "Mars/Olympus_Mons") == 12

    def test_non_string_timezone_falls_back_to_utc(self):
        assert get_user_local_hour(NOW, 5) == 12

    def test_naive_datetime_treated_as_utc(self):
        assert get_user_local_hour(datetime(2026, 3, 10, 3, 0), "UTC") == 3
