"""Suppression rules and engine for nudge delivery.

Rules are evaluated in ascending priority. A rule that wants to suppress
either ends evaluation, or, when the nudge's priority may override it, is
recorded as overridden and evaluation continues with the next rule.
"""

from __future__ import annotations

import math
import re
from datetime import datetime
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from nudge_engine.helpers import ensure_utc, utc_now
from nudge_engine.logging import get_logger
from nudge_engine.models import (
    NudgePriority,
    SuppressionCheckResult,
    SuppressionContext,
    SuppressionResult,
    SuppressionRule,
)

log = get_logger("suppression")

DAILY_CAP = 5
COOLDOWN_MINUTES = 120
FATIGUE_THRESHOLD = 3
MEETING_HOURS_THRESHOLD = 2
DEFAULT_QUIET_START = 22
DEFAULT_QUIET_END = 6
LOW_RECOVERY_THRESHOLD = 30
DEFAULT_RECOVERY_SCORE = 100
STREAK_THRESHOLD = 7
LOW_CONFIDENCE_THRESHOLD = 0.4
MORNING_HOURS_START = 5
MORNING_HOURS_END = 10

_PASS = SuppressionCheckResult(suppress=False)
_QUIET_HOUR_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


def stable_hash(text: str) -> int:
    """Portable 32-bit polynomial string hash.

    h = h * 31 + code_unit, wrapped to a signed 32-bit integer after every
    step; the absolute value of the final result is returned. Identical
    across runs, processes and languages, unlike the built-in ``hash``.
    """
    value = 0
    for char in text:
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return abs(value)


# ========== Rule checks ==========


def check_daily_cap(context: SuppressionContext) -> SuppressionCheckResult:
    if context.nudges_delivered_today >= DAILY_CAP:
        return SuppressionCheckResult(True, f"Daily cap ({DAILY_CAP}) reached")
    return _PASS


def check_quiet_hours(context: SuppressionContext) -> SuppressionCheckResult:
    hour = context.user_local_hour
    start = context.quiet_hours_start
    end = context.quiet_hours_end

    if start > end:
        # Window wraps midnight, e.g. 22:00-06:00
        in_quiet_hours = hour >= start or hour < end
    else:
        in_quiet_hours = start <= hour < end

    if in_quiet_hours:
        return SuppressionCheckResult(True, f"Quiet hours ({start}:00-{end}:00)")
    return _PASS


def check_cooldown(context: SuppressionContext) -> SuppressionCheckResult:
    if context.last_nudge_delivered_at is None:
        return _PASS

    elapsed = ensure_utc(context.now) - ensure_utc(context.last_nudge_delivered_at)
    elapsed_minutes = elapsed.total_seconds() / 60
    if elapsed_minutes < COOLDOWN_MINUTES:
        remaining = math.ceil(COOLDOWN_MINUTES - elapsed_minutes)
        return SuppressionCheckResult(
            True, f"2-hour cooldown not elapsed ({remaining} min remaining)"
        )
    return _PASS


def check_fatigue(context: SuppressionContext) -> SuppressionCheckResult:
    if context.dismissals_today >= FATIGUE_THRESHOLD:
        return SuppressionCheckResult(
            True, f"{context.dismissals_today}+ dismissals today - pausing until tomorrow"
        )
    return _PASS


def check_meeting_awareness(context: SuppressionContext) -> SuppressionCheckResult:
    if (
        context.meeting_hours_today >= MEETING_HOURS_THRESHOLD
        and context.nudge_priority == NudgePriority.STANDARD
    ):
        return SuppressionCheckResult(
            True,
            f"{context.meeting_hours_today:g}+ meeting hours - suppressing STANDARD nudge",
        )
    return _PASS


def check_low_recovery(context: SuppressionContext) -> SuppressionCheckResult:
    if context.recovery_score >= LOW_RECOVERY_THRESHOLD or context.is_morning_anchor:
        return _PASS
    if MORNING_HOURS_START <= context.user_local_hour < MORNING_HOURS_END:
        return _PASS
    return SuppressionCheckResult(
        True,
        f"Recovery {context.recovery_score:g}% (<{LOW_RECOVERY_THRESHOLD}%) - morning-only mode",
    )


def check_streak_respect(context: SuppressionContext) -> SuppressionCheckResult:
    if context.current_streak < STREAK_THRESHOLD:
        return _PASS

    # Half of long-streak days are suppressed; stable within a day for a given streak
    today = ensure_utc(context.now).date().isoformat()
    if stable_hash(f"{today}-{context.current_streak}") % 2 == 0:
        return SuppressionCheckResult(
            True,
            f"{context.current_streak}-day streak - reducing frequency (earned autonomy)",
        )
    return _PASS


def check_low_confidence(context: SuppressionContext) -> SuppressionCheckResult:
    if context.confidence_score < LOW_CONFIDENCE_THRESHOLD:
        return SuppressionCheckResult(
            True,
            f"Confidence {context.confidence_score * 100:.0f}% "
            f"(<{LOW_CONFIDENCE_THRESHOLD * 100:.0f}%) - below threshold",
        )
    return _PASS


def check_mvd_active(context: SuppressionContext) -> SuppressionCheckResult:
    if context.mvd_active and not context.is_mvd_approved_nudge:
        return SuppressionCheckResult(True, "MVD mode active - only essential nudges allowed")
    return _PASS


def _rule(
    rule_id: str,
    name: str,
    priority: int,
    check: Callable[[SuppressionContext], SuppressionCheckResult],
    override_by: tuple[NudgePriority, ...] = (),
) -> SuppressionRule:
    return SuppressionRule(
        id=rule_id,
        name=name,
        priority=priority,
        can_be_overridden=bool(override_by),
        override_by=frozenset(override_by),
        check=check,
    )


SUPPRESSION_RULES: tuple[SuppressionRule, ...] = tuple(
    sorted(
        (
            _rule("daily_cap", "Daily Cap", 1, check_daily_cap, (NudgePriority.CRITICAL,)),
            _rule("quiet_hours", "Quiet Hours", 2, check_quiet_hours),
            _rule("cooldown", "Cooldown Period", 3, check_cooldown, (NudgePriority.CRITICAL,)),
            _rule("fatigue_detection", "Fatigue Detection", 4, check_fatigue),
            _rule(
                "meeting_awareness",
                "Meeting Awareness",
                5,
                check_meeting_awareness,
                (NudgePriority.CRITICAL, NudgePriority.ADAPTIVE),
            ),
            _rule("low_recovery", "Low Recovery Mode", 6, check_low_recovery),
            _rule("streak_respect", "Streak Respect", 7, check_streak_respect),
            _rule("low_confidence", "Low Confidence Filter", 8, check_low_confidence),
            _rule("mvd_active", "MVD Active", 9, check_mvd_active),
        ),
        key=lambda rule: rule.priority,
    )
)


def get_rule_by_id(rule_id: str) -> SuppressionRule | None:
    """Look up a registered rule."""
    return next((rule for rule in SUPPRESSION_RULES if rule.id == rule_id), None)


# ========== Engine ==========


def evaluate_suppression(
    context: SuppressionContext,
    rules: tuple[SuppressionRule, ...] = SUPPRESSION_RULES,
) -> SuppressionResult:
    """Decide whether a nudge should be delivered.

    Args:
        context: Snapshot of user, day and nudge state.
        rules: Rule records in evaluation order.

    Returns:
        SuppressionResult with the verdict and the audit trail. A rule whose
        check raises is logged and treated as not suppressing.
    """
    rules_checked: list[str] = []
    failed_rules: list[str] = []
    was_overridden = False
    overridden_rule: str | None = None

    for rule in rules:
        rules_checked.append(rule.id)
        try:
            result = rule.check(context)
        except Exception:
            log.exception("Suppression rule {} failed; treating as pass", rule.id)
            failed_rules.append(rule.id)
            continue

        if not result.suppress:
            continue

        if rule.can_be_overridden and context.nudge_priority in rule.override_by:
            log.debug(
                "Rule {} overridden by {} nudge: {}",
                rule.id,
                context.nudge_priority.value,
                result.reason,
            )
            was_overridden = True
            overridden_rule = rule.id
            continue

        return SuppressionResult(
            should_deliver=False,
            rules_checked=rules_checked,
            suppressed_by=rule.id,
            reason=result.reason,
            was_overridden=was_overridden,
            overridden_rule=overridden_rule,
            failed_rules=failed_rules,
        )

    return SuppressionResult(
        should_deliver=True,
        rules_checked=rules_checked,
        was_overridden=was_overridden,
        overridden_rule=overridden_rule,
        failed_rules=failed_rules,
    )


# ========== Context building ==========


def get_user_local_hour(utc_dt: datetime, timezone: str | None = None) -> int:
    """Convert a UTC instant to the user's local hour (0-23).

    Missing, unknown or non-string zones fall back to UTC.
    """
    utc_dt = ensure_utc(utc_dt)
    if not timezone:
        return utc_dt.hour
    try:
        return utc_dt.astimezone(ZoneInfo(timezone)).hour
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        log.warning("Invalid timezone {}, falling back to UTC", timezone)
        return utc_dt.hour


def parse_quiet_hour(value: str | int | None) -> int | None:
    """Parse an 'HH:MM' string (or a bare hour) into an hour 0-23, None if invalid."""
    if value is None:
        return None
    if isinstance(value, int):
        return value if 0 <= value <= 23 else None
    if not isinstance(value, str):
        return None
    match = _QUIET_HOUR_PATTERN.match(value.strip())
    if not match:
        return None
    hour = int(match.group(1))
    return hour if 0 <= hour <= 23 else None


def build_suppression_context(
    *,
    nudge_priority: NudgePriority,
    confidence_score: float,
    user_local_hour: int,
    nudges_delivered_today: int = 0,
    last_nudge_delivered_at: datetime | None = None,
    dismissals_today: int = 0,
    meeting_hours_today: float = 0.0,
    quiet_hours_start: str | int | None = None,
    quiet_hours_end: str | int | None = None,
    timezone: str | None = None,
    recovery_score: float | None = None,
    is_morning_anchor: bool = False,
    current_streak: int = 0,
    mvd_active: bool = False,
    is_mvd_approved_nudge: bool = False,
    now: datetime | None = None,
) -> SuppressionContext:
    """Build the immutable snapshot evaluated by the rule chain.

    Defaults: quiet hours 22:00-06:00, recovery 100 (healthy), streak 0,
    flags off, ``now`` = current UTC time.
    """
    start = parse_quiet_hour(quiet_hours_start)
    end = parse_quiet_hour(quiet_hours_end)
    return SuppressionContext(
        nudges_delivered_today=nudges_delivered_today,
        dismissals_today=dismissals_today,
        last_nudge_delivered_at=last_nudge_delivered_at,
        meeting_hours_today=meeting_hours_today,
        user_local_hour=user_local_hour,
        quiet_hours_start=DEFAULT_QUIET_START if start is None else start,
        quiet_hours_end=DEFAULT_QUIET_END if end is None else end,
        nudge_priority=nudge_priority,
        confidence_score=confidence_score,
        now=ensure_utc(now) if now is not None else utc_now(),
        timezone=timezone,
        recovery_score=DEFAULT_RECOVERY_SCORE if recovery_score is None else recovery_score,
        is_morning_anchor=is_morning_anchor,
        current_streak=current_streak,
        mvd_active=mvd_active,
        is_mvd_approved_nudge=is_mvd_approved_nudge,
    )
