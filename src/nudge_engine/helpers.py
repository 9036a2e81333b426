"""Helper functions for timestamps, formatting and request parsing."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from nudge_engine.models import (
    DayState,
    DecisionRequest,
    MemoryType,
    NudgePriority,
    ProtocolCandidate,
    UserPreferences,
)

_DB_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_time(value: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC string (sortable as text)."""
    return ensure_utc(value).strftime(_DB_TIME_FORMAT)


def from_db_time(value: str | None) -> datetime | None:
    """Parse a stored timestamp back into an aware datetime."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def days_between(earlier: datetime, later: datetime) -> float:
    """Fractional days from earlier to later."""
    return (ensure_utc(later) - ensure_utc(earlier)).total_seconds() / 86400


def parse_memory_type(memory_type: str) -> MemoryType | None:
    """Parse memory type string, returning None if invalid."""
    try:
        return MemoryType(memory_type)
    except ValueError:
        return None


def format_age(created_at: datetime, now: datetime | None = None) -> str:
    """Format memory age as human-readable string."""
    delta = ensure_utc(now or utc_now()) - ensure_utc(created_at)

    if delta.days >= 365:
        years = delta.days // 365
        return f"{years} year{'s' if years > 1 else ''}"
    elif delta.days >= 30:
        months = delta.days // 30
        return f"{months} month{'s' if months > 1 else ''}"
    elif delta.days >= 7:
        weeks = delta.days // 7
        return f"{weeks} week{'s' if weeks > 1 else ''}"
    elif delta.days >= 1:
        return f"{delta.days} day{'s' if delta.days > 1 else ''}"
    elif delta.seconds >= 3600:
        hours = delta.seconds // 3600
        return f"{hours} hour{'s' if hours > 1 else ''}"
    else:
        return "just now"


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def _parse_priority(value: Any) -> NudgePriority:
    try:
        return NudgePriority(str(value).upper())
    except ValueError:
        return NudgePriority.STANDARD


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def protocol_from_dict(data: dict[str, Any]) -> ProtocolCandidate:
    """Build a ProtocolCandidate from a JSON-style dict."""
    return ProtocolCandidate(
        id=str(data["id"]),
        name=data.get("name", ""),
        category=data.get("category"),
        tier=data.get("tier"),
        description=data.get("description"),
        benefits=data.get("benefits"),
        constraints=data.get("constraints"),
        citations=list(data.get("citations") or []),
        evidence_level=data.get("evidence_level"),
        relevance_score=float(data.get("relevance_score") or 0.0),
    )


def decision_request_from_dict(data: dict[str, Any]) -> DecisionRequest:
    """Build a DecisionRequest from a JSON-style dict.

    Missing optional sections fall back to their documented defaults; an
    unknown nudge priority is treated as STANDARD.

    Raises:
        KeyError: If user_id or protocol is missing.
    """
    prefs = data.get("preferences") or {}
    day = data.get("day_state")
    day_state = None
    if day is not None:
        day_state = DayState(
            nudges_delivered_today=int(day.get("nudges_delivered_today", 0)),
            dismissals_today=int(day.get("dismissals_today", 0)),
            last_nudge_delivered_at=_parse_datetime(day.get("last_nudge_delivered_at")),
            meeting_hours_today=float(day.get("meeting_hours_today", 0.0)),
            recovery_score=day.get("recovery_score"),
            hrv_baseline_deviation=day.get("hrv_baseline_deviation"),
            current_streak=int(day.get("current_streak", 0)),
            mvd_active=bool(day.get("mvd_active", False)),
        )

    return DecisionRequest(
        user_id=str(data["user_id"]),
        protocol=protocol_from_dict(data["protocol"]),
        primary_goal=data.get("primary_goal", ""),
        module_id=data.get("module_id", ""),
        nudge_priority=_parse_priority(data.get("nudge_priority", "STANDARD")),
        preferences=UserPreferences(
            timezone=_optional_str(prefs.get("timezone")),
            quiet_hours_start=prefs.get("quiet_hours_start"),
            quiet_hours_end=prefs.get("quiet_hours_end"),
        ),
        day_state=day_state,
        other_protocols=[protocol_from_dict(p) for p in data.get("other_protocols") or []],
        is_morning_anchor=bool(data.get("is_morning_anchor", False)),
        is_mvd_approved_nudge=bool(data.get("is_mvd_approved_nudge", False)),
    )
