"""Data models for memories, confidence scoring and suppression decisions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable


class MemoryType(str, Enum):
    """Types of user memories."""

    NUDGE_FEEDBACK = "nudge_feedback"  # How the user responds to nudges
    PROTOCOL_EFFECTIVENESS = "protocol_effectiveness"  # Which protocols work for the user
    PREFERRED_TIME = "preferred_time"  # When the user prefers certain activities
    STATED_PREFERENCE = "stated_preference"  # Explicit preferences ("I hate cold exposure")
    PATTERN_DETECTED = "pattern_detected"  # Inferred behavioral patterns
    PREFERENCE_CONSTRAINT = "preference_constraint"  # Things the user can't do ("no gym")


class TimeOfDay(str, Enum):
    """Time of day buckets used for timing fit and preferred-time matching."""

    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    NIGHT = "night"


class NudgePriority(str, Enum):
    """Nudge priority levels that determine override behavior."""

    CRITICAL = "CRITICAL"
    ADAPTIVE = "ADAPTIVE"
    STANDARD = "STANDARD"


class PrimaryGoal(str, Enum):
    """User's primary wellness goal (from onboarding)."""

    BETTER_SLEEP = "better_sleep"
    MORE_ENERGY = "more_energy"
    SHARPER_FOCUS = "sharper_focus"
    FASTER_RECOVERY = "faster_recovery"


class NudgeFeedback(str, Enum):
    """User response to a delivered nudge."""

    COMPLETED = "completed"
    DISMISSED = "dismissed"
    SNOOZED = "snoozed"


class Effectiveness(str, Enum):
    """Observed effectiveness of a protocol for a user."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ========== Memory configuration ==========

MAX_MEMORIES_PER_USER = 150
MIN_CONFIDENCE_THRESHOLD = 0.1
DEFAULT_CONFIDENCE = 0.5
DEFAULT_DECAY_RATE = 0.05
MIN_DECAY_RATE = 0.01
MAX_DECAY_RATE = 0.1
HIGH_EVIDENCE_DECAY_REDUCTION = 0.5
HIGH_EVIDENCE_THRESHOLD = 5
MAX_REINFORCED_CONFIDENCE = 0.95
REINFORCEMENT_RATE = 0.1

# Lower = higher priority when relevance scores tie
MEMORY_TYPE_PRIORITY: dict[MemoryType, int] = {
    MemoryType.STATED_PREFERENCE: 1,
    MemoryType.PREFERENCE_CONSTRAINT: 2,
    MemoryType.PROTOCOL_EFFECTIVENESS: 3,
    MemoryType.PREFERRED_TIME: 4,
    MemoryType.NUDGE_FEEDBACK: 5,
    MemoryType.PATTERN_DETECTED: 6,
}

# None means the memory never expires on its own
DEFAULT_EXPIRATION_DAYS: dict[MemoryType, int | None] = {
    MemoryType.STATED_PREFERENCE: None,
    MemoryType.PREFERENCE_CONSTRAINT: None,
    MemoryType.PROTOCOL_EFFECTIVENESS: 90,
    MemoryType.PREFERRED_TIME: 60,
    MemoryType.NUDGE_FEEDBACK: 30,
    MemoryType.PATTERN_DETECTED: 45,
}


@dataclass
class Memory:
    """A durable, decaying belief about a user."""

    id: int
    user_id: str
    memory_type: MemoryType
    content: str
    confidence: float
    evidence_count: int
    decay_rate: float
    created_at: datetime
    last_used_at: datetime
    last_decayed_at: datetime
    context: str | None = None
    expires_at: datetime | None = None
    source_nudge_id: str | None = None
    source_protocol_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    # Populated during retrieval
    relevance_score: float | None = None


@dataclass
class MemoryCreateInput:
    """Input for creating (or reinforcing) a memory."""

    user_id: str
    memory_type: MemoryType
    content: str
    context: str | None = None
    confidence: float | None = None
    decay_rate: float | None = None
    source_nudge_id: str | None = None
    source_protocol_id: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class MemoryUpdateInput:
    """Partial update of an existing memory. None fields are left unchanged."""

    content: str | None = None
    context: str | None = None
    confidence: float | None = None
    evidence_count: int | None = None
    decay_rate: float | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class RetrievalContext:
    """Context for retrieving memories relevant to a decision."""

    protocol_id: str | None = None
    module_id: str | None = None
    memory_types: list[MemoryType] | None = None
    min_confidence: float | None = None
    time_of_day: TimeOfDay | None = None


@dataclass
class MemoryStats:
    """Per-user memory statistics."""

    total: int
    by_type: dict[str, int]
    avg_confidence: float
    oldest_memory: datetime | None
    newest_memory: datetime | None


# ========== Confidence scoring ==========


@dataclass
class ProtocolCandidate:
    """A candidate protocol produced by the external protocol search."""

    id: str
    name: str
    category: str | None = None
    tier: str | None = None
    description: str | None = None
    benefits: str | None = None
    constraints: str | None = None
    citations: list[str] = field(default_factory=list)
    evidence_level: str | None = None
    relevance_score: float = 0.0


@dataclass
class ConfidenceFactors:
    """The five independent 0-1 signals combined into overall confidence."""

    protocol_fit: float
    memory_support: float
    timing_fit: float
    conflict_risk: float  # Inverted: high = low conflict
    evidence_strength: float

    def as_dict(self) -> dict[str, float]:
        return {
            "protocol_fit": self.protocol_fit,
            "memory_support": self.memory_support,
            "timing_fit": self.timing_fit,
            "conflict_risk": self.conflict_risk,
            "evidence_strength": self.evidence_strength,
        }


@dataclass
class ConfidenceScore:
    """Overall confidence with factor breakdown and reasoning."""

    overall: float
    factors: ConfidenceFactors
    should_suppress: bool
    reasoning: str


@dataclass
class NudgeContext:
    """Everything the confidence scorer needs for one candidate protocol."""

    user_id: str
    primary_goal: PrimaryGoal | str
    module_id: str
    time_of_day: TimeOfDay
    protocol: ProtocolCandidate
    memories: list[Memory] = field(default_factory=list)
    other_protocols: list[ProtocolCandidate] = field(default_factory=list)
    recovery_score: float | None = None
    hrv_baseline_deviation: float | None = None


# ========== Suppression ==========


@dataclass(frozen=True)
class SuppressionContext:
    """Immutable snapshot of user and day state for one suppression evaluation."""

    nudges_delivered_today: int
    dismissals_today: int
    last_nudge_delivered_at: datetime | None
    meeting_hours_today: float
    user_local_hour: int
    quiet_hours_start: int
    quiet_hours_end: int
    nudge_priority: NudgePriority
    confidence_score: float
    now: datetime
    timezone: str | None = None
    recovery_score: float = 100
    is_morning_anchor: bool = False
    current_streak: int = 0
    mvd_active: bool = False
    is_mvd_approved_nudge: bool = False


@dataclass(frozen=True)
class SuppressionCheckResult:
    """Result of a single rule check."""

    suppress: bool
    reason: str | None = None


@dataclass(frozen=True)
class SuppressionRule:
    """A prioritized predicate that can veto delivery unless overridden."""

    id: str
    name: str
    priority: int
    can_be_overridden: bool
    override_by: frozenset[NudgePriority]
    check: Callable[[SuppressionContext], SuppressionCheckResult]


@dataclass
class SuppressionResult:
    """Delivery verdict with audit trail."""

    should_deliver: bool
    rules_checked: list[str]
    suppressed_by: str | None = None
    reason: str | None = None
    was_overridden: bool = False
    overridden_rule: str | None = None
    failed_rules: list[str] = field(default_factory=list)


# ========== Orchestration ==========


@dataclass
class DayState:
    """Per-day delivery state supplied by scheduling, wearable and calendar components."""

    nudges_delivered_today: int = 0
    dismissals_today: int = 0
    last_nudge_delivered_at: datetime | None = None
    meeting_hours_today: float = 0.0
    recovery_score: float | None = None
    hrv_baseline_deviation: float | None = None
    current_streak: int = 0
    mvd_active: bool = False


@dataclass
class UserPreferences:
    """User settings relevant to delivery. Quiet hours are 'HH:MM' strings or hours."""

    timezone: str | None = None
    quiet_hours_start: str | int | None = None
    quiet_hours_end: str | int | None = None


@dataclass
class DecisionRequest:
    """Input to one nudge decision."""

    user_id: str
    protocol: ProtocolCandidate
    primary_goal: PrimaryGoal | str
    module_id: str
    nudge_priority: NudgePriority = NudgePriority.STANDARD
    preferences: UserPreferences = field(default_factory=UserPreferences)
    day_state: DayState | None = None
    other_protocols: list[ProtocolCandidate] = field(default_factory=list)
    is_morning_anchor: bool = False
    is_mvd_approved_nudge: bool = False


@dataclass
class DecisionRecord:
    """The externally visible outcome of one decision; the unit of audit."""

    user_id: str
    protocol_id: str
    should_deliver: bool
    confidence: float
    factors: ConfidenceFactors | None
    reasoning: str
    rules_checked: list[str]
    evaluated_at: datetime
    suppressed_by: str | None = None
    reason: str | None = None
    was_overridden: bool = False
    overridden_rule: str | None = None
    nudge_priority: NudgePriority = NudgePriority.STANDARD
    memory_ids: list[int] = field(default_factory=list)
    id: int | None = None
