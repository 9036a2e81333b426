"""Multi-factor confidence scoring for nudge recommendations.

Each factor is scored independently in [0, 1], then combined with fixed
weights into an overall confidence. Scores below 0.4 mark the nudge for
suppression.
"""

from __future__ import annotations

import math

import numpy as np

from nudge_engine.models import (
    ConfidenceFactors,
    ConfidenceScore,
    MemoryType,
    NudgeContext,
    PrimaryGoal,
    TimeOfDay,
)
from nudge_engine.text_matching import contains_any

# Factor weights - must sum to 1.0
CONFIDENCE_WEIGHTS: dict[str, float] = {
    "protocol_fit": 0.25,
    "memory_support": 0.25,
    "timing_fit": 0.20,
    "conflict_risk": 0.15,
    "evidence_strength": 0.15,
}

FACTOR_NAMES = tuple(CONFIDENCE_WEIGHTS)
_WEIGHT_VECTOR = np.array([CONFIDENCE_WEIGHTS[name] for name in FACTOR_NAMES], dtype=np.float64)

EVIDENCE_SCORES: dict[str, float] = {
    "Very High": 1.0,
    "High": 0.8,
    "Moderate": 0.6,
    "Emerging": 0.4,
}
DEFAULT_EVIDENCE_LEVEL = "High"

CONFIDENCE_SUPPRESSION_THRESHOLD = 0.4

# Memory count at which reasoning names the memories explicitly
HIGH_MEMORY_COUNT = 3

GOAL_MODULE_MAPPING: dict[PrimaryGoal, list[str]] = {
    PrimaryGoal.BETTER_SLEEP: ["sleep_optimization", "recovery", "stress_management"],
    PrimaryGoal.MORE_ENERGY: ["energy_optimization", "morning_routine", "performance"],
    PrimaryGoal.SHARPER_FOCUS: ["cognitive_performance", "focus_optimization", "performance"],
    PrimaryGoal.FASTER_RECOVERY: ["recovery", "stress_management", "sleep_optimization"],
}

GOAL_KEYWORDS: dict[PrimaryGoal, list[str]] = {
    PrimaryGoal.BETTER_SLEEP: ["sleep", "evening", "recovery", "melatonin", "light", "nsdr"],
    PrimaryGoal.MORE_ENERGY: ["morning", "energy", "caffeine", "light", "exercise", "hydration"],
    PrimaryGoal.SHARPER_FOCUS: ["focus", "cognitive", "attention", "caffeine", "nsdr"],
    PrimaryGoal.FASTER_RECOVERY: ["recovery", "nsdr", "breathing", "cold", "hrv", "sleep"],
}

CATEGORY_TIME_MAPPING: dict[str, list[TimeOfDay]] = {
    "Foundation": [TimeOfDay.MORNING, TimeOfDay.EVENING],
    "Performance": [TimeOfDay.MORNING, TimeOfDay.AFTERNOON],
    "Recovery": [TimeOfDay.AFTERNOON, TimeOfDay.EVENING, TimeOfDay.NIGHT],
    "Optimization": [TimeOfDay.MORNING, TimeOfDay.AFTERNOON, TimeOfDay.EVENING],
    "Meta": [TimeOfDay.MORNING, TimeOfDay.EVENING],
}
DEFAULT_CATEGORY = "Optimization"

_FACTOR_LABELS = {
    "protocol_fit": "goal alignment",
    "memory_support": "past feedback",
    "timing_fit": "timing",
    "conflict_risk": "low conflict risk",
    "evidence_strength": "scientific evidence",
}

# (constraint cues that must all appear, protocol name cue, penalty)
_CONSTRAINT_CONFLICTS = (
    (("no gym",), "gym", 0.4),
    (("cold", "can't"), "cold", 0.4),
    (("no caffeine",), "caffeine", 0.4),
    (("no supplement",), "supplement", 0.3),
)


def _parse_goal(goal: PrimaryGoal | str) -> PrimaryGoal | None:
    try:
        return PrimaryGoal(goal)
    except ValueError:
        return None


def get_time_of_day(hour: int) -> TimeOfDay:
    """Bucket a 24h local hour into a time of day."""
    if 5 <= hour < 12:
        return TimeOfDay.MORNING
    if 12 <= hour < 17:
        return TimeOfDay.AFTERNOON
    if 17 <= hour < 21:
        return TimeOfDay.EVENING
    return TimeOfDay.NIGHT


def calculate_protocol_fit(context: NudgeContext) -> float:
    """How well the protocol matches the user's primary goal.

    1.0 when the current module is optimal for the goal, 0.7 when protocol
    text mentions a goal keyword, 0.3 otherwise.
    """
    goal = _parse_goal(context.primary_goal)
    if goal is None:
        return 0.3

    if context.module_id in GOAL_MODULE_MAPPING[goal]:
        return 1.0

    protocol = context.protocol
    text = " ".join(
        part.lower() for part in (protocol.name, protocol.benefits, protocol.description) if part
    )
    if contains_any(text, GOAL_KEYWORDS[goal]):
        return 0.7
    return 0.3


def calculate_memory_support(context: NudgeContext) -> float:
    """Net sentiment of retrieved memories towards this protocol.

    Each memory contributes confidence x relevance, doubled when it is about
    this protocol, to either a positive or a negative tally depending on its
    type and wording. The net is normalized into [0.1, 0.9]; 0.5 is neutral.
    """
    memories = context.memories
    if not memories:
        return 0.5

    protocol = context.protocol
    protocol_name = (protocol.name or "").lower()
    positive = 0.0
    negative = 0.0
    total_weight = 0.0

    for memory in memories:
        relevance = memory.relevance_score if memory.relevance_score is not None else 1.0
        weight = memory.confidence * relevance
        total_weight += weight
        content = memory.content.lower()

        is_protocol_related = (
            memory.source_protocol_id == protocol.id
            or protocol.id.lower() in content
            or (bool(protocol_name) and protocol_name in content)
        )
        multiplier = 2.0 if is_protocol_related else 1.0

        if memory.memory_type == MemoryType.PROTOCOL_EFFECTIVENESS:
            if "high effectiveness" in content or "works well" in content:
                positive += weight * multiplier * 1.5
            elif "low effectiveness" in content or "not effective" in content:
                negative += weight * multiplier * 1.5
            else:
                positive += weight * multiplier * 0.5
        elif memory.memory_type == MemoryType.NUDGE_FEEDBACK:
            if "completed" in content:
                positive += weight * multiplier
            elif "dismissed" in content:
                negative += weight * multiplier * 1.2
            elif "snoozed" in content:
                negative += weight * multiplier * 0.3
        elif memory.memory_type == MemoryType.STATED_PREFERENCE:
            # Negative cues first: "dislike" contains "like"
            if contains_any(content, ("hate", "dislike", "avoid")):
                negative += weight * multiplier * 2.0
            elif contains_any(content, ("like", "prefer", "love")):
                positive += weight * multiplier * 1.5
        elif memory.memory_type == MemoryType.PREFERENCE_CONSTRAINT:
            if is_protocol_related:
                negative += weight * 3.0
        elif memory.memory_type == MemoryType.PREFERRED_TIME:
            positive += weight * 0.3
        elif memory.memory_type == MemoryType.PATTERN_DETECTED:
            positive += weight * 0.2

    if total_weight == 0:
        return 0.5

    net = (positive - negative) / (total_weight + 1)
    return max(0.1, min(0.9, 0.5 + net * 0.4))


def calculate_timing_fit(context: NudgeContext) -> float:
    """Whether now is a good time for this protocol.

    Combines the category-to-time-of-day table, timing cues in the protocol
    name and, when a recovery score is known, recovery-aware adjustments.
    """
    protocol = context.protocol
    time_of_day = context.time_of_day
    category = protocol.category or DEFAULT_CATEGORY
    name = (protocol.name or "").lower()
    score = 0.5

    optimal_times = CATEGORY_TIME_MAPPING.get(
        category, [TimeOfDay.MORNING, TimeOfDay.AFTERNOON, TimeOfDay.EVENING]
    )
    score += 0.25 if time_of_day in optimal_times else -0.15

    if time_of_day == TimeOfDay.MORNING:
        if contains_any(name, ("morning", "light", "caffeine")):
            score += 0.2
        if contains_any(name, ("evening", "sleep")):
            score -= 0.2
    elif time_of_day in (TimeOfDay.EVENING, TimeOfDay.NIGHT):
        if contains_any(name, ("evening", "sleep", "nsdr")):
            score += 0.2
        if contains_any(name, ("morning", "caffeine")):
            score -= 0.3

    if context.recovery_score is not None:
        is_recovery_protocol = category == "Recovery" or contains_any(
            name, ("nsdr", "breathing", "recovery")
        )
        if context.recovery_score < 40:
            if is_recovery_protocol:
                score += 0.15
            if category == "Performance" and "fitness" in name:
                score -= 0.2
        elif context.recovery_score > 70 and category == "Performance":
            score += 0.1

    return max(0.0, min(1.0, score))


def calculate_conflict_risk(context: NudgeContext) -> float:
    """Inverse conflict risk: 1.0 means nothing conflicts, floor 0.1.

    Penalizes user constraints that rule the protocol out and overlap with
    other protocols recommended in the same batch.
    """
    protocol = context.protocol
    name = (protocol.name or "").lower()
    penalty = 0.0

    for memory in context.memories:
        if memory.memory_type != MemoryType.PREFERENCE_CONSTRAINT:
            continue
        content = memory.content.lower()
        for cues, protocol_cue, cost in _CONSTRAINT_CONFLICTS:
            if all(cue in content for cue in cues) and protocol_cue in name:
                penalty += cost

    for other in context.other_protocols:
        if other.id == protocol.id:
            continue
        if (protocol.category or "") == (other.category or ""):
            penalty += 0.1

        other_name = (other.name or "").lower()
        if ("caffeine" in name and "sleep" in other_name) or (
            "sleep" in name and "caffeine" in other_name
        ):
            penalty += 0.3
        if ("cold" in name and "fitness" in other_name) or (
            "fitness" in name and "cold" in other_name
        ):
            penalty += 0.15

    return max(0.1, 1.0 - penalty)


def calculate_evidence_strength(context: NudgeContext) -> float:
    """Map the protocol's evidence level to a score; unknown levels count as High."""
    level = context.protocol.evidence_level
    if level in EVIDENCE_SCORES:
        return EVIDENCE_SCORES[level]
    return EVIDENCE_SCORES[DEFAULT_EVIDENCE_LEVEL]


def combine_factors(factors: ConfidenceFactors) -> float:
    """Weighted sum of the factors, clamped to [0, 1] and rounded half up to 2 places."""
    values = np.array([getattr(factors, name) for name in FACTOR_NAMES], dtype=np.float64)
    overall = float(np.clip(np.dot(values, _WEIGHT_VECTOR), 0.0, 1.0))
    return math.floor(overall * 100 + 0.5) / 100


def dominant_factor(factors: ConfidenceFactors) -> str:
    """Name of the factor contributing the most weighted score."""
    contributions = np.array(
        [getattr(factors, name) for name in FACTOR_NAMES], dtype=np.float64
    ) * _WEIGHT_VECTOR
    return FACTOR_NAMES[int(np.argmax(contributions))]


def generate_reasoning(
    factors: ConfidenceFactors, overall: float, context: NudgeContext
) -> str:
    """Build a human-readable explanation of a confidence score."""
    percent = f"{overall * 100:.0f}%"
    if overall >= 0.7:
        parts = [f"High confidence ({percent})."]
    elif overall >= 0.5:
        parts = [f"Moderate confidence ({percent})."]
    elif overall >= CONFIDENCE_SUPPRESSION_THRESHOLD:
        parts = [f"Low confidence ({percent})."]
    else:
        parts = [f"Below threshold - suppressed ({percent})."]

    parts.append(f"Primary driver: {_FACTOR_LABELS[dominant_factor(factors)]}.")

    descriptions = []
    if factors.protocol_fit >= 0.8:
        descriptions.append("strong goal alignment")
    elif factors.protocol_fit < 0.4:
        descriptions.append("weak goal alignment")
    if factors.memory_support >= 0.7:
        descriptions.append("positive past feedback")
    elif factors.memory_support < 0.4:
        descriptions.append("negative past feedback")
    if factors.timing_fit >= 0.7:
        descriptions.append("optimal timing")
    elif factors.timing_fit < 0.4:
        descriptions.append("suboptimal timing")
    if factors.conflict_risk < 0.5:
        descriptions.append("potential conflicts")
    if factors.evidence_strength >= 0.9:
        descriptions.append("very high evidence")
    if descriptions:
        parts.append(f"Factors: {', '.join(descriptions)}.")

    if context.protocol.name:
        parts.append(f"Protocol: {context.protocol.name}.")

    if len(context.memories) >= HIGH_MEMORY_COUNT:
        parts.append(f"Based on {len(context.memories)} relevant memories.")

    return " ".join(parts)


def calculate_confidence(context: NudgeContext) -> ConfidenceScore:
    """Score a candidate protocol for one user at one moment.

    Deterministic: identical contexts produce identical scores.
    """
    factors = ConfidenceFactors(
        protocol_fit=calculate_protocol_fit(context),
        memory_support=calculate_memory_support(context),
        timing_fit=calculate_timing_fit(context),
        conflict_risk=calculate_conflict_risk(context),
        evidence_strength=calculate_evidence_strength(context),
    )
    overall = combine_factors(factors)
    return ConfidenceScore(
        overall=overall,
        factors=factors,
        should_suppress=overall < CONFIDENCE_SUPPRESSION_THRESHOLD,
        reasoning=generate_reasoning(factors, overall, context),
    )


def get_factor_breakdown(
    score: ConfidenceScore | ConfidenceFactors,
) -> dict[str, dict[str, float]]:
    """Per-factor score, weight and weighted contribution, for audit."""
    factors = (score.factors if isinstance(score, ConfidenceScore) else score).as_dict()
    return {
        name: {
            "score": factors[name],
            "weight": weight,
            "contribution": round(factors[name] * weight, 4),
        }
        for name, weight in CONFIDENCE_WEIGHTS.items()
    }
