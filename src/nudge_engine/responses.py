"""Pydantic response models for CLI JSON output."""

from datetime import datetime

from pydantic import BaseModel, Field

from nudge_engine.models import DecisionRecord, Memory, MemoryStats
from nudge_engine.scoring import get_factor_breakdown


class FactorBreakdown(BaseModel):
    """One confidence factor with its weight and weighted contribution."""

    name: str
    score: float
    weight: float
    contribution: float


class DecisionResponse(BaseModel):
    """A nudge decision with its audit trail."""

    id: int | None = None
    user_id: str
    protocol_id: str
    should_deliver: bool
    confidence: float
    factors: list[FactorBreakdown] = Field(default_factory=list)
    reasoning: str
    rules_checked: list[str]
    suppressed_by: str | None = None
    reason: str | None = None
    was_overridden: bool = False
    overridden_rule: str | None = None
    nudge_priority: str
    memory_ids: list[int] = Field(default_factory=list)
    evaluated_at: datetime


class MemoryResponse(BaseModel):
    id: int
    user_id: str
    memory_type: str
    content: str
    context: str | None = None
    confidence: float
    evidence_count: int
    decay_rate: float
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime | None = None
    source_protocol_id: str | None = None
    relevance_score: float | None = None


class StatsResponse(BaseModel):
    user_id: str
    total: int
    by_type: dict[str, int]
    avg_confidence: float
    oldest_memory: datetime | None = None
    newest_memory: datetime | None = None


class SweepResponse(BaseModel):
    """Result of a scheduled decay and prune sweep."""

    users: int
    decayed: int
    pruned: int
    decisions_removed: int = 0


class RuleResponse(BaseModel):
    id: str
    name: str
    priority: int
    override_by: list[str] = Field(default_factory=list)


def decision_to_response(record: DecisionRecord) -> DecisionResponse:
    """Convert a DecisionRecord to its JSON response model."""
    factors = []
    if record.factors is not None:
        factors = [
            FactorBreakdown(name=name, **entry)
            for name, entry in get_factor_breakdown(record.factors).items()
        ]
    return DecisionResponse(
        id=record.id,
        user_id=record.user_id,
        protocol_id=record.protocol_id,
        should_deliver=record.should_deliver,
        confidence=record.confidence,
        factors=factors,
        reasoning=record.reasoning,
        rules_checked=record.rules_checked,
        suppressed_by=record.suppressed_by,
        reason=record.reason,
        was_overridden=record.was_overridden,
        overridden_rule=record.overridden_rule,
        nudge_priority=record.nudge_priority.value,
        memory_ids=record.memory_ids,
        evaluated_at=record.evaluated_at,
    )


def memory_to_response(memory: Memory) -> MemoryResponse:
    """Convert a Memory to its JSON response model."""
    return MemoryResponse(
        id=memory.id,
        user_id=memory.user_id,
        memory_type=memory.memory_type.value,
        content=memory.content,
        context=memory.context,
        confidence=memory.confidence,
        evidence_count=memory.evidence_count,
        decay_rate=memory.decay_rate,
        created_at=memory.created_at,
        last_used_at=memory.last_used_at,
        expires_at=memory.expires_at,
        source_protocol_id=memory.source_protocol_id,
        relevance_score=memory.relevance_score,
    )


def stats_to_response(user_id: str, stats: MemoryStats) -> StatsResponse:
    return StatsResponse(
        user_id=user_id,
        total=stats.total,
        by_type=stats.by_type,
        avg_confidence=round(stats.avg_confidence, 4),
        oldest_memory=stats.oldest_memory,
        newest_memory=stats.newest_memory,
    )
