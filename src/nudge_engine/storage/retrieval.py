"""Relevance-ranked memory retrieval mixin for Storage class."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from nudge_engine.helpers import days_between, to_db_time, utc_now
from nudge_engine.logging import get_logger
from nudge_engine.models import (
    HIGH_EVIDENCE_THRESHOLD,
    MEMORY_TYPE_PRIORITY,
    Memory,
    MemoryType,
    RetrievalContext,
)

log = get_logger("storage.retrieval")

PROTOCOL_MATCH_BOOST = 1.5
PREFERRED_TIME_BOOST = 1.3
RECENT_USE_BOOST = 1.2
STALE_USE_PENALTY = 0.8
HIGH_EVIDENCE_BOOST = 1.1
RECENT_USE_DAYS = 7
STALE_USE_DAYS = 30


def calculate_relevance_score(
    memory: Memory,
    context: RetrievalContext,
    now: datetime,
    high_evidence_threshold: int = HIGH_EVIDENCE_THRESHOLD,
) -> float:
    """Score how relevant a memory is to the current decision context.

    Starts from the memory's confidence and applies multiplicative boosts:
    - x1.5 when the memory came from the protocol being decided
    - x1.3 for a preferred_time memory mentioning the requested time of day
    - x1.2 if used within the last 7 days, x0.8 if unused for over 30
    - x1.1 for high-evidence memories

    Returns:
        Relevance score capped at 1.0.
    """
    score = memory.confidence

    if context.protocol_id and memory.source_protocol_id == context.protocol_id:
        score *= PROTOCOL_MATCH_BOOST

    if context.time_of_day and memory.memory_type == MemoryType.PREFERRED_TIME:
        if context.time_of_day.value in memory.content.lower():
            score *= PREFERRED_TIME_BOOST

    days_since_use = days_between(memory.last_used_at, now)
    if days_since_use < RECENT_USE_DAYS:
        score *= RECENT_USE_BOOST
    elif days_since_use > STALE_USE_DAYS:
        score *= STALE_USE_PENALTY

    if memory.evidence_count >= high_evidence_threshold:
        score *= HIGH_EVIDENCE_BOOST

    return min(1.0, score)


def relevance_sort_key(memory: Memory) -> tuple[float, int, float]:
    """Sort key: relevance desc, type priority asc, confidence desc."""
    return (
        -(memory.relevance_score or 0.0),
        MEMORY_TYPE_PRIORITY[memory.memory_type],
        -memory.confidence,
    )


class RetrievalMixin:
    """Mixin providing context-aware memory retrieval for Storage."""

    def get_relevant_memories(
        self,
        user_id: str,
        context: RetrievalContext | None = None,
        limit: int | None = None,
        now: datetime | None = None,
    ) -> list[Memory]:
        """Get the memories most relevant to a decision context.

        Args:
            user_id: Owner of the memories.
            context: Protocol, time of day, type filter and confidence floor.
            limit: Maximum memories to return (default from settings).
            now: Evaluation instant (defaults to current UTC time).

        Returns:
            Memories with relevance_score populated, best first.
        """
        context = context or RetrievalContext()
        limit = limit if limit is not None else self.settings.default_retrieval_limit
        now = now or utc_now()
        min_confidence = (
            context.min_confidence
            if context.min_confidence is not None
            else self.settings.min_confidence_threshold
        )

        query = """
            SELECT * FROM user_memories
            WHERE user_id = ?
              AND confidence >= ?
              AND (expires_at IS NULL OR expires_at > ?)
        """
        params: list = [user_id, min_confidence, to_db_time(now)]

        if context.memory_types:
            placeholders = ", ".join("?" for _ in context.memory_types)
            query += f" AND type IN ({placeholders})"
            params.extend(t.value for t in context.memory_types)

        if context.protocol_id:
            query += " AND (source_protocol_id = ? OR source_protocol_id IS NULL)"
            params.append(context.protocol_id)

        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
            candidates = [self._row_to_memory(row) for row in rows]

        scored = [
            replace(
                memory,
                relevance_score=calculate_relevance_score(
                    memory, context, now, self.settings.high_evidence_threshold
                ),
            )
            for memory in candidates
        ]
        scored.sort(key=relevance_sort_key)

        log.debug(
            "Retrieved {}/{} memories for user={} protocol={}",
            min(limit, len(scored)),
            len(scored),
            user_id,
            context.protocol_id,
        )
        return scored[:limit]
