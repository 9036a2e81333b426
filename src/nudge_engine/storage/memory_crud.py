"""Memory CRUD operations mixin for Storage class."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta

from nudge_engine.helpers import from_db_time, to_db_time, utc_now
from nudge_engine.logging import get_logger
from nudge_engine.models import (
    DEFAULT_EXPIRATION_DAYS,
    HIGH_EVIDENCE_DECAY_REDUCTION,
    MAX_DECAY_RATE,
    MIN_DECAY_RATE,
    Effectiveness,
    Memory,
    MemoryCreateInput,
    MemoryStats,
    MemoryType,
    MemoryUpdateInput,
    NudgeFeedback,
)
from nudge_engine.text_matching import is_near_duplicate

log = get_logger("storage.memory_crud")

_FEEDBACK_CONFIDENCE = {
    NudgeFeedback.COMPLETED: 0.6,
    NudgeFeedback.DISMISSED: 0.5,
    NudgeFeedback.SNOOZED: 0.4,
}

_EFFECTIVENESS_CONFIDENCE = {
    Effectiveness.HIGH: 0.8,
    Effectiveness.MEDIUM: 0.5,
    Effectiveness.LOW: 0.3,
}

STATED_PREFERENCE_CONFIDENCE = 0.9


class ValidationError(ValueError):
    """Raised when input validation fails."""


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class MemoryCrudMixin:
    """Mixin providing memory CRUD methods for Storage."""

    def _validate_content(self, content: str, field_name: str = "content") -> None:
        """Validate memory content.

        Raises:
            ValidationError: If content is empty.
        """
        if not content or not content.strip():
            raise ValidationError(f"{field_name} cannot be empty")

    def _row_to_memory(self, row: sqlite3.Row) -> Memory:
        """Convert a database row to a Memory object."""
        return Memory(
            id=row["id"],
            user_id=row["user_id"],
            memory_type=MemoryType(row["type"]),
            content=row["content"],
            context=row["context"],
            confidence=row["confidence"],
            evidence_count=row["evidence_count"],
            decay_rate=row["decay_rate"],
            created_at=from_db_time(row["created_at"]),
            last_used_at=from_db_time(row["last_used_at"]),
            last_decayed_at=from_db_time(row["last_decayed_at"]),
            expires_at=from_db_time(row["expires_at"]),
            source_nudge_id=row["source_nudge_id"],
            source_protocol_id=row["source_protocol_id"],
            metadata=json.loads(row["metadata"] or "{}"),
        )

    def _get_memory_by_id(self, conn: sqlite3.Connection, memory_id: int) -> Memory | None:
        """Get a memory by ID using an existing connection."""
        row = conn.execute("SELECT * FROM user_memories WHERE id = ?", (memory_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_memory(row)

    def _get_owner(self, memory_id: int) -> str | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT user_id FROM user_memories WHERE id = ?", (memory_id,)
            ).fetchone()
            return row["user_id"] if row else None

    def _find_near_duplicate(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        memory_type: MemoryType,
        content: str,
    ) -> int | None:
        """Find the oldest live memory of the same user and type that covers content."""
        rows = conn.execute(
            """
            SELECT id, content FROM user_memories
            WHERE user_id = ? AND type = ? AND confidence >= ?
            ORDER BY id ASC
            """,
            (user_id, memory_type.value, self.settings.min_confidence_threshold),
        ).fetchall()
        for row in rows:
            if is_near_duplicate(
                row["content"],
                content,
                prefix_length=self.settings.dedup_prefix_length,
                case_sensitive=self.settings.dedup_case_sensitive,
            ):
                return row["id"]
        return None

    def _reinforce(
        self,
        conn: sqlite3.Connection,
        memory_id: int,
        context: str | None,
        now: datetime,
    ) -> Memory | None:
        """Apply one reinforcement inside an open transaction."""
        current = self._get_memory_by_id(conn, memory_id)
        if current is None:
            return None

        # Diminishing returns: each observation closes a fixed share of the remaining gap
        boost = self.settings.reinforcement_rate * (1 - current.confidence)
        new_confidence = min(self.settings.max_reinforced_confidence, current.confidence + boost)
        new_evidence = current.evidence_count + 1

        new_decay_rate = current.decay_rate
        if new_evidence >= self.settings.high_evidence_threshold:
            new_decay_rate = max(MIN_DECAY_RATE, current.decay_rate * HIGH_EVIDENCE_DECAY_REDUCTION)

        conn.execute(
            """
            UPDATE user_memories
            SET confidence = ?,
                evidence_count = ?,
                decay_rate = ?,
                last_used_at = ?,
                context = ?
            WHERE id = ?
            """,
            (
                new_confidence,
                new_evidence,
                new_decay_rate,
                to_db_time(now),
                context if context is not None else current.context,
                memory_id,
            ),
        )
        log.info(
            "Reinforced memory id={}: confidence {:.3f} -> {:.3f}, evidence={}, decay_rate={:.3f}",
            memory_id,
            current.confidence,
            new_confidence,
            new_evidence,
            new_decay_rate,
        )
        return self._get_memory_by_id(conn, memory_id)

    def store_memory(self, data: MemoryCreateInput, now: datetime | None = None) -> Memory:
        """Store a new memory, or reinforce an existing near-duplicate.

        A near-duplicate is a memory of the same user and type, with
        confidence at or above the minimum threshold, whose content contains
        the leading characters of the new content (see ``is_near_duplicate``).

        Args:
            data: The memory to store.
            now: Evaluation instant (defaults to current UTC time).

        Returns:
            The created memory, or the reinforced existing one.

        Raises:
            ValidationError: If content is empty.
        """
        self._validate_content(data.content)
        now = now or utc_now()

        with self.user_lock(data.user_id):
            with self.transaction() as conn:
                existing_id = self._find_near_duplicate(
                    conn, data.user_id, data.memory_type, data.content
                )
                if existing_id is not None:
                    reinforced = self._reinforce(conn, existing_id, data.context, now)
                    if reinforced is not None:
                        return reinforced

                expiration_days = DEFAULT_EXPIRATION_DAYS[data.memory_type]
                expires_at = (
                    to_db_time(now + timedelta(days=expiration_days))
                    if expiration_days is not None
                    else None
                )
                confidence = _clamp(
                    data.confidence
                    if data.confidence is not None
                    else self.settings.default_confidence,
                    0.0,
                    1.0,
                )
                decay_rate = _clamp(
                    data.decay_rate
                    if data.decay_rate is not None
                    else self.settings.default_decay_rate,
                    MIN_DECAY_RATE,
                    MAX_DECAY_RATE,
                )
                timestamp = to_db_time(now)

                cursor = conn.execute(
                    """
                    INSERT INTO user_memories (
                        user_id, type, content, context, confidence, evidence_count,
                        decay_rate, created_at, last_used_at, last_decayed_at, expires_at,
                        source_nudge_id, source_protocol_id, metadata
                    ) VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        data.user_id,
                        data.memory_type.value,
                        data.content,
                        data.context,
                        confidence,
                        decay_rate,
                        timestamp,
                        timestamp,
                        timestamp,
                        expires_at,
                        data.source_nudge_id,
                        data.source_protocol_id,
                        json.dumps(data.metadata or {}),
                    ),
                )
                memory_id = cursor.lastrowid
                log.info(
                    "Stored new memory id={} user={} type={} confidence={:.2f}",
                    memory_id,
                    data.user_id,
                    data.memory_type.value,
                    confidence,
                )
                return self._get_memory_by_id(conn, memory_id)

    def reinforce_memory(
        self,
        memory_id: int,
        context: str | None = None,
        now: datetime | None = None,
    ) -> Memory | None:
        """Reinforce a memory when the same pattern is observed again.

        Confidence rises by 10% of the remaining headroom, capped at 0.95;
        evidence_count increments; once evidence reaches the high-evidence
        threshold the decay rate is halved (floored at 0.01).

        Returns:
            The updated memory, or None if not found.
        """
        owner = self._get_owner(memory_id)
        if owner is None:
            return None
        with self.user_lock(owner):
            with self.transaction() as conn:
                return self._reinforce(conn, memory_id, context, now or utc_now())

    def get_memory(self, memory_id: int) -> Memory | None:
        """Get a memory by ID."""
        with self._connection() as conn:
            return self._get_memory_by_id(conn, memory_id)

    def update_memory(
        self,
        memory_id: int,
        updates: MemoryUpdateInput,
        now: datetime | None = None,
    ) -> Memory | None:
        """Apply a partial update and refresh last_used_at.

        Raises:
            ValidationError: If new content is empty.
        """
        if updates.content is not None:
            self._validate_content(updates.content)

        assignments: list[str] = []
        params: list = []
        if updates.content is not None:
            assignments.append("content = ?")
            params.append(updates.content)
        if updates.context is not None:
            assignments.append("context = ?")
            params.append(updates.context)
        if updates.confidence is not None:
            assignments.append("confidence = ?")
            params.append(_clamp(updates.confidence, 0.0, 1.0))
        if updates.evidence_count is not None:
            assignments.append("evidence_count = ?")
            params.append(max(1, updates.evidence_count))
        if updates.decay_rate is not None:
            assignments.append("decay_rate = ?")
            params.append(_clamp(updates.decay_rate, MIN_DECAY_RATE, MAX_DECAY_RATE))
        if updates.metadata is not None:
            assignments.append("metadata = ?")
            params.append(json.dumps(updates.metadata))
        assignments.append("last_used_at = ?")
        params.append(to_db_time(now or utc_now()))

        owner = self._get_owner(memory_id)
        if owner is None:
            return None
        with self.user_lock(owner):
            with self.transaction() as conn:
                conn.execute(
                    f"UPDATE user_memories SET {', '.join(assignments)} WHERE id = ?",
                    (*params, memory_id),
                )
                return self._get_memory_by_id(conn, memory_id)

    def delete_memory(self, memory_id: int) -> bool:
        """Delete a memory."""
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM user_memories WHERE id = ?", (memory_id,))
            deleted = cursor.rowcount > 0
            if deleted:
                log.info("Deleted memory id={}", memory_id)
            return deleted

    def delete_user_memories(self, user_id: str) -> int:
        """Delete every memory of a user (privacy erasure). Returns count deleted."""
        with self.user_lock(user_id):
            with self.transaction() as conn:
                cursor = conn.execute("DELETE FROM user_memories WHERE user_id = ?", (user_id,))
                log.info("Erased {} memories for user={}", cursor.rowcount, user_id)
                return cursor.rowcount

    def get_user_memories(self, user_id: str) -> list[Memory]:
        """Get all memories of a user, newest first (data export)."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM user_memories WHERE user_id = ? ORDER BY created_at DESC, id DESC",
                (user_id,),
            ).fetchall()
            return [self._row_to_memory(row) for row in rows]

    def list_user_ids(self) -> list[str]:
        """Users that currently hold at least one memory."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT user_id FROM user_memories ORDER BY user_id"
            ).fetchall()
            return [row["user_id"] for row in rows]

    def get_memory_stats(self, user_id: str) -> MemoryStats:
        """Get memory statistics for a user."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT type, confidence, created_at FROM user_memories WHERE user_id = ?",
                (user_id,),
            ).fetchall()

        by_type: dict[str, int] = {}
        for row in rows:
            by_type[row["type"]] = by_type.get(row["type"], 0) + 1
        created = [row["created_at"] for row in rows]

        return MemoryStats(
            total=len(rows),
            by_type=by_type,
            avg_confidence=sum(row["confidence"] for row in rows) / len(rows) if rows else 0.0,
            oldest_memory=from_db_time(min(created)) if created else None,
            newest_memory=from_db_time(max(created)) if created else None,
        )

    # ========== Memory factories ==========

    def create_from_nudge_feedback(
        self,
        user_id: str,
        nudge_id: str,
        protocol_id: str,
        feedback: NudgeFeedback,
        context: str | None = None,
        now: datetime | None = None,
    ) -> Memory:
        """Record how the user responded to a nudge."""
        return self.store_memory(
            MemoryCreateInput(
                user_id=user_id,
                memory_type=MemoryType.NUDGE_FEEDBACK,
                content=f"User {feedback.value} nudge for protocol {protocol_id}",
                context=context or f"Feedback on nudge {nudge_id}",
                confidence=_FEEDBACK_CONFIDENCE[feedback],
                source_nudge_id=nudge_id,
                source_protocol_id=protocol_id,
            ),
            now=now,
        )

    def create_from_stated_preference(
        self,
        user_id: str,
        preference: str,
        is_constraint: bool = False,
        source: str | None = None,
        now: datetime | None = None,
    ) -> Memory:
        """Record an explicit preference or constraint (high confidence, slow decay)."""
        return self.store_memory(
            MemoryCreateInput(
                user_id=user_id,
                memory_type=(
                    MemoryType.PREFERENCE_CONSTRAINT
                    if is_constraint
                    else MemoryType.STATED_PREFERENCE
                ),
                content=preference,
                context=source or "User stated preference",
                confidence=STATED_PREFERENCE_CONFIDENCE,
                decay_rate=MIN_DECAY_RATE,
            ),
            now=now,
        )

    def create_protocol_effectiveness_memory(
        self,
        user_id: str,
        protocol_id: str,
        effectiveness: Effectiveness,
        context: str,
        now: datetime | None = None,
    ) -> Memory:
        """Record how well a protocol works for the user."""
        return self.store_memory(
            MemoryCreateInput(
                user_id=user_id,
                memory_type=MemoryType.PROTOCOL_EFFECTIVENESS,
                content=f"Protocol {protocol_id} has {effectiveness.value} effectiveness for user",
                context=context,
                confidence=_EFFECTIVENESS_CONFIDENCE[effectiveness],
                source_protocol_id=protocol_id,
            ),
            now=now,
        )
