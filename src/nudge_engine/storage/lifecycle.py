"""Memory decay and pruning mixin for Storage class."""

from __future__ import annotations

from datetime import datetime, timedelta

from nudge_engine.helpers import days_between, to_db_time, utc_now
from nudge_engine.logging import get_logger
from nudge_engine.models import RetrievalContext
from nudge_engine.storage.retrieval import calculate_relevance_score

log = get_logger("storage.lifecycle")


class LifecycleMixin:
    """Mixin providing scheduled decay and pruning for Storage."""

    def apply_decay(self, user_id: str | None = None, now: datetime | None = None) -> int:
        """Decay confidence of memories not decayed within the decay interval.

        new_confidence = confidence * (1 - decay_rate) ** weeks_since_last_decay

        Running twice inside the same interval decays nothing the second time.

        Args:
            user_id: Only decay this user's memories. None sweeps every user,
                one user at a time.
            now: Evaluation instant (defaults to current UTC time).

        Returns:
            Number of memories decayed.
        """
        now = now or utc_now()
        if user_id is not None:
            return self._decay_user(user_id, now)

        total = 0
        for uid in self.list_user_ids():
            total += self._decay_user(uid, now)
        log.info("Decay sweep touched {} memories", total)
        return total

    def _decay_user(self, user_id: str, now: datetime) -> int:
        cutoff = to_db_time(now - timedelta(hours=self.settings.decay_interval_hours))

        with self.user_lock(user_id):
            with self.transaction() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM user_memories
                    WHERE user_id = ? AND last_decayed_at < ?
                    """,
                    (user_id, cutoff),
                ).fetchall()

                for row in rows:
                    memory = self._row_to_memory(row)
                    weeks = days_between(memory.last_decayed_at, now) / 7
                    new_confidence = max(
                        0.0, memory.confidence * (1 - memory.decay_rate) ** weeks
                    )
                    conn.execute(
                        """
                        UPDATE user_memories
                        SET confidence = ?, last_decayed_at = ?
                        WHERE id = ?
                        """,
                        (new_confidence, to_db_time(now), memory.id),
                    )

        if rows:
            log.debug("Decayed {} memories for user={}", len(rows), user_id)
        return len(rows)

    def prune_memories(self, user_id: str, now: datetime | None = None) -> int:
        """Remove expired and low-confidence memories, then enforce the per-user cap.

        Excess memories beyond the cap are removed lowest relevance first
        (relevance scored without a decision context), oldest first among ties.

        Returns:
            Number of memories removed.
        """
        now = now or utc_now()
        cap = self.settings.max_memories_per_user

        with self.user_lock(user_id):
            with self.transaction() as conn:
                expired = conn.execute(
                    """
                    DELETE FROM user_memories
                    WHERE user_id = ? AND expires_at IS NOT NULL AND expires_at <= ?
                    """,
                    (user_id, to_db_time(now)),
                ).rowcount
                low_confidence = conn.execute(
                    "DELETE FROM user_memories WHERE user_id = ? AND confidence < ?",
                    (user_id, self.settings.min_confidence_threshold),
                ).rowcount

                rows = conn.execute(
                    "SELECT * FROM user_memories WHERE user_id = ?", (user_id,)
                ).fetchall()
                excess_ids: list[int] = []
                if len(rows) > cap:
                    empty_context = RetrievalContext()
                    ranked = sorted(
                        (self._row_to_memory(row) for row in rows),
                        key=lambda m: (
                            calculate_relevance_score(
                                m, empty_context, now, self.settings.high_evidence_threshold
                            ),
                            m.created_at,
                            m.id,
                        ),
                    )
                    excess_ids = [m.id for m in ranked[: len(rows) - cap]]
                    conn.executemany(
                        "DELETE FROM user_memories WHERE id = ?",
                        [(memory_id,) for memory_id in excess_ids],
                    )

        removed = expired + low_confidence + len(excess_ids)
        if removed:
            log.info(
                "Pruned {} memories for user={} (expired={}, low_confidence={}, over_cap={})",
                removed,
                user_id,
                expired,
                low_confidence,
                len(excess_ids),
            )
        return removed

    def prune_all(self, now: datetime | None = None) -> int:
        """Prune every user's memories. Returns total removed."""
        now = now or utc_now()
        return sum(self.prune_memories(uid, now) for uid in self.list_user_ids())
