"""Decision audit log mixin for Storage class."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta

from nudge_engine.helpers import from_db_time, to_db_time, utc_now
from nudge_engine.logging import get_logger
from nudge_engine.models import ConfidenceFactors, DecisionRecord, NudgePriority

log = get_logger("storage.decision_log")


class DecisionLogMixin:
    """Mixin providing decision record persistence for Storage."""

    def record_decision(self, record: DecisionRecord) -> int:
        """Persist a decision record for audit and analytics.

        Returns:
            ID of the stored record.
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO decision_log (
                    user_id, protocol_id, should_deliver, confidence, factors, reasoning,
                    rules_checked, suppressed_by, reason, was_overridden, overridden_rule,
                    nudge_priority, memory_ids, evaluated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.user_id,
                    record.protocol_id,
                    int(record.should_deliver),
                    record.confidence,
                    json.dumps(record.factors.as_dict()) if record.factors else None,
                    record.reasoning,
                    json.dumps(record.rules_checked),
                    record.suppressed_by,
                    record.reason,
                    int(record.was_overridden),
                    record.overridden_rule,
                    record.nudge_priority.value,
                    json.dumps(record.memory_ids),
                    to_db_time(record.evaluated_at),
                ),
            )
            record_id = cursor.lastrowid or 0
            log.debug(
                "Recorded decision id={} user={} protocol={} deliver={}",
                record_id,
                record.user_id,
                record.protocol_id,
                record.should_deliver,
            )
            return record_id

    def _row_to_decision(self, row: sqlite3.Row) -> DecisionRecord:
        factors = json.loads(row["factors"]) if row["factors"] else None
        return DecisionRecord(
            id=row["id"],
            user_id=row["user_id"],
            protocol_id=row["protocol_id"],
            should_deliver=bool(row["should_deliver"]),
            confidence=row["confidence"],
            factors=ConfidenceFactors(**factors) if factors else None,
            reasoning=row["reasoning"] or "",
            rules_checked=json.loads(row["rules_checked"]),
            suppressed_by=row["suppressed_by"],
            reason=row["reason"],
            was_overridden=bool(row["was_overridden"]),
            overridden_rule=row["overridden_rule"],
            nudge_priority=NudgePriority(row["nudge_priority"]),
            memory_ids=json.loads(row["memory_ids"]),
            evaluated_at=from_db_time(row["evaluated_at"]),
        )

    def get_decisions(self, user_id: str | None = None, limit: int = 50) -> list[DecisionRecord]:
        """Get recent decision records, most recent first."""
        with self._connection() as conn:
            if user_id is not None:
                rows = conn.execute(
                    """
                    SELECT * FROM decision_log
                    WHERE user_id = ?
                    ORDER BY evaluated_at DESC, id DESC
                    LIMIT ?
                    """,
                    (user_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM decision_log ORDER BY evaluated_at DESC, id DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            return [self._row_to_decision(row) for row in rows]

    def cleanup_decision_log(
        self, retention_days: int | None = None, now: datetime | None = None
    ) -> int:
        """Delete decision records older than the retention window (0 = keep forever)."""
        days = (
            retention_days
            if retention_days is not None
            else self.settings.decision_log_retention_days
        )
        if days <= 0:
            return 0
        cutoff = to_db_time((now or utc_now()) - timedelta(days=days))
        with self.transaction() as conn:
            deleted = conn.execute(
                "DELETE FROM decision_log WHERE evaluated_at < ?", (cutoff,)
            ).rowcount
        if deleted:
            log.info("Removed {} decision records older than {} days", deleted, days)
        return deleted
