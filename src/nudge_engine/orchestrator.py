"""Decision orchestrator: retrieval, scoring and suppression for one nudge.

The orchestrator is the fail-safe boundary of the engine. Storage and
scoring errors are logged and resolved to a valid, conservative decision;
nothing raised below it reaches the caller of ``decide``.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import Callable

from nudge_engine.config import Settings
from nudge_engine.helpers import ensure_utc, utc_now
from nudge_engine.logging import get_logger
from nudge_engine.models import (
    ConfidenceScore,
    DayState,
    DecisionRecord,
    DecisionRequest,
    Memory,
    NudgeContext,
    NudgeFeedback,
    RetrievalContext,
    SuppressionResult,
    TimeOfDay,
)
from nudge_engine.scoring import calculate_confidence, get_time_of_day
from nudge_engine.storage import Storage
from nudge_engine.suppression import (
    build_suppression_context,
    evaluate_suppression,
    get_user_local_hour,
)

log = get_logger("orchestrator")

ENGINE_ERROR = "engine_error"

DayStateLoader = Callable[[str, datetime], DayState]


class DecisionOrchestrator:
    """Produce an auditable deliver/suppress decision for a candidate nudge.

    Args:
        storage: Memory store and decision log.
        settings: Engine settings (defaults to ``storage.settings``).
        day_state_loader: Optional callable ``(user_id, now) -> DayState``
            used when a request carries no day state of its own.
    """

    def __init__(
        self,
        storage: Storage,
        settings: Settings | None = None,
        day_state_loader: DayStateLoader | None = None,
    ):
        self.storage = storage
        self.settings = settings or storage.settings
        self.day_state_loader = day_state_loader
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="nudge-retrieval")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def __enter__(self) -> DecisionOrchestrator:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ========== Pipeline steps ==========

    def _local_hour(self, request: DecisionRequest, now: datetime) -> int:
        try:
            return get_user_local_hour(now, request.preferences.timezone)
        except Exception:
            log.exception("Local hour lookup failed for user={}, using UTC", request.user_id)
            return now.hour

    def _retrieve_memories(
        self, request: DecisionRequest, time_of_day: TimeOfDay, now: datetime
    ) -> tuple[list[Memory], bool]:
        """Fetch memories within the retrieval timeout.

        Returns:
            The memories, and whether retrieval timed out. After a timeout the
            storage lock may still be held by a stalled worker.
        """
        context = RetrievalContext(
            protocol_id=request.protocol.id,
            module_id=request.module_id,
            time_of_day=time_of_day,
        )
        future = self._executor.submit(
            self.storage.get_relevant_memories, request.user_id, context, None, now
        )
        timeout = self.settings.memory_retrieval_timeout_seconds
        try:
            return future.result(timeout=timeout), False
        except FutureTimeoutError:
            future.cancel()
            log.warning(
                "Memory retrieval for user={} exceeded {}s, scoring without memories",
                request.user_id,
                timeout,
            )
            return [], True
        except Exception:
            log.exception(
                "Memory retrieval failed for user={}, scoring without memories",
                request.user_id,
            )
        return [], False

    def _score(self, context: NudgeContext) -> ConfidenceScore | None:
        try:
            return calculate_confidence(context)
        except Exception:
            log.exception(
                "Confidence scoring failed for user={} protocol={}",
                context.user_id,
                context.protocol.id,
            )
            return None

    def _resolve_day_state(self, request: DecisionRequest, now: datetime) -> DayState:
        if request.day_state is not None:
            return request.day_state
        if self.day_state_loader is not None:
            try:
                return self.day_state_loader(request.user_id, now)
            except Exception:
                log.exception(
                    "Day state loader failed for user={}, using defaults", request.user_id
                )
        return DayState()

    def _suppress(
        self,
        request: DecisionRequest,
        day_state: DayState,
        confidence: float,
        local_hour: int,
        now: datetime,
    ) -> SuppressionResult:
        try:
            context = build_suppression_context(
                nudge_priority=request.nudge_priority,
                confidence_score=confidence,
                user_local_hour=local_hour,
                nudges_delivered_today=day_state.nudges_delivered_today,
                last_nudge_delivered_at=day_state.last_nudge_delivered_at,
                dismissals_today=day_state.dismissals_today,
                meeting_hours_today=day_state.meeting_hours_today,
                quiet_hours_start=request.preferences.quiet_hours_start,
                quiet_hours_end=request.preferences.quiet_hours_end,
                timezone=request.preferences.timezone,
                recovery_score=day_state.recovery_score,
                is_morning_anchor=request.is_morning_anchor,
                current_streak=day_state.current_streak,
                mvd_active=day_state.mvd_active,
                is_mvd_approved_nudge=request.is_mvd_approved_nudge,
                now=now,
            )
            return evaluate_suppression(context)
        except Exception as e:
            log.exception("Suppression evaluation failed for user={}", request.user_id)
            return SuppressionResult(
                should_deliver=False,
                rules_checked=[],
                suppressed_by=ENGINE_ERROR,
                reason=f"Suppression engine error: {e}",
            )

    def _audit(self, record: DecisionRecord) -> None:
        if not self.settings.audit_enabled:
            return
        try:
            record.id = self.storage.record_decision(record)
        except Exception:
            log.exception(
                "Failed to record decision for user={} protocol={}",
                record.user_id,
                record.protocol_id,
            )

    def _audit_later(self, record: DecisionRecord) -> None:
        """Queue the audit write behind a stalled retrieval instead of waiting on it.

        The record's id is filled in once the queued write completes.
        """
        if not self.settings.audit_enabled:
            return
        try:
            self._executor.submit(self._audit, record)
        except RuntimeError:
            log.warning(
                "Executor shut down, decision for user={} protocol={} not recorded",
                record.user_id,
                record.protocol_id,
            )

    # ========== Public API ==========

    def decide(self, request: DecisionRequest, now: datetime | None = None) -> DecisionRecord:
        """Decide whether to deliver a nudge right now.

        Args:
            request: User, candidate protocol, preferences and optional day state.
            now: Evaluation instant (defaults to current UTC time).

        Returns:
            The decision record, persisted to the decision log when auditing
            is enabled.
        """
        now = ensure_utc(now) if now is not None else utc_now()
        local_hour = self._local_hour(request, now)
        time_of_day = get_time_of_day(local_hour)
        day_state = self._resolve_day_state(request, now)

        memories, retrieval_pending = self._retrieve_memories(request, time_of_day, now)

        score = self._score(
            NudgeContext(
                user_id=request.user_id,
                primary_goal=request.primary_goal,
                module_id=request.module_id,
                time_of_day=time_of_day,
                protocol=request.protocol,
                memories=memories,
                other_protocols=request.other_protocols,
                recovery_score=day_state.recovery_score,
                hrv_baseline_deviation=day_state.hrv_baseline_deviation,
            )
        )
        if score is None:
            confidence = 0.0
            factors = None
            reasoning = "Confidence scoring unavailable - treated as 0%."
        else:
            confidence = score.overall
            factors = score.factors
            reasoning = score.reasoning

        result = self._suppress(request, day_state, confidence, local_hour, now)

        record = DecisionRecord(
            user_id=request.user_id,
            protocol_id=request.protocol.id,
            should_deliver=result.should_deliver,
            confidence=confidence,
            factors=factors,
            reasoning=reasoning,
            rules_checked=result.rules_checked,
            evaluated_at=now,
            suppressed_by=result.suppressed_by,
            reason=result.reason,
            was_overridden=result.was_overridden,
            overridden_rule=result.overridden_rule,
            nudge_priority=request.nudge_priority,
            memory_ids=[memory.id for memory in memories],
        )

        if result.should_deliver:
            log.info(
                "Deliver protocol={} to user={} (confidence={:.2f}{})",
                record.protocol_id,
                record.user_id,
                confidence,
                f", overrode {result.overridden_rule}" if result.was_overridden else "",
            )
        else:
            log.info(
                "Suppress protocol={} for user={} by {}: {}",
                record.protocol_id,
                record.user_id,
                result.suppressed_by,
                result.reason,
            )

        if retrieval_pending:
            self._audit_later(record)
        else:
            self._audit(record)
        return record

    def record_feedback(
        self,
        user_id: str,
        nudge_id: str,
        protocol_id: str,
        feedback: NudgeFeedback,
        now: datetime | None = None,
    ) -> Memory | None:
        """Store the user's response to a delivered nudge as a memory.

        Returns:
            The stored (or reinforced) memory, or None if storing failed.
        """
        try:
            return self.storage.create_from_nudge_feedback(
                user_id, nudge_id, protocol_id, feedback, now=now
            )
        except Exception:
            log.exception(
                "Failed to record {} feedback for user={} nudge={}",
                feedback.value,
                user_id,
                nudge_id,
            )
            return None
