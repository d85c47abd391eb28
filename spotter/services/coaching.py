"""
CoachingService: the long-lived owner of every piece of mutable runtime state.

One instance per process. ``start()`` launches the background ticks (memory
flush, quality gates, counter cleanup, integrity audit) and ``stop()``
cancels them and drains the memory queue.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

import spotter.config as config
from spotter.audit import list_audit_events
from spotter.context import ChatContext, ToolExecutionContext
from spotter.db import DB
from spotter.errors import SafetyRejection, ValidationError
from spotter.models import UserProfile, utcnow
from spotter.services import action_log, experiments
from spotter.services.embeddings import EmbeddingProvider, build_embedding_provider
from spotter.services.memory_store import MemoryStore
from spotter.services.quality_monitor import QualityMonitor, record_assistant_response
from spotter.services.security_monitor import SecurityMonitor
from spotter.services.segments import compute_segment
from spotter.services.tool_engine import ToolEngine
from spotter.services.variant_selector import VariantSelector, build_memory_block
from spotter.validators import validate_limit, validate_optional_text, validate_required_text

logger = config.logger

CHAT_USER_IMPORTANCE = 1.0
CHAT_ASSISTANT_IMPORTANCE = 0.8
WORKOUT_IMPORTANCE = 1.5


def _touch_profile(user_id: str) -> None:
    now = utcnow()
    db = DB.SessionLocal()
    try:
        profile = db.query(UserProfile).filter(UserProfile.user_id == user_id).first()
        if profile is None:
            db.add(UserProfile(user_id=user_id, created_at=now, last_active_at=now))
        else:
            profile.last_active_at = now
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    finally:
        db.close()


def describe_workout(workout: dict) -> str:
    reps = ", ".join(str(r) for r in workout.get("reps") or [])
    summary = f"Logged {workout['exercise']}: {workout['sets']} sets of {reps} reps"
    weight = workout.get("weight")
    if weight:
        summary += f" at {'/'.join(f'{w:g}' for w in weight)} lbs"
    if workout.get("notes"):
        summary += f". Notes: {workout['notes']}"
    return summary


class CoachingService:
    def __init__(
        self,
        provider: Optional[EmbeddingProvider] = None,
        selector: Optional[VariantSelector] = None,
        security: Optional[SecurityMonitor] = None,
        memory: Optional[MemoryStore] = None,
        quality: Optional[QualityMonitor] = None,
        tools: Optional[ToolEngine] = None,
    ):
        self.selector = selector or VariantSelector()
        self.security = security or SecurityMonitor()
        self.memory = memory or MemoryStore(provider or build_embedding_provider())
        self.quality = quality or QualityMonitor(self.selector)
        self.tools = tools or ToolEngine(self.security)
        self._started = False

    # ------------------------------------------------------------------
    # Chat context
    # ------------------------------------------------------------------

    async def get_context(
        self,
        user_id: str,
        session_id: str,
        query_text: str = "",
        scope_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> ChatContext:
        """
        Poisoning scan, segment, variant, then guarded memory retrieval.

        Flagged users get ``restricted=True`` and no retrieved memories.
        Raises VariantDisabledError when no enabled variant is available.
        """
        validate_required_text(user_id, "user_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_required_text(session_id, "session_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_optional_text(scope_id, "scope_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_optional_text(query_text, "query_text", config.MAX_QUERY_LENGTH)
        if limit is not None:
            validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)

        alert = await asyncio.to_thread(self.security.monitor_memory_context, user_id)
        segment = await asyncio.to_thread(compute_segment, user_id)
        assignment = await asyncio.to_thread(
            self.selector.select_variant, user_id, session_id, segment.segment
        )
        await asyncio.to_thread(_touch_profile, user_id)

        restricted = self.security.is_user_suspicious(user_id)
        memories: list[dict] = []
        if not restricted:
            memories = await self.memory.retrieve(user_id, query_text, scope_id=scope_id, limit=limit)

        return ChatContext(
            variant=assignment.variant,
            segment=segment.segment,
            experiment_id=assignment.experiment_id,
            memories=tuple(memories),
            memory_block=build_memory_block(memories, assignment.variant.memory_load),
            restricted=restricted,
            poisoning=alert.as_dict() if alert else None,
        )

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def execute(
        self,
        tool_name: str,
        params: Optional[dict],
        ctx: ToolExecutionContext,
        request_id: Optional[str] = None,
    ) -> dict:
        result = await self.tools.execute(tool_name, params, ctx, request_id=request_id)
        if tool_name == "log_workout" and result.get("status") == "success":
            try:
                await self.remember_workout(ctx.user_id, result, scope_id=ctx.scope_id)
            except (SafetyRejection, ValidationError) as exc:
                logger.info(
                    "workout_memory_skipped",
                    extra={"user_id": ctx.user_id, "log_id": result.get("log_id"), "error": str(exc)},
                )
        return result

    # ------------------------------------------------------------------
    # Memory capture
    # ------------------------------------------------------------------

    async def remember_chat_turn(
        self,
        user_id: str,
        user_message: str,
        assistant_response: str,
        scope_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> dict:
        """Queue both sides of a turn. An unsafe side is rejected without blocking the other."""
        outcomes = {}
        for role, content, importance in (
            ("user", user_message, CHAT_USER_IMPORTANCE),
            ("assistant", assistant_response, CHAT_ASSISTANT_IMPORTANCE),
        ):
            metadata = {"kind": "chat", "role": role}
            if session_id:
                metadata["session_id"] = session_id
            try:
                outcomes[role] = await self.memory.enqueue(
                    user_id,
                    content,
                    scope_id=scope_id,
                    metadata=metadata,
                    importance_weight=importance,
                )
            except SafetyRejection as exc:
                logger.warning(
                    "memory_rejected",
                    extra={"user_id": user_id, "role": role, "categories": list(exc.categories)},
                )
                outcomes[role] = {"status": "rejected", "reason": exc.reason, "categories": list(exc.categories)}
        return outcomes

    async def remember_workout(self, user_id: str, workout: dict, scope_id: Optional[str] = None) -> dict:
        metadata = {"kind": "workout"}
        if workout.get("log_id") is not None:
            metadata["log_id"] = workout["log_id"]
        return await self.memory.enqueue(
            user_id,
            describe_workout(workout),
            scope_id=scope_id,
            metadata=metadata,
            importance_weight=WORKOUT_IMPORTANCE,
        )

    # ------------------------------------------------------------------
    # Experiments and quality
    # ------------------------------------------------------------------

    async def record_outcome(self, experiment_id: int, outcome: str, metrics: Optional[dict] = None) -> dict:
        return await asyncio.to_thread(experiments.record_outcome, experiment_id, outcome, metrics)

    async def record_assistant_response(
        self,
        user_id: str,
        session_id: str,
        response_text: str,
        latency_ms: int,
        variant_id: Optional[str] = None,
        tokens_used: Optional[int] = None,
    ) -> dict:
        return await asyncio.to_thread(
            record_assistant_response,
            user_id=user_id,
            session_id=session_id,
            response_text=response_text,
            latency_ms=latency_ms,
            variant_id=variant_id,
            tokens_used=tokens_used,
        )

    async def get_variant_status(self) -> dict:
        return await asyncio.to_thread(self.quality.get_variant_status)

    async def disable_variant(self, variant_id: str, reason: str, actor_type: str = "operator") -> int:
        return await asyncio.to_thread(self.quality.disable_variant, variant_id, reason, actor_type)

    async def enable_variant(self, variant_id: str, reason: str, actor_type: str = "operator") -> bool:
        return await asyncio.to_thread(self.quality.enable_variant, variant_id, reason, actor_type)

    async def check_quality_gates(self) -> dict:
        return await asyncio.to_thread(self.quality.check_quality_gates)

    async def get_experiment_results(
        self,
        variant_id: Optional[str] = None,
        segment_type: Optional[str] = None,
        limit: int = 100,
    ) -> dict:
        return await asyncio.to_thread(experiments.get_experiment_results, variant_id, segment_type, limit)

    async def compare_variants(self) -> dict:
        return await asyncio.to_thread(experiments.compare_variants)

    # ------------------------------------------------------------------
    # Security
    # ------------------------------------------------------------------

    def get_security_status(self) -> dict:
        return self.security.get_security_status()

    async def clear_user_flag(self, user_id: str) -> bool:
        return await asyncio.to_thread(self.security.clear_user_flag, user_id)

    async def run_integrity_audit(self, user_id: Optional[str] = None) -> dict:
        return await asyncio.to_thread(action_log.run_integrity_audit, user_id)

    async def get_action_statistics(self, user_id: Optional[str] = None) -> dict:
        return await asyncio.to_thread(action_log.get_statistics, user_id)

    async def list_audit_events(self, **filters) -> dict:
        def _query() -> dict:
            db = DB.SessionLocal()
            try:
                return list_audit_events(db, **filters)
            finally:
                db.close()

        return await asyncio.to_thread(_query)

    def health(self) -> dict:
        return {
            "embedding_provider": self.memory.provider.status(),
            "pending_memories": self.memory.pending_count(),
            "disabled_variants": sorted(self.selector.disabled_ids()),
            "suspicious_users": self.security.get_security_status()["suspicious_users"],
            "last_quality_snapshot": self.quality.last_snapshot,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        await self.memory.start()
        await self.quality.start()
        await self.security.start()
        self._started = True
        logger.info("coaching_service_started")

    async def stop(self) -> None:
        await self.security.stop()
        await self.quality.stop()
        await self.memory.stop(drain=True)
        await self.memory.provider.aclose()
        self._started = False
        logger.info("coaching_service_stopped")


__all__ = ["CoachingService", "describe_workout"]
