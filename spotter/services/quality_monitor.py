"""
Quality gates over a trailing window, unsafe-output detection, and automatic
variant disable/recovery.
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timedelta
from typing import Optional, Sequence

import numpy as np

import spotter.config as config
from spotter.audit import record_event
from spotter.audit_constants import EVENT_VARIANT_DISABLED, EVENT_VARIANT_ENABLED
from spotter.db import DB
from spotter.models import (
    ActionLogEntry,
    AssistantResponse,
    ExperimentAssignment,
    QualitySnapshot,
    SafetyViolation,
    utcnow,
)
from spotter.services.action_log import STATUS_FAILED, TERMINAL_STATUSES
from spotter.services.safety_validator import ClaimRule
from spotter.services.variant_selector import VariantSelector

logger = config.logger

UNSAFE_RULESET_VERSION = "1"
UNSAFE_RESPONSE_RULES: tuple[ClaimRule, ...] = (
    ClaimRule(re.compile(r"increase.*(?:weight|load).*(?:20|25|30|40|50)%", re.IGNORECASE), "aggressive_progression"),
    ClaimRule(re.compile(r"push through.*pain", re.IGNORECASE), "pain_override"),
    ClaimRule(re.compile(r"ignore.*discomfort", re.IGNORECASE), "discomfort_override"),
)

EXCERPT_LENGTH = 200


def match_unsafe_categories(text: str) -> list[str]:
    categories: list[str] = []
    for rule in UNSAFE_RESPONSE_RULES:
        if rule.pattern.search(text or "") and rule.category not in categories:
            categories.append(rule.category)
    return categories


def percentile(values: Sequence[float], q: float) -> Optional[float]:
    if not values:
        return None
    return float(np.percentile(np.asarray(values, dtype=float), q))


def check_response_safety(
    response_text: str,
    variant_id: Optional[str] = None,
    session_id: Optional[str] = None,
    user_id: Optional[str] = None,
    db=None,
) -> dict:
    """Record one SafetyViolation per matched unsafe-output category."""
    categories = match_unsafe_categories(response_text)
    if not categories:
        return {"safe": True, "categories": []}

    own_session = db is None
    if own_session:
        db = DB.SessionLocal()
    try:
        for category in categories:
            db.add(
                SafetyViolation(
                    user_id=user_id,
                    session_id=session_id,
                    variant_id=variant_id,
                    category=category,
                    excerpt=(response_text or "")[:EXCERPT_LENGTH],
                    created_at=utcnow(),
                )
            )
        if own_session:
            db.commit()
    finally:
        if own_session:
            db.close()
    logger.warning(
        "unsafe_response_detected",
        extra={"variant_id": variant_id, "session_id": session_id, "categories": categories},
    )
    return {"safe": False, "categories": categories}


def record_assistant_response(
    *,
    user_id: str,
    session_id: str,
    response_text: str,
    latency_ms: int,
    variant_id: Optional[str] = None,
    tokens_used: Optional[int] = None,
) -> dict:
    alerts = []
    if tokens_used is not None and tokens_used > config.TOKEN_USAGE_ALERT:
        alerts.append({
            "level": "warning",
            "metric": "token_usage",
            "value": tokens_used,
            "threshold": config.TOKEN_USAGE_ALERT,
            "message": f"High token usage: {tokens_used} tokens",
        })
        logger.warning("token_usage_high", extra={"session_id": session_id, "tokens_used": tokens_used})

    db = DB.SessionLocal()
    try:
        safety = check_response_safety(response_text, variant_id, session_id, user_id, db=db)
        row = AssistantResponse(
            user_id=user_id,
            session_id=session_id,
            variant_id=variant_id,
            latency_ms=int(latency_ms),
            tokens_used=tokens_used,
            response_length=len(response_text or ""),
            flagged=not safety["safe"],
            created_at=utcnow(),
        )
        db.add(row)
        db.commit()
        response_id = row.id
    finally:
        db.close()
    return {
        "id": response_id,
        "safe": safety["safe"],
        "categories": safety["categories"],
        "alerts": alerts,
    }


def _variant_sessions(db, variant_id: str):
    return (
        db.query(ExperimentAssignment.session_id)
        .filter(
            ExperimentAssignment.variant_id == variant_id,
            ExperimentAssignment.superseded_at.is_(None),
        )
        .subquery()
    )


def collect_window_metrics(db, window_start: datetime, variant_id: Optional[str] = None) -> dict:
    tool_query = db.query(ActionLogEntry.status).filter(
        ActionLogEntry.created_at >= window_start,
        ActionLogEntry.status.in_(TERMINAL_STATUSES),
    )
    violation_query = db.query(SafetyViolation.variant_id).filter(SafetyViolation.created_at >= window_start)
    latency_query = db.query(AssistantResponse.latency_ms).filter(AssistantResponse.created_at >= window_start)
    if variant_id:
        sessions = _variant_sessions(db, variant_id)
        tool_query = tool_query.filter(ActionLogEntry.session_id.in_(db.query(sessions.c.session_id)))
        violation_query = violation_query.filter(SafetyViolation.variant_id == variant_id)
        latency_query = latency_query.filter(AssistantResponse.variant_id == variant_id)

    statuses = [row.status for row in tool_query.all()]
    errors = sum(1 for status in statuses if status == STATUS_FAILED)
    violations_by_variant: dict[str, int] = {}
    violation_count = 0
    for (row_variant,) in violation_query.all():
        violation_count += 1
        if row_variant:
            violations_by_variant[row_variant] = violations_by_variant.get(row_variant, 0) + 1
    latencies = [row.latency_ms for row in latency_query.all()]

    return {
        "tool_call_count": len(statuses),
        "tool_call_errors": errors,
        "tool_call_error_rate": errors / len(statuses) if statuses else 0.0,
        "safety_violation_count": violation_count,
        "violations_by_variant": violations_by_variant,
        "response_count": len(latencies),
        "p95_latency_ms": percentile(latencies, 95),
        "p99_latency_ms": percentile(latencies, 99),
    }


def evaluate_thresholds(metrics: dict) -> list[dict]:
    alerts = []
    error_rate = metrics["tool_call_error_rate"]
    if error_rate >= config.ERROR_RATE_CRITICAL:
        level, threshold = "critical", config.ERROR_RATE_CRITICAL
    elif error_rate >= config.ERROR_RATE_WARNING:
        level, threshold = "warning", config.ERROR_RATE_WARNING
    else:
        level = None
    if level:
        alerts.append({
            "level": level,
            "metric": "tool_call_error_rate",
            "value": error_rate,
            "threshold": threshold,
            "message": f"Tool call error rate {error_rate * 100:.1f}% exceeds {level} threshold",
        })

    violations = metrics["safety_violation_count"]
    if violations > 0:
        alerts.append({
            "level": "critical",
            "metric": "safety_violations",
            "value": violations,
            "threshold": 1,
            "message": f"{violations} safety violations detected",
        })

    p95 = metrics["p95_latency_ms"]
    if p95 is not None:
        if p95 >= config.P95_LATENCY_CRITICAL_MS:
            level, threshold = "critical", config.P95_LATENCY_CRITICAL_MS
        elif p95 >= config.P95_LATENCY_WARNING_MS:
            level, threshold = "warning", config.P95_LATENCY_WARNING_MS
        else:
            level = None
        if level:
            alerts.append({
                "level": level,
                "metric": "p95_latency_ms",
                "value": p95,
                "threshold": threshold,
                "message": f"P95 latency {p95:.0f}ms exceeds {level} threshold",
            })
    return alerts


def gates_pass(metrics: dict) -> bool:
    p95 = metrics["p95_latency_ms"]
    return (
        metrics["response_count"] >= config.RECOVERY_MIN_SAMPLES
        and metrics["safety_violation_count"] == 0
        and metrics["tool_call_error_rate"] < config.ERROR_RATE_CRITICAL
        and (p95 is None or p95 < config.P95_LATENCY_CRITICAL_MS)
    )


class QualityMonitor:
    def __init__(
        self,
        selector: VariantSelector,
        interval_seconds: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ):
        self._selector = selector
        self._interval = config.QUALITY_CHECK_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self._window = config.QUALITY_WINDOW_SECONDS if window_seconds is None else window_seconds
        self._task: Optional[asyncio.Task] = None
        self._last_snapshot: Optional[dict] = None

    @property
    def last_snapshot(self) -> Optional[dict]:
        return self._last_snapshot

    def disable_variant(self, variant_id: str, reason: str, actor_type: str = "monitor") -> int:
        evicted = self._selector.disable_variant(variant_id)
        record_event(
            event_type=EVENT_VARIANT_DISABLED,
            actor_type=actor_type,
            target_type="variant",
            target_ids=[variant_id],
            count_affected=evicted,
            reason=reason,
        )
        return evicted

    def enable_variant(self, variant_id: str, reason: str, actor_type: str = "operator") -> bool:
        was_disabled = self._selector.enable_variant(variant_id)
        if was_disabled:
            record_event(
                event_type=EVENT_VARIANT_ENABLED,
                actor_type=actor_type,
                target_type="variant",
                target_ids=[variant_id],
                reason=reason,
            )
        return was_disabled

    def variant_metrics(self, variant_id: str, now: Optional[datetime] = None) -> dict:
        window_start = (now or utcnow()) - timedelta(seconds=self._window)
        db = DB.SessionLocal()
        try:
            return collect_window_metrics(db, window_start, variant_id)
        finally:
            db.close()

    def check_quality_gates(self, now: Optional[datetime] = None) -> dict:
        """Compute and persist one snapshot, disable implicated variants, then try recovery."""
        now = now or utcnow()
        window_start = now - timedelta(seconds=self._window)
        db = DB.SessionLocal()
        try:
            metrics = collect_window_metrics(db, window_start)
            alerts = evaluate_thresholds(metrics)
            db.add(
                QualitySnapshot(
                    window_start=window_start,
                    window_end=now,
                    tool_call_count=metrics["tool_call_count"],
                    tool_call_error_rate=metrics["tool_call_error_rate"],
                    safety_violation_count=metrics["safety_violation_count"],
                    p95_latency_ms=metrics["p95_latency_ms"],
                    p99_latency_ms=metrics["p99_latency_ms"],
                    alerts=alerts,
                    created_at=now,
                )
            )
            db.commit()
        finally:
            db.close()

        for alert in alerts:
            if alert["level"] == "critical":
                logger.error("quality_alert", extra={"alert": alert})
            else:
                logger.warning("quality_alert", extra={"alert": alert})

        disabled = []
        for variant_id, count in sorted(metrics["violations_by_variant"].items()):
            if not self._selector.is_enabled(variant_id):
                continue
            try:
                self.disable_variant(variant_id, reason=f"{count} safety violations in quality window")
            except ValueError:
                logger.warning("quality_unknown_variant", extra={"variant_id": variant_id})
                continue
            disabled.append(variant_id)

        recovered = self.check_recovery(now, skip=disabled)
        snapshot = {
            "window_start": window_start.isoformat(),
            "window_end": now.isoformat(),
            **metrics,
            "alerts": alerts,
            "disabled_variants": disabled,
            "recovered_variants": recovered,
        }
        self._last_snapshot = snapshot
        return snapshot

    def check_recovery(self, now: Optional[datetime] = None, skip: Sequence[str] = ()) -> list[str]:
        recovered = []
        for variant_id in sorted(self._selector.disabled_ids()):
            if variant_id in skip:
                continue
            metrics = self.variant_metrics(variant_id, now)
            if gates_pass(metrics):
                if self.enable_variant(variant_id, reason="quality gates passed", actor_type="monitor"):
                    recovered.append(variant_id)
        return recovered

    def get_variant_status(self, now: Optional[datetime] = None) -> dict:
        status = {}
        for variant in self._selector.catalog:
            metrics = self.variant_metrics(variant.id, now)
            status[variant.id] = {
                "enabled": self._selector.is_enabled(variant.id),
                "metrics": metrics,
                "quality_gates": {
                    "passed": gates_pass(metrics),
                    "min_samples": config.RECOVERY_MIN_SAMPLES,
                    "alerts": evaluate_thresholds(metrics),
                },
            }
        return status

    async def start(self) -> None:
        if self._task is None and self._interval > 0:
            self._task = asyncio.create_task(self._monitor_loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await asyncio.to_thread(self.check_quality_gates)
            except Exception as exc:
                logger.warning(f"Quality monitor error: {exc}")


__all__ = [
    "UNSAFE_RESPONSE_RULES",
    "QualityMonitor",
    "check_response_safety",
    "collect_window_metrics",
    "evaluate_thresholds",
    "gates_pass",
    "match_unsafe_categories",
    "percentile",
    "record_assistant_response",
]
