"""
Process-local security monitoring: request rates, bypass attempts, memory
poisoning, and action-log integrity.

Counters and the suspicious-user set live in this process only; there is no
cross-process coordination.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import spotter.config as config
from spotter.audit import record_event
from spotter.audit_constants import EVENT_SECURITY_ALERT, EVENT_USER_FLAGGED, EVENT_USER_UNFLAGGED
from spotter.models import utcnow
from spotter.services import action_log
from spotter.services.memory_guardian import detect_poisoning, emergency_clear

logger = config.logger

MAX_RECENT_ALERTS = 500


class AlertType(str, Enum):
    MEMORY_POISONING = "MEMORY_POISONING"
    SAFETY_BYPASS = "SAFETY_BYPASS"
    RAPID_REQUESTS = "RAPID_REQUESTS"
    SUSPICIOUS_PROGRESSION = "SUSPICIOUS_PROGRESSION"
    INTEGRITY_VIOLATION = "INTEGRITY_VIOLATION"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2, Severity.CRITICAL: 3}
POISONING_SEVERITY = {
    "clear_context": Severity.CRITICAL,
    "restrict": Severity.HIGH,
    "flag": Severity.MEDIUM,
}


@dataclass(frozen=True)
class SecurityAlert:
    type: AlertType
    severity: Severity
    user_id: Optional[str]
    details: dict = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: utcnow().isoformat())

    def as_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "user_id": self.user_id,
            "details": self.details,
            "created_at": self.created_at,
        }


def classify_bypass_severity(reason: str, increase_percent: Optional[float] = None) -> Severity:
    lowered = (reason or "").lower()
    if "dangerous" in lowered or "medical" in lowered:
        return Severity.CRITICAL
    if "suspicious" in lowered or (increase_percent is not None and increase_percent > 50):
        return Severity.HIGH
    if increase_percent is not None and increase_percent > 20:
        return Severity.MEDIUM
    return Severity.LOW


class SecurityMonitor:
    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
        min_interval_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._max_requests = config.RATE_LIMIT_MAX_REQUESTS if max_requests is None else max_requests
        self._window = config.RATE_LIMIT_WINDOW_SECONDS if window_seconds is None else window_seconds
        self._min_interval = (
            config.TOOL_MIN_INTERVAL_SECONDS if min_interval_seconds is None else min_interval_seconds
        )
        self._clock = clock
        self._requests: dict[str, deque] = {}
        self._last_tool_request: dict[str, float] = {}
        self._counters_lock = threading.Lock()
        self._suspicious: dict[str, dict] = {}
        self._suspicious_lock = threading.Lock()
        self._alerts: deque = deque(maxlen=MAX_RECENT_ALERTS)
        self._alerts_lock = threading.Lock()
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    def monitor_request_rate(self, user_id: str) -> bool:
        """Sliding-window request count. Returns False (and alerts) once the window is full."""
        now = self._clock()
        with self._counters_lock:
            window = self._requests.setdefault(user_id, deque())
            while window and now - window[0] >= self._window:
                window.popleft()
            if len(window) >= self._max_requests:
                count = len(window)
                allowed = False
            else:
                window.append(now)
                allowed = True
        if not allowed:
            self.handle_alert(
                SecurityAlert(
                    AlertType.RAPID_REQUESTS,
                    Severity.HIGH,
                    user_id,
                    {"requests_in_window": count, "window_seconds": self._window},
                )
            )
        return allowed

    def check_min_interval(self, user_id: str) -> bool:
        now = self._clock()
        with self._counters_lock:
            last = self._last_tool_request.get(user_id)
            if last is not None and now - last < self._min_interval:
                return False
            self._last_tool_request[user_id] = now
        return True

    def cleanup_counters(self) -> int:
        now = self._clock()
        removed = 0
        with self._counters_lock:
            for user_id in list(self._requests):
                window = self._requests[user_id]
                while window and now - window[0] >= self._window:
                    window.popleft()
                if not window:
                    del self._requests[user_id]
                    removed += 1
            for user_id, last in list(self._last_tool_request.items()):
                if now - last >= max(self._min_interval, self._window):
                    del self._last_tool_request[user_id]
        return removed

    # ------------------------------------------------------------------
    # Detectors
    # ------------------------------------------------------------------

    def monitor_safety_bypass(
        self,
        user_id: str,
        reason: str,
        details: Optional[dict] = None,
    ) -> SecurityAlert:
        details = dict(details or {})
        severity = classify_bypass_severity(reason, details.get("increase_percent"))
        alert = SecurityAlert(AlertType.SAFETY_BYPASS, severity, user_id, {"reason": reason, **details})
        self.handle_alert(alert)
        return alert

    def monitor_suspicious_progression(self, user_id: str, details: dict) -> SecurityAlert:
        alert = SecurityAlert(AlertType.SUSPICIOUS_PROGRESSION, Severity.HIGH, user_id, dict(details))
        self.handle_alert(alert)
        return alert

    def monitor_memory_context(self, user_id: str) -> Optional[SecurityAlert]:
        analysis = detect_poisoning(user_id)
        if not analysis["suspicious"]:
            return None
        alert = SecurityAlert(
            AlertType.MEMORY_POISONING,
            POISONING_SEVERITY[analysis["recommendation"]],
            user_id,
            {"patterns": analysis["patterns"], "recommendation": analysis["recommendation"]},
        )
        self.handle_alert(alert)
        return alert

    def monitor_integrity(self) -> list[SecurityAlert]:
        audit = action_log.run_integrity_audit()
        alerts = []
        for issue in audit["issues"]:
            alert = SecurityAlert(AlertType.INTEGRITY_VIOLATION, Severity.CRITICAL, None, dict(issue))
            self.handle_alert(alert)
            alerts.append(alert)
        return alerts

    # ------------------------------------------------------------------
    # Alert handling and flags
    # ------------------------------------------------------------------

    def handle_alert(self, alert: SecurityAlert) -> None:
        with self._alerts_lock:
            self._alerts.append(alert)
        payload = alert.as_dict()
        if alert.severity == Severity.CRITICAL:
            logger.critical("security_alert", extra={"alert": payload})
        else:
            logger.warning("security_alert", extra={"alert": payload})

        record_event(
            event_type=EVENT_SECURITY_ALERT,
            actor_type="monitor",
            user_id=alert.user_id,
            target_type="user" if alert.user_id else "action_log",
            target_ids=[alert.user_id] if alert.user_id else [],
            reason=f"{alert.type.value}:{alert.severity.value}",
            metadata={"alert_type": alert.type.value, "severity": alert.severity.value},
        )

        if alert.user_id is None:
            return
        if alert.type == AlertType.MEMORY_POISONING and alert.severity == Severity.CRITICAL:
            emergency_clear(alert.user_id, reason="Critical memory poisoning detected")
            self.flag_user(alert.user_id, "Critical memory poisoning detected")
            return
        if alert.type == AlertType.SUSPICIOUS_PROGRESSION:
            return
        if SEVERITY_RANK[alert.severity] >= SEVERITY_RANK[Severity.MEDIUM]:
            self.flag_user(alert.user_id, f"{alert.type.value} ({alert.severity.value})")

    def flag_user(self, user_id: str, reason: str, actor_type: str = "monitor") -> bool:
        with self._suspicious_lock:
            already = user_id in self._suspicious
            self._suspicious[user_id] = {"reason": reason, "flagged_at": utcnow().isoformat()}
        if not already:
            record_event(
                event_type=EVENT_USER_FLAGGED,
                actor_type=actor_type,
                user_id=user_id,
                target_type="user",
                target_ids=[user_id],
                reason=reason,
            )
            logger.warning("user_flagged", extra={"user_id": user_id, "reason": reason})
        return not already

    def clear_user_flag(self, user_id: str, actor_type: str = "operator") -> bool:
        with self._suspicious_lock:
            removed = self._suspicious.pop(user_id, None) is not None
        if removed:
            record_event(
                event_type=EVENT_USER_UNFLAGGED,
                actor_type=actor_type,
                user_id=user_id,
                target_type="user",
                target_ids=[user_id],
            )
        return removed

    def is_user_suspicious(self, user_id: str) -> bool:
        with self._suspicious_lock:
            return user_id in self._suspicious

    def recent_alerts(self, limit: int = 50) -> list[dict]:
        with self._alerts_lock:
            alerts = list(self._alerts)[-limit:]
        return [alert.as_dict() for alert in reversed(alerts)]

    def get_security_status(self) -> dict:
        with self._suspicious_lock:
            suspicious = dict(self._suspicious)
        with self._counters_lock:
            tracked = len(self._requests)
        with self._alerts_lock:
            alerts = list(self._alerts)
        by_severity = {severity.value: 0 for severity in Severity}
        for alert in alerts:
            by_severity[alert.severity.value] += 1
        return {
            "suspicious_users": len(suspicious),
            "flagged": suspicious,
            "tracked_users": tracked,
            "recent_alerts": len(alerts),
            "alerts_by_severity": by_severity,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._tasks:
            return
        if config.COUNTER_CLEANUP_INTERVAL_SECONDS > 0:
            self._tasks.append(asyncio.create_task(self._cleanup_loop()))
        if config.INTEGRITY_AUDIT_INTERVAL_SECONDS > 0:
            self._tasks.append(asyncio.create_task(self._integrity_loop()))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(config.COUNTER_CLEANUP_INTERVAL_SECONDS)
            try:
                self.cleanup_counters()
            except Exception as exc:
                logger.warning(f"Security counter cleanup error: {exc}")

    async def _integrity_loop(self) -> None:
        while True:
            await asyncio.sleep(config.INTEGRITY_AUDIT_INTERVAL_SECONDS)
            try:
                await asyncio.to_thread(self.monitor_integrity)
            except Exception as exc:
                logger.warning(f"Integrity audit error: {exc}")


__all__ = [
    "AlertType",
    "Severity",
    "SecurityAlert",
    "SecurityMonitor",
    "classify_bypass_severity",
]
