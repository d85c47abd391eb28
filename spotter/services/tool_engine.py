"""
Tool execution engine: the only path through which the assistant mutates user state.

Every call runs received -> validated -> executed -> logged. A pending
action-log entry is written before anything else and exactly one terminal
entry after. Validation and safety failures come back as error payloads;
provider, storage and integrity failures are logged as failed and raised.
"""

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

import spotter.config as config
from spotter.context import ToolExecutionContext
from spotter.db import DB
from spotter.errors import IntegrityViolation, ProviderError, SafetyRejection, ValidationError
from spotter.models import Course, ProgressLog, UserProfile, utcnow
from spotter.services import action_log
from spotter.services.safety_validator import (
    SafetyDecision,
    normalize_exercise_key,
    validate_progression,
)
from spotter.services.security_monitor import SecurityMonitor
from spotter.validators import (
    _is_int,
    validate_choice,
    validate_metadata,
    validate_optional_text,
    validate_workout_input,
)

logger = config.logger

KG_TO_LBS = 2.20462
FRAUD_CATEGORIES = ("gap_jump", "zigzag", "round_numbers")
SUMMARY_METRICS = ("exercise", "volume", "frequency", "personal_records")
SUMMARY_TIMEFRAMES = ("week", "month", "all_time")
TIMEFRAME_DAYS = {"week": 7, "month": 30}
TARGET_LEVELS = ("beginner", "intermediate", "advanced")
WORKOUT_UPDATE_FIELDS = ("exercise", "sets", "reps", "weight", "unit", "duration", "notes")
COURSE_UPDATE_FIELDS = ("title", "target_level", "timeline_weeks", "preferences")
MAX_COURSE_TITLE_LENGTH = 200
MAX_TIMELINE_WEEKS = 104

RETRY_LATER_MESSAGE = "Something went wrong on our side. Please try again in a moment."

TOOL_SCHEMAS: list[dict] = [
    {
        "type": "function",
        "function": {
            "name": "log_workout",
            "description": "Log a completed workout with exercise details",
            "parameters": {
                "type": "object",
                "properties": {
                    "exercise": {"type": "string", "description": "Name of the exercise performed"},
                    "sets": {"type": "integer", "minimum": 1, "maximum": 20},
                    "reps": {"type": "array", "items": {"type": "integer", "minimum": 1, "maximum": 100}},
                    "weight": {"type": "array", "items": {"type": "number", "minimum": 0, "maximum": 2000}},
                    "unit": {"type": "string", "enum": ["kg", "lbs"]},
                    "duration": {"type": "string", "maxLength": 50},
                    "notes": {"type": "string", "maxLength": 500},
                },
                "required": ["exercise", "sets", "reps"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "update_progress",
            "description": "Correct a previously logged workout",
            "parameters": {
                "type": "object",
                "properties": {
                    "log_id": {"type": "integer"},
                    "updates": {
                        "type": "object",
                        "properties": {
                            "exercise": {"type": "string"},
                            "sets": {"type": "integer"},
                            "reps": {"type": "array", "items": {"type": "integer"}},
                            "weight": {"type": "array", "items": {"type": "number"}},
                            "unit": {"type": "string", "enum": ["kg", "lbs"]},
                            "duration": {"type": "string"},
                            "notes": {"type": "string"},
                        },
                    },
                },
                "required": ["log_id", "updates"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_progress_summary",
            "description": "Summarize the user's training progress",
            "parameters": {
                "type": "object",
                "properties": {
                    "metric": {"type": "string", "enum": list(SUMMARY_METRICS)},
                    "timeframe": {"type": "string", "enum": list(SUMMARY_TIMEFRAMES)},
                    "exercise": {"type": "string"},
                },
                "required": ["metric"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "update_course_goal",
            "description": "Update the goals of a training course",
            "parameters": {
                "type": "object",
                "properties": {
                    "course_id": {"type": "integer"},
                    "updates": {
                        "type": "object",
                        "properties": {
                            "title": {"type": "string", "maxLength": MAX_COURSE_TITLE_LENGTH},
                            "target_level": {"type": "string", "enum": list(TARGET_LEVELS)},
                            "timeline_weeks": {"type": "integer", "minimum": 1, "maximum": MAX_TIMELINE_WEEKS},
                            "preferences": {"type": "object"},
                        },
                    },
                },
                "required": ["course_id", "updates"],
            },
        },
    },
]


def to_lbs(weights: list, unit: Optional[str]) -> list[float]:
    if unit == "kg":
        return [round(w * KG_TO_LBS, 2) for w in weights]
    return [float(w) for w in weights]


def derive_metrics(reps: list[int], weight_lbs: Optional[list[float]]) -> dict:
    total_reps = sum(reps)
    if weight_lbs:
        total_volume = round(sum(w * r for w, r in zip(weight_lbs, reps)), 2)
        max_weight = max(weight_lbs)
    else:
        total_volume = 0.0
        max_weight = None
    return {"total_volume": total_volume, "total_reps": total_reps, "max_weight": max_weight}


def _serialize_log(row: ProgressLog) -> dict:
    return {
        "log_id": row.id,
        "exercise": row.exercise,
        "sets": row.sets,
        "reps": row.reps,
        "weight": row.weight,
        "unit": row.unit,
        "original_unit": row.original_unit,
        "original_weight": row.original_weight,
        "duration": row.duration,
        "notes": row.notes,
        "total_volume": row.total_volume,
        "total_reps": row.total_reps,
        "max_weight": row.max_weight,
        "logged_at": row.logged_at.isoformat(),
    }


def _serialize_course(course: Course) -> dict:
    return {
        "course_id": course.id,
        "title": course.title,
        "target_level": course.target_level,
        "timeline_weeks": course.timeline_weeks,
        "preferences": course.preferences or {},
    }


# =============================================================================
# Error payloads
# =============================================================================

def _tool_error_payload(tool_name: str, exc: ValidationError) -> dict:
    payload = {
        "status": "error",
        "error_type": "validation_error",
        "error_code": exc.error_code,
        "tool": tool_name,
        "field": exc.field,
        "message": str(exc),
    }
    if exc.data:
        payload.update(exc.data)
    return payload


def _safety_error_payload(tool_name: str, exc: SafetyRejection) -> dict:
    message = exc.reason
    if exc.max_safe_value is not None:
        message = f"{exc.reason}. For safety, try {exc.max_safe_value:g} lbs or less this session."
    return {
        "status": "error",
        "error_type": "safety_rejection",
        "error_code": "SAFETY_VIOLATION",
        "tool": tool_name,
        "message": message,
        "reason": exc.reason,
        "max_safe_value": exc.max_safe_value,
        "categories": list(exc.categories),
    }


def _rate_limited_payload(tool_name: str) -> dict:
    return {
        "status": "error",
        "error_type": "rate_limited",
        "error_code": "RATE_LIMITED",
        "tool": tool_name,
        "message": "Please wait a moment before making another change.",
    }


def _log_validation_issue(tool_name: str, exc: ValidationError, warn: bool = False) -> None:
    payload = {
        "tool": tool_name,
        "field": exc.field,
        "error_type": exc.error_type,
        "detail": str(exc),
    }
    if warn:
        logger.warning("tool_validation_error", extra=payload)
    else:
        logger.info("tool_validation_error", extra=payload)


def _tool_error_handler(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    async def wrapper(self, ctx, params, gate):
        try:
            return await fn(self, ctx, params, gate)
        except ValidationError as exc:
            _log_validation_issue(fn.__name__, exc, warn=False)
            return _tool_error_payload(fn.__name__, exc)
        except SafetyRejection as exc:
            logger.warning(
                "tool_safety_rejection",
                extra={"tool": fn.__name__, "user_id": ctx.user_id, "categories": list(exc.categories)},
            )
            return _safety_error_payload(fn.__name__, exc)
    return wrapper


def service_tool(fn: Callable[..., Any]) -> Callable[..., Any]:
    return _tool_error_handler(fn)


class CommitGate:
    """
    Settles the race between a tool's commit and its timeout.

    Whichever of ``commit`` and ``cancel`` takes the lock first wins: a
    cancelled call rolls back at its commit point, and a commit that has
    started cannot be cancelled, so the caller waits for it instead.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._cancelled = False
        self._committing = False

    def commit(self, db) -> None:
        with self._lock:
            if self._cancelled:
                db.rollback()
                raise ProviderError("tool execution cancelled after timeout")
            self._committing = True
        db.commit()

    def cancel(self) -> bool:
        """Cancel unless a commit is already under way."""
        with self._lock:
            if self._committing:
                return False
            self._cancelled = True
            return True


def _discard_abandoned(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.info("tool_abandoned_after_timeout", extra={"error": type(exc).__name__})


def _require_int_id(value: Any, field: str) -> int:
    if not _is_int(value) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer", field=field, error_type="invalid_type")
    return value


def _require_updates(params: dict, allowed: tuple[str, ...]) -> dict:
    updates = params.get("updates")
    if not isinstance(updates, dict) or not updates:
        raise ValidationError("updates must be a non-empty object", field="updates", error_type="required")
    unknown = sorted(set(updates) - set(allowed))
    if unknown:
        raise ValidationError(
            f"Unsupported update fields: {', '.join(unknown)}",
            field="updates",
            error_type="invalid_key",
        )
    return updates


class ToolEngine:
    """
    Validated, safety-gated, audited tool dispatch.

    The tool methods are reached through ``execute`` only; calling them
    directly skips the action log.
    """

    def __init__(self, security: SecurityMonitor, timeout_seconds: Optional[float] = None):
        self._security = security
        self._timeout = config.TOOL_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self._progression_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._locks_guard = threading.Lock()
        self._tools = {
            "log_workout": self.log_workout,
            "update_progress": self.update_progress,
            "get_progress_summary": self.get_progress_summary,
            "update_course_goal": self.update_course_goal,
        }

    @property
    def tool_names(self) -> tuple[str, ...]:
        return tuple(self._tools)

    def _progression_lock(self, user_id: str, exercise_key: str) -> asyncio.Lock:
        key = (user_id, exercise_key)
        with self._locks_guard:
            lock = self._progression_locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._progression_locks[key] = lock
            return lock

    async def execute(
        self,
        tool_name: str,
        params: Optional[dict],
        ctx: ToolExecutionContext,
        request_id: Optional[str] = None,
    ) -> dict:
        request_id = request_id or uuid.uuid4().hex
        params = params if params is not None else {}
        request_payload = {"tool": tool_name, "parameters": params}
        log_fields = {
            "user_id": ctx.user_id,
            "session_id": ctx.session_id,
            "scope_id": ctx.scope_id,
            "tool_name": tool_name,
            "request_id": request_id,
            "request_payload": request_payload,
        }
        started = time.perf_counter()
        await asyncio.to_thread(action_log.write_entry, status=action_log.STATUS_PENDING, **log_fields)

        gate = CommitGate()
        task = asyncio.ensure_future(self._dispatch(tool_name, params, ctx, gate))
        try:
            await asyncio.wait({task}, timeout=self._timeout)
        except asyncio.CancelledError:
            gate.cancel()
            task.add_done_callback(_discard_abandoned)
            raise
        if not task.done() and gate.cancel():
            # The task keeps its progression lock until the worker thread
            # reaches the gate and rolls back.
            task.add_done_callback(_discard_abandoned)
            logger.warning("tool_timeout", extra={"tool": tool_name, "request_id": request_id})
            await self._finish_failed(log_fields, started, "TIMEOUT")
            raise ProviderError(f"{tool_name} timed out after {self._timeout}s")

        try:
            result = await task
        except ProviderError:
            await self._finish_failed(log_fields, started, "PROVIDER_ERROR")
            raise
        except SQLAlchemyError as exc:
            await self._finish_failed(log_fields, started, "STORAGE_ERROR")
            raise ProviderError(f"storage unavailable: {exc.__class__.__name__}") from exc
        except IntegrityViolation:
            await self._finish_failed(log_fields, started, "INTEGRITY_VIOLATION")
            raise

        status = action_log.STATUS_SUCCESS if result.get("status") == "success" else action_log.STATUS_FAILED
        await asyncio.to_thread(
            action_log.write_entry,
            status=status,
            result_payload=result,
            error_code=result.get("error_code"),
            execution_time_ms=int((time.perf_counter() - started) * 1000),
            **log_fields,
        )
        result["request_id"] = request_id
        return result

    async def _finish_failed(self, log_fields: dict, started: float, error_code: str) -> None:
        await asyncio.to_thread(
            action_log.write_entry,
            status=action_log.STATUS_FAILED,
            result_payload={"status": "error", "error_code": error_code, "message": RETRY_LATER_MESSAGE},
            error_code=error_code,
            execution_time_ms=int((time.perf_counter() - started) * 1000),
            **log_fields,
        )

    async def _dispatch(
        self,
        tool_name: str,
        params: dict,
        ctx: ToolExecutionContext,
        gate: CommitGate,
    ) -> dict:
        handler = self._tools.get(tool_name)
        if handler is None:
            exc = ValidationError(
                f"Unknown tool: {tool_name}",
                field="tool_name",
                error_type="unknown_tool",
                error_code="UNKNOWN_TOOL",
            )
            _log_validation_issue(tool_name, exc, warn=True)
            return _tool_error_payload(tool_name, exc)
        if not self._security.check_min_interval(ctx.user_id):
            return _rate_limited_payload(tool_name)
        if not await asyncio.to_thread(self._security.monitor_request_rate, ctx.user_id):
            return _rate_limited_payload(tool_name)
        if not isinstance(params, dict):
            return _tool_error_payload(
                tool_name,
                ValidationError("parameters must be an object", field="params", error_type="invalid_type"),
            )
        return await handler(ctx, params, gate)

    async def _check_progression(
        self,
        ctx: ToolExecutionContext,
        exercise_key: str,
        proposed: float,
        exclude_log_id: Optional[int] = None,
    ) -> SafetyDecision:
        decision = await asyncio.to_thread(
            validate_progression,
            ctx.user_id,
            ctx.scope_id,
            exercise_key,
            proposed,
            exclude_log_id,
        )
        if decision.safe:
            return decision

        details = {"exercise": exercise_key, "proposed": proposed, "max_safe_value": decision.max_safe_value}
        if decision.last_value:
            details["increase_percent"] = round((proposed - decision.last_value) / decision.last_value * 100, 1)
        if any(category in FRAUD_CATEGORIES for category in decision.categories):
            await asyncio.to_thread(
                self._security.monitor_suspicious_progression,
                ctx.user_id,
                {**details, "categories": list(decision.categories)},
            )
        else:
            await asyncio.to_thread(self._security.monitor_safety_bypass, ctx.user_id, decision.reason, details)
        raise SafetyRejection(decision.reason, decision.max_safe_value, decision.categories)

    # -------------------------------------------------------------------------
    # Tools
    # -------------------------------------------------------------------------

    @service_tool
    async def log_workout(self, ctx: ToolExecutionContext, params: dict, gate: CommitGate) -> dict:
        data = validate_workout_input(params)
        exercise_key = normalize_exercise_key(data["exercise"])
        weight_lbs = to_lbs(data["weight"], data["unit"]) if "weight" in data else None

        if weight_lbs:
            async with self._progression_lock(ctx.user_id, exercise_key):
                await self._check_progression(ctx, exercise_key, max(weight_lbs))
                row = await asyncio.to_thread(self._insert_log, ctx, data, exercise_key, weight_lbs, gate)
        else:
            row = await asyncio.to_thread(self._insert_log, ctx, data, exercise_key, None, gate)

        logger.info("workout_logged", extra={"user_id": ctx.user_id, "log_id": row["log_id"]})
        return {
            "status": "success",
            "tool": "log_workout",
            "message": f"Logged {data['sets']} sets of {data['exercise']}",
            **row,
        }

    def _insert_log(
        self,
        ctx: ToolExecutionContext,
        data: dict,
        exercise_key: str,
        weight_lbs: Optional[list[float]],
        gate: CommitGate,
    ) -> dict:
        now = utcnow()
        db = DB.SessionLocal()
        try:
            row = ProgressLog(
                user_id=ctx.user_id,
                scope_id=ctx.scope_id,
                exercise=data["exercise"],
                exercise_key=exercise_key,
                sets=data["sets"],
                reps=data["reps"],
                weight=weight_lbs,
                unit="lbs" if weight_lbs is not None else None,
                original_unit=data.get("unit"),
                original_weight=data.get("weight"),
                duration=data.get("duration"),
                notes=data.get("notes"),
                logged_at=now,
                **derive_metrics(data["reps"], weight_lbs),
            )
            db.add(row)
            profile = db.query(UserProfile).filter(UserProfile.user_id == ctx.user_id).first()
            if profile is None:
                db.add(UserProfile(user_id=ctx.user_id, created_at=now, last_active_at=now))
            else:
                profile.last_active_at = now
            gate.commit(db)
            return _serialize_log(row)
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    @service_tool
    async def update_progress(self, ctx: ToolExecutionContext, params: dict, gate: CommitGate) -> dict:
        log_id = _require_int_id(params.get("log_id"), "log_id")
        updates = _require_updates(params, WORKOUT_UPDATE_FIELDS)
        current = await asyncio.to_thread(self._load_owned_log, ctx.user_id, log_id)

        merged = {
            "exercise": current["exercise"],
            "sets": current["sets"],
            "reps": current["reps"],
            "weight": current["original_weight"],
            "unit": current["original_unit"],
            "duration": current["duration"],
            "notes": current["notes"],
        }
        merged = {key: value for key, value in merged.items() if value is not None}
        merged.update(updates)
        if merged.get("weight") is None:
            merged.pop("weight", None)
            merged.pop("unit", None)
        data = validate_workout_input(merged)
        exercise_key = normalize_exercise_key(data["exercise"])
        weight_lbs = to_lbs(data["weight"], data["unit"]) if "weight" in data else None

        async with self._progression_lock(ctx.user_id, exercise_key):
            new_max = max(weight_lbs) if weight_lbs else None
            if new_max is not None and new_max != current["max_weight"]:
                await self._check_progression(ctx, exercise_key, new_max, exclude_log_id=log_id)
            row = await asyncio.to_thread(
                self._apply_log_update, ctx.user_id, log_id, data, exercise_key, weight_lbs, gate
            )

        return {
            "status": "success",
            "tool": "update_progress",
            "message": f"Updated workout {log_id}",
            "updated_fields": sorted(updates),
            **row,
        }

    def _load_owned_log(self, user_id: str, log_id: int) -> dict:
        db = DB.SessionLocal()
        try:
            row = db.query(ProgressLog).filter(ProgressLog.id == log_id, ProgressLog.user_id == user_id).first()
            if row is None:
                raise ValidationError(
                    f"Workout {log_id} not found",
                    field="log_id",
                    error_type="not_found",
                    error_code="NOT_FOUND",
                )
            return _serialize_log(row)
        finally:
            db.close()

    def _apply_log_update(
        self,
        user_id: str,
        log_id: int,
        data: dict,
        exercise_key: str,
        weight_lbs: Optional[list[float]],
        gate: CommitGate,
    ) -> dict:
        db = DB.SessionLocal()
        try:
            row = db.query(ProgressLog).filter(ProgressLog.id == log_id, ProgressLog.user_id == user_id).first()
            if row is None:
                raise ValidationError(
                    f"Workout {log_id} not found",
                    field="log_id",
                    error_type="not_found",
                    error_code="NOT_FOUND",
                )
            row.exercise = data["exercise"]
            row.exercise_key = exercise_key
            row.sets = data["sets"]
            row.reps = data["reps"]
            row.weight = weight_lbs
            row.unit = "lbs" if weight_lbs is not None else None
            row.original_unit = data.get("unit")
            row.original_weight = data.get("weight")
            row.duration = data.get("duration")
            row.notes = data.get("notes")
            for key, value in derive_metrics(data["reps"], weight_lbs).items():
                setattr(row, key, value)
            row.updated_at = utcnow()
            gate.commit(db)
            return _serialize_log(row)
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    @service_tool
    async def get_progress_summary(
        self,
        ctx: ToolExecutionContext,
        params: dict,
        gate: CommitGate,
    ) -> dict:
        metric = params.get("metric")
        timeframe = params.get("timeframe", "all_time")
        exercise = params.get("exercise")
        validate_choice(metric, "metric", SUMMARY_METRICS)
        validate_choice(timeframe, "timeframe", SUMMARY_TIMEFRAMES)
        validate_optional_text(exercise, "exercise", 100)

        rows = await asyncio.to_thread(self._load_logs, ctx, timeframe, exercise)
        return {
            "status": "success",
            "tool": "get_progress_summary",
            "metric": metric,
            "timeframe": timeframe,
            "data": summarize_logs(rows, metric),
        }

    def _load_logs(self, ctx: ToolExecutionContext, timeframe: str, exercise: Optional[str]) -> list[dict]:
        db = DB.SessionLocal()
        try:
            query = db.query(ProgressLog).filter(ProgressLog.user_id == ctx.user_id)
            if ctx.scope_id is not None:
                query = query.filter(ProgressLog.scope_id == ctx.scope_id)
            if timeframe in TIMEFRAME_DAYS:
                query = query.filter(ProgressLog.logged_at >= utcnow() - timedelta(days=TIMEFRAME_DAYS[timeframe]))
            if exercise:
                query = query.filter(ProgressLog.exercise_key == normalize_exercise_key(exercise))
            rows = query.order_by(ProgressLog.logged_at.asc(), ProgressLog.id.asc()).all()
            return [{**_serialize_log(row), "exercise_key": row.exercise_key} for row in rows]
        finally:
            db.close()

    @service_tool
    async def update_course_goal(
        self,
        ctx: ToolExecutionContext,
        params: dict,
        gate: CommitGate,
    ) -> dict:
        course_id = _require_int_id(params.get("course_id"), "course_id")
        updates = _require_updates(params, COURSE_UPDATE_FIELDS)
        if "title" in updates:
            title = updates["title"]
            if not isinstance(title, str) or not title.strip():
                raise ValidationError("title must be a non-empty string", field="title", error_type="required")
            validate_optional_text(title, "title", MAX_COURSE_TITLE_LENGTH)
        if "target_level" in updates:
            validate_choice(updates["target_level"], "target_level", TARGET_LEVELS)
        if "timeline_weeks" in updates:
            weeks = updates["timeline_weeks"]
            if not _is_int(weeks) or not 1 <= weeks <= MAX_TIMELINE_WEEKS:
                raise ValidationError(
                    f"timeline_weeks must be an integer between 1 and {MAX_TIMELINE_WEEKS}",
                    field="timeline_weeks",
                    error_type="out_of_range",
                )
        if "preferences" in updates:
            validate_metadata(updates["preferences"], "preferences")

        course = await asyncio.to_thread(self._apply_course_update, ctx.user_id, course_id, updates, gate)
        return {
            "status": "success",
            "tool": "update_course_goal",
            "message": "Course goals updated",
            "updated_fields": sorted(updates),
            **course,
        }

    def _apply_course_update(
        self,
        user_id: str,
        course_id: int,
        updates: dict,
        gate: CommitGate,
    ) -> dict:
        db = DB.SessionLocal()
        try:
            course = db.query(Course).filter(Course.id == course_id, Course.user_id == user_id).first()
            if course is None:
                raise ValidationError(
                    f"Course {course_id} not found",
                    field="course_id",
                    error_type="not_found",
                    error_code="NOT_FOUND",
                )
            if "title" in updates:
                course.title = updates["title"].strip()
            if "target_level" in updates:
                course.target_level = updates["target_level"]
            if "timeline_weeks" in updates:
                course.timeline_weeks = updates["timeline_weeks"]
            if "preferences" in updates:
                course.preferences = {**(course.preferences or {}), **updates["preferences"]}
            course.updated_at = utcnow()
            gate.commit(db)
            return _serialize_course(course)
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()


def summarize_logs(rows: list[dict], metric: str) -> dict:
    if metric == "volume":
        by_exercise: dict[str, float] = {}
        for row in rows:
            by_exercise[row["exercise_key"]] = round(by_exercise.get(row["exercise_key"], 0.0) + row["total_volume"], 2)
        return {
            "total_volume": round(sum(row["total_volume"] for row in rows), 2),
            "total_reps": sum(row["total_reps"] for row in rows),
            "by_exercise": by_exercise,
        }

    if metric == "frequency":
        days = {row["logged_at"][:10] for row in rows}
        weeks = {_iso_week(row["logged_at"]) for row in rows}
        return {
            "workouts": len(rows),
            "active_days": len(days),
            "average_per_week": round(len(rows) / len(weeks), 2) if weeks else 0.0,
        }

    if metric == "personal_records":
        records: dict[str, dict] = {}
        for row in rows:
            if row["max_weight"] is None:
                continue
            best = records.get(row["exercise_key"])
            if best is None or row["max_weight"] > best["max_weight"]:
                records[row["exercise_key"]] = {
                    "exercise": row["exercise"],
                    "max_weight": row["max_weight"],
                    "unit": "lbs",
                    "logged_at": row["logged_at"],
                }
        return {"records": records}

    exercises: dict[str, dict] = {}
    for row in rows:
        entry = exercises.setdefault(
            row["exercise_key"],
            {"exercise": row["exercise"], "sessions": 0, "total_volume": 0.0, "max_weight": None},
        )
        entry["sessions"] += 1
        entry["total_volume"] = round(entry["total_volume"] + row["total_volume"], 2)
        if row["max_weight"] is not None and (entry["max_weight"] is None or row["max_weight"] > entry["max_weight"]):
            entry["max_weight"] = row["max_weight"]
        entry["last_logged_at"] = row["logged_at"]
        entry["last_weight"] = row["weight"]
    return {"exercises": exercises}


def _iso_week(timestamp: str) -> str:
    year, week, _ = datetime.fromisoformat(timestamp).isocalendar()
    return f"{year}-W{week:02d}"


__all__ = [
    "KG_TO_LBS",
    "TOOL_SCHEMAS",
    "ToolEngine",
    "derive_metrics",
    "service_tool",
    "summarize_logs",
    "to_lbs",
]
