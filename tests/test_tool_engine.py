import asyncio
import os
import time
from datetime import timedelta

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

import pytest
from sqlalchemy import event

from spotter.context import ToolExecutionContext
from spotter.errors import ProviderError
from spotter.models import Course, ProgressLog, UserProfile, utcnow
from spotter.services.action_log import get_action_logs
from spotter.services.security_monitor import SecurityMonitor
from spotter.services.tool_engine import KG_TO_LBS, ToolEngine, derive_metrics, to_lbs


def _engine(**kwargs):
    kwargs.setdefault("min_interval_seconds", 0)
    return ToolEngine(SecurityMonitor(**kwargs))


def _ctx(user_id="user-1"):
    return ToolExecutionContext.from_values(user_id, session_id="session-a")


def _run(engine, tool_name, params, ctx=None, request_id=None):
    return asyncio.run(engine.execute(tool_name, params, ctx or _ctx(), request_id=request_id))


def _seed_squat(session, weight, days_ago=1, user_id="user-1"):
    session.add(
        ProgressLog(
            user_id=user_id,
            exercise="Squat",
            exercise_key="squat",
            sets=1,
            reps=[5],
            weight=[weight],
            unit="lbs",
            total_volume=weight * 5,
            total_reps=5,
            max_weight=weight,
            logged_at=utcnow() - timedelta(days=days_ago),
        )
    )
    session.commit()


def test_unit_conversion_helpers():
    assert to_lbs([100], "kg") == [220.46]
    assert to_lbs([135], "lbs") == [135.0]
    assert derive_metrics([5, 5], [100.0, 110.0]) == {"total_volume": 1050.0, "total_reps": 10, "max_weight": 110.0}
    assert derive_metrics([12], None)["max_weight"] is None


def test_log_workout_in_kg_round_trips(server_db, db_session):
    result = _run(
        _engine(),
        "log_workout",
        {"exercise": "Squat", "sets": 3, "reps": [5, 5, 5], "weight": [40, 40, 40], "unit": "kg"},
    )
    assert result["status"] == "success"
    assert result["unit"] == "lbs"
    assert result["original_unit"] == "kg"
    assert result["original_weight"] == [40, 40, 40]
    for stored in result["weight"]:
        assert abs(stored / KG_TO_LBS - 40) < 0.01
    assert result["total_reps"] == 15

    profile = db_session.query(UserProfile).filter(UserProfile.user_id == "user-1").one()
    assert profile.last_active_at is not None


def test_every_request_has_pending_and_terminal_entries(server_db):
    engine = _engine()
    result = _run(
        engine,
        "log_workout",
        {"exercise": "Plank", "sets": 1, "reps": [1], "duration": "60s"},
        request_id="req-1",
    )
    assert result["request_id"] == "req-1"
    entries = get_action_logs(request_id="req-1")
    assert [entry["status"] for entry in entries] == ["pending", "success"]
    assert entries[1]["result_payload"]["log_id"] == result["log_id"]


def test_unsafe_progression_is_rejected_with_suggestion(server_db, db_session):
    _seed_squat(db_session, 185)
    engine = _engine()
    result = _run(
        engine,
        "log_workout",
        {"exercise": "Squat", "sets": 1, "reps": [5], "weight": [205], "unit": "lbs"},
        request_id="req-unsafe",
    )
    assert result["status"] == "error"
    assert result["error_code"] == "SAFETY_VIOLATION"
    assert result["max_safe_value"] == 204
    assert "try 204 lbs or less" in result["message"]

    assert db_session.query(ProgressLog).count() == 1
    entries = get_action_logs(request_id="req-unsafe")
    assert [entry["status"] for entry in entries] == ["pending", "failed"]
    assert entries[1]["error_code"] == "SAFETY_VIOLATION"


def test_safe_progression_is_logged(server_db, db_session):
    _seed_squat(db_session, 185)
    result = _run(
        _engine(),
        "log_workout",
        {"exercise": "squat", "sets": 1, "reps": [5], "weight": [203], "unit": "lbs"},
    )
    assert result["status"] == "success"
    assert result["max_weight"] == 203.0


def test_validation_errors_list_every_field(server_db):
    result = _run(
        _engine(),
        "log_workout",
        {"exercise": "Squat", "sets": 3, "reps": [5, 5], "weight": [100, 100, 100]},
    )
    assert result["status"] == "error"
    assert result["error_code"] == "INVALID_INPUT"
    assert result["field"] == "reps"
    assert [error["field"] for error in result["errors"]] == ["reps", "unit"]


def test_unknown_tool(server_db):
    result = _run(_engine(), "delete_everything", {})
    assert result["error_code"] == "UNKNOWN_TOOL"


def test_rapid_calls_are_rate_limited(server_db):
    engine = _engine(min_interval_seconds=30)
    params = {"exercise": "Plank", "sets": 1, "reps": [1]}
    assert _run(engine, "log_workout", params)["status"] == "success"
    limited = _run(engine, "log_workout", params, request_id="req-limited")
    assert limited["error_code"] == "RATE_LIMITED"
    assert [entry["status"] for entry in get_action_logs(request_id="req-limited")] == ["pending", "failed"]


def test_update_progress_corrects_own_log(server_db, db_session):
    engine = _engine()
    logged = _run(
        engine,
        "log_workout",
        {"exercise": "Squat", "sets": 2, "reps": [5, 5], "weight": [135, 135], "unit": "lbs"},
    )
    result = _run(engine, "update_progress", {"log_id": logged["log_id"], "updates": {"reps": [5, 4]}})
    assert result["status"] == "success"
    assert result["updated_fields"] == ["reps"]
    assert result["total_reps"] == 9
    assert result["weight"] == [135.0, 135.0]

    stranger = _run(
        engine,
        "update_progress",
        {"log_id": logged["log_id"], "updates": {"reps": [1, 1]}},
        ctx=_ctx("user-2"),
    )
    assert stranger["error_code"] == "NOT_FOUND"


def test_update_progress_rechecks_progression(server_db, db_session):
    _seed_squat(db_session, 185, days_ago=2)
    engine = _engine()
    logged = _run(
        engine,
        "log_workout",
        {"exercise": "Squat", "sets": 1, "reps": [5], "weight": [195], "unit": "lbs"},
    )
    result = _run(engine, "update_progress", {"log_id": logged["log_id"], "updates": {"weight": [250]}})
    assert result["error_code"] == "SAFETY_VIOLATION"


def test_update_progress_rejects_unknown_fields(server_db):
    result = _run(_engine(), "update_progress", {"log_id": 1, "updates": {"logged_at": "yesterday"}})
    assert result["error_code"] == "VALIDATION_ERROR"
    assert result["field"] == "updates"


def test_progress_summary_volume(server_db):
    engine = _engine()
    _run(engine, "log_workout", {"exercise": "Squat", "sets": 3, "reps": [5, 5, 5], "weight": [100, 100, 100], "unit": "lbs"})
    _run(engine, "log_workout", {"exercise": "Bench Press", "sets": 1, "reps": [5], "weight": [95], "unit": "lbs"})

    summary = _run(engine, "get_progress_summary", {"metric": "volume", "timeframe": "week"})
    assert summary["status"] == "success"
    assert summary["data"]["total_volume"] == 1975.0
    assert summary["data"]["total_reps"] == 20
    assert summary["data"]["by_exercise"] == {"squat": 1500.0, "bench press": 475.0}

    records = _run(engine, "get_progress_summary", {"metric": "personal_records"})
    assert records["data"]["records"]["squat"]["max_weight"] == 100.0

    invalid = _run(engine, "get_progress_summary", {"metric": "calories"})
    assert invalid["status"] == "error"


def test_update_course_goal_merges_preferences(server_db, db_session):
    course = Course(user_id="user-1", title="Base building", preferences={"days": 3})
    db_session.add(course)
    db_session.commit()

    engine = _engine()
    result = _run(
        engine,
        "update_course_goal",
        {"course_id": course.id, "updates": {"target_level": "intermediate", "preferences": {"focus": "legs"}}},
    )
    assert result["status"] == "success"
    assert result["preferences"] == {"days": 3, "focus": "legs"}
    assert result["target_level"] == "intermediate"

    bad = _run(engine, "update_course_goal", {"course_id": course.id, "updates": {"timeline_weeks": 500}})
    assert bad["field"] == "timeline_weeks"

    other = _run(
        engine,
        "update_course_goal",
        {"course_id": course.id, "updates": {"title": "Mine now"}},
        ctx=_ctx("user-2"),
    )
    assert other["error_code"] == "NOT_FOUND"


def test_timeout_writes_failed_entry(server_db):
    engine = ToolEngine(SecurityMonitor(min_interval_seconds=0), timeout_seconds=0.05)

    async def slow(ctx, params, gate):
        await asyncio.sleep(1)
        return {"status": "success"}

    engine._tools["log_workout"] = slow
    with pytest.raises(ProviderError):
        _run(engine, "log_workout", {}, request_id="req-slow")
    entries = get_action_logs(request_id="req-slow")
    assert [entry["status"] for entry in entries] == ["pending", "failed"]
    assert entries[1]["error_code"] == "TIMEOUT"


def _slow_progress_flush(session_factory, seconds, weight=None):
    def before_flush(session, flush_context, instances):
        if any(isinstance(obj, ProgressLog) and obj.max_weight == weight for obj in session.new):
            time.sleep(seconds)

    event.listen(session_factory, "before_flush", before_flush)


def test_commit_in_flight_at_timeout_is_reported_as_success(server_db, db_session):
    def slow_commit(session):
        held = list(session.identity_map.values()) + list(session.new)
        if any(isinstance(obj, ProgressLog) for obj in held):
            time.sleep(1.0)

    event.listen(server_db, "before_commit", slow_commit)
    engine = ToolEngine(SecurityMonitor(min_interval_seconds=0), timeout_seconds=0.5)
    result = _run(engine, "log_workout", {"exercise": "Plank", "sets": 1, "reps": [1]}, request_id="req-commit")

    assert result["status"] == "success"
    entries = get_action_logs(request_id="req-commit")
    assert [entry["status"] for entry in entries] == ["pending", "success"]
    assert db_session.query(ProgressLog).count() == 1


def test_timeout_before_commit_leaves_nothing_behind(server_db, db_session):
    _slow_progress_flush(server_db, 1.0)
    engine = ToolEngine(SecurityMonitor(min_interval_seconds=0), timeout_seconds=0.3)
    with pytest.raises(ProviderError):
        _run(engine, "log_workout", {"exercise": "Plank", "sets": 1, "reps": [1]}, request_id="req-late")

    entries = get_action_logs(request_id="req-late")
    assert [entry["status"] for entry in entries] == ["pending", "failed"]
    assert entries[1]["error_code"] == "TIMEOUT"
    assert db_session.query(ProgressLog).count() == 0


def test_concurrent_progressions_are_checked_in_turn(server_db, db_session):
    _seed_squat(db_session, 185)
    _slow_progress_flush(server_db, 0.3, weight=170.0)
    engine = _engine()

    async def log(weight, delay=0.0):
        await asyncio.sleep(delay)
        return await engine.execute(
            "log_workout",
            {"exercise": "Squat", "sets": 1, "reps": [5], "weight": [weight], "unit": "lbs"},
            _ctx(),
        )

    async def run():
        return await asyncio.gather(log(170), log(200, delay=0.1))

    lighter, heavier = asyncio.run(run())
    assert lighter["status"] == "success"
    assert heavier["error_code"] == "SAFETY_VIOLATION"
    assert heavier["max_safe_value"] == 187

    stored = [row.max_weight for row in db_session.query(ProgressLog).order_by(ProgressLog.id)]
    assert stored == [185, 170.0]
    for previous, current in zip(stored, stored[1:]):
        assert current <= previous * 1.10
