import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

import pytest
from sqlalchemy import update

from spotter.errors import IntegrityViolation
from spotter.models import ActionLogEntry
from spotter.services.action_log import (
    get_action_logs,
    get_statistics,
    run_integrity_audit,
    truncate_payload,
    verify_integrity,
    write_entry,
)


def _pending(request_id="req-1"):
    return write_entry(
        user_id="user-1",
        tool_name="log_workout",
        request_id=request_id,
        status="pending",
        request_payload={"exercise": "Squat", "sets": 3},
    )


def _terminal(request_id="req-1", status="success"):
    return write_entry(
        user_id="user-1",
        tool_name="log_workout",
        request_id=request_id,
        status=status,
        request_payload={"exercise": "Squat", "sets": 3},
        result_payload={"status": "success", "log_id": 1},
        execution_time_ms=12,
    )


def test_lifecycle_and_verification(server_db):
    pending_id = _pending()
    terminal_id = _terminal()
    assert verify_integrity(pending_id) == {"valid": True}
    assert verify_integrity(terminal_id) == {"valid": True}
    assert verify_integrity(9999)["valid"] is False

    logs = get_action_logs(request_id="req-1")
    assert [row["status"] for row in logs] == ["pending", "success"]


def test_duplicate_terminal_is_rejected(server_db):
    _pending()
    _terminal()
    with pytest.raises(IntegrityViolation):
        _terminal(status="failed")


def test_terminal_without_pending_is_rejected(server_db):
    with pytest.raises(IntegrityViolation):
        _terminal(request_id="orphan")


def test_orm_update_is_refused(server_db, db_session):
    entry_id = _pending()
    row = db_session.get(ActionLogEntry, entry_id)
    row.status = "success"
    with pytest.raises(IntegrityViolation):
        db_session.commit()
    db_session.rollback()


def test_out_of_band_tampering_is_detected(server_db, db_session):
    _pending()
    terminal_id = _terminal()
    db_session.execute(
        update(ActionLogEntry.__table__)
        .where(ActionLogEntry.__table__.c.id == terminal_id)
        .values(result_payload={"status": "success", "log_id": 2})
    )
    db_session.commit()

    assert verify_integrity(terminal_id)["valid"] is False
    audit = run_integrity_audit()
    assert audit["invalid_entries"] == 1
    assert audit["issues"][0]["id"] == terminal_id


def test_audit_counts_open_requests(server_db):
    _pending("req-open")
    _pending("req-done")
    _terminal("req-done")
    audit = run_integrity_audit()
    assert audit["total_checked"] == 3
    assert audit["open_requests"] == 1
    assert audit["issues"] == []


def test_statistics(server_db):
    _pending()
    _terminal()
    stats = get_statistics("user-1")
    assert stats["total_actions"] == 2
    assert stats["actions_by_status"] == {"pending": 1, "success": 1}
    assert stats["average_execution_time"] == 12


def test_oversized_payload_is_truncated():
    payload = {"notes": "x" * 70000}
    truncated = truncate_payload(payload)
    assert truncated["_truncated"] is True
    assert truncated["parameters"] == "[TRUNCATED - Too Large]"
