"""
Append-only, hash-verified action log for tool executions.
"""

from __future__ import annotations

import hashlib
import json
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

import spotter.config as config
from spotter.db import DB
from spotter.errors import IntegrityViolation
from spotter.models import ActionLogEntry, utcnow
from spotter.validators import payload_size_bytes

logger = config.logger

STATUS_PENDING = "pending"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = (STATUS_SUCCESS, STATUS_FAILED)


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def compute_payload_hash(
    *,
    tool_name: str,
    request_id: str,
    status: str,
    error_code: Optional[str],
    request_payload: Any,
    result_payload: Any,
) -> str:
    document = {
        "tool_name": tool_name,
        "request_id": request_id,
        "status": status,
        "error_code": error_code,
        "request": request_payload,
        "result": result_payload,
    }
    return hashlib.sha256(canonical_json(document).encode("utf-8")).hexdigest()


def truncate_payload(payload: Any) -> Any:
    if payload is None:
        return None
    size = payload_size_bytes(payload)
    if size <= config.MAX_PAYLOAD_BYTES:
        return payload
    if isinstance(payload, dict):
        marked = dict(payload)
        marked.update({"_truncated": True, "_original_size": size, "_truncated_at": utcnow().isoformat()})
        if payload_size_bytes(marked) <= config.MAX_PAYLOAD_BYTES:
            return marked
    logger.warning("action_log_payload_truncated", extra={"original_size": size})
    return {"parameters": "[TRUNCATED - Too Large]", "_truncated": True, "_original_size": size}


def _critical(detail: str, **context) -> IntegrityViolation:
    logger.critical("action_log_integrity_violation", extra={"detail": detail, **context})
    return IntegrityViolation(detail)


def append_entry(
    db,
    *,
    user_id: str,
    tool_name: str,
    request_id: str,
    status: str,
    request_payload: Any,
    result_payload: Any = None,
    session_id: Optional[str] = None,
    scope_id: Optional[str] = None,
    error_code: Optional[str] = None,
    execution_time_ms: Optional[int] = None,
) -> ActionLogEntry:
    """
    Add one log row to ``db``.

    A terminal row requires an earlier pending row for the same request_id
    and no other terminal row; otherwise IntegrityViolation is raised.
    """
    if status not in (STATUS_PENDING,) + TERMINAL_STATUSES:
        raise ValueError(f"invalid action log status: {status}")

    existing = db.query(ActionLogEntry.status).filter(ActionLogEntry.request_id == request_id).all()
    statuses = [row.status for row in existing]
    if status == STATUS_PENDING and statuses:
        raise _critical("pending entry already exists for request", request_id=request_id)
    if status in TERMINAL_STATUSES:
        if STATUS_PENDING not in statuses:
            raise _critical("terminal entry without pending entry", request_id=request_id)
        if any(s in TERMINAL_STATUSES for s in statuses):
            raise _critical("duplicate terminal entry for request", request_id=request_id)

    request_payload = truncate_payload(request_payload)
    result_payload = truncate_payload(result_payload)
    entry = ActionLogEntry(
        user_id=user_id,
        session_id=session_id,
        scope_id=scope_id,
        tool_name=tool_name,
        request_payload=request_payload,
        result_payload=result_payload,
        status=status,
        error_code=error_code,
        execution_time_ms=execution_time_ms,
        request_id=request_id,
        payload_hash=compute_payload_hash(
            tool_name=tool_name,
            request_id=request_id,
            status=status,
            error_code=error_code,
            request_payload=request_payload,
            result_payload=result_payload,
        ),
        created_at=utcnow(),
    )
    db.add(entry)
    return entry


def write_entry(**kwargs) -> int:
    """Append and commit a log row in its own session."""
    db = DB.SessionLocal()
    try:
        entry = append_entry(db, **kwargs)
        db.commit()
        return entry.id
    except SQLAlchemyError:
        db.rollback()
        raise
    finally:
        db.close()


def _entry_hash_matches(entry: ActionLogEntry) -> bool:
    expected = compute_payload_hash(
        tool_name=entry.tool_name,
        request_id=entry.request_id,
        status=entry.status,
        error_code=entry.error_code,
        request_payload=entry.request_payload,
        result_payload=entry.result_payload,
    )
    return expected == entry.payload_hash


def verify_integrity(entry_id: int) -> dict:
    db = DB.SessionLocal()
    try:
        entry = db.query(ActionLogEntry).filter(ActionLogEntry.id == entry_id).first()
        if entry is None:
            return {"valid": False, "details": "Log entry not found"}
        if not _entry_hash_matches(entry):
            return {"valid": False, "details": "Payload hash mismatch - possible tampering detected"}
        return {"valid": True}
    finally:
        db.close()


def run_integrity_audit(user_id: Optional[str] = None, limit: Optional[int] = None) -> dict:
    """Check hashes and the pending/terminal lifecycle for the most recent entries."""
    limit = limit or config.INTEGRITY_AUDIT_LIMIT
    db = DB.SessionLocal()
    try:
        query = db.query(ActionLogEntry)
        if user_id:
            query = query.filter(ActionLogEntry.user_id == user_id)
        entries = query.order_by(ActionLogEntry.created_at.desc(), ActionLogEntry.id.desc()).limit(limit).all()
    finally:
        db.close()

    results = {
        "total_checked": len(entries),
        "valid_entries": 0,
        "invalid_entries": 0,
        "open_requests": 0,
        "issues": [],
    }
    by_request: dict[str, list[str]] = {}
    for entry in entries:
        by_request.setdefault(entry.request_id, []).append(entry.status)
        if _entry_hash_matches(entry):
            results["valid_entries"] += 1
        else:
            results["invalid_entries"] += 1
            results["issues"].append({
                "id": entry.id,
                "request_id": entry.request_id,
                "details": "Payload hash mismatch - possible tampering detected",
            })

    for request_id, statuses in by_request.items():
        terminal = sum(1 for s in statuses if s in TERMINAL_STATUSES)
        if terminal > 1:
            results["issues"].append({"id": None, "request_id": request_id, "details": "Duplicate terminal entries"})
        elif terminal == 1 and STATUS_PENDING not in statuses and len(entries) < limit:
            results["issues"].append({"id": None, "request_id": request_id, "details": "Terminal entry without pending entry"})
        elif terminal == 0:
            results["open_requests"] += 1
    return results


def get_action_logs(
    user_id: Optional[str] = None,
    request_id: Optional[str] = None,
    tool_name: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
) -> list[dict]:
    db = DB.SessionLocal()
    try:
        query = db.query(ActionLogEntry)
        if user_id:
            query = query.filter(ActionLogEntry.user_id == user_id)
        if request_id:
            query = query.filter(ActionLogEntry.request_id == request_id)
        if tool_name:
            query = query.filter(ActionLogEntry.tool_name == tool_name)
        if status:
            query = query.filter(ActionLogEntry.status == status)
        rows = query.order_by(ActionLogEntry.created_at.asc(), ActionLogEntry.id.asc()).limit(limit).all()
        return [
            {
                "id": row.id,
                "user_id": row.user_id,
                "session_id": row.session_id,
                "scope_id": row.scope_id,
                "tool_name": row.tool_name,
                "status": row.status,
                "error_code": row.error_code,
                "request_id": row.request_id,
                "execution_time_ms": row.execution_time_ms,
                "request_payload": row.request_payload,
                "result_payload": row.result_payload,
                "payload_hash": row.payload_hash,
                "created_at": row.created_at.isoformat(),
            }
            for row in rows
        ]
    finally:
        db.close()


def get_statistics(user_id: Optional[str] = None) -> dict:
    db = DB.SessionLocal()
    try:
        query = db.query(
            ActionLogEntry.tool_name,
            ActionLogEntry.status,
            ActionLogEntry.execution_time_ms,
            ActionLogEntry.created_at,
        )
        if user_id:
            query = query.filter(ActionLogEntry.user_id == user_id)
        rows = query.all()
    finally:
        db.close()

    by_tool: dict[str, int] = {}
    by_status: dict[str, int] = {}
    durations = []
    recent_cutoff = utcnow() - timedelta(hours=24)
    recent = 0
    for tool_name, status, execution_time_ms, created_at in rows:
        by_tool[tool_name] = by_tool.get(tool_name, 0) + 1
        by_status[status] = by_status.get(status, 0) + 1
        if execution_time_ms:
            durations.append(execution_time_ms)
        if created_at and created_at > recent_cutoff:
            recent += 1
    return {
        "total_actions": len(rows),
        "actions_by_tool": by_tool,
        "actions_by_status": by_status,
        "average_execution_time": sum(durations) / len(durations) if durations else 0,
        "recent_activity": recent,
    }


__all__ = [
    "STATUS_PENDING",
    "STATUS_SUCCESS",
    "STATUS_FAILED",
    "TERMINAL_STATUSES",
    "canonical_json",
    "compute_payload_hash",
    "truncate_payload",
    "append_entry",
    "write_entry",
    "verify_integrity",
    "run_integrity_audit",
    "get_action_logs",
    "get_statistics",
]
