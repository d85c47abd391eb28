"""
Audit trail for coaching-side state changes.

Events record who did what to which ids: flags, variant switches, memory
clears and refusals. They carry counts and categories, never user text.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from sqlalchemy import and_, or_

from spotter.db import DB
from spotter.models import AuditEvent, utcnow

ALLOWED_ACTOR_TYPES = {"user", "system", "operator", "monitor"}
ALLOWED_TARGET_TYPES = {"memory", "variant", "user", "action_log"}

# Memory text never lands in the audit trail.
FORBIDDEN_METADATA_KEYS = {
    "text",
    "content",
    "embedding",
    "memory_text",
    "message",
    "raw_text",
}
MAX_METADATA_STRING_LENGTH = 500
MAX_TARGET_ID_LENGTH = 200


def _is_content_key(key: str) -> bool:
    name = key.strip().lower().replace("-", "_")
    return name in FORBIDDEN_METADATA_KEYS or any(
        name.endswith("_" + token) for token in FORBIDDEN_METADATA_KEYS
    )


def _metadata_problems(value: Any, path: str = "") -> Iterator[str]:
    """Yield a message for every part of ``value`` that may not be stored."""
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                yield "metadata keys must be strings"
                continue
            if _is_content_key(key):
                yield f"metadata key '{key}' is not allowed"
                continue
            yield from _metadata_problems(item, f"{path}.{key}" if path else key)
    elif isinstance(value, list):
        for item in value:
            yield from _metadata_problems(item, path)
    elif isinstance(value, str) and len(value) > MAX_METADATA_STRING_LENGTH:
        yield f"metadata value too long at '{path or 'value'}'"


def _checked_target_ids(target_ids: Any) -> list:
    if not isinstance(target_ids, (list, tuple)):
        raise ValueError("target_ids must be a list")
    for item in target_ids:
        if isinstance(item, bool) or not isinstance(item, (str, int)):
            raise ValueError("target_ids must contain strings or integers")
        if isinstance(item, str) and len(item) > MAX_TARGET_ID_LENGTH:
            raise ValueError("target_id value too long")
    return list(target_ids)


def _choice(value: str, allowed: set, field: str) -> str:
    if value not in allowed:
        raise ValueError(f"{field} must be one of: " + "|".join(sorted(allowed)))
    return value


def log_event(
    db,
    *,
    event_type: str,
    actor_type: str,
    actor_id: Optional[str] = None,
    user_id: Optional[str] = None,
    target_type: str,
    target_ids: list[Any],
    count_affected: Optional[int] = None,
    reason: Optional[str] = None,
    request_id: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> AuditEvent:
    """
    Stage an audit event on ``db``.

    Nothing is committed here; the event rides along with the caller's
    transaction so a rolled-back change leaves no trail.
    """
    if not isinstance(event_type, str) or not event_type:
        raise ValueError("event_type must be a non-empty string")
    _choice(actor_type, ALLOWED_ACTOR_TYPES, "actor_type")
    _choice(target_type, ALLOWED_TARGET_TYPES, "target_type")
    ids = _checked_target_ids(target_ids)
    if metadata is not None:
        if not isinstance(metadata, dict):
            raise ValueError("metadata must be a dict")
        problem = next(_metadata_problems(metadata), None)
        if problem:
            raise ValueError(problem)

    event = AuditEvent(
        created_at=utcnow(),
        event_type=event_type,
        actor_type=actor_type,
        actor_id=actor_id,
        user_id=user_id,
        target_type=target_type,
        target_ids=ids,
        count_affected=count_affected,
        reason=reason,
        request_id=request_id,
        metadata_=metadata,
    )
    db.add(event)
    return event


def record_event(**kwargs) -> None:
    """Write a single audit event in its own session."""
    db = DB.SessionLocal()
    try:
        log_event(db, **kwargs)
        db.commit()
    finally:
        db.close()


def _as_naive_utc(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def _older_than(db, cursor: str):
    anchor = db.query(AuditEvent).filter(AuditEvent.event_id == cursor).first()
    if anchor is None:
        return None
    return or_(
        AuditEvent.created_at < anchor.created_at,
        and_(AuditEvent.created_at == anchor.created_at, AuditEvent.event_id < anchor.event_id),
    )


def _event_dict(event: AuditEvent) -> dict:
    return {
        "event_id": str(event.event_id),
        "created_at": event.created_at.isoformat() if event.created_at else None,
        "event_type": event.event_type,
        "actor_type": event.actor_type,
        "actor_id": event.actor_id,
        "user_id": event.user_id,
        "target_type": event.target_type,
        "target_ids": event.target_ids,
        "count_affected": event.count_affected,
        "reason": event.reason,
        "request_id": event.request_id,
        "metadata": event.metadata_,
    }


def list_audit_events(
    db,
    *,
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    limit: int = 100,
    cursor: Optional[str] = None,
) -> dict:
    """Newest-first audit events; pass ``next_cursor`` back to continue."""
    if limit <= 0:
        raise ValueError("limit must be positive")

    conditions = []
    if user_id:
        conditions.append(AuditEvent.user_id == user_id)
    if event_type:
        conditions.append(AuditEvent.event_type == event_type)
    since = _as_naive_utc(date_from)
    if since:
        conditions.append(AuditEvent.created_at >= since)
    until = _as_naive_utc(date_to)
    if until:
        conditions.append(AuditEvent.created_at <= until)
    if cursor:
        older = _older_than(db, cursor)
        if older is not None:
            conditions.append(older)

    events = (
        db.query(AuditEvent)
        .filter(*conditions)
        .order_by(AuditEvent.created_at.desc(), AuditEvent.event_id.desc())
        .limit(limit)
        .all()
    )
    return {
        "status": "ok",
        "count": len(events),
        "events": [_event_dict(event) for event in events],
        "next_cursor": str(events[-1].event_id) if events else None,
    }


__all__ = [
    "AuditEvent",
    "log_event",
    "record_event",
    "list_audit_events",
    "ALLOWED_ACTOR_TYPES",
    "ALLOWED_TARGET_TYPES",
]
