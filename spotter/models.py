"""
Spotter Database Models
PostgreSQL + pgvector schema
"""

from datetime import datetime, timezone
import uuid
from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean,
    DateTime, Index, JSON, event, inspect
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import declarative_base

import spotter.config as config
from spotter.errors import IntegrityViolation

DB_BACKEND_EFFECTIVE = config.DB_BACKEND_EFFECTIVE
VECTOR_BACKEND_EFFECTIVE = config.VECTOR_BACKEND_EFFECTIVE

try:
    from pgvector.sqlalchemy import Vector as PgVector
    PGVECTOR_AVAILABLE = True
except ImportError:
    PgVector = None
    PGVECTOR_AVAILABLE = False

if (
    DB_BACKEND_EFFECTIVE == "postgres"
    and VECTOR_BACKEND_EFFECTIVE == "pgvector"
    and PGVECTOR_AVAILABLE
):
    EMBEDDING_COLUMN_TYPE = PgVector(config.EMBEDDING_DIM)
else:
    EMBEDDING_COLUMN_TYPE = JSON

JSON_TYPE = JSONB if DB_BACKEND_EFFECTIVE == "postgres" else JSON
UUID_TYPE = UUID(as_uuid=True) if DB_BACKEND_EFFECTIVE == "postgres" else String(36)


def utcnow() -> datetime:
    """Naive UTC timestamp; every column in this schema stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid_default() -> str | uuid.UUID:
    value = uuid.uuid4()
    return value if DB_BACKEND_EFFECTIVE == "postgres" else str(value)

Base = declarative_base()


# =============================================================================
# Memory
# =============================================================================

class MemoryItem(Base):
    __tablename__ = "memory_items"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(100), nullable=False)
    scope_id = Column(String(100))
    text = Column(Text, nullable=False)
    embedding = Column(EMBEDDING_COLUMN_TYPE, nullable=False)
    embedding_model = Column(String(100), nullable=False)
    metadata_ = Column("metadata", JSON_TYPE, default=dict)
    importance_weight = Column(Float, default=1.0, nullable=False)
    redacted = Column(Boolean, default=False, nullable=False)
    redacted_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_memory_items_owner_created", "owner_id", "created_at"),
        Index("ix_memory_items_owner_scope", "owner_id", "scope_id"),
    )


# =============================================================================
# Experiments
# =============================================================================

class ExperimentAssignment(Base):
    __tablename__ = "experiment_assignments"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(100), nullable=False)
    session_id = Column(String(100), nullable=False)
    variant_id = Column(String(20), nullable=False)
    segment_type = Column(String(20), nullable=False)
    variant_config = Column(JSON_TYPE, nullable=False)
    outcome = Column(String(20))  # success/failure
    metrics = Column(JSON_TYPE)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime)
    superseded_at = Column(DateTime)

    __table_args__ = (
        Index("ix_experiment_assignments_user_session", "user_id", "session_id"),
        Index("ix_experiment_assignments_variant", "variant_id"),
    )


class AssistantResponse(Base):
    __tablename__ = "assistant_responses"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(100), nullable=False)
    session_id = Column(String(100), nullable=False)
    variant_id = Column(String(20))
    latency_ms = Column(Integer, nullable=False)
    tokens_used = Column(Integer)
    response_length = Column(Integer, default=0, nullable=False)
    flagged = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_assistant_responses_created_at", "created_at"),
        Index("ix_assistant_responses_variant", "variant_id"),
    )


class SafetyViolation(Base):
    __tablename__ = "safety_violations"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(100))
    session_id = Column(String(100))
    variant_id = Column(String(20))
    category = Column(String(50), nullable=False)
    excerpt = Column(String(200))
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_safety_violations_created_at", "created_at"),
        Index("ix_safety_violations_variant", "variant_id"),
    )


class QualitySnapshot(Base):
    __tablename__ = "quality_snapshots"

    id = Column(Integer, primary_key=True)
    window_start = Column(DateTime, nullable=False)
    window_end = Column(DateTime, nullable=False)
    tool_call_count = Column(Integer, default=0, nullable=False)
    tool_call_error_rate = Column(Float, default=0.0, nullable=False)
    safety_violation_count = Column(Integer, default=0, nullable=False)
    p95_latency_ms = Column(Float)
    p99_latency_ms = Column(Float)
    alerts = Column(JSON_TYPE, default=list)
    created_at = Column(DateTime, default=utcnow, nullable=False)


# =============================================================================
# Action Log (append-only)
# =============================================================================

class ActionLogEntry(Base):
    __tablename__ = "action_logs"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(100), nullable=False)
    session_id = Column(String(100))
    scope_id = Column(String(100))
    tool_name = Column(String(100), nullable=False)
    request_payload = Column(JSON_TYPE, nullable=False)
    result_payload = Column(JSON_TYPE)
    status = Column(String(20), nullable=False)  # pending/success/failed
    error_code = Column(String(50))
    execution_time_ms = Column(Integer)
    request_id = Column(String(64), nullable=False)
    payload_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_action_logs_request_id", "request_id"),
        Index("ix_action_logs_user_created", "user_id", "created_at"),
        Index("ix_action_logs_status_created", "status", "created_at"),
    )


# =============================================================================
# Training domain
# =============================================================================

class UserProfile(Base):
    __tablename__ = "user_profiles"

    user_id = Column(String(100), primary_key=True)
    display_name = Column(String(255))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_active_at = Column(DateTime)


class Course(Base):
    __tablename__ = "courses"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(100), nullable=False)
    title = Column(String(200), nullable=False)
    target_level = Column(String(20))
    timeline_weeks = Column(Integer)
    preferences = Column(JSON_TYPE, default=dict)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_courses_user_id", "user_id"),
    )


class ProgressLog(Base):
    __tablename__ = "progress_logs"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(100), nullable=False)
    scope_id = Column(String(100))
    exercise = Column(String(100), nullable=False)
    exercise_key = Column(String(100), nullable=False)
    sets = Column(Integer, nullable=False)
    reps = Column(JSON_TYPE, nullable=False)
    weight = Column(JSON_TYPE)  # normalized to lbs
    unit = Column(String(10))
    original_unit = Column(String(10))
    original_weight = Column(JSON_TYPE)
    duration = Column(String(50))
    notes = Column(Text)
    total_volume = Column(Float, default=0.0, nullable=False)
    total_reps = Column(Integer, default=0, nullable=False)
    max_weight = Column(Float)
    logged_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime)

    __table_args__ = (
        Index("ix_progress_logs_user_exercise", "user_id", "exercise_key", "logged_at"),
    )


# =============================================================================
# Audit Events
# =============================================================================

class AuditEvent(Base):
    __tablename__ = "audit_events"

    event_id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    event_type = Column(String(100), nullable=False)
    event_version = Column(Integer, default=1, nullable=False)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(String(255))
    user_id = Column(String(255))
    target_type = Column(String(50), nullable=False)
    target_ids = Column(JSON_TYPE, nullable=False)
    count_affected = Column(Integer)
    reason = Column(Text)
    request_id = Column(String(255))
    metadata_ = Column("metadata", JSON_TYPE)

    __table_args__ = (
        Index("ix_audit_events_created_at", "created_at"),
        Index("ix_audit_events_event_type", "event_type"),
        Index("ix_audit_events_user_id", "user_id"),
    )


# =============================================================================
# Write guards
# =============================================================================

MEMORY_MUTABLE_FIELDS = {"redacted", "redacted_at"}


@event.listens_for(MemoryItem, "before_update")
def _memory_item_immutable(mapper, connection, target) -> None:
    state = inspect(target)
    for attr in state.attrs:
        if attr.key in MEMORY_MUTABLE_FIELDS:
            continue
        if attr.history.has_changes():
            raise IntegrityViolation(f"memory_items.{attr.key} is immutable once embedded")


@event.listens_for(ActionLogEntry, "before_update")
def _action_log_no_update(mapper, connection, target) -> None:
    raise IntegrityViolation("action_logs rows are append-only")


@event.listens_for(ActionLogEntry, "before_delete")
def _action_log_no_delete(mapper, connection, target) -> None:
    raise IntegrityViolation("action_logs rows are append-only")


__all__ = [
    "Base",
    "utcnow",
    "PGVECTOR_AVAILABLE",
    "MemoryItem",
    "ExperimentAssignment",
    "AssistantResponse",
    "SafetyViolation",
    "QualitySnapshot",
    "ActionLogEntry",
    "UserProfile",
    "Course",
    "ProgressLog",
    "AuditEvent",
]
