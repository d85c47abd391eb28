"""Initial Spotter schema.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

import spotter.config as config


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _embedding_type(is_postgres: bool):
    if is_postgres and config.VECTOR_BACKEND_EFFECTIVE == "pgvector":
        from pgvector.sqlalchemy import Vector

        return Vector(config.EMBEDDING_DIM)
    return sa.JSON


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB if is_postgres else sa.JSON
    uuid_type = postgresql.UUID(as_uuid=True) if is_postgres else sa.String(length=36)

    op.create_table(
        "memory_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("scope_id", sa.String(length=100)),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("embedding", _embedding_type(is_postgres), nullable=False),
        sa.Column("embedding_model", sa.String(length=100), nullable=False),
        sa.Column("metadata", json_type),
        sa.Column("importance_weight", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("redacted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("redacted_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_memory_items_owner_created", "memory_items", ["owner_id", "created_at"])
    op.create_index("ix_memory_items_owner_scope", "memory_items", ["owner_id", "scope_id"])

    op.create_table(
        "experiment_assignments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("session_id", sa.String(length=100), nullable=False),
        sa.Column("variant_id", sa.String(length=20), nullable=False),
        sa.Column("segment_type", sa.String(length=20), nullable=False),
        sa.Column("variant_config", json_type, nullable=False),
        sa.Column("outcome", sa.String(length=20)),
        sa.Column("metrics", json_type),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime()),
        sa.Column("superseded_at", sa.DateTime()),
    )
    op.create_index(
        "ix_experiment_assignments_user_session",
        "experiment_assignments",
        ["user_id", "session_id"],
    )
    op.create_index("ix_experiment_assignments_variant", "experiment_assignments", ["variant_id"])

    op.create_table(
        "assistant_responses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("session_id", sa.String(length=100), nullable=False),
        sa.Column("variant_id", sa.String(length=20)),
        sa.Column("latency_ms", sa.Integer(), nullable=False),
        sa.Column("tokens_used", sa.Integer()),
        sa.Column("response_length", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("flagged", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_assistant_responses_created_at", "assistant_responses", ["created_at"])
    op.create_index("ix_assistant_responses_variant", "assistant_responses", ["variant_id"])

    op.create_table(
        "safety_violations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=100)),
        sa.Column("session_id", sa.String(length=100)),
        sa.Column("variant_id", sa.String(length=20)),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("excerpt", sa.String(length=200)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_safety_violations_created_at", "safety_violations", ["created_at"])
    op.create_index("ix_safety_violations_variant", "safety_violations", ["variant_id"])

    op.create_table(
        "quality_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("window_start", sa.DateTime(), nullable=False),
        sa.Column("window_end", sa.DateTime(), nullable=False),
        sa.Column("tool_call_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tool_call_error_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("safety_violation_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("p95_latency_ms", sa.Float()),
        sa.Column("p99_latency_ms", sa.Float()),
        sa.Column("alerts", json_type),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "action_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("session_id", sa.String(length=100)),
        sa.Column("scope_id", sa.String(length=100)),
        sa.Column("tool_name", sa.String(length=100), nullable=False),
        sa.Column("request_payload", json_type, nullable=False),
        sa.Column("result_payload", json_type),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("error_code", sa.String(length=50)),
        sa.Column("execution_time_ms", sa.Integer()),
        sa.Column("request_id", sa.String(length=64), nullable=False),
        sa.Column("payload_hash", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_action_logs_request_id", "action_logs", ["request_id"])
    op.create_index("ix_action_logs_user_created", "action_logs", ["user_id", "created_at"])
    op.create_index("ix_action_logs_status_created", "action_logs", ["status", "created_at"])

    if is_postgres:
        op.execute(
            """
            CREATE OR REPLACE FUNCTION action_logs_reject_mutation() RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION 'action_logs rows are append-only';
            END;
            $$ LANGUAGE plpgsql;
            """
        )
        op.execute(
            """
            CREATE TRIGGER action_logs_append_only
            BEFORE UPDATE OR DELETE ON action_logs
            FOR EACH ROW EXECUTE FUNCTION action_logs_reject_mutation();
            """
        )

    op.create_table(
        "user_profiles",
        sa.Column("user_id", sa.String(length=100), primary_key=True),
        sa.Column("display_name", sa.String(length=255)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("last_active_at", sa.DateTime()),
    )

    op.create_table(
        "courses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("target_level", sa.String(length=20)),
        sa.Column("timeline_weeks", sa.Integer()),
        sa.Column("preferences", json_type),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime()),
    )
    op.create_index("ix_courses_user_id", "courses", ["user_id"])

    op.create_table(
        "progress_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=100), nullable=False),
        sa.Column("scope_id", sa.String(length=100)),
        sa.Column("exercise", sa.String(length=100), nullable=False),
        sa.Column("exercise_key", sa.String(length=100), nullable=False),
        sa.Column("sets", sa.Integer(), nullable=False),
        sa.Column("reps", json_type, nullable=False),
        sa.Column("weight", json_type),
        sa.Column("unit", sa.String(length=10)),
        sa.Column("original_unit", sa.String(length=10)),
        sa.Column("original_weight", json_type),
        sa.Column("duration", sa.String(length=50)),
        sa.Column("notes", sa.Text()),
        sa.Column("total_volume", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_reps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_weight", sa.Float()),
        sa.Column("logged_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime()),
    )
    op.create_index(
        "ix_progress_logs_user_exercise",
        "progress_logs",
        ["user_id", "exercise_key", "logged_at"],
    )

    op.create_table(
        "audit_events",
        sa.Column("event_id", uuid_type, primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("event_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("actor_type", sa.String(length=50), nullable=False),
        sa.Column("actor_id", sa.String(length=255)),
        sa.Column("user_id", sa.String(length=255)),
        sa.Column("target_type", sa.String(length=50), nullable=False),
        sa.Column("target_ids", json_type, nullable=False),
        sa.Column("count_affected", sa.Integer()),
        sa.Column("reason", sa.Text()),
        sa.Column("request_id", sa.String(length=255)),
        sa.Column("metadata", json_type),
    )
    op.create_index("ix_audit_events_created_at", "audit_events", ["created_at"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_user_id", "audit_events", ["user_id"])


def downgrade() -> None:
    bind = op.get_bind()
    op.drop_index("ix_audit_events_user_id", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_created_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_progress_logs_user_exercise", table_name="progress_logs")
    op.drop_table("progress_logs")
    op.drop_index("ix_courses_user_id", table_name="courses")
    op.drop_table("courses")
    op.drop_table("user_profiles")
    if bind.dialect.name == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS action_logs_append_only ON action_logs")
        op.execute("DROP FUNCTION IF EXISTS action_logs_reject_mutation()")
    op.drop_index("ix_action_logs_status_created", table_name="action_logs")
    op.drop_index("ix_action_logs_user_created", table_name="action_logs")
    op.drop_index("ix_action_logs_request_id", table_name="action_logs")
    op.drop_table("action_logs")
    op.drop_table("quality_snapshots")
    op.drop_index("ix_safety_violations_variant", table_name="safety_violations")
    op.drop_index("ix_safety_violations_created_at", table_name="safety_violations")
    op.drop_table("safety_violations")
    op.drop_index("ix_assistant_responses_variant", table_name="assistant_responses")
    op.drop_index("ix_assistant_responses_created_at", table_name="assistant_responses")
    op.drop_table("assistant_responses")
    op.drop_index("ix_experiment_assignments_variant", table_name="experiment_assignments")
    op.drop_index("ix_experiment_assignments_user_session", table_name="experiment_assignments")
    op.drop_table("experiment_assignments")
    op.drop_index("ix_memory_items_owner_scope", table_name="memory_items")
    op.drop_index("ix_memory_items_owner_created", table_name="memory_items")
    op.drop_table("memory_items")
