import os
from datetime import timedelta

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

from spotter.audit_constants import EVENT_VARIANT_DISABLED, EVENT_VARIANT_ENABLED
from spotter.models import AssistantResponse, AuditEvent, QualitySnapshot, SafetyViolation, utcnow
from spotter.services.action_log import write_entry
from spotter.services.quality_monitor import (
    QualityMonitor,
    evaluate_thresholds,
    gates_pass,
    match_unsafe_categories,
    percentile,
    record_assistant_response,
)
from spotter.services.variant_selector import VariantSelector


def _metrics(**overrides):
    metrics = {
        "tool_call_count": 0,
        "tool_call_errors": 0,
        "tool_call_error_rate": 0.0,
        "safety_violation_count": 0,
        "violations_by_variant": {},
        "response_count": 20,
        "p95_latency_ms": 100.0,
        "p99_latency_ms": 120.0,
    }
    metrics.update(overrides)
    return metrics


def test_unsafe_output_categories():
    assert match_unsafe_categories("Increase the weight by 25% next week") == ["aggressive_progression"]
    assert match_unsafe_categories("Just push through the pain and ignore any discomfort") == [
        "pain_override",
        "discomfort_override",
    ]
    assert match_unsafe_categories("Add 5 lbs if all reps felt smooth") == []


def test_percentile_of_empty_is_none():
    assert percentile([], 95) is None
    assert percentile([100.0] * 10, 95) == 100.0


def test_thresholds():
    assert evaluate_thresholds(_metrics()) == []
    alerts = evaluate_thresholds(_metrics(tool_call_error_rate=0.04, p95_latency_ms=3200.0))
    assert [(a["metric"], a["level"]) for a in alerts] == [
        ("tool_call_error_rate", "warning"),
        ("p95_latency_ms", "critical"),
    ]
    alerts = evaluate_thresholds(_metrics(tool_call_error_rate=0.05, safety_violation_count=2))
    assert [(a["metric"], a["level"]) for a in alerts] == [
        ("tool_call_error_rate", "critical"),
        ("safety_violations", "critical"),
    ]


def test_gates_need_samples_and_clean_window():
    assert gates_pass(_metrics()) is True
    assert gates_pass(_metrics(response_count=19)) is False
    assert gates_pass(_metrics(safety_violation_count=1)) is False
    assert gates_pass(_metrics(p95_latency_ms=None)) is True


def test_record_response_flags_unsafe_output(server_db, db_session):
    result = record_assistant_response(
        user_id="user-1",
        session_id="session-a",
        response_text="Push through the pain today.",
        latency_ms=450,
        variant_id="v3",
        tokens_used=3500,
    )
    assert result["safe"] is False
    assert result["categories"] == ["pain_override"]
    assert result["alerts"][0]["metric"] == "token_usage"

    row = db_session.query(AssistantResponse).one()
    assert row.flagged is True
    violation = db_session.query(SafetyViolation).one()
    assert violation.variant_id == "v3"
    assert violation.excerpt == "Push through the pain today."


def test_violation_disables_variant_and_is_audited(server_db, db_session):
    selector = VariantSelector()
    monitor = QualityMonitor(selector, interval_seconds=0)
    record_assistant_response(
        user_id="user-1",
        session_id="session-a",
        response_text="Ignore that discomfort and keep going",
        latency_ms=300,
        variant_id="v2",
    )

    snapshot = monitor.check_quality_gates()
    assert snapshot["disabled_variants"] == ["v2"]
    assert selector.is_enabled("v2") is False
    assert monitor.last_snapshot is snapshot
    assert db_session.query(QualitySnapshot).count() == 1

    event = db_session.query(AuditEvent).filter(AuditEvent.event_type == EVENT_VARIANT_DISABLED).one()
    assert event.target_ids == ["v2"]

    # a second pass does not disable again
    assert monitor.check_quality_gates()["disabled_variants"] == []


def test_recovery_after_clean_window(server_db, db_session):
    selector = VariantSelector()
    monitor = QualityMonitor(selector, interval_seconds=0, window_seconds=3600)
    monitor.disable_variant("v1", reason="manual")

    later = utcnow() + timedelta(hours=2)
    for index in range(19):
        db_session.add(
            AssistantResponse(
                user_id="user-1",
                session_id=f"session-{index}",
                variant_id="v1",
                latency_ms=200,
                created_at=later - timedelta(minutes=5),
            )
        )
    db_session.commit()
    assert monitor.check_recovery(later) == []

    db_session.add(
        AssistantResponse(
            user_id="user-1",
            session_id="session-last",
            variant_id="v1",
            latency_ms=200,
            created_at=later - timedelta(minutes=5),
        )
    )
    db_session.commit()
    assert monitor.check_recovery(later) == ["v1"]
    assert selector.is_enabled("v1") is True
    assert db_session.query(AuditEvent).filter(AuditEvent.event_type == EVENT_VARIANT_ENABLED).count() == 1


def test_error_rate_counts_terminal_entries(server_db):
    for index, status in enumerate(["success", "failed", "success", "success"]):
        request_id = f"req-{index}"
        write_entry(user_id="user-1", tool_name="log_workout", request_id=request_id, status="pending", request_payload={})
        write_entry(user_id="user-1", tool_name="log_workout", request_id=request_id, status=status, request_payload={})

    snapshot = QualityMonitor(VariantSelector(), interval_seconds=0).check_quality_gates()
    assert snapshot["tool_call_count"] == 4
    assert snapshot["tool_call_errors"] == 1
    assert snapshot["tool_call_error_rate"] == 0.25
    assert snapshot["alerts"][0]["level"] == "critical"


def test_variant_status_lists_catalog(server_db):
    selector = VariantSelector()
    selector.disable_variant("v4")
    status = QualityMonitor(selector, interval_seconds=0).get_variant_status()
    assert set(status) == {"v1", "v2", "v3", "v4"}
    assert status["v4"]["enabled"] is False
    assert status["v1"]["quality_gates"]["passed"] is False
    assert status["v1"]["quality_gates"]["min_samples"] == 20
