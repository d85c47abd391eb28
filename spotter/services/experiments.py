"""
Experiment outcomes and the per-variant comparison.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import func

import spotter.config as config
from spotter.db import DB
from spotter.errors import ValidationError
from spotter.models import ExperimentAssignment, utcnow
from spotter.validators import validate_limit

OUTCOMES = ("success", "failure")
METRIC_KEYS = (
    "tool_call_accuracy",
    "response_specificity",
    "safety_compliance",
    "user_engagement",
)


def _validate_metrics(metrics: Optional[dict]) -> dict:
    if metrics is None:
        return {}
    if not isinstance(metrics, dict):
        raise ValidationError("metrics must be an object", field="metrics", error_type="invalid_type")
    cleaned = {}
    for key, value in metrics.items():
        if key not in METRIC_KEYS:
            raise ValidationError(f"Unknown metric: {key}", field="metrics", error_type="invalid_key")
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 1:
            raise ValidationError(
                f"metric {key} must be a number between 0 and 1",
                field="metrics",
                error_type="out_of_range",
            )
        cleaned[key] = float(value)
    return cleaned


def record_outcome(experiment_id: int, outcome: str, metrics: Optional[dict] = None) -> dict:
    if outcome not in OUTCOMES:
        raise ValidationError("outcome must be 'success' or 'failure'", field="outcome", error_type="invalid_choice")
    cleaned = _validate_metrics(metrics)

    db = DB.SessionLocal()
    try:
        assignment = db.query(ExperimentAssignment).filter(ExperimentAssignment.id == experiment_id).first()
        if assignment is None:
            raise ValidationError(
                f"Experiment {experiment_id} not found",
                field="experiment_id",
                error_type="not_found",
            )
        if assignment.completed_at is not None:
            raise ValidationError(
                f"Experiment {experiment_id} already has an outcome",
                field="experiment_id",
                error_type="conflict",
            )
        assignment.outcome = outcome
        assignment.metrics = cleaned
        assignment.completed_at = utcnow()
        db.commit()
        result = {
            "status": "recorded",
            "experiment_id": assignment.id,
            "variant_id": assignment.variant_id,
            "outcome": outcome,
            "metrics": cleaned,
        }
    finally:
        db.close()
    config.logger.info("experiment_outcome_recorded", extra=result)
    return result


def get_experiment_results(
    variant_id: Optional[str] = None,
    segment_type: Optional[str] = None,
    limit: int = 100,
) -> dict:
    validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
    db = DB.SessionLocal()
    try:
        query = db.query(ExperimentAssignment).filter(ExperimentAssignment.completed_at.isnot(None))
        if variant_id:
            query = query.filter(ExperimentAssignment.variant_id == variant_id)
        if segment_type:
            query = query.filter(ExperimentAssignment.segment_type == segment_type)
        rows = query.order_by(ExperimentAssignment.completed_at.desc()).limit(limit).all()
        return {
            "status": "ok",
            "count": len(rows),
            "results": [
                {
                    "experiment_id": row.id,
                    "user_id": row.user_id,
                    "session_id": row.session_id,
                    "variant_id": row.variant_id,
                    "segment_type": row.segment_type,
                    "outcome": row.outcome,
                    "metrics": row.metrics or {},
                    "created_at": row.created_at.isoformat(),
                    "completed_at": row.completed_at.isoformat(),
                }
                for row in rows
            ],
        }
    finally:
        db.close()


def compare_variants() -> dict:
    """Runs, outcomes and success rate per variant. No significance testing."""
    db = DB.SessionLocal()
    try:
        rows = (
            db.query(
                ExperimentAssignment.variant_id,
                ExperimentAssignment.outcome,
                func.count(ExperimentAssignment.id),
            )
            .group_by(ExperimentAssignment.variant_id, ExperimentAssignment.outcome)
            .all()
        )
    finally:
        db.close()

    summary: dict[str, dict] = {}
    for variant_id, outcome, count in rows:
        entry = summary.setdefault(variant_id, {"runs": 0, "successes": 0, "failures": 0, "pending": 0})
        entry["runs"] += count
        if outcome == "success":
            entry["successes"] += count
        elif outcome == "failure":
            entry["failures"] += count
        else:
            entry["pending"] += count
    for entry in summary.values():
        completed = entry["successes"] + entry["failures"]
        entry["success_rate"] = entry["successes"] / completed if completed else None
    return summary


__all__ = [
    "OUTCOMES",
    "METRIC_KEYS",
    "record_outcome",
    "get_experiment_results",
    "compare_variants",
]
