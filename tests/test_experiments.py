import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

import pytest

from spotter.errors import ValidationError
from spotter.services.experiments import compare_variants, get_experiment_results, record_outcome
from spotter.services.variant_selector import VariantSelector


def test_record_outcome_once(server_db):
    assignment = VariantSelector().select_variant("user-1", "session-a", "advanced")
    result = record_outcome(assignment.experiment_id, "success", {"safety_compliance": 1})
    assert result["status"] == "recorded"
    assert result["metrics"] == {"safety_compliance": 1.0}

    with pytest.raises(ValidationError) as exc:
        record_outcome(assignment.experiment_id, "failure")
    assert exc.value.error_type == "conflict"


def test_record_outcome_validation(server_db):
    with pytest.raises(ValidationError):
        record_outcome(1, "maybe")
    with pytest.raises(ValidationError):
        record_outcome(1, "success", {"unknown_metric": 0.5})
    with pytest.raises(ValidationError):
        record_outcome(1, "success", {"user_engagement": 1.5})
    with pytest.raises(ValidationError) as exc:
        record_outcome(999, "success")
    assert exc.value.error_type == "not_found"


def test_results_and_comparison(server_db):
    selector = VariantSelector()
    assignments = [selector.select_variant("user-1", f"session-{i}", "advanced") for i in range(4)]
    record_outcome(assignments[0].experiment_id, "success")
    record_outcome(assignments[1].experiment_id, "failure")

    results = get_experiment_results()
    assert results["count"] == 2

    summary = compare_variants()
    assert sum(entry["runs"] for entry in summary.values()) == 4
    assert sum(entry["pending"] for entry in summary.values()) == 2
    for entry in summary.values():
        completed = entry["successes"] + entry["failures"]
        if completed:
            assert entry["success_rate"] == entry["successes"] / completed
        else:
            assert entry["success_rate"] is None
