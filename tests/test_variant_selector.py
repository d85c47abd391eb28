import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

import pytest

from spotter.errors import ValidationError, VariantDisabledError
from spotter.models import ExperimentAssignment
from spotter.services.variant_selector import (
    VariantSelector,
    build_memory_block,
    segment_candidates,
    stable_hash,
)


def _sessions_on(selector, variant_id, count, segment="intermediate"):
    sessions = []
    index = 0
    while len(sessions) < count:
        session_id = f"session-{index}"
        index += 1
        if selector.select_variant("user-1", session_id, segment).variant.id == variant_id:
            sessions.append(session_id)
        assert index < 500
    return sessions


def test_stable_hash_matches_string_hash_code():
    assert stable_hash("") == 0
    assert stable_hash("abc") == 96354
    assert stable_hash("user-1session-1") == stable_hash("user-1session-1")


def test_segment_candidates():
    assert [v.id for v in segment_candidates("beginner")] == ["v4"]
    assert [v.id for v in segment_candidates("advanced")] == ["v2", "v3"]
    assert [v.id for v in segment_candidates("returning")] == ["v1", "v2", "v3", "v4"]


def test_selection_is_deterministic_and_reused(server_db, db_session):
    selector = VariantSelector()
    first = selector.select_variant("user-1", "session-a", "intermediate")
    again = selector.select_variant("user-1", "session-a", "intermediate")
    assert again.variant == first.variant
    assert again.experiment_id == first.experiment_id
    assert again.reused is True

    # a fresh selector reloads the persisted assignment
    reloaded = VariantSelector().select_variant("user-1", "session-a", "intermediate")
    assert reloaded.experiment_id == first.experiment_id
    assert db_session.query(ExperimentAssignment).count() == 1


def test_disable_evicts_cached_sessions_and_is_never_returned(server_db, db_session):
    selector = VariantSelector()
    sessions = _sessions_on(selector, "v2", 5)
    assert selector.cached_sessions("v2") == 5

    assert selector.disable_variant("v2") == 5
    assert selector.cached_sessions("v2") == 0

    for session_id in sessions:
        assignment = selector.select_variant("user-1", session_id, "intermediate")
        assert assignment.variant.id != "v2"
        assert assignment.reused is False

    superseded = (
        db_session.query(ExperimentAssignment)
        .filter(ExperimentAssignment.variant_id == "v2", ExperimentAssignment.superseded_at.isnot(None))
        .count()
    )
    assert superseded == 5


def test_all_candidates_disabled_raises(server_db):
    selector = VariantSelector()
    selector.disable_variant("v4")
    with pytest.raises(VariantDisabledError):
        selector.select_variant("user-1", "session-a", "beginner")


def test_enable_variant_reports_previous_state(server_db):
    selector = VariantSelector()
    assert selector.enable_variant("v1") is False
    selector.disable_variant("v1")
    assert selector.is_enabled("v1") is False
    assert selector.enable_variant("v1") is True
    assert selector.is_enabled("v1") is True


def test_unknown_variant_is_rejected():
    with pytest.raises(ValidationError):
        VariantSelector().disable_variant("v9")


def test_memory_block_by_load():
    memories = [{"text": f"memory {index}"} for index in range(12)]
    assert build_memory_block([], "full") == ""
    assert build_memory_block(memories, "full").count("\n") == 9
    assert build_memory_block(memories, "recent_only") == "- memory 0\n- memory 1\n- memory 2"
    summary = build_memory_block(memories, "summary")
    assert summary.endswith("- (9 older entries summarized for context)")
    assert build_memory_block(memories[:5], "summary").count("\n") == 4
