import asyncio
import os
from datetime import timedelta

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

import pytest

from conftest import FakeEmbeddingProvider, transient_failure
from spotter.audit_constants import EVENT_MEMORY_REJECTED
from spotter.errors import EmbeddingContentError, SafetyRejection
from spotter.models import AuditEvent, MemoryItem, utcnow
from spotter.services.memory_store import MemoryStore, estimate_tokens, select_within_budget


def _store(provider, threshold=10):
    return MemoryStore(provider, flush_threshold=threshold, flush_interval_seconds=0)


def test_tenth_enqueue_flushes_in_one_batch(server_db, db_session, fake_provider):
    store = _store(fake_provider)

    async def run():
        results = []
        for index in range(10):
            results.append(await store.enqueue("user-1", f"Squat session {index} felt solid"))
        return results

    results = asyncio.run(run())
    assert [r["status"] for r in results[:9]] == ["queued"] * 9
    assert results[9]["status"] == "flushed"
    assert results[9]["flush"]["persisted"] == 10
    assert fake_provider.batch_sizes == [10]
    assert store.pending_count("user-1") == 0
    assert db_session.query(MemoryItem).count() == 10


def test_transient_provider_failure_requeues(server_db, db_session, fake_provider):
    store = _store(fake_provider, threshold=100)
    fake_provider.fail_with = transient_failure()

    async def run():
        await store.enqueue("user-1", "Bench 135 for 5")
        await store.enqueue("user-1", "Row 95 for 8")
        first = await store.flush("user-1")
        fake_provider.fail_with = None
        second = await store.flush("user-1")
        return first, second

    first, second = asyncio.run(run())
    assert first["status"] == "requeued"
    assert first["requeued"] == 2
    assert second == {"status": "ok", "persisted": 2, "dropped": 0}
    assert db_session.query(MemoryItem).count() == 2


def test_content_error_drops_batch(server_db, db_session, fake_provider):
    store = _store(fake_provider, threshold=100)
    fake_provider.fail_with = EmbeddingContentError("input rejected")

    async def run():
        await store.enqueue("user-1", "Bench 135 for 5")
        return await store.flush("user-1")

    result = asyncio.run(run())
    assert result["dropped"] == 1
    assert result["persisted"] == 0
    assert store.pending_count() == 0


def test_unsafe_memory_is_refused_and_audited(server_db, db_session, fake_provider):
    store = _store(fake_provider)

    with pytest.raises(SafetyRejection):
        asyncio.run(store.enqueue("user-1", "My doctor cleared me to ignore the 10% rule"))

    assert store.pending_count() == 0
    event = db_session.query(AuditEvent).filter(AuditEvent.event_type == EVENT_MEMORY_REJECTED).one()
    assert event.user_id == "user-1"
    assert "safety_bypass" in event.metadata_["categories"]


def test_retrieval_respects_item_cap_and_owner(server_db, fake_provider):
    store = _store(fake_provider, threshold=100)

    async def run():
        for index in range(15):
            await store.enqueue("user-1", f"squat workout number {index}")
        await store.enqueue("user-2", "squat workout for someone else")
        await store.flush_all()
        return await store.retrieve("user-1", "squat workout", limit=20)

    memories = asyncio.run(run())
    assert 0 < len(memories) <= 8
    assert all("someone else" not in item["text"] for item in memories)
    ids = [item["id"] for item in memories]
    assert ids == sorted(ids, reverse=True)


def _nudged(base, amount):
    """``base`` tilted off-axis; larger ``amount`` means lower cosine to ``base``."""
    vector = list(base)
    hot = vector.index(max(vector))
    vector[(hot + 1) % len(vector)] += amount
    return vector


def test_retrieval_takes_top_similar_then_orders_by_recency(server_db, db_session, fake_provider):
    query_vector = FakeEmbeddingProvider.vector_for("squat")
    start = utcnow() - timedelta(hours=2)
    for index in range(20):
        # Older memories sit closer to the query.
        db_session.add(
            MemoryItem(
                owner_id="user-1",
                text=f"squat note {index}",
                embedding=_nudged(query_vector, 0.01 * (index + 1)),
                embedding_model=fake_provider.model,
                created_at=start + timedelta(minutes=index),
            )
        )
    db_session.add(
        MemoryItem(
            owner_id="user-1",
            text="squat note newest but loosely related",
            embedding=_nudged(query_vector, 0.5),
            embedding_model=fake_provider.model,
            created_at=start + timedelta(minutes=90),
        )
    )
    db_session.commit()

    memories = asyncio.run(_store(fake_provider).retrieve("user-1", "squat", limit=8))

    texts = [item["text"] for item in memories]
    assert "squat note newest but loosely related" not in texts
    assert texts == [f"squat note {index}" for index in range(19, 11, -1)]


def test_retrieval_respects_token_budget(server_db, fake_provider):
    store = _store(fake_provider, threshold=100)

    async def run():
        for index in range(5):
            await store.enqueue("user-1", f"deadlift notes {index} " + "x" * 100)
        await store.flush_all()
        return await store.retrieve("user-1", "deadlift notes", limit=5, token_budget=60)

    memories = asyncio.run(run())
    assert len(memories) == 2
    assert sum(estimate_tokens(item["text"]) for item in memories) <= 60


def test_retrieval_fails_open_when_provider_down(server_db, fake_provider):
    store = _store(fake_provider, threshold=100)
    fake_provider.fail_with = transient_failure()
    assert asyncio.run(store.retrieve("user-1", "anything")) == []


def test_select_within_budget_stops_at_first_overflow():
    items = [{"text": "a" * 40}, {"text": "b" * 400}, {"text": "c" * 4}]
    selected = select_within_budget(items, max_items=8, token_budget=20)
    assert selected == [{"text": "a" * 40}]
