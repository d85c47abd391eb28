"""
Per-owner embedding queue, persistence, and similarity retrieval.
"""

from __future__ import annotations

import asyncio
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

import numpy as np
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

import spotter.config as config
from spotter.audit import record_event
from spotter.audit_constants import EVENT_MEMORY_REJECTED
from spotter.db import DB, vector_search_enabled
from spotter.errors import ProviderError, SafetyRejection
from spotter.models import MemoryItem, utcnow
from spotter.services.embeddings import EmbeddingProvider
from spotter.services.memory_guardian import filter_for_retrieval, sanitize_for_storage
from spotter.validators import validate_metadata

logger = config.logger


@dataclass
class PendingMemory:
    owner_id: str
    text: str
    scope_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    importance_weight: float = 1.0
    enqueued_at: datetime = field(default_factory=utcnow)


def estimate_tokens(value: str) -> int:
    return math.ceil(len(value or "") / config.CHARS_PER_TOKEN)


def select_within_budget(items: Sequence[dict], max_items: int, token_budget: int) -> list[dict]:
    """Accept items in order until the cap or the first item that would overflow the budget."""
    selected: list[dict] = []
    used = 0
    for item in items:
        if len(selected) >= max_items:
            break
        cost = estimate_tokens(item["text"])
        if used + cost > token_budget:
            break
        selected.append(item)
        used += cost
    return selected


def rank_by_cosine(query_vector: Sequence[float], rows: Sequence[dict], top_k: int) -> list[dict]:
    """In-process cosine ranking for backends without pgvector."""
    if not rows:
        return []
    query = np.asarray(query_vector, dtype=float)
    usable = [row for row in rows if row["embedding"] is not None and len(row["embedding"]) == query.shape[0]]
    if not usable:
        return []
    matrix = np.asarray([row["embedding"] for row in usable], dtype=float)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    norms = np.where(norms == 0, 1e-12, norms)
    scores = (matrix @ query) / norms
    order = np.argsort(-scores)[:top_k]
    ranked = []
    for index in order:
        row = dict(usable[int(index)])
        row["similarity"] = float(scores[int(index)])
        ranked.append(row)
    return ranked


class MemoryStore:
    def __init__(
        self,
        provider: EmbeddingProvider,
        flush_threshold: Optional[int] = None,
        batch_size: Optional[int] = None,
        flush_interval_seconds: Optional[int] = None,
    ):
        self._provider = provider
        self._flush_threshold = flush_threshold or config.MEMORY_FLUSH_THRESHOLD
        self._batch_size = batch_size or config.EMBEDDING_BATCH_SIZE
        self._flush_interval = (
            config.MEMORY_FLUSH_INTERVAL_SECONDS if flush_interval_seconds is None else flush_interval_seconds
        )
        self._buffers: dict[str, list[PendingMemory]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_guard = threading.Lock()
        self._flush_task: Optional[asyncio.Task] = None

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider

    def _owner_lock(self, owner_id: str) -> asyncio.Lock:
        with self._locks_guard:
            lock = self._locks.get(owner_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[owner_id] = lock
            return lock

    def pending_count(self, owner_id: Optional[str] = None) -> int:
        if owner_id is not None:
            return len(self._buffers.get(owner_id, ()))
        return sum(len(items) for items in self._buffers.values())

    async def enqueue(
        self,
        owner_id: str,
        text_value: str,
        scope_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        importance_weight: float = 1.0,
    ) -> dict:
        result = sanitize_for_storage(owner_id, text_value)
        if not result.safe:
            await asyncio.to_thread(
                record_event,
                event_type=EVENT_MEMORY_REJECTED,
                actor_type="system",
                user_id=owner_id,
                target_type="memory",
                target_ids=[],
                reason="unsafe content refused at storage",
                metadata={"categories": list(result.categories)},
            )
            raise SafetyRejection(result.reason or "unsafe memory content", categories=result.categories)
        if not result.text:
            return {"status": "skipped", "reason": "empty_after_sanitize"}
        validate_metadata(metadata)

        item = PendingMemory(
            owner_id=owner_id,
            text=result.text,
            scope_id=scope_id,
            metadata=dict(metadata or {}),
            importance_weight=importance_weight,
        )
        async with self._owner_lock(owner_id):
            buffer = self._buffers.setdefault(owner_id, [])
            buffer.append(item)
            size = len(buffer)

        if size >= self._flush_threshold:
            flush_result = await self.flush(owner_id)
            return {"status": "flushed", "flush": flush_result}
        return {"status": "queued", "queued": size}

    async def _requeue(self, owner_id: str, items: list[PendingMemory]) -> None:
        async with self._owner_lock(owner_id):
            self._buffers[owner_id] = items + self._buffers.get(owner_id, [])

    async def flush(self, owner_id: str) -> dict:
        async with self._owner_lock(owner_id):
            batch = self._buffers.pop(owner_id, [])
        if not batch:
            return {"status": "empty", "persisted": 0}

        persisted = 0
        dropped = 0
        for start in range(0, len(batch), self._batch_size):
            chunk = batch[start:start + self._batch_size]
            try:
                vectors = await asyncio.wait_for(
                    self._provider.embed_batch([item.text for item in chunk]),
                    timeout=config.MEMORY_FLUSH_TIMEOUT_SECONDS,
                )
            except asyncio.TimeoutError:
                await self._requeue(owner_id, batch[start:])
                logger.warning("memory_flush_timeout", extra={"owner_id": owner_id, "requeued": len(batch) - start})
                return {"status": "requeued", "persisted": persisted, "requeued": len(batch) - start}
            except ProviderError as exc:
                if exc.transient:
                    await self._requeue(owner_id, batch[start:])
                    logger.warning(
                        "memory_flush_requeued",
                        extra={"owner_id": owner_id, "requeued": len(batch) - start, "detail": str(exc)},
                    )
                    return {"status": "requeued", "persisted": persisted, "requeued": len(batch) - start}
                dropped += len(chunk)
                logger.error(
                    "memory_flush_dropped",
                    extra={"owner_id": owner_id, "dropped": len(chunk), "detail": str(exc)},
                )
                continue

            try:
                await asyncio.to_thread(self._persist, chunk, vectors)
            except SQLAlchemyError as exc:
                await self._requeue(owner_id, batch[start:])
                logger.error(
                    "memory_persist_failed",
                    extra={"owner_id": owner_id, "requeued": len(batch) - start, "detail": str(exc)},
                )
                return {"status": "requeued", "persisted": persisted, "requeued": len(batch) - start}
            persisted += len(chunk)

        return {"status": "ok", "persisted": persisted, "dropped": dropped}

    def _persist(self, chunk: list[PendingMemory], vectors: list[list[float]]) -> None:
        db = DB.SessionLocal()
        try:
            for item, vector in zip(chunk, vectors):
                db.add(
                    MemoryItem(
                        owner_id=item.owner_id,
                        scope_id=item.scope_id,
                        text=item.text,
                        embedding=list(vector),
                        embedding_model=self._provider.model,
                        metadata_=item.metadata,
                        importance_weight=item.importance_weight,
                        created_at=item.enqueued_at,
                    )
                )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    async def flush_all(self) -> dict:
        totals = {"owners": 0, "persisted": 0, "requeued": 0}
        for owner_id in list(self._buffers.keys()):
            result = await self.flush(owner_id)
            totals["owners"] += 1
            totals["persisted"] += result.get("persisted", 0)
            totals["requeued"] += result.get("requeued", 0)
        return totals

    def _similar_candidates(
        self,
        owner_id: str,
        query_vector: list[float],
        scope_id: Optional[str],
    ) -> list[dict]:
        db = DB.SessionLocal()
        try:
            if vector_search_enabled():
                scope_clause = "AND scope_id = :scope_id" if scope_id is not None else ""
                sql = text(
                    f"""
                    SELECT id, text, scope_id, metadata, importance_weight, created_at,
                        1 - (embedding <=> cast(:embedding as vector)) AS similarity
                    FROM memory_items
                    WHERE owner_id = :owner_id
                        AND redacted = false
                        AND embedding_model = :model
                        {scope_clause}
                    ORDER BY embedding <=> cast(:embedding as vector)
                    LIMIT :limit
                    """
                )
                params = {
                    "embedding": str(list(query_vector)),
                    "owner_id": owner_id,
                    "model": self._provider.model,
                    "limit": config.RETRIEVAL_CANDIDATES,
                }
                if scope_id is not None:
                    params["scope_id"] = scope_id
                rows = db.execute(sql, params).mappings().all()
                return [
                    {
                        "id": row["id"],
                        "text": row["text"],
                        "scope_id": row["scope_id"],
                        "metadata": row["metadata"] or {},
                        "importance_weight": row["importance_weight"],
                        "created_at": row["created_at"],
                        "similarity": float(row["similarity"]),
                    }
                    for row in rows
                ]

            query = db.query(MemoryItem).filter(
                MemoryItem.owner_id == owner_id,
                MemoryItem.redacted.is_(False),
                MemoryItem.embedding_model == self._provider.model,
            )
            if scope_id is not None:
                query = query.filter(MemoryItem.scope_id == scope_id)
            rows = [
                {
                    "id": row.id,
                    "text": row.text,
                    "scope_id": row.scope_id,
                    "metadata": row.metadata_ or {},
                    "importance_weight": row.importance_weight,
                    "created_at": row.created_at,
                    "embedding": row.embedding,
                }
                for row in query.all()
            ]
        finally:
            db.close()
        ranked = rank_by_cosine(query_vector, rows, config.RETRIEVAL_CANDIDATES)
        for row in ranked:
            row.pop("embedding", None)
        return ranked

    async def retrieve(
        self,
        owner_id: str,
        query_text: str,
        scope_id: Optional[str] = None,
        limit: Optional[int] = None,
        token_budget: Optional[int] = None,
    ) -> list[dict]:
        """
        Similarity search, then recency re-rank, then guardian filter, then token budget.

        Provider failures, timeouts and database errors return an empty list.
        """
        limit = config.RETRIEVAL_DEFAULT_LIMIT if limit is None else limit
        token_budget = config.RETRIEVAL_TOKEN_BUDGET if token_budget is None else token_budget
        max_items = min(config.RETRIEVAL_MAX_MEMORIES, limit)
        if max_items <= 0 or not (query_text or "").strip():
            return []

        try:
            query_vector = await asyncio.wait_for(
                self._provider.embed(query_text),
                timeout=config.RETRIEVAL_TIMEOUT_SECONDS,
            )
            candidates = await asyncio.wait_for(
                asyncio.to_thread(self._similar_candidates, owner_id, query_vector, scope_id),
                timeout=config.RETRIEVAL_TIMEOUT_SECONDS,
            )
        except (ProviderError, asyncio.TimeoutError, SQLAlchemyError) as exc:
            logger.warning(
                "memory_retrieval_degraded",
                extra={"owner_id": owner_id, "error": type(exc).__name__},
            )
            return []

        by_recency = sorted(candidates, key=lambda item: (item["created_at"], item["id"]), reverse=True)
        safe_items = filter_for_retrieval(owner_id, by_recency, max_items)
        selected = select_within_budget(safe_items, max_items, token_budget)
        return [_serialize_memory(item) for item in selected]

    async def start(self) -> None:
        if self._flush_task is None and self._flush_interval > 0:
            self._flush_task = asyncio.create_task(self._flush_loop())

    async def stop(self, drain: bool = True) -> None:
        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        if drain and self.pending_count():
            await self.flush_all()

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            try:
                stats = await self.flush_all()
                if stats["persisted"]:
                    logger.debug("memory_flush_complete", extra=stats)
            except Exception as exc:
                logger.warning(f"Memory flush error: {exc}")


def _serialize_memory(item: dict) -> dict:
    created_at = item.get("created_at")
    return {
        "id": item["id"],
        "text": item["text"],
        "scope_id": item.get("scope_id"),
        "metadata": item.get("metadata") or {},
        "importance_weight": item.get("importance_weight"),
        "similarity": item.get("similarity"),
        "created_at": created_at.isoformat() if isinstance(created_at, datetime) else created_at,
    }


__all__ = [
    "MemoryStore",
    "PendingMemory",
    "estimate_tokens",
    "select_within_budget",
    "rank_by_cosine",
]
