"""
Liveness and dependency status for the coaching service.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

import spotter.config as config
from spotter import __version__
from spotter.db import DB, schema_revisions, vector_search_enabled


router = APIRouter()


def _database_status() -> dict:
    if DB.engine is None:
        return {"ok": False, "error": "db_not_initialized"}

    pgvector_version = None
    try:
        with DB.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            if vector_search_enabled():
                pgvector_version = conn.execute(
                    text("SELECT extversion FROM pg_extension WHERE extname = 'vector'")
                ).scalar()
        current, head = schema_revisions(DB.engine)
    except SQLAlchemyError as exc:
        return {"ok": False, "error": str(exc)}

    # Test databases built with create_all carry no revision stamp.
    up_to_date = current is None or head is None or current == head
    status = {
        "ok": up_to_date,
        "schema_revision": current,
        "schema_expected": head,
        "schema_up_to_date": up_to_date,
    }
    if vector_search_enabled():
        status["pgvector_version"] = pgvector_version
        status["ok"] = up_to_date and bool(pgvector_version)
    return status


def _embedding_status(service) -> dict:
    provider = service.memory.provider.status()
    if config.EMBEDDING_PROVIDER == "none":
        state = "disabled"
    elif (provider.get("circuit_breaker") or {}).get("open"):
        state = "cooldown"
    else:
        state = "ready"
    return {"status": state, "provider": config.EMBEDDING_PROVIDER, **provider}


@router.get("/health")
async def health(request: Request):
    service = request.app.state.coaching
    database = _database_status()
    embeddings = _embedding_status(service)
    if not database["ok"]:
        raise HTTPException(status_code=503, detail={"database": database, "embedding_provider": embeddings})

    return {
        "status": "healthy",
        "service": "Spotter",
        "version": __version__,
        "database": database,
        "embedding_provider": embeddings,
        "coaching": service.health(),
    }
