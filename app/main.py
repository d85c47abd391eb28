"""
Standalone FastAPI app wiring for Spotter.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

import spotter.config as config
from spotter.db import DB, dispose_db, init_db
from spotter.services.coaching import CoachingService
from app.routes.health import router as health_router
from app.routes.variants import router as variants_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    if DB.engine is None:
        init_db()
    service: Optional[CoachingService] = getattr(app.state, "coaching", None)
    if service is None:
        service = CoachingService()
        app.state.coaching = service
    await service.start()
    try:
        yield
    finally:
        try:
            await service.stop()
        except Exception as exc:
            config.logger.warning(f"Coaching service shutdown error: {exc}")
        dispose_db()


def create_app(service: Optional[CoachingService] = None) -> FastAPI:
    app = FastAPI(title="Spotter", redirect_slashes=False, lifespan=lifespan)
    if service is not None:
        app.state.coaching = service
    app.include_router(health_router)
    app.include_router(variants_router)
    return app


app = create_app()
