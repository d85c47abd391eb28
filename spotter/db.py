"""
Engine and session setup for the coaching store.

``init_db`` binds ``DB`` and refuses to run against a schema that is not
at the alembic head, migrating first when AUTO_MIGRATE_ON_STARTUP is on.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

import spotter.config as config

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class DB:
    """Process-wide engine and session factory."""

    engine = None
    SessionLocal = None


def _alembic_config():
    from alembic.config import Config

    cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    if config.DATABASE_URL:
        cfg.set_main_option("sqlalchemy.url", config.DATABASE_URL)
    return cfg


def schema_revisions(engine) -> tuple[Optional[str], Optional[str]]:
    """Return ``(current, head)`` alembic revisions for ``engine``."""
    from alembic.runtime.migration import MigrationContext
    from alembic.script import ScriptDirectory

    head = ScriptDirectory.from_config(_alembic_config()).get_current_head()
    with engine.connect() as conn:
        current = MigrationContext.configure(conn).get_current_revision()
    return current, head


def _migrate_to_head(engine) -> None:
    from alembic import command

    current, head = schema_revisions(engine)
    if current == head:
        return
    if not config.AUTO_MIGRATE_ON_STARTUP:
        raise RuntimeError(
            f"Schema at {current}, code expects {head}. "
            "Run 'alembic upgrade head' or enable AUTO_MIGRATE_ON_STARTUP."
        )

    config.logger.info("schema_migrating", extra={"from_revision": current, "to_revision": head})
    command.upgrade(_alembic_config(), "head")
    if schema_revisions(engine)[0] != head:
        raise RuntimeError(f"Migration stopped short of revision {head}")


def vector_search_enabled() -> bool:
    return config.DB_BACKEND == "postgres" and config.VECTOR_BACKEND_EFFECTIVE == "pgvector"


def _create_pgvector_extension(engine) -> None:
    with engine.connect() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        conn.commit()


def init_db() -> None:
    """Bind ``DB`` to DATABASE_URL and bring the schema to head."""
    config.validate_and_prepare_config()

    connect_args = {"check_same_thread": False} if config.DB_BACKEND == "sqlite" else {}
    DB.engine = create_engine(config.DATABASE_URL, pool_pre_ping=True, connect_args=connect_args)
    DB.SessionLocal = sessionmaker(bind=DB.engine)
    config.logger.info("db_connected", extra={"backend": config.DB_BACKEND})

    if vector_search_enabled() and config.AUTO_CREATE_EXTENSIONS:
        _create_pgvector_extension(DB.engine)

    _migrate_to_head(DB.engine)
    config.logger.info("db_ready")


def dispose_db() -> None:
    if DB.engine is not None:
        DB.engine.dispose()
    DB.engine = None
    DB.SessionLocal = None
