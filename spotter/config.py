"""
Environment-driven settings for Spotter.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("spotter")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _derive_effective_backends(db_backend: str, vector_backend: str) -> tuple[str, str]:
    db_effective = db_backend if db_backend in {"postgres", "sqlite"} else "postgres"
    vector_effective = vector_backend if vector_backend in {"pgvector", "none"} else "none"
    if db_effective == "sqlite" and vector_effective == "pgvector":
        vector_effective = "none"
    return db_effective, vector_effective


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "postgres").strip().lower()
VECTOR_BACKEND = os.environ.get("VECTOR_BACKEND", "pgvector").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/spotter.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE = _derive_effective_backends(
    DB_BACKEND,
    VECTOR_BACKEND,
)

# Database initialization controls
AUTO_CREATE_EXTENSIONS = _get_bool("AUTO_CREATE_EXTENSIONS", True)
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)

# Embedding settings
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
EMBEDDING_PROVIDER = os.environ.get("EMBEDDING_PROVIDER", "openai").strip().lower()
EMBEDDING_MODEL = os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIM = _get_int("EMBEDDING_DIM", 1536)
EMBEDDING_API_URL = os.environ.get("EMBEDDING_API_URL", "https://api.openai.com/v1/embeddings")

# OpenAI retry/backoff
EMBEDDING_TIMEOUT_SECONDS = _get_float("EMBEDDING_TIMEOUT_SECONDS", 30.0)
EMBEDDING_RETRY_MAX = _get_int("EMBEDDING_RETRY_MAX", 2)
EMBEDDING_RETRY_BACKOFF_SECONDS = _get_float("EMBEDDING_RETRY_BACKOFF_SECONDS", 0.5)
EMBEDDING_RETRY_JITTER_SECONDS = _get_float("EMBEDDING_RETRY_JITTER_SECONDS", 0.25)
EMBEDDING_FAILURE_THRESHOLD = _get_int("EMBEDDING_FAILURE_THRESHOLD", 5)
EMBEDDING_COOLDOWN_SECONDS = _get_int("EMBEDDING_COOLDOWN_SECONDS", 60)

# Memory queue and retrieval
MEMORY_FLUSH_THRESHOLD = _get_int("SPOTTER_MEMORY_FLUSH_THRESHOLD", 10)
MEMORY_FLUSH_INTERVAL_SECONDS = _get_int("SPOTTER_MEMORY_FLUSH_INTERVAL_SECONDS", 60)
EMBEDDING_BATCH_SIZE = _get_int("SPOTTER_EMBEDDING_BATCH_SIZE", 100)
MEMORY_FLUSH_TIMEOUT_SECONDS = _get_float("SPOTTER_MEMORY_FLUSH_TIMEOUT_SECONDS", 120.0)
RETRIEVAL_CANDIDATES = _get_int("SPOTTER_RETRIEVAL_CANDIDATES", 20)
RETRIEVAL_MAX_MEMORIES = _get_int("SPOTTER_RETRIEVAL_MAX_MEMORIES", 8)
RETRIEVAL_DEFAULT_LIMIT = _get_int("SPOTTER_RETRIEVAL_DEFAULT_LIMIT", 10)
RETRIEVAL_TOKEN_BUDGET = _get_int("SPOTTER_RETRIEVAL_TOKEN_BUDGET", 1500)
RETRIEVAL_TIMEOUT_SECONDS = _get_float("SPOTTER_RETRIEVAL_TIMEOUT_SECONDS", 5.0)
CHARS_PER_TOKEN = _get_int("SPOTTER_CHARS_PER_TOKEN", 4)

# Guardian
MAX_MEMORY_TEXT_LENGTH = _get_int("SPOTTER_MAX_MEMORY_TEXT_LENGTH", 1000)
POISONING_SCAN_LIMIT = _get_int("SPOTTER_POISONING_SCAN_LIMIT", 20)
EMERGENCY_CLEAR_DAYS = _get_int("SPOTTER_EMERGENCY_CLEAR_DAYS", 7)

# Safety validator
PROGRESSION_HISTORY_LIMIT = _get_int("SPOTTER_PROGRESSION_HISTORY_LIMIT", 10)
PROGRESSION_MAX_INCREASE = _get_float("SPOTTER_PROGRESSION_MAX_INCREASE", 0.10)
GAP_DAYS = _get_int("SPOTTER_GAP_DAYS", 7)
GAP_MAX_JUMP = _get_float("SPOTTER_GAP_MAX_JUMP", 0.15)
ZIGZAG_MAX_JUMP = _get_float("SPOTTER_ZIGZAG_MAX_JUMP", 0.20)

# Segmentation
RETURNING_INACTIVE_DAYS = _get_int("SPOTTER_RETURNING_INACTIVE_DAYS", 10)
BEGINNER_MAX_WEEKS = _get_int("SPOTTER_BEGINNER_MAX_WEEKS", 4)
INTERMEDIATE_MAX_WEEKS = _get_int("SPOTTER_INTERMEDIATE_MAX_WEEKS", 26)

# Quality monitor
QUALITY_CHECK_INTERVAL_SECONDS = _get_int("SPOTTER_QUALITY_CHECK_INTERVAL_SECONDS", 300)
QUALITY_WINDOW_SECONDS = _get_int("SPOTTER_QUALITY_WINDOW_SECONDS", 3600)
ERROR_RATE_WARNING = _get_float("SPOTTER_ERROR_RATE_WARNING", 0.03)
ERROR_RATE_CRITICAL = _get_float("SPOTTER_ERROR_RATE_CRITICAL", 0.05)
P95_LATENCY_WARNING_MS = _get_int("SPOTTER_P95_LATENCY_WARNING_MS", 2500)
P95_LATENCY_CRITICAL_MS = _get_int("SPOTTER_P95_LATENCY_CRITICAL_MS", 3000)
TOKEN_USAGE_ALERT = _get_int("SPOTTER_TOKEN_USAGE_ALERT", 3000)
RECOVERY_MIN_SAMPLES = _get_int("SPOTTER_RECOVERY_MIN_SAMPLES", 20)

# Tool engine and security
TOOL_MIN_INTERVAL_SECONDS = _get_float("SPOTTER_TOOL_MIN_INTERVAL_SECONDS", 1.0)
TOOL_TIMEOUT_SECONDS = _get_float("SPOTTER_TOOL_TIMEOUT_SECONDS", 10.0)
RATE_LIMIT_MAX_REQUESTS = _get_int("SPOTTER_RATE_LIMIT_MAX_REQUESTS", 30)
RATE_LIMIT_WINDOW_SECONDS = _get_int("SPOTTER_RATE_LIMIT_WINDOW_SECONDS", 60)
COUNTER_CLEANUP_INTERVAL_SECONDS = _get_int("SPOTTER_COUNTER_CLEANUP_INTERVAL_SECONDS", 300)
INTEGRITY_AUDIT_INTERVAL_SECONDS = _get_int("SPOTTER_INTEGRITY_AUDIT_INTERVAL_SECONDS", 3600)
INTEGRITY_AUDIT_LIMIT = _get_int("SPOTTER_INTEGRITY_AUDIT_LIMIT", 1000)
MAX_PAYLOAD_BYTES = _get_int("SPOTTER_MAX_PAYLOAD_BYTES", 65536)

# Request/input limits
MAX_QUERY_LENGTH = _get_int("SPOTTER_MAX_QUERY_LENGTH", 4000)
MAX_SHORT_TEXT_LENGTH = _get_int("SPOTTER_MAX_SHORT_TEXT_LENGTH", 255)
MAX_RESULT_LIMIT = _get_int("SPOTTER_MAX_RESULT_LIMIT", 100)
MAX_METADATA_BYTES = _get_int("SPOTTER_MAX_METADATA_BYTES", 20000)


def _resolve_database_url(errors: list[str]) -> Optional[str]:
    """Fill in the sqlite URL from SQLITE_PATH and check the URL matches DB_BACKEND."""
    if DATABASE_URL:
        sqlite_url = DATABASE_URL.lower().startswith("sqlite")
        if sqlite_url != (DB_BACKEND == "sqlite"):
            errors.append(f"DATABASE_URL does not match DB_BACKEND={DB_BACKEND}")
        return DATABASE_URL
    if DB_BACKEND != "sqlite":
        errors.append("DATABASE_URL environment variable is required")
        return None
    if not SQLITE_PATH:
        errors.append("SQLITE_PATH environment variable is required for sqlite")
        return None
    return f"sqlite:///{SQLITE_PATH}"


def validate_and_prepare_config() -> None:
    """Check settings once at startup and fill in the derived ones."""
    global DATABASE_URL, DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE

    errors: list[str] = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")
    if VECTOR_BACKEND not in {"pgvector", "none"}:
        errors.append("VECTOR_BACKEND must be 'pgvector' or 'none'")
    elif VECTOR_BACKEND == "pgvector" and DB_BACKEND == "sqlite":
        errors.append("VECTOR_BACKEND=pgvector requires DB_BACKEND=postgres")

    DATABASE_URL = _resolve_database_url(errors)
    DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE = _derive_effective_backends(DB_BACKEND, VECTOR_BACKEND)

    if EMBEDDING_PROVIDER not in {"openai", "none"}:
        errors.append("EMBEDDING_PROVIDER must be 'openai' or 'none'")
    if EMBEDDING_PROVIDER == "openai" and not OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY is not set; embedding calls will fail")

    if VECTOR_BACKEND_EFFECTIVE == "pgvector":
        from spotter.models import PGVECTOR_AVAILABLE

        if not PGVECTOR_AVAILABLE:
            errors.append("pgvector package is required when VECTOR_BACKEND=pgvector")

    if ERROR_RATE_WARNING > ERROR_RATE_CRITICAL:
        errors.append("SPOTTER_ERROR_RATE_WARNING must not exceed SPOTTER_ERROR_RATE_CRITICAL")
    if P95_LATENCY_WARNING_MS > P95_LATENCY_CRITICAL_MS:
        errors.append("SPOTTER_P95_LATENCY_WARNING_MS must not exceed SPOTTER_P95_LATENCY_CRITICAL_MS")
    if EMBEDDING_BATCH_SIZE <= 0 or MEMORY_FLUSH_THRESHOLD <= 0:
        errors.append("memory queue sizes must be positive")

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
