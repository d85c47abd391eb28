"""
Prompt variant catalog, governed per-session selection, and the kill switch.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from typing import Optional, Sequence

import spotter.config as config
from spotter.db import DB
from spotter.errors import ValidationError, VariantDisabledError
from spotter.models import ExperimentAssignment, utcnow

logger = config.logger


@dataclass(frozen=True)
class VariantDefinition:
    id: str
    tone: str
    memory_load: str
    logging_offer: str
    safety_level: str

    def as_dict(self) -> dict:
        return asdict(self)


VARIANT_CATALOG: tuple[VariantDefinition, ...] = (
    VariantDefinition("v1", "trainer_friend", "full", "metric_detected", "short"),
    VariantDefinition("v2", "strict_coach", "summary", "metric_detected", "short"),
    VariantDefinition("v3", "science_nerd", "full", "metric_detected", "detailed"),
    VariantDefinition("v4", "trainer_friend", "recent_only", "always", "contextual"),
)

FULL_MEMORY_LINES = 10
RECENT_MEMORY_LINES = 3
SUMMARY_THRESHOLD = 5


@dataclass(frozen=True)
class VariantAssignment:
    variant: VariantDefinition
    experiment_id: int
    segment: str
    reused: bool = False


def segment_candidates(
    segment: str,
    catalog: Sequence[VariantDefinition] = VARIANT_CATALOG,
) -> list[VariantDefinition]:
    if segment == "beginner":
        return [v for v in catalog if v.tone == "trainer_friend" and v.safety_level != "short"]
    if segment == "advanced":
        return [v for v in catalog if v.tone != "trainer_friend"]
    return list(catalog)


def stable_hash(value: str) -> int:
    """32-bit string hash over UTF-16 code units (h * 31 + unit), absolute value."""
    result = 0
    data = value.encode("utf-16-le")
    for index in range(0, len(data), 2):
        unit = data[index] | (data[index + 1] << 8)
        result = (result * 31 + unit) & 0xFFFFFFFF
    if result >= 0x80000000:
        result -= 0x100000000
    return abs(result)


def build_memory_block(memories: Sequence[dict], memory_load: str) -> str:
    if not memories:
        return ""
    lines = [f"- {memory['text']}" for memory in memories]
    if memory_load == "summary":
        if len(lines) > SUMMARY_THRESHOLD:
            older = len(lines) - RECENT_MEMORY_LINES
            return "\n".join(lines[:RECENT_MEMORY_LINES] + [f"- ({older} older entries summarized for context)"])
        return "\n".join(lines)
    if memory_load == "recent_only":
        return "\n".join(lines[:RECENT_MEMORY_LINES])
    return "\n".join(lines[:FULL_MEMORY_LINES])


class VariantSelector:
    def __init__(self, catalog: Sequence[VariantDefinition] = VARIANT_CATALOG):
        self._catalog = {variant.id: variant for variant in catalog}
        self._ordered = tuple(catalog)
        self._disabled: set[str] = set()
        self._cache: dict[tuple[str, str], tuple[str, int]] = {}
        self._lock = threading.Lock()

    @property
    def catalog(self) -> tuple[VariantDefinition, ...]:
        return self._ordered

    def get_variant(self, variant_id: str) -> VariantDefinition:
        variant = self._catalog.get(variant_id)
        if variant is None:
            raise ValidationError(
                f"Unknown variant: {variant_id}",
                field="variant_id",
                error_type="not_found",
            )
        return variant

    def is_enabled(self, variant_id: str) -> bool:
        with self._lock:
            return variant_id not in self._disabled

    def disabled_ids(self) -> set[str]:
        with self._lock:
            return set(self._disabled)

    def cached_sessions(self, variant_id: str) -> int:
        with self._lock:
            return sum(1 for cached_id, _ in self._cache.values() if cached_id == variant_id)

    def disable_variant(self, variant_id: str) -> int:
        """Add to the disabled set and evict every cached session using it. Returns evictions."""
        self.get_variant(variant_id)
        with self._lock:
            self._disabled.add(variant_id)
            stale = [key for key, (cached_id, _) in self._cache.items() if cached_id == variant_id]
            for key in stale:
                del self._cache[key]
        logger.warning("variant_disabled", extra={"variant_id": variant_id, "evicted": len(stale)})
        return len(stale)

    def enable_variant(self, variant_id: str) -> bool:
        self.get_variant(variant_id)
        with self._lock:
            was_disabled = variant_id in self._disabled
            self._disabled.discard(variant_id)
        if was_disabled:
            logger.info("variant_enabled", extra={"variant_id": variant_id})
        return was_disabled

    def _enabled_candidates(self, segment: str) -> list[VariantDefinition]:
        with self._lock:
            disabled = set(self._disabled)
        return [v for v in segment_candidates(segment, self._ordered) if v.id not in disabled]

    def select_variant(self, user_id: str, session_id: str, segment: str) -> VariantAssignment:
        """
        Deterministic per-session selection.

        A cached or persisted assignment is reused while its variant stays
        enabled. A disabled variant is never returned; when no enabled
        candidate exists the call raises VariantDisabledError.
        """
        key = (user_id, session_id)
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                if cached[0] not in self._disabled:
                    return VariantAssignment(self._catalog[cached[0]], cached[1], segment, reused=True)
                del self._cache[key]

        db = DB.SessionLocal()
        try:
            existing = (
                db.query(ExperimentAssignment)
                .filter(
                    ExperimentAssignment.user_id == user_id,
                    ExperimentAssignment.session_id == session_id,
                    ExperimentAssignment.superseded_at.is_(None),
                )
                .order_by(ExperimentAssignment.created_at.desc(), ExperimentAssignment.id.desc())
                .first()
            )
            if existing is not None:
                if existing.variant_id in self._catalog and self.is_enabled(existing.variant_id):
                    with self._lock:
                        self._cache[key] = (existing.variant_id, existing.id)
                    return VariantAssignment(
                        self._catalog[existing.variant_id],
                        existing.id,
                        existing.segment_type,
                        reused=True,
                    )
                existing.superseded_at = utcnow()
                db.commit()

            candidates = self._enabled_candidates(segment)
            if not candidates:
                raise VariantDisabledError(None, f"no enabled variant available for segment {segment}")
            variant = candidates[stable_hash(user_id + session_id) % len(candidates)]

            assignment = ExperimentAssignment(
                user_id=user_id,
                session_id=session_id,
                variant_id=variant.id,
                segment_type=segment,
                variant_config=variant.as_dict(),
                created_at=utcnow(),
            )
            db.add(assignment)
            db.commit()
            assignment_id = assignment.id

            with self._lock:
                disabled_now = variant.id in self._disabled
                if not disabled_now:
                    self._cache[key] = (variant.id, assignment_id)
            if disabled_now:
                assignment.superseded_at = utcnow()
                db.commit()
                raise VariantDisabledError(variant.id)
        finally:
            db.close()

        return VariantAssignment(variant, assignment_id, segment)


__all__ = [
    "VARIANT_CATALOG",
    "VariantDefinition",
    "VariantAssignment",
    "VariantSelector",
    "build_memory_block",
    "segment_candidates",
    "stable_hash",
]
