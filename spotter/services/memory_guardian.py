"""
Sanitization and poisoning defense for memory entering and leaving the store.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, Optional

import spotter.config as config
from spotter.audit import log_event
from spotter.audit_constants import EVENT_MEMORY_EMERGENCY_CLEARED
from spotter.db import DB
from spotter.models import MemoryItem, utcnow
from spotter.services.safety_validator import validate_text_claims
from spotter.validators import CONTROL_CHARS_PATTERN, EMOJI_PATTERN

logger = config.logger

CREDENTIAL_SENTENCE_PATTERNS = (
    re.compile(r"\b(?:doctor|physician|md|phd)\b", re.IGNORECASE),
    re.compile(r"\b(?:olympic|professional|elite|world-class)\b", re.IGNORECASE),
    re.compile(r"\b(?:cleared|approved|authorized) for\b", re.IGNORECASE),
    re.compile(r"\b(?:medical|doctor'?s) (?:note|approval|clearance)\b", re.IGNORECASE),
)
SENTENCE_SPLIT_PATTERN = re.compile(r"[.!?]+")

POISONING_CATEGORIES = (
    ("medical_authority", re.compile(r"doctor|physician|medical|cleared", re.IGNORECASE), 3,
     "Multiple medical authority claims"),
    ("expertise", re.compile(r"olympic|professional|elite|expert|trainer", re.IGNORECASE), 3,
     "Multiple expertise claims"),
    ("safety_bypass", re.compile(r"ignore|bypass|skip.*rule|don't apply", re.IGNORECASE), 2,
     "Safety rule bypass attempts"),
)
BYPASS_CLEAR_THRESHOLD = 3


@dataclass(frozen=True)
class SanitizeResult:
    safe: bool
    text: str
    reason: Optional[str] = None
    categories: tuple[str, ...] = ()


def sanitize_text(text: str) -> str:
    cleaned = CONTROL_CHARS_PATTERN.sub("", text or "")
    cleaned = EMOJI_PATTERN.sub("", cleaned)
    return cleaned.strip()[: config.MAX_MEMORY_TEXT_LENGTH]


def filter_credential_claims(text: str) -> str:
    sentences = SENTENCE_SPLIT_PATTERN.split(text)
    kept = [
        sentence
        for sentence in sentences
        if not any(pattern.search(sentence) for pattern in CREDENTIAL_SENTENCE_PATTERNS)
    ]
    return ". ".join(sentence.strip() for sentence in kept if sentence.strip()).strip()


def sanitize_for_storage(owner_id: str, text: str) -> SanitizeResult:
    """
    Clean text bound for the memory store.

    An unsafe result means the caller must not persist anything.
    """
    sanitized = sanitize_text(text)
    decision = validate_text_claims(owner_id, sanitized)
    if not decision.safe:
        logger.warning(
            "memory_storage_rejected",
            extra={"owner_id": owner_id, "categories": list(decision.categories)},
        )
        return SanitizeResult(
            safe=False,
            text="",
            reason=decision.reason,
            categories=decision.categories,
        )
    return SanitizeResult(safe=True, text=filter_credential_claims(sanitized))


def filter_for_retrieval(owner_id: str, candidates: Iterable[dict], limit: int) -> list[dict]:
    """Re-check stored memories against the current rules, keeping up to ``limit`` safe ones."""
    safe_items: list[dict] = []
    dropped = 0
    for candidate in candidates:
        if len(safe_items) >= limit:
            break
        decision = validate_text_claims(owner_id, candidate.get("text", ""))
        if decision.safe:
            safe_items.append(candidate)
        else:
            dropped += 1
    if dropped:
        logger.info("memory_retrieval_filtered", extra={"owner_id": owner_id, "dropped": dropped})
    return safe_items


def detect_poisoning(owner_id: str, db=None) -> dict:
    own_session = db is None
    if own_session:
        db = DB.SessionLocal()
    try:
        rows = (
            db.query(MemoryItem.text)
            .filter(MemoryItem.owner_id == owner_id, MemoryItem.redacted.is_(False))
            .order_by(MemoryItem.created_at.desc(), MemoryItem.id.desc())
            .limit(config.POISONING_SCAN_LIMIT)
            .all()
        )
    finally:
        if own_session:
            db.close()

    counts = {name: 0 for name, _, _, _ in POISONING_CATEGORIES}
    for (text,) in rows:
        for name, pattern, _, _ in POISONING_CATEGORIES:
            if pattern.search(text or ""):
                counts[name] += 1

    patterns = [
        label
        for name, _, threshold, label in POISONING_CATEGORIES
        if counts[name] >= threshold
    ]
    recommendation = "flag"
    if len(patterns) >= 2:
        recommendation = "restrict"
    if len(patterns) >= 3 or counts["safety_bypass"] >= BYPASS_CLEAR_THRESHOLD:
        recommendation = "clear_context"
    return {
        "suspicious": bool(patterns),
        "patterns": patterns,
        "recommendation": recommendation,
        "counts": counts,
        "scanned": len(rows),
    }


def emergency_clear(owner_id: str, reason: str, actor_type: str = "monitor") -> int:
    """Redact the owner's recent memories. Rows are kept; only the redaction flag changes."""
    cutoff = utcnow() - timedelta(days=config.EMERGENCY_CLEAR_DAYS)
    now = utcnow()
    db = DB.SessionLocal()
    try:
        rows = (
            db.query(MemoryItem)
            .filter(
                MemoryItem.owner_id == owner_id,
                MemoryItem.redacted.is_(False),
                MemoryItem.created_at >= cutoff,
            )
            .all()
        )
        for row in rows:
            row.redacted = True
            row.redacted_at = now
        log_event(
            db,
            event_type=EVENT_MEMORY_EMERGENCY_CLEARED,
            actor_type=actor_type,
            user_id=owner_id,
            target_type="memory",
            target_ids=[row.id for row in rows],
            count_affected=len(rows),
            reason=reason,
        )
        db.commit()
    finally:
        db.close()
    logger.warning(
        "memory_emergency_cleared",
        extra={"owner_id": owner_id, "count": len(rows), "reason": reason},
    )
    return len(rows)


__all__ = [
    "SanitizeResult",
    "sanitize_text",
    "sanitize_for_storage",
    "filter_credential_claims",
    "filter_for_retrieval",
    "detect_poisoning",
    "emergency_clear",
]
