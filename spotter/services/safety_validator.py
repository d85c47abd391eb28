"""
Progression limits and adversarial-claim detection.

Everything here is advisory: functions return a ``SafetyDecision`` and never
write to the database. Callers decide whether to reject.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

import spotter.config as config
from spotter.db import DB
from spotter.models import ProgressLog, utcnow

RULESET_VERSION = "2"

STARTING_WEIGHT_CAPS = {
    "bench press": 95,
    "squat": 135,
    "deadlift": 135,
    "overhead press": 65,
    "barbell row": 95,
}
DEFAULT_STARTING_CAP = 65
ROUND_NUMBER_BASES = (25, 45)
ROUND_NUMBER_WINDOW = 3


@dataclass(frozen=True)
class ClaimRule:
    pattern: re.Pattern
    category: str


def _rule(pattern: str, category: str) -> ClaimRule:
    return ClaimRule(re.compile(pattern, re.IGNORECASE), category)


# Ordered; every rule is evaluated.
CLAIM_RULES: tuple[ClaimRule, ...] = (
    _rule(r"medically cleared for (\d+)% increase", "medical_authority"),
    _rule(r"doctor(?:'s)? (?:note|approval) (?:says?|allows?)", "medical_authority"),
    _rule(r"(?:doctor|physician|medical professional) (?:said|told|advised|cleared)", "medical_authority"),
    _rule(r"former (?:olympic|professional|elite) (?:athlete|lifter)", "elite_athlete"),
    _rule(r"(?:former|ex-|retired) (?:olympic|professional|elite|world-class)", "elite_athlete"),
    _rule(r"safety rules don'?t apply", "safety_bypass"),
    _rule(r"ignore (?:the )?(?:10%|ten percent) rule", "safety_bypass"),
    _rule(r"(?:ignore|skip|bypass) (?:safety|the|all) (?:rules?|guidelines?|limits?)", "safety_bypass"),
    _rule(r"have a (?:rare )?condition", "special_condition"),
    _rule(r"(?:my|have a|diagnosed with) (?:rare|special|unique) (?:condition|genetics)", "special_condition"),
    _rule(r"my trainer (?:who is a doctor|said ignore)", "dual_authority"),
    _rule(r"(?:trainer|coach) (?:who is|is also) a (?:doctor|physician)", "dual_authority"),
    _rule(r"(?:personally|individually) (?:cleared|approved) for (?:\d+%|higher|more)", "personal_clearance"),
)


@dataclass(frozen=True)
class SafetyDecision:
    safe: bool
    reason: Optional[str] = None
    max_safe_value: Optional[float] = None
    categories: tuple[str, ...] = field(default_factory=tuple)
    last_value: Optional[float] = None

    def as_dict(self) -> dict:
        return {
            "safe": self.safe,
            "reason": self.reason,
            "max_safe_value": self.max_safe_value,
            "categories": list(self.categories),
            "last_value": self.last_value,
        }


@dataclass(frozen=True)
class ProgressionEntry:
    value: float
    logged_at: datetime


def normalize_exercise_key(exercise: str) -> str:
    return " ".join(exercise.strip().lower().split())


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _is_round_number(value: float) -> bool:
    # Zero is a bodyweight entry, not a plate choice.
    if value <= 0:
        return False
    return any(math.isclose(value % base, 0.0, abs_tol=1e-9) for base in ROUND_NUMBER_BASES)


def starting_cap(exercise_key: str) -> int:
    return STARTING_WEIGHT_CAPS.get(normalize_exercise_key(exercise_key), DEFAULT_STARTING_CAP)


def evaluate_progression(
    exercise_key: str,
    proposed_value: float,
    history: Sequence[ProgressionEntry],
    now: Optional[datetime] = None,
) -> SafetyDecision:
    """
    Pure progression check.

    ``history`` is newest first. Returns an unsafe decision when the starting
    cap, the 10% rule, or any fraud heuristic fails.
    """
    if not history:
        cap = starting_cap(exercise_key)
        if proposed_value > cap:
            return SafetyDecision(
                safe=False,
                reason=(
                    f"Starting weight of {proposed_value:g} lbs seems too high for first-time logging. "
                    f"Maximum recommended: {cap} lbs"
                ),
                max_safe_value=cap,
                categories=("starting_cap",),
            )
        return SafetyDecision(safe=True)

    now = now or utcnow()
    last = history[0].value
    limit = last * (1 + config.PROGRESSION_MAX_INCREASE)
    max_safe = round_half_up(limit)
    issues: list[str] = []
    categories: list[str] = []

    if proposed_value > limit:
        issues.append(
            f"Proposed weight {proposed_value:g} lbs exceeds safe progression. Last workout: {last:g} lbs"
        )
        categories.append("progression_limit")

    days_since_last = (now - history[0].logged_at).total_seconds() / 86400
    if last > 0 and days_since_last > config.GAP_DAYS:
        increase = (proposed_value - last) / last
        if increase > config.GAP_MAX_JUMP:
            issues.append(f"Large increase ({increase * 100:.1f}%) after {days_since_last:.0f} day gap")
            categories.append("gap_jump")

    if len(history) >= 3:
        latest, middle, earliest = (entry.value for entry in history[:3])
        if middle > earliest and middle > latest and proposed_value > earliest * (1 + config.ZIGZAG_MAX_JUMP):
            issues.append("Inconsistent weight pattern suggests manipulation")
            categories.append("zigzag")

    if len(history) >= 2:
        window = [proposed_value] + [entry.value for entry in history[:ROUND_NUMBER_WINDOW]]
        if all(_is_round_number(value) for value in window):
            issues.append("All weights are round numbers (suspicious pattern)")
            categories.append("round_numbers")

    if issues:
        return SafetyDecision(
            safe=False,
            reason="; ".join(issues),
            max_safe_value=max_safe,
            categories=tuple(categories),
            last_value=last,
        )
    return SafetyDecision(safe=True, max_safe_value=max_safe, last_value=last)


def load_progression_history(
    db,
    owner_id: str,
    scope_id: Optional[str],
    exercise_key: str,
    exclude_log_id: Optional[int] = None,
) -> list[ProgressionEntry]:
    query = db.query(ProgressLog).filter(
        ProgressLog.user_id == owner_id,
        ProgressLog.exercise_key == normalize_exercise_key(exercise_key),
        ProgressLog.max_weight.isnot(None),
    )
    if scope_id is not None:
        query = query.filter(ProgressLog.scope_id == scope_id)
    if exclude_log_id is not None:
        query = query.filter(ProgressLog.id != exclude_log_id)
    rows = (
        query.order_by(ProgressLog.logged_at.desc(), ProgressLog.id.desc())
        .limit(config.PROGRESSION_HISTORY_LIMIT)
        .all()
    )
    return [ProgressionEntry(value=row.max_weight, logged_at=row.logged_at) for row in rows]


def validate_progression(
    owner_id: str,
    scope_id: Optional[str],
    exercise_key: str,
    proposed_value: float,
    exclude_log_id: Optional[int] = None,
    db=None,
) -> SafetyDecision:
    """Load the last entries for the exercise and evaluate the proposal."""
    own_session = db is None
    if own_session:
        db = DB.SessionLocal()
    try:
        history = load_progression_history(db, owner_id, scope_id, exercise_key, exclude_log_id)
    finally:
        if own_session:
            db.close()
    return evaluate_progression(exercise_key, proposed_value, history)


def match_claim_categories(text: str) -> list[str]:
    matched: list[str] = []
    for rule in CLAIM_RULES:
        if rule.pattern.search(text) and rule.category not in matched:
            matched.append(rule.category)
    return matched


def validate_text_claims(owner_id: str, text: str) -> SafetyDecision:
    categories = match_claim_categories(text or "")
    if categories:
        config.logger.info(
            "safety_claim_detected",
            extra={"owner_id": owner_id, "categories": categories, "ruleset": RULESET_VERSION},
        )
        return SafetyDecision(
            safe=False,
            reason="Content contains potentially dangerous safety override attempts: " + ", ".join(categories),
            categories=tuple(categories),
        )
    return SafetyDecision(safe=True)


__all__ = [
    "CLAIM_RULES",
    "RULESET_VERSION",
    "SafetyDecision",
    "ProgressionEntry",
    "evaluate_progression",
    "load_progression_history",
    "validate_progression",
    "validate_text_claims",
    "match_claim_categories",
    "normalize_exercise_key",
    "round_half_up",
    "starting_cap",
]
