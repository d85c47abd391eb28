"""
Experience segmentation.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func

import spotter.config as config
from spotter.db import DB
from spotter.models import ProgressLog, UserProfile, utcnow

SEGMENTS = ("beginner", "intermediate", "advanced", "returning")


@dataclass(frozen=True)
class SegmentInfo:
    segment: str
    weeks_active: int
    days_since_activity: Optional[float]
    pr_count: int = 0
    pr_frequency: float = 0.0

    def as_dict(self) -> dict:
        return {
            "segment": self.segment,
            "weeks_active": self.weeks_active,
            "days_since_activity": self.days_since_activity,
            "pr_count": self.pr_count,
            "pr_frequency": self.pr_frequency,
        }


def classify_segment(
    tenure_days: float,
    days_since_activity: Optional[float],
    pr_count: int = 0,
) -> SegmentInfo:
    weeks = int(max(tenure_days, 0) // 7)
    if days_since_activity is not None and days_since_activity >= config.RETURNING_INACTIVE_DAYS:
        return SegmentInfo("returning", weeks, days_since_activity, pr_count)
    if weeks < config.BEGINNER_MAX_WEEKS:
        return SegmentInfo("beginner", weeks, days_since_activity, pr_count)
    if weeks < config.INTERMEDIATE_MAX_WEEKS:
        return SegmentInfo("intermediate", weeks, days_since_activity, pr_count)
    return SegmentInfo(
        "advanced",
        weeks,
        days_since_activity,
        pr_count,
        pr_frequency=pr_count / max(weeks, 1),
    )


def _count_personal_records(db, user_id: str) -> int:
    rows = (
        db.query(ProgressLog.exercise_key, ProgressLog.max_weight)
        .filter(ProgressLog.user_id == user_id, ProgressLog.max_weight.isnot(None))
        .order_by(ProgressLog.logged_at.asc(), ProgressLog.id.asc())
        .all()
    )
    best: dict[str, float] = {}
    records = 0
    for exercise_key, max_weight in rows:
        previous = best.get(exercise_key)
        if previous is not None and max_weight > previous:
            records += 1
        if previous is None or max_weight > previous:
            best[exercise_key] = max_weight
    return records


def compute_segment(user_id: str, db=None, now: Optional[datetime] = None) -> SegmentInfo:
    now = now or utcnow()
    own_session = db is None
    if own_session:
        db = DB.SessionLocal()
    try:
        profile = db.query(UserProfile).filter(UserProfile.user_id == user_id).first()
        first_log, last_log = (
            db.query(func.min(ProgressLog.logged_at), func.max(ProgressLog.logged_at))
            .filter(ProgressLog.user_id == user_id)
            .one()
        )
        started_at = profile.created_at if profile else first_log
        activity_times = [t for t in (last_log, profile.last_active_at if profile else None) if t]
        last_activity = max(activity_times) if activity_times else None
        pr_count = _count_personal_records(db, user_id)
    finally:
        if own_session:
            db.close()

    tenure_days = (now - started_at).total_seconds() / 86400 if started_at else 0.0
    days_since = (now - last_activity).total_seconds() / 86400 if last_activity else None
    return classify_segment(tenure_days, days_since, pr_count)


__all__ = ["SEGMENTS", "SegmentInfo", "classify_segment", "compute_segment"]
