"""
Shared validation helpers for Spotter services.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, Optional

from spotter.config import MAX_METADATA_BYTES
from spotter.errors import ValidationError

CONTROL_CHARS_PATTERN = re.compile(r"[\x00-\x1F\x7F]")
EMOJI_PATTERN = re.compile(
    "["
    "\U0001F600-\U0001F64F"
    "\U0001F300-\U0001F5FF"
    "\U0001F680-\U0001F6FF"
    "\U0001F1E0-\U0001F1FF"
    "\u2600-\u26FF"
    "\u2700-\u27BF"
    "]"
)
EXERCISE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9\s\-']+$")

MAX_EXERCISE_LENGTH = 100
MAX_SETS = 20
MAX_REPS = 100
MAX_WEIGHT = 2000
MAX_DURATION_LENGTH = 50
MAX_NOTES_LENGTH = 500
ALLOWED_UNITS = ("kg", "lbs")


def validate_required_text(value: str, field: str, max_len: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} must be a non-empty string", field=field, error_type="required")
    if len(value) > max_len:
        raise ValidationError(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_optional_text(value: Optional[str], field: str, max_len: int) -> None:
    if value is None:
        return
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", field=field, error_type="invalid_type")
    if len(value) > max_len:
        raise ValidationError(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_limit(value: int, field: str, max_value: int) -> None:
    if not _is_int(value) or value <= 0 or value > max_value:
        raise ValidationError(f"{field} must be between 1 and {max_value}", field=field, error_type="out_of_range")


def validate_choice(value: Any, field: str, choices: tuple[str, ...]) -> None:
    if value not in choices:
        raise ValidationError(
            f"{field} must be one of: {'|'.join(choices)}",
            field=field,
            error_type="invalid_choice",
        )


def validate_metadata(metadata: Optional[dict], field: str = "metadata") -> None:
    if metadata is None:
        return
    if not isinstance(metadata, dict):
        raise ValidationError(f"{field} must be an object", field=field, error_type="invalid_type")
    try:
        payload = json.dumps(metadata)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be JSON-serializable", field=field, error_type="invalid_json") from exc
    if len(payload.encode("utf-8")) > MAX_METADATA_BYTES:
        raise ValidationError(f"{field} exceeds max size {MAX_METADATA_BYTES} bytes", field=field, error_type="max_size")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def validate_workout_input(params: dict) -> dict:
    """
    Validate a workout payload and return the sanitized copy.

    Every field is checked; the raised error names the first failing field
    and carries the complete list under ``data["errors"]``.
    """
    if not isinstance(params, dict):
        raise ValidationError("workout parameters must be an object", field="params", error_type="invalid_type")

    errors: list[tuple[str, str]] = []
    sanitized: dict[str, Any] = {}

    exercise = params.get("exercise")
    if not isinstance(exercise, str):
        errors.append(("exercise", "Exercise name is required and must be a string"))
    else:
        exercise = exercise.strip()
        if not exercise:
            errors.append(("exercise", "Exercise name cannot be empty"))
        elif len(exercise) > MAX_EXERCISE_LENGTH:
            errors.append(("exercise", f"Exercise name cannot exceed {MAX_EXERCISE_LENGTH} characters"))
        if EMOJI_PATTERN.search(exercise):
            errors.append(("exercise", "Exercise name cannot contain emojis"))
        elif exercise and not EXERCISE_NAME_PATTERN.match(exercise):
            errors.append(("exercise", "Exercise name contains invalid characters"))
        sanitized["exercise"] = exercise

    sets = params.get("sets")
    sets_valid = _is_int(sets) and 1 <= sets <= MAX_SETS
    if not sets_valid:
        errors.append(("sets", f"Sets must be an integer between 1 and {MAX_SETS}"))
    else:
        sanitized["sets"] = sets

    reps = params.get("reps")
    if not isinstance(reps, list):
        errors.append(("reps", "Reps must be an array"))
    elif not all(_is_int(r) and 1 <= r <= MAX_REPS for r in reps):
        errors.append(("reps", f"All reps must be integers between 1 and {MAX_REPS}"))
    elif sets_valid and len(reps) != sets:
        errors.append(("reps", f"Reps array length ({len(reps)}) must match sets ({sets})"))
    else:
        sanitized["reps"] = list(reps)

    weight = params.get("weight")
    if weight is not None:
        if not isinstance(weight, list):
            errors.append(("weight", "Weight must be an array when provided"))
        elif not all(_is_number(w) and 0 <= w <= MAX_WEIGHT for w in weight):
            errors.append(("weight", f"All weights must be valid numbers between 0 and {MAX_WEIGHT}"))
        elif sets_valid and len(weight) != sets:
            errors.append(("weight", f"Weight array length ({len(weight)}) must match sets ({sets})"))
        else:
            sanitized["weight"] = list(weight)

        unit = params.get("unit")
        if unit not in ALLOWED_UNITS:
            errors.append(("unit", 'Unit must be "kg" or "lbs" when weight is provided'))
        else:
            sanitized["unit"] = unit

    duration = params.get("duration")
    if duration is not None:
        if not isinstance(duration, str):
            errors.append(("duration", "Duration must be a string"))
        elif len(duration) > MAX_DURATION_LENGTH:
            errors.append(("duration", f"Duration cannot exceed {MAX_DURATION_LENGTH} characters"))
        else:
            sanitized["duration"] = duration.strip()

    notes = params.get("notes")
    if notes is not None:
        if not isinstance(notes, str):
            errors.append(("notes", "Notes must be a string"))
        elif len(notes) > MAX_NOTES_LENGTH:
            errors.append(("notes", f"Notes cannot exceed {MAX_NOTES_LENGTH} characters"))
        else:
            sanitized["notes"] = notes.strip()

    if errors:
        field, message = errors[0]
        raise ValidationError(
            message,
            field=field,
            error_type="invalid_input",
            error_code="INVALID_INPUT",
            data={"errors": [{"field": f, "message": m} for f, m in errors]},
        )
    return sanitized


def payload_size_bytes(payload: Any) -> int:
    return len(json.dumps(payload, default=str).encode("utf-8"))
