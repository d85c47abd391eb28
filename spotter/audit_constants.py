"""
Canonical audit event type strings.
"""

EVENT_MEMORY_EMERGENCY_CLEARED = "memory.emergency_cleared"
EVENT_MEMORY_REJECTED = "memory.rejected"
EVENT_VARIANT_DISABLED = "variant.disabled"
EVENT_VARIANT_ENABLED = "variant.enabled"
EVENT_SECURITY_ALERT = "security.alert"
EVENT_USER_FLAGGED = "user.flagged"
EVENT_USER_UNFLAGGED = "user.unflagged"

__all__ = [
    "EVENT_MEMORY_EMERGENCY_CLEARED",
    "EVENT_MEMORY_REJECTED",
    "EVENT_VARIANT_DISABLED",
    "EVENT_VARIANT_ENABLED",
    "EVENT_SECURITY_ALERT",
    "EVENT_USER_FLAGGED",
    "EVENT_USER_UNFLAGGED",
]
