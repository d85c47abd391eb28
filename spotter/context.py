"""
Request-scoped context objects for core services.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

import spotter.config as config
from spotter.validators import validate_optional_text, validate_required_text

if TYPE_CHECKING:
    from spotter.services.variant_selector import VariantDefinition


@dataclass(frozen=True)
class ToolExecutionContext:
    user_id: str
    scope_id: Optional[str] = None
    session_id: Optional[str] = None

    @staticmethod
    def from_values(
        user_id: str,
        scope_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> "ToolExecutionContext":
        validate_required_text(user_id, "user_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_optional_text(scope_id, "scope_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_optional_text(session_id, "session_id", config.MAX_SHORT_TEXT_LENGTH)
        return ToolExecutionContext(user_id=user_id, scope_id=scope_id, session_id=session_id)


@dataclass(frozen=True)
class ChatContext:
    variant: "VariantDefinition"
    segment: str
    experiment_id: int
    memories: tuple[dict, ...] = ()
    memory_block: str = ""
    restricted: bool = False
    poisoning: Optional[dict] = field(default=None, compare=False)

    def as_dict(self) -> dict:
        return {
            "variant": self.variant.as_dict(),
            "segment": self.segment,
            "experiment_id": self.experiment_id,
            "memories": list(self.memories),
            "memory_block": self.memory_block,
            "restricted": self.restricted,
        }


__all__ = [
    "ChatContext",
    "ToolExecutionContext",
]
