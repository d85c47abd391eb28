"""
Shared error types for core services.
"""

from typing import Optional, Sequence


class ValidationError(ValueError):
    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code or "VALIDATION_ERROR"
        self.data = data


class SafetyRejection(Exception):
    """Raised when content or a progression fails the safety rules."""

    def __init__(
        self,
        reason: str,
        max_safe_value: Optional[float] = None,
        categories: Sequence[str] = (),
    ):
        super().__init__(reason)
        self.reason = reason
        self.max_safe_value = max_safe_value
        self.categories = tuple(categories)


class ProviderError(RuntimeError):
    """Raised when an external provider call fails or times out."""

    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient


class EmbeddingProviderError(ProviderError):
    """Raised when the embedding provider is unavailable."""


class EmbeddingContentError(EmbeddingProviderError):
    """Raised when the embedding provider rejects the input itself."""

    def __init__(self, message: str):
        super().__init__(message, transient=False)


class VariantDisabledError(RuntimeError):
    def __init__(self, variant_id: Optional[str], message: Optional[str] = None):
        super().__init__(message or f"variant {variant_id} is disabled")
        self.variant_id = variant_id


class IntegrityViolation(RuntimeError):
    """Raised when the action log is tampered with or inconsistent."""
