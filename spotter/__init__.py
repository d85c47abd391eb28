"""Memory and safety orchestration for fitness coaching."""

__version__ = "0.1.0"
