"""Exception types shared across the pipeline."""

from __future__ import annotations


class TimezoneError(ValueError):
    """Raised when a required timezone is missing or not a valid IANA zone."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code


class ToolValidationError(ValueError):
    """Raised for malformed tool input or unresolvable references; never retried."""


class CompletionError(RuntimeError):
    """Raised when a completion provider fails or returns unusable output."""


class ContextRetrievalError(RuntimeError):
    """Raised when conversation context cannot be retrieved."""

    code = "RAG_FAILED"
