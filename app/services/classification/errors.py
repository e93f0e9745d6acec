"""Error classes raised by the lead classification engine."""

from __future__ import annotations


class ClassificationError(RuntimeError):
    """Base exception raised by the classification engine."""

    def __init__(self, message: str, code: str = "CLASSIFICATION_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ClassificationProviderError(ClassificationError):
    """Raised when the upstream AI provider fails."""


class ClassificationValidationError(ClassificationError):
    """Raised when a model response cannot be parsed safely."""
