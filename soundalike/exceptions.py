"""
Exception classes for soundalike.

Exception Hierarchy:
    SoundalikeError (base)
        ConfigError - configuration or metric matrix issues
        AnalysisError - a single track could not be analyzed
        StoreError - the feature store is unreachable or corrupted
        DimensionMismatch - vector/matrix sizes disagree
        NotFound - a track is not in the feature store
        EmptySelection - no candidates left to build a playlist from
        SessionError - interactive session misuse
            InvalidChoice - a choice that was not offered
        PlayerError - the player collaborator failed
"""

from typing import Any, Dict, Optional


class SoundalikeError(Exception):
    """Base exception for all soundalike errors.

    Attributes:
        message: Human-readable error description.
        details: Additional context (path, metric, dimensions...).
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ConfigError(SoundalikeError):
    """Raised when the configuration or a metric matrix file is invalid."""


class AnalysisError(SoundalikeError):
    """Raised by an analyzer when a single track cannot be analyzed.

    This error is never fatal to a synchronization: it is recorded in the
    store and reported in the sync outcome.
    """


class StoreError(SoundalikeError):
    """Raised when the feature store cannot be read or written."""


class DimensionMismatch(SoundalikeError):
    """Raised when vectors, or a vector and a metric matrix, differ in size."""

    def __init__(
        self,
        expected: int,
        actual: int,
        metric: Optional[str] = None,
        path: Optional[str] = None,
    ) -> None:
        message = f"Dimension mismatch: expected {expected}, got {actual}"
        if metric:
            message += f" (metric: {metric})"
        if path:
            message += f" for '{path}'"
        super().__init__(
            message,
            details={"expected": expected, "actual": actual, "metric": metric, "path": path},
        )
        self.expected = expected
        self.actual = actual


class NotFound(SoundalikeError):
    """Raised when a track is absent from the feature store."""


class EmptySelection(SoundalikeError):
    """Reported when no candidate survives exclusion and deduplication."""


class SessionError(SoundalikeError):
    """Raised when an interactive session is driven in the wrong state."""


class InvalidChoice(SessionError):
    """Raised when a chosen track was not among the last offered candidates."""


class PlayerError(SoundalikeError):
    """Raised when the player collaborator fails."""
