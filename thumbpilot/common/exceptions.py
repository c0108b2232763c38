"""
Custom exceptions for ThumbPilot.

The hierarchy mirrors how failures are handled by the engine:

- ``RetryableError`` subclasses are transient and retried with backoff.
- ``AuthorizationError`` and ``ValidationError`` subclasses are fatal inputs.
- ``CircuitOpenError`` fails fast and is never retried.
"""

from typing import Any


class ThumbPilotError(Exception):
    """Base exception for ThumbPilot."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConfigError(ThumbPilotError):
    """Configuration related errors."""

    pass


class DatabaseError(ThumbPilotError):
    """Database related errors."""

    pass


class NotFoundError(ThumbPilotError):
    """A referenced record does not exist."""

    pass


class ValidationError(ThumbPilotError):
    """Input validation errors."""

    pass


class InvalidVideoError(ValidationError):
    """The video URL or identifier could not be resolved."""

    pass


class InvalidTransitionError(ThumbPilotError):
    """A campaign status change not allowed by the transition table."""

    pass


class RotationStateError(ThumbPilotError):
    """An operation would break the single-active-rotation invariant."""

    pass


class DependencyError(ThumbPilotError):
    """An external dependency (platform, generator) failed."""

    pass


class AuthorizationError(DependencyError):
    """The external dependency rejected or lacks the required authorization."""

    pass


class RetryableError(DependencyError):
    """A dependency failure that is safe to retry."""

    pass


class TransientDependencyError(RetryableError):
    """Network failure or 429/5xx response from a dependency."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.status_code = status_code
        super().__init__(message, details)


class RateLimitError(RetryableError):
    """Rate limit exceeded."""

    pass


class CircuitOpenError(DependencyError):
    """The circuit breaker is open; the call was not attempted."""

    pass


class SwapError(DependencyError):
    """The new creative could not be applied to the live video."""

    pass
