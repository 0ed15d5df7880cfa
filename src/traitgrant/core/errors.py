from __future__ import annotations


class TraitGrantError(Exception):
    """Base error for all user-facing traitgrant exceptions."""


class ProjectNotInitializedError(TraitGrantError):
    """Raised when .traitgrant metadata is missing."""


class ValidationError(TraitGrantError):
    """Raised when caller input fails validation before storage is touched."""


class InvalidDurationError(ValidationError):
    """Raised when an approval duration falls outside the allowed day range."""


class NotFoundError(TraitGrantError):
    """Raised when a verification request id is unknown."""


class TransitionConflictError(TraitGrantError):
    """Raised by the store when a guarded transition finds an unexpected status."""

    def __init__(self, message: str, current=None) -> None:
        super().__init__(message)
        self.current = current


class AlreadyResolvedError(TraitGrantError):
    """Raised when approve/deny targets a request that is no longer pending."""


class NotActiveError(TraitGrantError):
    """Raised when revoke targets a request that is not a currently valid grant."""


class UnavailableError(TraitGrantError):
    """Raised when the store cannot complete an atomic operation. Safe to retry."""
