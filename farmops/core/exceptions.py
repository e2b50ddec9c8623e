"""Domain-level exception hierarchy for service and repository layers."""

from __future__ import annotations


class DomainError(Exception):
    """Base class for domain-specific failures."""


class NotFoundError(DomainError):
    """Raised when a requested request, operation or item does not exist."""


class ConflictError(DomainError):
    """Raised when a state conflict occurs (e.g. duplicate entries)."""


class InvalidStateError(ConflictError):
    """Raised when a transition is not allowed from the record's current status."""


class ValidationError(DomainError):
    """Raised when input validation fails at the domain/service layer."""


class AuthorizationError(DomainError):
    """Raised when the principal lacks the role required for the action."""


class InfrastructureError(DomainError):
    """Raised when infrastructure (DB or external service) is unavailable."""


class SystemicFailure(InfrastructureError):
    """Raised by an entity store that cannot be reached at all.

    Unlike a per-item failure this aborts the whole batch.
    """
