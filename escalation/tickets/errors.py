from __future__ import annotations


class TicketServiceError(RuntimeError):
    """Base error for ticket service issues."""


class TicketNotFoundError(TicketServiceError):
    """Raised when a ticket could not be located or has been soft-deleted."""


class TransitionDeniedError(TicketServiceError):
    """Raised when the actor's role may not move the ticket to the requested status."""


class ValidationError(TicketServiceError):
    """Raised for structurally invalid requests."""


class AuthorizationError(TicketServiceError):
    """Raised when the actor lacks the privilege for a mutation."""


class ConflictError(TicketServiceError):
    """Raised when the ticket changed underneath the caller; re-read and retry."""


class NotificationDispatchError(TicketServiceError):
    """A post-commit notification failed. Reported as a warning, never raised to callers."""

    def __init__(self, message: str, *, channel: str, event: str) -> None:
        super().__init__(message)
        self.channel = channel
        self.event = event
