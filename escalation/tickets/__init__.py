"""Ticket escalation domain: workflow policy, persistence and lifecycle coordination."""

from .errors import (
    AuthorizationError,
    ConflictError,
    NotificationDispatchError,
    TicketNotFoundError,
    TicketServiceError,
    TransitionDeniedError,
    ValidationError,
)
from .models import Actor, Assignment, Comment, Ticket, TicketAggregate, TicketEvent, TicketSubmission
from .roles import AssigneeRole, Role
from .service import TicketOperationResult, TicketService
from .state import Severity, TicketStateMachine, TicketStatus

__all__ = [
    "Actor",
    "AssigneeRole",
    "Assignment",
    "AuthorizationError",
    "Comment",
    "ConflictError",
    "NotificationDispatchError",
    "Role",
    "Severity",
    "Ticket",
    "TicketAggregate",
    "TicketEvent",
    "TicketNotFoundError",
    "TicketOperationResult",
    "TicketService",
    "TicketServiceError",
    "TicketStateMachine",
    "TicketStatus",
    "TicketSubmission",
    "TransitionDeniedError",
    "ValidationError",
]
