"""Database models and utilities."""

from .models import (
    TicketAssigneeTable,
    TicketCommentTable,
    TicketEventTable,
    TicketTable,
    UserTable,
)

__all__ = [
    "TicketAssigneeTable",
    "TicketCommentTable",
    "TicketEventTable",
    "TicketTable",
    "UserTable",
]
