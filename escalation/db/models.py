"""SQLModel table definitions for the escalation data layer."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


def _uuid_str() -> str:
    """Generate a random UUID string."""

    return str(uuid.uuid4())


class TicketTable(SQLModel, table=True):
    """Filed issues; ``version`` guards concurrent writers."""

    __tablename__ = "tickets"

    id: str = Field(primary_key=True, index=True)
    ticket_number: str = Field(sa_column=Column(String(64), nullable=False, unique=True))
    category: str = Field(sa_column=Column(String(50), nullable=False))
    severity: str = Field(sa_column=Column(String(10), nullable=False))
    status: str = Field(sa_column=Column(String(50), nullable=False, index=True))
    description: str = Field(sa_column=Column(Text, nullable=False))
    issue_date: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    centre_code: str = Field(sa_column=Column(String(50), nullable=False))
    city: str = Field(sa_column=Column(String(100), nullable=False))
    resource_id: str | None = Field(default=None, sa_column=Column(String(100), nullable=True))
    external_ref: str | None = Field(default=None, sa_column=Column(String(100), nullable=True))
    submitted_by: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    submitted_by_user_id: str | None = Field(default=None, sa_column=Column(String(36), nullable=True))
    is_anonymous: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    attachments: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    resolution_notes: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    reopen_count: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    last_reopened_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    reopened_by: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    user_dependency_started_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    deleted: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    version: int = Field(default=1, sa_column=Column(Integer, nullable=False, default=1))
    submitted_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketAssigneeTable(SQLModel, table=True):
    """Who works on or approves a ticket, and in which capacity."""

    __tablename__ = "ticket_assignees"
    __table_args__ = (UniqueConstraint("ticket_id", "user_id", "role", name="uq_ticket_assignee"),)

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    user_id: str = Field(sa_column=Column(String(255), nullable=False))
    role: str = Field(sa_column=Column(String(50), nullable=False))
    assigned_by: str = Field(sa_column=Column(String(255), nullable=False))
    assigned_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketCommentTable(SQLModel, table=True):
    """Append-only conversation on a ticket."""

    __tablename__ = "ticket_comments"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    content: str = Field(sa_column=Column(Text, nullable=False))
    author: str = Field(sa_column=Column(String(255), nullable=False))
    author_id: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    author_role: str = Field(sa_column=Column(String(50), nullable=False))
    is_internal: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    attachments: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketEventTable(SQLModel, table=True):
    """History/timeline events; ``sequence`` gives the append order."""

    __tablename__ = "ticket_events"

    sequence: int | None = Field(default=None, primary_key=True)
    id: str = Field(default_factory=_uuid_str, sa_column=Column(String(36), nullable=False, unique=True))
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    event_type: str = Field(sa_column=Column(String(50), nullable=False))
    old_value: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    new_value: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    actor_id: str = Field(sa_column=Column(String(255), nullable=False))
    actor_role: str = Field(sa_column=Column(String(50), nullable=False))
    details: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class UserTable(SQLModel, table=True):
    """Staff and submitter accounts, used for display-name lookups."""

    __tablename__ = "users"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    name: str = Field(sa_column=Column(String(255), nullable=False))
    role: str = Field(sa_column=Column(String(50), nullable=False))
    email: str | None = Field(default=None, sa_column=Column(String(255), nullable=True, unique=True))
    mobile: str | None = Field(default=None, sa_column=Column(String(32), nullable=True))
    city: str | None = Field(default=None, sa_column=Column(String(100), nullable=True))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
