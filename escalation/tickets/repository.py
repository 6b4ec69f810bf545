from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Sequence

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from escalation.db.models import (
    TicketAssigneeTable,
    TicketCommentTable,
    TicketEventTable,
    TicketTable,
)

from .errors import ConflictError
from .models import (
    Assignment,
    Attachment,
    Comment,
    EventType,
    IssueCategory,
    IssueDate,
    Ticket,
    TicketAggregate,
    TicketChange,
    TicketEvent,
    dump_details,
    parse_details,
)
from .roles import AssigneeRole, Role
from .state import Severity, TicketStatus


class TicketRepository:
    """Persistence helper wrapping tickets, assignees, comments and events.

    Every mutating call runs in a single transaction. :meth:`commit` guards the
    ticket row with its ``version`` so a concurrent writer surfaces as
    :class:`ConflictError` instead of silently overwriting.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine: AsyncEngine | None = engine

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        async with self._engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)

    async def create(self, ticket: Ticket, events: Sequence[TicketEvent]) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(TicketTable(id=ticket.id, version=ticket.version, **self._ticket_values(ticket)))
                    # Flush the parent first so event rows never precede it.
                    await session.flush()
                    session.add_all([self._event_to_table(event) for event in events])
        except IntegrityError as exc:
            raise ConflictError(f"Ticket number {ticket.ticket_number} is already taken") from exc

    async def get(self, ticket_id: str) -> TicketAggregate | None:
        async with self._session_factory() as session:
            ticket_row = await session.get(TicketTable, ticket_id)
            if ticket_row is None:
                return None

            assignee_result = await session.execute(
                select(TicketAssigneeTable)
                .where(TicketAssigneeTable.ticket_id == ticket_id)
                .order_by(TicketAssigneeTable.assigned_at.asc())
            )
            comment_result = await session.execute(
                select(TicketCommentTable)
                .where(TicketCommentTable.ticket_id == ticket_id)
                .order_by(TicketCommentTable.created_at.asc())
            )
            event_result = await session.execute(
                select(TicketEventTable)
                .where(TicketEventTable.ticket_id == ticket_id)
                .order_by(TicketEventTable.sequence.asc())
            )

            return TicketAggregate(
                ticket=self._table_to_ticket(ticket_row),
                assignments=[self._table_to_assignment(row) for row in assignee_result.scalars().all()],
                comments=[self._table_to_comment(row) for row in comment_result.scalars().all()],
                events=[self._table_to_event(row) for row in event_result.scalars().all()],
            )

    async def list_tickets(self, *, status: TicketStatus | None = None) -> list[Ticket]:
        statement = select(TicketTable).where(TicketTable.deleted.is_(False))
        if status is not None:
            statement = statement.where(TicketTable.status == status.value)
        statement = statement.order_by(TicketTable.submitted_at.desc())
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return [self._table_to_ticket(row) for row in result.scalars().all()]

    async def list_in_user_dependency_since(self, cutoff: datetime) -> list[Ticket]:
        """Tickets that entered ``user_dependency`` at or before ``cutoff``."""

        statement = (
            select(TicketTable)
            .where(
                TicketTable.deleted.is_(False),
                TicketTable.status == TicketStatus.USER_DEPENDENCY.value,
                TicketTable.user_dependency_started_at.is_not(None),
                TicketTable.user_dependency_started_at <= cutoff,
            )
            .order_by(TicketTable.user_dependency_started_at.asc())
        )
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return [self._table_to_ticket(row) for row in result.scalars().all()]

    async def commit(self, change: TicketChange) -> Ticket:
        """Apply a ticket update and its audit rows atomically."""

        ticket = change.ticket
        new_version = change.expected_version + 1
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(TicketTable)
                        .where(TicketTable.id == ticket.id, TicketTable.version == change.expected_version)
                        .values(version=new_version, **self._ticket_values(ticket))
                    )
                    if result.rowcount != 1:
                        raise ConflictError(
                            f"Ticket {ticket.id} was modified concurrently (expected version {change.expected_version})"
                        )
                    for assignment in change.removed_assignments:
                        await session.execute(
                            delete(TicketAssigneeTable).where(
                                TicketAssigneeTable.ticket_id == assignment.ticket_id,
                                TicketAssigneeTable.user_id == assignment.user_id,
                                TicketAssigneeTable.role == assignment.role.value,
                            )
                        )
                    session.add_all([self._assignment_to_table(item) for item in change.added_assignments])
                    session.add_all([self._comment_to_table(item) for item in change.comments])
                    session.add_all([self._event_to_table(item) for item in change.events])
        except IntegrityError as exc:
            raise ConflictError(f"Ticket {ticket.id} was modified concurrently") from exc
        return replace(ticket, version=new_version)

    @staticmethod
    def _ticket_values(ticket: Ticket) -> dict[str, Any]:
        return {
            "ticket_number": ticket.ticket_number,
            "category": ticket.category.value,
            "severity": ticket.severity.value,
            "status": ticket.status.value,
            "description": ticket.description,
            "issue_date": ticket.issue_date.to_json(),
            "centre_code": ticket.centre_code,
            "city": ticket.city,
            "resource_id": ticket.resource_id,
            "external_ref": ticket.external_ref,
            "submitted_by": ticket.submitted_by,
            "submitted_by_user_id": ticket.submitted_by_user_id,
            "is_anonymous": ticket.is_anonymous,
            "attachments": [item.to_json() for item in ticket.attachments],
            "resolution_notes": ticket.resolution_notes,
            "resolved_at": ticket.resolved_at,
            "reopen_count": ticket.reopen_count,
            "last_reopened_at": ticket.last_reopened_at,
            "reopened_by": ticket.reopened_by,
            "user_dependency_started_at": ticket.user_dependency_started_at,
            "deleted": ticket.deleted,
            "submitted_at": ticket.submitted_at,
            "updated_at": ticket.updated_at,
        }

    @staticmethod
    def _assignment_to_table(assignment: Assignment) -> TicketAssigneeTable:
        return TicketAssigneeTable(
            id=assignment.id,
            ticket_id=assignment.ticket_id,
            user_id=assignment.user_id,
            role=assignment.role.value,
            assigned_by=assignment.assigned_by,
            assigned_at=assignment.assigned_at,
        )

    @staticmethod
    def _comment_to_table(comment: Comment) -> TicketCommentTable:
        return TicketCommentTable(
            id=comment.id,
            ticket_id=comment.ticket_id,
            content=comment.content,
            author=comment.author,
            author_id=comment.author_id,
            author_role=comment.author_role.value,
            is_internal=comment.is_internal,
            attachments=[item.to_json() for item in comment.attachments],
            created_at=comment.created_at,
        )

    @staticmethod
    def _event_to_table(event: TicketEvent) -> TicketEventTable:
        return TicketEventTable(
            id=event.id,
            ticket_id=event.ticket_id,
            event_type=event.event_type.value,
            old_value=event.old_value,
            new_value=event.new_value,
            actor_id=event.actor_id,
            actor_role=event.actor_role.value,
            details=dump_details(event.details),
            created_at=event.created_at,
        )

    @staticmethod
    def _table_to_ticket(row: TicketTable) -> Ticket:
        return Ticket(
            id=row.id,
            ticket_number=row.ticket_number,
            category=IssueCategory(row.category),
            severity=Severity(row.severity),
            status=TicketStatus(row.status),
            description=row.description,
            issue_date=IssueDate.from_json(row.issue_date or {}),
            centre_code=row.centre_code,
            city=row.city,
            resource_id=row.resource_id,
            external_ref=row.external_ref,
            submitted_by=row.submitted_by,
            submitted_by_user_id=row.submitted_by_user_id,
            is_anonymous=bool(row.is_anonymous),
            submitted_at=_ensure_datetime(row.submitted_at),
            updated_at=_ensure_datetime(row.updated_at),
            resolution_notes=row.resolution_notes,
            resolved_at=_optional_datetime(row.resolved_at),
            reopen_count=row.reopen_count,
            last_reopened_at=_optional_datetime(row.last_reopened_at),
            reopened_by=row.reopened_by,
            user_dependency_started_at=_optional_datetime(row.user_dependency_started_at),
            deleted=bool(row.deleted),
            version=row.version,
            attachments=[Attachment.from_json(item) for item in row.attachments or []],
        )

    @staticmethod
    def _table_to_assignment(row: TicketAssigneeTable) -> Assignment:
        return Assignment(
            id=row.id,
            ticket_id=row.ticket_id,
            user_id=row.user_id,
            role=AssigneeRole(row.role),
            assigned_by=row.assigned_by,
            assigned_at=_ensure_datetime(row.assigned_at),
        )

    @staticmethod
    def _table_to_comment(row: TicketCommentTable) -> Comment:
        return Comment(
            id=row.id,
            ticket_id=row.ticket_id,
            content=row.content,
            author=row.author,
            author_id=row.author_id,
            author_role=Role(row.author_role),
            is_internal=bool(row.is_internal),
            created_at=_ensure_datetime(row.created_at),
            attachments=[Attachment.from_json(item) for item in row.attachments or []],
        )

    @staticmethod
    def _table_to_event(row: TicketEventTable) -> TicketEvent:
        return TicketEvent(
            id=row.id,
            ticket_id=row.ticket_id,
            event_type=EventType(row.event_type),
            actor_id=row.actor_id,
            actor_role=Role(row.actor_role),
            details=parse_details(row.details),
            created_at=_ensure_datetime(row.created_at),
            old_value=row.old_value,
            new_value=row.new_value,
        )


def _ensure_datetime(value: datetime | None) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    raise TypeError("Expected datetime value from database")


def _optional_datetime(value: datetime | None) -> datetime | None:
    return None if value is None else _ensure_datetime(value)
