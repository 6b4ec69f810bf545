from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Sequence, TypeVar

from escalation.metrics import MetricsRegistry, metrics_registry as default_metrics_registry

from .authorization import assert_can_assign, assert_can_change_severity, assert_can_comment, should_auto_advance
from .errors import (
    AuthorizationError,
    ConflictError,
    NotificationDispatchError,
    TicketNotFoundError,
    TransitionDeniedError,
    ValidationError,
)
from .identity import IdentityProvider, StaticIdentityProvider
from .models import (
    Actor,
    Assignment,
    AssignmentDetails,
    Attachment,
    Comment,
    CommentDetails,
    CreatedDetails,
    DeletedDetails,
    EventType,
    ReopenDetails,
    SeverityDetails,
    StatusChangeDetails,
    Ticket,
    TicketAggregate,
    TicketChange,
    TicketEvent,
    TicketSubmission,
)
from .notifications import (
    LoggingNotifier,
    NotificationDispatcher,
    NotificationEvent,
    TicketSummary,
    default_hooks,
)
from .numbers import generate_ticket_number
from .recorder import HistoryRecorder, TimelineEntry, build_timeline
from .repository import TicketRepository
from .roles import AssigneeRole, Role, is_privileged, is_staff
from .state import DEFAULT_SEVERITY, Severity, TicketStateMachine, TicketStatus

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

OPERATIONS_STATUSES = frozenset({TicketStatus.OPS_INPUT_REQUIRED, TicketStatus.OPS_USER_DEPENDENCY})
SYSTEM_ACTOR = Actor(user_id="system", role=Role.SYSTEM, name="System")
_TICKET_NUMBER_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class TicketOperationResult:
    """Outcome of a lifecycle operation.

    ``warnings`` holds notification failures that happened after the change
    was committed; they never undo it.
    """

    aggregate: TicketAggregate
    warnings: list[NotificationDispatchError] = field(default_factory=list)
    changed: bool = True

    @property
    def ticket(self) -> Ticket:
        return self.aggregate.ticket


class TicketService:
    """Ticket lifecycle coordinator.

    Validates every request before touching the store, writes the ticket and
    its audit events in one transaction, then runs notification hooks.
    """

    def __init__(
        self,
        repository: TicketRepository,
        *,
        dispatcher: NotificationDispatcher | None = None,
        identity: IdentityProvider | None = None,
        clock: Callable[[], datetime] | None = None,
        metrics: MetricsRegistry | None = None,
        operations_user_id: str = "operations",
        ticket_number_prefix: str = "AWGN",
        link_base_url: str = "http://localhost:8080/track",
        store_timeout: float = 5.0,
        allow_staff_severity_change: bool = False,
        auto_resolve_after: timedelta = timedelta(days=7),
    ) -> None:
        self._repository = repository
        self._dispatcher = dispatcher or NotificationDispatcher(default_hooks(LoggingNotifier()))
        self._identity = identity or StaticIdentityProvider()
        self._clock = clock or _utcnow
        self._metrics = metrics or default_metrics_registry
        self._recorder = HistoryRecorder(self._clock)
        self._operations_user_id = operations_user_id
        self._ticket_number_prefix = ticket_number_prefix
        self._link_base_url = link_base_url
        self._store_timeout = store_timeout
        self._allow_staff_severity_change = allow_staff_severity_change
        self._auto_resolve_after = auto_resolve_after

    async def ensure_schema(self) -> None:
        await self._store(self._repository.ensure_schema())

    # Reads

    async def get_ticket(self, ticket_id: str, *, viewer_role: Role = Role.ANONYMOUS) -> TicketAggregate:
        aggregate = await self._load(ticket_id)
        if is_staff(viewer_role):
            return aggregate
        hidden = {comment.id for comment in aggregate.comments if comment.is_internal}
        return replace(
            aggregate,
            comments=[comment for comment in aggregate.comments if not comment.is_internal],
            events=_visible_events(aggregate.events, hidden),
        )

    async def list_tickets(self, *, status: TicketStatus | None = None) -> list[Ticket]:
        return await self._store(self._repository.list_tickets(status=status))

    async def get_history(self, ticket_id: str, *, viewer_role: Role = Role.ANONYMOUS) -> list[TicketEvent]:
        aggregate = await self.get_ticket(ticket_id, viewer_role=viewer_role)
        return list(aggregate.events)

    async def get_timeline(self, ticket_id: str, *, viewer_role: Role = Role.ANONYMOUS) -> list[TimelineEntry]:
        events = await self.get_history(ticket_id, viewer_role=viewer_role)
        return await build_timeline(events, self._identity, timeout=self._store_timeout)

    # Creation

    async def create_ticket(self, submission: TicketSubmission, *, actor: Actor) -> TicketOperationResult:
        if not submission.description.strip():
            raise ValidationError("Issue description is required")
        if not submission.centre_code.strip() or not submission.city.strip():
            raise ValidationError("Centre code and city are required")
        submission.issue_date.validate()

        anonymous = submission.is_anonymous or actor.role is Role.ANONYMOUS
        now = self._clock()
        for attempt in range(1, _TICKET_NUMBER_ATTEMPTS + 1):
            ticket = Ticket(
                id=str(uuid.uuid4()),
                ticket_number=generate_ticket_number(self._ticket_number_prefix, now),
                category=submission.category,
                severity=submission.severity or DEFAULT_SEVERITY,
                status=TicketStateMachine.initial_state(),
                description=submission.description.strip(),
                issue_date=submission.issue_date,
                centre_code=submission.centre_code.strip(),
                city=submission.city.strip(),
                resource_id=submission.resource_id,
                external_ref=submission.external_ref,
                submitted_by=None if anonymous else (submission.submitted_by or actor.name),
                submitted_by_user_id=None if anonymous else (submission.submitted_by_user_id or actor.user_id),
                is_anonymous=anonymous,
                submitted_at=now,
                updated_at=now,
                attachments=list(submission.attachments),
            )
            events: list[TicketEvent] = []
            self._recorder.record(
                events,
                ticket_id=ticket.id,
                event_type=EventType.CREATED,
                actor=actor,
                details=CreatedDetails(severity=ticket.severity, category=ticket.category),
                new_value=ticket.status.value,
                at=now,
            )
            try:
                await self._store(self._repository.create(ticket, events))
            except ConflictError:
                if attempt == _TICKET_NUMBER_ATTEMPTS:
                    raise
                logger.info("Ticket number %s collided, regenerating", ticket.ticket_number)
                continue
            break

        logger.info("Ticket %s created by %s", ticket.ticket_number, actor.user_id)
        warnings = await self._notify(NotificationEvent.CREATED, ticket, ())
        return TicketOperationResult(aggregate=TicketAggregate(ticket=ticket, events=events), warnings=warnings)

    # Status workflow

    async def request_status_change(
        self,
        ticket_id: str,
        *,
        actor: Actor,
        new_status: TicketStatus,
        resolution_notes: str | None = None,
    ) -> TicketOperationResult:
        with self._metrics.time_distribution(
            "ticket_operation_duration_seconds", labels={"operation": "status_change"}
        ):
            aggregate = await self._load(ticket_id)
            current = aggregate.ticket.status
            if not TicketStateMachine.can_transition(actor.role, current, new_status):
                self._metrics.counter("ticket_transition_denials_total", label_names=("role",)).inc(
                    labels={"role": actor.role.value}
                )
                logger.warning(
                    "Transition %s -> %s denied for %s (%s) on ticket %s",
                    current.value,
                    new_status.value,
                    actor.user_id,
                    actor.role.value,
                    ticket_id,
                )
                raise TransitionDeniedError(
                    f"Role {actor.role.value} cannot move ticket from {current.value} to {new_status.value}"
                )

            notes = (resolution_notes or "").strip() or None
            if new_status is TicketStatus.RESOLVED and notes is None and not is_privileged(actor.role):
                raise ValidationError("Resolution notes are required to resolve a ticket")

            now = self._clock()
            change = TicketChange(ticket=replace(aggregate.ticket), expected_version=aggregate.ticket.version)
            self._apply_status(change, aggregate, actor, new_status, notes=notes, now=now)
            committed = await self._commit(change)
            self._count_status_change(actor)

        merged = _merge(aggregate, change, committed)
        warnings = await self._notify(_status_event(new_status), committed, merged.assignments)
        return TicketOperationResult(aggregate=merged, warnings=warnings)

    def _apply_status(
        self,
        change: TicketChange,
        aggregate: TicketAggregate,
        actor: Actor,
        new_status: TicketStatus,
        *,
        notes: str | None,
        now: datetime,
        automatic: bool = False,
    ) -> None:
        ticket = change.ticket
        old_status = ticket.status

        ticket.status = new_status
        ticket.updated_at = now
        if notes is not None:
            ticket.resolution_notes = notes
        if new_status is TicketStatus.RESOLVED:
            ticket.resolved_at = now
        if new_status is TicketStatus.USER_DEPENDENCY:
            ticket.user_dependency_started_at = now
        else:
            ticket.user_dependency_started_at = None

        bypass = is_privileged(actor.role) and not TicketStateMachine.is_workflow_transition(old_status, new_status)
        self._recorder.record(
            change.events,
            ticket_id=ticket.id,
            event_type=EventType.STATUS_CHANGED,
            actor=actor,
            details=StatusChangeDetails(bypass=bypass, automatic=automatic, resolution_notes=notes),
            old_value=old_status.value,
            new_value=new_status.value,
            at=now,
        )

        if TicketStateMachine.is_reopen(old_status, new_status):
            ticket.reopen_count += 1
            ticket.last_reopened_at = now
            ticket.reopened_by = actor.user_id
            self._recorder.record(
                change.events,
                ticket_id=ticket.id,
                event_type=EventType.REOPENED,
                actor=actor,
                details=ReopenDetails(reopen_count=ticket.reopen_count),
                old_value=old_status.value,
                new_value=new_status.value,
                at=now,
            )

        if new_status in OPERATIONS_STATUSES:
            self._ensure_operations_assignee(change, aggregate, actor, now)

    def _count_status_change(self, actor: Actor) -> None:
        self._metrics.counter("ticket_status_changes_total", label_names=("role",)).inc(
            labels={"role": actor.role.value}
        )

    def _ensure_operations_assignee(
        self, change: TicketChange, aggregate: TicketAggregate, actor: Actor, now: datetime
    ) -> None:
        user_id = self._operations_user_id
        if aggregate.has_assignment(user_id, AssigneeRole.OPERATIONS):
            return
        if any(item.user_id == user_id and item.role is AssigneeRole.OPERATIONS for item in change.added_assignments):
            return
        self._stage_assignment(change, actor, user_id, AssigneeRole.OPERATIONS, now, automatic=True)

    # Assignments

    async def add_assignment(
        self, ticket_id: str, *, actor: Actor, user_id: str, role: AssigneeRole
    ) -> TicketOperationResult:
        aggregate = await self._load(ticket_id)
        assert_can_assign(actor.role, role, ticket_id=ticket_id, actor_id=actor.user_id)
        if aggregate.has_assignment(user_id, role):
            return TicketOperationResult(aggregate=aggregate, changed=False)

        now = self._clock()
        ticket = aggregate.ticket
        change = TicketChange(ticket=replace(ticket, updated_at=now), expected_version=ticket.version)
        self._stage_assignment(change, actor, user_id, role, now)

        advanced = should_auto_advance(ticket.status, role)
        if advanced:
            self._apply_status(change, aggregate, actor, TicketStatus.IN_PROGRESS, notes=None, now=now, automatic=True)

        committed = await self._commit(change)
        if advanced:
            self._count_status_change(actor)
        logger.info("Assigned %s as %s on ticket %s", user_id, role.value, ticket.ticket_number)
        merged = _merge(aggregate, change, committed)
        warnings: list[NotificationDispatchError] = []
        if advanced:
            warnings = await self._notify(NotificationEvent.STATUS_CHANGED, committed, merged.assignments)
        return TicketOperationResult(aggregate=merged, warnings=warnings)

    async def remove_assignment(
        self, ticket_id: str, *, actor: Actor, user_id: str, role: AssigneeRole
    ) -> TicketOperationResult:
        aggregate = await self._load(ticket_id)
        assert_can_assign(actor.role, role, ticket_id=ticket_id, actor_id=actor.user_id)
        existing = next(
            (item for item in aggregate.assignments if item.user_id == user_id and item.role is role), None
        )
        if existing is None:
            return TicketOperationResult(aggregate=aggregate, changed=False)

        now = self._clock()
        change = TicketChange(
            ticket=replace(aggregate.ticket, updated_at=now),
            expected_version=aggregate.ticket.version,
            removed_assignments=[existing],
        )
        self._recorder.record(
            change.events,
            ticket_id=ticket_id,
            event_type=EventType.ASSIGNMENT_CHANGED,
            actor=actor,
            details=AssignmentDetails(user_id=user_id, role=role, action="removed"),
            old_value=user_id,
            at=now,
        )
        committed = await self._commit(change)
        return TicketOperationResult(aggregate=_merge(aggregate, change, committed))

    def _stage_assignment(
        self,
        change: TicketChange,
        actor: Actor,
        user_id: str,
        role: AssigneeRole,
        now: datetime,
        *,
        automatic: bool = False,
    ) -> None:
        ticket_id = change.ticket.id
        change.added_assignments.append(
            Assignment(
                id=str(uuid.uuid4()),
                ticket_id=ticket_id,
                user_id=user_id,
                role=role,
                assigned_by=actor.user_id,
                assigned_at=now,
            )
        )
        self._recorder.record(
            change.events,
            ticket_id=ticket_id,
            event_type=EventType.ASSIGNMENT_CHANGED,
            actor=actor,
            details=AssignmentDetails(user_id=user_id, role=role, action="added", automatic=automatic),
            new_value=user_id,
            at=now,
        )

    # Severity, comments, deletion

    async def request_severity_change(
        self, ticket_id: str, *, actor: Actor, new_severity: Severity
    ) -> TicketOperationResult:
        aggregate = await self._load(ticket_id)
        assert_can_change_severity(
            actor.role,
            ticket_id=ticket_id,
            actor_id=actor.user_id,
            allow_staff=self._allow_staff_severity_change,
        )
        old_severity = aggregate.ticket.severity
        if old_severity is new_severity:
            return TicketOperationResult(aggregate=aggregate, changed=False)

        now = self._clock()
        change = TicketChange(
            ticket=replace(aggregate.ticket, severity=new_severity, updated_at=now),
            expected_version=aggregate.ticket.version,
        )
        self._recorder.record(
            change.events,
            ticket_id=ticket_id,
            event_type=EventType.SEVERITY_CHANGED,
            actor=actor,
            details=SeverityDetails(escalated=new_severity.rank < old_severity.rank),
            old_value=old_severity.value,
            new_value=new_severity.value,
            at=now,
        )
        committed = await self._commit(change)
        return TicketOperationResult(aggregate=_merge(aggregate, change, committed))

    async def add_comment(
        self,
        ticket_id: str,
        *,
        actor: Actor,
        content: str,
        is_internal: bool = False,
        attachments: Sequence[Attachment] = (),
    ) -> TicketOperationResult:
        aggregate = await self._load(ticket_id)
        text = content.strip()
        if not text:
            raise ValidationError("Comment content is required")
        assert_can_comment(actor.role, aggregate.ticket.status, ticket_id=ticket_id, actor_id=actor.user_id)
        if is_internal and not is_staff(actor.role):
            raise ValidationError("Only staff can post internal comments")

        now = self._clock()
        anonymous = actor.role is Role.ANONYMOUS
        comment = Comment(
            id=str(uuid.uuid4()),
            ticket_id=ticket_id,
            content=text,
            author=actor.name or ("Anonymous" if anonymous else actor.user_id),
            author_id=None if anonymous else actor.user_id,
            author_role=actor.role,
            is_internal=is_internal,
            created_at=now,
            attachments=list(attachments),
        )
        change = TicketChange(
            ticket=replace(aggregate.ticket, updated_at=now),
            expected_version=aggregate.ticket.version,
            comments=[comment],
        )
        self._recorder.record(
            change.events,
            ticket_id=ticket_id,
            event_type=EventType.COMMENT_ADDED,
            actor=actor,
            details=CommentDetails(comment_id=comment.id, is_internal=is_internal),
            at=now,
        )
        committed = await self._commit(change)
        merged = _merge(aggregate, change, committed)
        warnings: list[NotificationDispatchError] = []
        if not is_internal:
            warnings = await self._notify(NotificationEvent.COMMENT_ADDED, committed, merged.assignments)
        return TicketOperationResult(aggregate=merged, warnings=warnings)

    async def soft_delete_ticket(self, ticket_id: str, *, actor: Actor) -> TicketOperationResult:
        aggregate = await self._load(ticket_id)
        if not is_privileged(actor.role):
            logger.warning("Delete of ticket %s rejected for %s (%s)", ticket_id, actor.user_id, actor.role.value)
            raise AuthorizationError(f"Role {actor.role.value} may not delete tickets")

        now = self._clock()
        change = TicketChange(
            ticket=replace(aggregate.ticket, deleted=True, updated_at=now),
            expected_version=aggregate.ticket.version,
        )
        self._recorder.record(
            change.events,
            ticket_id=ticket_id,
            event_type=EventType.DELETED,
            actor=actor,
            details=DeletedDetails(),
            at=now,
        )
        committed = await self._commit(change)
        logger.info("Ticket %s soft-deleted by %s", committed.ticket_number, actor.user_id)
        return TicketOperationResult(aggregate=_merge(aggregate, change, committed))

    # Maintenance

    async def auto_resolve_user_dependency(self, *, now: datetime | None = None) -> int:
        """Resolve tickets left waiting on the user for too long."""

        cutoff = (now or self._clock()) - self._auto_resolve_after
        stale = await self._store(self._repository.list_in_user_dependency_since(cutoff))
        days = self._auto_resolve_after.days
        resolved = 0
        for ticket in stale:
            try:
                await self.request_status_change(
                    ticket.id,
                    actor=SYSTEM_ACTOR,
                    new_status=TicketStatus.RESOLVED,
                    resolution_notes=f"Automatically resolved after {days} days awaiting user response",
                )
            except (ConflictError, TicketNotFoundError, TransitionDeniedError, TimeoutError) as exc:
                logger.warning("Skipping auto-resolution of ticket %s: %s", ticket.ticket_number, exc)
                continue
            resolved += 1
        logger.info("Auto-resolved %d user dependency tickets", resolved)
        return resolved

    # Internals

    async def _store(self, awaitable: Awaitable[_T]) -> _T:
        return await asyncio.wait_for(awaitable, timeout=self._store_timeout)

    async def _load(self, ticket_id: str) -> TicketAggregate:
        aggregate = await self._store(self._repository.get(ticket_id))
        if aggregate is None or aggregate.ticket.deleted:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return aggregate

    async def _commit(self, change: TicketChange) -> Ticket:
        try:
            return await self._store(self._repository.commit(change))
        except ConflictError:
            self._metrics.counter("ticket_conflicts_total").inc()
            logger.info("Concurrent update detected on ticket %s", change.ticket.id)
            raise

    async def _notify(
        self, event: NotificationEvent, ticket: Ticket, assignments: Sequence[Assignment]
    ) -> list[NotificationDispatchError]:
        summary = TicketSummary.from_ticket(ticket, link_base_url=self._link_base_url)
        return await self._dispatcher.dispatch(
            event,
            summary,
            submitter_user_id=ticket.submitted_by_user_id,
            assignee_ids=[item.user_id for item in assignments],
        )


def _status_event(status: TicketStatus) -> NotificationEvent:
    if status is TicketStatus.RESOLVED:
        return NotificationEvent.RESOLVED
    return NotificationEvent.STATUS_CHANGED


def _visible_events(events: Sequence[TicketEvent], hidden_comments: set[str]) -> list[TicketEvent]:
    return [
        event
        for event in events
        if not (isinstance(event.details, CommentDetails) and event.details.comment_id in hidden_comments)
    ]


def _merge(aggregate: TicketAggregate, change: TicketChange, committed: Ticket) -> TicketAggregate:
    removed = {item.key for item in change.removed_assignments}
    return TicketAggregate(
        ticket=committed,
        assignments=[item for item in aggregate.assignments if item.key not in removed] + change.added_assignments,
        comments=[*aggregate.comments, *change.comments],
        events=[*aggregate.events, *change.events],
    )
