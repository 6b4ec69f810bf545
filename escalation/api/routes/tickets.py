from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from escalation.dependencies.auth import CurrentActor, PrivilegedActor, StaffActor
from escalation.dependencies.tickets import get_ticket_service
from escalation.tickets.errors import (
    AuthorizationError,
    ConflictError,
    NotificationDispatchError,
    TicketNotFoundError,
    TicketServiceError,
    TransitionDeniedError,
    ValidationError,
)
from escalation.tickets.models import (
    Assignment,
    Attachment,
    Comment,
    DatedEntry,
    IssueCategory,
    IssueDate,
    IssueDateMode,
    Ticket,
    TicketAggregate,
    TicketEvent,
    TicketSubmission,
    dump_details,
)
from escalation.tickets.recorder import TimelineEntry
from escalation.tickets.roles import AssigneeRole, Role
from escalation.tickets.service import TicketOperationResult, TicketService
from escalation.tickets.state import Severity, TicketStatus

router = APIRouter(prefix="/tickets", tags=["tickets"])

_ERROR_STATUS: tuple[tuple[type[Exception], int], ...] = (
    (TicketNotFoundError, status.HTTP_404_NOT_FOUND),
    (TransitionDeniedError, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (ConflictError, status.HTTP_409_CONFLICT),
    (TimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
)


class AttachmentModel(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=255)
    file_size: int = Field(default=0, ge=0)
    file_type: str = Field(default="")
    download_url: str = Field(default="")

    def to_domain(self) -> Attachment:
        return Attachment(
            file_name=self.file_name,
            file_size=self.file_size,
            file_type=self.file_type,
            download_url=self.download_url,
        )


class DatedEntryModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    day: date = Field(..., alias="date")
    description: str = Field(default="", max_length=500)


class IssueDateModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mode: IssueDateMode
    day: date | None = Field(default=None, alias="date")
    start: date | None = None
    end: date | None = None
    entries: list[DatedEntryModel] = Field(default_factory=list)

    def to_domain(self) -> IssueDate:
        return IssueDate(
            mode=self.mode,
            day=self.day,
            start=self.start,
            end=self.end,
            entries=tuple(DatedEntry(day=entry.day, description=entry.description) for entry in self.entries),
        )


class TicketCreateRequest(BaseModel):
    category: IssueCategory
    description: str = Field(..., min_length=1)
    issue_date: IssueDateModel
    centre_code: str = Field(..., min_length=1, max_length=50)
    city: str = Field(..., min_length=1, max_length=100)
    severity: Severity | None = None
    resource_id: str | None = Field(default=None, max_length=100)
    external_ref: str | None = Field(default=None, max_length=100)
    submitted_by: str | None = Field(default=None, max_length=255)
    is_anonymous: bool = False
    attachments: list[AttachmentModel] = Field(default_factory=list)


class TicketStatusChangeRequest(BaseModel):
    status: TicketStatus
    resolution_notes: str | None = Field(default=None, max_length=2000)


class TicketSeverityChangeRequest(BaseModel):
    severity: Severity


class AssignmentRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=255)
    role: AssigneeRole


class CommentRequest(BaseModel):
    content: str = Field(..., min_length=1)
    is_internal: bool = False
    attachments: list[AttachmentModel] = Field(default_factory=list)


class TicketResponse(BaseModel):
    id: str
    ticket_number: str
    category: IssueCategory
    severity: Severity
    status: TicketStatus
    description: str
    issue_date: dict[str, Any]
    centre_code: str
    city: str
    resource_id: str | None
    external_ref: str | None
    submitted_by: str | None
    is_anonymous: bool
    attachments: list[AttachmentModel]
    resolution_notes: str | None
    resolved_at: datetime | None
    reopen_count: int
    last_reopened_at: datetime | None
    reopened_by: str | None
    version: int
    submitted_at: datetime
    updated_at: datetime


class AssignmentResponse(BaseModel):
    user_id: str
    role: AssigneeRole
    assigned_by: str
    assigned_at: datetime


class CommentResponse(BaseModel):
    id: str
    content: str
    author: str
    author_role: Role
    is_internal: bool
    attachments: list[AttachmentModel]
    created_at: datetime


class EventResponse(BaseModel):
    id: str
    event_type: str
    old_value: str | None
    new_value: str | None
    actor_id: str
    actor_role: Role
    details: dict[str, Any]
    created_at: datetime


class TimelineEntryResponse(EventResponse):
    actor_name: str


class TicketDetailResponse(BaseModel):
    ticket: TicketResponse
    assignments: list[AssignmentResponse]
    comments: list[CommentResponse]
    events: list[EventResponse]


class TicketMutationResponse(TicketDetailResponse):
    changed: bool = True
    warnings: list[str] = Field(default_factory=list)


class AutoResolveResponse(BaseModel):
    resolved: int


TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]


def _http_error(exc: Exception) -> HTTPException:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc) or error_type.__name__)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Ticket service error")


def _attachment_model(attachment: Attachment) -> AttachmentModel:
    return AttachmentModel(**attachment.to_json())


def _ticket_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse(
        id=ticket.id,
        ticket_number=ticket.ticket_number,
        category=ticket.category,
        severity=ticket.severity,
        status=ticket.status,
        description=ticket.description,
        issue_date=ticket.issue_date.to_json(),
        centre_code=ticket.centre_code,
        city=ticket.city,
        resource_id=ticket.resource_id,
        external_ref=ticket.external_ref,
        submitted_by=None if ticket.is_anonymous else ticket.submitted_by,
        is_anonymous=ticket.is_anonymous,
        attachments=[_attachment_model(item) for item in ticket.attachments],
        resolution_notes=ticket.resolution_notes,
        resolved_at=ticket.resolved_at,
        reopen_count=ticket.reopen_count,
        last_reopened_at=ticket.last_reopened_at,
        reopened_by=ticket.reopened_by,
        version=ticket.version,
        submitted_at=ticket.submitted_at,
        updated_at=ticket.updated_at,
    )


def _assignment_response(assignment: Assignment) -> AssignmentResponse:
    return AssignmentResponse(
        user_id=assignment.user_id,
        role=assignment.role,
        assigned_by=assignment.assigned_by,
        assigned_at=assignment.assigned_at,
    )


def _comment_response(comment: Comment) -> CommentResponse:
    return CommentResponse(
        id=comment.id,
        content=comment.content,
        author=comment.author,
        author_role=comment.author_role,
        is_internal=comment.is_internal,
        attachments=[_attachment_model(item) for item in comment.attachments],
        created_at=comment.created_at,
    )


def _event_fields(event: TicketEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "event_type": event.event_type.value,
        "old_value": event.old_value,
        "new_value": event.new_value,
        "actor_id": event.actor_id,
        "actor_role": event.actor_role,
        "details": dump_details(event.details),
        "created_at": event.created_at,
    }


def _timeline_response(entry: TimelineEntry) -> TimelineEntryResponse:
    return TimelineEntryResponse(actor_name=entry.actor_name, **_event_fields(entry.event))


def _detail_fields(aggregate: TicketAggregate) -> dict[str, Any]:
    return {
        "ticket": _ticket_response(aggregate.ticket),
        "assignments": [_assignment_response(item) for item in aggregate.assignments],
        "comments": [_comment_response(item) for item in aggregate.comments],
        "events": [EventResponse(**_event_fields(item)) for item in aggregate.events],
    }


def _mutation_response(result: TicketOperationResult) -> TicketMutationResponse:
    return TicketMutationResponse(
        changed=result.changed,
        warnings=[_warning_text(item) for item in result.warnings],
        **_detail_fields(result.aggregate),
    )


def _warning_text(warning: NotificationDispatchError) -> str:
    return f"{warning.channel} notification for {warning.event} failed: {warning}"


@router.post("", response_model=TicketMutationResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TicketMutationResponse:
    submission = TicketSubmission(
        category=payload.category,
        description=payload.description,
        issue_date=payload.issue_date.to_domain(),
        centre_code=payload.centre_code,
        city=payload.city,
        severity=payload.severity,
        resource_id=payload.resource_id,
        external_ref=payload.external_ref,
        submitted_by=payload.submitted_by,
        is_anonymous=payload.is_anonymous,
        attachments=[item.to_domain() for item in payload.attachments],
    )
    try:
        result = await service.create_ticket(submission, actor=actor)
    except (TicketServiceError, TimeoutError) as exc:
        raise _http_error(exc) from exc
    return _mutation_response(result)


@router.get("", response_model=list[TicketResponse])
async def list_tickets(
    service: TicketServiceDep,
    _: StaffActor,
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
) -> list[TicketResponse]:
    try:
        tickets = await service.list_tickets(status=status_filter)
    except TimeoutError as exc:
        raise _http_error(exc) from exc
    return [_ticket_response(ticket) for ticket in tickets]


@router.post("/maintenance/auto-resolve", response_model=AutoResolveResponse)
async def auto_resolve_user_dependency(service: TicketServiceDep, _: PrivilegedActor) -> AutoResolveResponse:
    try:
        resolved = await service.auto_resolve_user_dependency()
    except (TicketServiceError, TimeoutError) as exc:
        raise _http_error(exc) from exc
    return AutoResolveResponse(resolved=resolved)


@router.get("/{ticket_id}", response_model=TicketDetailResponse)
async def get_ticket(ticket_id: str, service: TicketServiceDep, actor: CurrentActor) -> TicketDetailResponse:
    try:
        aggregate = await service.get_ticket(ticket_id, viewer_role=actor.role)
    except (TicketServiceError, TimeoutError) as exc:
        raise _http_error(exc) from exc
    return TicketDetailResponse(**_detail_fields(aggregate))


@router.delete("/{ticket_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_ticket(ticket_id: str, service: TicketServiceDep, actor: CurrentActor) -> None:
    try:
        await service.soft_delete_ticket(ticket_id, actor=actor)
    except (TicketServiceError, TimeoutError) as exc:
        raise _http_error(exc) from exc


@router.post("/{ticket_id}/status", response_model=TicketMutationResponse)
async def change_ticket_status(
    ticket_id: str,
    payload: TicketStatusChangeRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TicketMutationResponse:
    try:
        result = await service.request_status_change(
            ticket_id,
            actor=actor,
            new_status=payload.status,
            resolution_notes=payload.resolution_notes,
        )
    except (TicketServiceError, TimeoutError) as exc:
        raise _http_error(exc) from exc
    return _mutation_response(result)


@router.post("/{ticket_id}/severity", response_model=TicketMutationResponse)
async def change_ticket_severity(
    ticket_id: str,
    payload: TicketSeverityChangeRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TicketMutationResponse:
    try:
        result = await service.request_severity_change(ticket_id, actor=actor, new_severity=payload.severity)
    except (TicketServiceError, TimeoutError) as exc:
        raise _http_error(exc) from exc
    return _mutation_response(result)


@router.post("/{ticket_id}/assignees", response_model=TicketMutationResponse)
async def add_assignee(
    ticket_id: str,
    payload: AssignmentRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TicketMutationResponse:
    try:
        result = await service.add_assignment(ticket_id, actor=actor, user_id=payload.user_id, role=payload.role)
    except (TicketServiceError, TimeoutError) as exc:
        raise _http_error(exc) from exc
    return _mutation_response(result)


@router.delete("/{ticket_id}/assignees/{user_id}", response_model=TicketMutationResponse)
async def remove_assignee(
    ticket_id: str,
    user_id: str,
    service: TicketServiceDep,
    actor: CurrentActor,
    role: AssigneeRole = Query(...),
) -> TicketMutationResponse:
    try:
        result = await service.remove_assignment(ticket_id, actor=actor, user_id=user_id, role=role)
    except (TicketServiceError, TimeoutError) as exc:
        raise _http_error(exc) from exc
    return _mutation_response(result)


@router.post("/{ticket_id}/comments", response_model=TicketMutationResponse, status_code=status.HTTP_201_CREATED)
async def add_comment(
    ticket_id: str,
    payload: CommentRequest,
    service: TicketServiceDep,
    actor: CurrentActor,
) -> TicketMutationResponse:
    try:
        result = await service.add_comment(
            ticket_id,
            actor=actor,
            content=payload.content,
            is_internal=payload.is_internal,
            attachments=[item.to_domain() for item in payload.attachments],
        )
    except (TicketServiceError, TimeoutError) as exc:
        raise _http_error(exc) from exc
    return _mutation_response(result)


@router.get("/{ticket_id}/history", response_model=list[EventResponse])
async def get_ticket_history(ticket_id: str, service: TicketServiceDep, actor: CurrentActor) -> list[EventResponse]:
    try:
        events = await service.get_history(ticket_id, viewer_role=actor.role)
    except (TicketServiceError, TimeoutError) as exc:
        raise _http_error(exc) from exc
    return [EventResponse(**_event_fields(event)) for event in events]


@router.get("/{ticket_id}/timeline", response_model=list[TimelineEntryResponse])
async def get_ticket_timeline(
    ticket_id: str, service: TicketServiceDep, actor: CurrentActor
) -> list[TimelineEntryResponse]:
    try:
        entries = await service.get_timeline(ticket_id, viewer_role=actor.role)
    except (TicketServiceError, TimeoutError) as exc:
        raise _http_error(exc) from exc
    return [_timeline_response(entry) for entry in entries]
