from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Mapping, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .roles import AssigneeRole, Role
from .state import Severity, TicketStatus


class IssueCategory(str, Enum):
    PAYMENT_DELAY = "payment_delay"
    PARTIAL_PAYMENT = "partial_payment"
    BEHAVIORAL_COMPLAINT = "behavioral_complaint"
    IMPROVEMENT_REQUEST = "improvement_request"
    FACILITY_ISSUE = "facility_issue"
    PENALTY_ISSUE = "penalty_issue"
    MALPRACTICE = "malpractice"
    APP_ISSUE = "app_issue"
    OTHER = "other"


class EventType(str, Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    ASSIGNMENT_CHANGED = "assignment_changed"
    COMMENT_ADDED = "comment_added"
    SEVERITY_CHANGED = "severity_changed"
    REOPENED = "reopened"
    DELETED = "deleted"


class IssueDateMode(str, Enum):
    SINGLE = "single"
    RANGE = "range"
    MULTIPLE = "multiple"
    ONGOING = "ongoing"


@dataclass(frozen=True, slots=True)
class Actor:
    """Identity and role of whoever performs an operation."""

    user_id: str
    role: Role
    name: str | None = None


@dataclass(frozen=True, slots=True)
class DatedEntry:
    day: date
    description: str


@dataclass(frozen=True, slots=True)
class IssueDate:
    """When the reported issue happened. Exactly one mode is active."""

    mode: IssueDateMode
    day: date | None = None
    start: date | None = None
    end: date | None = None
    entries: tuple[DatedEntry, ...] = ()

    def validate(self) -> None:
        if self.mode is IssueDateMode.SINGLE:
            if self.day is None or self.start or self.end or self.entries:
                raise ValidationError("A single issue date requires exactly one date")
        elif self.mode is IssueDateMode.RANGE:
            if self.start is None or self.end is None or self.day or self.entries:
                raise ValidationError("A date range requires a start and an end date")
            if self.start > self.end:
                raise ValidationError("Date range start must not be after its end")
        elif self.mode is IssueDateMode.MULTIPLE:
            if not self.entries or self.day or self.start or self.end:
                raise ValidationError("Multiple issue dates require at least one dated entry")
        elif self.day or self.start or self.end or self.entries:
            raise ValidationError("An ongoing issue carries no dates")

    def to_json(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "date": self.day.isoformat() if self.day else None,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "entries": [
                {"date": entry.day.isoformat(), "description": entry.description} for entry in self.entries
            ],
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "IssueDate":
        def _parse(value: Any) -> date | None:
            return date.fromisoformat(value) if value else None

        return cls(
            mode=IssueDateMode(data.get("mode", IssueDateMode.ONGOING.value)),
            day=_parse(data.get("date")),
            start=_parse(data.get("start")),
            end=_parse(data.get("end")),
            entries=tuple(
                DatedEntry(day=date.fromisoformat(item["date"]), description=str(item.get("description", "")))
                for item in data.get("entries") or ()
            ),
        )


@dataclass(frozen=True, slots=True)
class Attachment:
    """Metadata of an uploaded file; storage lives elsewhere."""

    file_name: str
    file_size: int
    file_type: str
    download_url: str

    def to_json(self) -> dict[str, Any]:
        return {
            "file_name": self.file_name,
            "file_size": self.file_size,
            "file_type": self.file_type,
            "download_url": self.download_url,
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "Attachment":
        return cls(
            file_name=str(data["file_name"]),
            file_size=int(data.get("file_size", 0)),
            file_type=str(data.get("file_type", "")),
            download_url=str(data.get("download_url", "")),
        )


@dataclass(slots=True)
class TicketSubmission:
    """Fields supplied by whoever files a ticket."""

    category: IssueCategory
    description: str
    issue_date: IssueDate
    centre_code: str
    city: str
    severity: Severity | None = None
    resource_id: str | None = None
    external_ref: str | None = None
    submitted_by: str | None = None
    submitted_by_user_id: str | None = None
    is_anonymous: bool = False
    attachments: Sequence[Attachment] = ()


@dataclass(slots=True)
class Ticket:
    """Aggregate root representing a filed issue."""

    id: str
    ticket_number: str
    category: IssueCategory
    severity: Severity
    status: TicketStatus
    description: str
    issue_date: IssueDate
    centre_code: str
    city: str
    resource_id: str | None
    external_ref: str | None
    submitted_by: str | None
    submitted_by_user_id: str | None
    is_anonymous: bool
    submitted_at: datetime
    updated_at: datetime
    resolution_notes: str | None = None
    resolved_at: datetime | None = None
    reopen_count: int = 0
    last_reopened_at: datetime | None = None
    reopened_by: str | None = None
    user_dependency_started_at: datetime | None = None
    deleted: bool = False
    version: int = 1
    attachments: Sequence[Attachment] = ()


@dataclass(frozen=True, slots=True)
class Assignment:
    id: str
    ticket_id: str
    user_id: str
    role: AssigneeRole
    assigned_by: str
    assigned_at: datetime

    @property
    def key(self) -> tuple[str, str, AssigneeRole]:
        return (self.ticket_id, self.user_id, self.role)


@dataclass(frozen=True, slots=True)
class Comment:
    id: str
    ticket_id: str
    content: str
    author: str
    author_id: str | None
    author_role: Role
    is_internal: bool
    created_at: datetime
    attachments: Sequence[Attachment] = ()


# Event details: one variant per event type, persisted as JSON.


class _Details(BaseModel):
    model_config = ConfigDict(frozen=True)


class CreatedDetails(_Details):
    kind: Literal["created"] = "created"
    severity: Severity
    category: IssueCategory


class StatusChangeDetails(_Details):
    kind: Literal["status_changed"] = "status_changed"
    bypass: bool = False
    automatic: bool = False
    resolution_notes: str | None = None


class AssignmentDetails(_Details):
    kind: Literal["assignment_changed"] = "assignment_changed"
    user_id: str
    role: AssigneeRole
    action: Literal["added", "removed"]
    automatic: bool = False


class CommentDetails(_Details):
    kind: Literal["comment_added"] = "comment_added"
    comment_id: str
    is_internal: bool


class SeverityDetails(_Details):
    kind: Literal["severity_changed"] = "severity_changed"
    escalated: bool


class ReopenDetails(_Details):
    kind: Literal["reopened"] = "reopened"
    reopen_count: int


class DeletedDetails(_Details):
    kind: Literal["deleted"] = "deleted"


class RawDetails(_Details):
    """Stored details that no known variant accepts."""

    kind: str
    payload: dict[str, Any] = Field(default_factory=dict)


EventDetails = Annotated[
    Union[
        CreatedDetails,
        StatusChangeDetails,
        AssignmentDetails,
        CommentDetails,
        SeverityDetails,
        ReopenDetails,
        DeletedDetails,
    ],
    Field(discriminator="kind"),
]

_DETAILS_ADAPTER: TypeAdapter[EventDetails] = TypeAdapter(EventDetails)


def parse_details(raw: Mapping[str, Any] | None) -> EventDetails | RawDetails:
    payload = dict(raw or {})
    try:
        return _DETAILS_ADAPTER.validate_python(payload)
    except PydanticValidationError:
        return RawDetails(kind=str(payload.get("kind", "unknown")), payload=payload)


def dump_details(details: EventDetails | RawDetails) -> dict[str, Any]:
    if isinstance(details, RawDetails):
        return dict(details.payload)
    return details.model_dump(mode="json")


@dataclass(frozen=True, slots=True)
class TicketEvent:
    """Immutable audit record of a single ticket mutation."""

    id: str
    ticket_id: str
    event_type: EventType
    actor_id: str
    actor_role: Role
    details: EventDetails | RawDetails
    created_at: datetime
    old_value: str | None = None
    new_value: str | None = None


@dataclass(slots=True)
class TicketAggregate:
    """Ticket bundled with its assignees, comments and audit events."""

    ticket: Ticket
    assignments: Sequence[Assignment] = ()
    comments: Sequence[Comment] = ()
    events: Sequence[TicketEvent] = ()

    def has_assignment(self, user_id: str, role: AssigneeRole) -> bool:
        return any(item.user_id == user_id and item.role is role for item in self.assignments)

    def assignees(self, role: AssigneeRole) -> list[Assignment]:
        return [item for item in self.assignments if item.role is role]


@dataclass(slots=True)
class TicketChange:
    """Everything one operation writes, committed as a single transaction."""

    ticket: Ticket
    expected_version: int
    added_assignments: list[Assignment] = field(default_factory=list)
    removed_assignments: list[Assignment] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)
    events: list[TicketEvent] = field(default_factory=list)
