from datetime import date, datetime, timezone
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from escalation.api.routes import tickets as ticket_routes
from escalation.main import create_app
from escalation.tickets.errors import (
    AuthorizationError,
    ConflictError,
    NotificationDispatchError,
    TicketNotFoundError,
    TransitionDeniedError,
    ValidationError,
)
from escalation.tickets.models import (
    Comment,
    CreatedDetails,
    EventType,
    IssueCategory,
    IssueDate,
    IssueDateMode,
    Ticket,
    TicketAggregate,
    TicketEvent,
)
from escalation.tickets.recorder import TimelineEntry
from escalation.tickets.roles import AssigneeRole, Role
from escalation.tickets.service import TicketOperationResult
from escalation.tickets.state import Severity, TicketStatus

ADMIN_HEADERS = {"Authorization": "Bearer admin-token"}
RESOLVER_HEADERS = {"Authorization": "Bearer resolver-token"}


def _make_ticket(*, status: TicketStatus = TicketStatus.OPEN) -> Ticket:
    now = datetime.now(timezone.utc)
    return Ticket(
        id="ticket-1",
        ticket_number="AWGN-2024-ABC123",
        category=IssueCategory.PAYMENT_DELAY,
        severity=Severity.SEV3,
        status=status,
        description="Payment pending",
        issue_date=IssueDate(mode=IssueDateMode.SINGLE, day=date(2024, 2, 20)),
        centre_code="DEL-042",
        city="Delhi",
        resource_id=None,
        external_ref=None,
        submitted_by="Imran",
        submitted_by_user_id="invig-1",
        is_anonymous=False,
        submitted_at=now,
        updated_at=now,
    )


def _make_event(ticket_id: str) -> TicketEvent:
    return TicketEvent(
        id="event-1",
        ticket_id=ticket_id,
        event_type=EventType.CREATED,
        actor_id="invig-1",
        actor_role=Role.INVIGILATOR,
        details=CreatedDetails(severity=Severity.SEV3, category=IssueCategory.PAYMENT_DELAY),
        created_at=datetime.now(timezone.utc),
        new_value="open",
    )


def _make_result(*, status: TicketStatus = TicketStatus.OPEN, warnings=None) -> TicketOperationResult:
    ticket = _make_ticket(status=status)
    aggregate = TicketAggregate(ticket=ticket, events=[_make_event(ticket.id)])
    return TicketOperationResult(aggregate=aggregate, warnings=list(warnings or []))


@pytest.fixture
def ticket_client():
    app = create_app()
    service = AsyncMock()

    async def override_service():
        return service

    app.dependency_overrides[ticket_routes.get_ticket_service] = override_service

    client = TestClient(app)
    try:
        yield client, service
    finally:
        app.dependency_overrides.clear()


def test_create_ticket_endpoint_returns_created(ticket_client):
    client, service = ticket_client
    service.create_ticket = AsyncMock(return_value=_make_result())

    response = client.post(
        "/tickets",
        json={
            "category": "payment_delay",
            "description": "Payment pending",
            "issue_date": {"mode": "single", "date": "2024-02-20"},
            "centre_code": "DEL-042",
            "city": "Delhi",
        },
    )

    assert response.status_code == 201
    body = response.json()
    assert body["ticket"]["ticket_number"] == "AWGN-2024-ABC123"
    assert body["events"][0]["details"]["kind"] == "created"
    submission = service.create_ticket.await_args.args[0]
    assert submission.issue_date.day == date(2024, 2, 20)
    assert service.create_ticket.await_args.kwargs["actor"].role is Role.ANONYMOUS


def test_list_tickets_requires_staff(ticket_client):
    client, service = ticket_client
    service.list_tickets = AsyncMock(return_value=[_make_ticket()])

    assert client.get("/tickets").status_code == 403

    response = client.get("/tickets", params={"status": "open"}, headers=RESOLVER_HEADERS)

    assert response.status_code == 200
    assert response.json()[0]["id"] == "ticket-1"
    service.list_tickets.assert_awaited_with(status=TicketStatus.OPEN)


def test_invalid_token_is_rejected(ticket_client):
    client, _ = ticket_client

    response = client.get("/tickets", headers={"Authorization": "Bearer nope"})

    assert response.status_code == 401


def test_get_ticket_passes_viewer_role(ticket_client):
    client, service = ticket_client
    ticket = _make_ticket()
    comment = Comment("c-1", ticket.id, "Looking", "Ravi", "resolver", Role.RESOLVER, False, ticket.submitted_at)
    service.get_ticket = AsyncMock(return_value=TicketAggregate(ticket=ticket, comments=[comment]))

    response = client.get("/tickets/ticket-1", headers=RESOLVER_HEADERS)

    assert response.status_code == 200
    assert response.json()["comments"][0]["content"] == "Looking"
    service.get_ticket.assert_awaited_with("ticket-1", viewer_role=Role.RESOLVER)


def test_status_change_returns_warnings(ticket_client):
    client, service = ticket_client
    warning = NotificationDispatchError("gateway down", channel="sms", event="resolved")
    service.request_status_change = AsyncMock(
        return_value=_make_result(status=TicketStatus.RESOLVED, warnings=[warning])
    )

    response = client.post(
        "/tickets/ticket-1/status",
        json={"status": "resolved", "resolution_notes": "Paid"},
        headers=RESOLVER_HEADERS,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["ticket"]["status"] == "resolved"
    assert body["warnings"] == ["sms notification for resolved failed: gateway down"]
    kwargs = service.request_status_change.await_args.kwargs
    assert kwargs["new_status"] is TicketStatus.RESOLVED
    assert kwargs["resolution_notes"] == "Paid"


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (TicketNotFoundError("missing"), 404),
        (TransitionDeniedError("denied"), 409),
        (ValidationError("notes required"), 422),
        (AuthorizationError("forbidden"), 403),
        (ConflictError("stale"), 409),
        (TimeoutError(), 504),
    ],
)
def test_status_change_maps_errors(ticket_client, error, status_code):
    client, service = ticket_client
    service.request_status_change = AsyncMock(side_effect=error)

    response = client.post("/tickets/ticket-1/status", json={"status": "in_progress"}, headers=RESOLVER_HEADERS)

    assert response.status_code == status_code


def test_add_assignee_forwards_role(ticket_client):
    client, service = ticket_client
    service.add_assignment = AsyncMock(return_value=_make_result(status=TicketStatus.IN_PROGRESS))

    response = client.post(
        "/tickets/ticket-1/assignees",
        json={"user_id": "resolver-1", "role": "resolver"},
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 200
    kwargs = service.add_assignment.await_args.kwargs
    assert kwargs["role"] is AssigneeRole.RESOLVER
    assert kwargs["actor"].role is Role.SUPER_ADMIN


def test_remove_assignee_requires_role_query(ticket_client):
    client, service = ticket_client
    service.remove_assignment = AsyncMock(return_value=_make_result())

    assert client.delete("/tickets/ticket-1/assignees/resolver-1", headers=ADMIN_HEADERS).status_code == 422

    response = client.delete(
        "/tickets/ticket-1/assignees/resolver-1", params={"role": "resolver"}, headers=ADMIN_HEADERS
    )

    assert response.status_code == 200
    service.remove_assignment.assert_awaited()


def test_severity_change_forbidden_maps_to_403(ticket_client):
    client, service = ticket_client
    service.request_severity_change = AsyncMock(side_effect=AuthorizationError("nope"))

    response = client.post("/tickets/ticket-1/severity", json={"severity": "sev1"}, headers=RESOLVER_HEADERS)

    assert response.status_code == 403


def test_comment_endpoint_returns_created(ticket_client):
    client, service = ticket_client
    service.add_comment = AsyncMock(return_value=_make_result())

    response = client.post(
        "/tickets/ticket-1/comments",
        json={"content": "Any update?", "attachments": [{"file_name": "receipt.pdf", "file_size": 10}]},
    )

    assert response.status_code == 201
    kwargs = service.add_comment.await_args.kwargs
    assert kwargs["content"] == "Any update?"
    assert kwargs["attachments"][0].file_name == "receipt.pdf"


def test_delete_ticket_returns_no_content(ticket_client):
    client, service = ticket_client
    service.soft_delete_ticket = AsyncMock(return_value=_make_result())

    response = client.delete("/tickets/ticket-1", headers=ADMIN_HEADERS)

    assert response.status_code == 204
    service.soft_delete_ticket.assert_awaited()


def test_history_and_timeline(ticket_client):
    client, service = ticket_client
    event = _make_event("ticket-1")
    service.get_history = AsyncMock(return_value=[event])
    service.get_timeline = AsyncMock(
        return_value=[TimelineEntry(event=event, actor_name="Imran", actor_role=Role.INVIGILATOR)]
    )

    history = client.get("/tickets/ticket-1/history")
    timeline = client.get("/tickets/ticket-1/timeline", headers=ADMIN_HEADERS)

    assert history.status_code == 200
    assert history.json()[0]["event_type"] == "created"
    assert timeline.json()[0]["actor_name"] == "Imran"
    service.get_timeline.assert_awaited_with("ticket-1", viewer_role=Role.SUPER_ADMIN)


def test_auto_resolve_requires_privileged_actor(ticket_client):
    client, service = ticket_client
    service.auto_resolve_user_dependency = AsyncMock(return_value=2)

    assert client.post("/tickets/maintenance/auto-resolve", headers=RESOLVER_HEADERS).status_code == 403

    response = client.post("/tickets/maintenance/auto-resolve", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    assert response.json() == {"resolved": 2}


def test_ping_and_metrics(ticket_client):
    client, _ = ticket_client

    assert client.get("/ping").json() == {"status": "ok"}
    assert client.get("/ping/whoami", headers=RESOLVER_HEADERS).json()["role"] == "resolver"
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "# TYPE ticket_status_changes_total counter" in metrics.text
