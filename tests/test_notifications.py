from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import httpx
import pytest
from conftest import make_submission

from escalation.metrics import MetricsRegistry
from escalation.tickets.errors import NotificationDispatchError
from escalation.tickets.models import Ticket
from escalation.tickets.notifications import (
    Channel,
    ChannelHook,
    LoggingNotifier,
    NotificationDispatcher,
    NotificationEvent,
    RecipientHint,
    TicketSummary,
    WebhookNotifier,
    default_hooks,
)
from escalation.tickets.state import Severity, TicketStatus

SUMMARY = TicketSummary(
    ticket_id="t-1",
    ticket_number="AWGN-2024-ABC123",
    category="payment_delay",
    severity="sev3",
    status="resolved",
    submitter="Imran",
    link="http://localhost:8080/track/AWGN-2024-ABC123",
)


def test_summary_masks_anonymous_submitter():
    submission = make_submission()
    now = datetime.now(timezone.utc)
    ticket = Ticket(
        id="t-1",
        ticket_number="AWGN-2024-ABC123",
        category=submission.category,
        severity=Severity.SEV3,
        status=TicketStatus.OPEN,
        description=submission.description,
        issue_date=submission.issue_date,
        centre_code=submission.centre_code,
        city=submission.city,
        resource_id=None,
        external_ref=None,
        submitted_by=None,
        submitted_by_user_id=None,
        is_anonymous=True,
        submitted_at=now,
        updated_at=now,
    )

    summary = TicketSummary.from_ticket(ticket, link_base_url="https://track.example/")

    assert summary.submitter == "Anonymous"
    assert summary.link == "https://track.example/AWGN-2024-ABC123"


def test_default_hooks_route_sms_and_whatsapp_only_on_resolution():
    hooks = {hook.channel: hook for hook in default_hooks(LoggingNotifier())}

    assert all(hooks[Channel.EMAIL].wants(event) for event in NotificationEvent)
    assert hooks[Channel.SMS].wants(NotificationEvent.RESOLVED)
    assert not hooks[Channel.SMS].wants(NotificationEvent.STATUS_CHANGED)
    assert not hooks[Channel.WHATSAPP].wants(NotificationEvent.CREATED)


@pytest.mark.asyncio
async def test_webhook_notifier_posts_payload():
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(202, json={"queued": True})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = WebhookNotifier("https://notify.example/hooks", client=client)

    await notifier.notify(
        NotificationEvent.RESOLVED,
        SUMMARY,
        RecipientHint(channel=Channel.SMS, submitter_user_id="invig-1", assignee_ids=("resolver-1",)),
    )
    await notifier.aclose()

    body = json.loads(captured[0].content)
    assert str(captured[0].url) == "https://notify.example/hooks"
    assert body["event"] == "resolved"
    assert body["channel"] == "sms"
    assert body["ticket"]["ticket_number"] == "AWGN-2024-ABC123"
    assert body["recipient"]["assignee_ids"] == ["resolver-1"]


@pytest.mark.asyncio
async def test_webhook_notifier_raises_on_error_status():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503, text="busy")))
    notifier = WebhookNotifier("https://notify.example/hooks", client=client)

    with pytest.raises(NotificationDispatchError) as excinfo:
        await notifier.notify(NotificationEvent.CREATED, SUMMARY, RecipientHint(channel=Channel.EMAIL))

    assert excinfo.value.channel == "email"
    assert excinfo.value.event == "created"
    await notifier.aclose()


@pytest.mark.asyncio
async def test_webhook_notifier_wraps_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = WebhookNotifier("https://notify.example/hooks", client=client)

    with pytest.raises(NotificationDispatchError):
        await notifier.notify(NotificationEvent.CREATED, SUMMARY, RecipientHint(channel=Channel.EMAIL))
    await notifier.aclose()


@pytest.mark.asyncio
async def test_dispatcher_collects_failures_and_keeps_going():
    registry = MetricsRegistry()
    failing = AsyncMock()
    failing.notify.side_effect = RuntimeError("smtp down")
    working = AsyncMock()
    dispatcher = NotificationDispatcher(
        [
            ChannelHook(failing, Channel.EMAIL, NotificationEvent),
            ChannelHook(working, Channel.SMS, (NotificationEvent.RESOLVED,)),
        ],
        metrics=registry,
    )

    warnings = await dispatcher.dispatch(
        NotificationEvent.RESOLVED, SUMMARY, submitter_user_id="invig-1", assignee_ids=["resolver-1"]
    )

    assert [warning.channel for warning in warnings] == ["email"]
    working.notify.assert_awaited_once()
    recipient = working.notify.await_args.args[2]
    assert recipient.assignee_ids == ("resolver-1",)
    failures = registry.counter("ticket_notification_failures_total", label_names=("channel",))
    assert failures.value({"channel": "email"}) == 1


@pytest.mark.asyncio
async def test_dispatcher_bounds_slow_hooks():
    class SlowNotifier:
        async def notify(self, event, summary, recipient):
            await asyncio.sleep(1)

    dispatcher = NotificationDispatcher(
        [ChannelHook(SlowNotifier(), Channel.EMAIL, NotificationEvent)], timeout=0.01, metrics=MetricsRegistry()
    )

    warnings = await dispatcher.dispatch(NotificationEvent.CREATED, SUMMARY)

    assert len(warnings) == 1
    assert warnings[0].event == "created"


@pytest.mark.asyncio
async def test_dispatcher_skips_hooks_not_interested():
    notifier = AsyncMock()
    dispatcher = NotificationDispatcher(default_hooks(notifier), metrics=MetricsRegistry())

    await dispatcher.dispatch(NotificationEvent.COMMENT_ADDED, SUMMARY)

    assert notifier.notify.await_count == 1
