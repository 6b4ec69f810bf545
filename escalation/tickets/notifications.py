"""Post-commit notification hooks.

The lifecycle coordinator only knows *that* something happened; delivery is
delegated to a :class:`Notifier`. Each hook owns one channel and decides which
events it reacts to, so channel rules never leak into the mutation code::

    dispatcher = NotificationDispatcher(default_hooks(LoggingNotifier()), timeout=5.0)
    warnings = await dispatcher.dispatch(NotificationEvent.RESOLVED, summary)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Iterable, Protocol, Sequence

import httpx

from escalation.metrics import MetricsRegistry, metrics_registry as default_metrics_registry

from .errors import NotificationDispatchError
from .models import Ticket

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    RESOLVED = "resolved"
    COMMENT_ADDED = "comment_added"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"


@dataclass(frozen=True, slots=True)
class TicketSummary:
    """The minimal ticket view handed to notifiers."""

    ticket_id: str
    ticket_number: str
    category: str
    severity: str
    status: str
    submitter: str
    link: str

    @classmethod
    def from_ticket(cls, ticket: Ticket, *, link_base_url: str) -> "TicketSummary":
        submitter = "Anonymous" if ticket.is_anonymous else (ticket.submitted_by or "Unknown")
        return cls(
            ticket_id=ticket.id,
            ticket_number=ticket.ticket_number,
            category=ticket.category.value,
            severity=ticket.severity.value,
            status=ticket.status.value,
            submitter=submitter,
            link=f"{link_base_url.rstrip('/')}/{ticket.ticket_number}",
        )


@dataclass(frozen=True, slots=True)
class RecipientHint:
    channel: Channel
    submitter_user_id: str | None = None
    assignee_ids: tuple[str, ...] = ()


class Notifier(Protocol):
    async def notify(self, event: NotificationEvent, summary: TicketSummary, recipient: RecipientHint) -> None:
        ...


class LoggingNotifier:
    """Record notifications in the log instead of delivering them."""

    async def notify(self, event: NotificationEvent, summary: TicketSummary, recipient: RecipientHint) -> None:
        logger.info(
            "Notification %s via %s for ticket %s (%s)",
            event.value,
            recipient.channel.value,
            summary.ticket_number,
            summary.status,
        )


class WebhookNotifier:
    """POST notifications as JSON to an external delivery service."""

    def __init__(self, url: str, *, timeout: float = 5.0, client: httpx.AsyncClient | None = None) -> None:
        self._url = url
        self._timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def build_payload(
        self, event: NotificationEvent, summary: TicketSummary, recipient: RecipientHint
    ) -> dict[str, Any]:
        return {
            "event": event.value,
            "channel": recipient.channel.value,
            "ticket": asdict(summary),
            "recipient": {
                "submitter_user_id": recipient.submitter_user_id,
                "assignee_ids": list(recipient.assignee_ids),
            },
        }

    async def notify(self, event: NotificationEvent, summary: TicketSummary, recipient: RecipientHint) -> None:
        payload = self.build_payload(event, summary, recipient)
        try:
            response = await self._client.post(self._url, json=payload, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            raise NotificationDispatchError(
                f"Webhook request failed: {exc}", channel=recipient.channel.value, event=event.value
            ) from exc
        if response.status_code >= 400:
            raise NotificationDispatchError(
                f"Webhook returned {response.status_code}: {response.text}",
                channel=recipient.channel.value,
                event=event.value,
            )

    async def aclose(self) -> None:
        await self._client.aclose()


class ChannelHook:
    """Forward selected events to one delivery channel."""

    def __init__(self, notifier: Notifier, channel: Channel, events: Iterable[NotificationEvent]) -> None:
        self.notifier = notifier
        self.channel = channel
        self.events = frozenset(events)

    def wants(self, event: NotificationEvent) -> bool:
        return event in self.events

    async def __call__(
        self,
        event: NotificationEvent,
        summary: TicketSummary,
        *,
        submitter_user_id: str | None,
        assignee_ids: tuple[str, ...],
    ) -> None:
        recipient = RecipientHint(
            channel=self.channel, submitter_user_id=submitter_user_id, assignee_ids=assignee_ids
        )
        await self.notifier.notify(event, summary, recipient)


def default_hooks(notifier: Notifier) -> list[ChannelHook]:
    """Email for every event; SMS and WhatsApp only once a ticket is resolved."""

    return [
        ChannelHook(notifier, Channel.EMAIL, NotificationEvent),
        ChannelHook(notifier, Channel.SMS, (NotificationEvent.RESOLVED,)),
        ChannelHook(notifier, Channel.WHATSAPP, (NotificationEvent.RESOLVED,)),
    ]


class NotificationDispatcher:
    """Run hooks after a commit; failures become warnings, never errors."""

    def __init__(
        self,
        hooks: Sequence[ChannelHook],
        *,
        timeout: float = 5.0,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._hooks = list(hooks)
        self._timeout = timeout
        self._metrics = metrics or default_metrics_registry

    async def dispatch(
        self,
        event: NotificationEvent,
        summary: TicketSummary,
        *,
        submitter_user_id: str | None = None,
        assignee_ids: Sequence[str] = (),
    ) -> list[NotificationDispatchError]:
        warnings: list[NotificationDispatchError] = []
        for hook in self._hooks:
            if not hook.wants(event):
                continue
            try:
                await asyncio.wait_for(
                    hook(event, summary, submitter_user_id=submitter_user_id, assignee_ids=tuple(assignee_ids)),
                    timeout=self._timeout,
                )
            except Exception as exc:  # noqa: BLE001 - delivery failures must not reach the caller
                logger.warning(
                    "Notification %s via %s failed for ticket %s",
                    event.value,
                    hook.channel.value,
                    summary.ticket_number,
                    exc_info=True,
                )
                self._metrics.counter(
                    "ticket_notification_failures_total", label_names=("channel",)
                ).inc(labels={"channel": hook.channel.value})
                if isinstance(exc, NotificationDispatchError):
                    warnings.append(exc)
                else:
                    warnings.append(
                        NotificationDispatchError(
                            f"{hook.channel.value} notification failed: {exc!r}",
                            channel=hook.channel.value,
                            event=event.value,
                        )
                    )
        return warnings
