"""Append-only history of ticket mutations and its display projection."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, MutableSequence, Sequence

from .identity import IdentityProvider
from .models import Actor, EventDetails, EventType, TicketEvent
from .roles import Role

logger = logging.getLogger(__name__)


class HistoryRecorder:
    """Build audit events and stage them on the pending write.

    Events are only ever appended to ``pending``; the repository persists them
    in the same transaction as the ticket update they describe.
    """

    def __init__(self, clock: Callable[[], datetime]) -> None:
        self._clock = clock

    def record(
        self,
        pending: MutableSequence[TicketEvent],
        *,
        ticket_id: str,
        event_type: EventType,
        actor: Actor,
        details: EventDetails,
        old_value: str | None = None,
        new_value: str | None = None,
        at: datetime | None = None,
    ) -> str:
        event = TicketEvent(
            id=str(uuid.uuid4()),
            ticket_id=ticket_id,
            event_type=event_type,
            actor_id=actor.user_id,
            actor_role=actor.role,
            details=details,
            created_at=at or self._clock(),
            old_value=old_value,
            new_value=new_value,
        )
        pending.append(event)
        logger.debug("Staged %s event %s for ticket %s", event_type.value, event.id, ticket_id)
        return event.id


@dataclass(frozen=True, slots=True)
class TimelineEntry:
    event: TicketEvent
    actor_name: str
    actor_role: Role


async def build_timeline(
    events: Sequence[TicketEvent], identity: IdentityProvider, *, timeout: float | None = None
) -> list[TimelineEntry]:
    """Attach display names to events, falling back to the raw actor id.

    Each lookup is bounded by ``timeout``; a slow identity store degrades to
    the raw id instead of holding up the read.
    """

    names: dict[str, str] = {}
    entries: list[TimelineEntry] = []
    for event in events:
        if event.actor_id not in names:
            try:
                found = await asyncio.wait_for(identity.lookup(event.actor_id), timeout=timeout)
            except TimeoutError:
                logger.warning("Identity lookup for %s timed out after %ss", event.actor_id, timeout)
                found = None
            names[event.actor_id] = found.name if found is not None else event.actor_id
        entries.append(TimelineEntry(event=event, actor_name=names[event.actor_id], actor_role=event.actor_role))
    return entries
