"""Role gates for assignment, severity and comment mutations."""

from __future__ import annotations

import logging

from .errors import AuthorizationError
from .roles import AssigneeRole, Role, is_privileged, is_staff
from .state import TicketStatus

logger = logging.getLogger(__name__)


def can_assign(actor_role: Role, target_role: AssigneeRole) -> bool:
    """Only privileged roles may add or remove assignments, whatever the ticket status."""

    return isinstance(target_role, AssigneeRole) and is_privileged(actor_role)


def assert_can_assign(actor_role: Role, target_role: AssigneeRole, *, ticket_id: str, actor_id: str) -> None:
    if not can_assign(actor_role, target_role):
        logger.warning(
            "Assignment change rejected: actor=%s role=%s target_role=%s ticket=%s",
            actor_id,
            actor_role.value,
            target_role.value,
            ticket_id,
        )
        raise AuthorizationError(f"Role {actor_role.value} may not change {target_role.value} assignments")


def should_auto_advance(current: TicketStatus, target_role: AssigneeRole) -> bool:
    """A resolver assigned to an untouched ticket moves it to ``in_progress``."""

    return target_role is AssigneeRole.RESOLVER and current is TicketStatus.OPEN


def can_change_severity(actor_role: Role, *, allow_staff: bool = False) -> bool:
    if is_privileged(actor_role):
        return True
    return allow_staff and is_staff(actor_role)


def assert_can_change_severity(
    actor_role: Role, *, ticket_id: str, actor_id: str, allow_staff: bool = False
) -> None:
    if not can_change_severity(actor_role, allow_staff=allow_staff):
        logger.warning(
            "Severity change rejected: actor=%s role=%s ticket=%s", actor_id, actor_role.value, ticket_id
        )
        raise AuthorizationError(f"Role {actor_role.value} may not change ticket severity")


def can_comment(actor_role: Role, status: TicketStatus) -> bool:
    """Submitters lose the conversation once a ticket is resolved; staff keep it."""

    if is_staff(actor_role):
        return True
    return status is not TicketStatus.RESOLVED


def assert_can_comment(actor_role: Role, status: TicketStatus, *, ticket_id: str, actor_id: str) -> None:
    if not can_comment(actor_role, status):
        logger.warning("Comment rejected on resolved ticket %s from %s", ticket_id, actor_id)
        raise AuthorizationError("Comments are closed on resolved tickets")
