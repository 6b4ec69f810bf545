from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    """Roles an actor can hold. Values are persisted verbatim."""

    INVIGILATOR = "invigilator"
    RESOLVER = "resolver"
    APPROVER = "approver"
    SUPER_ADMIN = "super_admin"
    TICKET_ADMIN = "ticket_admin"
    ANONYMOUS = "anonymous"
    # Pseudo-role used by scheduled maintenance; never held by a user.
    SYSTEM = "system"


class AssigneeRole(str, Enum):
    """Capacity in which a user is assigned to a ticket."""

    RESOLVER = "resolver"
    APPROVER = "approver"
    OPERATIONS = "operations"
    TICKET_ADMIN = "ticket_admin"


PRIVILEGED_ROLES: frozenset[Role] = frozenset({Role.SUPER_ADMIN, Role.TICKET_ADMIN, Role.SYSTEM})
STAFF_ROLES: frozenset[Role] = frozenset(
    {Role.RESOLVER, Role.APPROVER, Role.SUPER_ADMIN, Role.TICKET_ADMIN, Role.SYSTEM}
)


def is_privileged(role: Role) -> bool:
    return role in PRIVILEGED_ROLES


def is_staff(role: Role) -> bool:
    return role in STAFF_ROLES
