from __future__ import annotations

from enum import Enum
from typing import Mapping

from .roles import Role, is_privileged


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    OPS_INPUT_REQUIRED = "ops_input_required"
    USER_DEPENDENCY = "user_dependency"
    OPS_USER_DEPENDENCY = "ops_user_dependency"
    SEND_FOR_APPROVAL = "send_for_approval"
    APPROVED = "approved"
    RESOLVED = "resolved"


class Severity(str, Enum):
    """Urgency tiers, ``sev1`` being the most urgent."""

    SEV1 = "sev1"
    SEV2 = "sev2"
    SEV3 = "sev3"

    @property
    def rank(self) -> int:
        return {Severity.SEV1: 1, Severity.SEV2: 2, Severity.SEV3: 3}[self]


DEFAULT_SEVERITY = Severity.SEV3

# Statuses from which moving back into an active status counts as a reopen.
CLOSED_STATUSES: frozenset[TicketStatus] = frozenset({TicketStatus.APPROVED, TicketStatus.RESOLVED})
ACTIVE_STATUSES: frozenset[TicketStatus] = frozenset(TicketStatus) - CLOSED_STATUSES

_S = TicketStatus

RESOLVER_TRANSITIONS: Mapping[TicketStatus, frozenset[TicketStatus]] = {
    _S.OPEN: frozenset({_S.IN_PROGRESS}),
    _S.IN_PROGRESS: frozenset(
        {_S.SEND_FOR_APPROVAL, _S.USER_DEPENDENCY, _S.OPS_INPUT_REQUIRED, _S.OPS_USER_DEPENDENCY}
    ),
    _S.OPS_INPUT_REQUIRED: frozenset({_S.IN_PROGRESS}),
    _S.USER_DEPENDENCY: frozenset(
        {_S.IN_PROGRESS, _S.OPS_INPUT_REQUIRED, _S.OPS_USER_DEPENDENCY, _S.SEND_FOR_APPROVAL}
    ),
    _S.OPS_USER_DEPENDENCY: frozenset({_S.IN_PROGRESS}),
    _S.SEND_FOR_APPROVAL: frozenset(),
    _S.APPROVED: frozenset({_S.RESOLVED}),
    _S.RESOLVED: frozenset(),
}

APPROVER_TRANSITIONS: Mapping[TicketStatus, frozenset[TicketStatus]] = {
    _S.SEND_FOR_APPROVAL: frozenset({_S.APPROVED, _S.IN_PROGRESS}),
}

_ROLE_TRANSITIONS: Mapping[Role, Mapping[TicketStatus, frozenset[TicketStatus]]] = {
    Role.RESOLVER: RESOLVER_TRANSITIONS,
    Role.APPROVER: APPROVER_TRANSITIONS,
}


class TicketStateMachine:
    """Validate ticket lifecycle transitions against the per-role policy."""

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.OPEN

    @classmethod
    def allowed_transitions(cls, role: Role, current: TicketStatus) -> frozenset[TicketStatus]:
        if is_privileged(role):
            return frozenset(status for status in TicketStatus if status is not current)
        policy = _ROLE_TRANSITIONS.get(role)
        if policy is None:
            return frozenset()
        return policy.get(current, frozenset())

    @classmethod
    def can_transition(cls, role: Role, current: TicketStatus, new: TicketStatus) -> bool:
        return new in cls.allowed_transitions(role, current)

    @classmethod
    def is_workflow_transition(cls, current: TicketStatus, new: TicketStatus) -> bool:
        """True when some non-privileged role could make this move."""

        return any(new in policy.get(current, frozenset()) for policy in _ROLE_TRANSITIONS.values())

    @classmethod
    def is_reopen(cls, current: TicketStatus, new: TicketStatus) -> bool:
        return current in CLOSED_STATUSES and new in ACTIVE_STATUSES
