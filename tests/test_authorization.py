import pytest

from escalation.tickets.authorization import (
    assert_can_assign,
    assert_can_change_severity,
    assert_can_comment,
    can_assign,
    can_change_severity,
    can_comment,
    should_auto_advance,
)
from escalation.tickets.errors import AuthorizationError
from escalation.tickets.roles import AssigneeRole, Role
from escalation.tickets.state import TicketStatus


@pytest.mark.parametrize("target", list(AssigneeRole))
def test_privileged_roles_can_assign_any_target(target):
    assert can_assign(Role.SUPER_ADMIN, target)
    assert can_assign(Role.TICKET_ADMIN, target)


@pytest.mark.parametrize("role", [Role.RESOLVER, Role.APPROVER, Role.INVIGILATOR, Role.ANONYMOUS])
def test_non_privileged_roles_cannot_assign(role):
    assert not can_assign(role, AssigneeRole.RESOLVER)
    with pytest.raises(AuthorizationError):
        assert_can_assign(role, AssigneeRole.APPROVER, ticket_id="t-1", actor_id="u-1")


def test_assignment_denial_is_logged(caplog):
    with caplog.at_level("WARNING", logger="escalation.tickets.authorization"):
        with pytest.raises(AuthorizationError):
            assert_can_assign(Role.RESOLVER, AssigneeRole.RESOLVER, ticket_id="t-9", actor_id="r-1")
    assert "t-9" in caplog.text


def test_auto_advance_only_for_resolver_on_open():
    assert should_auto_advance(TicketStatus.OPEN, AssigneeRole.RESOLVER)
    assert not should_auto_advance(TicketStatus.OPEN, AssigneeRole.APPROVER)
    assert not should_auto_advance(TicketStatus.OPS_INPUT_REQUIRED, AssigneeRole.RESOLVER)


def test_severity_is_privileged_only_by_default():
    assert can_change_severity(Role.TICKET_ADMIN)
    assert not can_change_severity(Role.RESOLVER)
    assert can_change_severity(Role.RESOLVER, allow_staff=True)
    assert not can_change_severity(Role.INVIGILATOR, allow_staff=True)
    with pytest.raises(AuthorizationError):
        assert_can_change_severity(Role.APPROVER, ticket_id="t-1", actor_id="a-1")


def test_comments_close_for_submitters_once_resolved():
    assert can_comment(Role.INVIGILATOR, TicketStatus.IN_PROGRESS)
    assert can_comment(Role.ANONYMOUS, TicketStatus.APPROVED)
    assert not can_comment(Role.INVIGILATOR, TicketStatus.RESOLVED)
    assert can_comment(Role.RESOLVER, TicketStatus.RESOLVED)
    with pytest.raises(AuthorizationError):
        assert_can_comment(Role.ANONYMOUS, TicketStatus.RESOLVED, ticket_id="t-1", actor_id="anonymous")
