import pytest
from fastapi import HTTPException

from escalation.dependencies.auth import ANONYMOUS_ACTOR, actor_required, resolve_actor_from_token
from escalation.tickets.models import Actor
from escalation.tickets.roles import Role, is_privileged, is_staff


@pytest.mark.asyncio
async def test_actor_required_allows_authorized_actor():
    dependency = actor_required(is_privileged)
    actor = Actor(user_id="alice", role=Role.TICKET_ADMIN)
    result = await dependency(actor)  # type: ignore[arg-type]
    assert result.user_id == "alice"


@pytest.mark.asyncio
async def test_actor_required_rejects_unauthorized_actor():
    dependency = actor_required(is_staff)
    actor = Actor(user_id="bob", role=Role.INVIGILATOR)
    with pytest.raises(HTTPException) as exc:
        await dependency(actor)  # type: ignore[arg-type]

    assert exc.value.status_code == 403
    assert exc.value.detail == "Insufficient permissions"


def test_missing_token_resolves_to_anonymous():
    assert resolve_actor_from_token(None) is ANONYMOUS_ACTOR


def test_known_token_resolves_role():
    actor = resolve_actor_from_token("approver-token")
    assert actor.role is Role.APPROVER
    assert actor.user_id == "approver"


def test_unknown_token_is_unauthorized():
    with pytest.raises(HTTPException) as exc:
        resolve_actor_from_token("forged")
    assert exc.value.status_code == 401
