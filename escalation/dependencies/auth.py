from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from escalation.tickets.models import Actor
from escalation.tickets.roles import Role, is_privileged, is_staff

TOKEN_ACTOR_MAP: dict[str, tuple[str, str, Role]] = {
    "admin-token": ("admin", "Super Admin", Role.SUPER_ADMIN),
    "ticket-admin-token": ("ticket-admin", "Ticket Admin", Role.TICKET_ADMIN),
    "resolver-token": ("resolver", "Resolver", Role.RESOLVER),
    "approver-token": ("approver", "Approver", Role.APPROVER),
    "invigilator-token": ("invigilator", "Invigilator", Role.INVIGILATOR),
}

ANONYMOUS_ACTOR = Actor(user_id="anonymous", role=Role.ANONYMOUS, name="Anonymous")

bearer_scheme = HTTPBearer(auto_error=False)


def resolve_actor_from_token(token: str | None) -> Actor:
    """Return the actor associated with the provided bearer token."""

    if token is None:
        return ANONYMOUS_ACTOR

    if token not in TOKEN_ACTOR_MAP:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")

    user_id, name, role = TOKEN_ACTOR_MAP[token]
    return Actor(user_id=user_id, role=role, name=name)


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
) -> Actor:
    """Resolve the caller from a static token map.

    Credential issuance lives outside this service; a missing token means the
    caller acts as the anonymous pseudo-role.
    """

    cached = getattr(request.state, "actor", None)
    if isinstance(cached, Actor):
        return cached

    token = credentials.credentials if credentials is not None else None
    actor = resolve_actor_from_token(token)
    request.state.actor = actor
    return actor


def actor_required(check: Callable[[Role], bool]) -> Callable[[Actor], Actor]:
    """Dependency factory ensuring the current actor's role passes ``check``."""

    async def dependency(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
        if not check(actor.role):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return actor

    return dependency


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
StaffActor = Annotated[Actor, Depends(actor_required(is_staff))]
PrivilegedActor = Annotated[Actor, Depends(actor_required(is_privileged))]
