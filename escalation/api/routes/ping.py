from fastapi import APIRouter

from escalation.dependencies.auth import CurrentActor

router = APIRouter(prefix="/ping", tags=["health"])


@router.get("", summary="Public health probe")
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/whoami", summary="Echo the resolved actor")
async def whoami(actor: CurrentActor) -> dict[str, str]:
    return {"status": "ok", "user": actor.user_id, "role": actor.role.value}
