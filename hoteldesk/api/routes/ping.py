from fastapi import APIRouter

from hoteldesk.dependencies.auth import CurrentUser

router = APIRouter(prefix="/ping", tags=["health"])


@router.get("", summary="Public health probe")
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/secure", summary="Authenticated health probe")
async def secure_ping(user: CurrentUser) -> dict[str, str]:
    return {"status": "ok", "user": user.username, "role": user.role.value}
