from collections.abc import Callable, Mapping
from typing import Annotated

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from hoteldesk.core.config import Settings, get_settings
from hoteldesk.security import Role, User

# Static demo identities; token issuance lives outside this service.
TOKEN_USER_MAP: Mapping[str, User] = {
    "admin-token": User(id="admin-1", username="admin", role=Role.ADMIN),
    "reception-token": User(id="reception-1", username="reception", role=Role.RECEPTION),
    "cleaning-token": User(id="cleaning-1", username="cleaning", role=Role.CLEANING_STAFF),
    "guest-token": User(id="guest-1", username="guest", role=Role.USER),
    "guest2-token": User(id="guest-2", username="guest2", role=Role.USER),
}


def demo_users(settings: Settings) -> list[User]:
    """Identities that should exist in the users table for the demo tokens."""

    users = list(TOKEN_USER_MAP.values())
    if settings.realtime_bypass_token:
        users.append(User(id=settings.demo_user_id, username=settings.demo_username, role=Role.USER))
    return users


def resolve_user_from_token(token: str | None, settings: Settings) -> User:
    """Map a bearer token to a known identity or fail with 401."""

    if not token:
        raise HTTPException(status_code=401, detail="Missing authentication credentials")
    if settings.realtime_bypass_token and token == settings.realtime_bypass_token:
        return User(id=settings.demo_user_id, username=settings.demo_username, role=Role.USER)
    user = TOKEN_USER_MAP.get(token)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")
    return user


bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> User:
    token = credentials.credentials if credentials is not None else None
    return resolve_user_from_token(token, settings)


def role_required(*roles: Role) -> Callable[[User], User]:
    """Dependency factory ensuring the current user holds one of ``roles``."""

    async def dependency(user: Annotated[User, Depends(get_current_user)]) -> User:
        if not user.has_role(*roles):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return dependency


CurrentUser = Annotated[User, Depends(get_current_user)]
