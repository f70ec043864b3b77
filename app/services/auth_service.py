from typing import Optional

from fastapi import Depends, Header, HTTPException

from app.schemas.context import UserContext

_ROLE_ALIASES = {
    "admin": "admin",
    "administrator": "admin",
    "recipient": "recipient",
    "teacher": "recipient",
    "docente": "recipient",
}


def _normalize_role(role: Optional[str]) -> Optional[str]:
    if not role:
        return None
    return _ROLE_ALIASES.get(role.strip().lower())


class AuthService:
    """
    Identity is verified upstream by the gateway, which forwards the caller as
    X-User-Id / X-User-Role headers.
    """

    @staticmethod
    async def get_current_user(
        x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
        x_user_role: Optional[str] = Header(default=None, alias="X-User-Role"),
    ) -> UserContext:
        if not x_user_id or not x_user_id.strip():
            raise HTTPException(status_code=401, detail="Not authenticated")
        role = _normalize_role(x_user_role)
        if role is None:
            raise HTTPException(status_code=403, detail=f"Unknown role: {x_user_role}")
        return UserContext(user_id=x_user_id.strip(), role=role)


async def require_admin(user: UserContext = Depends(AuthService.get_current_user)) -> UserContext:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Administrator role required")
    return user
