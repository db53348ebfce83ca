from typing import Optional

from fastapi import Depends, HTTPException, status

from crm_api.middleware.auth import get_current_user

# Lower level = more authority. Mirrors the default role set seeded for
# every organization; custom roles carry their level in the token.
ROLE_LEVELS = {
    "organization-owner": 0,
    "business-head": 1,
    "project-director": 2,
    "sales-head": 3,
    "finance-head": 3,
    "marketing-head": 3,
    "sales-manager": 4,
    "finance-manager": 4,
    "channel-partner-manager": 4,
    "sales-executive": 5,
    "channel-partner-admin": 5,
    "channel-partner-agent": 6,
}

POLICY_MANAGER_ROLES = ("organization-owner", "business-head")


def role_level(current_user: dict) -> Optional[int]:
    level = current_user.get("role_level")
    if level is not None:
        return int(level)
    return ROLE_LEVELS.get(current_user["role"])


def _forbidden(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"error": {"code": "INSUFFICIENT_PERMISSIONS", "message": message}},
    )


def require_roles(*allowed_roles: str):
    """
    FastAPI dependency factory for role-based access control.

    Usage:
        @router.post("")
        async def create_policy(
            current_user: dict = Depends(get_current_user),
            _auth: None = Depends(require_roles(*POLICY_MANAGER_ROLES)),
        ):
    """
    async def check_role(current_user: dict = Depends(get_current_user)):
        if current_user["role"] not in allowed_roles:
            raise _forbidden(
                f"Role '{current_user['role']}' cannot perform this action. "
                f"Required: {allowed_roles}"
            )
        return None

    return check_role


def require_authority(max_level: int):
    """Allow roles at ``max_level`` or more senior (numerically lower)."""
    async def check_level(current_user: dict = Depends(get_current_user)):
        level = role_level(current_user)
        if level is None or level > max_level:
            raise _forbidden(
                f"Role '{current_user['role']}' cannot perform this action. "
                f"Required authority level <= {max_level}"
            )
        return None

    return check_level
