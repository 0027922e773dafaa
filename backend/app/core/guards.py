"""
Security guards for role-based and school-scoped access control.

Provides dependencies for protecting endpoints.
"""

from typing import List, Optional
from fastapi import Depends
from backend.app.core.exceptions import InsufficientPermissionsError
from backend.app.models.enums import UserRole
from backend.app.core.dependencies import get_current_user


def require_role(allowed_roles: List[UserRole]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.post("/budgets/{school_id}")
        async def allocate(current_user: dict = Depends(require_role([UserRole.ADMIN]))):
            ...

    Args:
        allowed_roles: List of UserRole enums that are allowed to access the endpoint

    Returns:
        FastAPI dependency function that validates user role

    Raises:
        InsufficientPermissionsError if user role is not in allowed_roles
    """
    async def role_checker(current_user: dict = Depends(get_current_user)) -> dict:
        try:
            user_role = UserRole(current_user.get("role"))
        except ValueError:
            raise InsufficientPermissionsError("Invalid role in token")

        if user_role not in allowed_roles:
            raise InsufficientPermissionsError(
                f"Access denied. Required role: {', '.join([r.value for r in allowed_roles])}",
                details={"required_roles": [r.value for r in allowed_roles]},
            )

        return current_user

    return role_checker


def can_access_school(school_id: int, current_user: dict) -> bool:
    """
    Staff and automation see every school; a partner school only its own.
    """
    role = current_user.get("role")
    if role in (UserRole.ADMIN.value, UserRole.SYSTEM.value):
        return True
    if role == UserRole.PARTNER_SCHOOL.value:
        return current_user.get("school_id") == school_id
    return False


def enforce_school_access(school_id: int, current_user: dict) -> None:
    """Raise 403 when the caller may not act on the given school."""
    if not can_access_school(school_id, current_user):
        raise InsufficientPermissionsError(
            "Access denied. You do not have permission to access this school's budget.",
            details={"school_id": school_id},
        )


def actor_name(current_user: Optional[dict]) -> Optional[str]:
    return current_user.get("sub") if current_user else None
