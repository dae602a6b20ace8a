# Access control dependencies for FlowPay Escrow routes

from typing import Optional

from fastapi import HTTPException, status, Depends

from database.models import User
from auth.roles import UserType, Permission, has_permission
from auth.dependencies import get_current_user


def require_permission(permission: Permission):
    """
    Dependency that lets the request through only if the caller's role holds
    permission. Whether the caller is a party to the deal is checked by the
    service.

    Usage:
        @router.post("/deals/{deal_id}/fund")
        def fund_deal(user: User = Depends(require_permission(Permission.FUND_DEALS))):
            ...
    """
    async def dependency(current_user: User = Depends(get_current_user)) -> User:
        if not has_permission(get_user_type(current_user), permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Your account cannot {permission.value.replace('_', ' ')}"
            )
        return current_user

    return dependency


def get_user_type(user: User) -> Optional[UserType]:
    """UserType of a user row, tolerating raw string values. None if unrecognised."""
    val = user.user_type.value if hasattr(user.user_type, 'value') else user.user_type
    try:
        return UserType(str(val).lower())
    except ValueError:
        return None
