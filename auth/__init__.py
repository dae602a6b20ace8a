# Auth module for FlowPay Escrow
# Bearer-token authentication and permission checks for the API

from auth.roles import UserType, Permission, ROLE_PERMISSIONS, has_permission
from auth.decorators import require_permission, get_user_type
from auth.dependencies import get_current_user, create_access_token

__all__ = [
    "UserType",
    "Permission",
    "ROLE_PERMISSIONS",
    "has_permission",
    "require_permission",
    "get_user_type",
    "get_current_user",
    "create_access_token",
]
