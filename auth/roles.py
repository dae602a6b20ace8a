# Role-Based Access Control for FlowPay Escrow
# Each route names the permission it needs; this map decides who holds it.

from enum import Enum
from typing import Set

from database.models import UserType


class Permission(str, Enum):
    """Actions a route can be gated on."""

    # Brand
    CREATE_DEALS = "create_deals"
    FUND_DEALS = "fund_deals"
    REVIEW_DELIVERABLES = "review_deliverables"
    CONFIGURE_AUTO_RELEASE = "configure_auto_release"
    RETRY_RELEASES = "retry_releases"

    # Creator
    ACCEPT_DEALS = "accept_deals"
    SUBMIT_DELIVERABLES = "submit_deliverables"

    # Both parties
    VIEW_DEALS = "view_deals"
    RAISE_DISPUTES = "raise_disputes"

    # Admin
    RESOLVE_DISPUTES = "resolve_disputes"
    FORCE_RELEASE = "force_release"
    ISSUE_REFUNDS = "issue_refunds"
    RUN_AUTO_RELEASE = "run_auto_release"
    RECONCILE_PAYMENTS = "reconcile_payments"


ROLE_PERMISSIONS: dict[UserType, Set[Permission]] = {
    UserType.BRAND: {
        Permission.CREATE_DEALS,
        Permission.FUND_DEALS,
        Permission.REVIEW_DELIVERABLES,
        Permission.CONFIGURE_AUTO_RELEASE,
        Permission.RETRY_RELEASES,
        Permission.VIEW_DEALS,
        Permission.RAISE_DISPUTES,
    },

    UserType.CREATOR: {
        Permission.ACCEPT_DEALS,
        Permission.SUBMIT_DELIVERABLES,
        Permission.VIEW_DEALS,
        Permission.RAISE_DISPUTES,
    },

    # Admin holds every permission
    UserType.ADMIN: set(Permission),
}


def has_permission(user_type: UserType, permission: Permission) -> bool:
    return permission in ROLE_PERMISSIONS.get(user_type, set())
