from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, List

from idcore.storage.models import OtpContext, UserRole


class Permission(str, Enum):
    DONATION_CREATE = "DONATION_CREATE"
    DONATION_VIEW_OWN = "DONATION_VIEW_OWN"
    DONATION_UPLOAD_IMAGE = "DONATION_UPLOAD_IMAGE"
    DONATION_VIEW_ALL = "DONATION_VIEW_ALL"
    DONATION_VERIFY = "DONATION_VERIFY"
    DONATION_REJECT = "DONATION_REJECT"
    REQUEST_CREATE = "REQUEST_CREATE"
    REQUEST_VIEW_OWN = "REQUEST_VIEW_OWN"
    REQUEST_VIEW_ALL = "REQUEST_VIEW_ALL"
    MATCH_VIEW_ASSIGNED = "MATCH_VIEW_ASSIGNED"
    MATCH_VIEW_ALL = "MATCH_VIEW_ALL"
    MATCH_UPDATE_STATUS = "MATCH_UPDATE_STATUS"
    MATCH_CONFIRM_PICKUP = "MATCH_CONFIRM_PICKUP"
    MATCH_CONFIRM_DELIVERY = "MATCH_CONFIRM_DELIVERY"
    PARTNER_DASHBOARD_VIEW = "PARTNER_DASHBOARD_VIEW"
    PARTNER_MANAGE = "PARTNER_MANAGE"
    PARTNER_VERIFY = "PARTNER_VERIFY"
    ADMIN_DASHBOARD_VIEW = "ADMIN_DASHBOARD_VIEW"
    REPORTS_VIEW = "REPORTS_VIEW"
    SETTINGS_MANAGE = "SETTINGS_MANAGE"
    USERS_MANAGE = "USERS_MANAGE"


_PARTNER_PERMISSIONS = frozenset(
    {
        Permission.PARTNER_DASHBOARD_VIEW,
        Permission.MATCH_VIEW_ASSIGNED,
        Permission.MATCH_UPDATE_STATUS,
        Permission.MATCH_CONFIRM_PICKUP,
        Permission.MATCH_CONFIRM_DELIVERY,
    }
)

ROLE_PERMISSIONS: Dict[UserRole, FrozenSet[Permission]] = {
    UserRole.DONOR: frozenset(
        {
            Permission.DONATION_CREATE,
            Permission.DONATION_UPLOAD_IMAGE,
            Permission.DONATION_VIEW_OWN,
        }
    ),
    UserRole.REQUESTER: frozenset(
        {Permission.REQUEST_CREATE, Permission.REQUEST_VIEW_OWN}
    ),
    UserRole.PARTNER_PHARMACY: _PARTNER_PERMISSIONS,
    UserRole.PARTNER_NGO: _PARTNER_PERMISSIONS,
    UserRole.PARTNER_VOLUNTEER: _PARTNER_PERMISSIONS,
    UserRole.ADMIN: frozenset(Permission),
}

CONTEXT_PERMISSIONS: Dict[OtpContext, FrozenSet[Permission]] = {
    OtpContext.DONATION: frozenset(
        {Permission.DONATION_UPLOAD_IMAGE, Permission.DONATION_VIEW_OWN}
    ),
    OtpContext.REQUEST: frozenset({Permission.REQUEST_VIEW_OWN}),
}


def _ordered(permissions: FrozenSet[Permission]) -> List[str]:
    # Declaration order keeps token payloads stable between mints
    return [p.value for p in Permission if p in permissions]


def permissions_for_role(role: UserRole) -> List[str]:
    return _ordered(ROLE_PERMISSIONS[UserRole(role)])


def permissions_for_context(context: OtpContext) -> List[str]:
    return _ordered(CONTEXT_PERMISSIONS[OtpContext(context)])
