# SPDX-License-Identifier: Apache-2.0

"""
Role permissions and institution scoping.

Permissions are derived from the account role; institution users are further
restricted to their own institution's data.
"""

from typing import List, Dict, Optional
from dataclasses import dataclass, field
from models.entities import User, UserContext
from models.enums import UserRole


INSTITUTION_PERMISSIONS = [
    "family:create",
    "family:read",
    "family:update",
    "family:link",
    "delivery:create",
    "delivery:read",
    "delivery:update",
    "delivery:override",
    "product:read",
    "supplier:read",
    "stock:create",
    "stock:read",
    "receipt:create",
    "receipt:read",
    "report:read",
    "report:export",
]

ADMIN_PERMISSIONS = sorted(set(INSTITUTION_PERMISSIONS + [
    "institution:create",
    "institution:read",
    "institution:update",
    "institution:delete",
    "family:delete",
    "product:create",
    "product:update",
    "product:delete",
    "supplier:create",
    "supplier:update",
    "supplier:delete",
    "audit_log:read",
]))

ROLE_PERMISSIONS: Dict[str, List[str]] = {
    UserRole.ADMIN.value: ADMIN_PERMISSIONS,
    UserRole.INSTITUTION.value: sorted(INSTITUTION_PERMISSIONS),
}


@dataclass(frozen=True)
class AuthorizationResult:
    """Outcome of a permission or institution check. ``reason`` explains a denial."""
    allowed: bool
    reason: Optional[str] = None
    missing_permissions: List[str] = field(default_factory=list)


GRANTED = AuthorizationResult(allowed=True)


def permissions_for_role(role: str) -> List[str]:
    """Permission list granted by a role; unknown roles get nothing."""
    return list(ROLE_PERMISSIONS.get(role, []))


def build_user_permissions(user: User) -> List[str]:
    return permissions_for_role(user.role)


def check_permission(user_context: UserContext, permission: str) -> AuthorizationResult:
    if permission in user_context.permissions:
        return GRANTED
    return AuthorizationResult(
        allowed=False,
        reason=f"Role {user_context.role} lacks permission {permission}",
        missing_permissions=[permission]
    )


def check_institution_access(user_context: UserContext, institution_id: Optional[str]) -> AuthorizationResult:
    """Admins see every institution; institution users only their own."""
    if user_context.can_act_for(institution_id):
        return GRANTED
    return AuthorizationResult(allowed=False, reason=f"Access denied to institution {institution_id}")


def resolve_institution_id(user_context: UserContext, requested: Optional[str]) -> Optional[str]:
    """
    Institution an operation applies to.

    Institution users always act for their own institution, so a missing
    value falls back to it. Admins must name one explicitly.
    """
    if requested:
        return requested
    if user_context.is_admin:
        return None
    return user_context.institution_id
