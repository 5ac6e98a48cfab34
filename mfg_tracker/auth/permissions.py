"""
Permission resolution: turns a verified caller identity into an operator
context (admin flag + capability set) for the components to check.
"""
from dataclasses import dataclass
from typing import FrozenSet, Optional

from mfg_tracker.errors import Forbidden, NotAuthorized
from mfg_tracker.logging_config import get_logger
from mfg_tracker.models import User, db

logger = get_logger(__name__)

WILDCARD = "*"
ADMIN_DISPLAY_NAME = "System Admin"
ADMIN_LOGIN_ID = "admin"


def normalize_permissions(permissions):
    """Trim, lowercase, drop empties and de-duplicate, keeping first-seen order."""
    if not permissions:
        return []
    if isinstance(permissions, str):
        permissions = [permissions]
    seen = []
    for permission in permissions:
        if permission is None:
            continue
        value = str(permission).strip().lower()
        if value and value not in seen:
            seen.append(value)
    return seen


@dataclass(frozen=True)
class OperatorContext:
    user_id: int
    role: str
    is_admin: bool
    permissions: FrozenSet[str]
    name: Optional[str] = None
    login_id: Optional[str] = None
    work_center: Optional[str] = None

    @property
    def actor_name(self):
        if self.is_admin:
            return ADMIN_DISPLAY_NAME
        return self.name or self.login_id or ""

    @property
    def actor_login_id(self):
        if self.is_admin:
            return ADMIN_LOGIN_ID
        return self.login_id

    def permissions_snapshot(self):
        if self.is_admin:
            return [WILDCARD]
        return sorted(self.permissions)


def resolve_operator_context(caller) -> OperatorContext:
    """
    Build the operator context for a verified caller.

    Admins hold every capability. Manufacturing callers are reloaded from
    the store on every call so deactivation and permission changes apply
    immediately.

    Raises:
        NotAuthorized: mfg caller whose record is missing, not mfg, or inactive
        Forbidden: any other role
    """
    if caller.role == "admin":
        return OperatorContext(
            user_id=caller.user_id,
            role=caller.role,
            is_admin=True,
            permissions=frozenset({WILDCARD}),
        )

    if caller.role != "mfg":
        raise Forbidden("Forbidden")

    operator = db.session.get(User, caller.user_id)
    if operator is None or operator.role != "mfg" or not operator.is_active:
        logger.warning("Operator not authorized", user_id=caller.user_id)
        raise NotAuthorized()

    return OperatorContext(
        user_id=operator.id,
        role=operator.role,
        is_admin=False,
        permissions=frozenset(normalize_permissions(operator.permissions)),
        name=operator.name,
        login_id=operator.login_id,
        work_center=operator.work_center,
    )


def has_permission(ctx, permission) -> bool:
    """An empty permission is always held."""
    if not permission or ctx.is_admin:
        return True
    permission = str(permission).strip().lower()
    return WILDCARD in ctx.permissions or permission in ctx.permissions


def require_permission(ctx, permission):
    if not has_permission(ctx, permission):
        raise Forbidden(f"Missing permission: {permission}")
