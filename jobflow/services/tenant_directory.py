"""
Tenant Directory — the single source of truth for who a principal is.

``resolve_principal`` is a privileged, column-level lookup on ``users``.
It never goes through the access policy and the access policy never calls
back into it; the policy only ever consumes the ``Principal`` value this
module returns.

Unknown, deactivated or unmapped users resolve to ``Principal.unresolved``
(no tenant, no role), which the access policy denies everything. There is
no fallback to any external identity store and no implicit upgrade.

Usage:
    from jobflow.services.tenant_directory import resolve_principal

    principal = resolve_principal(g.jwt_user_id)
"""

import logging
from dataclasses import dataclass

from sqlalchemy import select

from jobflow.core.exceptions import NotFoundError, PermissionDenied, ValidationError
from jobflow.models import db
from jobflow.models.auth import (
    ROLE_CROSS_TENANT_ADMIN,
    ROLE_MANAGER,
    ROLE_MEMBER,
    USER_ROLES,
    Tenant,
    User,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """Resolved identity of an acting user. Plain value, safe to pass around."""

    user_id: int | None
    tenant_id: int | None
    role: str | None
    resolved: bool = True

    @classmethod
    def unresolved(cls, user_id=None) -> "Principal":
        return cls(user_id=user_id, tenant_id=None, role=None, resolved=False)

    @classmethod
    def system(cls) -> "Principal":
        """Principal used by background jobs and backfills."""
        return cls(user_id=None, tenant_id=None, role=ROLE_CROSS_TENANT_ADMIN)

    @property
    def is_cross_tenant_admin(self) -> bool:
        return self.resolved and self.role == ROLE_CROSS_TENANT_ADMIN

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "role": self.role,
            "resolved": self.resolved,
        }


def resolve_principal(user_id) -> Principal:
    """Resolve ``user_id`` to its tenant and role with one query."""
    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        return Principal.unresolved(None)

    row = db.session.execute(
        select(User.tenant_id, User.role, User.is_active).where(User.id == user_id)
    ).one_or_none()

    if row is None or not row.is_active:
        logger.info("Principal %s unresolved", user_id, extra={"user_id": user_id})
        return Principal.unresolved(user_id)

    if row.role not in USER_ROLES:
        return Principal.unresolved(user_id)
    if row.tenant_id is None and row.role != ROLE_CROSS_TENANT_ADMIN:
        return Principal.unresolved(user_id)

    return Principal(user_id=user_id, tenant_id=row.tenant_id, role=row.role)


# ═════════════════════════════════════════════════════════════════════════════
# Privileged mutations
# ═════════════════════════════════════════════════════════════════════════════


def _get_user(user_id) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError(resource="User", resource_id=user_id)
    return user


def _check_can_manage(actor: Principal, user: User, action: str):
    if actor.is_cross_tenant_admin:
        return
    if (
        actor.resolved
        and actor.role == ROLE_MANAGER
        and actor.tenant_id is not None
        and actor.tenant_id == user.tenant_id
    ):
        return
    raise PermissionDenied(action=action, resource="User", resource_id=user.id,
                           reason="privileged_role_required")


def set_role(actor: Principal, user_id: int, role: str, tenant_id: int | None = None) -> dict:
    """Change a user's role and, for cross-tenant admins only, its tenant.

    Managers may only assign member/manager inside their own tenant.
    """
    if role not in USER_ROLES:
        raise ValidationError(f"Unknown role '{role}'", details={"role": sorted(USER_ROLES)})

    user = _get_user(user_id)
    _check_can_manage(actor, user, "update")

    if not actor.is_cross_tenant_admin:
        if user.role == ROLE_CROSS_TENANT_ADMIN:
            raise PermissionDenied(action="update", resource="User", resource_id=user.id,
                                   reason="privileged_role_required")
        if role == ROLE_CROSS_TENANT_ADMIN:
            raise PermissionDenied(action="update", resource="User", resource_id=user.id,
                                   reason="cannot_grant_cross_tenant_admin")
        if tenant_id is not None and tenant_id != actor.tenant_id:
            raise PermissionDenied(action="update", resource="User", resource_id=user.id,
                                   reason="cannot_move_across_tenants")

    new_tenant_id = user.tenant_id if tenant_id is None else tenant_id
    if new_tenant_id is None and role != ROLE_CROSS_TENANT_ADMIN:
        raise ValidationError("A tenant is required for non-admin roles",
                              details={"tenant_id": "required"})
    if new_tenant_id is not None and db.session.get(Tenant, new_tenant_id) is None:
        raise NotFoundError(resource="Tenant", resource_id=new_tenant_id)

    previous = {"role": user.role, "tenant_id": user.tenant_id}
    user.role = role
    user.tenant_id = new_tenant_id
    db.session.commit()

    logger.info(
        "User %s role %s → %s (tenant %s → %s)",
        user.id, previous["role"], role, previous["tenant_id"], new_tenant_id,
        extra={"user_id": actor.user_id, "tenant_id": new_tenant_id, "event_type": "role_changed"},
    )
    return {"user_id": user.id, "previous": previous, "role": role, "tenant_id": new_tenant_id}


def deactivate_user(actor: Principal, user_id: int) -> dict:
    """Deactivate a user. Users are never deleted."""
    user = _get_user(user_id)
    _check_can_manage(actor, user, "delete")
    if user.role == ROLE_CROSS_TENANT_ADMIN and not actor.is_cross_tenant_admin:
        raise PermissionDenied(action="delete", resource="User", resource_id=user.id,
                               reason="privileged_role_required")
    if user.is_active:
        user.deactivate()
        db.session.commit()
        logger.info("User %s deactivated", user.id,
                    extra={"user_id": actor.user_id, "tenant_id": user.tenant_id,
                           "event_type": "user_deactivated"})
    return user.to_dict()


def ensure_user(tenant_id: int, email: str, *, full_name: str = "", phone_number: str | None = None) -> User:
    """Return the user for (tenant, email), creating it as a member on first sight.

    An existing user keeps its role; this path never grants privilege.
    """
    if not email:
        raise ValidationError("email is required", details={"email": "required"})
    if db.session.get(Tenant, tenant_id) is None:
        raise NotFoundError(resource="Tenant", resource_id=tenant_id)

    email = email.strip().lower()
    user = db.session.execute(
        select(User).where(User.tenant_id == tenant_id, User.email == email)
    ).scalar_one_or_none()
    if user is not None:
        return user

    user = User(
        tenant_id=tenant_id,
        email=email,
        full_name=full_name,
        phone_number=phone_number,
        role=ROLE_MEMBER,
    )
    db.session.add(user)
    db.session.commit()
    logger.info("User %s created on first authentication", user.id,
                extra={"user_id": user.id, "tenant_id": tenant_id, "event_type": "user_created"})
    return user
