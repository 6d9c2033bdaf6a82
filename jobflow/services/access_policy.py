"""
Access Policy Evaluator.

``authorize(principal, action, resource)`` is a pure function of an
already-resolved ``Principal`` and the resource's own tenant/ownership
columns. It never queries ``users`` and never re-enters itself.

Precedence:
    1. cross_tenant_admin                                   → allow
    2. create on a resource with created_by == principal    → allow (same tenant)
    3. same tenant and sufficient role                      → allow
         read                    member
         create/update/delete    manager   (Job, Stage, StageTransition, ProjectStage)
         create                  member    (QuestionResponse, Reminder)
         update                  member if own sub-resource, else manager
       shared system rows (tenant_id NULL): read by any tenant principal
    4. otherwise                                            → deny

This module is also the only place that turns a principal into a tenant
predicate for the store: ``scoped_query`` and ``load_for``.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import false, or_, select

from jobflow.core.exceptions import NotFoundError, PermissionDenied
from jobflow.models import db
from jobflow.models.auth import ROLE_MANAGER, ROLE_MEMBER, ROLE_RANK

logger = logging.getLogger(__name__)

ACTIONS = ("read", "create", "update", "delete")

# Resources that need a manager to create/update/delete.
MANAGED_KINDS = frozenset({"Job", "Stage", "StageTransition", "ProjectStage", "StageQuestion"})

# Sub-resources a member may create and update when it owns them.
OWNED_SUB_KINDS = frozenset({"QuestionResponse", "Reminder"})

# Models that may carry tenant_id NULL (shared system rows).
SHARED_KINDS = frozenset({"Stage", "StageTransition", "StageQuestion"})


@dataclass(frozen=True)
class ResourceRef:
    """What the policy needs to know about a resource; nothing more."""

    kind: str
    id: int | None
    tenant_id: int | None
    created_by: int | None = None

    @property
    def is_shared(self) -> bool:
        return self.tenant_id is None and self.kind in SHARED_KINDS

    @classmethod
    def of(cls, obj) -> "ResourceRef":
        if isinstance(obj, ResourceRef):
            return obj
        return cls(
            kind=type(obj).__name__,
            id=getattr(obj, "id", None),
            tenant_id=getattr(obj, "tenant_id", None),
            created_by=getattr(obj, "created_by", None),
        )


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str

    def __bool__(self):
        return self.allowed


def _role_at_least(principal, role) -> bool:
    return ROLE_RANK.get(principal.role, 0) >= ROLE_RANK[role]


def authorize(principal, action: str, resource) -> Decision:
    """Decide whether ``principal`` may perform ``action`` on ``resource``."""
    if action not in ACTIONS:
        return Decision(False, "unknown_action")

    ref = ResourceRef.of(resource)

    # 1. cross-tenant admin
    if principal.is_cross_tenant_admin:
        return Decision(True, "cross_tenant_admin")

    if not principal.resolved or principal.tenant_id is None:
        return Decision(False, "unresolved_principal")

    # Shared system rows: readable by any tenant principal, never mutable here.
    if ref.is_shared:
        if action == "read":
            return Decision(True, "shared_read")
        return Decision(False, "shared_resource_admin_only")

    if ref.tenant_id != principal.tenant_id:
        return Decision(False, "tenant_mismatch")

    owns = ref.created_by is not None and ref.created_by == principal.user_id

    # 2. author creating its own resource
    if action == "create" and owns:
        return Decision(True, "author")

    # 3. same tenant, sufficient role
    if action == "read":
        if _role_at_least(principal, ROLE_MEMBER):
            return Decision(True, "tenant_member")
        return Decision(False, "insufficient_role")

    if ref.kind in OWNED_SUB_KINDS:
        if action == "create" and _role_at_least(principal, ROLE_MEMBER):
            return Decision(True, "tenant_member")
        if action == "update" and owns and _role_at_least(principal, ROLE_MEMBER):
            return Decision(True, "owner")

    if _role_at_least(principal, ROLE_MANAGER) and ref.kind not in ("TransitionRecord",
                                                                    "StagePerformanceMetric"):
        return Decision(True, "tenant_manager")

    # 4. deny
    return Decision(False, "insufficient_role")


def require(principal, action: str, resource) -> None:
    """Raise ``PermissionDenied`` unless ``authorize`` allows the action."""
    decision = authorize(principal, action, resource)
    if decision:
        return
    ref = ResourceRef.of(resource)
    logger.info(
        "Denied %s on %s id=%s (%s)", action, ref.kind, ref.id, decision.reason,
        extra={"user_id": principal.user_id, "tenant_id": principal.tenant_id,
               "event_type": "access_denied"},
    )
    raise PermissionDenied(action=action, resource=ref.kind, resource_id=ref.id,
                           reason=decision.reason)


# ═════════════════════════════════════════════════════════════════════════════
# Store scoping
# ═════════════════════════════════════════════════════════════════════════════


def scoped_query(principal, model):
    """``select(model)`` carrying the principal's tenant as a hard predicate.

    Shared system rows are included for models that have them. An
    unresolved principal gets a statement that matches nothing.
    """
    stmt = select(model)
    if principal.is_cross_tenant_admin:
        return stmt
    if not principal.resolved or principal.tenant_id is None:
        return stmt.where(false())
    if model.__name__ in SHARED_KINDS:
        return stmt.where(or_(model.tenant_id == principal.tenant_id, model.tenant_id.is_(None)))
    return stmt.where(model.tenant_id == principal.tenant_id)


def load_for(principal, model, pk, action: str = "read"):
    """Load ``model`` by primary key and authorize ``action`` on it.

    A row in another tenant raises ``PermissionDenied``; a missing row
    raises ``NotFoundError``.
    """
    obj = db.session.get(model, pk)
    if obj is None:
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    require(principal, action, obj)
    return obj
