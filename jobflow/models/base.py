"""
TenantModel — Abstract base class for tenant-scoped models.

All models that need tenant isolation inherit from TenantModel instead of
db.Model directly. This adds:
  - tenant_id FK column with index (NOT NULL)

Tenant ownership is fixed at creation: ``register_tenant_guard`` installs
a flush hook that refuses any UPDATE changing ``tenant_id`` on a row that
already has one.
"""

from sqlalchemy import event, inspect, select
from sqlalchemy.orm import Session

from jobflow.models import db


class TenantModel(db.Model):
    """Abstract base for tenant-scoped tables."""
    __abstract__ = True

    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )


def stored_value(connection, obj, key):
    """Value of column ``key`` as held by the database row of a persistent ``obj``.

    Expired attributes carry no previous value in their history, so the row
    is read back on ``connection``.
    """
    history = inspect(obj).attrs[key].history
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    mapper = inspect(obj).mapper
    pk = mapper.primary_key[0]
    return connection.execute(
        select(mapper.columns[key]).where(pk == inspect(obj).identity[0])
    ).scalar()


class TenantReassignmentError(Exception):
    """Raised when a flush would move an existing row to another tenant."""


def _reject_tenant_reassignment(session, flush_context, instances):
    for obj in session.dirty:
        if not hasattr(obj, "tenant_id") or getattr(obj, "_tenant_mutable", False):
            continue
        history = inspect(obj).attrs.tenant_id.history
        if not history.has_changes():
            continue
        old = stored_value(session.connection(), obj, "tenant_id")
        if old is not None and old != obj.tenant_id:
            raise TenantReassignmentError(
                f"{type(obj).__name__} id={getattr(obj, 'id', None)}: "
                f"tenant_id is immutable ({old} → {obj.tenant_id})"
            )


def register_tenant_guard():
    """Install the tenant immutability hook (idempotent)."""
    if not event.contains(Session, "before_flush", _reject_tenant_reassignment):
        event.listen(Session, "before_flush", _reject_tenant_reassignment)
