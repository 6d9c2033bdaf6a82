"""
Identity models — tenants and users.

A user's tenant and role are the single source of truth for every
authorization decision. Users are never deleted; ``deactivate()`` flips
``is_active`` and the Tenant Directory then resolves them as unknown.
"""

from datetime import datetime, timezone

from jobflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ROLE_MEMBER = "member"
ROLE_MANAGER = "manager"
ROLE_CROSS_TENANT_ADMIN = "cross_tenant_admin"

USER_ROLES = {ROLE_MEMBER, ROLE_MANAGER, ROLE_CROSS_TENANT_ADMIN}

# Higher rank = more privilege within a tenant.
ROLE_RANK = {
    ROLE_MEMBER: 1,
    ROLE_MANAGER: 2,
    ROLE_CROSS_TENANT_ADMIN: 3,
}


# ═══════════════════════════════════════════════════════════════
# 1. TENANTS
# ═══════════════════════════════════════════════════════════════
class Tenant(db.Model):
    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    settings = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    users = db.relationship("User", back_populates="tenant", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "is_active": self.is_active,
            "settings": self.settings or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Tenant {self.id}: {self.slug}>"


# ═══════════════════════════════════════════════════════════════
# 2. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    # Tenant moves are allowed here, but only through the Tenant Directory.
    _tenant_mutable = True

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=True,
        comment="NULL only for cross_tenant_admin",
    )
    email = db.Column(db.String(200), nullable=True)
    phone_number = db.Column(db.String(30), nullable=True)
    full_name = db.Column(db.String(200))
    role = db.Column(db.String(30), nullable=False, default=ROLE_MEMBER)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    deactivated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        db.Index("ix_users_tenant_id", "tenant_id"),
        db.CheckConstraint(
            "tenant_id IS NOT NULL OR role = 'cross_tenant_admin'",
            name="ck_users_tenant_required",
        ),
    )

    tenant = db.relationship("Tenant", back_populates="users")

    def deactivate(self):
        self.is_active = False
        self.deactivated_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "phone_number": self.phone_number,
            "full_name": self.full_name,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.role}@{self.tenant_id}>"
