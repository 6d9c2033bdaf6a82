"""
Workflow domain models — stages, stage graph edges, jobs, project stages.

Models:
    - Stage:            ordered workflow step, per tenant (or shared system default)
    - StageTransition:  directed edge of a tenant's stage graph
    - ProjectStage:     parent grouping whose completion is derived from its jobs
    - Job:              the tracked unit of work; only the transition engine moves it

Architecture:
    Tenant ──1:N──▶ Stage ◀──from/to── StageTransition
    Tenant ──1:N──▶ Job ──N:1──▶ Stage (current_stage)
    ProjectStage ──1:N──▶ Job

Lifecycle (coarse job status):
    planning → active → completed
    active ⇄ on_hold ;  planning | active | on_hold → cancelled
    (the authoritative edges live in the workflow configuration file)
"""

from datetime import datetime, timezone

from jobflow.models import db
from jobflow.models.base import TenantModel


# ── Constants ────────────────────────────────────────────────────────────────

JOB_STATUSES = {"planning", "active", "on_hold", "completed", "cancelled"}

STAGE_TYPES = {"standard", "milestone", "approval"}

ENTITY_TYPES = {"job", "project"}


class Stage(db.Model):
    """
    A named, ordered step of a workflow.

    ``tenant_id`` NULL marks a shared system stage used by every tenant that
    has not authored its own graph for the entity type.
    """

    __tablename__ = "job_stages"
    __table_args__ = (
        db.UniqueConstraint(
            "tenant_id", "entity_type", "sequence_order",
            name="uq_stage_tenant_type_sequence",
        ),
        db.Index("ix_job_stages_tenant_type", "tenant_id", "entity_type"),
        db.CheckConstraint("sequence_order > 0", name="ck_stage_sequence_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=True, index=True,
        comment="NULL = shared system default stage",
    )
    entity_type = db.Column(db.String(30), nullable=False, default="job")
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, default="")
    color = db.Column(db.String(7), default="#64748b")
    sequence_order = db.Column(db.Integer, nullable=False)
    maps_to_status = db.Column(db.String(20), nullable=False, default="active")
    stage_type = db.Column(db.String(20), nullable=False, default="standard")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    @property
    def is_shared(self) -> bool:
        return self.tenant_id is None

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "sequence_order": self.sequence_order,
            "maps_to_status": self.maps_to_status,
            "stage_type": self.stage_type,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Stage {self.id}: {self.name} (seq={self.sequence_order}, tenant={self.tenant_id})>"


class StageTransition(db.Model):
    """
    Directed edge ``from_stage → to_stage`` of a stage graph.

    ``from_stage_id`` NULL is an entry edge (allowed first stage for a job
    that has none yet). ``trigger_response`` lets a question response move
    the job automatically.
    """

    __tablename__ = "stage_transitions"
    __table_args__ = (
        db.UniqueConstraint(
            "from_stage_id", "to_stage_id", "trigger_response",
            name="uq_stage_transition_edge",
        ),
        db.CheckConstraint(
            "from_stage_id IS NULL OR from_stage_id != to_stage_id",
            name="ck_stage_transition_no_self",
        ),
        db.Index("ix_stage_transitions_tenant_type", "tenant_id", "entity_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    entity_type = db.Column(db.String(30), nullable=False, default="job")
    from_stage_id = db.Column(
        db.Integer, db.ForeignKey("job_stages.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    to_stage_id = db.Column(
        db.Integer, db.ForeignKey("job_stages.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    trigger_response = db.Column(db.String(200), nullable=True)
    is_automatic = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    from_stage = db.relationship("Stage", foreign_keys=[from_stage_id])
    to_stage = db.relationship("Stage", foreign_keys=[to_stage_id])

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "from_stage_id": self.from_stage_id,
            "to_stage_id": self.to_stage_id,
            "trigger_response": self.trigger_response,
            "is_automatic": self.is_automatic,
        }

    def __repr__(self):
        return f"<StageTransition {self.from_stage_id} → {self.to_stage_id}>"


class ProjectStage(TenantModel):
    """Parent grouping of jobs; ``completion_percentage`` is derived."""

    __tablename__ = "project_stages"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    completion_percentage = db.Column(db.Integer, nullable=False, default=0)
    completion_refreshed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "completion_percentage": self.completion_percentage,
            "completion_refreshed_at": (
                self.completion_refreshed_at.isoformat() if self.completion_refreshed_at else None
            ),
        }


class Job(TenantModel):
    """
    A tracked job.

    ``version`` is an optimistic lock: every UPDATE is issued as
    ``... WHERE id = :id AND version = :old`` so two transitions racing on
    the same job cannot both commit.
    """

    __tablename__ = "jobs"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    job_type = db.Column(db.String(50), nullable=False, default="standard")
    entity_type = db.Column(db.String(30), nullable=False, default="job")
    status = db.Column(db.String(20), nullable=False, default="planning")
    current_stage_id = db.Column(
        db.Integer, db.ForeignKey("job_stages.id", ondelete="RESTRICT"), nullable=True, index=True,
    )
    stage_entered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    project_stage_id = db.Column(
        db.Integer, db.ForeignKey("project_stages.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    __mapper_args__ = {"version_id_col": version}

    current_stage = db.relationship("Stage", foreign_keys=[current_stage_id])
    project_stage = db.relationship("ProjectStage", foreign_keys=[project_stage_id])

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "title": self.title,
            "job_type": self.job_type,
            "entity_type": self.entity_type,
            "status": self.status,
            "current_stage_id": self.current_stage_id,
            "current_stage": self.current_stage.name if self.current_stage else None,
            "stage_entered_at": self.stage_entered_at.isoformat() if self.stage_entered_at else None,
            "project_stage_id": self.project_stage_id,
            "created_by": self.created_by,
            "version": self.version,
        }

    def __repr__(self):
        return f"<Job {self.id}: {self.status} stage={self.current_stage_id} v{self.version}>"
