"""
History models — transition records, stage performance metrics and the
aggregate refresh retry ledger.

TransitionRecord rows are append-only. StagePerformanceMetric rows are
written open (``exited_at`` NULL) and closed exactly once; after that both
are frozen by the listeners in ``jobflow.models.immutability``.
"""

from datetime import datetime, timezone

from jobflow.models import db
from jobflow.models.base import TenantModel

TRIGGER_SOURCES = {
    "manual",
    "question_response",
    "admin_override",
    "system_auto",
    "backfill",
}

INITIAL_BACKFILL_MARKER = "initial_backfill"


class TransitionRecord(TenantModel):
    """One validated stage/status change of a job."""

    __tablename__ = "job_transition_records"
    __table_args__ = (
        db.UniqueConstraint("job_id", "sequence", name="uq_transition_job_sequence"),
        db.UniqueConstraint("job_id", "synthetic_marker", name="uq_transition_job_marker"),
        db.Index("ix_transition_records_job_created", "job_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False, comment="Per-job, strictly increasing")
    from_stage_id = db.Column(db.Integer, db.ForeignKey("job_stages.id", ondelete="SET NULL"), nullable=True)
    to_stage_id = db.Column(db.Integer, db.ForeignKey("job_stages.id", ondelete="SET NULL"), nullable=True)
    from_status = db.Column(db.String(20), nullable=True)
    to_status = db.Column(db.String(20), nullable=False)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    trigger_source = db.Column(db.String(30), nullable=False, default="manual")
    notes = db.Column(db.Text, default="")
    synthetic_marker = db.Column(db.String(50), nullable=True,
                                 comment="Set only on records manufactured by a backfill")
    response_id = db.Column(db.Integer, db.ForeignKey("question_responses.id", ondelete="SET NULL"),
                            nullable=True)
    question_id = db.Column(db.Integer, db.ForeignKey("stage_questions.id", ondelete="SET NULL"),
                            nullable=True)
    duration_in_previous_stage_hours = db.Column(db.Float, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))

    from_stage = db.relationship("Stage", foreign_keys=[from_stage_id])
    to_stage = db.relationship("Stage", foreign_keys=[to_stage_id])

    def to_dict(self):
        return {
            "id": self.id,
            "job_id": self.job_id,
            "sequence": self.sequence,
            "from_stage_id": self.from_stage_id,
            "from_stage": self.from_stage.name if self.from_stage else None,
            "to_stage_id": self.to_stage_id,
            "to_stage": self.to_stage.name if self.to_stage else None,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_user_id": self.actor_user_id,
            "trigger_source": self.trigger_source,
            "notes": self.notes,
            "synthetic_marker": self.synthetic_marker,
            "response_id": self.response_id,
            "question_id": self.question_id,
            "duration_in_previous_stage_hours": self.duration_in_previous_stage_hours,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<TransitionRecord job={self.job_id} #{self.sequence} {self.from_status}→{self.to_status}>"


class StagePerformanceMetric(TenantModel):
    """Time a job spent in one stage. Open while ``exited_at`` is NULL."""

    __tablename__ = "stage_performance_metrics"
    __table_args__ = (
        db.Index("ix_stage_metrics_job_open", "job_id", "exited_at"),
        db.Index("ix_stage_metrics_tenant_stage", "tenant_id", "stage_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    stage_id = db.Column(db.Integer, db.ForeignKey("job_stages.id", ondelete="CASCADE"), nullable=False)
    entered_at = db.Column(db.DateTime(timezone=True), nullable=False)
    exited_at = db.Column(db.DateTime(timezone=True), nullable=True)
    duration_hours = db.Column(db.Float, nullable=True)

    @property
    def is_open(self) -> bool:
        return self.exited_at is None

    def to_dict(self):
        return {
            "id": self.id,
            "job_id": self.job_id,
            "stage_id": self.stage_id,
            "entered_at": self.entered_at.isoformat() if self.entered_at else None,
            "exited_at": self.exited_at.isoformat() if self.exited_at else None,
            "duration_hours": self.duration_hours,
        }


class AggregateRefreshTask(db.Model):
    """Pending retry of a derived aggregate whose post-commit refresh failed."""

    __tablename__ = "aggregate_refresh_tasks"
    __table_args__ = (
        db.Index("ix_aggregate_refresh_pending", "status", "next_attempt_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    aggregate = db.Column(db.String(50), nullable=False, comment="e.g. project_stage_completion")
    key = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending",
                       comment="pending, done, abandoned")
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    next_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "aggregate": self.aggregate,
            "key": self.key,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }
