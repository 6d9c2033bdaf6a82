"""
Reminder models — stage questions, responses, reminders and the
notification queue consumed by the external delivery worker.

    StageQuestion ──1:N──▶ QuestionResponse ──1:1──▶ Reminder ──1:N──▶ NotificationQueueEntry

A Reminder is created at most once per (job, question, response) and is
only ever mutated to flip ``sent``.
"""

from datetime import datetime, timezone

from jobflow.models import db
from jobflow.models.base import TenantModel

RESPONSE_TYPES = {"yes_no", "text", "date", "number", "file_upload", "multiple_choice"}

QUEUE_TEMPLATES = {
    "email": "date_reminder_email",
    "sms": "date_reminder_sms",
    "push": "date_reminder_push",
}


class StageQuestion(db.Model):
    """A question asked while a job sits in a stage."""

    __tablename__ = "stage_questions"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"),
                          nullable=True, index=True, comment="NULL = shared system question")
    stage_id = db.Column(db.Integer, db.ForeignKey("job_stages.id", ondelete="CASCADE"),
                         nullable=False, index=True)
    question_text = db.Column(db.Text, nullable=False)
    response_type = db.Column(db.String(20), nullable=False, default="text")
    choices = db.Column(db.JSON, nullable=True, comment="Allowed values for multiple_choice")
    sequence_order = db.Column(db.Integer, nullable=False, default=1)
    is_required = db.Column(db.Boolean, nullable=False, default=False)
    reminder_enabled = db.Column(db.Boolean, nullable=False, default=False)
    default_reminder_offset_hours = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    stage = db.relationship("Stage")

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "stage_id": self.stage_id,
            "question_text": self.question_text,
            "response_type": self.response_type,
            "choices": self.choices,
            "sequence_order": self.sequence_order,
            "is_required": self.is_required,
            "reminder_enabled": self.reminder_enabled,
            "default_reminder_offset_hours": self.default_reminder_offset_hours,
        }


class QuestionResponse(TenantModel):
    __tablename__ = "question_responses"

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    question_id = db.Column(db.Integer, db.ForeignKey("stage_questions.id", ondelete="CASCADE"),
                            nullable=False)
    response_value = db.Column(db.Text, nullable=False)
    responded_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reminder_enabled = db.Column(db.Boolean, nullable=True, comment="NULL = use question default")
    reminder_offset_hours = db.Column(db.Integer, nullable=True)
    reminder_scheduled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    question = db.relationship("StageQuestion")

    def to_dict(self):
        return {
            "id": self.id,
            "job_id": self.job_id,
            "question_id": self.question_id,
            "response_value": self.response_value,
            "responded_by": self.responded_by,
            "reminder_enabled": self.reminder_enabled,
            "reminder_offset_hours": self.reminder_offset_hours,
            "reminder_scheduled_at": (
                self.reminder_scheduled_at.isoformat() if self.reminder_scheduled_at else None
            ),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Reminder(TenantModel):
    __tablename__ = "question_reminders"
    __table_args__ = (
        db.UniqueConstraint("job_id", "question_id", "response_id", name="uq_reminder_trigger"),
        db.Index("ix_question_reminders_due", "sent", "fire_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    question_id = db.Column(db.Integer, db.ForeignKey("stage_questions.id", ondelete="CASCADE"),
                            nullable=False)
    response_id = db.Column(db.Integer, db.ForeignKey("question_responses.id", ondelete="CASCADE"),
                            nullable=False)
    recipient_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                                  nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reminder_date = db.Column(db.DateTime(timezone=True), nullable=False)
    offset_hours = db.Column(db.Integer, nullable=False)
    fire_at = db.Column(db.DateTime(timezone=True), nullable=False)
    sent = db.Column(db.Boolean, nullable=False, default=False)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    job = db.relationship("Job")
    question = db.relationship("StageQuestion")
    recipient = db.relationship("User", foreign_keys=[recipient_user_id])

    def mark_sent(self, when=None):
        self.sent = True
        self.sent_at = when or datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "job_id": self.job_id,
            "question_id": self.question_id,
            "response_id": self.response_id,
            "recipient_user_id": self.recipient_user_id,
            "reminder_date": self.reminder_date.isoformat() if self.reminder_date else None,
            "offset_hours": self.offset_hours,
            "fire_at": self.fire_at.isoformat() if self.fire_at else None,
            "sent": self.sent,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }


class NotificationQueueEntry(TenantModel):
    """
    One message for the external delivery worker.

    Lifecycle:
        pending ──claim──▶ (claimed_at set) ──sent──▶ sent
                                           ──retriable──▶ pending (retry_count+1, scheduled_for+backoff)
                                           ──terminal / retries exhausted──▶ failed
        pending ──cancel──▶ cancelled
    """

    __tablename__ = "notification_queue"
    __table_args__ = (
        db.Index("ix_notification_queue_pending", "status", "scheduled_for"),
    )

    id = db.Column(db.Integer, primary_key=True)
    reminder_id = db.Column(db.Integer, db.ForeignKey("question_reminders.id", ondelete="CASCADE"),
                            nullable=True, index=True)
    channel = db.Column(db.String(10), nullable=False)
    recipient = db.Column(db.String(200), nullable=False)
    recipient_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"),
                                  nullable=True)
    template = db.Column(db.String(100), nullable=False)
    payload = db.Column(db.JSON, default=dict)
    status = db.Column(db.String(20), nullable=False, default="pending")
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    max_retries = db.Column(db.Integer, nullable=False, default=3)
    scheduled_for = db.Column(db.DateTime(timezone=True), nullable=False,
                              default=lambda: datetime.now(timezone.utc))
    claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "reminder_id": self.reminder_id,
            "channel": self.channel,
            "recipient": self.recipient,
            "template": self.template,
            "payload": self.payload or {},
            "status": self.status,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "scheduled_for": self.scheduled_for.isoformat() if self.scheduled_for else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "last_error": self.last_error,
        }

    def __repr__(self):
        return f"<NotificationQueueEntry {self.id}: {self.channel} {self.status} r{self.retry_count}>"
