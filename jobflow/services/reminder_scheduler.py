"""
Reminder Scheduler — turns dated answers into future notifications.

    QuestionResponse (date) ──schedule_reminder──▶ Reminder(fire_at = date - offset)
    Reminder (due, unsent)  ──dispatch_due_reminders──▶ NotificationQueueEntry × channel

A reminder is created only when:
    - the question is date-typed,
    - reminders are enabled (per-response override, else question default),
    - the fire time is strictly in the future.
Anything else is a silent no-op. (job, question, response) is the
idempotency key, so scheduling twice yields one reminder.

Dispatch is at-least-once: queue entries and the ``sent`` flag are
committed together, so a failure midway leaves the reminder unsent and it
is picked up again on the next run.
"""

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from jobflow.models import db
from jobflow.models.auth import User
from jobflow.models.reminder import QUEUE_TEMPLATES, NotificationQueueEntry, Reminder
from jobflow.services.access_policy import scoped_query
from jobflow.services.tenant_directory import Principal
from jobflow.utils.helpers import as_utc, isoformat, parse_datetime, utcnow

logger = logging.getLogger(__name__)


def _existing(job_id, question_id, response_id):
    return db.session.execute(
        select(Reminder).where(
            Reminder.job_id == job_id,
            Reminder.question_id == question_id,
            Reminder.response_id == response_id,
        )
    ).scalar_one_or_none()


def _resolve_offset(question, response, offset_hours):
    for candidate in (offset_hours, response.reminder_offset_hours,
                      question.default_reminder_offset_hours):
        if candidate is not None:
            return int(candidate)
    return int(current_app.config.get("REMINDER_DEFAULT_OFFSET_HOURS", 24))


def schedule_reminder(job, question, response, offset_hours: int | None = None, now=None) -> Reminder | None:
    """Create the reminder for a dated response, or return None if it does not qualify."""
    if question.response_type != "date":
        return None

    enabled = response.reminder_enabled
    if enabled is None:
        enabled = question.reminder_enabled
    if not enabled:
        return None

    reminder_date = parse_datetime(response.response_value)
    if reminder_date is None:
        return None

    offset = _resolve_offset(question, response, offset_hours)
    fire_at = reminder_date - timedelta(hours=offset)
    now = now or utcnow()
    if fire_at <= now:
        logger.debug("Reminder for response %s would fire in the past; skipped", response.id,
                     extra={"job_id": job.id, "tenant_id": job.tenant_id})
        return None

    existing = _existing(job.id, question.id, response.id)
    if existing is not None:
        return existing

    reminder = Reminder(
        tenant_id=job.tenant_id,
        job_id=job.id,
        question_id=question.id,
        response_id=response.id,
        recipient_user_id=response.responded_by or job.created_by,
        created_by=response.responded_by,
        reminder_date=reminder_date,
        offset_hours=offset,
        fire_at=fire_at,
    )
    try:
        with db.session.begin_nested():
            db.session.add(reminder)
    except IntegrityError:
        existing = _existing(job.id, question.id, response.id)
        if existing is None:
            raise
        return existing

    response.reminder_scheduled_at = fire_at
    db.session.commit()
    logger.info("Reminder %s scheduled for %s", reminder.id, isoformat(fire_at),
                extra={"job_id": job.id, "tenant_id": job.tenant_id, "reminder_id": reminder.id,
                       "event_type": "reminder_scheduled"})
    return reminder


def due_reminders(now=None, limit: int | None = None, principal=None) -> list[Reminder]:
    """Unsent reminders whose fire time has passed, oldest first."""
    now = now or utcnow()
    stmt = (
        scoped_query(principal or Principal.system(), Reminder)
        .where(Reminder.sent.is_(False), Reminder.fire_at <= now)
        .order_by(Reminder.fire_at, Reminder.id)
    )
    if limit:
        stmt = stmt.limit(limit)
    return list(db.session.execute(stmt).scalars())


def _build_entries(reminder, recipient, now) -> list[NotificationQueueEntry]:
    job = reminder.job
    question = reminder.question
    max_retries = current_app.config.get("NOTIFICATION_MAX_RETRIES", 3)
    base = {
        "job_id": reminder.job_id,
        "job_title": job.title if job else None,
        "question_text": question.question_text if question else None,
        "reminder_date": isoformat(reminder.reminder_date),
    }

    channels = []
    if recipient.email:
        channels.append(("email", recipient.email,
                         dict(base, user_name=recipient.full_name or recipient.email)))
    if recipient.phone_number:
        channels.append(("sms", recipient.phone_number, dict(base)))

    return [
        NotificationQueueEntry(
            tenant_id=reminder.tenant_id,
            reminder_id=reminder.id,
            channel=channel,
            recipient=address,
            recipient_user_id=recipient.id,
            template=QUEUE_TEMPLATES[channel],
            payload=payload,
            max_retries=max_retries,
            scheduled_for=now,
        )
        for channel, address, payload in channels
    ]


def dispatch_due_reminders(now=None, limit: int | None = None) -> dict:
    """Fan due reminders out to the notification queue, then mark them sent."""
    now = now or utcnow()
    if limit is None:
        limit = current_app.config.get("REMINDER_BATCH_SIZE", 50)

    summary = {"processed": 0, "queued_entries": 0, "no_channel": 0, "errors": 0}
    reminder_ids = [r.id for r in due_reminders(now, limit)]

    for reminder_id in reminder_ids:
        reminder = db.session.get(Reminder, reminder_id)
        if reminder is None or reminder.sent:
            continue
        try:
            recipient = (
                db.session.get(User, reminder.recipient_user_id)
                if reminder.recipient_user_id else None
            )
            entries = _build_entries(reminder, recipient, now) if recipient and recipient.is_active else []
            for entry in entries:
                db.session.add(entry)
            db.session.flush()
            reminder.mark_sent(now)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            summary["errors"] += 1
            logger.exception("Could not enqueue reminder %s", reminder_id,
                             extra={"reminder_id": reminder_id})
            continue

        summary["processed"] += 1
        summary["queued_entries"] += len(entries)
        if not entries:
            summary["no_channel"] += 1
            logger.warning("Reminder %s has no deliverable channel; marked sent", reminder_id,
                           extra={"reminder_id": reminder_id, "event_type": "reminder_no_channel"})

    if summary["processed"] or summary["errors"]:
        logger.info("Reminder dispatch: %s", summary, extra={"event_type": "reminder_dispatch"})
    return summary


def reminder_stats(now=None) -> dict:
    now = now or utcnow()
    unsent = Reminder.sent.is_(False)
    sent, due, scheduled = db.session.execute(
        select(
            func.coalesce(func.sum(case((Reminder.sent.is_(True), 1), else_=0)), 0),
            func.coalesce(func.sum(case((unsent & (Reminder.fire_at <= now), 1), else_=0)), 0),
            func.coalesce(func.sum(case((unsent & (Reminder.fire_at > now), 1), else_=0)), 0),
        )
    ).one()
    stats = {"scheduled": scheduled, "due": due, "sent": sent}
    stats["next_fire_at"] = isoformat(as_utc(db.session.execute(
        select(func.min(Reminder.fire_at)).where(Reminder.sent.is_(False))
    ).scalar()))
    return stats
