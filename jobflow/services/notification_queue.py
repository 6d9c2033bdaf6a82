"""
Notification Queue — the contract between the reminder scheduler and the
external delivery worker.

Delivery itself (SMTP, SMS gateway, push) is owned outside this service.
A worker:
    1. ``claim_pending``   — takes due pending entries (sets claimed_at)
    2. delivers each entry
    3. ``record_outcome``  — sent | retriable_failure | terminal_failure

Retry policy:
    retriable_failure increments ``retry_count``. Below ``max_retries`` the
    entry goes back to pending with an exponential back-off
    (NOTIFICATION_RETRY_BACKOFF_SECONDS × 2^(retry_count-1)); at
    ``max_retries`` it is marked failed and never retried again.
    terminal_failure fails the entry immediately.

``process_queue`` runs the whole loop in-process against a
``DeliveryTransport``. ``LoggingDeliveryTransport`` is the development
transport: it logs what it would send and reports success.
"""

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import func, or_, select

from jobflow.core.exceptions import DeliveryFailure, NotFoundError, ValidationError
from jobflow.models import db
from jobflow.models.reminder import NotificationQueueEntry
from jobflow.utils.helpers import isoformat, utcnow

logger = logging.getLogger(__name__)

SENT = "sent"
RETRIABLE_FAILURE = "retriable_failure"
TERMINAL_FAILURE = "terminal_failure"
OUTCOMES = (SENT, RETRIABLE_FAILURE, TERMINAL_FAILURE)


# ═══════════════════════════════════════════════════════════════════════════
#  Transports
# ═══════════════════════════════════════════════════════════════════════════


class DeliveryTransport:
    """Interface of the external delivery worker.

    ``deliver`` returns one of ``OUTCOMES`` or raises ``DeliveryFailure``.
    """

    def deliver(self, entry: NotificationQueueEntry) -> str:
        raise NotImplementedError


class LoggingDeliveryTransport(DeliveryTransport):
    """Log-only transport used when no provider is configured."""

    def __init__(self):
        self.delivered: list[int] = []

    def deliver(self, entry: NotificationQueueEntry) -> str:
        logger.info(
            "[LOG-ONLY] %s via %s to %s (template=%s)",
            entry.id, entry.channel, entry.recipient, entry.template,
            extra={"entry_id": entry.id, "tenant_id": entry.tenant_id},
        )
        self.delivered.append(entry.id)
        return SENT


# ═══════════════════════════════════════════════════════════════════════════
#  Worker contract
# ═══════════════════════════════════════════════════════════════════════════


def claim_pending(limit: int = 50, now=None) -> list[NotificationQueueEntry]:
    """Claim due pending entries. Stale claims (worker died) are reclaimed."""
    now = now or utcnow()
    timeout = current_app.config.get("NOTIFICATION_CLAIM_TIMEOUT_SECONDS", 600)
    stale_before = now - timedelta(seconds=timeout)

    entries = db.session.execute(
        select(NotificationQueueEntry)
        .where(
            NotificationQueueEntry.status == "pending",
            NotificationQueueEntry.scheduled_for <= now,
            or_(NotificationQueueEntry.claimed_at.is_(None),
                NotificationQueueEntry.claimed_at < stale_before),
        )
        .order_by(NotificationQueueEntry.scheduled_for, NotificationQueueEntry.id)
        .limit(limit)
        .with_for_update(skip_locked=True)
    ).scalars().all()

    for entry in entries:
        entry.claimed_at = now
    db.session.commit()
    return list(entries)


def _get_entry(entry_id) -> NotificationQueueEntry:
    entry = db.session.get(NotificationQueueEntry, entry_id)
    if entry is None:
        raise NotFoundError(resource="NotificationQueueEntry", resource_id=entry_id)
    return entry


def record_outcome(entry_id: int, outcome: str, error: str | None = None, now=None) -> NotificationQueueEntry:
    """Apply a delivery outcome to an entry."""
    if outcome not in OUTCOMES:
        raise ValidationError(f"Unknown outcome '{outcome}'", details={"outcome": list(OUTCOMES)})

    now = now or utcnow()
    entry = _get_entry(entry_id)
    if entry.status != "pending":
        raise ValidationError(f"Entry {entry_id} is already {entry.status}",
                              details={"status": entry.status})

    entry.claimed_at = None
    if outcome == SENT:
        entry.status = "sent"
        entry.sent_at = now
        entry.last_error = None
    elif outcome == TERMINAL_FAILURE:
        entry.status = "failed"
        entry.last_error = error
    else:
        entry.retry_count += 1
        entry.last_error = error
        if entry.retry_count >= entry.max_retries:
            entry.status = "failed"
        else:
            backoff = current_app.config.get("NOTIFICATION_RETRY_BACKOFF_SECONDS", 300)
            entry.scheduled_for = now + timedelta(seconds=backoff * 2 ** (entry.retry_count - 1))
    db.session.commit()

    extra = {"entry_id": entry.id, "tenant_id": entry.tenant_id, "event_type": "delivery_outcome"}
    if entry.status == "failed":
        logger.error("Notification %s failed (%s, retries=%d): %s",
                     entry.id, outcome, entry.retry_count, error, extra=extra)
    elif outcome == RETRIABLE_FAILURE:
        logger.warning("Notification %s retry %d/%d at %s: %s", entry.id, entry.retry_count,
                       entry.max_retries, isoformat(entry.scheduled_for), error, extra=extra)
    return entry


def cancel_entry(entry_id: int, reason: str | None = None) -> NotificationQueueEntry:
    entry = _get_entry(entry_id)
    if entry.status != "pending":
        raise ValidationError(f"Entry {entry_id} is already {entry.status}",
                              details={"status": entry.status})
    entry.status = "cancelled"
    entry.claimed_at = None
    entry.last_error = reason
    db.session.commit()
    logger.info("Notification %s cancelled", entry.id,
                extra={"entry_id": entry.id, "tenant_id": entry.tenant_id})
    return entry


def process_queue(transport: DeliveryTransport | None = None, limit: int = 50, now=None) -> dict:
    """Claim due entries and drive them through ``transport``."""
    transport = transport or LoggingDeliveryTransport()
    summary = {"claimed": 0, "sent": 0, "retried": 0, "failed": 0}

    for entry in claim_pending(limit, now):
        summary["claimed"] += 1
        error = None
        try:
            outcome = transport.deliver(entry)
        except DeliveryFailure as exc:
            outcome = RETRIABLE_FAILURE if exc.retriable else TERMINAL_FAILURE
            error = str(exc)
        except Exception as exc:
            logger.exception("Transport raised while delivering %s", entry.id,
                             extra={"entry_id": entry.id})
            outcome = RETRIABLE_FAILURE
            error = str(exc)
        if outcome not in OUTCOMES:
            outcome, error = RETRIABLE_FAILURE, f"transport returned {outcome!r}"

        updated = record_outcome(entry.id, outcome, error, now)
        if updated.status == "sent":
            summary["sent"] += 1
        elif updated.status == "failed":
            summary["failed"] += 1
        else:
            summary["retried"] += 1
    return summary


def queue_stats() -> dict:
    rows = db.session.execute(
        select(NotificationQueueEntry.status, func.count(NotificationQueueEntry.id))
        .group_by(NotificationQueueEntry.status)
    ).all()
    stats = {"pending": 0, "sent": 0, "failed": 0, "cancelled": 0}
    stats.update({status: count for status, count in rows})
    oldest = db.session.execute(
        select(func.min(NotificationQueueEntry.scheduled_for))
        .where(NotificationQueueEntry.status == "pending")
    ).scalar()
    stats["oldest_pending_at"] = isoformat(oldest)
    return stats
