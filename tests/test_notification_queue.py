"""
Tests: Notification Queue — worker contract and retry policy.
"""

from datetime import timedelta

import pytest

from jobflow.core.exceptions import DeliveryFailure, NotFoundError, ValidationError
from jobflow.models import db
from jobflow.models.reminder import NotificationQueueEntry
from jobflow.services import notification_queue
from jobflow.services.notification_queue import (
    RETRIABLE_FAILURE,
    SENT,
    TERMINAL_FAILURE,
    DeliveryTransport,
    LoggingDeliveryTransport,
)
from jobflow.utils.helpers import as_utc, utcnow


def _entry(tenant, *, channel="email", recipient="member@a.test", scheduled_for=None, claimed_at=None):
    entry = NotificationQueueEntry(
        tenant_id=tenant.id,
        channel=channel,
        recipient=recipient,
        template=f"date_reminder_{channel}",
        payload={"job_title": "Kitchen refit"},
        scheduled_for=scheduled_for or utcnow(),
        claimed_at=claimed_at,
    )
    db.session.add(entry)
    db.session.commit()
    return entry


class _FailingTransport(DeliveryTransport):
    def __init__(self, retriable=True):
        self.retriable = retriable

    def deliver(self, entry):
        raise DeliveryFailure("gateway timeout", retriable=self.retriable)


class TestRecordOutcome:
    def test_sent(self, tenant_a):
        entry = _entry(tenant_a)
        updated = notification_queue.record_outcome(entry.id, SENT)
        assert updated.status == "sent"
        assert updated.sent_at is not None

    def test_retriable_failure_backs_off_then_fails(self, tenant_a):
        entry = _entry(tenant_a)
        now = utcnow()

        first = notification_queue.record_outcome(entry.id, RETRIABLE_FAILURE, "timeout", now=now)
        assert first.status == "pending"
        assert first.retry_count == 1
        assert as_utc(first.scheduled_for) == now + timedelta(seconds=300)

        second = notification_queue.record_outcome(entry.id, RETRIABLE_FAILURE, "timeout", now=now)
        assert second.retry_count == 2
        assert as_utc(second.scheduled_for) == now + timedelta(seconds=600)

        third = notification_queue.record_outcome(entry.id, RETRIABLE_FAILURE, "timeout", now=now)
        assert third.status == "failed"
        assert third.retry_count == 3
        assert third.last_error == "timeout"

    def test_terminal_failure_fails_immediately(self, tenant_a):
        entry = _entry(tenant_a)
        updated = notification_queue.record_outcome(entry.id, TERMINAL_FAILURE, "bad address")
        assert updated.status == "failed"
        assert updated.retry_count == 0

    def test_finished_entry_cannot_change(self, tenant_a):
        entry = _entry(tenant_a)
        notification_queue.record_outcome(entry.id, SENT)
        with pytest.raises(ValidationError):
            notification_queue.record_outcome(entry.id, RETRIABLE_FAILURE)

    def test_unknown_outcome_and_entry(self, tenant_a):
        entry = _entry(tenant_a)
        with pytest.raises(ValidationError):
            notification_queue.record_outcome(entry.id, "bounced")
        with pytest.raises(NotFoundError):
            notification_queue.record_outcome(404404, SENT)


class TestClaimAndProcess:
    def test_claim_skips_future_and_fresh_claims(self, tenant_a):
        now = utcnow()
        due = _entry(tenant_a, scheduled_for=now)
        _entry(tenant_a, scheduled_for=now + timedelta(hours=1))
        _entry(tenant_a, scheduled_for=now, claimed_at=now - timedelta(seconds=30))
        stale = _entry(tenant_a, scheduled_for=now, claimed_at=now - timedelta(hours=1))

        claimed = notification_queue.claim_pending(now=now)
        assert sorted(e.id for e in claimed) == sorted([due.id, stale.id])
        assert all(as_utc(e.claimed_at) == now for e in claimed)

        assert notification_queue.claim_pending(now=now) == []

    def test_process_queue_with_logging_transport(self, tenant_a):
        _entry(tenant_a)
        _entry(tenant_a, channel="sms", recipient="+15550001")
        transport = LoggingDeliveryTransport()

        summary = notification_queue.process_queue(transport)
        assert summary == {"claimed": 2, "sent": 2, "retried": 0, "failed": 0}
        assert len(transport.delivered) == 2

    def test_process_queue_with_failing_transport(self, tenant_a):
        retried = _entry(tenant_a)
        summary = notification_queue.process_queue(_FailingTransport())
        assert summary == {"claimed": 1, "sent": 0, "retried": 1, "failed": 0}
        db.session.expire_all()
        assert db.session.get(NotificationQueueEntry, retried.id).last_error == "gateway timeout"

        terminal = _entry(tenant_a)
        summary = notification_queue.process_queue(_FailingTransport(retriable=False))
        assert summary["failed"] == 1
        assert db.session.get(NotificationQueueEntry, terminal.id).status == "failed"


class TestCancelAndStats:
    def test_cancel_pending_entry(self, tenant_a):
        entry = _entry(tenant_a)
        cancelled = notification_queue.cancel_entry(entry.id, "job closed")
        assert cancelled.status == "cancelled"
        assert cancelled.last_error == "job closed"
        with pytest.raises(ValidationError):
            notification_queue.cancel_entry(entry.id)

    def test_queue_stats(self, tenant_a):
        sent = _entry(tenant_a)
        _entry(tenant_a)
        notification_queue.record_outcome(sent.id, SENT)

        stats = notification_queue.queue_stats()
        assert stats["pending"] == 1
        assert stats["sent"] == 1
        assert stats["failed"] == 0
        assert stats["oldest_pending_at"] is not None
