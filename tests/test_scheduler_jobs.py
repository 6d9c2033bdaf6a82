"""
Tests: polled background jobs and their run bookkeeping.

``SchedulerService.run_job`` pushes its own app context (and so its own
session); fixture data is committed before each run and the test session
is expired before asserting.
"""

from datetime import timedelta

from conftest import make_job, make_stage
from jobflow.models import db
from jobflow.models.reminder import NotificationQueueEntry, QuestionResponse, Reminder, StageQuestion
from jobflow.models.scheduling import ScheduledJob
from jobflow.services import scheduler_service
from jobflow.services.scheduler_service import SchedulerService
from jobflow.utils.helpers import utcnow


def _due_reminder(tenant, user):
    stage = make_stage(tenant, "Scheduled", 3)
    question = StageQuestion(stage_id=stage.id, tenant_id=tenant.id, question_text="Start date",
                             response_type="date", reminder_enabled=True)
    db.session.add(question)
    db.session.flush()
    job = make_job(tenant, stage)
    now = utcnow()
    response = QuestionResponse(tenant_id=tenant.id, job_id=job.id, question_id=question.id,
                                response_value=now.isoformat(), responded_by=user.id)
    db.session.add(response)
    db.session.flush()
    reminder = Reminder(tenant_id=tenant.id, job_id=job.id, question_id=question.id,
                        response_id=response.id, recipient_user_id=user.id,
                        reminder_date=now, offset_hours=24, fire_at=now - timedelta(hours=24))
    db.session.add(reminder)
    db.session.commit()
    return reminder


class TestRegistry:
    def test_all_jobs_registered(self):
        assert set(scheduler_service.get_registered_jobs()) == {
            "reminder_dispatch", "notification_delivery", "aggregate_refresh_retry",
        }

    def test_ensure_jobs_registered_is_idempotent(self):
        created = SchedulerService.ensure_jobs_registered()
        assert len(created) == 3
        assert SchedulerService.ensure_jobs_registered() == []
        row = ScheduledJob.query.filter_by(job_name="reminder_dispatch").one()
        assert row.schedule_config["minutes"] == 5

    def test_list_jobs(self):
        SchedulerService.ensure_jobs_registered()
        jobs = {j["job_name"]: j for j in SchedulerService.list_jobs()}
        assert jobs["notification_delivery"]["db_record"]["is_enabled"] is True


class TestRunJob:
    def test_reminder_dispatch_run_is_recorded(self, tenant_a, member_a):
        reminder = _due_reminder(tenant_a, member_a)

        outcome = SchedulerService.run_job("reminder_dispatch")

        assert outcome["status"] == "success"
        assert outcome["result"]["processed"] == 1
        db.session.expire_all()
        assert db.session.get(Reminder, reminder.id).sent is True
        assert db.session.query(NotificationQueueEntry).count() == 2
        row = ScheduledJob.query.filter_by(job_name="reminder_dispatch").one()
        assert row.run_count == 1
        assert row.last_run_status == "success"

    def test_notification_delivery_uses_configured_transport(self, app, tenant_a, member_a):
        _due_reminder(tenant_a, member_a)
        SchedulerService.run_job("reminder_dispatch")

        outcome = SchedulerService.run_job("notification_delivery")
        assert outcome["result"]["sent"] == 2
        assert len(app.extensions["delivery_transport"].delivered) >= 2

    def test_disabled_job_is_skipped(self):
        SchedulerService.ensure_jobs_registered()
        assert SchedulerService.toggle_job("aggregate_refresh_retry", False)["is_enabled"] is False

        outcome = SchedulerService.run_job("aggregate_refresh_retry")
        assert outcome["status"] == "skipped"

        SchedulerService.toggle_job("aggregate_refresh_retry", True)
        assert SchedulerService.run_job("aggregate_refresh_retry")["status"] == "success"

    def test_failure_is_recorded_not_raised(self, monkeypatch):
        def always_fails(app):
            raise RuntimeError("transport misconfigured")

        monkeypatch.setitem(scheduler_service._job_registry, "always_fails", always_fails)
        outcome = SchedulerService.run_job("always_fails")

        assert outcome["status"] == "failed"
        assert outcome["error"] == "transport misconfigured"
        db.session.expire_all()
        row = ScheduledJob.query.filter_by(job_name="always_fails").one()
        assert row.error_count == 1
        assert row.last_error == "transport misconfigured"

    def test_unknown_job(self):
        assert SchedulerService.run_job("nope")["status"] == "error"
        assert SchedulerService.toggle_job("nope", True) is None
