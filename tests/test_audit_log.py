"""
Tests: Audit & Metrics Log — append-only history, timelines and rollups.
"""

from datetime import timedelta

import pytest

from conftest import make_edge, make_job, make_stage, make_user, principal_for
from jobflow.core.exceptions import ImmutableRecordError, PermissionDenied
from jobflow.models import db
from jobflow.models.history import StagePerformanceMetric, TransitionRecord
from jobflow.models.reminder import QuestionResponse, Reminder, StageQuestion
from jobflow.services import audit_log
from jobflow.services.transition_engine import StageTarget, StatusTarget, apply_transition
from jobflow.utils.helpers import as_utc, utcnow


class TestRecord:
    def test_sequence_increments_per_job(self, tenant_a):
        job = make_job(tenant_a)
        other = make_job(tenant_a, title="Other")

        audit_log.record(job, to_status="planning")
        audit_log.record(job, from_status="planning", to_status="active")
        audit_log.record(other, to_status="planning")
        db.session.commit()

        seqs = [r.sequence for r in db.session.query(TransitionRecord)
                .filter_by(job_id=job.id).order_by(TransitionRecord.id)]
        assert seqs == [1, 2]
        assert db.session.query(TransitionRecord).filter_by(job_id=other.id).one().sequence == 1

    def test_timestamp_never_precedes_previous_record(self, tenant_a):
        job = make_job(tenant_a)
        now = utcnow()
        audit_log.record(job, to_status="planning", at=now)
        audit_log.record(job, to_status="active", at=now - timedelta(minutes=5))
        db.session.commit()

        first, second = db.session.query(TransitionRecord).order_by(TransitionRecord.sequence).all()
        assert as_utc(second.created_at) == as_utc(first.created_at)

    def test_unknown_trigger_source_rejected(self, tenant_a):
        job = make_job(tenant_a)
        with pytest.raises(ValueError):
            audit_log.record(job, to_status="active", trigger_source="cron")


class TestHistoryReads:
    def _walk(self, lead_graph, job, manager):
        principal = principal_for(manager)
        start = utcnow() - timedelta(hours=10)
        apply_transition(principal, job.id, StageTarget(lead_graph["active"].id), now=start)
        apply_transition(principal, job.id, StatusTarget("on_hold"), now=start + timedelta(hours=2))
        apply_transition(principal, job.id, StatusTarget("active"), now=start + timedelta(hours=3))

    def test_list_history_paginates_in_order(self, lead_graph, tenant_a, manager_a):
        job = make_job(tenant_a, lead_graph["lead"], hours_in_stage=12)
        self._walk(lead_graph, job, manager_a)

        page = audit_log.list_history(principal_for(manager_a), job.id, limit=2, offset=1)
        assert page["total"] == 3
        assert [r["sequence"] for r in page["items"]] == [2, 3]
        assert page["items"][0]["to_status"] == "on_hold"

    def test_history_denied_to_other_tenant(self, lead_graph, tenant_a, member_b):
        job = make_job(tenant_a, lead_graph["lead"])
        with pytest.raises(PermissionDenied):
            audit_log.list_history(principal_for(member_b), job.id)

    def test_status_timeline_durations(self, lead_graph, tenant_a, manager_a):
        job = make_job(tenant_a, lead_graph["lead"], hours_in_stage=12)
        self._walk(lead_graph, job, manager_a)

        timeline = audit_log.status_timeline(principal_for(manager_a), job.id)
        assert [t["status"] for t in timeline] == ["active", "on_hold", "active"]
        assert timeline[0]["duration_hours"] == pytest.approx(2.0)
        assert timeline[1]["duration_hours"] == pytest.approx(1.0)
        assert timeline[2]["is_current"] is True
        assert timeline[2]["ended_at"] is None
        assert timeline[0]["stage"] == "Active"


class TestStageRollup:
    def test_rollup_counts_closed_metrics_only(self, lead_graph, tenant_a, manager_a):
        principal = principal_for(manager_a)
        first = make_job(tenant_a, lead_graph["lead"], hours_in_stage=4)
        second = make_job(tenant_a, lead_graph["lead"], hours_in_stage=2)
        make_job(tenant_a, lead_graph["lead"], hours_in_stage=30)

        apply_transition(principal, first.id, StageTarget(lead_graph["active"].id))
        apply_transition(principal, second.id, StageTarget(lead_graph["active"].id))

        rollup = audit_log.stage_rollup(principal)
        assert len(rollup) == 1
        lead = rollup[0]
        assert lead["stage"] == "Lead"
        assert lead["job_count"] == 2
        assert lead["avg_duration_hours"] == pytest.approx(3.0, abs=0.05)

    def test_rollup_is_tenant_isolated(self, lead_graph, tenant_a, tenant_b, manager_a):
        apply_transition(principal_for(manager_a),
                         make_job(tenant_a, lead_graph["lead"], hours_in_stage=1).id,
                         StageTarget(lead_graph["active"].id))

        manager_b = make_user(tenant_b, "manager", email="manager@b.test")
        b_lead = make_stage(tenant_b, "B Lead", 1)
        b_next = make_stage(tenant_b, "B Next", 2)
        make_edge(b_lead, b_next)
        apply_transition(principal_for(manager_b),
                         make_job(tenant_b, b_lead, hours_in_stage=1).id,
                         StageTarget(b_next.id))

        assert [r["stage"] for r in audit_log.stage_rollup(principal_for(manager_a))] == ["Lead"]
        assert [r["stage"] for r in audit_log.stage_rollup(principal_for(manager_b))] == ["B Lead"]


class TestImmutability:
    def test_transition_record_cannot_be_updated(self, lead_graph, tenant_a, manager_a):
        job = make_job(tenant_a, lead_graph["lead"])
        apply_transition(principal_for(manager_a), job.id, StageTarget(lead_graph["active"].id))

        rec = db.session.query(TransitionRecord).one()
        rec.notes = "rewritten"
        with pytest.raises(ImmutableRecordError):
            db.session.commit()
        db.session.rollback()

    def test_transition_record_cannot_be_deleted(self, lead_graph, tenant_a, manager_a):
        job = make_job(tenant_a, lead_graph["lead"])
        apply_transition(principal_for(manager_a), job.id, StageTarget(lead_graph["active"].id))

        db.session.delete(db.session.query(TransitionRecord).one())
        with pytest.raises(ImmutableRecordError):
            db.session.commit()
        db.session.rollback()
        assert db.session.query(TransitionRecord).count() == 1

    def test_closed_metric_frozen_open_metric_writable(self, lead_graph, tenant_a, manager_a):
        job = make_job(tenant_a, lead_graph["lead"])
        apply_transition(principal_for(manager_a), job.id, StageTarget(lead_graph["active"].id))
        closed, opened = db.session.query(StagePerformanceMetric).order_by(StagePerformanceMetric.id).all()

        opened.duration_hours = 0.5
        db.session.commit()

        closed.duration_hours = 999
        with pytest.raises(ImmutableRecordError):
            db.session.commit()
        db.session.rollback()

    def test_closed_metric_exit_time_cannot_be_rewritten(self, lead_graph, tenant_a, manager_a):
        job = make_job(tenant_a, lead_graph["lead"])
        apply_transition(principal_for(manager_a), job.id, StageTarget(lead_graph["active"].id))
        closed = db.session.query(StagePerformanceMetric).filter(
            StagePerformanceMetric.exited_at.is_not(None)).one()
        db.session.commit()

        closed.exited_at = utcnow() + timedelta(days=30)
        with pytest.raises(ImmutableRecordError):
            db.session.commit()
        db.session.rollback()

    def test_sent_reminder_cannot_be_unsent(self, tenant_a, member_a):
        job = make_job(tenant_a)
        stage = make_stage(tenant_a, "Scheduled", 3)
        question = StageQuestion(stage_id=stage.id, tenant_id=tenant_a.id,
                                 question_text="Start date", response_type="date")
        db.session.add(question)
        db.session.flush()
        now = utcnow()
        response = QuestionResponse(tenant_id=tenant_a.id, job_id=job.id, question_id=question.id,
                                    response_value=(now + timedelta(days=2)).isoformat(),
                                    responded_by=member_a.id)
        db.session.add(response)
        db.session.flush()
        reminder = Reminder(tenant_id=tenant_a.id, job_id=job.id, question_id=question.id,
                            response_id=response.id,
                            recipient_user_id=member_a.id, reminder_date=now + timedelta(days=2),
                            offset_hours=24, fire_at=now + timedelta(days=1))
        db.session.add(reminder)
        db.session.commit()

        reminder.mark_sent(now)
        db.session.commit()

        reminder.sent = False
        with pytest.raises(ImmutableRecordError):
            db.session.commit()
        db.session.rollback()

        reminder.fire_at = now + timedelta(days=5)
        with pytest.raises(ImmutableRecordError):
            db.session.commit()
        db.session.rollback()
