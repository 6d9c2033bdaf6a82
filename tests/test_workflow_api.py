"""
Tests: HTTP surface — workflow, admin and health blueprints.

Scenarios cover the status code mapping of every service error:
401 (no token), 403 (policy), 404 (missing), 409 (invalid / stale), 422 (rule).
"""

import pytest

from conftest import auth_headers, make_job
from jobflow.models import db
from jobflow.models.history import TransitionRecord
from jobflow.models.reminder import StageQuestion
from jobflow.models.workflow import Job, Stage
from jobflow.services import stage_graph
from jobflow.services.jwt_service import generate_access_token


def _post(client, url, user, body=None):
    return client.post(url, json=body or {}, headers=auth_headers(user))


def _get(client, url, user):
    return client.get(url, headers=auth_headers(user))


# ── Authentication ───────────────────────────────────────────────────────────


class TestAuthentication:
    def test_missing_token_is_401(self, client, lead_graph, tenant_a):
        job = make_job(tenant_a, lead_graph["lead"])
        res = client.get(f"/api/v1/jobs/{job.id}/history")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_garbage_token_is_401(self, client, lead_graph, tenant_a):
        job = make_job(tenant_a, lead_graph["lead"])
        res = client.get(f"/api/v1/jobs/{job.id}/history", headers={"Authorization": "Bearer nope"})
        assert res.status_code == 401

    def test_token_for_unknown_user_is_forbidden(self, client, lead_graph, tenant_a):
        job = make_job(tenant_a, lead_graph["lead"])
        res = client.get(f"/api/v1/jobs/{job.id}/history",
                         headers={"Authorization": f"Bearer {generate_access_token(424242)}"})
        assert res.status_code == 403


# ── Transitions ──────────────────────────────────────────────────────────────


class TestTransitionEndpoint:
    def test_manager_transition(self, client, lead_graph, tenant_a, manager_a):
        job = make_job(tenant_a, lead_graph["lead"])
        res = _post(client, f"/api/v1/jobs/{job.id}/transition", manager_a,
                    {"stage_id": lead_graph["active"].id, "notes": "Signed"})

        assert res.status_code == 200
        body = res.get_json()
        assert body["changed"] is True
        assert body["new_status"] == "active"
        assert body["version"] == 2

        db.session.expire_all()
        assert db.session.get(Job, job.id).current_stage_id == lead_graph["active"].id

    def test_cross_tenant_is_403_without_side_effects(self, client, lead_graph, tenant_a, member_b):
        job = make_job(tenant_a, lead_graph["lead"])
        res = _post(client, f"/api/v1/jobs/{job.id}/transition", member_b,
                    {"stage_id": lead_graph["active"].id})

        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"
        db.session.expire_all()
        assert db.session.query(TransitionRecord).count() == 0

    def test_invalid_transition_is_409_with_allowed(self, client, lead_graph, tenant_a, manager_a):
        job = make_job(tenant_a, lead_graph["lead"])
        res = _post(client, f"/api/v1/jobs/{job.id}/transition", manager_a,
                    {"stage_id": lead_graph["closed"].id})

        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_INVALID_TRANSITION"
        assert body["details"]["allowed"] == [{"id": lead_graph["active"].id, "name": "Active"}]

    def test_stale_version_is_409_retryable(self, client, lead_graph, tenant_a, manager_a):
        job = make_job(tenant_a, lead_graph["lead"])
        url = f"/api/v1/jobs/{job.id}/transition"
        assert _post(client, url, manager_a,
                     {"stage_id": lead_graph["active"].id, "expected_version": 1}).status_code == 200

        res = _post(client, url, manager_a, {"status": "on_hold", "expected_version": 1})
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_CONFLICT_STALE"
        assert body["details"]["retryable"] is True
        assert body["details"]["actual_version"] == 2

    def test_missing_target_is_422(self, client, lead_graph, tenant_a, manager_a):
        job = make_job(tenant_a, lead_graph["lead"])
        res = _post(client, f"/api/v1/jobs/{job.id}/transition", manager_a, {})
        assert res.status_code == 422

    def test_unknown_job_is_404(self, client, manager_a):
        res = _post(client, "/api/v1/jobs/9999/transition", manager_a, {"status": "active"})
        assert res.status_code == 404

    def test_override_requires_reason(self, client, lead_graph, tenant_a, manager_a):
        job = make_job(tenant_a, lead_graph["lead"])
        url = f"/api/v1/jobs/{job.id}/override"
        assert _post(client, url, manager_a, {"stage_id": lead_graph["closed"].id}).status_code == 422

        res = _post(client, url, manager_a, {"stage_id": lead_graph["closed"].id, "reason": "Data fix"})
        assert res.status_code == 200
        assert res.get_json()["trigger_source"] == "admin_override"


class TestReadEndpoints:
    def test_history_timeline_allowed_next(self, client, lead_graph, tenant_a, manager_a, member_a):
        job = make_job(tenant_a, lead_graph["lead"])
        _post(client, f"/api/v1/jobs/{job.id}/transition", manager_a, {"stage_id": lead_graph["active"].id})

        history = _get(client, f"/api/v1/jobs/{job.id}/history?limit=10", member_a).get_json()
        assert history["total"] == 1
        assert history["items"][0]["to_stage"] == "Active"

        timeline = _get(client, f"/api/v1/jobs/{job.id}/timeline", member_a).get_json()
        assert timeline["total"] == 1
        assert timeline["items"][0]["is_current"] is True

        allowed = _get(client, f"/api/v1/jobs/{job.id}/allowed-next", member_a).get_json()
        assert [s["name"] for s in allowed["stages"]] == ["Lead", "Closed"]

    def test_stages_and_rollup(self, client, lead_graph, manager_a):
        stages = _get(client, "/api/v1/stages", manager_a).get_json()
        assert [s["name"] for s in stages["items"]] == ["Lead", "Active", "Closed"]

        rollup = _get(client, "/api/v1/stages/rollup", manager_a)
        assert rollup.status_code == 200
        assert rollup.get_json()["items"] == []

    def test_create_stage_as_manager(self, client, lead_graph, tenant_a, manager_a, member_a):
        body = {"name": "Survey", "sequence_order": 5}
        assert _post(client, "/api/v1/stages", member_a, body).status_code == 403

        res = _post(client, "/api/v1/stages", manager_a, body)
        assert res.status_code == 201
        assert res.get_json()["tenant_id"] == tenant_a.id


class TestResponsesEndpoint:
    def test_answer_requires_question(self, client, lead_graph, tenant_a, member_a):
        job = make_job(tenant_a, lead_graph["lead"])
        res = _post(client, f"/api/v1/jobs/{job.id}/responses", member_a, {"response_value": "Yes"})
        assert res.status_code == 422

    def test_manager_yes_moves_job(self, client, tenant_a, manager_a):
        stage_graph.seed_default_graph()
        quoted = db.session.query(Stage).filter_by(name="Quoted", tenant_id=None).one()
        question = db.session.query(StageQuestion).filter_by(stage_id=quoted.id).one()
        job = make_job(tenant_a, quoted)

        res = _post(client, f"/api/v1/jobs/{job.id}/responses", manager_a,
                    {"question_id": question.id, "response_value": "Yes"})
        assert res.status_code == 201
        assert res.get_json()["transition"]["trigger_source"] == "question_response"


# ── Admin ────────────────────────────────────────────────────────────────────


class TestAdminEndpoints:
    @pytest.mark.parametrize("method,url", [
        ("post", "/api/v1/admin/reminders/process"),
        ("get", "/api/v1/admin/reminders/stats"),
        ("get", "/api/v1/admin/scheduler/jobs"),
        ("post", "/api/v1/admin/scheduler/jobs/reminder_dispatch/run"),
    ])
    def test_manager_forbidden(self, client, manager_a, method, url):
        res = getattr(client, method)(url, json={}, headers=auth_headers(manager_a))
        assert res.status_code == 403

    def test_admin_processes_reminders(self, client, admin_user):
        res = _post(client, "/api/v1/admin/reminders/process", admin_user, {"limit": 10})
        assert res.status_code == 200
        assert res.get_json() == {"processed": 0, "queued_entries": 0, "no_channel": 0, "errors": 0}

    def test_admin_stats_and_jobs(self, client, admin_user):
        stats = _get(client, "/api/v1/admin/reminders/stats", admin_user).get_json()
        assert stats["reminders"]["due"] == 0
        assert stats["queue"]["pending"] == 0

        jobs = _get(client, "/api/v1/admin/scheduler/jobs", admin_user).get_json()
        assert jobs["total"] == 3

    def test_admin_runs_and_toggles_job(self, client, admin_user):
        res = _post(client, "/api/v1/admin/scheduler/jobs/aggregate_refresh_retry/run", admin_user)
        assert res.status_code == 200
        assert res.get_json()["status"] == "success"

        res = client.patch("/api/v1/admin/scheduler/jobs/aggregate_refresh_retry",
                           json={"is_enabled": False}, headers=auth_headers(admin_user))
        assert res.status_code == 200
        assert res.get_json()["is_enabled"] is False

    def test_unknown_scheduled_job_is_404(self, client, admin_user):
        assert _post(client, "/api/v1/admin/scheduler/jobs/nope/run", admin_user).status_code == 404

    def test_role_change_and_deactivate(self, client, manager_a, member_a, member_b):
        res = client.put(f"/api/v1/admin/users/{member_a.id}/role", json={"role": "manager"},
                         headers=auth_headers(manager_a))
        assert res.status_code == 200

        res = client.delete(f"/api/v1/admin/users/{member_b.id}", headers=auth_headers(manager_a))
        assert res.status_code == 403


# ── Health ───────────────────────────────────────────────────────────────────


class TestHealth:
    def test_health_needs_no_token(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json()["checks"]["database"]["status"] == "ok"

    def test_ready(self, client):
        assert client.get("/api/v1/health/ready").status_code == 200
