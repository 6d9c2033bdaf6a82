"""
Shared pytest fixtures for the jobflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - factories: make_tenant / make_user / make_stage / make_edge / make_job
    - principal_for / auth_headers helpers
"""

from datetime import timedelta

import pytest

from jobflow import create_app
from jobflow.models import db as _db
from jobflow.models.auth import ROLE_MANAGER, ROLE_MEMBER, Tenant, User
from jobflow.models.history import StagePerformanceMetric
from jobflow.models.workflow import Job, ProjectStage, Stage, StageTransition
from jobflow.services.jwt_service import generate_access_token
from jobflow.services.tenant_directory import resolve_principal
from jobflow.utils.helpers import utcnow


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


def make_tenant(slug="tenant-a", name=None):
    tenant = Tenant(name=name or slug.replace("-", " ").title(), slug=slug)
    _db.session.add(tenant)
    _db.session.commit()
    return tenant


def make_user(tenant=None, role=ROLE_MEMBER, email=None, phone_number=None, full_name=None):
    user = User(
        tenant_id=tenant.id if tenant is not None else None,
        email=email,
        phone_number=phone_number,
        full_name=full_name,
        role=role,
    )
    _db.session.add(user)
    _db.session.commit()
    return user


def make_stage(tenant, name, sequence_order, maps_to_status="active", entity_type="job"):
    stage = Stage(
        tenant_id=tenant.id if tenant is not None else None,
        entity_type=entity_type,
        name=name,
        sequence_order=sequence_order,
        maps_to_status=maps_to_status,
    )
    _db.session.add(stage)
    _db.session.commit()
    return stage


def make_edge(from_stage, to_stage, trigger_response=None):
    edge = StageTransition(
        tenant_id=to_stage.tenant_id,
        entity_type=to_stage.entity_type,
        from_stage_id=from_stage.id if from_stage is not None else None,
        to_stage_id=to_stage.id,
        trigger_response=trigger_response,
    )
    _db.session.add(edge)
    _db.session.commit()
    return edge


def make_job(tenant, stage=None, *, created_by=None, status=None, hours_in_stage=None,
             project_stage=None, title="Kitchen refit"):
    """A job sitting on ``stage`` with its open metric row."""
    entered = utcnow() - timedelta(hours=hours_in_stage or 0)
    job = Job(
        tenant_id=tenant.id,
        title=title,
        status=status or (stage.maps_to_status if stage else "planning"),
        current_stage_id=stage.id if stage else None,
        stage_entered_at=entered if stage else None,
        created_by=created_by.id if created_by is not None else None,
        project_stage_id=project_stage.id if project_stage is not None else None,
    )
    _db.session.add(job)
    _db.session.flush()
    if stage is not None:
        _db.session.add(StagePerformanceMetric(
            tenant_id=tenant.id, job_id=job.id, stage_id=stage.id, entered_at=entered,
        ))
    _db.session.commit()
    return job


def make_project_stage(tenant, name="Phase 1"):
    project_stage = ProjectStage(tenant_id=tenant.id, name=name)
    _db.session.add(project_stage)
    _db.session.commit()
    return project_stage


def principal_for(user):
    return resolve_principal(user.id)


def auth_headers(user):
    return {"Authorization": f"Bearer {generate_access_token(user.id)}"}


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def tenant_a():
    return make_tenant("tenant-a")


@pytest.fixture()
def tenant_b():
    return make_tenant("tenant-b")


@pytest.fixture()
def manager_a(tenant_a):
    return make_user(tenant_a, ROLE_MANAGER, email="manager@a.test")


@pytest.fixture()
def member_a(tenant_a):
    return make_user(tenant_a, ROLE_MEMBER, email="member@a.test", phone_number="+15550001")


@pytest.fixture()
def member_b(tenant_b):
    return make_user(tenant_b, ROLE_MEMBER, email="member@b.test")


@pytest.fixture()
def admin_user():
    return make_user(None, "cross_tenant_admin", email="root@platform.test")


@pytest.fixture()
def lead_graph(tenant_a):
    """Tenant A graph: Lead(1) → Active(9) → Closed(12), entry at Lead."""
    lead = make_stage(tenant_a, "Lead", 1, "planning")
    active = make_stage(tenant_a, "Active", 9, "active")
    closed = make_stage(tenant_a, "Closed", 12, "completed")
    make_edge(None, lead)
    make_edge(lead, active)
    make_edge(active, closed)
    make_edge(active, lead)
    return {"lead": lead, "active": active, "closed": closed}
