import importlib

from conftest import make_job, principal_for
from jobflow.models import db
from jobflow.models.history import INITIAL_BACKFILL_MARKER, StagePerformanceMetric, TransitionRecord
from jobflow.services.transition_engine import StageTarget, apply_transition


def _load_script_module():
    return importlib.import_module("scripts.backfill_transition_history")


def test_backfill_dry_run_writes_nothing(tenant_a, lead_graph, capsys):
    module = _load_script_module()
    make_job(tenant_a, lead_graph["lead"])
    make_job(tenant_a, None, title="Unstaged")

    summary = module.backfill_transition_history(apply=False)

    assert summary["mode"] == "dry-run"
    assert summary["would_create"] == 2
    assert summary["created"] == 0
    assert db.session.query(TransitionRecord).count() == 0
    assert "[SUMMARY] mode=dry-run processed=2" in capsys.readouterr().out


def test_backfill_apply_is_idempotent(tenant_a, lead_graph, manager_a):
    module = _load_script_module()
    staged = make_job(tenant_a, lead_graph["lead"])
    unstaged = make_job(tenant_a, None, title="Unstaged")
    moved = make_job(tenant_a, lead_graph["lead"], title="Already moving")
    apply_transition(principal_for(manager_a), moved.id, StageTarget(lead_graph["active"].id))

    first = module.backfill_transition_history(apply=True)
    assert first["created"] == 2
    assert first["skipped_existing"] == 1
    assert first["errors"] == 0

    initial = db.session.query(TransitionRecord).filter_by(synthetic_marker=INITIAL_BACKFILL_MARKER).all()
    assert sorted(r.job_id for r in initial) == sorted([staged.id, unstaged.id])
    assert all(r.trigger_source == "backfill" and r.sequence == 1 for r in initial)
    assert db.session.query(StagePerformanceMetric).filter_by(job_id=staged.id).count() == 1

    second = module.backfill_transition_history(apply=True)
    assert second["created"] == 0
    assert second["skipped_existing"] == 3
