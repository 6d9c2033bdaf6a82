"""
Derived aggregates refreshed after a transition commits.

Currently one aggregate: ``project_stage_completion`` — the share of a
project stage's jobs whose status is ``completed``.

These refreshes are best-effort. A failure is logged as a warning,
recorded in ``aggregate_refresh_tasks`` and retried by the
``aggregate_refresh_retry`` scheduled job; it never reaches the caller of
the transition that triggered it.
"""

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import case, func, select

from jobflow.core.exceptions import DerivedAggregateFailure
from jobflow.models import db
from jobflow.models.history import AggregateRefreshTask
from jobflow.models.workflow import Job, ProjectStage
from jobflow.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

PROJECT_STAGE_COMPLETION = "project_stage_completion"

RETRY_BASE_SECONDS = 60


def refresh_project_completion(project_stage_id: int) -> int:
    """Recompute and store completion for one project stage. Returns the percentage."""
    project_stage = db.session.get(ProjectStage, project_stage_id)
    if project_stage is None:
        return 0

    total, completed = db.session.execute(
        select(
            func.count(Job.id),
            func.coalesce(func.sum(case((Job.status == "completed", 1), else_=0)), 0),
        ).where(Job.project_stage_id == project_stage_id, Job.tenant_id == project_stage.tenant_id)
    ).one()

    percentage = round(completed * 100 / total) if total else 0
    project_stage.completion_percentage = percentage
    project_stage.completion_refreshed_at = utcnow()
    db.session.commit()
    return percentage


def refresh_after_transition(job) -> None:
    """Refresh aggregates touched by ``job``. Never raises."""
    if job.project_stage_id is None:
        return
    project_stage_id = job.project_stage_id
    tenant_id = job.tenant_id
    job_id = job.id
    try:
        refresh_project_completion(project_stage_id)
    except Exception as exc:
        db.session.rollback()
        failure = DerivedAggregateFailure(PROJECT_STAGE_COMPLETION, project_stage_id, exc)
        logger.warning("%s; queued for retry", failure,
                       extra={"tenant_id": tenant_id, "job_id": job_id,
                              "event_type": "aggregate_refresh_failed"})
        _queue_retry(tenant_id, PROJECT_STAGE_COMPLETION, project_stage_id, str(exc))


def _queue_retry(tenant_id, aggregate, key, error):
    try:
        task = db.session.execute(
            select(AggregateRefreshTask).where(
                AggregateRefreshTask.aggregate == aggregate,
                AggregateRefreshTask.key == key,
                AggregateRefreshTask.status == "pending",
            )
        ).scalar_one_or_none()
        if task is None:
            task = AggregateRefreshTask(tenant_id=tenant_id, aggregate=aggregate, key=key)
            db.session.add(task)
        task.last_error = error
        task.next_attempt_at = utcnow()
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Could not queue %s retry for id=%s", aggregate, key)


def _refresh(aggregate, key):
    if aggregate == PROJECT_STAGE_COMPLETION:
        return refresh_project_completion(key)
    raise ValueError(f"Unknown aggregate '{aggregate}'")


def retry_pending(now=None, max_attempts: int | None = None) -> dict:
    """Retry every due refresh task. Returns a summary dict."""
    now = now or utcnow()
    if max_attempts is None:
        max_attempts = current_app.config.get("AGGREGATE_RETRY_MAX_ATTEMPTS", 5)

    tasks = db.session.execute(
        select(AggregateRefreshTask).where(AggregateRefreshTask.status == "pending")
        .order_by(AggregateRefreshTask.id)
    ).scalars().all()

    summary = {"attempted": 0, "succeeded": 0, "rescheduled": 0, "abandoned": 0}
    for task in tasks:
        if task.next_attempt_at is not None and as_utc(task.next_attempt_at) > now:
            continue
        task_id, aggregate, key = task.id, task.aggregate, task.key
        summary["attempted"] += 1
        try:
            _refresh(aggregate, key)
        except Exception as exc:
            db.session.rollback()
            task = db.session.get(AggregateRefreshTask, task_id)
            task.attempts += 1
            task.last_error = str(exc)
            if task.attempts >= max_attempts:
                task.status = "abandoned"
                summary["abandoned"] += 1
                logger.error("Giving up on %s id=%s after %d attempts", aggregate, key, task.attempts,
                             extra={"tenant_id": task.tenant_id, "event_type": "aggregate_refresh_abandoned"})
            else:
                task.next_attempt_at = now + timedelta(seconds=RETRY_BASE_SECONDS * 2 ** task.attempts)
                summary["rescheduled"] += 1
            db.session.commit()
            continue

        task = db.session.get(AggregateRefreshTask, task_id)
        task.attempts += 1
        task.status = "done"
        task.last_error = None
        db.session.commit()
        summary["succeeded"] += 1
    return summary
