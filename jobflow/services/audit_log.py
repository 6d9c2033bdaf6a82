"""
Audit & Metrics Log — append-only transition history and stage metrics.

Writes:
    ``record`` appends one TransitionRecord with the next per-job sequence
    number. It only flushes; the caller owns the transaction, so the
    record commits (or rolls back) together with the job update.

Reads:
    ``list_history``     ordered, paginated records for one job
    ``status_timeline``  history periods with their durations
    ``stage_rollup``     jobs and average duration per stage, computed from
                         closed metric rows only so past numbers stay stable

Backfill:
    ``backfill_initial_history`` manufactures an "Initial job status"
    record for jobs that have none. Jobs that already carry a record with
    the same synthetic marker are skipped, so reruns are safe.
"""

import logging

from sqlalchemy import func, select

from jobflow.models import db
from jobflow.models.history import (
    INITIAL_BACKFILL_MARKER,
    TRIGGER_SOURCES,
    StagePerformanceMetric,
    TransitionRecord,
)
from jobflow.models.workflow import Job, Stage
from jobflow.services.access_policy import load_for, scoped_query
from jobflow.utils.helpers import as_utc, hours_between, utcnow

logger = logging.getLogger(__name__)


def _last_record(job_id):
    return db.session.execute(
        select(TransitionRecord)
        .where(TransitionRecord.job_id == job_id)
        .order_by(TransitionRecord.sequence.desc())
        .limit(1)
    ).scalar_one_or_none()


def record(
    job,
    *,
    to_status: str,
    from_status: str | None = None,
    from_stage_id: int | None = None,
    to_stage_id: int | None = None,
    actor_user_id: int | None = None,
    trigger_source: str = "manual",
    notes: str = "",
    at=None,
    synthetic_marker: str | None = None,
    response_id: int | None = None,
    question_id: int | None = None,
    duration_in_previous_stage_hours: float | None = None,
) -> int:
    """Append a transition record for ``job`` and return its id.

    The timestamp is clamped so it never precedes the job's previous
    record, keeping per-job order by timestamp identical to commit order.
    """
    if trigger_source not in TRIGGER_SOURCES:
        raise ValueError(f"Unknown trigger_source '{trigger_source}'")

    at = as_utc(at) or utcnow()
    last = _last_record(job.id)
    sequence = 1
    if last is not None:
        sequence = last.sequence + 1
        last_at = as_utc(last.created_at)
        if last_at is not None and at < last_at:
            at = last_at

    entry = TransitionRecord(
        tenant_id=job.tenant_id,
        job_id=job.id,
        sequence=sequence,
        from_stage_id=from_stage_id,
        to_stage_id=to_stage_id,
        from_status=from_status,
        to_status=to_status,
        actor_user_id=actor_user_id,
        trigger_source=trigger_source,
        notes=notes or "",
        synthetic_marker=synthetic_marker,
        response_id=response_id,
        question_id=question_id,
        duration_in_previous_stage_hours=duration_in_previous_stage_hours,
        created_at=at,
    )
    db.session.add(entry)
    db.session.flush()
    return entry.id


def list_history(principal, job_id: int, limit: int = 50, offset: int = 0) -> dict:
    """Transition records of one job in commit order."""
    load_for(principal, Job, job_id, "read")
    limit = max(1, min(int(limit), 500))
    offset = max(int(offset), 0)

    total = db.session.execute(
        select(func.count(TransitionRecord.id)).where(TransitionRecord.job_id == job_id)
    ).scalar_one()
    items = db.session.execute(
        select(TransitionRecord)
        .where(TransitionRecord.job_id == job_id)
        .order_by(TransitionRecord.sequence)
        .limit(limit)
        .offset(offset)
    ).scalars().all()

    return {
        "items": [r.to_dict() for r in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


def status_timeline(principal, job_id: int, now=None) -> list[dict]:
    """One entry per history period: what the job was, and for how long.

    The last period is open and measured up to ``now``.
    """
    load_for(principal, Job, job_id, "read")
    now = now or utcnow()
    records = db.session.execute(
        select(TransitionRecord)
        .where(TransitionRecord.job_id == job_id)
        .order_by(TransitionRecord.sequence)
    ).scalars().all()

    timeline = []
    for idx, rec in enumerate(records):
        started = as_utc(rec.created_at)
        ended = as_utc(records[idx + 1].created_at) if idx + 1 < len(records) else None
        timeline.append({
            "sequence": rec.sequence,
            "status": rec.to_status,
            "stage_id": rec.to_stage_id,
            "stage": rec.to_stage.name if rec.to_stage else None,
            "trigger_source": rec.trigger_source,
            "actor_user_id": rec.actor_user_id,
            "notes": rec.notes,
            "started_at": started.isoformat(),
            "ended_at": ended.isoformat() if ended else None,
            "duration_hours": hours_between(started, ended or now),
            "is_current": ended is None,
        })
    return timeline


def stage_rollup(principal, entity_type: str = "job") -> list[dict]:
    """Jobs per stage and average duration, from closed metric rows only."""
    metrics = scoped_query(principal, StagePerformanceMetric).subquery()
    rows = db.session.execute(
        select(
            Stage.id,
            Stage.name,
            Stage.sequence_order,
            func.count(func.distinct(metrics.c.job_id)),
            func.count(metrics.c.id),
            func.avg(metrics.c.duration_hours),
        )
        .join(metrics, metrics.c.stage_id == Stage.id)
        .where(metrics.c.exited_at.is_not(None), Stage.entity_type == entity_type)
        .group_by(Stage.id, Stage.name, Stage.sequence_order)
        .order_by(Stage.sequence_order, Stage.id)
    ).all()

    return [
        {
            "stage_id": stage_id,
            "stage": name,
            "sequence_order": seq,
            "job_count": job_count,
            "visit_count": visits,
            "avg_duration_hours": round(avg, 2) if avg is not None else None,
        }
        for stage_id, name, seq, job_count, visits, avg in rows
    ]


def backfill_initial_history(*, apply: bool = False) -> dict:
    """Create an initial history record for every job that has none."""
    summary = {
        "mode": "apply" if apply else "dry-run",
        "processed_jobs": 0,
        "created": 0,
        "would_create": 0,
        "skipped_existing": 0,
        "errors": 0,
        "error_details": [],
    }

    jobs = db.session.execute(select(Job).order_by(Job.tenant_id, Job.id)).scalars().all()
    for job in jobs:
        summary["processed_jobs"] += 1
        job_id, tenant_id = job.id, job.tenant_id

        marked = db.session.execute(
            select(TransitionRecord.id).where(
                TransitionRecord.job_id == job_id,
                TransitionRecord.synthetic_marker == INITIAL_BACKFILL_MARKER,
            )
        ).first()
        if marked is not None or _last_record(job_id) is not None:
            summary["skipped_existing"] += 1
            continue

        if not apply:
            summary["would_create"] += 1
            continue

        try:
            entered_at = job.stage_entered_at or job.created_at or utcnow()
            record(
                job,
                to_status=job.status,
                to_stage_id=job.current_stage_id,
                trigger_source="backfill",
                notes="Initial job status",
                at=job.created_at,
                synthetic_marker=INITIAL_BACKFILL_MARKER,
            )
            if job.current_stage_id is not None and not _has_open_metric(job_id):
                db.session.add(StagePerformanceMetric(
                    tenant_id=tenant_id,
                    job_id=job_id,
                    stage_id=job.current_stage_id,
                    entered_at=entered_at,
                ))
            db.session.commit()
            summary["created"] += 1
        except Exception as exc:
            db.session.rollback()
            summary["errors"] += 1
            summary["error_details"].append({"job_id": job_id, "tenant_id": tenant_id, "error": str(exc)})
            logger.exception("Backfill failed for job %s", job_id,
                             extra={"job_id": job_id, "tenant_id": tenant_id})

    logger.info("History backfill finished: %s", {k: v for k, v in summary.items() if k != "error_details"},
                extra={"event_type": "history_backfill"})
    return summary


def _has_open_metric(job_id) -> bool:
    return db.session.execute(
        select(StagePerformanceMetric.id).where(
            StagePerformanceMetric.job_id == job_id,
            StagePerformanceMetric.exited_at.is_(None),
        )
    ).first() is not None
