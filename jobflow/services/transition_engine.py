"""
Transition Engine — the only code path that changes a job's stage or status.

Flow of ``apply_transition``:
    1. Authorize ``update`` on the job                  → PermissionDenied
    2. Re-read the job inside the transaction
       (SELECT ... FOR UPDATE where supported) and
       compare the caller's expected version            → ConflictStale
    3. No-op guard: target equals current value         → success, no writes
    4. Validate against the stage graph                 → InvalidTransition
    5. One atomic unit:
         job.current_stage / status / stage_entered_at
         close the open StagePerformanceMetric row
         open a new StagePerformanceMetric row
         append a TransitionRecord
       committed together. The UPDATE on ``jobs`` carries the optimistic
       version check; losing a race surfaces as ConflictStale and nothing
       from the unit is persisted.
    6. After commit, refresh derived aggregates best-effort.

Steps 1-4 write nothing, so a denied or invalid request leaves no trace.
"""

import logging
import re
from dataclasses import asdict, dataclass

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from jobflow.core.exceptions import (
    ConflictStale,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from jobflow.models import db
from jobflow.models.history import StagePerformanceMetric
from jobflow.models.reminder import QuestionResponse, StageQuestion
from jobflow.models.workflow import Job, Stage
from jobflow.services import aggregates, audit_log, reminder_scheduler, stage_graph
from jobflow.services.access_policy import ResourceRef, authorize, load_for, require
from jobflow.utils.helpers import hours_between, parse_datetime, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageTarget:
    stage_id: int


@dataclass(frozen=True)
class StatusTarget:
    status: str


@dataclass
class TransitionResult:
    job_id: int
    changed: bool
    previous_stage_id: int | None
    new_stage_id: int | None
    previous_status: str
    new_status: str
    version: int
    record_id: int | None = None
    duration_hours: float | None = None
    trigger_source: str = "manual"

    def to_dict(self):
        return asdict(self)


def parse_target(data: dict):
    """Build a target from a request body (``stage_id`` or ``status``)."""
    if data.get("stage_id") is not None:
        try:
            return StageTarget(int(data["stage_id"]))
        except (TypeError, ValueError):
            raise ValidationError("stage_id must be an integer", details={"stage_id": "invalid"})
    if data.get("status"):
        return StatusTarget(str(data["status"]))
    raise ValidationError("stage_id or status is required",
                          details={"stage_id": "required", "status": "required"})


def _load_job_for_update(job_id: int) -> Job:
    job = db.session.execute(
        select(Job)
        .where(Job.id == job_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if job is None:
        raise NotFoundError(resource="Job", resource_id=job_id)
    return job


def _open_metric(job_id: int) -> StagePerformanceMetric | None:
    return db.session.execute(
        select(StagePerformanceMetric)
        .where(StagePerformanceMetric.job_id == job_id, StagePerformanceMetric.exited_at.is_(None))
        .order_by(StagePerformanceMetric.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def _resolve_stage(job: Job, stage_id: int) -> Stage:
    stage = db.session.get(Stage, stage_id)
    if stage is None:
        raise NotFoundError(resource="Stage", resource_id=stage_id)
    if stage.tenant_id is not None and stage.tenant_id != job.tenant_id:
        raise InvalidTransition(source=job.current_stage_id, target=stage_id,
                                reason="stage belongs to another tenant")
    if not stage.is_active:
        raise InvalidTransition(source=job.current_stage_id, target=stage.name,
                                reason="stage is inactive")
    if stage.entity_type != job.entity_type:
        raise InvalidTransition(source=job.current_stage_id, target=stage.name,
                                reason=f"stage is not a {job.entity_type} stage")
    return stage


def apply_transition(
    principal,
    job_id: int,
    target,
    notes: str = "",
    *,
    expected_version: int | None = None,
    trigger_source: str = "manual",
    response_id: int | None = None,
    question_id: int | None = None,
    now=None,
) -> TransitionResult:
    """Move a job to a new stage (``StageTarget``) or status (``StatusTarget``)."""
    return _apply(
        principal, job_id, target, notes,
        expected_version=expected_version,
        trigger_source=trigger_source,
        response_id=response_id,
        question_id=question_id,
        now=now,
        follow_graph=True,
    )


def admin_override_stage(principal, job_id: int, stage_id: int, reason: str, *,
                         expected_version: int | None = None, now=None) -> TransitionResult:
    """Put a job on any active stage of its tenant, ignoring graph edges.

    Tenant and role checks still apply (cross-tenant admin or manager).
    """
    if not reason or not reason.strip():
        raise ValidationError("reason is required for an override", details={"reason": "required"})
    return _apply(
        principal, job_id, StageTarget(stage_id), reason,
        expected_version=expected_version,
        trigger_source="admin_override",
        now=now,
        follow_graph=False,
    )


def _apply(principal, job_id, target, notes, *, expected_version, trigger_source,
           response_id=None, question_id=None, now=None, follow_graph=True) -> TransitionResult:
    if not isinstance(target, (StageTarget, StatusTarget)):
        raise ValidationError("target must be a StageTarget or StatusTarget")

    # 1. authorize
    load_for(principal, Job, job_id, "update")

    # 2. re-read and compare
    job = _load_job_for_update(job_id)
    if expected_version is not None and job.version != expected_version:
        db.session.rollback()
        raise ConflictStale(job_id, expected_version, job.version)

    previous_stage_id = job.current_stage_id
    previous_status = job.status

    # 3. no-op guard  /  4. validate
    if isinstance(target, StageTarget):
        if target.stage_id == previous_stage_id:
            return _unchanged(job, trigger_source)
        stage = _resolve_stage(job, target.stage_id)
        if follow_graph:
            stage_graph.validate_move(job.tenant_id, job.entity_type, previous_stage_id, stage.id)
        new_stage_id, new_status = stage.id, stage.maps_to_status
    else:
        if target.status == previous_status:
            return _unchanged(job, trigger_source)
        if follow_graph:
            stage_graph.validate_status_move(previous_status, target.status)
        new_stage_id, new_status = previous_stage_id, target.status

    stage_changed = new_stage_id != previous_stage_id
    now = now or utcnow()
    duration = None

    # 5. atomic unit
    try:
        if stage_changed:
            metric = _open_metric(job.id)
            if metric is not None:
                metric.exited_at = now
                metric.duration_hours = hours_between(metric.entered_at, now)
                duration = metric.duration_hours
            else:
                duration = hours_between(job.stage_entered_at, now)
            if new_stage_id is not None:
                db.session.add(StagePerformanceMetric(
                    tenant_id=job.tenant_id,
                    job_id=job.id,
                    stage_id=new_stage_id,
                    entered_at=now,
                ))
            job.current_stage_id = new_stage_id
            job.stage_entered_at = now
        job.status = new_status

        record_id = audit_log.record(
            job,
            from_stage_id=previous_stage_id,
            to_stage_id=new_stage_id,
            from_status=previous_status,
            to_status=new_status,
            actor_user_id=principal.user_id,
            trigger_source=trigger_source,
            notes=notes,
            at=now,
            response_id=response_id,
            question_id=question_id,
            duration_in_previous_stage_hours=duration,
        )
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        actual = db.session.execute(select(Job.version).where(Job.id == job_id)).scalar_one_or_none()
        logger.warning("Concurrent transition on job %s", job_id,
                       extra={"job_id": job_id, "tenant_id": principal.tenant_id,
                              "event_type": "transition_conflict"})
        raise ConflictStale(job_id, expected_version, actual)
    except Exception:
        db.session.rollback()
        logger.exception("Transition of job %s failed; rolled back", job_id,
                         extra={"job_id": job_id, "tenant_id": principal.tenant_id})
        raise

    result = TransitionResult(
        job_id=job.id,
        changed=True,
        previous_stage_id=previous_stage_id,
        new_stage_id=new_stage_id,
        previous_status=previous_status,
        new_status=new_status,
        version=job.version,
        record_id=record_id,
        duration_hours=duration,
        trigger_source=trigger_source,
    )
    logger.info(
        "Job %s: stage %s → %s, status %s → %s (%s)",
        job.id, previous_stage_id, new_stage_id, previous_status, new_status, trigger_source,
        extra={"job_id": job.id, "tenant_id": job.tenant_id, "user_id": principal.user_id,
               "stage_id": new_stage_id, "event_type": "job_transition"},
    )

    # 6. derived aggregates
    aggregates.refresh_after_transition(job)
    return result


def _unchanged(job, trigger_source) -> TransitionResult:
    return TransitionResult(
        job_id=job.id,
        changed=False,
        previous_stage_id=job.current_stage_id,
        new_stage_id=job.current_stage_id,
        previous_status=job.status,
        new_status=job.status,
        version=job.version,
        trigger_source=trigger_source,
    )


def allowed_targets(principal, job_id: int) -> dict:
    """Stages and statuses the job may move to next."""
    job = load_for(principal, Job, job_id, "read")
    stages = sorted(
        stage_graph.allowed_next(job.tenant_id, job.entity_type, job.current_stage_id),
        key=lambda s: s.sequence_order,
    )
    return {
        "job_id": job.id,
        "version": job.version,
        "current_stage_id": job.current_stage_id,
        "status": job.status,
        "stages": [s.to_dict() for s in stages],
        "statuses": sorted(stage_graph.allowed_statuses(job.status)),
    }


# ═════════════════════════════════════════════════════════════════════════════
# Question responses
# ═════════════════════════════════════════════════════════════════════════════

_NUMBER_RE = re.compile(r"^[0-9]+(\.[0-9]+)?$")


def validate_response_format(question: StageQuestion, value) -> str:
    """Return the normalised response value or raise ``ValidationError``."""
    text = "" if value is None else str(value).strip()
    if not text:
        raise ValidationError("response_value is required", details={"response_value": "required"})

    kind = question.response_type
    if kind == "yes_no" and text not in ("Yes", "No"):
        raise ValidationError("Answer must be 'Yes' or 'No'", details={"response_value": "yes_no"})
    if kind == "number" and not _NUMBER_RE.match(text):
        raise ValidationError("Answer must be a number", details={"response_value": "number"})
    if kind == "date" and parse_datetime(text) is None:
        raise ValidationError("Answer must be a date", details={"response_value": "date"})
    if kind == "multiple_choice" and question.choices and text not in question.choices:
        raise ValidationError("Answer is not one of the choices",
                              details={"response_value": "choice", "choices": question.choices})
    return text


def record_response(
    principal,
    job_id: int,
    question_id: int,
    value,
    *,
    reminder_enabled: bool | None = None,
    reminder_offset_hours: int | None = None,
    now=None,
) -> dict:
    """Store an answer, schedule its reminder and follow a matching response edge."""
    job = load_for(principal, Job, job_id, "read")
    require(principal, "create",
            ResourceRef("QuestionResponse", None, job.tenant_id, created_by=principal.user_id))

    question = db.session.get(StageQuestion, question_id)
    if question is None or not question.is_active or question.tenant_id not in (None, job.tenant_id):
        raise NotFoundError(resource="StageQuestion", resource_id=question_id)

    text = validate_response_format(question, value)
    if reminder_offset_hours is not None and (not isinstance(reminder_offset_hours, int)
                                              or reminder_offset_hours < 0):
        raise ValidationError("reminder_offset_hours must be a non-negative integer",
                              details={"reminder_offset_hours": "invalid"})

    response = QuestionResponse(
        tenant_id=job.tenant_id,
        job_id=job.id,
        question_id=question.id,
        response_value=text,
        responded_by=principal.user_id,
        created_by=principal.user_id,
        reminder_enabled=reminder_enabled,
        reminder_offset_hours=reminder_offset_hours,
    )
    db.session.add(response)
    db.session.commit()

    reminder = reminder_scheduler.schedule_reminder(job, question, response, now=now)

    result = {
        "response": response.to_dict(),
        "reminder": reminder.to_dict() if reminder else None,
        "transition": None,
    }

    if question.stage_id != job.current_stage_id:
        return result
    edge = stage_graph.match_response_edge(job.tenant_id, job.entity_type, job.current_stage_id, text)
    if edge is None:
        return result
    if not authorize(principal, "update", job):
        logger.info("Response %s matches edge %s but principal may not move job %s",
                    response.id, edge.id, job.id,
                    extra={"job_id": job.id, "tenant_id": job.tenant_id, "user_id": principal.user_id})
        return result

    try:
        transition = apply_transition(
            principal, job.id, StageTarget(edge.to_stage_id),
            notes=f"Automatic: {question.question_text} → {text}",
            trigger_source="question_response",
            response_id=response.id,
            question_id=question.id,
            now=now,
        )
    except (InvalidTransition, ConflictStale) as exc:
        logger.warning("Automatic transition for response %s not applied: %s", response.id, exc,
                       extra={"job_id": job_id, "tenant_id": principal.tenant_id})
        result["transition_error"] = str(exc)
        return result

    result["transition"] = transition.to_dict()
    return result
