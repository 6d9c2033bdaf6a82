"""
Stage Graph — ordered workflow stages and the directed edges between them.

Graph selection:
    A tenant that has at least one active stage for an entity type uses
    its own stages and edges. Any other tenant falls back to the shared
    system graph (rows with tenant_id NULL).

Edges:
    - Ordinary edge:  from_stage_id → to_stage_id
    - Entry edge:     from_stage_id NULL → to_stage_id  (job without a stage)
    - Response edge:  ordinary edge with trigger_response set; matched by
                      ``match_response_edge`` when a question is answered.
    Back-transitions (e.g. Scheduled → Quoted) are explicit edges; sequence
    order alone never implies a move is allowed.

Status-only moves (e.g. active → on_hold) come from the
``status_transitions`` table of the workflow configuration file.

Configuration file layout (``WORKFLOW_CONFIG_PATH``):
    {
      "status_transitions": {"planning": ["active", ...], ...},
      "entity_types": {
        "job": {
          "stages": [{"key", "name", "sequence_order", "maps_to_status", ...}],
          "entry": ["lead"],
          "transitions": [{"from", "to", "trigger_response"?}],
          "questions": [{"stage", "question_text", "response_type", ...}]
        }
      }
    }
"""

import json
import logging

from flask import current_app
from sqlalchemy import func, select

from jobflow.core.exceptions import InvalidTransition, NotFoundError, ValidationError
from jobflow.models import db
from jobflow.models.history import StagePerformanceMetric, TransitionRecord
from jobflow.models.reminder import RESPONSE_TYPES, QuestionResponse, Reminder, StageQuestion
from jobflow.models.workflow import ENTITY_TYPES, JOB_STATUSES, STAGE_TYPES, Job, Stage, StageTransition
from jobflow.services.access_policy import ResourceRef, load_for, require

logger = logging.getLogger(__name__)

_config_cache: dict[str, dict] = {}


# ═════════════════════════════════════════════════════════════════════════════
# Configuration
# ═════════════════════════════════════════════════════════════════════════════


def load_graph_config(path: str | None = None, *, reload: bool = False) -> dict:
    """Read and validate the workflow definition file (cached per path)."""
    path = path or current_app.config["WORKFLOW_CONFIG_PATH"]
    if not reload and path in _config_cache:
        return _config_cache[path]

    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)

    errors = _validate_config(data)
    if errors:
        raise ValidationError(f"Invalid workflow configuration: {path}", details={"errors": errors})

    _config_cache[path] = data
    logger.info("Loaded workflow configuration from %s", path)
    return data


def _validate_config(data) -> list[str]:
    errors = []
    statuses = data.get("status_transitions", {})
    for source, targets in statuses.items():
        if source not in JOB_STATUSES:
            errors.append(f"unknown status '{source}'")
        for target in targets:
            if target not in JOB_STATUSES:
                errors.append(f"unknown status '{target}' (from {source})")

    for entity_type, graph in (data.get("entity_types") or {}).items():
        if entity_type not in ENTITY_TYPES:
            errors.append(f"unknown entity type '{entity_type}'")
        keys = set()
        sequences = []
        for stage in graph.get("stages", []):
            keys.add(stage.get("key"))
            sequences.append(stage.get("sequence_order"))
            if stage.get("maps_to_status") not in JOB_STATUSES:
                errors.append(f"{entity_type}.{stage.get('key')}: bad maps_to_status")
            if stage.get("stage_type", "standard") not in STAGE_TYPES:
                errors.append(f"{entity_type}.{stage.get('key')}: bad stage_type")
        if len(set(sequences)) != len(sequences):
            errors.append(f"{entity_type}: duplicate sequence_order")
        for edge in graph.get("transitions", []):
            if edge.get("from") not in keys or edge.get("to") not in keys:
                errors.append(f"{entity_type}: edge {edge.get('from')} → {edge.get('to')} "
                              "references an unknown stage")
            elif edge["from"] == edge["to"]:
                errors.append(f"{entity_type}: self edge on {edge['from']}")
        for key in graph.get("entry", []):
            if key not in keys:
                errors.append(f"{entity_type}: unknown entry stage '{key}'")
        for question in graph.get("questions", []):
            if question.get("stage") not in keys:
                errors.append(f"{entity_type}: question on unknown stage '{question.get('stage')}'")
            if question.get("response_type") not in RESPONSE_TYPES:
                errors.append(f"{entity_type}: bad response_type '{question.get('response_type')}'")
    return errors


def seed_default_graph(path: str | None = None, *, tenant_id: int | None = None) -> dict:
    """Load the configured graph into the store. Idempotent.

    With ``tenant_id`` None the rows become the shared system graph;
    otherwise they are copied into that tenant's own graph.
    """
    data = load_graph_config(path)
    summary = {"stages_created": 0, "transitions_created": 0, "questions_created": 0}

    for entity_type, graph in data.get("entity_types", {}).items():
        by_key: dict[str, Stage] = {}
        for item in graph.get("stages", []):
            stage = db.session.execute(
                select(Stage).where(
                    _tenant_clause(Stage, tenant_id),
                    Stage.entity_type == entity_type,
                    Stage.sequence_order == item["sequence_order"],
                )
            ).scalar_one_or_none()
            if stage is None:
                stage = Stage(
                    tenant_id=tenant_id,
                    entity_type=entity_type,
                    name=item["name"],
                    description=item.get("description", ""),
                    color=item.get("color", "#64748b"),
                    sequence_order=item["sequence_order"],
                    maps_to_status=item["maps_to_status"],
                    stage_type=item.get("stage_type", "standard"),
                )
                db.session.add(stage)
                db.session.flush()
                summary["stages_created"] += 1
            by_key[item["key"]] = stage

        edges = [(None, key, None) for key in graph.get("entry", [])]
        edges += [(e["from"], e["to"], e.get("trigger_response")) for e in graph.get("transitions", [])]
        for from_key, to_key, trigger in edges:
            from_id = by_key[from_key].id if from_key else None
            to_id = by_key[to_key].id
            exists = db.session.execute(
                select(StageTransition.id).where(
                    _tenant_clause(StageTransition, tenant_id),
                    StageTransition.entity_type == entity_type,
                    _nullable_eq(StageTransition.from_stage_id, from_id),
                    StageTransition.to_stage_id == to_id,
                    _nullable_eq(StageTransition.trigger_response, trigger),
                )
            ).first()
            if exists is None:
                db.session.add(StageTransition(
                    tenant_id=tenant_id,
                    entity_type=entity_type,
                    from_stage_id=from_id,
                    to_stage_id=to_id,
                    trigger_response=trigger,
                ))
                summary["transitions_created"] += 1

        for item in graph.get("questions", []):
            stage = by_key[item["stage"]]
            exists = db.session.execute(
                select(StageQuestion.id).where(
                    StageQuestion.stage_id == stage.id,
                    StageQuestion.question_text == item["question_text"],
                )
            ).first()
            if exists is None:
                db.session.add(StageQuestion(
                    tenant_id=tenant_id,
                    stage_id=stage.id,
                    question_text=item["question_text"],
                    response_type=item["response_type"],
                    choices=item.get("choices"),
                    sequence_order=item.get("sequence_order", 1),
                    is_required=item.get("is_required", False),
                    reminder_enabled=item.get("reminder_enabled", False),
                    default_reminder_offset_hours=item.get("default_reminder_offset_hours"),
                ))
                summary["questions_created"] += 1

    db.session.commit()
    logger.info("Seeded workflow graph (tenant=%s): %s", tenant_id, summary,
                extra={"tenant_id": tenant_id, "event_type": "graph_seeded"})
    return summary


def _tenant_clause(model, tenant_id):
    return model.tenant_id.is_(None) if tenant_id is None else model.tenant_id == tenant_id


def _nullable_eq(column, value):
    return column.is_(None) if value is None else column == value


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def graph_tenant(tenant_id: int | None, entity_type: str) -> int | None:
    """Return the tenant whose graph applies, or None for the system graph."""
    if tenant_id is None:
        return None
    has_own = db.session.execute(
        select(Stage.id).where(
            Stage.tenant_id == tenant_id,
            Stage.entity_type == entity_type,
            Stage.is_active.is_(True),
        ).limit(1)
    ).first()
    return tenant_id if has_own else None


def _edge_owner(tenant_id: int | None, entity_type: str, from_stage_id: int | None) -> int | None:
    """Graph whose edges leave ``from_stage_id``.

    A job still on a shared stage keeps following the system graph after its
    tenant authors its own stages.
    """
    if from_stage_id is not None:
        stage = db.session.get(Stage, from_stage_id)
        if stage is not None and stage.is_shared:
            return None
    return graph_tenant(tenant_id, entity_type)


def active_stages(tenant_id: int | None, entity_type: str = "job") -> list[Stage]:
    owner = graph_tenant(tenant_id, entity_type)
    return list(db.session.execute(
        select(Stage).where(
            _tenant_clause(Stage, owner),
            Stage.entity_type == entity_type,
            Stage.is_active.is_(True),
        ).order_by(Stage.sequence_order)
    ).scalars())


def allowed_next(tenant_id: int | None, entity_type: str, from_stage_id: int | None) -> set[Stage]:
    """Stages reachable in one move from ``from_stage_id`` (None = no stage yet)."""
    owner = _edge_owner(tenant_id, entity_type, from_stage_id)
    edges = db.session.execute(
        select(StageTransition).where(
            _tenant_clause(StageTransition, owner),
            StageTransition.entity_type == entity_type,
            _nullable_eq(StageTransition.from_stage_id, from_stage_id),
        )
    ).scalars()
    targets = {edge.to_stage for edge in edges if edge.to_stage is not None and edge.to_stage.is_active}

    if from_stage_id is None and not targets:
        first = db.session.execute(
            select(Stage).where(
                _tenant_clause(Stage, owner),
                Stage.entity_type == entity_type,
                Stage.is_active.is_(True),
            ).order_by(Stage.sequence_order).limit(1)
        ).scalar_one_or_none()
        if first is not None:
            targets = {first}
    return targets


def _label(stage_id):
    if stage_id is None:
        return None
    stage = db.session.get(Stage, stage_id)
    return stage.name if stage else stage_id


def validate_move(tenant_id: int | None, entity_type: str,
                  from_stage_id: int | None, to_stage_id: int) -> Stage:
    """Return the target stage or raise ``InvalidTransition``."""
    allowed = allowed_next(tenant_id, entity_type, from_stage_id)
    allowed_sorted = sorted(allowed, key=lambda s: s.sequence_order)
    target = next((s for s in allowed if s.id == to_stage_id), None)
    if target is None:
        raise InvalidTransition(
            source=_label(from_stage_id),
            target=_label(to_stage_id),
            allowed=[{"id": s.id, "name": s.name} for s in allowed_sorted],
            reason="target stage is not reachable from the current stage",
        )
    return target


def allowed_statuses(from_status: str) -> set[str]:
    """Statuses reachable by a status-only move."""
    return set(load_graph_config().get("status_transitions", {}).get(from_status, []))


def validate_status_move(from_status: str, to_status: str) -> None:
    if to_status not in JOB_STATUSES:
        raise ValidationError(f"Unknown status '{to_status}'", details={"status": sorted(JOB_STATUSES)})
    allowed = allowed_statuses(from_status)
    if to_status not in allowed:
        raise InvalidTransition(source=from_status, target=to_status, allowed=sorted(allowed),
                                reason="status change not allowed")


def match_response_edge(tenant_id: int | None, entity_type: str, from_stage_id: int | None,
                        response_value) -> StageTransition | None:
    """The edge out of ``from_stage_id`` whose trigger matches the answer."""
    if from_stage_id is None or response_value is None:
        return None
    answer = str(response_value).strip().lower()
    owner = _edge_owner(tenant_id, entity_type, from_stage_id)
    edges = db.session.execute(
        select(StageTransition).where(
            _tenant_clause(StageTransition, owner),
            StageTransition.entity_type == entity_type,
            StageTransition.from_stage_id == from_stage_id,
            StageTransition.trigger_response.is_not(None),
            StageTransition.is_automatic.is_(True),
        ).order_by(StageTransition.id)
    ).scalars()
    for edge in edges:
        if edge.trigger_response.strip().lower() == answer and edge.to_stage.is_active:
            return edge
    return None


# ═════════════════════════════════════════════════════════════════════════════
# Stage administration
# ═════════════════════════════════════════════════════════════════════════════


def create_stage(principal, *, tenant_id: int | None, name: str, sequence_order: int,
                 maps_to_status: str = "active", entity_type: str = "job", **extra) -> Stage:
    """Add a stage to a tenant graph (or the system graph for admins)."""
    require(principal, "create", ResourceRef("Stage", None, tenant_id))

    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    if maps_to_status not in JOB_STATUSES:
        raise ValidationError(f"Unknown status '{maps_to_status}'",
                              details={"maps_to_status": sorted(JOB_STATUSES)})
    if entity_type not in ENTITY_TYPES:
        raise ValidationError(f"Unknown entity type '{entity_type}'",
                              details={"entity_type": sorted(ENTITY_TYPES)})
    stage_type = extra.get("stage_type", "standard")
    if stage_type not in STAGE_TYPES:
        raise ValidationError(f"Unknown stage type '{stage_type}'",
                              details={"stage_type": sorted(STAGE_TYPES)})
    if not isinstance(sequence_order, int) or sequence_order <= 0:
        raise ValidationError("sequence_order must be a positive integer",
                              details={"sequence_order": "invalid"})

    clash = db.session.execute(
        select(Stage.id).where(
            _tenant_clause(Stage, tenant_id),
            Stage.entity_type == entity_type,
            Stage.sequence_order == sequence_order,
        )
    ).first()
    if clash is not None:
        raise ValidationError(
            f"sequence_order {sequence_order} already used for {entity_type}",
            details={"sequence_order": "duplicate"},
        )

    stage = Stage(
        tenant_id=tenant_id,
        entity_type=entity_type,
        name=name,
        sequence_order=sequence_order,
        maps_to_status=maps_to_status,
        description=extra.get("description", ""),
        color=extra.get("color", "#64748b"),
        stage_type=stage_type,
    )
    db.session.add(stage)
    db.session.commit()
    logger.info("Stage %s '%s' created", stage.id, name,
                extra={"tenant_id": tenant_id, "stage_id": stage.id, "event_type": "stage_created"})
    return stage


def create_transition(principal, from_stage_id: int | None, to_stage_id: int,
                      trigger_response: str | None = None) -> StageTransition:
    """Add an edge between two stages of the same graph."""
    to_stage = db.session.get(Stage, to_stage_id)
    if to_stage is None:
        raise NotFoundError(resource="Stage", resource_id=to_stage_id)
    require(principal, "update", to_stage)

    if from_stage_id is not None:
        from_stage = db.session.get(Stage, from_stage_id)
        if from_stage is None:
            raise NotFoundError(resource="Stage", resource_id=from_stage_id)
        if from_stage_id == to_stage_id:
            raise ValidationError("A stage cannot transition to itself")
        if (from_stage.tenant_id, from_stage.entity_type) != (to_stage.tenant_id, to_stage.entity_type):
            raise ValidationError("Both stages must belong to the same graph")

    edge = StageTransition(
        tenant_id=to_stage.tenant_id,
        entity_type=to_stage.entity_type,
        from_stage_id=from_stage_id,
        to_stage_id=to_stage_id,
        trigger_response=trigger_response,
    )
    db.session.add(edge)
    db.session.commit()
    return edge


def deactivate_stage(principal, stage_id: int) -> Stage:
    """Retire a stage. Jobs already on it stay until their next move."""
    stage = load_for(principal, Stage, stage_id, "update")
    if stage.is_active:
        stage.is_active = False
        db.session.commit()
        logger.info("Stage %s deactivated", stage.id,
                    extra={"tenant_id": stage.tenant_id, "stage_id": stage.id,
                           "event_type": "stage_deactivated"})
    return stage


def stage_reference_count(stage_id: int) -> int:
    """Rows that would be lost or orphaned by deleting the stage.

    Edges and unanswered questions are graph configuration and go with it.
    """
    jobs = db.session.execute(
        select(func.count(Job.id)).where(Job.current_stage_id == stage_id)
    ).scalar_one()
    records = db.session.execute(
        select(func.count(TransitionRecord.id)).where(
            (TransitionRecord.from_stage_id == stage_id) | (TransitionRecord.to_stage_id == stage_id)
        )
    ).scalar_one()
    metrics = db.session.execute(
        select(func.count(StagePerformanceMetric.id)).where(StagePerformanceMetric.stage_id == stage_id)
    ).scalar_one()
    responses = db.session.execute(
        select(func.count(QuestionResponse.id))
        .join(StageQuestion, QuestionResponse.question_id == StageQuestion.id)
        .where(StageQuestion.stage_id == stage_id)
    ).scalar_one()
    reminders = db.session.execute(
        select(func.count(Reminder.id))
        .join(StageQuestion, Reminder.question_id == StageQuestion.id)
        .where(StageQuestion.stage_id == stage_id)
    ).scalar_one()
    return jobs + records + metrics + responses + reminders


def delete_stage(principal, stage_id: int) -> None:
    """Delete an unreferenced stage; referenced stages must be deactivated."""
    stage = load_for(principal, Stage, stage_id, "delete")
    refs = stage_reference_count(stage.id)
    if refs:
        raise ValidationError(
            f"Stage '{stage.name}' is referenced by jobs, history or answers; deactivate it instead",
            details={"references": refs},
        )
    db.session.delete(stage)
    db.session.commit()
    logger.info("Stage %s deleted", stage_id,
                extra={"tenant_id": stage.tenant_id, "stage_id": stage_id, "event_type": "stage_deleted"})
