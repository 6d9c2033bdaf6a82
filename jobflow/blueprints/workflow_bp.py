"""
jobflow — Workflow Blueprint.

Endpoints (all under /api/v1, Bearer JWT required):
    POST   /jobs/<id>/transition       move a job to a stage or status
    POST   /jobs/<id>/override         admin/manager stage override
    GET    /jobs/<id>/allowed-next     reachable stages and statuses
    GET    /jobs/<id>/history          paginated transition records
    GET    /jobs/<id>/timeline         history periods with durations
    POST   /jobs/<id>/responses        answer a stage question
    GET    /stages                     stages of the caller's graph
    POST   /stages                     create a tenant stage
    POST   /stages/<id>/deactivate     retire a stage
    DELETE /stages/<id>                delete an unreferenced stage
    GET    /stages/rollup              jobs and durations per stage
"""

import logging

from flask import Blueprint, jsonify, request

from jobflow.blueprints import page_args
from jobflow.core.exceptions import ValidationError
from jobflow.middleware.jwt_auth import current_principal
from jobflow.services import audit_log, stage_graph, transition_engine

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")


def _optional_int(data, key):
    value = data.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer", details={key: "invalid"})


# ═══════════════════════════════════════════════════════════════════════════
#  JOB TRANSITIONS
# ═══════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/jobs/<int:job_id>/transition", methods=["POST"])
def transition_job(job_id):
    """Apply a stage or status transition.

    Body: {"stage_id": 3} or {"status": "on_hold"}, optional "notes", "expected_version".
    """
    principal = current_principal()
    data = request.get_json(silent=True) or {}
    target = transition_engine.parse_target(data)

    result = transition_engine.apply_transition(
        principal, job_id, target, data.get("notes", ""),
        expected_version=_optional_int(data, "expected_version"),
    )
    return jsonify(result.to_dict()), 200


@workflow_bp.route("/jobs/<int:job_id>/override", methods=["POST"])
def override_job_stage(job_id):
    principal = current_principal()
    data = request.get_json(silent=True) or {}
    stage_id = _optional_int(data, "stage_id")
    if stage_id is None:
        raise ValidationError("stage_id is required", details={"stage_id": "required"})

    result = transition_engine.admin_override_stage(
        principal, job_id, stage_id, data.get("reason", ""),
        expected_version=_optional_int(data, "expected_version"),
    )
    return jsonify(result.to_dict()), 200


@workflow_bp.route("/jobs/<int:job_id>/allowed-next", methods=["GET"])
def allowed_next(job_id):
    return jsonify(transition_engine.allowed_targets(current_principal(), job_id))


@workflow_bp.route("/jobs/<int:job_id>/history", methods=["GET"])
def job_history(job_id):
    limit, offset = page_args()
    return jsonify(audit_log.list_history(current_principal(), job_id, limit, offset))


@workflow_bp.route("/jobs/<int:job_id>/timeline", methods=["GET"])
def job_timeline(job_id):
    timeline = audit_log.status_timeline(current_principal(), job_id)
    return jsonify({"job_id": job_id, "items": timeline, "total": len(timeline)})


@workflow_bp.route("/jobs/<int:job_id>/responses", methods=["POST"])
def answer_question(job_id):
    """Record a question response; may schedule a reminder and move the job."""
    principal = current_principal()
    data = request.get_json(silent=True) or {}
    question_id = _optional_int(data, "question_id")
    if question_id is None:
        raise ValidationError("question_id is required", details={"question_id": "required"})

    enabled = data.get("reminder_enabled")
    result = transition_engine.record_response(
        principal, job_id, question_id, data.get("response_value"),
        reminder_enabled=None if enabled is None else bool(enabled),
        reminder_offset_hours=_optional_int(data, "reminder_offset_hours"),
    )
    return jsonify(result), 201


# ═══════════════════════════════════════════════════════════════════════════
#  STAGES
# ═══════════════════════════════════════════════════════════════════════════

@workflow_bp.route("/stages", methods=["GET"])
def list_stages():
    principal = current_principal()
    entity_type = request.args.get("entity_type", "job")
    stages = stage_graph.active_stages(principal.tenant_id, entity_type)
    return jsonify({"items": [s.to_dict() for s in stages], "total": len(stages)})


@workflow_bp.route("/stages", methods=["POST"])
def create_stage():
    principal = current_principal()
    data = request.get_json(silent=True) or {}
    tenant_id = data.get("tenant_id", principal.tenant_id) if principal.is_cross_tenant_admin \
        else principal.tenant_id

    stage = stage_graph.create_stage(
        principal,
        tenant_id=tenant_id,
        name=(data.get("name") or "").strip(),
        sequence_order=_optional_int(data, "sequence_order"),
        maps_to_status=data.get("maps_to_status", "active"),
        entity_type=data.get("entity_type", "job"),
        description=data.get("description", ""),
        color=data.get("color", "#64748b"),
        stage_type=data.get("stage_type", "standard"),
    )
    return jsonify(stage.to_dict()), 201


@workflow_bp.route("/stages/<int:stage_id>/deactivate", methods=["POST"])
def deactivate_stage(stage_id):
    stage = stage_graph.deactivate_stage(current_principal(), stage_id)
    return jsonify(stage.to_dict())


@workflow_bp.route("/stages/<int:stage_id>", methods=["DELETE"])
def delete_stage(stage_id):
    stage_graph.delete_stage(current_principal(), stage_id)
    return jsonify({"deleted": True, "id": stage_id})


@workflow_bp.route("/stages/rollup", methods=["GET"])
def stage_rollup():
    principal = current_principal()
    entity_type = request.args.get("entity_type", "job")
    rows = audit_log.stage_rollup(principal, entity_type)
    return jsonify({"entity_type": entity_type, "items": rows})
