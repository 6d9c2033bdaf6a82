"""
Admin Blueprint — background processing and user administration.

Endpoints (all under /api/v1/admin, Bearer JWT required):
    POST  /reminders/process                 dispatch due reminders now
    GET   /reminders/stats                   reminder + notification queue counts
    GET   /scheduler/jobs                    registered jobs and last runs
    POST  /scheduler/jobs/<name>/run         run one job synchronously
    PATCH /scheduler/jobs/<name>             enable / disable a job
    PUT   /users/<id>/role                   change role (and tenant, admins only)
    DELETE /users/<id>                       deactivate a user

Processing and scheduler routes are restricted to cross-tenant admins.
User routes delegate the manager/admin rules to the Tenant Directory.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from jobflow.core.exceptions import NotFoundError, PermissionDenied, ValidationError
from jobflow.middleware.jwt_auth import current_principal
from jobflow.services import notification_queue, reminder_scheduler, tenant_directory
from jobflow.services.scheduler_service import SchedulerService, get_registered_jobs

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/api/v1/admin")

# ── Rate limiting ─────────────────────────────────────────────────────────
from jobflow import limiter  # noqa: E402

_process_limit = limiter.shared_limit("6/minute", scope="reminders_process")


def _require_cross_tenant_admin(action="update", resource="Admin"):
    principal = current_principal()
    if not principal.is_cross_tenant_admin:
        raise PermissionDenied(action=action, resource=resource,
                               reason="cross_tenant_admin_required")
    return principal


# ═══════════════════════════════════════════════════════════════
# Reminders
# ═══════════════════════════════════════════════════════════════

@admin_bp.route("/reminders/process", methods=["POST"])
@_process_limit
def process_reminders():
    """Dispatch up to REMINDER_BATCH_SIZE due reminders (default 50)."""
    principal = _require_cross_tenant_admin(resource="Reminder")
    data = request.get_json(silent=True) or {}
    batch = current_app.config.get("REMINDER_BATCH_SIZE", 50)
    try:
        limit = min(int(data.get("limit", batch)), batch)
    except (TypeError, ValueError):
        raise ValidationError("limit must be an integer", details={"limit": "invalid"})

    summary = reminder_scheduler.dispatch_due_reminders(limit=max(limit, 1))
    logger.info("Manual reminder processing by user %s: %s", principal.user_id, summary,
                extra={"user_id": principal.user_id, "event_type": "reminders_processed"})
    return jsonify(summary), 200


@admin_bp.route("/reminders/stats", methods=["GET"])
def reminder_stats():
    _require_cross_tenant_admin(action="read", resource="Reminder")
    return jsonify({
        "reminders": reminder_scheduler.reminder_stats(),
        "queue": notification_queue.queue_stats(),
    })


# ═══════════════════════════════════════════════════════════════
# Scheduler
# ═══════════════════════════════════════════════════════════════

@admin_bp.route("/scheduler/jobs", methods=["GET"])
def list_scheduled_jobs():
    _require_cross_tenant_admin(action="read", resource="ScheduledJob")
    SchedulerService.ensure_jobs_registered()
    jobs = SchedulerService.list_jobs()
    return jsonify({"items": jobs, "total": len(jobs)})


@admin_bp.route("/scheduler/jobs/<job_name>/run", methods=["POST"])
def run_scheduled_job(job_name):
    _require_cross_tenant_admin(resource="ScheduledJob")
    if job_name not in get_registered_jobs():
        raise NotFoundError(resource="ScheduledJob", resource_id=job_name)

    result = SchedulerService.run_job(job_name)
    status = 500 if result["status"] == "failed" else 200
    return jsonify(result), status


@admin_bp.route("/scheduler/jobs/<job_name>", methods=["PATCH"])
def toggle_scheduled_job(job_name):
    _require_cross_tenant_admin(resource="ScheduledJob")
    data = request.get_json(silent=True) or {}
    if "is_enabled" not in data:
        raise ValidationError("is_enabled is required", details={"is_enabled": "required"})

    SchedulerService.ensure_jobs_registered()
    job = SchedulerService.toggle_job(job_name, bool(data["is_enabled"]))
    if job is None:
        raise NotFoundError(resource="ScheduledJob", resource_id=job_name)
    return jsonify(job)


# ═══════════════════════════════════════════════════════════════
# Users
# ═══════════════════════════════════════════════════════════════

@admin_bp.route("/users/<int:user_id>/role", methods=["PUT"])
def change_user_role(user_id):
    data = request.get_json(silent=True) or {}
    role = data.get("role")
    if not role:
        raise ValidationError("role is required", details={"role": "required"})

    result = tenant_directory.set_role(current_principal(), user_id, role,
                                       tenant_id=data.get("tenant_id"))
    return jsonify(result)


@admin_bp.route("/users/<int:user_id>", methods=["DELETE"])
def deactivate_user(user_id):
    return jsonify(tenant_directory.deactivate_user(current_principal(), user_id))
