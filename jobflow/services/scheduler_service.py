"""
Scheduler Service — polled background jobs.

There is no in-process scheduler loop. Each registered job is a plain
function run inside an app context, either by an external cron/worker
(``flask run-job <name>``) or manually through the admin API. Every run
is recorded on its ScheduledJob row.

Architecture:
    - register_job(name): decorator adding a function to the registry
    - SchedulerService:   persistence, execution and enable/disable
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from flask import Flask

from jobflow.models import db
from jobflow.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("reminder_dispatch")
        def dispatch_reminders(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return dict(_job_registry)


class SchedulerService:
    """Runs registered jobs within the Flask app context and records each run."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        created = []
        for name, fn in _job_registry.items():
            if ScheduledJob.query.filter_by(job_name=name).first():
                continue
            job = ScheduledJob(
                job_name=name,
                description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                schedule_type="interval",
                schedule_config=_get_default_schedule(name),
                status="active",
                is_enabled=True,
            )
            db.session.add(job)
            created.append(job)
        if created:
            db.session.commit()
            logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """Execute one job by name and record the run.

        Returns:
            Dict with job_name, status, duration_ms, result, error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        with cls._app.app_context():
            cls.ensure_jobs_registered()
            job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
            if job_record is not None and not job_record.is_enabled:
                return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                        "result": None, "error": "Job is disabled"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc)

        duration_ms = int((time.monotonic() - start) * 1000)

        try:
            with cls._app.app_context():
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record:
                    job_record.record_run(
                        status=status,
                        duration_ms=duration_ms,
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=error,
                    )
                    db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name)

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()


def _get_default_schedule(job_name: str) -> dict:
    defaults = {
        "reminder_dispatch": {"minutes": 5, "description": "Every 5 minutes"},
        "notification_delivery": {"minutes": 1, "description": "Every minute"},
        "aggregate_refresh_retry": {"minutes": 15, "description": "Every 15 minutes"},
    }
    return defaults.get(job_name, {"hours": 1, "description": "Hourly"})
