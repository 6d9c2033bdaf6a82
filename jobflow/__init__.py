"""
jobflow — Workflow Engine
Flask Application Factory.

Usage:
    from jobflow import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from jobflow.config import config
from jobflow.models import db
from jobflow.middleware.logging_config import configure_logging
from jobflow.middleware.timing import init_request_timing
from jobflow.middleware.rate_limiter import init_rate_limits
from jobflow.middleware.jwt_auth import init_jwt_middleware

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit; applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing + JWT principal resolution ────────────────────────
    init_request_timing(app)
    init_jwt_middleware(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from jobflow.models import auth as _auth_models             # noqa: F401
    from jobflow.models import workflow as _workflow_models     # noqa: F401
    from jobflow.models import history as _history_models       # noqa: F401
    from jobflow.models import reminder as _reminder_models     # noqa: F401
    from jobflow.models import scheduling as _scheduling_models  # noqa: F401

    # ── Write guards: tenant_id and append-only rows ─────────────────────
    from jobflow.models.base import register_tenant_guard
    from jobflow.models.immutability import register_immutability_listeners
    register_tenant_guard()
    register_immutability_listeners()

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from jobflow.blueprints import register_error_handlers
    from jobflow.blueprints.workflow_bp import workflow_bp
    from jobflow.blueprints.admin_bp import admin_bp
    from jobflow.blueprints.health_bp import health_bp

    app.register_blueprint(workflow_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(health_bp)

    register_error_handlers(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("jobflow.services.scheduled_jobs")  # registers @register_job handlers
    from jobflow.services.scheduler_service import SchedulerService as _SchedulerSvc
    from jobflow.services.notification_queue import LoggingDeliveryTransport
    _SchedulerSvc.init_app(app)
    app.extensions.setdefault("delivery_transport", LoggingDeliveryTransport())

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-default-stages")
    @click.option("--path", default=None, help="Workflow JSON (defaults to WORKFLOW_CONFIG_PATH).")
    def seed_default_stages_cmd(path):
        """Seed the shared stage graph, transitions and questions."""
        from jobflow.services.stage_graph import seed_default_graph
        summary = seed_default_graph(path or app.config.get("WORKFLOW_CONFIG_PATH"))
        logger.info("Seeded default workflow: %s", summary)
        click.echo(summary)

    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        """Run one registered background job (for cron / worker use)."""
        result = _SchedulerSvc.run_job(job_name)
        click.echo(result)
        if result["status"] not in ("success", "skipped"):
            raise SystemExit(1)

    @app.cli.command("issue-token")
    @click.argument("user_id", type=int)
    def issue_token_cmd(user_id):
        """Print an access token for a user (development only)."""
        from jobflow.services.jwt_service import generate_access_token
        click.echo(generate_access_token(user_id))

    return app
