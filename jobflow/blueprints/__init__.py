"""
jobflow — Blueprint registry.

Every blueprint raises service exceptions and lets the handlers registered
here turn them into the standard ``api_error`` envelope.
"""

import logging

from flask import request
from sqlalchemy.exc import SQLAlchemyError

from jobflow.core.exceptions import (
    ConflictStale,
    ImmutableRecordError,
    InvalidTransition,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from jobflow.middleware.jwt_auth import Unauthenticated
from jobflow.models import db
from jobflow.models.base import TenantReassignmentError
from jobflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def page_args(default_limit=50, max_limit=500):
    """Read limit/offset pagination from the query string.

    Query params:
        limit  — max items (default 50, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (limit, offset)
    """
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return max(limit, 1), offset


def register_error_handlers(app):
    """Map workflow exceptions to HTTP responses."""

    @app.errorhandler(Unauthenticated)
    def _unauthenticated(exc):
        return api_error(E.UNAUTHENTICATED, str(exc))

    @app.errorhandler(PermissionDenied)
    def _forbidden(exc):
        return api_error(E.FORBIDDEN, str(exc), details={
            "action": exc.action,
            "resource": exc.resource,
            "resource_id": exc.resource_id,
        })

    @app.errorhandler(NotFoundError)
    def _not_found(exc):
        return api_error(E.NOT_FOUND, str(exc))

    @app.errorhandler(InvalidTransition)
    def _invalid_transition(exc):
        return api_error(E.INVALID_TRANSITION, str(exc), details={
            "source": exc.source,
            "target": exc.target,
            "allowed": exc.allowed,
        })

    @app.errorhandler(ConflictStale)
    def _conflict(exc):
        return api_error(E.CONFLICT_STALE, str(exc), details={
            "job_id": exc.job_id,
            "expected_version": exc.expected_version,
            "actual_version": exc.actual_version,
            "retryable": True,
        })

    @app.errorhandler(ValidationError)
    def _validation(exc):
        return api_error(E.VALIDATION_RULE, str(exc), details=exc.details)

    @app.errorhandler(ImmutableRecordError)
    @app.errorhandler(TenantReassignmentError)
    def _integrity(exc):
        db.session.rollback()
        return api_error(E.VALIDATION_RULE, str(exc))

    @app.errorhandler(SQLAlchemyError)
    def _database(exc):
        db.session.rollback()
        logger.exception("Database error on %s %s", request.method, request.path)
        return api_error(E.DATABASE, "Database error")

    @app.errorhandler(404)
    def _route_not_found(exc):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def _method_not_allowed(exc):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def _rate_limited(exc):
        return {"error": "Too many requests", "retry_after": exc.description}, 429

    @app.errorhandler(500)
    def _server_error(exc):
        logger.error("500 error: %s", exc, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")
