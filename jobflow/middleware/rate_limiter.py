"""
Rate limiting configuration.

Applies per-blueprint and per-route limits using Flask-Limiter.
The Limiter instance is created in jobflow/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from jobflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WORKFLOW_LIMIT = "120/minute"
ADMIN_LIMIT = "60/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Reminder processing:  6/minute   (shared limit set in admin_bp)
        - Admin endpoints:      60/minute
        - Workflow endpoints:   120/minute
        - Health check:         exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("admin")
    if bp:
        limiter.limit(ADMIN_LIMIT)(bp)

    bp = app.blueprints.get("workflow")
    if bp:
        limiter.limit(WORKFLOW_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — admin: %s, workflow: %s",
        ADMIN_LIMIT, WORKFLOW_LIMIT,
    )
