"""
JWT Auth Middleware — parses the Bearer token and resolves the principal.

    Authorization: Bearer <token>
        → g.jwt_user_id   (the token's ``sub``)
        → g.principal     (Tenant Directory lookup; unresolved if unknown)

Requests without a valid token leave both as None; blueprints answer
401 through ``current_principal()``.
"""

import logging

import jwt as pyjwt
from flask import g, request

from jobflow.services.jwt_service import decode_access_token
from jobflow.services.tenant_directory import resolve_principal

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
)


class Unauthenticated(Exception):
    """No valid Bearer token on an authenticated route."""


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.principal = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]
        try:
            payload = decode_access_token(token)
        except pyjwt.ExpiredSignatureError:
            logger.info("Expired access token on %s", path)
            return
        except pyjwt.InvalidTokenError:
            logger.info("Invalid access token on %s", path)
            return

        g.jwt_user_id = payload.get("sub")
        g.principal = resolve_principal(g.jwt_user_id)


def current_principal():
    """The request's resolved principal; raises ``Unauthenticated`` without a token."""
    principal = getattr(g, "principal", None)
    if principal is None:
        raise Unauthenticated("Authentication required")
    return principal
