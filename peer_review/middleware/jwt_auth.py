"""
JWT Auth Middleware — parses the Bearer token and sets ``g.actor``.

Read endpoints accept anonymous callers (``g.actor`` stays None and the
service layer decides).  Mutating endpoints require a valid token and
answer 401 otherwise.
"""

import logging

import jwt as pyjwt
from flask import g, request

from peer_review.services.jwt_service import actor_from_payload, decode_access_token
from peer_review.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
)

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def _resolve_actor():
    """Return (actor, error_message)."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None, "Bearer token required"

    token = auth_header[7:]  # Strip "Bearer "
    try:
        payload = decode_access_token(token)
        return actor_from_payload(payload), None
    except pyjwt.ExpiredSignatureError:
        return None, "Token expired"
    except pyjwt.InvalidTokenError as exc:
        logger.info("Rejected bearer token: %s", exc, extra={"path": request.path})
        return None, "Invalid token"


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.actor = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return None
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return None

        actor, error = _resolve_actor()
        g.actor = actor
        if actor is None and request.method in MUTATING_METHODS:
            return api_error(E.UNAUTHENTICATED, error)
        return None
