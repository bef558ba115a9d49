"""
Peer Review Programme
Blueprint registry and shared error handlers.

Services raise the exceptions of ``peer_review.core.exceptions``; every API
blueprint maps them to HTTP responses the same way through
``register_error_handlers``.
"""

import logging

from flask import request
from werkzeug.exceptions import HTTPException

from peer_review.core.exceptions import (
    CompositionInvalidError,
    ConflictError,
    ConflictOfInterestError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from peer_review.models import db
from peer_review.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def register_error_handlers(bp):
    """Attach the domain exception → JSON error mapping to *bp*."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        db.session.rollback()
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ForbiddenError)
    def _handle_forbidden(error: ForbiddenError):
        db.session.rollback()
        logger.info("Forbidden: %s", error, extra={"actor_id": error.user_id})
        return api_error(E.FORBIDDEN, str(error), details={"action": error.action})

    @bp.errorhandler(InvalidTransitionError)
    def _handle_invalid_transition(error: InvalidTransitionError):
        db.session.rollback()
        return api_error(
            E.INVALID_TRANSITION, str(error),
            details={
                "entity": error.entity,
                "current_status": error.current_status,
                "target_status": error.target_status,
            },
        )

    @bp.errorhandler(ConflictOfInterestError)
    def _handle_conflict_of_interest(error: ConflictOfInterestError):
        db.session.rollback()
        return api_error(E.CONFLICT_OF_INTEREST, str(error), details={"violations": error.violations})

    @bp.errorhandler(CompositionInvalidError)
    def _handle_composition(error: CompositionInvalidError):
        db.session.rollback()
        return api_error(E.COMPOSITION_INVALID, str(error), details={"violations": error.violations})

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        db.session.rollback()
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        db.session.rollback()
        return api_error(E.CONFLICT_DUPLICATE, str(error), details={"field": error.field})

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        db.session.rollback()
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")

    return bp


def as_bool(value) -> bool:
    """Interpret JSON / query-string flags ("true", "1", True)."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def as_int(value, field: str):
    """Return ``(int_value, None)`` or ``(None, error_response)``."""
    if value is None:
        return None, None
    if isinstance(value, bool):
        return None, api_error(E.BAD_REQUEST, f"{field} must be an integer")
    try:
        return int(value), None
    except (TypeError, ValueError):
        return None, api_error(E.BAD_REQUEST, f"{field} must be an integer")
