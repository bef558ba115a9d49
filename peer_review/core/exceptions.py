"""
Service-layer exception hierarchy.

Every guard in the services raises one of these types; blueprints register a
handler per type once and get consistent HTTP status codes everywhere.  None
of them is ever swallowed inside a service.

Usage:
    from peer_review.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Review", resource_id=42)
    raise ValidationError("Decline reason must be at least 10 characters",
                          details={"decline_reason": "min_length=10"})
"""


class NotFoundError(Exception):
    """Raised when a requested entity does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable entity name (e.g. "Review", "CAPEvidence").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ForbiddenError(Exception):
    """Raised when the acting user's role or ownership does not permit an action.

    Checked before any other guard of the operation.  Maps to HTTP 403.
    """

    def __init__(self, user_id: int | None, action: str, reason: str | None = None) -> None:
        self.user_id = user_id
        self.action = action
        self.reason = reason
        msg = f"User {user_id} is not permitted to '{action}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class InvalidTransitionError(Exception):
    """Raised when a state-machine edge does not exist or the source state forbids the action.

    Maps to HTTP 409.

    Args:
        entity: Entity name ("Review", "Finding", "CorrectiveActionPlan", ...).
        current: Current status.
        target: Requested status.
        reason: Optional explanation.
    """

    def __init__(self, entity: str, current: str, target: str, reason: str | None = None) -> None:
        self.entity = entity
        self.current_status = current
        self.target_status = target
        self.reason = reason
        msg = f"Cannot transition {entity} from {current} to {target}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class CompositionInvalidError(Exception):
    """Raised when a proposed team violates one or more composition rules.

    Carries every violation found, not just the first.  Maps to HTTP 422.
    """

    def __init__(self, violations: list[str]) -> None:
        self.violations = list(violations)
        super().__init__("Team composition invalid: " + "; ".join(self.violations))


class ConflictOfInterestError(Exception):
    """Raised when a reviewer has a hard conflict of interest with the host organization.

    Never overridable, whatever the caller's role.  Kept distinct from
    CompositionInvalidError so callers can message it specially.  Maps to HTTP 409.
    """

    def __init__(self, violations: list[str]) -> None:
        self.violations = list(violations)
        super().__init__("Conflict of interest: " + "; ".join(self.violations))


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate something that must be unique.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | int | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)
