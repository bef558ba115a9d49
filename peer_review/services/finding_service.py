"""
Finding Service

Findings are raised by the review team while a review is in fieldwork or
reporting.  Non-conformities always require a corrective action plan and
start in CAP_REQUIRED; every other finding starts OPEN.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from peer_review.core.exceptions import InvalidTransitionError, ValidationError
from peer_review.models import db
from peer_review.models.audit import write_audit
from peer_review.models.finding import (
    FINDING_SEVERITIES,
    FINDING_TYPES,
    Finding,
    FindingStatus,
    validate_finding_transition,
)
from peer_review.models.review import Review, ReviewStatus
from peer_review.services.code_generator import generate_finding_reference
from peer_review.services.helpers.queries import get_for_update, get_or_404
from peer_review.services.helpers.validation import require_choice
from peer_review.services.notification import NotificationService
from peer_review.services.permission import REVIEWER_ROLES, Actor, can_edit_findings, require

logger = logging.getLogger(__name__)

FINDING_OPEN_REVIEW_STATUSES = frozenset({
    ReviewStatus.IN_PROGRESS,
    ReviewStatus.REPORT_DRAFTING,
    ReviewStatus.REPORT_REVIEW,
})

_UPDATABLE_FIELDS = ("title", "description", "severity", "target_close_date", "cap_required")


def is_review_team_member(review: Review, user_id: int) -> bool:
    return any(m.user_id == user_id for m in review.seated_members)


def can_act_for_review(actor: Actor, review: Review) -> bool:
    """Reviewer roles act only on reviews they sit on; managers on every review."""
    if actor is None or not can_edit_findings(actor.role):
        return False
    if actor.role in REVIEWER_ROLES:
        return is_review_team_member(review, actor.user_id)
    return True


def _require_text(data: dict, field: str) -> str:
    value = (data.get(field) or "").strip()
    if not value:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return value


def create_finding(review_id: int, actor: Actor, data: dict) -> dict:
    """
    Raise a finding on a review.

    Raises:
        ForbiddenError: actor is not on the team and not a manager.
        InvalidTransitionError: review is not in fieldwork or reporting.
        ValidationError: missing title/description or unknown type/severity.
    """
    review = get_for_update(Review, review_id)
    require(actor, "create_finding", can_act_for_review(actor, review), "only the review team may raise findings")
    if review.status not in FINDING_OPEN_REVIEW_STATUSES:
        raise InvalidTransitionError(
            "Review", review.status, review.status, "findings can only be raised during fieldwork or reporting",
        )

    finding_type = require_choice(data.get("finding_type"), "finding_type", FINDING_TYPES)
    severity = require_choice(data.get("severity", "MINOR"), "severity", FINDING_SEVERITIES)
    title = _require_text(data, "title")
    description = _require_text(data, "description")

    if finding_type == "NON_CONFORMITY":
        cap_required = True
        status = FindingStatus.CAP_REQUIRED.value
    else:
        cap_required = bool(data.get("cap_required", False))
        status = FindingStatus.CAP_REQUIRED.value if cap_required else FindingStatus.OPEN.value

    finding = Finding(
        review_id=review.id,
        organization_id=review.host_organization_id,
        reference_number=generate_finding_reference(review.id, review.reference_number),
        finding_type=finding_type,
        severity=severity,
        status=status,
        title=title,
        description=description,
        cap_required=cap_required,
        target_close_date=data.get("target_close_date"),
        created_by_id=actor.user_id,
    )
    db.session.add(finding)
    db.session.flush()

    write_audit(
        entity_type="finding", entity_id=finding.id, review_id=review.id,
        action="finding.create", actor_user_id=actor.user_id,
        diff={"status": [None, status], "finding_type": finding_type, "severity": severity},
    )
    db.session.commit()

    logger.info(
        "Finding created",
        extra={"review_id": review.id, "actor_id": actor.user_id, "finding_id": finding.id},
    )
    NotificationService.dispatch("finding.created", {
        "review_id": review.id,
        "finding_id": finding.id,
        "reference_number": finding.reference_number,
        "severity": severity,
        "actor_id": actor.user_id,
    })
    return finding.to_dict()


def apply_finding_status(finding: Finding, status: str) -> None:
    """Set the status and keep closed_at in step with it."""
    finding.status = status
    if status == FindingStatus.CLOSED.value:
        finding.closed_at = datetime.now(timezone.utc)
    else:
        finding.closed_at = None


def update_finding(finding_id: int, actor: Actor, data: dict) -> dict:
    """Edit finding fields and optionally move it along one status edge."""
    finding = get_for_update(Finding, finding_id)
    review = finding.review
    require(actor, "update_finding", can_act_for_review(actor, review), "only the review team may edit findings")
    if finding.status == FindingStatus.CLOSED.value:
        raise InvalidTransitionError("Finding", finding.status, data.get("status") or finding.status, "finding is closed")

    changes = {}
    if "severity" in data:
        require_choice(data["severity"], "severity", FINDING_SEVERITIES)
    for field in _UPDATABLE_FIELDS:
        if field in data:
            if field in ("title", "description"):
                _require_text(data, field)
            old = getattr(finding, field)
            setattr(finding, field, data[field])
            changes[field] = [old, data[field]]

    target = data.get("status")
    if target and target != finding.status:
        if not validate_finding_transition(finding.status, target):
            raise InvalidTransitionError("Finding", finding.status, target)
        if target == FindingStatus.CLOSED.value and finding.corrective_action_plan is not None:
            raise ValidationError(
                "Findings with a corrective action plan close with the plan",
                details={"status": "closed via CAP"},
            )
        if target == FindingStatus.CLOSED.value and finding.cap_required:
            raise ValidationError(
                "A finding that requires a corrective action plan cannot close without one",
                details={"status": "cap required"},
            )
        changes["status"] = [finding.status, target]
        apply_finding_status(finding, target)

    write_audit(
        entity_type="finding", entity_id=finding.id, review_id=finding.review_id,
        action="finding.update", actor_user_id=actor.user_id, diff=changes,
    )
    db.session.commit()
    return finding.to_dict()


def get_finding(finding_id: int) -> dict:
    finding = get_or_404(Finding, finding_id)
    data = finding.to_dict()
    cap = finding.corrective_action_plan
    data["corrective_action_plan"] = cap.to_dict() if cap else None
    return data


def list_findings(review_id: int) -> list[dict]:
    get_or_404(Review, review_id)
    findings = db.session.execute(
        select(Finding).where(Finding.review_id == review_id).order_by(Finding.id)
    ).scalars().all()
    return [f.to_dict() for f in findings]
