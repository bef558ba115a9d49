"""
Review Lifecycle Service

Owns the review status machine:

    REQUESTED ──approve──▶ APPROVED ──▶ PLANNING ──▶ SCHEDULED ──▶ IN_PROGRESS
        │                                                              │
        └─reject─▶ CANCELLED ◀──────── cancel (any active state) ──────┘
                                                                       ▼
              COMPLETED ◀── REPORT_REVIEW ◀──▶ REPORT_DRAFTING ◀── complete_fieldwork

Every mutation runs as one transaction: the review row is locked, the
capability is checked first, then the edge and its guards, then status and
derived side-state are written and committed together.  Events are dispatched
after the commit.

Usage:
    from peer_review.services.review_lifecycle import decide_approval, transition_status

    decide_approval(review_id=7, status="REJECTED", actor=actor, comments="insufficient documentation")
    transition_status(review_id=7, target="SCHEDULED", actor=actor)
"""

import logging
from datetime import date, datetime, timezone

from flask import current_app
from sqlalchemy import select

from peer_review.core.exceptions import ConflictError, ForbiddenError, InvalidTransitionError, ValidationError
from peer_review.models import db
from peer_review.models.audit import AuditLog, write_audit
from peer_review.models.organization import Organization
from peer_review.models.review import (
    ACTIVE_REVIEW_STATUSES,
    DECISION_STATUSES,
    REVIEW_STATUS_VALUES,
    REVIEW_TYPES,
    TERMINAL_REVIEW_STATUSES,
    ApprovalDecision,
    ApprovalStatus,
    InvitationStatus,
    Review,
    ReviewApproval,
    ReviewStatus,
    TeamRole,
    validate_review_transition,
)
from peer_review.services.checklist_service import seed_checklist_items
from peer_review.services.code_generator import generate_review_reference
from peer_review.services.helpers.queries import get_for_update, get_or_404
from peer_review.services.helpers.validation import require_choice, require_min_length
from peer_review.services.notification import NotificationService
from peer_review.services.permission import (
    Actor,
    can_approve,
    can_assign_team,
    can_manage_review,
    can_request_review,
    require,
)

logger = logging.getLogger(__name__)

# Phase entered together with a status.
_PHASE_FOR_STATUS = {
    ReviewStatus.IN_PROGRESS: "ON_SITE",
    ReviewStatus.REPORT_DRAFTING: "REPORTING",
    ReviewStatus.REPORT_REVIEW: "REPORTING",
    ReviewStatus.COMPLETED: "FOLLOW_UP",
    ReviewStatus.CANCELLED: "CLOSED",
}

_EDITABLE_FIELDS = (
    "requested_start_date",
    "requested_end_date",
    "planned_start_date",
    "planned_end_date",
    "areas_in_scope",
    "language_preference",
    "special_requirements",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def dispatch_status_changed(review_id: int, from_status: str, to_status: str, actor_id: int | None,
                            reason: str | None = None) -> None:
    """Post-commit ``review.status_changed`` event."""
    NotificationService.dispatch("review.status_changed", {
        "review_id": review_id,
        "from_status": from_status,
        "to_status": to_status,
        "actor_id": actor_id,
        "reason": reason,
    })


def append_transition_note(review: Review, from_status: str, to_status: str, notes: str | None) -> None:
    """Append a transition note to the review's free-text requirements."""
    if not notes:
        return
    stamp = _utcnow().strftime("%Y-%m-%d %H:%M")
    line = f"[{stamp}] {from_status} -> {to_status}: {notes.strip()}"
    review.special_requirements = f"{review.special_requirements}\n{line}" if review.special_requirements else line


def _check_dates(start: date | None, end: date | None, field: str) -> None:
    if start and end and end < start:
        raise ValidationError(f"{field} end date must not be before its start date", details={field: "end before start"})


# ── Request ──────────────────────────────────────────────────────────────────

def request_review(actor: Actor, data: dict) -> dict:
    """
    Create a review request for a host organization.

    Organization roles may only request reviews of their own organization.
    A host may have at most one active review at a time.

    Raises:
        ForbiddenError: actor may not request this review.
        NotFoundError: host organization does not exist.
        ConflictError: host already has an active review.
        ValidationError: malformed type, dates or team size bounds.
    """
    require(actor, "request_review", actor is not None and can_request_review(actor.role))
    host_id = data.get("host_organization_id")
    if not can_assign_team(actor.role) and actor.organization_id != host_id:
        raise ForbiddenError(actor.user_id, "request_review", "may only request reviews of own organization")

    get_or_404(Organization, host_id)

    review_type = require_choice(data.get("review_type", "FULL"), "review_type", REVIEW_TYPES)
    _check_dates(data.get("requested_start_date"), data.get("requested_end_date"), "requested")

    min_size = data.get("min_team_size") or current_app.config.get("MIN_TEAM_SIZE", 2)
    max_size = data.get("max_team_size") or current_app.config.get("MAX_TEAM_SIZE", 5)
    if min_size < 1 or min_size > max_size:
        raise ValidationError(
            "Team size bounds are invalid",
            details={"min_team_size": min_size, "max_team_size": max_size},
        )

    active = db.session.execute(
        select(Review.id).where(
            Review.host_organization_id == host_id,
            Review.status.in_([s.value for s in ACTIVE_REVIEW_STATUSES]),
        )
    ).first()
    if active is not None:
        raise ConflictError("Active review", "host_organization_id", host_id)

    review = Review(
        reference_number=generate_review_reference(),
        host_organization_id=host_id,
        review_type=review_type,
        status=ReviewStatus.REQUESTED.value,
        phase="PLANNING",
        requested_start_date=data.get("requested_start_date"),
        requested_end_date=data.get("requested_end_date"),
        areas_in_scope=list(data.get("areas_in_scope") or []),
        language_preference=data.get("language_preference"),
        min_team_size=min_size,
        max_team_size=max_size,
        special_requirements=data.get("special_requirements"),
        created_by_id=actor.user_id,
    )
    db.session.add(review)
    db.session.flush()
    seed_checklist_items(review)

    write_audit(
        entity_type="review", entity_id=review.id, review_id=review.id,
        action="review.request", actor_user_id=actor.user_id,
        diff={"status": [None, review.status], "reference_number": review.reference_number},
    )
    db.session.commit()

    logger.info(
        "Review requested",
        extra={"review_id": review.id, "actor_id": actor.user_id, "reference": review.reference_number},
    )
    NotificationService.dispatch("review.requested", {
        "review_id": review.id,
        "reference_number": review.reference_number,
        "host_organization_id": host_id,
        "actor_id": actor.user_id,
    })
    return review.to_dict()


def update_review(review_id: int, actor: Actor, data: dict) -> dict:
    """Edit scheduling and scope fields of a non-terminal review."""
    require(actor, "update_review", actor is not None and can_manage_review(actor.role))
    review = get_for_update(Review, review_id)
    if review.status in TERMINAL_REVIEW_STATUSES:
        raise InvalidTransitionError("Review", review.status, review.status, "review is closed")

    changes = {}
    for field in _EDITABLE_FIELDS:
        if field in data:
            old = getattr(review, field)
            setattr(review, field, data[field])
            changes[field] = [old, data[field]]
    _check_dates(review.requested_start_date, review.requested_end_date, "requested")
    _check_dates(review.planned_start_date, review.planned_end_date, "planned")

    if changes:
        write_audit(
            entity_type="review", entity_id=review.id, review_id=review.id,
            action="review.update", actor_user_id=actor.user_id, diff=changes,
        )
    db.session.commit()
    return review.to_dict()


# ── Approval ─────────────────────────────────────────────────────────────────

def decide_approval(review_id: int, status: str, actor: Actor, comments: str | None = None) -> dict:
    """
    Record an approval decision for a REQUESTED review.

    APPROVED moves the review to APPROVED, REJECTED cancels it with the comments
    as cancellation reason, DEFERRED leaves it REQUESTED.  The ReviewApproval row
    holds the latest decision; every decision is appended to the history.

    Raises:
        ForbiddenError: actor lacks approval capability.
        InvalidTransitionError: review is not REQUESTED.
        ValidationError: unknown decision, or REJECTED/DEFERRED without comments.
    """
    require(actor, "decide_approval", actor is not None and can_approve(actor.role))
    require_choice(status, "status", DECISION_STATUSES)

    review = get_for_update(Review, review_id)
    target = {
        ApprovalStatus.APPROVED.value: ReviewStatus.APPROVED.value,
        ApprovalStatus.REJECTED.value: ReviewStatus.CANCELLED.value,
        ApprovalStatus.DEFERRED.value: ReviewStatus.REQUESTED.value,
    }[status]
    if review.status != ReviewStatus.REQUESTED.value:
        raise InvalidTransitionError("Review", review.status, target, "only REQUESTED reviews can be decided")

    comments = (comments or "").strip() or None
    if status != ApprovalStatus.APPROVED.value and not comments:
        raise ValidationError(
            f"Comments are required for a {status} decision",
            details={"comments": "required"},
        )

    now = _utcnow()
    approval = review.approval
    if approval is None:
        approval = ReviewApproval(review_id=review.id, status=status)
        db.session.add(approval)
        review.approval = approval
    approval.status = status
    approval.approved_by_id = actor.user_id
    approval.approved_at = now
    approval.comments = comments

    db.session.add(ApprovalDecision(
        review_id=review.id, status=status, decided_by_id=actor.user_id, comments=comments,
    ))

    old_status = review.status
    review.status = target
    if target == ReviewStatus.CANCELLED.value:
        review.cancellation_reason = comments
        review.phase = _PHASE_FOR_STATUS[ReviewStatus.CANCELLED]

    write_audit(
        entity_type="review", entity_id=review.id, review_id=review.id,
        action="review.approval_decision", actor_user_id=actor.user_id,
        diff={"decision": status, "status": [old_status, target], "comments": comments},
    )
    db.session.commit()

    logger.info(
        "Review approval decided",
        extra={"review_id": review.id, "actor_id": actor.user_id, "decision": status},
    )
    NotificationService.dispatch("review.approval_decided", {
        "review_id": review.id, "decision": status, "actor_id": actor.user_id, "comments": comments,
    })
    if target != old_status:
        dispatch_status_changed(review.id, old_status, target, actor.user_id, comments)
    return review.to_dict()


def get_approval_history(review_id: int) -> list[dict]:
    """Every approval decision of a review, oldest first."""
    get_or_404(Review, review_id)
    decisions = db.session.execute(
        select(ApprovalDecision)
        .where(ApprovalDecision.review_id == review_id)
        .order_by(ApprovalDecision.created_at, ApprovalDecision.id)
    ).scalars().all()
    return [d.to_dict() for d in decisions]


# ── Status machine ───────────────────────────────────────────────────────────

def _check_guards(review: Review, target: str, reason: str | None) -> None:
    seated = review.seated_members
    if target == ReviewStatus.PLANNING.value and not seated:
        raise ValidationError("A review needs at least one team member before planning", details={"team": "empty"})

    if target == ReviewStatus.SCHEDULED.value:
        missing = []
        if not review.planned_start_date or not review.planned_end_date:
            missing.append("planned dates")
        if not seated:
            missing.append("team members")
        if review.lead_member is None:
            missing.append("lead reviewer")
        if missing:
            raise ValidationError(
                "Cannot schedule review: missing " + ", ".join(missing),
                details={"missing": missing},
            )

    if target == ReviewStatus.CANCELLED.value:
        require_min_length(reason, "reason", label="Cancellation reason")


def _record_completion(review: Review) -> None:
    for member in review.team_members:
        if member.invitation_status != InvitationStatus.CONFIRMED.value:
            continue
        profile = member.reviewer_profile
        profile.reviews_completed = (profile.reviews_completed or 0) + 1
        if member.role == TeamRole.LEAD_REVIEWER.value:
            profile.reviews_as_lead = (profile.reviews_as_lead or 0) + 1


def transition_status(review_id: int, target: str, actor: Actor, notes: str | None = None,
                      reason: str | None = None) -> dict:
    """
    Move a review along one edge of the status machine.

    Raises:
        ForbiddenError: actor may not manage reviews (checked first).
        InvalidTransitionError: the edge does not exist.
        ValidationError: a guard failed, or the edge is owned by another operation.
    """
    require(actor, "transition_status", actor is not None and can_manage_review(actor.role))
    require_choice(target, "status", REVIEW_STATUS_VALUES)

    review = get_for_update(Review, review_id)
    current = review.status

    if current == ReviewStatus.REQUESTED.value and target == ReviewStatus.APPROVED.value:
        raise ValidationError(
            "Approve a review through its approval decision",
            details={"status": "use decide_approval"},
        )
    if not validate_review_transition(current, target):
        raise InvalidTransitionError("Review", current, target)
    if current == ReviewStatus.IN_PROGRESS.value and target == ReviewStatus.REPORT_DRAFTING.value:
        raise ValidationError(
            "Fieldwork must be completed through the fieldwork checklist",
            details={"status": "use complete_fieldwork"},
        )

    reason = reason or notes
    _check_guards(review, target, reason)

    review.status = target
    today = date.today()
    if target == ReviewStatus.IN_PROGRESS.value and review.actual_start_date is None:
        review.actual_start_date = today
    if target == ReviewStatus.COMPLETED.value:
        review.actual_end_date = today
        _record_completion(review)
    if target == ReviewStatus.CANCELLED.value:
        review.cancellation_reason = reason.strip()
    phase = _PHASE_FOR_STATUS.get(ReviewStatus(target))
    if phase:
        review.phase = phase
    append_transition_note(review, current, target, notes)

    write_audit(
        entity_type="review", entity_id=review.id, review_id=review.id,
        action="review.transition", actor_user_id=actor.user_id,
        diff={"status": [current, target], "notes": notes},
    )
    db.session.commit()

    logger.info(
        "Review status changed",
        extra={"review_id": review.id, "actor_id": actor.user_id, "from_status": current, "to_status": target},
    )
    dispatch_status_changed(review.id, current, target, actor.user_id, reason)
    return review.to_dict()


# ── Queries ──────────────────────────────────────────────────────────────────

def get_review(review_id: int) -> dict:
    review = get_or_404(Review, review_id)
    return review.to_dict(include_team=True)


def list_reviews(status: str | None = None, host_organization_id: int | None = None) -> list[dict]:
    stmt = select(Review).order_by(Review.id.desc())
    if status:
        stmt = stmt.where(Review.status == status)
    if host_organization_id:
        stmt = stmt.where(Review.host_organization_id == host_organization_id)
    return [r.to_dict() for r in db.session.execute(stmt).scalars().all()]


def get_audit_trail(review_id: int) -> list[dict]:
    """Audit rows recorded against a review and its children, oldest first."""
    get_or_404(Review, review_id)
    rows = db.session.execute(
        select(AuditLog).where(AuditLog.review_id == review_id).order_by(AuditLog.timestamp, AuditLog.id)
    ).scalars().all()
    return [r.to_dict() for r in rows]
