"""
Corrective Action Plan Service

CAP lifecycle:

    DRAFT ──▶ SUBMITTED ──▶ UNDER_REVIEW ──▶ ACCEPTED ──▶ IN_PROGRESS ──▶ COMPLETED ──▶ VERIFIED ──▶ CLOSED
      ▲                          │                            ▲               │
      └──────── REJECTED ◀───────┘                            └─── failed ────┘
                                                                 verification

The host organization drafts, submits and executes the plan; the programme
reviews and accepts it; a verifier confirms effectiveness.  The parent
finding's status follows the plan in the same commit.
"""

import logging
from datetime import datetime, timezone

from peer_review.core.exceptions import ConflictError, InvalidTransitionError, ValidationError
from peer_review.models import db
from peer_review.models.audit import write_audit
from peer_review.models.cap import (
    CAP_EDITABLE_STATUSES,
    CAPMilestone,
    CAPStatus,
    CorrectiveActionPlan,
    EvidenceStatus,
    MilestoneStatus,
    validate_cap_transition,
)
from peer_review.models.finding import Finding, FindingStatus
from peer_review.services.finding_service import apply_finding_status, is_review_team_member
from peer_review.services.helpers.queries import get_for_update, get_or_404
from peer_review.services.helpers.validation import require_choice, require_min_length
from peer_review.services.notification import NotificationService
from peer_review.services.permission import (
    REVIEWER_ROLES,
    Actor,
    Role,
    can_create_cap,
    can_review_cap,
    can_verify_cap,
    require,
)

logger = logging.getLogger(__name__)

CAP_STATUS_VALUES = frozenset(s.value for s in CAPStatus)
MILESTONE_STATUS_VALUES = frozenset(s.value for s in MilestoneStatus)

MIN_VERIFICATION_METHOD_LENGTH = 5

# Finding status that follows each CAP status.
FINDING_STATUS_FOR_CAP = {
    CAPStatus.SUBMITTED: FindingStatus.CAP_SUBMITTED,
    CAPStatus.ACCEPTED: FindingStatus.CAP_ACCEPTED,
    CAPStatus.REJECTED: FindingStatus.CAP_REQUIRED,
    CAPStatus.IN_PROGRESS: FindingStatus.IN_PROGRESS,
    CAPStatus.VERIFIED: FindingStatus.VERIFICATION,
    CAPStatus.CLOSED: FindingStatus.CLOSED,
}

# Evidence in these states blocks verifying or closing the plan.
_OPEN_EVIDENCE_STATUSES = frozenset({EvidenceStatus.PENDING, EvidenceStatus.MORE_INFO_REQUIRED})

_CONTENT_FIELDS = ("root_cause", "corrective_action", "preventive_action", "due_date", "assigned_to_id")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_host_actor(actor: Actor, finding: Finding) -> bool:
    """Host-organization roles of the audited organization, or SUPER_ADMIN."""
    if actor is None or not can_create_cap(actor.role):
        return False
    return actor.role == Role.SUPER_ADMIN or actor.organization_id == finding.organization_id


def is_programme_reviewer(actor: Actor, finding: Finding, verify: bool = False) -> bool:
    """Review or verify capability; reviewer roles only for reviews they sit on."""
    if actor is None:
        return False
    allowed = can_verify_cap(actor.role) if verify else can_review_cap(actor.role)
    if not allowed:
        return False
    if actor.role in REVIEWER_ROLES:
        return is_review_team_member(finding.review, actor.user_id)
    return True


def _capability_for(cap: CorrectiveActionPlan, target: str, actor: Actor) -> bool:
    finding = cap.finding
    if target in (CAPStatus.UNDER_REVIEW, CAPStatus.ACCEPTED, CAPStatus.REJECTED, CAPStatus.CLOSED):
        return is_programme_reviewer(actor, finding)
    if target == CAPStatus.VERIFIED:
        return is_programme_reviewer(actor, finding, verify=True)
    if target == CAPStatus.IN_PROGRESS and cap.status == CAPStatus.COMPLETED:
        return is_programme_reviewer(actor, finding, verify=True)
    return is_host_actor(actor, finding)


def _require_evidence_reviewed(cap: CorrectiveActionPlan, outcome: str) -> None:
    open_evidence = [e.id for e in cap.evidence if e.status in _OPEN_EVIDENCE_STATUSES]
    if open_evidence:
        raise ValidationError(
            f"All evidence must be reviewed before the plan can be {outcome}",
            details={"open_evidence_ids": open_evidence},
        )


def _require_content(data: dict, field: str) -> str:
    value = (data.get(field) or "").strip()
    if not value:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return value


# ── Plan ─────────────────────────────────────────────────────────────────────

def create_cap(finding_id: int, actor: Actor, data: dict) -> dict:
    """
    Draft the corrective action plan of a finding.

    Raises:
        ForbiddenError: actor does not act for the host organization.
        ValidationError: finding needs no CAP, or required content is missing.
        ConflictError: the finding already has a CAP.
    """
    require(actor, "create_cap", actor is not None and can_create_cap(actor.role))
    finding = get_for_update(Finding, finding_id)
    require(actor, "create_cap", is_host_actor(actor, finding), "only the host organization may draft a CAP")

    if not finding.cap_required:
        raise ValidationError("This finding does not require a corrective action plan", details={"cap_required": False})
    if finding.status == FindingStatus.CLOSED.value:
        raise InvalidTransitionError("Finding", finding.status, FindingStatus.CAP_SUBMITTED.value, "finding is closed")
    if finding.corrective_action_plan is not None:
        raise ConflictError("CorrectiveActionPlan", "finding_id", finding_id)

    due_date = data.get("due_date")
    if due_date is None:
        raise ValidationError("due_date is required", details={"due_date": "required"})

    cap = CorrectiveActionPlan(
        finding_id=finding.id,
        status=CAPStatus.DRAFT.value,
        root_cause=_require_content(data, "root_cause"),
        corrective_action=_require_content(data, "corrective_action"),
        preventive_action=data.get("preventive_action"),
        due_date=due_date,
        assigned_to_id=data.get("assigned_to_id"),
        created_by_id=actor.user_id,
    )
    db.session.add(cap)
    if finding.status == FindingStatus.OPEN.value:
        apply_finding_status(finding, FindingStatus.CAP_REQUIRED.value)
    db.session.flush()

    write_audit(
        entity_type="cap", entity_id=cap.id, review_id=finding.review_id,
        action="cap.create", actor_user_id=actor.user_id,
        diff={"status": [None, cap.status], "finding_id": finding.id},
    )
    db.session.commit()
    logger.info(
        "CAP drafted",
        extra={"review_id": finding.review_id, "actor_id": actor.user_id, "cap_id": cap.id},
    )
    return cap.to_dict(include_children=True)


def update_cap(cap_id: int, actor: Actor, data: dict) -> dict:
    """Edit plan content; only while DRAFT or REJECTED."""
    cap = get_for_update(CorrectiveActionPlan, cap_id)
    require(actor, "update_cap", is_host_actor(actor, cap.finding), "only the host organization may edit a CAP")
    if cap.status not in CAP_EDITABLE_STATUSES:
        raise InvalidTransitionError(
            "CorrectiveActionPlan", cap.status, cap.status, "only DRAFT or REJECTED plans can be edited",
        )

    changes = {}
    for field in _CONTENT_FIELDS:
        if field not in data:
            continue
        if field in ("root_cause", "corrective_action"):
            _require_content(data, field)
        if field == "due_date" and data[field] is None:
            raise ValidationError("due_date is required", details={"due_date": "required"})
        old = getattr(cap, field)
        setattr(cap, field, data[field])
        changes[field] = [old, data[field]]

    write_audit(
        entity_type="cap", entity_id=cap.id, review_id=cap.finding.review_id,
        action="cap.update", actor_user_id=actor.user_id, diff=changes,
    )
    db.session.commit()
    return cap.to_dict(include_children=True)


def transition_cap(
    cap_id: int,
    target: str,
    actor: Actor,
    *,
    reason: str | None = None,
    verification_method: str | None = None,
    verification_notes: str | None = None,
) -> dict:
    """
    Move a CAP along one edge and sync the finding.

    Raises:
        ForbiddenError: actor lacks the capability the target needs (checked first).
        InvalidTransitionError: the edge does not exist.
        ValidationError: rejection reason or verification method missing, or
            evidence still open when verifying or closing.
    """
    cap = get_for_update(CorrectiveActionPlan, cap_id)
    require(actor, "transition_cap", _capability_for(cap, target, actor))
    require_choice(target, "status", CAP_STATUS_VALUES)

    current = cap.status
    if not validate_cap_transition(current, target):
        raise InvalidTransitionError("CorrectiveActionPlan", current, target)

    now = _utcnow()
    if target == CAPStatus.SUBMITTED:
        cap.submitted_at = now
    elif target == CAPStatus.ACCEPTED:
        cap.accepted_at = now
        cap.accepted_by_id = actor.user_id
    elif target == CAPStatus.REJECTED:
        cap.rejection_reason = require_min_length(reason, "reason", label="Rejection reason")
        cap.rejected_at = now
    elif target == CAPStatus.COMPLETED:
        cap.completed_at = now
    elif target == CAPStatus.IN_PROGRESS and current == CAPStatus.COMPLETED:
        cap.verification_notes = require_min_length(reason, "reason", label="Failed verification reason")
    elif target == CAPStatus.VERIFIED:
        _require_evidence_reviewed(cap, "verified")
        cap.verification_method = require_min_length(
            verification_method, "verification_method", MIN_VERIFICATION_METHOD_LENGTH, "Verification method",
        )
        cap.verification_notes = verification_notes
        cap.verified_at = now
        cap.verified_by_id = actor.user_id
    elif target == CAPStatus.CLOSED:
        _require_evidence_reviewed(cap, "closed")

    cap.status = target
    finding = cap.finding
    finding_status = FINDING_STATUS_FOR_CAP.get(CAPStatus(target))
    if finding_status is not None and finding.status != finding_status:
        apply_finding_status(finding, finding_status.value)

    write_audit(
        entity_type="cap", entity_id=cap.id, review_id=finding.review_id,
        action="cap.transition", actor_user_id=actor.user_id,
        diff={"status": [current, target], "finding_status": finding.status, "reason": reason},
    )
    db.session.commit()

    logger.info(
        "CAP status changed",
        extra={"review_id": finding.review_id, "actor_id": actor.user_id, "cap_id": cap.id,
               "from_status": current, "to_status": target},
    )
    NotificationService.dispatch("cap.status_changed", {
        "review_id": finding.review_id,
        "cap_id": cap.id,
        "finding_id": finding.id,
        "from_status": current,
        "to_status": target,
        "actor_id": actor.user_id,
    })
    return cap.to_dict(include_children=True)


def get_cap(cap_id: int) -> dict:
    cap = get_or_404(CorrectiveActionPlan, cap_id)
    return cap.to_dict(include_children=True)


# ── Milestones ───────────────────────────────────────────────────────────────

def add_milestone(cap_id: int, actor: Actor, data: dict) -> dict:
    cap = get_for_update(CorrectiveActionPlan, cap_id)
    require(actor, "add_milestone", is_host_actor(actor, cap.finding), "only the host organization may plan milestones")
    if cap.status == CAPStatus.CLOSED:
        raise InvalidTransitionError("CorrectiveActionPlan", cap.status, cap.status, "plan is closed")

    milestone = CAPMilestone(
        cap_id=cap.id,
        title=_require_content(data, "title"),
        description=data.get("description"),
        due_date=data.get("due_date"),
        sort_order=data.get("sort_order") or len(cap.milestones) + 1,
        status=MilestoneStatus.PENDING.value,
    )
    db.session.add(milestone)
    db.session.flush()
    write_audit(
        entity_type="milestone", entity_id=milestone.id, review_id=cap.finding.review_id,
        action="cap.milestone_add", actor_user_id=actor.user_id,
        diff={"cap_id": cap.id, "title": milestone.title},
    )
    db.session.commit()
    return milestone.to_dict()


def update_milestone_status(milestone_id: int, status: str, actor: Actor) -> dict:
    require_choice(status, "status", MILESTONE_STATUS_VALUES)
    milestone = get_or_404(CAPMilestone, milestone_id)
    cap = get_for_update(CorrectiveActionPlan, milestone.cap_id)
    finding = cap.finding
    require(
        actor, "update_milestone",
        is_host_actor(actor, finding) or is_programme_reviewer(actor, finding),
    )
    if cap.status == CAPStatus.CLOSED:
        raise InvalidTransitionError("CorrectiveActionPlan", cap.status, cap.status, "plan is closed")

    old = milestone.status
    milestone.status = status
    milestone.completed_date = _utcnow() if status == MilestoneStatus.COMPLETED else None

    write_audit(
        entity_type="milestone", entity_id=milestone.id, review_id=finding.review_id,
        action="cap.milestone_update", actor_user_id=actor.user_id,
        diff={"status": [old, status]},
    )
    db.session.commit()
    return milestone.to_dict()
