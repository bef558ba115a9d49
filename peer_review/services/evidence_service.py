"""
CAP Evidence Service

The host organization uploads evidence (storage URLs only) against a CAP and,
optionally, one of its milestones.  Programme reviewers accept, reject or ask
for more information.  When every evidence item of a milestone is accepted
the milestone completes in the same commit.
"""

import logging
from datetime import datetime, timezone

from peer_review.core.exceptions import InvalidTransitionError, ValidationError
from peer_review.models import db
from peer_review.models.audit import write_audit
from peer_review.models.cap import (
    EVIDENCE_REVIEW_OUTCOMES,
    CAPEvidence,
    CAPMilestone,
    CAPStatus,
    CorrectiveActionPlan,
    EvidenceStatus,
    MilestoneStatus,
    validate_evidence_transition,
)
from peer_review.services.cap_service import is_host_actor, is_programme_reviewer
from peer_review.services.helpers.queries import get_for_update, get_or_404
from peer_review.services.helpers.validation import require_choice
from peer_review.services.notification import NotificationService
from peer_review.services.permission import Actor, can_review_evidence, can_upload_evidence, require

logger = logging.getLogger(__name__)

# Evidence can be uploaded once the plan is accepted and until it is verified.
EVIDENCE_UPLOAD_CAP_STATUSES = frozenset({CAPStatus.ACCEPTED, CAPStatus.IN_PROGRESS, CAPStatus.COMPLETED})

EVIDENCE_OUTCOME_VALUES = frozenset(s.value for s in EVIDENCE_REVIEW_OUTCOMES)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _milestone_for(cap: CorrectiveActionPlan, milestone_id: int | None) -> CAPMilestone | None:
    if milestone_id is None:
        return None
    milestone = next((m for m in cap.milestones if m.id == milestone_id), None)
    if milestone is None:
        raise ValidationError(
            f"Milestone {milestone_id} does not belong to CAP {cap.id}",
            details={"milestone_id": milestone_id},
        )
    return milestone


def submit_evidence(
    cap_id: int,
    actor: Actor,
    *,
    title: str,
    file_url: str,
    milestone_id: int | None = None,
    description: str | None = None,
    evidence_id: int | None = None,
) -> dict:
    """
    Upload evidence, or resubmit evidence that was sent back for more information.

    Raises:
        ForbiddenError: actor does not act for the host organization.
        InvalidTransitionError: the plan is not accepting evidence, or the
            resubmitted item is not awaiting more information.
        ValidationError: missing title/URL or a milestone of another CAP.
    """
    cap = get_for_update(CorrectiveActionPlan, cap_id)
    require(
        actor, "submit_evidence",
        actor is not None and can_upload_evidence(actor.role) and is_host_actor(actor, cap.finding),
        "only the host organization may upload evidence",
    )
    if cap.status not in EVIDENCE_UPLOAD_CAP_STATUSES:
        raise InvalidTransitionError(
            "CorrectiveActionPlan", cap.status, cap.status, "evidence is accepted from ACCEPTED until COMPLETED",
        )

    title = (title or "").strip()
    file_url = (file_url or "").strip()
    if not title or not file_url:
        raise ValidationError("title and file_url are required", details={"title": title, "file_url": file_url})
    milestone = _milestone_for(cap, milestone_id)

    if evidence_id is not None:
        evidence = next((e for e in cap.evidence if e.id == evidence_id), None)
        if evidence is None:
            raise ValidationError(
                f"Evidence {evidence_id} does not belong to CAP {cap.id}", details={"evidence_id": evidence_id},
            )
        if not validate_evidence_transition(evidence.status, EvidenceStatus.PENDING):
            raise InvalidTransitionError("CAPEvidence", evidence.status, EvidenceStatus.PENDING.value)
        evidence.title = title
        evidence.file_url = file_url
        evidence.description = description or evidence.description
        evidence.status = EvidenceStatus.PENDING.value
        evidence.uploaded_by_id = actor.user_id
        evidence.uploaded_at = _utcnow()
        evidence.reviewed_by_id = None
        evidence.reviewed_at = None
        evidence.rejection_reason = None
        if milestone is not None:
            evidence.milestone = milestone
        action = "resubmitted"
    else:
        evidence = CAPEvidence(
            title=title,
            description=description,
            file_url=file_url,
            status=EvidenceStatus.PENDING.value,
            uploaded_by_id=actor.user_id,
        )
        cap.evidence.append(evidence)
        if milestone is not None:
            evidence.milestone = milestone
        action = "submitted"

    if milestone is not None and milestone.status in (MilestoneStatus.PENDING, MilestoneStatus.COMPLETED):
        milestone.status = MilestoneStatus.IN_PROGRESS.value
        milestone.completed_date = None

    db.session.flush()
    write_audit(
        entity_type="evidence", entity_id=evidence.id, review_id=cap.finding.review_id,
        action="evidence.submit", actor_user_id=actor.user_id,
        diff={"cap_id": cap.id, "milestone_id": evidence.milestone_id, "outcome": action},
    )
    db.session.commit()

    logger.info(
        "Evidence %s", action,
        extra={"review_id": cap.finding.review_id, "actor_id": actor.user_id, "evidence_id": evidence.id},
    )
    NotificationService.dispatch("evidence.submitted", {
        "review_id": cap.finding.review_id,
        "cap_id": cap.id,
        "evidence_id": evidence.id,
        "milestone_id": evidence.milestone_id,
        "actor_id": actor.user_id,
    })
    return evidence.to_dict()


def review_evidence(
    evidence_id: int,
    status: str,
    actor: Actor,
    *,
    comments: str | None = None,
    rejection_reason: str | None = None,
) -> dict:
    """
    Accept, reject or request more information on one evidence item.

    Raises:
        ForbiddenError: actor lacks evidence review capability.
        InvalidTransitionError: the evidence is not PENDING, or the plan is
            no longer between ACCEPTED and COMPLETED.
        ValidationError: unknown outcome, or REJECTED without a reason.
    """
    evidence = get_or_404(CAPEvidence, evidence_id)
    cap = get_or_404(CorrectiveActionPlan, evidence.cap_id)
    require(
        actor, "review_evidence",
        actor is not None and can_review_evidence(actor.role) and is_programme_reviewer(actor, cap.finding),
    )
    cap = get_for_update(CorrectiveActionPlan, evidence.cap_id)
    db.session.refresh(evidence)
    require_choice(status, "status", EVIDENCE_OUTCOME_VALUES)
    if cap.status not in EVIDENCE_UPLOAD_CAP_STATUSES:
        raise InvalidTransitionError(
            "CorrectiveActionPlan", cap.status, cap.status, "evidence is reviewed from ACCEPTED until COMPLETED",
        )
    if not validate_evidence_transition(evidence.status, status):
        raise InvalidTransitionError("CAPEvidence", evidence.status, status, "only PENDING evidence can be reviewed")

    if status == EvidenceStatus.REJECTED and not (rejection_reason or "").strip():
        raise ValidationError("A rejection reason is required", details={"rejection_reason": "required"})
    if status == EvidenceStatus.MORE_INFO_REQUIRED and not (comments or "").strip():
        raise ValidationError("Comments are required when asking for more information", details={"comments": "required"})

    old_status = evidence.status
    evidence.status = status
    evidence.reviewed_by_id = actor.user_id
    evidence.reviewed_at = _utcnow()
    evidence.review_comments = comments
    evidence.rejection_reason = rejection_reason.strip() if status == EvidenceStatus.REJECTED else None

    milestone_completed = False
    milestone = evidence.milestone
    if milestone is not None and status == EvidenceStatus.ACCEPTED:
        if all(e.status == EvidenceStatus.ACCEPTED for e in milestone.evidence):
            milestone.status = MilestoneStatus.COMPLETED.value
            milestone.completed_date = _utcnow()
            milestone_completed = True

    write_audit(
        entity_type="evidence", entity_id=evidence.id, review_id=cap.finding.review_id,
        action="evidence.review", actor_user_id=actor.user_id,
        diff={"status": [old_status, status], "milestone_completed": milestone_completed},
    )
    db.session.commit()

    logger.info(
        "Evidence reviewed",
        extra={"review_id": cap.finding.review_id, "actor_id": actor.user_id, "evidence_id": evidence.id},
    )
    NotificationService.dispatch("evidence.reviewed", {
        "review_id": cap.finding.review_id,
        "cap_id": cap.id,
        "evidence_id": evidence.id,
        "status": status,
        "milestone_completed": milestone_completed,
        "actor_id": actor.user_id,
    })
    result = evidence.to_dict()
    result["milestone_completed"] = milestone_completed
    return result


def list_evidence(cap_id: int) -> list[dict]:
    cap = get_or_404(CorrectiveActionPlan, cap_id)
    return [e.to_dict() for e in cap.evidence]
