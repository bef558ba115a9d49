"""
Review Team Service

Assembles and maintains review teams.  Every write path re-runs the
composition validator against the locked review, so the team invariants hold
after each commit:

  - at most one LEAD_REVIEWER among non-withdrawn members
  - no member from the host organization, no hard conflict of interest
  - cross-team members carry a justification and approver
  - an unqualified lead carries the override authorizer

Invitation sub-state per member:

    PENDING ──send──▶ INVITED ──respond──▶ CONFIRMED | DECLINED
       │                 │
       └──── remove ─────┴──▶ WITHDRAWN
"""

import logging
from datetime import datetime, timezone

from peer_review.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from peer_review.models import db
from peer_review.models.audit import write_audit
from peer_review.models.review import (
    TEAM_MUTABLE_STATUSES,
    TERMINAL_REVIEW_STATUSES,
    InvitationStatus,
    Review,
    ReviewStatus,
    ReviewTeamMember,
    TeamRole,
    validate_invitation_transition,
)
from peer_review.models.reviewer import ReviewerProfile
from peer_review.services.composition import ProposedMember, raise_for_result, validate_composition
from peer_review.services.helpers.queries import get_for_update, get_or_404
from peer_review.services.helpers.validation import require_choice, require_min_length
from peer_review.services.notification import NotificationService
from peer_review.services.permission import Actor, can_assign_team, require
from peer_review.services.review_lifecycle import dispatch_status_changed

logger = logging.getLogger(__name__)

TEAM_ROLE_VALUES = frozenset(r.value for r in TeamRole)

# Review statuses that are moved to PLANNING by a successful bulk assignment.
_AUTO_PLANNING_STATUSES = frozenset({ReviewStatus.REQUESTED, ReviewStatus.APPROVED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_team_mutable(review: Review) -> None:
    if review.status not in TEAM_MUTABLE_STATUSES:
        raise InvalidTransitionError(
            "Review", review.status, review.status,
            "team changes are only allowed before fieldwork starts",
        )


def _proposed_from_payload(data: dict) -> ProposedMember:
    profile_id = data.get("reviewer_profile_id")
    if profile_id is None:
        raise ValidationError("reviewer_profile_id is required", details={"reviewer_profile_id": "required"})
    user_id = data.get("user_id")
    if user_id is None:
        profile = db.session.get(ReviewerProfile, profile_id)
        if profile is None:
            raise NotFoundError(resource="ReviewerProfile", resource_id=profile_id)
        user_id = profile.user_id
    return ProposedMember(
        user_id=user_id,
        reviewer_profile_id=profile_id,
        role=require_choice(data.get("role", TeamRole.REVIEWER.value), "role", TEAM_ROLE_VALUES),
        assigned_areas=list(data.get("assigned_areas") or []),
        cross_team_justification=data.get("cross_team_justification"),
    )


def _proposed_from_member(member: ReviewTeamMember, role: str | None = None) -> ProposedMember:
    return ProposedMember(
        user_id=member.user_id,
        reviewer_profile_id=member.reviewer_profile_id,
        role=role or member.role,
        assigned_areas=list(member.assigned_areas or []),
        cross_team_justification=member.cross_team_justification,
        is_new=False,
    )


def _demote_other_leads(review: Review, keep_user_id: int) -> list[ReviewTeamMember]:
    """Demote every non-withdrawn lead except *keep_user_id* to REVIEWER."""
    demoted = []
    for member in review.team_members:
        if (
            member.user_id != keep_user_id
            and member.role == TeamRole.LEAD_REVIEWER.value
            and member.invitation_status != InvitationStatus.WITHDRAWN.value
        ):
            member.role = TeamRole.REVIEWER.value
            demoted.append(member)
    return demoted


def _drop_unseated_rows(review: Review, user_ids: set) -> None:
    """Delete declined/withdrawn rows that would collide with re-added users."""
    for member in list(review.team_members):
        if member.user_id in user_ids and member.invitation_status not in (
            InvitationStatus.PENDING.value, InvitationStatus.INVITED.value, InvitationStatus.CONFIRMED.value,
        ):
            review.team_members.remove(member)
    db.session.flush()


def _create_member(review: Review, proposed: ProposedMember, result, actor: Actor, lead_override_reason: str | None):
    now = _utcnow()
    member = ReviewTeamMember(
        review_id=review.id,
        user_id=proposed.user_id,
        reviewer_profile_id=proposed.reviewer_profile_id,
        role=proposed.role,
        assigned_areas=proposed.assigned_areas,
        invitation_status=InvitationStatus.PENDING.value,
    )
    if proposed.user_id in result.cross_team_user_ids:
        member.is_cross_team_assignment = True
        member.cross_team_justification = (proposed.cross_team_justification or "").strip()
        member.cross_team_approved_by_id = actor.user_id
        member.cross_team_approved_at = now
    _apply_lead_override(member, result, actor, lead_override_reason, now)
    review.team_members.append(member)
    return member


def _apply_lead_override(member: ReviewTeamMember, result, actor: Actor, reason: str | None, now) -> None:
    if result.lead_override_user_id == member.user_id:
        member.lead_override_by_id = actor.user_id
        member.lead_override_at = now
        member.lead_override_reason = (reason or "").strip() or None


def _dispatch_assigned(review: Review, members: list[ReviewTeamMember], actor: Actor) -> None:
    for member in members:
        NotificationService.dispatch("team.member_assigned", {
            "review_id": review.id,
            "member_id": member.id,
            "user_id": member.user_id,
            "role": member.role,
            "actor_id": actor.user_id,
        })


# ── Assignment ───────────────────────────────────────────────────────────────

def assign_team_bulk(
    review_id: int,
    members: list[dict],
    actor: Actor,
    *,
    replace_existing: bool = False,
    lead_override: bool = False,
    lead_override_reason: str | None = None,
) -> dict:
    """
    Assign several reviewers in one transaction.

    The resulting seated team (existing members plus *members*, or only
    *members* with *replace_existing*) must satisfy every composition rule.
    A REQUESTED or APPROVED review moves to PLANNING in the same commit.

    Raises:
        ForbiddenError: actor may not assign teams.
        InvalidTransitionError: review is past SCHEDULED.
        ConflictOfInterestError: any proposed reviewer has a hard conflict.
        CompositionInvalidError: any other composition rule failed.
    """
    require(actor, "assign_team", actor is not None and can_assign_team(actor.role))
    if not members:
        raise ValidationError("At least one team member is required", details={"members": "required"})

    review = get_for_update(Review, review_id)
    _require_team_mutable(review)

    proposed_new = [_proposed_from_payload(m) for m in members]
    kept = [] if replace_existing else [_proposed_from_member(m) for m in review.seated_members]
    result = validate_composition(review, kept + proposed_new, actor, lead_override=lead_override)
    raise_for_result(result)

    removed = []
    if replace_existing:
        for member in list(review.team_members):
            removed.append(member.user_id)
            review.team_members.remove(member)
        db.session.flush()
    else:
        _drop_unseated_rows(review, {p.user_id for p in proposed_new})

    created = [_create_member(review, p, result, actor, lead_override_reason) for p in proposed_new]
    lead = next((p for p in proposed_new if p.role == TeamRole.LEAD_REVIEWER.value), None)
    if lead is not None:
        _demote_other_leads(review, lead.user_id)

    old_status = review.status
    if review.status in _AUTO_PLANNING_STATUSES:
        review.status = ReviewStatus.PLANNING.value
        review.phase = "PLANNING"

    db.session.flush()
    write_audit(
        entity_type="review", entity_id=review.id, review_id=review.id,
        action="team.assign_bulk", actor_user_id=actor.user_id,
        diff={
            "added": [m.user_id for m in created],
            "removed": removed,
            "status": [old_status, review.status],
            "lead_override_user_id": result.lead_override_user_id,
        },
    )
    db.session.commit()

    logger.info(
        "Team assigned",
        extra={"review_id": review.id, "actor_id": actor.user_id, "count": len(created)},
    )
    _dispatch_assigned(review, created, actor)
    if review.status != old_status:
        dispatch_status_changed(review.id, old_status, review.status, actor.user_id, "team assigned")
    return review.to_dict(include_team=True)


def add_team_member(
    review_id: int,
    member: dict,
    actor: Actor,
    *,
    lead_override: bool = False,
    lead_override_reason: str | None = None,
) -> dict:
    """Add one reviewer; a new LEAD_REVIEWER demotes the previous lead."""
    require(actor, "add_team_member", actor is not None and can_assign_team(actor.role))
    review = get_for_update(Review, review_id)
    _require_team_mutable(review)

    proposed = _proposed_from_payload(member)
    is_lead = proposed.role == TeamRole.LEAD_REVIEWER.value
    kept = [
        _proposed_from_member(m, TeamRole.REVIEWER.value if is_lead and m.role == TeamRole.LEAD_REVIEWER.value else None)
        for m in review.seated_members
    ]
    result = validate_composition(review, kept + [proposed], actor, lead_override=lead_override, partial=True)
    raise_for_result(result)

    _drop_unseated_rows(review, {proposed.user_id})
    created = _create_member(review, proposed, result, actor, lead_override_reason)
    demoted = _demote_other_leads(review, proposed.user_id) if is_lead else []

    db.session.flush()
    write_audit(
        entity_type="team_member", entity_id=created.id, review_id=review.id,
        action="team.add_member", actor_user_id=actor.user_id,
        diff={"user_id": created.user_id, "role": created.role, "demoted": [m.user_id for m in demoted]},
    )
    db.session.commit()

    logger.info(
        "Team member added",
        extra={"review_id": review.id, "actor_id": actor.user_id, "member_id": created.id},
    )
    _dispatch_assigned(review, [created], actor)
    return created.to_dict()


def update_team_member_role(
    member_id: int,
    role: str,
    actor: Actor,
    *,
    lead_override: bool = False,
    lead_override_reason: str | None = None,
) -> dict:
    """Change a member's role; promoting to lead demotes the previous lead in the same commit."""
    require(actor, "update_team_member_role", actor is not None and can_assign_team(actor.role))
    require_choice(role, "role", TEAM_ROLE_VALUES)

    member = get_or_404(ReviewTeamMember, member_id)
    review = get_for_update(Review, member.review_id)
    _require_team_mutable(review)
    if member.invitation_status not in (
        InvitationStatus.PENDING.value, InvitationStatus.INVITED.value, InvitationStatus.CONFIRMED.value,
    ):
        raise ValidationError(
            f"Member {member_id} is {member.invitation_status} and no longer on the team",
            details={"invitation_status": member.invitation_status},
        )

    old_role = member.role
    is_lead = role == TeamRole.LEAD_REVIEWER.value
    proposed = []
    for seated in review.seated_members:
        if seated.id == member.id:
            changed = _proposed_from_member(seated, role)
            changed.is_new = role != old_role
            proposed.append(changed)
        elif is_lead and seated.role == TeamRole.LEAD_REVIEWER.value:
            proposed.append(_proposed_from_member(seated, TeamRole.REVIEWER.value))
        else:
            proposed.append(_proposed_from_member(seated))

    result = validate_composition(review, proposed, actor, lead_override=lead_override, partial=True)
    raise_for_result(result)

    member.role = role
    demoted = _demote_other_leads(review, member.user_id) if is_lead else []
    if is_lead:
        _apply_lead_override(member, result, actor, lead_override_reason, _utcnow())
    else:
        member.lead_override_by_id = None
        member.lead_override_at = None
        member.lead_override_reason = None

    write_audit(
        entity_type="team_member", entity_id=member.id, review_id=review.id,
        action="team.update_role", actor_user_id=actor.user_id,
        diff={"role": [old_role, role], "demoted": [m.user_id for m in demoted]},
    )
    db.session.commit()
    logger.info(
        "Team member role changed",
        extra={"review_id": review.id, "actor_id": actor.user_id, "member_id": member.id},
    )
    return member.to_dict()


def remove_team_member(member_id: int, actor: Actor) -> dict:
    """
    Take a member off the team.

    Members that never answered their invitation are WITHDRAWN so the
    invitation trail survives; confirmed or declined members are deleted.
    """
    require(actor, "remove_team_member", actor is not None and can_assign_team(actor.role))
    member = get_or_404(ReviewTeamMember, member_id)
    review = get_for_update(Review, member.review_id)
    _require_team_mutable(review)

    old_status = member.invitation_status
    user_id = member.user_id
    if validate_invitation_transition(old_status, InvitationStatus.WITHDRAWN.value):
        member.invitation_status = InvitationStatus.WITHDRAWN.value
        outcome = "withdrawn"
    else:
        review.team_members.remove(member)
        outcome = "deleted"

    write_audit(
        entity_type="team_member", entity_id=member_id, review_id=review.id,
        action="team.remove_member", actor_user_id=actor.user_id,
        diff={"user_id": user_id, "invitation_status": old_status, "outcome": outcome},
    )
    db.session.commit()

    NotificationService.dispatch("team.member_removed", {
        "review_id": review.id, "member_id": member_id, "user_id": user_id, "actor_id": actor.user_id,
    })
    return {"member_id": member_id, "review_id": review.id, "outcome": outcome}


# ── Invitations ──────────────────────────────────────────────────────────────

def send_invitations(review_id: int, actor: Actor) -> dict:
    """Move every PENDING member to INVITED."""
    require(actor, "send_invitations", actor is not None and can_assign_team(actor.role))
    review = get_for_update(Review, review_id)
    _require_team_mutable(review)

    now = _utcnow()
    invited = []
    for member in review.team_members:
        if member.invitation_status == InvitationStatus.PENDING.value:
            member.invitation_status = InvitationStatus.INVITED.value
            member.invited_at = now
            invited.append(member)

    if invited:
        write_audit(
            entity_type="review", entity_id=review.id, review_id=review.id,
            action="team.send_invitations", actor_user_id=actor.user_id,
            diff={"invited": [m.user_id for m in invited]},
        )
    db.session.commit()

    for member in invited:
        NotificationService.dispatch("team.invitation_sent", {
            "review_id": review.id, "member_id": member.id, "user_id": member.user_id, "role": member.role,
        })
    return {"review_id": review.id, "invited": len(invited), "members": [m.to_dict() for m in invited]}


def respond_to_invitation(member_id: int, accept: bool, actor: Actor, decline_reason: str | None = None) -> dict:
    """
    Accept or decline an invitation.

    Only the invited reviewer or a team manager may answer.  Declining needs a
    reason of at least 10 characters.
    """
    member = get_or_404(ReviewTeamMember, member_id)
    require(
        actor, "respond_to_invitation",
        actor is not None and (actor.user_id == member.user_id or can_assign_team(actor.role)),
        "only the invited reviewer may respond",
    )
    review = get_for_update(Review, member.review_id)
    if review.status in TERMINAL_REVIEW_STATUSES:
        raise InvalidTransitionError("Review", review.status, review.status, "review is closed")

    target = InvitationStatus.CONFIRMED.value if accept else InvitationStatus.DECLINED.value
    if not validate_invitation_transition(member.invitation_status, target):
        raise InvalidTransitionError("ReviewTeamMember", member.invitation_status, target)

    now = _utcnow()
    if accept:
        member.invitation_status = target
        member.confirmed_at = now
    else:
        member.decline_reason = require_min_length(decline_reason, "decline_reason", label="Decline reason")
        member.invitation_status = target
        member.declined_at = now

    write_audit(
        entity_type="team_member", entity_id=member.id, review_id=review.id,
        action="team.invitation_response", actor_user_id=actor.user_id,
        diff={"invitation_status": target, "decline_reason": member.decline_reason},
    )
    db.session.commit()

    NotificationService.dispatch("team.invitation_responded", {
        "review_id": review.id, "member_id": member.id, "user_id": member.user_id,
        "accepted": bool(accept), "actor_id": actor.user_id,
    })
    return member.to_dict()


def replace_declined_member(
    member_id: int,
    new_reviewer_profile_id: int,
    actor: Actor,
    *,
    cross_team_justification: str | None = None,
    lead_override: bool = False,
    lead_override_reason: str | None = None,
) -> dict:
    """Swap a DECLINED member for a new PENDING member with the same role and areas."""
    require(actor, "replace_member", actor is not None and can_assign_team(actor.role))
    member = get_or_404(ReviewTeamMember, member_id)
    review = get_for_update(Review, member.review_id)
    _require_team_mutable(review)
    if member.invitation_status != InvitationStatus.DECLINED.value:
        raise ValidationError(
            "Only declined members can be replaced",
            details={"invitation_status": member.invitation_status},
        )

    profile = get_or_404(ReviewerProfile, new_reviewer_profile_id)
    proposed = ProposedMember(
        user_id=profile.user_id,
        reviewer_profile_id=profile.id,
        role=member.role,
        assigned_areas=list(member.assigned_areas or []),
        cross_team_justification=cross_team_justification,
    )
    kept = [_proposed_from_member(m) for m in review.seated_members]
    result = validate_composition(review, kept + [proposed], actor, lead_override=lead_override, partial=True)
    raise_for_result(result)

    old_user_id = member.user_id
    review.team_members.remove(member)
    db.session.flush()
    _drop_unseated_rows(review, {proposed.user_id})
    created = _create_member(review, proposed, result, actor, lead_override_reason)
    db.session.flush()

    write_audit(
        entity_type="team_member", entity_id=created.id, review_id=review.id,
        action="team.replace_member", actor_user_id=actor.user_id,
        diff={"replaced_user_id": old_user_id, "user_id": created.user_id, "role": created.role},
    )
    db.session.commit()
    _dispatch_assigned(review, [created], actor)
    return created.to_dict()


# ── Readiness ────────────────────────────────────────────────────────────────

def team_readiness(review: Review) -> dict:
    """Readiness breakdown: confirmed seats, open invitations, confirmed lead."""
    members = [m for m in review.team_members if m.invitation_status != InvitationStatus.WITHDRAWN.value]
    confirmed = [m for m in members if m.invitation_status == InvitationStatus.CONFIRMED.value]
    open_invitations = [
        m for m in members
        if m.invitation_status in (InvitationStatus.PENDING.value, InvitationStatus.INVITED.value)
    ]
    confirmed_leads = [m for m in confirmed if m.role == TeamRole.LEAD_REVIEWER.value]

    issues = []
    if len(confirmed) < review.min_team_size:
        issues.append(f"{len(confirmed)} confirmed members, {review.min_team_size} required")
    if open_invitations:
        issues.append(f"{len(open_invitations)} invitations awaiting a response")
    if len(confirmed_leads) != 1:
        issues.append("Team needs exactly one confirmed Lead Reviewer")

    return {
        "review_id": review.id,
        "ready": not issues,
        "confirmed_count": len(confirmed),
        "pending_count": len(open_invitations),
        "declined_count": sum(1 for m in members if m.invitation_status == InvitationStatus.DECLINED.value),
        "has_confirmed_lead": len(confirmed_leads) == 1,
        "issues": issues,
    }


def is_team_ready(review: Review) -> bool:
    return team_readiness(review)["ready"]


def get_team(review_id: int) -> dict:
    review = get_or_404(Review, review_id)
    return {
        "review_id": review.id,
        "members": [m.to_dict() for m in review.team_members],
        "readiness": team_readiness(review),
    }
