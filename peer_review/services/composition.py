"""
Team Composition Validator

Checks a proposed team against the composition rules and reports every
violation at once:

  - no reviewer twice
  - exactly one LEAD_REVIEWER (at most one for incremental changes)
  - team size within the review's bounds
  - no hard conflict of interest with the host (never overridable)
  - proposed user matches the reviewer profile
  - cross-team members carry a justification and an authorized approver
  - the lead is qualified, unless an authorized override is recorded

Hard conflicts are reported separately so ``raise_for_result`` can surface
them as ConflictOfInterestError, whatever else is wrong with the team.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from peer_review.core.exceptions import CompositionInvalidError, ConflictOfInterestError
from peer_review.models import db
from peer_review.models.review import Review, TeamRole
from peer_review.models.reviewer import ReviewerProfile
from peer_review.services.eligibility import hard_conflict_reasons, is_cross_team
from peer_review.services.permission import Actor, can_approve_cross_team, can_override_lead_qualification

MIN_REVIEWS_FOR_LEAD = 3
MIN_JUSTIFICATION_LENGTH = 10


@dataclass
class ProposedMember:
    """One seat in a proposed team.

    ``is_new`` marks seats being added or changed by the current operation;
    per-member approvals (cross-team, lead override) are only demanded for them.
    """
    user_id: int
    reviewer_profile_id: int
    role: str = TeamRole.REVIEWER.value
    assigned_areas: list[str] = field(default_factory=list)
    cross_team_justification: str | None = None
    is_new: bool = True


@dataclass
class CompositionResult:
    ok: bool
    errors: list[str] = field(default_factory=list)
    coi_errors: list[str] = field(default_factory=list)
    cross_team_user_ids: list[int] = field(default_factory=list)
    lead_override_user_id: int | None = None
    profiles: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "errors": list(self.errors),
            "coi_errors": list(self.coi_errors),
            "cross_team_user_ids": list(self.cross_team_user_ids),
            "lead_override_user_id": self.lead_override_user_id,
        }


def lead_qualification_problems(profile: ReviewerProfile) -> list[str]:
    problems = []
    if not profile.is_lead_qualified:
        problems.append("is not lead-qualified")
    if (profile.reviews_completed or 0) < MIN_REVIEWS_FOR_LEAD:
        problems.append(f"has completed fewer than {MIN_REVIEWS_FOR_LEAD} reviews")
    return problems


def validate_composition(
    review: Review,
    proposed: list[ProposedMember],
    actor: Actor,
    *,
    lead_override: bool = False,
    partial: bool = False,
) -> CompositionResult:
    """
    Validate *proposed* as the complete seated team of *review*.

    With *partial* the team is still being built: the minimum size is not
    enforced and a missing lead is allowed.  No rule short-circuits another.
    """
    result = CompositionResult(ok=False)

    seen: set[int] = set()
    for member in proposed:
        if member.user_id in seen:
            result.errors.append(f"Duplicate reviewer in team: user {member.user_id}")
        seen.add(member.user_id)

    leads = [m for m in proposed if m.role == TeamRole.LEAD_REVIEWER.value]
    if len(leads) > 1 or (not leads and not partial):
        result.errors.append("Team must have exactly one Lead Reviewer")

    size = len(proposed)
    if size > review.max_team_size:
        result.errors.append(f"Team size {size} exceeds the maximum of {review.max_team_size}")
    if not partial and size < review.min_team_size:
        result.errors.append(f"Team size {size} is below the minimum of {review.min_team_size}")

    for member in proposed:
        profile = db.session.get(ReviewerProfile, member.reviewer_profile_id)
        if profile is None:
            result.errors.append(f"Reviewer profile {member.reviewer_profile_id} not found")
            continue
        result.profiles[member.user_id] = profile

        if profile.user_id != member.user_id:
            result.errors.append(
                f"User {member.user_id} does not match reviewer profile {member.reviewer_profile_id}"
            )

        conflicts = hard_conflict_reasons(profile, review.host_organization_id)
        for reason in conflicts:
            result.coi_errors.append(f"User {member.user_id}: {reason}")

        if is_cross_team(profile, review) and not conflicts:
            result.cross_team_user_ids.append(member.user_id)
            if member.is_new:
                justification = (member.cross_team_justification or "").strip()
                if len(justification) < MIN_JUSTIFICATION_LENGTH:
                    result.errors.append(
                        f"Cross-team assignment of user {member.user_id} requires a justification "
                        f"of at least {MIN_JUSTIFICATION_LENGTH} characters"
                    )
                if actor is None or not can_approve_cross_team(actor.role):
                    result.errors.append(
                        f"Cross-team assignment of user {member.user_id} requires an authorized approver"
                    )

        if member.role == TeamRole.LEAD_REVIEWER.value and member.is_new:
            problems = lead_qualification_problems(profile)
            if problems:
                if lead_override and actor is not None and can_override_lead_qualification(actor.role):
                    result.lead_override_user_id = member.user_id
                elif lead_override:
                    result.errors.append(
                        "Lead qualification override requires PROGRAMME_COORDINATOR or SUPER_ADMIN"
                    )
                else:
                    for problem in problems:
                        result.errors.append(f"Lead Reviewer (user {member.user_id}) {problem}")

    result.ok = not result.errors and not result.coi_errors
    return result


def raise_for_result(result: CompositionResult) -> None:
    """Raise the exception matching *result*; hard conflicts take precedence."""
    if result.coi_errors:
        raise ConflictOfInterestError(result.coi_errors)
    if result.errors:
        raise CompositionInvalidError(result.errors)
