"""
Reviewer Eligibility Evaluator

Decides whether a reviewer may sit on a review team:

  1. Same organization   — the reviewer's home organization hosts the review.
                           Hard, never overridable.
  2. Declared hard COI   — an active HOME_ORGANIZATION or FAMILY_RELATIONSHIP
                           conflict against the host.  Hard, never overridable.
  3. Team locality       — reviewer and host belong to different regional
                           teams.  Still eligible, but the assignment needs a
                           justification and an authorized approver.

``evaluate`` is a pure function of the objects passed in.  Mutating callers
re-run it inside their transaction, after locking the review row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select

from peer_review.core.exceptions import NotFoundError
from peer_review.models import db
from peer_review.models.review import Review
from peer_review.models.reviewer import ReviewerProfile

logger = logging.getLogger(__name__)

SAME_ORG_REASON = "Cannot review own organization"

_HARD_COI_REASONS = {
    "HOME_ORGANIZATION": "Works at target organization",
    "FAMILY_RELATIONSHIP": "Has family member at target organization",
}


@dataclass
class EligibilityResult:
    """Outcome of evaluating one reviewer against one review."""
    eligible: bool
    is_cross_team: bool
    is_same_org: bool
    reasons: list[str] = field(default_factory=list)
    has_hard_conflict: bool = False

    def to_dict(self) -> dict:
        return {
            "eligible": self.eligible,
            "is_cross_team": self.is_cross_team,
            "is_same_org": self.is_same_org,
            "has_hard_conflict": self.has_hard_conflict,
            "reasons": list(self.reasons),
        }


def hard_conflict_reasons(profile: ReviewerProfile, host_organization_id: int) -> list[str]:
    """Reasons a reviewer can never review *host_organization_id* (rules 1 and 2)."""
    reasons: list[str] = []
    if profile.home_organization_id == host_organization_id:
        reasons.append(SAME_ORG_REASON)
    for coi in profile.active_conflicts(host_organization_id):
        if coi.is_hard:
            reason = _HARD_COI_REASONS[coi.coi_type]
            if reason not in reasons:
                reasons.append(reason)
    return reasons


def is_cross_team(profile: ReviewerProfile, review: Review) -> bool:
    """True when the reviewer's regional team differs from the host's."""
    if profile.home_organization_id == review.host_organization_id:
        return False
    reviewer_team = profile.home_organization.regional_team if profile.home_organization else None
    host_team = review.host_organization.regional_team if review.host_organization else None
    return reviewer_team != host_team


def evaluate(review: Review, profile: ReviewerProfile) -> EligibilityResult:
    """Evaluate *profile* against *review*; no side effects."""
    reasons = hard_conflict_reasons(profile, review.host_organization_id)
    same_org = profile.home_organization_id == review.host_organization_id
    cross_team = is_cross_team(profile, review)

    if reasons:
        return EligibilityResult(
            eligible=False,
            is_cross_team=cross_team,
            is_same_org=same_org,
            reasons=reasons,
            has_hard_conflict=True,
        )

    result = EligibilityResult(eligible=True, is_cross_team=cross_team, is_same_org=False)
    if cross_team:
        result.reasons.append("Different team - requires cross-team approval")
    return result


def list_eligible_reviewers(review_id: int, include_cross_team: bool = False) -> dict:
    """
    Available reviewers for a review, with eligibility flags.

    Same-organization and hard-conflicted reviewers are never listed.  Without
    *include_cross_team* only reviewers of the host's regional team are returned.
    """
    review = db.session.get(Review, review_id)
    if review is None:
        raise NotFoundError(resource="Review", resource_id=review_id)

    profiles = db.session.execute(
        select(ReviewerProfile).where(ReviewerProfile.is_available.is_(True)).order_by(ReviewerProfile.id)
    ).scalars().all()

    reviewers = []
    for profile in profiles:
        result = evaluate(review, profile)
        if not result.eligible:
            continue
        if result.is_cross_team and not include_cross_team:
            continue
        reviewers.append({**profile.to_dict(), "eligibility": result.to_dict()})

    logger.debug(
        "Eligible reviewers computed",
        extra={"review_id": review_id, "count": len(reviewers), "include_cross_team": include_cross_team},
    )
    return {
        "review_id": review_id,
        "host_regional_team": review.host_organization.regional_team if review.host_organization else None,
        "reviewers": reviewers,
        "total_eligible": len(reviewers),
    }
