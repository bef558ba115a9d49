"""
Team Matching & Coverage Engine

Ranks pooled reviewers against review criteria, measures how well a set of
reviewers covers the required expertise and languages, and recommends a
team by greedy marginal coverage gain.

The algorithms work on plain objects (``ReviewerProfile`` rows and
``MatchResult`` values) and never write.  ``match_reviewers_for_review`` and
``recommend_team_for_review`` derive criteria from a stored review.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date

from flask import current_app
from sqlalchemy import select

from peer_review.core.exceptions import NotFoundError, ValidationError
from peer_review.models import db
from peer_review.models.review import Review
from peer_review.models.reviewer import ReviewerProfile
from peer_review.services import scoring
from peer_review.services.eligibility import hard_conflict_reasons
from peer_review.services.permission import Actor, can_match_reviewers, require

logger = logging.getLogger(__name__)

MIN_TEAM_SIZE = 2
MAX_TEAM_SIZE = 5
DEFAULT_TEAM_SIZE = 4

MIN_EXPERTISE_COVERAGE = 0.5
MIN_LANGUAGE_COVERAGE = 0.5
MIN_AVAILABILITY_COVERAGE = 0.5
GOOD_EXPERTISE_COVERAGE = 0.8
VIABLE_SIZE_RATIO = 0.8


@dataclass
class MatchingCriteria:
    target_organization_id: int
    required_expertise: list[str] = field(default_factory=list)
    preferred_expertise: list[str] = field(default_factory=list)
    required_languages: list[str] = field(default_factory=list)
    start_date: date | None = None
    end_date: date | None = None
    team_size: int = DEFAULT_TEAM_SIZE
    must_include_ids: list[int] = field(default_factory=list)
    exclude_ids: list[int] = field(default_factory=list)
    lead_already_chosen: bool = False


@dataclass
class MatchResult:
    """Score breakdown of one reviewer against one set of criteria."""
    reviewer_profile_id: int
    user_id: int
    full_name: str
    home_organization_id: int
    score: float
    percentage: int
    is_lead_qualified: bool
    is_eligible: bool
    expertise: scoring.ExpertiseScore
    language: scoring.LanguageScore
    availability: scoring.AvailabilityScore
    experience: scoring.ExperienceScore
    lead_bonus: float = 0.0
    expertise_areas: list[str] = field(default_factory=list)
    language_codes: list[str] = field(default_factory=list)
    ineligibility_reasons: list[str] = field(default_factory=list)
    coi_warnings: list[str] = field(default_factory=list)
    match_reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "reviewer_profile_id": self.reviewer_profile_id,
            "user_id": self.user_id,
            "full_name": self.full_name,
            "home_organization_id": self.home_organization_id,
            "score": self.score,
            "percentage": self.percentage,
            "is_lead_qualified": self.is_lead_qualified,
            "is_eligible": self.is_eligible,
            "ineligibility_reason": "; ".join(self.ineligibility_reasons) or None,
            "expertise_details": self.expertise.to_dict(),
            "language_details": self.language.to_dict(),
            "availability_details": self.availability.to_dict(),
            "experience_details": self.experience.to_dict(),
            "lead_bonus": self.lead_bonus,
            "coi_warnings": list(self.coi_warnings),
            "match_reasons": list(self.match_reasons),
        }


@dataclass
class CoverageReport:
    expertise_covered: list[str]
    expertise_missing: list[str]
    expertise_coverage: float
    languages_covered: list[str]
    languages_missing: list[str]
    language_coverage: float
    has_lead_qualified: bool
    team_balance: str

    def to_dict(self) -> dict:
        return {
            "expertise_covered": self.expertise_covered,
            "expertise_missing": self.expertise_missing,
            "expertise_coverage": self.expertise_coverage,
            "languages_covered": self.languages_covered,
            "languages_missing": self.languages_missing,
            "language_coverage": self.language_coverage,
            "has_lead_qualified": self.has_lead_qualified,
            "team_balance": self.team_balance,
        }


@dataclass
class TeamBuildResult:
    success: bool
    team: list[MatchResult]
    lead_profile_id: int | None
    coverage_analysis: CoverageReport
    total_score: float
    average_score: float
    is_viable: bool
    message: str
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        team = []
        for member in self.team:
            entry = member.to_dict()
            entry["proposed_role"] = (
                "LEAD_REVIEWER" if member.reviewer_profile_id == self.lead_profile_id else "REVIEWER"
            )
            team.append(entry)
        return {
            "success": self.success,
            "team": team,
            "lead_profile_id": self.lead_profile_id,
            "coverage_analysis": self.coverage_analysis.to_dict(),
            "total_score": self.total_score,
            "average_score": self.average_score,
            "is_viable": self.is_viable,
            "message": self.message,
            "warnings": list(self.warnings),
        }


# ── Scoring one candidate ────────────────────────────────────────────────────

def _soft_conflict_warnings(profile: ReviewerProfile, organization_id: int) -> list[str]:
    return [
        f"{coi.coi_type}: {coi.reason}" if coi.reason else coi.coi_type
        for coi in profile.active_conflicts(organization_id)
        if not coi.is_hard
    ]


def calculate_match_score(profile: ReviewerProfile, criteria: MatchingCriteria) -> MatchResult:
    """Score *profile* against *criteria*; eligibility problems are reported, not raised."""
    expertise = scoring.score_expertise(
        profile.expertise_areas, criteria.required_expertise, criteria.preferred_expertise,
    )
    language = scoring.score_language(profile.languages, criteria.required_languages)
    availability = scoring.score_availability(
        profile.is_available, profile.availability, criteria.start_date, criteria.end_date,
    )
    experience = scoring.score_experience(profile.years_experience, profile.reviews_completed)

    lead_bonus = scoring.LEAD_BONUS if profile.is_lead_qualified and not criteria.lead_already_chosen else 0.0
    total = expertise.score + language.score + availability.score + experience.score + lead_bonus

    reasons = hard_conflict_reasons(profile, criteria.target_organization_id)
    if expertise.required_coverage < MIN_EXPERTISE_COVERAGE:
        reasons.append("Insufficient expertise match")
    if not language.can_conduct_review:
        reasons.append("Cannot conduct review in required languages")
    if availability.coverage < MIN_AVAILABILITY_COVERAGE:
        reasons.append("Not available during review period")

    match_reasons = []
    if criteria.required_expertise:
        match_reasons.append(
            f"{len(expertise.matched_required)}/{len(set(criteria.required_expertise))} expertise areas"
        )
    if criteria.required_languages:
        match_reasons.append(
            f"{len(language.matched_languages)}/{len(set(criteria.required_languages))} languages"
        )
    if profile.is_lead_qualified:
        match_reasons.append("Lead qualified")
    if profile.reviews_completed:
        match_reasons.append(f"{profile.reviews_completed} reviews completed")
    if availability.coverage >= 1.0:
        match_reasons.append("Fully available")

    return MatchResult(
        reviewer_profile_id=profile.id,
        user_id=profile.user_id,
        full_name=profile.full_name,
        home_organization_id=profile.home_organization_id,
        score=round(total, 1),
        percentage=scoring.total_percentage(total),
        is_lead_qualified=bool(profile.is_lead_qualified),
        is_eligible=not reasons,
        expertise=expertise,
        language=language,
        availability=availability,
        experience=experience,
        lead_bonus=lead_bonus,
        expertise_areas=list(profile.expertise_areas or []),
        language_codes=profile.language_codes,
        ineligibility_reasons=reasons,
        coi_warnings=_soft_conflict_warnings(profile, criteria.target_organization_id),
        match_reasons=match_reasons,
    )


def _rank_key(result: MatchResult):
    return (not result.is_eligible, -result.percentage, -result.score, result.reviewer_profile_id)


def find_matching_reviewers(criteria: MatchingCriteria, candidates) -> list[MatchResult]:
    """
    Score every candidate and rank them.

    Reviewers from the target organization and excluded profiles are skipped.
    Ineligible reviewers stay in the list, flagged, after all eligible ones.
    """
    excluded = set(criteria.exclude_ids or [])
    results = [
        calculate_match_score(profile, criteria)
        for profile in candidates
        if profile.id not in excluded and profile.home_organization_id != criteria.target_organization_id
    ]
    results.sort(key=_rank_key)
    return results


# ── Coverage ─────────────────────────────────────────────────────────────────

def _ratio(covered: int, required: int) -> float:
    return round(covered / required, 2) if required else 1.0


def calculate_coverage(team, criteria: MatchingCriteria) -> CoverageReport:
    """Union of the team's expertise and languages against the required sets."""
    team_areas: set[str] = set()
    team_languages: set[str] = set()
    has_lead = False
    for member in team:
        team_areas.update(member.expertise_areas)
        team_languages.update(member.language_codes)
        has_lead = has_lead or member.is_lead_qualified

    required_areas = list(dict.fromkeys(criteria.required_expertise or []))
    required_languages = list(dict.fromkeys(criteria.required_languages or []))

    expertise_covered = [a for a in required_areas if a in team_areas]
    expertise_missing = [a for a in required_areas if a not in team_areas]
    languages_covered = [lang for lang in required_languages if lang in team_languages]
    languages_missing = [lang for lang in required_languages if lang not in team_languages]

    expertise_coverage = _ratio(len(expertise_covered), len(required_areas))
    language_coverage = _ratio(len(languages_covered), len(required_languages))

    if expertise_coverage >= GOOD_EXPERTISE_COVERAGE and language_coverage == 1 and has_lead:
        balance = "GOOD"
    elif expertise_coverage < MIN_EXPERTISE_COVERAGE or language_coverage < MIN_LANGUAGE_COVERAGE:
        balance = "POOR"
    else:
        balance = "FAIR"

    return CoverageReport(
        expertise_covered=expertise_covered,
        expertise_missing=expertise_missing,
        expertise_coverage=expertise_coverage,
        languages_covered=languages_covered,
        languages_missing=languages_missing,
        language_coverage=language_coverage,
        has_lead_qualified=has_lead,
        team_balance=balance,
    )


# ── Team building ────────────────────────────────────────────────────────────

def _marginal_gain(candidate: MatchResult, areas: set, languages: set, required_areas: set,
                   required_languages: set, has_lead: bool) -> int:
    gain = len((set(candidate.expertise_areas) & required_areas) - areas)
    gain += len((set(candidate.language_codes) & required_languages) - languages)
    if candidate.is_lead_qualified and not has_lead:
        gain += 1
    return gain


def build_optimal_team(
    criteria: MatchingCriteria,
    candidates: list[MatchResult],
    min_size: int = MIN_TEAM_SIZE,
    max_size: int = MAX_TEAM_SIZE,
) -> TeamBuildResult:
    """
    Greedy team recommendation.

    Must-include candidates are seeded first; then the eligible candidate with
    the largest marginal coverage gain is added until the team is full.  The
    highest-scoring lead-qualified member is designated lead; when the team has
    none, the lowest-scoring non-seeded member is swapped for the best
    eligible lead-qualified candidate.
    """
    team_size = max(min_size, min(max_size, criteria.team_size or DEFAULT_TEAM_SIZE))
    required_areas = set(criteria.required_expertise or [])
    required_languages = set(criteria.required_languages or [])
    must_include = list(dict.fromkeys(criteria.must_include_ids or []))
    warnings: list[str] = []

    by_id = {c.reviewer_profile_id: c for c in candidates}
    team: list[MatchResult] = []
    for profile_id in must_include:
        candidate = by_id.get(profile_id)
        if candidate is None:
            warnings.append(f"Must-include reviewer {profile_id} is not a candidate")
            continue
        if not candidate.is_eligible:
            warnings.append(
                f"Must-include reviewer {candidate.full_name or profile_id} is ineligible: "
                + "; ".join(candidate.ineligibility_reasons)
            )
        team.append(candidate)
    seeded = {m.reviewer_profile_id for m in team}

    covered_areas: set[str] = set()
    covered_languages: set[str] = set()
    for member in team:
        covered_areas.update(set(member.expertise_areas) & required_areas)
        covered_languages.update(set(member.language_codes) & required_languages)
    has_lead = any(m.is_lead_qualified for m in team)

    pool = [c for c in candidates if c.is_eligible and c.reviewer_profile_id not in seeded]
    while len(team) < team_size and pool:
        best = max(
            pool,
            key=lambda c: (
                _marginal_gain(c, covered_areas, covered_languages, required_areas, required_languages, has_lead),
                c.score,
                -c.reviewer_profile_id,
            ),
        )
        pool.remove(best)
        team.append(best)
        covered_areas.update(set(best.expertise_areas) & required_areas)
        covered_languages.update(set(best.language_codes) & required_languages)
        has_lead = has_lead or best.is_lead_qualified

    lead = _designate_lead(team, pool, seeded, team_size, warnings)

    coverage = calculate_coverage(team, criteria)
    total_score = round(sum(m.score for m in team), 1)
    average_score = round(total_score / len(team), 1) if team else 0.0

    if len(team) < team_size:
        warnings.append(f"Only {len(team)} eligible reviewers found (requested {team_size})")
    if coverage.expertise_missing:
        warnings.append("Missing expertise: " + ", ".join(coverage.expertise_missing))
    if coverage.languages_missing:
        warnings.append("Missing languages: " + ", ".join(coverage.languages_missing))

    is_viable = (
        len(team) >= min_size
        and len(team) >= VIABLE_SIZE_RATIO * team_size
        and coverage.expertise_coverage >= MIN_EXPERTISE_COVERAGE
        and coverage.language_coverage >= MIN_LANGUAGE_COVERAGE
    )

    if lead is None:
        message = "No lead-qualified reviewer available"
    elif is_viable:
        message = f"Built a team of {len(team)} reviewers ({coverage.team_balance} balance)"
    else:
        message = f"Built a team of {len(team)} reviewers, but it is not viable"

    return TeamBuildResult(
        success=lead is not None,
        team=team,
        lead_profile_id=lead.reviewer_profile_id if lead else None,
        coverage_analysis=coverage,
        total_score=total_score,
        average_score=average_score,
        is_viable=is_viable,
        message=message,
        warnings=warnings,
    )


def _designate_lead(team: list[MatchResult], pool: list[MatchResult], seeded: set,
                    team_size: int, warnings: list[str]) -> MatchResult | None:
    leads = [m for m in team if m.is_lead_qualified and m.is_eligible]
    if leads:
        return max(leads, key=lambda m: (m.score, -m.reviewer_profile_id))

    lead_pool = [c for c in pool if c.is_lead_qualified]
    if not lead_pool:
        return None
    lead = max(lead_pool, key=lambda c: (c.score, -c.reviewer_profile_id))

    if len(team) < team_size:
        team.append(lead)
        return lead
    swappable = [m for m in team if m.reviewer_profile_id not in seeded]
    if not swappable:
        warnings.append("Team is full of must-include reviewers and none is lead qualified")
        return None
    weakest = min(swappable, key=lambda m: (m.score, -m.reviewer_profile_id))
    team[team.index(weakest)] = lead
    warnings.append(f"Replaced {weakest.full_name or weakest.reviewer_profile_id} with a lead-qualified reviewer")
    return lead


# ── Review-bound entry points ────────────────────────────────────────────────

def _load_review(review_id: int) -> Review:
    review = db.session.get(Review, review_id)
    if review is None:
        raise NotFoundError(resource="Review", resource_id=review_id)
    return review


def criteria_for_review(review: Review, overrides: dict | None = None) -> MatchingCriteria:
    """Default criteria from the review's scope, language and dates; *overrides* win."""
    overrides = overrides or {}
    languages = [review.language_preference] if review.language_preference else []
    criteria = MatchingCriteria(
        target_organization_id=review.host_organization_id,
        required_expertise=list(review.areas_in_scope or []),
        required_languages=languages,
        start_date=review.planned_start_date or review.requested_start_date,
        end_date=review.planned_end_date or review.requested_end_date,
        team_size=review.max_team_size or DEFAULT_TEAM_SIZE,
        lead_already_chosen=review.lead_member is not None,
    )
    for key, value in overrides.items():
        if not hasattr(criteria, key) or key == "target_organization_id":
            raise ValidationError(f"Unknown matching criterion: {key}", details={key: "unknown"})
        if value is not None:
            setattr(criteria, key, value)
    if criteria.start_date and criteria.end_date and criteria.end_date < criteria.start_date:
        raise ValidationError("end_date must not be before start_date", details={"end_date": "before start_date"})
    return criteria


def _candidate_profiles() -> list[ReviewerProfile]:
    return db.session.execute(select(ReviewerProfile).order_by(ReviewerProfile.id)).scalars().all()


def match_reviewers_for_review(review_id: int, actor: Actor, overrides: dict | None = None) -> dict:
    """Ranked reviewer matches for a stored review."""
    require(actor, "find_matching_reviewers", actor is not None and can_match_reviewers(actor.role))
    review = _load_review(review_id)
    criteria = criteria_for_review(review, overrides)
    seated = {m.reviewer_profile_id for m in review.seated_members}
    criteria.exclude_ids = list(set(criteria.exclude_ids) | seated)

    results = find_matching_reviewers(criteria, _candidate_profiles())
    logger.info(
        "Matched reviewers for review",
        extra={"review_id": review_id, "actor_id": actor.user_id, "count": len(results)},
    )
    return {
        "review_id": review_id,
        "matches": [r.to_dict() for r in results],
        "total_candidates": len(results),
        "eligible_candidates": sum(1 for r in results if r.is_eligible),
    }


def recommend_team_for_review(review_id: int, actor: Actor, overrides: dict | None = None) -> dict:
    """Greedy team recommendation for a stored review; nothing is persisted."""
    require(actor, "build_optimal_team", actor is not None and can_match_reviewers(actor.role))
    review = _load_review(review_id)
    criteria = criteria_for_review(review, overrides)
    criteria.lead_already_chosen = False

    candidates = find_matching_reviewers(criteria, _candidate_profiles())
    result = build_optimal_team(
        criteria,
        candidates,
        min_size=current_app.config.get("MIN_TEAM_SIZE", MIN_TEAM_SIZE),
        max_size=current_app.config.get("MAX_TEAM_SIZE", MAX_TEAM_SIZE),
    )
    logger.info(
        "Team recommendation built",
        extra={
            "review_id": review_id,
            "actor_id": actor.user_id,
            "success": result.success,
            "team_size": len(result.team),
        },
    )
    return {"review_id": review_id, **result.to_dict()}


def coverage_for_review(review_id: int) -> dict:
    """Coverage of the review's current seated team against its scope."""
    review = _load_review(review_id)
    criteria = criteria_for_review(review)
    team = [calculate_match_score(m.reviewer_profile, criteria) for m in review.seated_members]
    return {"review_id": review_id, **calculate_coverage(team, criteria).to_dict()}
