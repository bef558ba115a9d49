"""
Reviewer Match Scoring

Component scores for matching a reviewer against review criteria:

    Expertise     max 40  (30 split across required areas, 10 across preferred)
    Language      max 25  (per required language: 60% base, 25% x proficiency, 15% interview)
    Availability  max 25  (share of the review window the reviewer is available)
    Experience    max 10  (years in the domain 0-5, completed reviews 0-5)
    Lead bonus    +5      (lead-qualified while the team has no lead yet)

The weights are tunable.  What callers rely on is monotonicity: matching one
more required area or language, or being available on one more day, never
lowers a score.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta

# ── Weights ──────────────────────────────────────────────────────────────────

EXPERTISE_MAX = 40.0
EXPERTISE_REQUIRED_MAX = 30.0
EXPERTISE_PREFERRED_MAX = 10.0
LANGUAGE_MAX = 25.0
AVAILABILITY_MAX = 25.0
EXPERIENCE_MAX = 10.0
LEAD_BONUS = 5.0
MAX_PERCENTAGE = 100

LANGUAGE_BASE_SHARE = 0.6
LANGUAGE_PROFICIENCY_SHARE = 0.25
LANGUAGE_INTERVIEW_SHARE = 0.15

LANGUAGE_PROFICIENCY_BONUS = {
    "BASIC": 0.25,
    "INTERMEDIATE": 0.5,
    "ADVANCED": 0.8,
    "NATIVE": 1.0,
}

# Proficiency levels at which a reviewer can run interviews in the language.
CONDUCTING_PROFICIENCIES = frozenset({"INTERMEDIATE", "ADVANCED", "NATIVE"})

AVAILABILITY_DAY_WEIGHT = {
    "AVAILABLE": 1.0,
    "TENTATIVE": 0.5,
    "UNAVAILABLE": 0.0,
    "ON_ASSIGNMENT": 0.0,
}

MIN_YEARS_EXPERIENCE = 5


@dataclass
class ExpertiseScore:
    score: float
    max_score: float
    matched_required: list[str] = field(default_factory=list)
    matched_preferred: list[str] = field(default_factory=list)
    missing_required: list[str] = field(default_factory=list)

    @property
    def required_coverage(self) -> float:
        total = len(self.matched_required) + len(self.missing_required)
        return len(self.matched_required) / total if total else 1.0

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "max_score": self.max_score,
            "matched_required": self.matched_required,
            "matched_preferred": self.matched_preferred,
            "missing_required": self.missing_required,
        }


@dataclass
class LanguageScore:
    score: float
    max_score: float
    matched_languages: list[str] = field(default_factory=list)
    missing_languages: list[str] = field(default_factory=list)
    can_conduct_review: bool = True

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "max_score": self.max_score,
            "matched_languages": self.matched_languages,
            "missing_languages": self.missing_languages,
            "can_conduct_review": self.can_conduct_review,
        }


@dataclass
class AvailabilityScore:
    score: float
    max_score: float
    available_days: float
    total_days: int
    coverage: float
    conflicts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "max_score": self.max_score,
            "available_days": self.available_days,
            "total_days": self.total_days,
            "coverage": self.coverage,
            "conflicts": self.conflicts,
        }


@dataclass
class ExperienceScore:
    score: float
    max_score: float
    years_bonus: float
    reviews_bonus: float

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "max_score": self.max_score,
            "years_bonus": self.years_bonus,
            "reviews_bonus": self.reviews_bonus,
        }


def _round1(value: float) -> float:
    return round(value * 10) / 10


# ── Expertise ────────────────────────────────────────────────────────────────

def score_expertise(areas, required, preferred=()) -> ExpertiseScore:
    """Score expertise overlap.  No required areas means full marks."""
    have = set(areas or [])
    required = list(dict.fromkeys(required or []))
    preferred = [a for a in dict.fromkeys(preferred or []) if a not in required]

    if not required:
        return ExpertiseScore(score=EXPERTISE_MAX, max_score=EXPERTISE_MAX)

    matched_required = [a for a in required if a in have]
    missing_required = [a for a in required if a not in have]
    required_score = EXPERTISE_REQUIRED_MAX * len(matched_required) / len(required)

    matched_preferred = [a for a in preferred if a in have]
    if preferred:
        preferred_score = EXPERTISE_PREFERRED_MAX * len(matched_preferred) / len(preferred)
    else:
        preferred_score = EXPERTISE_PREFERRED_MAX if not missing_required else (
            EXPERTISE_PREFERRED_MAX * len(matched_required) / len(required)
        )

    return ExpertiseScore(
        score=_round1(min(required_score + preferred_score, EXPERTISE_MAX)),
        max_score=EXPERTISE_MAX,
        matched_required=matched_required,
        matched_preferred=matched_preferred,
        missing_required=missing_required,
    )


# ── Language ─────────────────────────────────────────────────────────────────

def score_language(languages, required) -> LanguageScore:
    """
    Score language overlap.

    *languages* is a list of ``{"language", "proficiency", "can_interview"}``
    dicts.  No required languages means full marks.
    """
    required = list(dict.fromkeys(required or []))
    if not required:
        return LanguageScore(score=LANGUAGE_MAX, max_score=LANGUAGE_MAX)

    by_code = {entry.get("language"): entry for entry in (languages or []) if entry.get("language")}
    per_language = LANGUAGE_MAX / len(required)

    matched, missing = [], []
    total = 0.0
    can_conduct = True
    for code in required:
        entry = by_code.get(code)
        if entry is None:
            missing.append(code)
            can_conduct = False
            continue
        matched.append(code)
        proficiency = (entry.get("proficiency") or "INTERMEDIATE").upper()
        total += per_language * LANGUAGE_BASE_SHARE
        total += per_language * LANGUAGE_PROFICIENCY_SHARE * LANGUAGE_PROFICIENCY_BONUS.get(proficiency, 0.5)
        if entry.get("can_interview"):
            total += per_language * LANGUAGE_INTERVIEW_SHARE
        if proficiency not in CONDUCTING_PROFICIENCIES:
            can_conduct = False

    return LanguageScore(
        score=_round1(min(total, LANGUAGE_MAX)),
        max_score=LANGUAGE_MAX,
        matched_languages=matched,
        missing_languages=missing,
        can_conduct_review=can_conduct,
    )


# ── Availability ─────────────────────────────────────────────────────────────

def score_availability(is_available: bool, slots, start: date | None, end: date | None) -> AvailabilityScore:
    """
    Score availability over the inclusive window [start, end].

    Days default to available for a reviewer flagged ``is_available``; declared
    slots override individual days.  A reviewer flagged unavailable scores 0.
    Without a window the flag alone decides.
    """
    if not is_available:
        return AvailabilityScore(
            score=0.0, max_score=AVAILABILITY_MAX, available_days=0,
            total_days=0, coverage=0.0, conflicts=["Reviewer marked unavailable"],
        )
    if start is None or end is None:
        return AvailabilityScore(
            score=AVAILABILITY_MAX, max_score=AVAILABILITY_MAX, available_days=0,
            total_days=0, coverage=1.0,
        )
    if end < start:
        return AvailabilityScore(
            score=0.0, max_score=AVAILABILITY_MAX, available_days=0,
            total_days=0, coverage=0.0, conflicts=["Invalid date range"],
        )

    total_days = (end - start).days + 1
    day_weight = {start + timedelta(days=i): 1.0 for i in range(total_days)}
    conflicts: list[str] = []

    for slot in slots or []:
        if slot.end_date < start or slot.start_date > end:
            continue
        weight = AVAILABILITY_DAY_WEIGHT.get(slot.availability_type, 0.0)
        day = max(slot.start_date, start)
        last = min(slot.end_date, end)
        while day <= last:
            day_weight[day] = weight
            day += timedelta(days=1)
        if slot.availability_type == "ON_ASSIGNMENT" and slot.notes and slot.notes not in conflicts:
            conflicts.append(slot.notes)

    available = sum(day_weight.values())
    coverage = available / total_days
    return AvailabilityScore(
        score=_round1(min(coverage * AVAILABILITY_MAX, AVAILABILITY_MAX)),
        max_score=AVAILABILITY_MAX,
        available_days=_round1(available),
        total_days=total_days,
        coverage=round(coverage, 2),
        conflicts=conflicts,
    )


# ── Experience ───────────────────────────────────────────────────────────────

def score_experience(years: int, reviews_completed: int) -> ExperienceScore:
    """Years bonus 0-5 plus completed-reviews bonus 0-5."""
    years = years or 0
    reviews = reviews_completed or 0

    if years >= 15:
        years_bonus = 5.0
    elif years >= 10:
        years_bonus = 3.0
    elif years >= MIN_YEARS_EXPERIENCE:
        years_bonus = 1 + ((years - MIN_YEARS_EXPERIENCE) / 5) * 2
    else:
        years_bonus = 0.0

    if reviews >= 10:
        reviews_bonus = 5.0
    elif reviews >= 5:
        reviews_bonus = 3.0
    elif reviews >= 2:
        reviews_bonus = 1 + ((reviews - 2) / 3) * 2
    else:
        reviews_bonus = reviews * 0.5

    years_bonus = min(years_bonus, 5.0)
    reviews_bonus = min(reviews_bonus, 5.0)
    return ExperienceScore(
        score=min(_round1(years_bonus + reviews_bonus), EXPERIENCE_MAX),
        max_score=EXPERIENCE_MAX,
        years_bonus=_round1(years_bonus),
        reviews_bonus=_round1(reviews_bonus),
    )


def total_percentage(total: float) -> int:
    """Percentage of the 100-point scale, capped at 100."""
    return min(MAX_PERCENTAGE, int(round(total)))
