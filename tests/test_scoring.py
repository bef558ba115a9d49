"""
Tests — reviewer match scoring components.

Covers:
    - Expertise: required/preferred split, full marks without requirements
    - Language: proficiency and interview shares, conducting ability
    - Availability: window coverage, declared slots, unavailable flag
    - Experience: years and completed-reviews bonuses
    - Monotonicity of every component
"""

from datetime import date

import pytest

from peer_review.models.reviewer import ReviewerAvailability
from peer_review.services import scoring


def _slot(start, end, availability_type="UNAVAILABLE", notes=None):
    return ReviewerAvailability(
        start_date=start, end_date=end, availability_type=availability_type, notes=notes,
    )


WINDOW_START = date(2026, 3, 1)
WINDOW_END = date(2026, 3, 10)


# ═════════════════════════════════════════════════════════════════════════════
# EXPERTISE
# ═════════════════════════════════════════════════════════════════════════════

class TestExpertise:
    def test_no_required_areas_is_full_marks(self):
        result = scoring.score_expertise(["ATM"], [])
        assert result.score == scoring.EXPERTISE_MAX
        assert result.required_coverage == 1.0

    def test_full_required_match(self):
        result = scoring.score_expertise(["ATM", "CNS"], ["ATM", "CNS"])
        assert result.score == 40.0
        assert result.missing_required == []

    def test_half_required_match(self):
        result = scoring.score_expertise(["ATM"], ["ATM", "CNS"])
        assert result.score == 20.0
        assert result.matched_required == ["ATM"]
        assert result.missing_required == ["CNS"]
        assert result.required_coverage == 0.5

    def test_no_match_scores_zero(self):
        result = scoring.score_expertise([], ["ATM", "CNS"])
        assert result.score == 0.0

    def test_preferred_areas_add_points(self):
        without = scoring.score_expertise(["ATM"], ["ATM"], ["SMS"])
        with_pref = scoring.score_expertise(["ATM", "SMS"], ["ATM"], ["SMS"])
        assert without.score == 30.0
        assert with_pref.score == 40.0
        assert with_pref.matched_preferred == ["SMS"]

    def test_one_more_required_area_never_lowers_score(self):
        required = ["ATM", "CNS", "SMS", "AIM"]
        scores = [scoring.score_expertise(required[:n], required).score for n in range(len(required) + 1)]
        assert scores == sorted(scores)


# ═════════════════════════════════════════════════════════════════════════════
# LANGUAGE
# ═════════════════════════════════════════════════════════════════════════════

class TestLanguage:
    def test_no_required_languages_is_full_marks(self):
        result = scoring.score_language([], [])
        assert result.score == scoring.LANGUAGE_MAX
        assert result.can_conduct_review is True

    def test_native_interviewer_scores_max(self):
        languages = [{"language": "EN", "proficiency": "NATIVE", "can_interview": True}]
        result = scoring.score_language(languages, ["EN"])
        assert result.score == pytest.approx(25.0)
        assert result.matched_languages == ["EN"]

    def test_missing_language(self):
        languages = [{"language": "EN", "proficiency": "NATIVE", "can_interview": True}]
        result = scoring.score_language(languages, ["EN", "FR"])
        assert result.missing_languages == ["FR"]
        assert result.can_conduct_review is False
        assert 0 < result.score < 12.5 + 0.01

    def test_basic_proficiency_cannot_conduct(self):
        languages = [{"language": "EN", "proficiency": "BASIC", "can_interview": False}]
        result = scoring.score_language(languages, ["EN"])
        assert result.can_conduct_review is False
        assert result.score < scoring.LANGUAGE_MAX

    def test_higher_proficiency_never_lowers_score(self):
        levels = ("BASIC", "INTERMEDIATE", "ADVANCED", "NATIVE")
        scores = [
            scoring.score_language([{"language": "EN", "proficiency": p, "can_interview": False}], ["EN"]).score
            for p in levels
        ]
        assert scores == sorted(scores)


# ═════════════════════════════════════════════════════════════════════════════
# AVAILABILITY
# ═════════════════════════════════════════════════════════════════════════════

class TestAvailability:
    def test_unavailable_flag_scores_zero(self):
        result = scoring.score_availability(False, [], WINDOW_START, WINDOW_END)
        assert result.score == 0.0
        assert "Reviewer marked unavailable" in result.conflicts

    def test_no_window_means_flag_decides(self):
        result = scoring.score_availability(True, [], None, None)
        assert result.score == scoring.AVAILABILITY_MAX
        assert result.coverage == 1.0

    def test_days_default_to_available(self):
        result = scoring.score_availability(True, [], WINDOW_START, WINDOW_END)
        assert result.total_days == 10
        assert result.score == 25.0

    def test_unavailable_slot_halves_score(self):
        slots = [_slot(date(2026, 3, 1), date(2026, 3, 5))]
        result = scoring.score_availability(True, slots, WINDOW_START, WINDOW_END)
        assert result.coverage == 0.5
        assert result.score == 12.5

    def test_tentative_days_count_half(self):
        slots = [_slot(date(2026, 3, 1), date(2026, 3, 10), "TENTATIVE")]
        result = scoring.score_availability(True, slots, WINDOW_START, WINDOW_END)
        assert result.coverage == 0.5

    def test_slot_outside_window_is_ignored(self):
        slots = [_slot(date(2026, 4, 1), date(2026, 4, 30))]
        result = scoring.score_availability(True, slots, WINDOW_START, WINDOW_END)
        assert result.score == 25.0

    def test_on_assignment_notes_reported(self):
        slots = [_slot(date(2026, 3, 9), date(2026, 3, 12), "ON_ASSIGNMENT", "Audit in Lisbon")]
        result = scoring.score_availability(True, slots, WINDOW_START, WINDOW_END)
        assert result.conflicts == ["Audit in Lisbon"]
        assert result.coverage == 0.8

    def test_inverted_window_scores_zero(self):
        result = scoring.score_availability(True, [], WINDOW_END, WINDOW_START)
        assert result.score == 0.0
        assert result.conflicts == ["Invalid date range"]

    def test_one_more_available_day_never_lowers_score(self):
        scores = []
        for blocked_until in range(10, 0, -1):
            slots = [_slot(date(2026, 3, 1), date(2026, 3, blocked_until))]
            scores.append(scoring.score_availability(True, slots, WINDOW_START, WINDOW_END).score)
        assert scores == sorted(scores)


# ═════════════════════════════════════════════════════════════════════════════
# EXPERIENCE
# ═════════════════════════════════════════════════════════════════════════════

class TestExperience:
    def test_novice(self):
        result = scoring.score_experience(0, 0)
        assert result.score == 0.0

    def test_veteran_capped_at_max(self):
        result = scoring.score_experience(20, 25)
        assert result.score == scoring.EXPERIENCE_MAX

    def test_intermediate_bonuses(self):
        result = scoring.score_experience(5, 2)
        assert result.years_bonus == 1.0
        assert result.reviews_bonus == 1.0
        assert result.score == 2.0

    def test_ten_years_five_reviews(self):
        result = scoring.score_experience(10, 5)
        assert result.score == 6.0


def test_total_percentage_is_capped():
    assert scoring.total_percentage(105.0) == 100
    assert scoring.total_percentage(72.4) == 72
