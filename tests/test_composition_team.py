"""
Tests — team composition rules and the team service.

Covers:
    - Exactly one lead; size bounds; duplicate reviewers
    - Hard conflicts of interest (same organization, declared) beat every override
    - Cross-team justification and approver
    - Lead qualification and its authorized override
    - Bulk assignment, add, role change, removal, replacement
    - Invitation sub-state machine and decline reasons
    - Readiness breakdown
    - Capability checks before guards; sink failures never roll back
"""

import pytest

from peer_review.core.exceptions import (
    CompositionInvalidError,
    ConflictOfInterestError,
    ForbiddenError,
    InvalidTransitionError,
    ValidationError,
)
from peer_review.models import db
from peer_review.models.review import Review, ReviewTeamMember
from peer_review.services import team_service
from peer_review.services.notification import NotificationService
from peer_review.services.permission import Actor

COORDINATOR = Actor(user_id=900, role="PROGRAMME_COORDINATOR")
SYSTEM_ADMIN = Actor(user_id=901, role="SYSTEM_ADMIN")
SUPER_ADMIN = Actor(user_id=902, role="SUPER_ADMIN")
PEER = Actor(user_id=903, role="PEER_REVIEWER")


# ═════════════════════════════════════════════════════════════════════════════
# FIXTURES
# ═════════════════════════════════════════════════════════════════════════════

@pytest.fixture()
def pool(make_org, make_profile):
    host = make_org("Host ANSP", regional_team="EUR")
    peer = make_org("Neighbour ANSP", regional_team="EUR")
    far = make_org("Distant ANSP", regional_team="AFR")
    return {
        "host": host,
        "lead": make_profile(peer, lead=True, reviews_completed=5),
        "lead2": make_profile(peer, lead=True, reviews_completed=3),
        "r1": make_profile(peer),
        "r2": make_profile(peer),
        "novice": make_profile(peer, lead=False, reviews_completed=1),
        "same_org": make_profile(host, lead=True, reviews_completed=9),
        "far": make_profile(far),
    }


@pytest.fixture()
def review(pool, make_review):
    return make_review(pool["host"], status="APPROVED")


def _seat(profile, role="REVIEWER", **kw):
    return {"reviewer_profile_id": profile.id, "role": role, **kw}


def _seated(review_id):
    review = db.session.get(Review, review_id)
    return review.seated_members


# ═════════════════════════════════════════════════════════════════════════════
# COMPOSITION RULES
# ═════════════════════════════════════════════════════════════════════════════

class TestLeadRule:
    def test_two_leads_rejected(self, pool, review):
        with pytest.raises(CompositionInvalidError) as exc:
            team_service.assign_team_bulk(
                review.id, [_seat(pool["lead"], "LEAD_REVIEWER"), _seat(pool["lead2"], "LEAD_REVIEWER")],
                COORDINATOR,
            )
        assert "Team must have exactly one Lead Reviewer" in exc.value.violations
        assert _seated(review.id) == []

    def test_no_lead_rejected(self, pool, review):
        with pytest.raises(CompositionInvalidError) as exc:
            team_service.assign_team_bulk(review.id, [_seat(pool["r1"]), _seat(pool["r2"])], COORDINATOR)
        assert "Team must have exactly one Lead Reviewer" in exc.value.violations

    def test_every_violation_reported(self, pool, make_review):
        review = make_review(pool["host"], status="APPROVED", max_team_size=2)
        members = [_seat(pool["r1"]), _seat(pool["r2"]), _seat(pool["novice"])]
        with pytest.raises(CompositionInvalidError) as exc:
            team_service.assign_team_bulk(review.id, members, COORDINATOR)
        violations = exc.value.violations
        assert "Team must have exactly one Lead Reviewer" in violations
        assert "Team size 3 exceeds the maximum of 2" in violations

    def test_team_below_minimum(self, pool, make_review):
        review = make_review(pool["host"], status="APPROVED", min_team_size=3)
        with pytest.raises(CompositionInvalidError) as exc:
            team_service.assign_team_bulk(
                review.id, [_seat(pool["lead"], "LEAD_REVIEWER"), _seat(pool["r1"])], COORDINATOR,
            )
        assert "Team size 2 is below the minimum of 3" in exc.value.violations


class TestConflictOfInterest:
    def test_same_org_rejected(self, pool, review):
        with pytest.raises(ConflictOfInterestError) as exc:
            team_service.assign_team_bulk(
                review.id, [_seat(pool["same_org"], "LEAD_REVIEWER"), _seat(pool["r1"])], COORDINATOR,
            )
        user_id = pool["same_org"].user_id
        assert f"User {user_id}: Cannot review own organization" in exc.value.violations

    def test_same_org_rejected_for_super_admin_with_override(self, pool, review):
        with pytest.raises(ConflictOfInterestError):
            team_service.assign_team_bulk(
                review.id, [_seat(pool["same_org"], "LEAD_REVIEWER"), _seat(pool["r1"])],
                SUPER_ADMIN, lead_override=True, lead_override_reason="Only available lead for this region",
            )

    def test_conflict_takes_precedence_over_other_violations(self, pool, review):
        members = [
            _seat(pool["same_org"], "LEAD_REVIEWER"),
            _seat(pool["lead"], "LEAD_REVIEWER"),
        ]
        with pytest.raises(ConflictOfInterestError):
            team_service.assign_team_bulk(review.id, members, COORDINATOR)

    def test_declared_hard_conflict_rejected(self, pool, review, make_profile, make_org):
        other = make_org("Third ANSP", regional_team="EUR")
        conflicted = make_profile(other, conflicts=[
            {"organization_id": pool["host"].id, "coi_type": "FAMILY_RELATIONSHIP"},
        ])
        with pytest.raises(ConflictOfInterestError) as exc:
            team_service.add_team_member(review.id, _seat(conflicted), COORDINATOR)
        assert f"User {conflicted.user_id}: Has family member at target organization" in exc.value.violations

    def test_same_org_rejected_on_add(self, pool, review):
        with pytest.raises(ConflictOfInterestError):
            team_service.add_team_member(review.id, _seat(pool["same_org"]), SUPER_ADMIN, lead_override=True)


class TestCrossTeam:
    def test_cross_team_needs_justification(self, pool, review):
        with pytest.raises(CompositionInvalidError) as exc:
            team_service.assign_team_bulk(
                review.id, [_seat(pool["lead"], "LEAD_REVIEWER"), _seat(pool["far"])], COORDINATOR,
            )
        assert any("requires a justification" in v for v in exc.value.violations)

    def test_cross_team_recorded(self, pool, review):
        result = team_service.assign_team_bulk(
            review.id,
            [
                _seat(pool["lead"], "LEAD_REVIEWER"),
                _seat(pool["far"], cross_team_justification="Only reviewer with oceanic ATM expertise"),
            ],
            COORDINATOR,
        )
        far = next(m for m in result["team_members"] if m["user_id"] == pool["far"].user_id)
        assert far["is_cross_team_assignment"] is True
        assert far["cross_team_approved_by_id"] == COORDINATOR.user_id
        assert far["cross_team_justification"] == "Only reviewer with oceanic ATM expertise"


class TestLeadQualification:
    def test_unqualified_lead_rejected(self, pool, review):
        with pytest.raises(CompositionInvalidError) as exc:
            team_service.assign_team_bulk(
                review.id, [_seat(pool["novice"], "LEAD_REVIEWER"), _seat(pool["r1"])], COORDINATOR,
            )
        user_id = pool["novice"].user_id
        assert f"Lead Reviewer (user {user_id}) is not lead-qualified" in exc.value.violations
        assert f"Lead Reviewer (user {user_id}) has completed fewer than 3 reviews" in exc.value.violations

    def test_override_by_coordinator(self, pool, review):
        result = team_service.assign_team_bulk(
            review.id, [_seat(pool["novice"], "LEAD_REVIEWER"), _seat(pool["r1"])], COORDINATOR,
            lead_override=True, lead_override_reason="Mentored by programme office",
        )
        lead = next(m for m in result["team_members"] if m["role"] == "LEAD_REVIEWER")
        assert lead["lead_override_by_id"] == COORDINATOR.user_id
        assert lead["lead_override_reason"] == "Mentored by programme office"

    def test_override_needs_authorized_role(self, pool, review):
        with pytest.raises(CompositionInvalidError) as exc:
            team_service.assign_team_bulk(
                review.id, [_seat(pool["novice"], "LEAD_REVIEWER"), _seat(pool["r1"])], SYSTEM_ADMIN,
                lead_override=True,
            )
        assert "Lead qualification override requires PROGRAMME_COORDINATOR or SUPER_ADMIN" in exc.value.violations


# ═════════════════════════════════════════════════════════════════════════════
# TEAM SERVICE
# ═════════════════════════════════════════════════════════════════════════════

class TestAssignTeamBulk:
    def test_assign_moves_review_to_planning(self, pool, review, events):
        result = team_service.assign_team_bulk(
            review.id, [_seat(pool["lead"], "LEAD_REVIEWER"), _seat(pool["r1"])], COORDINATOR,
        )
        assert result["status"] == "PLANNING"
        assert len(result["team_members"]) == 2
        assert {m["invitation_status"] for m in result["team_members"]} == {"PENDING"}

        types = [e[0] for e in events]
        assert types.count("team.member_assigned") == 2
        assert "review.status_changed" in types

    def test_replace_existing(self, pool, review):
        team_service.assign_team_bulk(
            review.id, [_seat(pool["lead"], "LEAD_REVIEWER"), _seat(pool["r1"])], COORDINATOR,
        )
        result = team_service.assign_team_bulk(
            review.id, [_seat(pool["lead2"], "LEAD_REVIEWER"), _seat(pool["r2"])], COORDINATOR,
            replace_existing=True,
        )
        assert {m["user_id"] for m in result["team_members"]} == {pool["lead2"].user_id, pool["r2"].user_id}

    def test_forbidden_checked_before_composition(self, pool, review):
        with pytest.raises(ForbiddenError):
            team_service.assign_team_bulk(review.id, [_seat(pool["same_org"])], PEER)

    def test_forbidden_checked_before_status_guard(self, pool, make_review):
        review = make_review(pool["host"], status="IN_PROGRESS")
        with pytest.raises(ForbiddenError):
            team_service.assign_team_bulk(review.id, [_seat(pool["lead"], "LEAD_REVIEWER")], PEER)

    def test_team_frozen_after_fieldwork_starts(self, pool, make_review):
        review = make_review(pool["host"], status="IN_PROGRESS")
        with pytest.raises(InvalidTransitionError):
            team_service.add_team_member(review.id, _seat(pool["r1"]), COORDINATOR)

    def test_failing_sink_does_not_roll_back(self, pool, review):
        def _broken_sink(event_type, payload):
            raise RuntimeError("mail relay down")

        NotificationService.register_sink(_broken_sink)
        team_service.assign_team_bulk(
            review.id, [_seat(pool["lead"], "LEAD_REVIEWER"), _seat(pool["r1"])], COORDINATOR,
        )
        db.session.expire_all()
        assert len(_seated(review.id)) == 2
        assert db.session.get(Review, review.id).status == "PLANNING"


class TestMemberChanges:
    def test_new_lead_demotes_previous(self, pool, make_review, make_member):
        review = make_review(pool["host"], status="PLANNING")
        old_lead = make_member(review, pool["lead"], role="LEAD_REVIEWER")
        make_member(review, pool["r1"])

        created = team_service.add_team_member(review.id, _seat(pool["lead2"], "LEAD_REVIEWER"), COORDINATOR)
        assert created["role"] == "LEAD_REVIEWER"
        assert db.session.get(ReviewTeamMember, old_lead.id).role == "REVIEWER"
        leads = [m for m in _seated(review.id) if m.role == "LEAD_REVIEWER"]
        assert [m.user_id for m in leads] == [pool["lead2"].user_id]

    def test_role_promotion_demotes_previous(self, pool, make_review, make_member):
        review = make_review(pool["host"], status="PLANNING")
        old_lead = make_member(review, pool["lead"], role="LEAD_REVIEWER")
        other = make_member(review, pool["lead2"])

        team_service.update_team_member_role(other.id, "LEAD_REVIEWER", COORDINATOR)
        assert db.session.get(ReviewTeamMember, old_lead.id).role == "REVIEWER"
        assert db.session.get(ReviewTeamMember, other.id).role == "LEAD_REVIEWER"

    def test_remove_pending_member_withdraws(self, pool, make_review, make_member):
        review = make_review(pool["host"], status="PLANNING")
        member = make_member(review, pool["r1"], invitation_status="PENDING")

        result = team_service.remove_team_member(member.id, COORDINATOR)
        assert result["outcome"] == "withdrawn"
        assert db.session.get(ReviewTeamMember, member.id).invitation_status == "WITHDRAWN"

    def test_remove_confirmed_member_deletes(self, pool, make_review, make_member):
        review = make_review(pool["host"], status="PLANNING")
        member = make_member(review, pool["r1"])
        member_id = member.id

        result = team_service.remove_team_member(member_id, COORDINATOR)
        assert result == {"member_id": member_id, "review_id": review.id, "outcome": "deleted"}
        assert db.session.get(ReviewTeamMember, member_id) is None

    def test_replace_declined_member(self, pool, make_review, make_member):
        review = make_review(pool["host"], status="PLANNING")
        make_member(review, pool["lead"], role="LEAD_REVIEWER")
        declined = make_member(review, pool["r1"], invitation_status="DECLINED")

        created = team_service.replace_declined_member(declined.id, pool["r2"].id, COORDINATOR)
        assert created["user_id"] == pool["r2"].user_id
        assert created["role"] == "REVIEWER"
        assert created["invitation_status"] == "PENDING"

    def test_only_declined_members_are_replaced(self, pool, make_review, make_member):
        review = make_review(pool["host"], status="PLANNING")
        confirmed = make_member(review, pool["r1"])
        with pytest.raises(ValidationError):
            team_service.replace_declined_member(confirmed.id, pool["r2"].id, COORDINATOR)


# ═════════════════════════════════════════════════════════════════════════════
# INVITATIONS
# ═════════════════════════════════════════════════════════════════════════════

class TestInvitations:
    @pytest.fixture()
    def invited(self, pool, make_review, make_member):
        review = make_review(pool["host"], status="PLANNING")
        member = make_member(review, pool["r1"], invitation_status="PENDING")
        result = team_service.send_invitations(review.id, COORDINATOR)
        assert result["invited"] == 1
        return member

    def test_accept(self, pool, invited):
        actor = Actor(user_id=pool["r1"].user_id, role="PEER_REVIEWER")
        result = team_service.respond_to_invitation(invited.id, True, actor)
        assert result["invitation_status"] == "CONFIRMED"
        assert result["confirmed_at"] is not None

    def test_decline_needs_reason(self, pool, invited):
        actor = Actor(user_id=pool["r1"].user_id, role="PEER_REVIEWER")
        with pytest.raises(ValidationError):
            team_service.respond_to_invitation(invited.id, False, actor, decline_reason="busy")
        db.session.rollback()

        result = team_service.respond_to_invitation(
            invited.id, False, actor, decline_reason="Already assigned to another review",
        )
        assert result["invitation_status"] == "DECLINED"
        assert result["decline_reason"] == "Already assigned to another review"

    def test_cannot_answer_twice(self, pool, invited):
        actor = Actor(user_id=pool["r1"].user_id, role="PEER_REVIEWER")
        team_service.respond_to_invitation(invited.id, True, actor)
        with pytest.raises(InvalidTransitionError):
            team_service.respond_to_invitation(invited.id, False, actor, decline_reason="Changed my mind after all")

    def test_pending_member_cannot_answer(self, pool, make_review, make_member):
        review = make_review(pool["host"], status="PLANNING")
        member = make_member(review, pool["r1"], invitation_status="PENDING")
        actor = Actor(user_id=pool["r1"].user_id, role="PEER_REVIEWER")
        with pytest.raises(InvalidTransitionError):
            team_service.respond_to_invitation(member.id, True, actor)

    def test_other_reviewer_cannot_answer(self, pool, invited):
        stranger = Actor(user_id=pool["r2"].user_id, role="PEER_REVIEWER")
        with pytest.raises(ForbiddenError):
            team_service.respond_to_invitation(invited.id, True, stranger)


# ═════════════════════════════════════════════════════════════════════════════
# READINESS
# ═════════════════════════════════════════════════════════════════════════════

class TestReadiness:
    def test_ready_team(self, pool, make_review, make_member):
        review = make_review(pool["host"], status="SCHEDULED")
        make_member(review, pool["lead"], role="LEAD_REVIEWER")
        make_member(review, pool["r1"])

        readiness = team_service.team_readiness(db.session.get(Review, review.id))
        assert readiness["ready"] is True
        assert readiness["confirmed_count"] == 2
        assert readiness["has_confirmed_lead"] is True
        assert readiness["issues"] == []

    def test_open_invitations_and_missing_lead(self, pool, make_review, make_member):
        review = make_review(pool["host"], status="SCHEDULED")
        make_member(review, pool["lead"], role="LEAD_REVIEWER", invitation_status="INVITED")
        make_member(review, pool["r1"])
        make_member(review, pool["r2"], invitation_status="DECLINED")

        readiness = team_service.team_readiness(db.session.get(Review, review.id))
        assert readiness["ready"] is False
        assert readiness["pending_count"] == 1
        assert readiness["declined_count"] == 1
        assert readiness["has_confirmed_lead"] is False
        assert "Team needs exactly one confirmed Lead Reviewer" in readiness["issues"]

    def test_get_team_includes_readiness(self, pool, make_review, make_member):
        review = make_review(pool["host"], status="PLANNING")
        make_member(review, pool["r1"])
        result = team_service.get_team(review.id)
        assert len(result["members"]) == 1
        assert result["readiness"]["confirmed_count"] == 1
