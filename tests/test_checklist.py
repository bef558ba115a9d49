"""
Tests — fieldwork checklist and fieldwork completion.

Covers:
    - Seeding: fourteen items in three phases, idempotent initialization
    - Item rules: MANUAL, APPROVAL_REQUIRED, FINDINGS_EXIST, PREREQUISITE_ITEMS
    - Coordinator overrides with a reason
    - complete_fieldwork: capability first, status guard, all items required
"""

import pytest

from peer_review.core.exceptions import ForbiddenError, InvalidTransitionError, ValidationError
from peer_review.models import db
from peer_review.models.checklist import CHECKLIST_ITEM_DEFINITIONS
from peer_review.models.review import Review
from peer_review.services import checklist_service, finding_service
from peer_review.services.permission import Actor

COORDINATOR = Actor(user_id=900, role="PROGRAMME_COORDINATOR")
ALL_CODES = [d["item_code"] for d in CHECKLIST_ITEM_DEFINITIONS]
SITE_PREREQUISITES = ("SITE_OPENING_MEETING", "SITE_INTERVIEWS", "SITE_FACILITIES", "SITE_DOC_REVIEW")


@pytest.fixture()
def fieldwork(make_org, make_profile, make_review, make_member):
    """IN_PROGRESS review with a confirmed lead and reviewer."""
    host = make_org("Host ANSP")
    peer = make_org("Peer ANSP")
    lead = make_profile(peer, lead=True, reviews_completed=4)
    reviewer = make_profile(peer)
    review = make_review(host, status="IN_PROGRESS", with_checklist=True)
    make_member(review, lead, role="LEAD_REVIEWER")
    make_member(review, reviewer)
    return {
        "review": review,
        "lead": Actor(user_id=lead.user_id, role="LEAD_REVIEWER"),
        "reviewer": Actor(user_id=reviewer.user_id, role="PEER_REVIEWER"),
        "outsider": Actor(user_id=4242, role="PEER_REVIEWER"),
    }


def _tick(fw, code, actor=None):
    return checklist_service.update_fieldwork_checklist_item(fw["review"].id, code, True, actor or fw["reviewer"])


def _raise_finding(fw):
    return finding_service.create_finding(fw["review"].id, fw["reviewer"], {
        "finding_type": "OBSERVATION",
        "title": "Runway incursion log incomplete",
        "description": "Entries for two shifts were missing.",
    })


# ═════════════════════════════════════════════════════════════════════════════
# SEEDING & STATUS
# ═════════════════════════════════════════════════════════════════════════════

class TestChecklistStatus:
    def test_fourteen_items_in_three_phases(self, fieldwork):
        status = checklist_service.get_checklist_status(fieldwork["review"].id)
        assert status["total"] == 14
        assert status["completed"] == 0
        assert status["can_complete"] is False
        assert {p: v["total"] for p, v in status["phases"].items()} == {
            "PRE_VISIT": 4, "ON_SITE": 6, "POST_VISIT": 4,
        }
        assert [i["item_code"] for i in status["items"]] == ALL_CODES

    def test_initialize_is_idempotent(self, make_org, make_review):
        review = make_review(make_org(), status="APPROVED")
        first = checklist_service.initialize_checklist(review.id, COORDINATOR)
        second = checklist_service.initialize_checklist(review.id, COORDINATOR)
        assert first["total"] == second["total"] == 14

    def test_initialize_requires_manager(self, fieldwork):
        with pytest.raises(ForbiddenError):
            checklist_service.initialize_checklist(fieldwork["review"].id, fieldwork["lead"])


# ═════════════════════════════════════════════════════════════════════════════
# ITEM RULES
# ═════════════════════════════════════════════════════════════════════════════

class TestItemRules:
    def test_member_ticks_manual_item(self, fieldwork):
        item = _tick(fieldwork, "PRE_DOC_REQUEST_SENT")
        assert item["is_completed"] is True
        assert item["completed_by_id"] == fieldwork["reviewer"].user_id
        assert item["completed_at"] is not None

    def test_untick_clears_stamp(self, fieldwork):
        _tick(fieldwork, "PRE_DOC_REQUEST_SENT")
        item = checklist_service.update_fieldwork_checklist_item(
            fieldwork["review"].id, "PRE_DOC_REQUEST_SENT", False, fieldwork["reviewer"],
        )
        assert item["is_completed"] is False
        assert item["completed_by_id"] is None

    def test_non_member_forbidden(self, fieldwork):
        with pytest.raises(ForbiddenError):
            _tick(fieldwork, "PRE_DOC_REQUEST_SENT", fieldwork["outsider"])

    def test_plan_approval_needs_lead(self, fieldwork):
        with pytest.raises(ForbiddenError):
            _tick(fieldwork, "PRE_PLAN_APPROVED")
        db.session.rollback()

        item = _tick(fieldwork, "PRE_PLAN_APPROVED", fieldwork["lead"])
        assert item["is_completed"] is True

    def test_lead_system_role_alone_cannot_approve_plan(self, fieldwork):
        seated_as_reviewer = Actor(user_id=fieldwork["reviewer"].user_id, role="LEAD_REVIEWER")
        with pytest.raises(ForbiddenError):
            _tick(fieldwork, "PRE_PLAN_APPROVED", seated_as_reviewer)

    def test_plan_approval_by_coordinator(self, fieldwork):
        item = _tick(fieldwork, "PRE_PLAN_APPROVED", COORDINATOR)
        assert item["completed_by_id"] == COORDINATOR.user_id

    def test_findings_items_need_a_finding(self, fieldwork):
        for code in ("SITE_FINDINGS_DISCUSSED", "POST_FINDINGS_ENTERED"):
            with pytest.raises(ValidationError):
                _tick(fieldwork, code)
            db.session.rollback()

        _raise_finding(fieldwork)
        assert _tick(fieldwork, "SITE_FINDINGS_DISCUSSED")["is_completed"] is True
        assert _tick(fieldwork, "POST_FINDINGS_ENTERED")["is_completed"] is True

    def test_closing_meeting_needs_prerequisites(self, fieldwork):
        with pytest.raises(ValidationError) as exc:
            _tick(fieldwork, "SITE_CLOSING_MEETING")
        assert exc.value.details["pending"] == [*SITE_PREREQUISITES, "SITE_FINDINGS_DISCUSSED"]
        db.session.rollback()

        for code in SITE_PREREQUISITES:
            _tick(fieldwork, code)
        _raise_finding(fieldwork)
        _tick(fieldwork, "SITE_FINDINGS_DISCUSSED")
        assert _tick(fieldwork, "SITE_CLOSING_MEETING")["is_completed"] is True

    def test_override_satisfies_prerequisite(self, fieldwork):
        for code in SITE_PREREQUISITES:
            _tick(fieldwork, code)
        checklist_service.override_checklist_item(
            fieldwork["review"].id, "SITE_FINDINGS_DISCUSSED", "No findings on this visit", COORDINATOR,
        )
        assert _tick(fieldwork, "SITE_CLOSING_MEETING")["is_completed"] is True

    def test_checklist_frozen_outside_fieldwork(self, make_org, make_review):
        review = make_review(make_org(), status="REQUESTED", with_checklist=True)
        with pytest.raises(InvalidTransitionError):
            checklist_service.update_fieldwork_checklist_item(review.id, "PRE_DOC_REQUEST_SENT", True, COORDINATOR)


# ═════════════════════════════════════════════════════════════════════════════
# OVERRIDES
# ═════════════════════════════════════════════════════════════════════════════

class TestOverrides:
    def test_override_needs_reason(self, fieldwork):
        with pytest.raises(ValidationError):
            checklist_service.override_checklist_item(fieldwork["review"].id, "SITE_FACILITIES", "n/a", COORDINATOR)

    def test_override_recorded(self, fieldwork):
        item = checklist_service.override_checklist_item(
            fieldwork["review"].id, "SITE_FACILITIES", "Facilities closed for renovation", COORDINATOR,
        )
        assert item["is_overridden"] is True
        assert item["is_completed"] is False
        assert item["overridden_by_id"] == COORDINATOR.user_id

    def test_lead_cannot_override(self, fieldwork):
        with pytest.raises(ForbiddenError):
            checklist_service.override_checklist_item(
                fieldwork["review"].id, "SITE_FACILITIES", "Facilities closed for renovation", fieldwork["lead"],
            )

    def test_remove_override(self, fieldwork):
        checklist_service.override_checklist_item(
            fieldwork["review"].id, "SITE_FACILITIES", "Facilities closed for renovation", COORDINATOR,
        )
        item = checklist_service.remove_checklist_override(fieldwork["review"].id, "SITE_FACILITIES", COORDINATOR)
        assert item["is_overridden"] is False
        assert item["override_reason"] is None

        with pytest.raises(ValidationError):
            checklist_service.remove_checklist_override(fieldwork["review"].id, "SITE_FACILITIES", COORDINATOR)


# ═════════════════════════════════════════════════════════════════════════════
# FIELDWORK COMPLETION
# ═════════════════════════════════════════════════════════════════════════════

class TestCompleteFieldwork:
    def test_incomplete_checklist_blocks(self, fieldwork):
        _tick(fieldwork, "PRE_DOC_REQUEST_SENT")
        with pytest.raises(ValidationError) as exc:
            checklist_service.complete_fieldwork(fieldwork["review"].id, fieldwork["lead"])
        assert str(exc.value) == "all items required"
        assert len(exc.value.details["incomplete_items"]) == 13
        assert "PRE_DOC_REQUEST_SENT" not in exc.value.details["incomplete_items"]

    def test_lead_completes_fieldwork(self, fieldwork, events):
        for code in ALL_CODES:
            checklist_service.override_checklist_item(
                fieldwork["review"].id, code, "Covered by the remote assessment", COORDINATOR,
            )
        assert checklist_service.get_checklist_status(fieldwork["review"].id)["can_complete"] is True

        result = checklist_service.complete_fieldwork(fieldwork["review"].id, fieldwork["lead"])
        assert result["status"] == "REPORT_DRAFTING"
        assert result["phase"] == "REPORTING"
        assert result["fieldwork_completed_by_id"] == fieldwork["lead"].user_id
        assert "review.fieldwork_completed" in [e[0] for e in events]

    def test_ticking_every_item_by_its_rule(self, fieldwork, events):
        _raise_finding(fieldwork)
        for code in ALL_CODES[:-1]:
            _tick(fieldwork, code, fieldwork["lead"] if code == "PRE_PLAN_APPROVED" else None)

        with pytest.raises(ValidationError) as exc:
            checklist_service.complete_fieldwork(fieldwork["review"].id, fieldwork["lead"])
        assert str(exc.value) == "all items required"
        assert exc.value.details["incomplete_items"] == [ALL_CODES[-1]]
        db.session.rollback()

        _tick(fieldwork, ALL_CODES[-1])
        result = checklist_service.complete_fieldwork(fieldwork["review"].id, fieldwork["lead"])
        assert result["status"] == "REPORT_DRAFTING"
        assert result["fieldwork_completed_at"] is not None
        assert result["fieldwork_completed_by_id"] == fieldwork["lead"].user_id
        assert "review.fieldwork_completed" in [e[0] for e in events]

    def test_outsider_refused_without_touching_review(self, fieldwork):
        with pytest.raises(ForbiddenError):
            checklist_service.complete_fieldwork(fieldwork["review"].id, fieldwork["outsider"])
        db.session.expire_all()
        review = db.session.get(Review, fieldwork["review"].id)
        assert review.status == "IN_PROGRESS"
        assert review.fieldwork_completed_at is None

    def test_reviewer_forbidden_before_status_guard(self, make_org, make_profile, make_review, make_member):
        review = make_review(make_org(), status="SCHEDULED", with_checklist=True)
        reviewer = make_profile(make_org())
        make_member(review, reviewer)
        with pytest.raises(ForbiddenError):
            checklist_service.complete_fieldwork(review.id, Actor(user_id=reviewer.user_id, role="PEER_REVIEWER"))

    def test_not_in_progress(self, make_org, make_review):
        review = make_review(make_org(), status="SCHEDULED", with_checklist=True)
        with pytest.raises(InvalidTransitionError):
            checklist_service.complete_fieldwork(review.id, COORDINATOR)
