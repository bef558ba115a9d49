"""
Shared pytest fixtures for the Peer Review Programme test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - auth_headers: Bearer header factory for API tests
    - events: captured notification events
    - make_org / make_profile / make_review / make_member: entity factories
"""

import itertools
from datetime import date, timedelta

import pytest

from peer_review import create_app
from peer_review.models import db as _db
from peer_review.models.organization import Organization
from peer_review.models.review import Review, ReviewTeamMember
from peer_review.models.reviewer import ConflictOfInterest, ReviewerAvailability, ReviewerProfile
from peer_review.services.checklist_service import seed_checklist_items
from peer_review.services.code_generator import generate_review_reference
from peer_review.services.jwt_service import generate_access_token
from peer_review.services.notification import NotificationService

_seq = itertools.count(1)

DEFAULT_LANGUAGES = [{"language": "EN", "proficiency": "ADVANCED", "can_interview": True}]


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        NotificationService.reset_sinks()
        yield
        NotificationService.reset_sinks()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def auth_headers():
    """Return a factory building Authorization headers for a user/role."""
    def _headers(user_id, role, organization_id=None):
        token = generate_access_token(user_id, role, organization_id)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture()
def events():
    """Capture every dispatched notification as (event_type, payload)."""
    captured = []

    def _sink(event_type, payload):
        captured.append((event_type, payload))

    NotificationService.register_sink(_sink)
    yield captured
    NotificationService.unregister_sink(_sink)


# ── Entity factories ─────────────────────────────────────────────────────


@pytest.fixture()
def make_org():
    def _make(name=None, regional_team="EUR"):
        n = next(_seq)
        org = Organization(name=name or f"ANSP {n}", code=f"ORG{n}", regional_team=regional_team)
        _db.session.add(org)
        _db.session.commit()
        return org
    return _make


@pytest.fixture()
def make_profile():
    def _make(org, *, expertise=None, languages=None, lead=False, reviews_completed=0,
              years_experience=5, is_available=True, full_name=None, conflicts=(), availability=()):
        n = next(_seq)
        profile = ReviewerProfile(
            user_id=1000 + n,
            full_name=full_name or f"Reviewer {n}",
            home_organization_id=org.id,
            is_lead_qualified=lead,
            expertise_areas=list(expertise or []),
            languages=list(DEFAULT_LANGUAGES if languages is None else languages),
            years_experience=years_experience,
            reviews_completed=reviews_completed,
            reviews_as_lead=0,
            is_available=is_available,
        )
        for coi in conflicts:
            profile.conflicts.append(ConflictOfInterest(**coi))
        for slot in availability:
            profile.availability.append(ReviewerAvailability(**slot))
        _db.session.add(profile)
        _db.session.commit()
        return profile
    return _make


@pytest.fixture()
def make_review():
    def _make(host, *, status="REQUESTED", areas=None, language=None, min_team_size=2,
              max_team_size=5, planned=False, with_checklist=False):
        review = Review(
            reference_number=generate_review_reference(),
            host_organization_id=host.id,
            status=status,
            phase="PLANNING",
            areas_in_scope=list(areas or []),
            language_preference=language,
            min_team_size=min_team_size,
            max_team_size=max_team_size,
        )
        if planned:
            review.planned_start_date = date.today() + timedelta(days=30)
            review.planned_end_date = date.today() + timedelta(days=34)
        _db.session.add(review)
        _db.session.flush()
        if with_checklist:
            seed_checklist_items(review)
        _db.session.commit()
        return review
    return _make


@pytest.fixture()
def make_member():
    def _make(review, profile, *, role="REVIEWER", invitation_status="CONFIRMED"):
        member = ReviewTeamMember(
            review_id=review.id,
            user_id=profile.user_id,
            reviewer_profile_id=profile.id,
            role=role,
            invitation_status=invitation_status,
        )
        _db.session.add(member)
        _db.session.commit()
        return member
    return _make
