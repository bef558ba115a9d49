"""
Peer Review Programme
Reviewer pool models.

Models:
    - ReviewerProfile: a pooled reviewer with expertise, languages and counters.
    - ConflictOfInterest: declared conflicts between a reviewer and an organization.
    - ReviewerAvailability: availability windows used by the matching engine.

``languages`` is a JSON list of ``{"language", "proficiency", "can_interview"}``
objects; ``expertise_areas`` is a JSON list of expertise codes.
"""

from datetime import date, datetime, timezone

from peer_review.models import db

# ── Constants ────────────────────────────────────────────────────────────────

COI_TYPES = frozenset({
    "HOME_ORGANIZATION",
    "FAMILY_RELATIONSHIP",
    "FORMER_EMPLOYEE",
    "BUSINESS_INTEREST",
    "RECENT_REVIEW",
    "OTHER",
})

# Declared conflicts of these types can never be waived.
HARD_COI_TYPES = frozenset({"HOME_ORGANIZATION", "FAMILY_RELATIONSHIP"})

LANGUAGE_PROFICIENCIES = ("BASIC", "INTERMEDIATE", "ADVANCED", "NATIVE")

AVAILABILITY_TYPES = frozenset({"AVAILABLE", "TENTATIVE", "UNAVAILABLE", "ON_ASSIGNMENT"})


class ReviewerProfile(db.Model):
    """Reviewer in the programme pool."""

    __tablename__ = "reviewer_profiles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, nullable=False, unique=True,
        comment="Identity-provider user id (users live outside this service)",
    )
    full_name = db.Column(db.String(200), nullable=False, default="")
    home_organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    is_lead_qualified = db.Column(db.Boolean, nullable=False, default=False)
    expertise_areas = db.Column(db.JSON, nullable=False, default=list)
    languages = db.Column(
        db.JSON, nullable=False, default=list,
        comment='[{"language": "EN", "proficiency": "NATIVE", "can_interview": true}]',
    )
    years_experience = db.Column(db.Integer, nullable=False, default=0)
    reviews_completed = db.Column(db.Integer, nullable=False, default=0)
    reviews_as_lead = db.Column(db.Integer, nullable=False, default=0)
    is_available = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    home_organization = db.relationship("Organization", lazy="joined")
    conflicts = db.relationship(
        "ConflictOfInterest",
        backref="reviewer_profile",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    availability = db.relationship(
        "ReviewerAvailability",
        backref="reviewer_profile",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="ReviewerAvailability.start_date",
    )

    @property
    def language_codes(self) -> list[str]:
        return [entry.get("language") for entry in (self.languages or []) if entry.get("language")]

    def active_conflicts(self, organization_id: int, on: date | None = None) -> list["ConflictOfInterest"]:
        """Declared conflicts against *organization_id* that are still in force."""
        return [
            coi for coi in self.conflicts
            if coi.organization_id == organization_id and coi.is_active(on)
        ]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "full_name": self.full_name,
            "home_organization_id": self.home_organization_id,
            "is_lead_qualified": self.is_lead_qualified,
            "expertise_areas": list(self.expertise_areas or []),
            "languages": list(self.languages or []),
            "years_experience": self.years_experience,
            "reviews_completed": self.reviews_completed,
            "reviews_as_lead": self.reviews_as_lead,
            "is_available": self.is_available,
        }

    def __repr__(self) -> str:
        return f"<ReviewerProfile {self.id}: user={self.user_id} org={self.home_organization_id}>"


class ConflictOfInterest(db.Model):
    """
    Declared relationship barring a reviewer from evaluating an organization.

    A null ``end_date`` means the conflict is still active.
    """

    __tablename__ = "conflicts_of_interest"

    id = db.Column(db.Integer, primary_key=True)
    reviewer_profile_id = db.Column(
        db.Integer,
        db.ForeignKey("reviewer_profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id = db.Column(db.Integer, nullable=False, index=True)
    coi_type = db.Column(
        db.String(30), nullable=False,
        comment="HOME_ORGANIZATION | FAMILY_RELATIONSHIP | FORMER_EMPLOYEE | BUSINESS_INTEREST | RECENT_REVIEW | OTHER",
    )
    reason = db.Column(db.Text, nullable=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_hard(self) -> bool:
        return self.coi_type in HARD_COI_TYPES

    def is_active(self, on: date | None = None) -> bool:
        if self.end_date is None:
            return True
        return self.end_date > (on or date.today())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reviewer_profile_id": self.reviewer_profile_id,
            "organization_id": self.organization_id,
            "coi_type": self.coi_type,
            "reason": self.reason,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "is_hard": self.is_hard,
        }

    def __repr__(self) -> str:
        return f"<ConflictOfInterest {self.id}: profile={self.reviewer_profile_id} org={self.organization_id} {self.coi_type}>"


class ReviewerAvailability(db.Model):
    """Availability window declared by a reviewer."""

    __tablename__ = "reviewer_availability"

    id = db.Column(db.Integer, primary_key=True)
    reviewer_profile_id = db.Column(
        db.Integer,
        db.ForeignKey("reviewer_profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    availability_type = db.Column(
        db.String(20), nullable=False, default="AVAILABLE",
        comment="AVAILABLE | TENTATIVE | UNAVAILABLE | ON_ASSIGNMENT",
    )
    notes = db.Column(db.String(255), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reviewer_profile_id": self.reviewer_profile_id,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "availability_type": self.availability_type,
            "notes": self.notes,
        }

    def __repr__(self) -> str:
        return f"<ReviewerAvailability {self.id}: {self.start_date}..{self.end_date} {self.availability_type}>"
