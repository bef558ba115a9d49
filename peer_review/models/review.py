"""
Peer Review Programme
Review domain models.

Models:
    - Review: a peer-review engagement of one host organization.
    - ReviewTeamMember: a reviewer assigned to a review, with invitation state.
    - ReviewApproval: the current approval decision for a review (latest wins).
    - ApprovalDecision: append-only history of every approval decision.

Status transitions are defined here as dicts keyed by the status enums and
validated with ``validate_*_transition`` helpers; the services enforce the
guards that go beyond the edge tables.
"""

from datetime import datetime, timezone
from enum import Enum

from peer_review.models import db


# ── Review status machine ────────────────────────────────────────────────────

class ReviewStatus(str, Enum):
    REQUESTED = "REQUESTED"
    APPROVED = "APPROVED"
    PLANNING = "PLANNING"
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    REPORT_DRAFTING = "REPORT_DRAFTING"
    REPORT_REVIEW = "REPORT_REVIEW"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


REVIEW_TRANSITIONS: dict[ReviewStatus, list[ReviewStatus]] = {
    ReviewStatus.REQUESTED:       [ReviewStatus.APPROVED, ReviewStatus.CANCELLED],
    ReviewStatus.APPROVED:        [ReviewStatus.PLANNING, ReviewStatus.SCHEDULED, ReviewStatus.CANCELLED],
    ReviewStatus.PLANNING:        [ReviewStatus.SCHEDULED, ReviewStatus.CANCELLED],
    ReviewStatus.SCHEDULED:       [ReviewStatus.IN_PROGRESS, ReviewStatus.CANCELLED],
    ReviewStatus.IN_PROGRESS:     [ReviewStatus.REPORT_DRAFTING, ReviewStatus.CANCELLED],
    ReviewStatus.REPORT_DRAFTING: [ReviewStatus.REPORT_REVIEW],
    ReviewStatus.REPORT_REVIEW:   [ReviewStatus.COMPLETED, ReviewStatus.REPORT_DRAFTING],
    ReviewStatus.COMPLETED:       [],
    ReviewStatus.CANCELLED:       [],
}

# Every status must have an entry, even terminal ones.
assert set(REVIEW_TRANSITIONS) == set(ReviewStatus), "REVIEW_TRANSITIONS is missing a status"

REVIEW_STATUS_VALUES = frozenset(s.value for s in ReviewStatus)

TERMINAL_REVIEW_STATUSES = frozenset({ReviewStatus.COMPLETED, ReviewStatus.CANCELLED})

# Only one review per host organization may be in one of these at a time.
ACTIVE_REVIEW_STATUSES = frozenset({
    ReviewStatus.REQUESTED,
    ReviewStatus.APPROVED,
    ReviewStatus.PLANNING,
    ReviewStatus.SCHEDULED,
    ReviewStatus.IN_PROGRESS,
})

# Team membership may only change before fieldwork starts.
TEAM_MUTABLE_STATUSES = frozenset({
    ReviewStatus.REQUESTED,
    ReviewStatus.APPROVED,
    ReviewStatus.PLANNING,
    ReviewStatus.SCHEDULED,
})

REVIEW_PHASES = ("PLANNING", "PREPARATION", "ON_SITE", "REPORTING", "FOLLOW_UP", "CLOSED")

REVIEW_TYPES = frozenset({"FULL", "FOLLOW_UP", "SPECIAL"})


def validate_review_transition(old_status, new_status) -> bool:
    """Return True if the Review status edge exists."""
    try:
        old, new = ReviewStatus(old_status), ReviewStatus(new_status)
    except ValueError:
        return False
    return new in REVIEW_TRANSITIONS[old]


# ── Team member roles & invitation sub-state ────────────────────────────────

class TeamRole(str, Enum):
    LEAD_REVIEWER = "LEAD_REVIEWER"
    REVIEWER = "REVIEWER"
    TECHNICAL_EXPERT = "TECHNICAL_EXPERT"
    OBSERVER = "OBSERVER"
    TRAINEE = "TRAINEE"


class InvitationStatus(str, Enum):
    PENDING = "PENDING"
    INVITED = "INVITED"
    CONFIRMED = "CONFIRMED"
    DECLINED = "DECLINED"
    WITHDRAWN = "WITHDRAWN"


INVITATION_TRANSITIONS: dict[InvitationStatus, list[InvitationStatus]] = {
    InvitationStatus.PENDING:   [InvitationStatus.INVITED, InvitationStatus.WITHDRAWN],
    InvitationStatus.INVITED:   [InvitationStatus.CONFIRMED, InvitationStatus.DECLINED, InvitationStatus.WITHDRAWN],
    InvitationStatus.CONFIRMED: [],
    InvitationStatus.DECLINED:  [],
    InvitationStatus.WITHDRAWN: [],
}

assert set(INVITATION_TRANSITIONS) == set(InvitationStatus), "INVITATION_TRANSITIONS is missing a status"

# Members still holding a seat on the team.
SEATED_INVITATION_STATUSES = frozenset({
    InvitationStatus.PENDING,
    InvitationStatus.INVITED,
    InvitationStatus.CONFIRMED,
})


def validate_invitation_transition(old_status, new_status) -> bool:
    """Return True if the invitation status edge exists."""
    try:
        old, new = InvitationStatus(old_status), InvitationStatus(new_status)
    except ValueError:
        return False
    return new in INVITATION_TRANSITIONS[old]


# ── Approval decisions ──────────────────────────────────────────────────────

class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DEFERRED = "DEFERRED"


DECISION_STATUSES = frozenset({ApprovalStatus.APPROVED, ApprovalStatus.REJECTED, ApprovalStatus.DEFERRED})


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class Review(db.Model):
    """
    Peer-review engagement.

    Business rules:
    - reference_number is generated once at request time and never changes.
    - status and dates change only through the review lifecycle service.
    - Reviews are never deleted; they end as COMPLETED or CANCELLED.
    """

    __tablename__ = "reviews"

    id = db.Column(db.Integer, primary_key=True)
    reference_number = db.Column(db.String(30), nullable=False, unique=True)
    host_organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    review_type = db.Column(db.String(20), nullable=False, default="FULL")
    status = db.Column(
        db.String(20), nullable=False, default=ReviewStatus.REQUESTED.value, index=True,
        comment="REQUESTED | APPROVED | PLANNING | SCHEDULED | IN_PROGRESS | REPORT_DRAFTING | REPORT_REVIEW | COMPLETED | CANCELLED",
    )
    phase = db.Column(db.String(20), nullable=False, default="PLANNING")

    requested_date = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    requested_start_date = db.Column(db.Date, nullable=True)
    requested_end_date = db.Column(db.Date, nullable=True)
    planned_start_date = db.Column(db.Date, nullable=True)
    planned_end_date = db.Column(db.Date, nullable=True)
    actual_start_date = db.Column(db.Date, nullable=True)
    actual_end_date = db.Column(db.Date, nullable=True)

    areas_in_scope = db.Column(db.JSON, nullable=False, default=list)
    language_preference = db.Column(db.String(10), nullable=True)
    min_team_size = db.Column(db.Integer, nullable=False, default=2)
    max_team_size = db.Column(db.Integer, nullable=False, default=5)

    special_requirements = db.Column(
        db.Text, nullable=True,
        comment="Free text; transition notes are appended here",
    )
    cancellation_reason = db.Column(db.Text, nullable=True)

    fieldwork_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    fieldwork_completed_by_id = db.Column(db.Integer, nullable=True)

    created_by_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    host_organization = db.relationship("Organization", lazy="joined")
    team_members = db.relationship(
        "ReviewTeamMember",
        backref="review",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="ReviewTeamMember.id",
    )
    approval = db.relationship(
        "ReviewApproval",
        backref="review",
        uselist=False,
        cascade="all, delete-orphan",
    )

    @property
    def seated_members(self) -> list["ReviewTeamMember"]:
        return [m for m in self.team_members if m.invitation_status in SEATED_INVITATION_STATUSES]

    @property
    def lead_member(self) -> "ReviewTeamMember | None":
        for member in self.seated_members:
            if member.role == TeamRole.LEAD_REVIEWER.value:
                return member
        return None

    def to_dict(self, include_team: bool = False) -> dict:
        data = {
            "id": self.id,
            "reference_number": self.reference_number,
            "host_organization_id": self.host_organization_id,
            "review_type": self.review_type,
            "status": self.status,
            "phase": self.phase,
            "requested_date": _iso(self.requested_date),
            "requested_start_date": _iso(self.requested_start_date),
            "requested_end_date": _iso(self.requested_end_date),
            "planned_start_date": _iso(self.planned_start_date),
            "planned_end_date": _iso(self.planned_end_date),
            "actual_start_date": _iso(self.actual_start_date),
            "actual_end_date": _iso(self.actual_end_date),
            "areas_in_scope": list(self.areas_in_scope or []),
            "language_preference": self.language_preference,
            "min_team_size": self.min_team_size,
            "max_team_size": self.max_team_size,
            "special_requirements": self.special_requirements,
            "cancellation_reason": self.cancellation_reason,
            "fieldwork_completed_at": _iso(self.fieldwork_completed_at),
            "fieldwork_completed_by_id": self.fieldwork_completed_by_id,
            "created_by_id": self.created_by_id,
            "created_at": _iso(self.created_at),
            "approval": self.approval.to_dict() if self.approval else None,
        }
        if include_team:
            data["team_members"] = [m.to_dict() for m in self.team_members]
        return data

    def __repr__(self) -> str:
        return f"<Review {self.id}: {self.reference_number} [{self.status}]>"


class ReviewTeamMember(db.Model):
    """
    Reviewer seated on a review team.

    Business rules:
    - At most one non-withdrawn member per review holds LEAD_REVIEWER.
    - The reviewer's home organization never equals the review's host.
    - Cross-team members carry a justification and the approver's identity.
    - A lead assigned without qualification carries the override authorizer.
    """

    __tablename__ = "review_team_members"
    __table_args__ = (
        db.UniqueConstraint("review_id", "user_id", name="uq_review_team_member_user"),
    )

    id = db.Column(db.Integer, primary_key=True)
    review_id = db.Column(
        db.Integer,
        db.ForeignKey("reviews.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.Integer, nullable=False)
    reviewer_profile_id = db.Column(
        db.Integer,
        db.ForeignKey("reviewer_profiles.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    role = db.Column(
        db.String(20), nullable=False, default=TeamRole.REVIEWER.value,
        comment="LEAD_REVIEWER | REVIEWER | TECHNICAL_EXPERT | OBSERVER | TRAINEE",
    )
    assigned_areas = db.Column(db.JSON, nullable=False, default=list)

    invitation_status = db.Column(
        db.String(20), nullable=False, default=InvitationStatus.PENDING.value,
        comment="PENDING | INVITED | CONFIRMED | DECLINED | WITHDRAWN",
    )
    invited_at = db.Column(db.DateTime(timezone=True), nullable=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    declined_at = db.Column(db.DateTime(timezone=True), nullable=True)
    decline_reason = db.Column(db.Text, nullable=True)

    is_cross_team_assignment = db.Column(db.Boolean, nullable=False, default=False)
    cross_team_justification = db.Column(db.Text, nullable=True)
    cross_team_approved_by_id = db.Column(db.Integer, nullable=True)
    cross_team_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    lead_override_by_id = db.Column(
        db.Integer, nullable=True,
        comment="Set when a non-qualified reviewer was made lead by explicit override",
    )
    lead_override_at = db.Column(db.DateTime(timezone=True), nullable=True)
    lead_override_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    reviewer_profile = db.relationship("ReviewerProfile", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "review_id": self.review_id,
            "user_id": self.user_id,
            "reviewer_profile_id": self.reviewer_profile_id,
            "role": self.role,
            "assigned_areas": list(self.assigned_areas or []),
            "invitation_status": self.invitation_status,
            "invited_at": _iso(self.invited_at),
            "confirmed_at": _iso(self.confirmed_at),
            "declined_at": _iso(self.declined_at),
            "decline_reason": self.decline_reason,
            "is_cross_team_assignment": self.is_cross_team_assignment,
            "cross_team_justification": self.cross_team_justification,
            "cross_team_approved_by_id": self.cross_team_approved_by_id,
            "cross_team_approved_at": _iso(self.cross_team_approved_at),
            "lead_override_by_id": self.lead_override_by_id,
            "lead_override_at": _iso(self.lead_override_at),
            "lead_override_reason": self.lead_override_reason,
        }

    def __repr__(self) -> str:
        return f"<ReviewTeamMember {self.id}: review={self.review_id} user={self.user_id} {self.role}>"


class ReviewApproval(db.Model):
    """Current approval decision for a review; upserted, latest decision wins."""

    __tablename__ = "review_approvals"

    id = db.Column(db.Integer, primary_key=True)
    review_id = db.Column(
        db.Integer,
        db.ForeignKey("reviews.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    status = db.Column(db.String(20), nullable=False, comment="APPROVED | REJECTED | DEFERRED")
    approved_by_id = db.Column(db.Integer, nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    comments = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "review_id": self.review_id,
            "status": self.status,
            "approved_by_id": self.approved_by_id,
            "approved_at": _iso(self.approved_at),
            "comments": self.comments,
        }

    def __repr__(self) -> str:
        return f"<ReviewApproval review={self.review_id} {self.status}>"


class ApprovalDecision(db.Model):
    """
    Immutable approval decision record.

    Every decision appends a row; rows are never updated or deleted.  The
    ReviewApproval row mirrors the most recent one.
    """

    __tablename__ = "review_approval_decisions"

    id = db.Column(db.Integer, primary_key=True)
    review_id = db.Column(
        db.Integer,
        db.ForeignKey("reviews.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status = db.Column(db.String(20), nullable=False)
    decided_by_id = db.Column(db.Integer, nullable=False)
    comments = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "review_id": self.review_id,
            "status": self.status,
            "decided_by_id": self.decided_by_id,
            "comments": self.comments,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<ApprovalDecision #{self.id} review={self.review_id} {self.status}>"
