"""
Peer Review Programme
Finding model.

A finding is raised by the review team against the host organization.  Findings
that require remediation get exactly one CorrectiveActionPlan.
"""

from datetime import datetime, timezone
from enum import Enum

from peer_review.models import db


class FindingStatus(str, Enum):
    OPEN = "OPEN"
    CAP_REQUIRED = "CAP_REQUIRED"
    CAP_SUBMITTED = "CAP_SUBMITTED"
    CAP_ACCEPTED = "CAP_ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    VERIFICATION = "VERIFICATION"
    CLOSED = "CLOSED"
    DEFERRED = "DEFERRED"


FINDING_TRANSITIONS: dict[FindingStatus, list[FindingStatus]] = {
    FindingStatus.OPEN:          [FindingStatus.CAP_REQUIRED, FindingStatus.CLOSED, FindingStatus.DEFERRED],
    FindingStatus.CAP_REQUIRED:  [FindingStatus.CAP_SUBMITTED, FindingStatus.DEFERRED],
    FindingStatus.CAP_SUBMITTED: [FindingStatus.CAP_ACCEPTED, FindingStatus.CAP_REQUIRED],
    FindingStatus.CAP_ACCEPTED:  [FindingStatus.IN_PROGRESS],
    FindingStatus.IN_PROGRESS:   [FindingStatus.VERIFICATION, FindingStatus.DEFERRED],
    FindingStatus.VERIFICATION:  [FindingStatus.CLOSED, FindingStatus.IN_PROGRESS],
    FindingStatus.CLOSED:        [],
    FindingStatus.DEFERRED:      [FindingStatus.OPEN, FindingStatus.CAP_REQUIRED],
}

assert set(FINDING_TRANSITIONS) == set(FindingStatus), "FINDING_TRANSITIONS is missing a status"

FINDING_TYPES = frozenset({"NON_CONFORMITY", "OBSERVATION", "RECOMMENDATION", "GOOD_PRACTICE", "CONCERN"})

FINDING_SEVERITIES = frozenset({"CRITICAL", "MAJOR", "MINOR", "OBSERVATION"})


def validate_finding_transition(old_status, new_status) -> bool:
    """Return True if the Finding status edge exists."""
    try:
        old, new = FindingStatus(old_status), FindingStatus(new_status)
    except ValueError:
        return False
    return new in FINDING_TRANSITIONS[old]


class Finding(db.Model):
    """
    Review finding.

    Business rules:
    - closed_at is set exactly when status becomes CLOSED.
    - organization_id is the audited (host) organization.
    """

    __tablename__ = "findings"
    __table_args__ = (
        db.Index("ix_findings_review_status", "review_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    review_id = db.Column(
        db.Integer,
        db.ForeignKey("reviews.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    reference_number = db.Column(db.String(40), nullable=False, unique=True)
    finding_type = db.Column(db.String(20), nullable=False, default="OBSERVATION")
    severity = db.Column(db.String(20), nullable=False, default="MINOR")
    status = db.Column(db.String(20), nullable=False, default=FindingStatus.OPEN.value)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    cap_required = db.Column(db.Boolean, nullable=False, default=True)
    target_close_date = db.Column(db.Date, nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    review = db.relationship("Review", backref=db.backref("findings", lazy="selectin", order_by="Finding.id"))
    corrective_action_plan = db.relationship(
        "CorrectiveActionPlan",
        backref="finding",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "review_id": self.review_id,
            "organization_id": self.organization_id,
            "reference_number": self.reference_number,
            "finding_type": self.finding_type,
            "severity": self.severity,
            "status": self.status,
            "title": self.title,
            "description": self.description,
            "cap_required": self.cap_required,
            "target_close_date": self.target_close_date.isoformat() if self.target_close_date else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "created_by_id": self.created_by_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "cap_id": self.corrective_action_plan.id if self.corrective_action_plan else None,
        }

    def __repr__(self) -> str:
        return f"<Finding {self.id}: {self.reference_number} [{self.status}]>"
