"""
Peer Review Programme
Corrective Action Plan models.

Models:
    - CorrectiveActionPlan: remediation plan filed by the host organization
      against a Finding (1:1).
    - CAPMilestone: ordered implementation steps of a plan.
    - CAPEvidence: evidence items (storage URLs) submitted against a plan,
      optionally linked to a milestone.
"""

from datetime import datetime, timezone
from enum import Enum

from peer_review.models import db


class CAPStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    VERIFIED = "VERIFIED"
    CLOSED = "CLOSED"


CAP_TRANSITIONS: dict[CAPStatus, list[CAPStatus]] = {
    CAPStatus.DRAFT:        [CAPStatus.SUBMITTED],
    CAPStatus.SUBMITTED:    [CAPStatus.UNDER_REVIEW],
    CAPStatus.UNDER_REVIEW: [CAPStatus.ACCEPTED, CAPStatus.REJECTED],
    CAPStatus.ACCEPTED:     [CAPStatus.IN_PROGRESS],
    CAPStatus.REJECTED:     [CAPStatus.DRAFT],
    CAPStatus.IN_PROGRESS:  [CAPStatus.COMPLETED],
    CAPStatus.COMPLETED:    [CAPStatus.VERIFIED, CAPStatus.IN_PROGRESS],  # IN_PROGRESS = failed verification
    CAPStatus.VERIFIED:     [CAPStatus.CLOSED],
    CAPStatus.CLOSED:       [],
}

assert set(CAP_TRANSITIONS) == set(CAPStatus), "CAP_TRANSITIONS is missing a status"

# Plan content may only be edited while the host organization owns the draft.
CAP_EDITABLE_STATUSES = frozenset({CAPStatus.DRAFT, CAPStatus.REJECTED})


class MilestoneStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class EvidenceStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    MORE_INFO_REQUIRED = "MORE_INFO_REQUIRED"


EVIDENCE_REVIEW_OUTCOMES = frozenset({
    EvidenceStatus.ACCEPTED,
    EvidenceStatus.REJECTED,
    EvidenceStatus.MORE_INFO_REQUIRED,
})

# MORE_INFO_REQUIRED -> PENDING only through resubmission.
EVIDENCE_TRANSITIONS: dict[EvidenceStatus, list[EvidenceStatus]] = {
    EvidenceStatus.PENDING:            [EvidenceStatus.ACCEPTED, EvidenceStatus.REJECTED,
                                        EvidenceStatus.MORE_INFO_REQUIRED],
    EvidenceStatus.ACCEPTED:           [],
    EvidenceStatus.REJECTED:           [],
    EvidenceStatus.MORE_INFO_REQUIRED: [EvidenceStatus.PENDING],
}

assert set(EVIDENCE_TRANSITIONS) == set(EvidenceStatus), "EVIDENCE_TRANSITIONS is missing a status"


def validate_evidence_transition(old_status, new_status) -> bool:
    """Return True if the evidence status edge exists."""
    try:
        old, new = EvidenceStatus(old_status), EvidenceStatus(new_status)
    except ValueError:
        return False
    return new in EVIDENCE_TRANSITIONS[old]


def validate_cap_transition(old_status, new_status) -> bool:
    """Return True if the CAP status edge exists."""
    try:
        old, new = CAPStatus(old_status), CAPStatus(new_status)
    except ValueError:
        return False
    return new in CAP_TRANSITIONS[old]


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class CorrectiveActionPlan(db.Model):
    """
    Corrective action plan for one finding.

    Business rules:
    - Created only by the finding's host organization, only when the finding
      requires a CAP, and at most once per finding.
    - VERIFIED records the verifier.
    - CLOSED only when no evidence is still awaiting a decision.
    """

    __tablename__ = "corrective_action_plans"

    id = db.Column(db.Integer, primary_key=True)
    finding_id = db.Column(
        db.Integer,
        db.ForeignKey("findings.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    status = db.Column(db.String(20), nullable=False, default=CAPStatus.DRAFT.value, index=True)

    root_cause = db.Column(db.Text, nullable=False)
    corrective_action = db.Column(db.Text, nullable=False)
    preventive_action = db.Column(db.Text, nullable=True)
    due_date = db.Column(db.Date, nullable=False)
    assigned_to_id = db.Column(db.Integer, nullable=True)

    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    accepted_by_id = db.Column(db.Integer, nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verified_by_id = db.Column(db.Integer, nullable=True)
    verification_method = db.Column(db.String(200), nullable=True)
    verification_notes = db.Column(db.Text, nullable=True)

    created_by_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    milestones = db.relationship(
        "CAPMilestone",
        backref="cap",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="CAPMilestone.sort_order",
    )
    evidence = db.relationship(
        "CAPEvidence",
        backref="cap",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="CAPEvidence.id",
    )

    def to_dict(self, include_children: bool = False) -> dict:
        data = {
            "id": self.id,
            "finding_id": self.finding_id,
            "status": self.status,
            "root_cause": self.root_cause,
            "corrective_action": self.corrective_action,
            "preventive_action": self.preventive_action,
            "due_date": _iso(self.due_date),
            "assigned_to_id": self.assigned_to_id,
            "submitted_at": _iso(self.submitted_at),
            "accepted_at": _iso(self.accepted_at),
            "accepted_by_id": self.accepted_by_id,
            "rejected_at": _iso(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "completed_at": _iso(self.completed_at),
            "verified_at": _iso(self.verified_at),
            "verified_by_id": self.verified_by_id,
            "verification_method": self.verification_method,
            "verification_notes": self.verification_notes,
            "created_by_id": self.created_by_id,
        }
        if include_children:
            data["milestones"] = [m.to_dict() for m in self.milestones]
            data["evidence"] = [e.to_dict() for e in self.evidence]
        return data

    def __repr__(self) -> str:
        return f"<CorrectiveActionPlan {self.id}: finding={self.finding_id} [{self.status}]>"


class CAPMilestone(db.Model):
    """Implementation step of a corrective action plan."""

    __tablename__ = "cap_milestones"

    id = db.Column(db.Integer, primary_key=True)
    cap_id = db.Column(
        db.Integer,
        db.ForeignKey("corrective_action_plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(
        db.String(20), nullable=False, default=MilestoneStatus.PENDING.value,
        comment="PENDING | IN_PROGRESS | COMPLETED | OVERDUE | CANCELLED",
    )
    completed_date = db.Column(db.DateTime(timezone=True), nullable=True)

    evidence = db.relationship("CAPEvidence", backref="milestone", lazy="selectin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cap_id": self.cap_id,
            "title": self.title,
            "description": self.description,
            "due_date": _iso(self.due_date),
            "sort_order": self.sort_order,
            "status": self.status,
            "completed_date": _iso(self.completed_date),
        }

    def __repr__(self) -> str:
        return f"<CAPMilestone {self.id}: cap={self.cap_id} [{self.status}]>"


class CAPEvidence(db.Model):
    """
    Evidence item for a corrective action plan.

    Only the storage URL is kept; file bytes never pass through this service.
    """

    __tablename__ = "cap_evidence"

    id = db.Column(db.Integer, primary_key=True)
    cap_id = db.Column(
        db.Integer,
        db.ForeignKey("corrective_action_plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    milestone_id = db.Column(
        db.Integer,
        db.ForeignKey("cap_milestones.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    file_url = db.Column(db.String(1000), nullable=False)
    status = db.Column(
        db.String(30), nullable=False, default=EvidenceStatus.PENDING.value,
        comment="PENDING | ACCEPTED | REJECTED | MORE_INFO_REQUIRED",
    )
    uploaded_by_id = db.Column(db.Integer, nullable=False)
    uploaded_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    reviewed_by_id = db.Column(db.Integer, nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    review_comments = db.Column(db.Text, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cap_id": self.cap_id,
            "milestone_id": self.milestone_id,
            "title": self.title,
            "description": self.description,
            "file_url": self.file_url,
            "status": self.status,
            "uploaded_by_id": self.uploaded_by_id,
            "uploaded_at": _iso(self.uploaded_at),
            "reviewed_by_id": self.reviewed_by_id,
            "reviewed_at": _iso(self.reviewed_at),
            "review_comments": self.review_comments,
            "rejection_reason": self.rejection_reason,
        }

    def __repr__(self) -> str:
        return f"<CAPEvidence {self.id}: cap={self.cap_id} [{self.status}]>"
