"""
Peer Review Programme
Fieldwork checklist model.

Every review carries the same fourteen checklist items across three phases.
Fieldwork can only be marked complete when every item is either completed or
overridden by a coordinator.

Item rules (``rule`` key of CHECKLIST_ITEM_DEFINITIONS):
    MANUAL             — any team member or manager may tick it.
    APPROVAL_REQUIRED  — only the listed roles (or the confirmed lead) may tick it.
    FINDINGS_EXIST     — at least one finding must be recorded on the review.
    PREREQUISITE_ITEMS — the listed items must already be complete.
"""

from datetime import datetime, timezone

from peer_review.models import db

CHECKLIST_PHASES = ("PRE_VISIT", "ON_SITE", "POST_VISIT")

CHECKLIST_ITEM_DEFINITIONS: list[dict] = [
    # Pre-visit preparation
    {"phase": "PRE_VISIT", "item_code": "PRE_DOC_REQUEST_SENT", "sort_order": 1,
     "label": "Document request sent to host organization", "rule": "MANUAL"},
    {"phase": "PRE_VISIT", "item_code": "PRE_DOCS_RECEIVED", "sort_order": 2,
     "label": "Pre-visit documents received and reviewed", "rule": "MANUAL"},
    {"phase": "PRE_VISIT", "item_code": "PRE_COORDINATION_MEETING", "sort_order": 3,
     "label": "Pre-visit coordination meeting held with team", "rule": "MANUAL"},
    {"phase": "PRE_VISIT", "item_code": "PRE_PLAN_APPROVED", "sort_order": 4,
     "label": "Review plan approved by team", "rule": "APPROVAL_REQUIRED",
     "approver_roles": ("PROGRAMME_COORDINATOR",)},
    # On-site activities
    {"phase": "ON_SITE", "item_code": "SITE_OPENING_MEETING", "sort_order": 5,
     "label": "Opening meeting conducted with host", "rule": "MANUAL"},
    {"phase": "ON_SITE", "item_code": "SITE_INTERVIEWS", "sort_order": 6,
     "label": "Staff interviews completed", "rule": "MANUAL"},
    {"phase": "ON_SITE", "item_code": "SITE_FACILITIES", "sort_order": 7,
     "label": "Facilities inspection completed", "rule": "MANUAL"},
    {"phase": "ON_SITE", "item_code": "SITE_DOC_REVIEW", "sort_order": 8,
     "label": "Document review completed", "rule": "MANUAL"},
    {"phase": "ON_SITE", "item_code": "SITE_FINDINGS_DISCUSSED", "sort_order": 9,
     "label": "Preliminary findings discussed with host", "rule": "FINDINGS_EXIST"},
    {"phase": "ON_SITE", "item_code": "SITE_CLOSING_MEETING", "sort_order": 10,
     "label": "Closing meeting conducted", "rule": "PREREQUISITE_ITEMS",
     "prerequisites": ("SITE_OPENING_MEETING", "SITE_INTERVIEWS", "SITE_FACILITIES",
                       "SITE_DOC_REVIEW", "SITE_FINDINGS_DISCUSSED")},
    # Post-visit
    {"phase": "POST_VISIT", "item_code": "POST_FINDINGS_ENTERED", "sort_order": 11,
     "label": "All findings entered in system", "rule": "FINDINGS_EXIST"},
    {"phase": "POST_VISIT", "item_code": "POST_EVIDENCE_UPLOADED", "sort_order": 12,
     "label": "Supporting evidence uploaded", "rule": "MANUAL"},
    {"phase": "POST_VISIT", "item_code": "POST_DRAFT_REPORT", "sort_order": 13,
     "label": "Draft report prepared", "rule": "MANUAL"},
    {"phase": "POST_VISIT", "item_code": "POST_HOST_FEEDBACK", "sort_order": 14,
     "label": "Host feedback received on draft findings", "rule": "MANUAL"},
]

CHECKLIST_ITEMS_BY_CODE = {d["item_code"]: d for d in CHECKLIST_ITEM_DEFINITIONS}


class FieldworkChecklistItem(db.Model):
    """One checklist item of one review."""

    __tablename__ = "fieldwork_checklist_items"
    __table_args__ = (
        db.UniqueConstraint("review_id", "item_code", name="uq_checklist_review_item"),
    )

    id = db.Column(db.Integer, primary_key=True)
    review_id = db.Column(
        db.Integer,
        db.ForeignKey("reviews.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    item_code = db.Column(db.String(40), nullable=False)
    phase = db.Column(db.String(20), nullable=False, comment="PRE_VISIT | ON_SITE | POST_VISIT")
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    label = db.Column(db.String(200), nullable=False)

    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by_id = db.Column(db.Integer, nullable=True)

    is_overridden = db.Column(db.Boolean, nullable=False, default=False)
    override_reason = db.Column(db.Text, nullable=True)
    overridden_by_id = db.Column(db.Integer, nullable=True)
    overridden_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    review = db.relationship(
        "Review",
        backref=db.backref("checklist_items", lazy="selectin", order_by="FieldworkChecklistItem.sort_order"),
    )

    @property
    def is_satisfied(self) -> bool:
        return bool(self.is_completed or self.is_overridden)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "review_id": self.review_id,
            "item_code": self.item_code,
            "phase": self.phase,
            "sort_order": self.sort_order,
            "label": self.label,
            "is_completed": self.is_completed,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "completed_by_id": self.completed_by_id,
            "is_overridden": self.is_overridden,
            "override_reason": self.override_reason,
            "overridden_by_id": self.overridden_by_id,
            "overridden_at": self.overridden_at.isoformat() if self.overridden_at else None,
        }

    def __repr__(self) -> str:
        return f"<FieldworkChecklistItem {self.id}: review={self.review_id} {self.item_code}>"
