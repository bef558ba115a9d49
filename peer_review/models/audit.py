"""
Peer Review Programme
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for lifecycle events.
    - ReferenceSequence: per-prefix, per-year counters for reference numbers.
"""

import json
from datetime import datetime, timezone

from peer_review.models import db

AUDIT_ACTIONS = {
    # Review lifecycle
    "review.request",
    "review.approval_decision",
    "review.update",
    "review.transition",
    "review.fieldwork_complete",
    # Team
    "team.assign_bulk",
    "team.add_member",
    "team.update_role",
    "team.remove_member",
    "team.replace_member",
    "team.send_invitations",
    "team.invitation_response",
    # Findings & CAPs
    "finding.create",
    "finding.update",
    "cap.create",
    "cap.update",
    "cap.transition",
    "cap.milestone_add",
    "cap.milestone_update",
    "evidence.submit",
    "evidence.review",
    # Checklist
    "checklist.update",
    "checklist.override",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action.  ``diff_json`` carries the old→new snapshot.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="review | team_member | finding | cap | evidence | checklist_item",
    )
    entity_id = db.Column(db.String(36), nullable=False)
    review_id = db.Column(db.Integer, nullable=True, index=True)
    action = db.Column(db.String(60), nullable=False, comment="review.transition | cap.transition | …")
    actor_user_id = db.Column(db.Integer, nullable=True, index=True)
    diff_json = db.Column(db.Text, default="{}")
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "review_id": self.review_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


class ReferenceSequence(db.Model):
    """Last issued value of a reference-number sequence."""

    __tablename__ = "reference_sequences"
    __table_args__ = (
        db.UniqueConstraint("prefix", "year", name="uq_reference_sequence_prefix_year"),
    )

    id = db.Column(db.Integer, primary_key=True)
    prefix = db.Column(db.String(20), nullable=False)
    year = db.Column(db.Integer, nullable=False)
    last_value = db.Column(db.Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<ReferenceSequence {self.prefix}-{self.year}: {self.last_value}>"


# ── Convenience writer ───────────────────────────────────────────────────────


def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor_user_id: int | None = None,
    review_id: int | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        review_id=review_id,
        action=action,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
