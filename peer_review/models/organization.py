"""
Peer Review Programme
Organization model.

Organizations host reviews and employ reviewers.  ``regional_team`` is the
regional grouping used by the cross-team assignment rule; it is maintained
outside this service and only read here.
"""

from datetime import datetime, timezone

from peer_review.models import db


class Organization(db.Model):
    """An air navigation service provider taking part in the programme."""

    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    code = db.Column(db.String(20), nullable=False, unique=True)
    regional_team = db.Column(
        db.String(50),
        nullable=True,
        comment="Regional grouping code; reviewers outside the host's team are cross-team",
    )
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "regional_team": self.regional_team,
        }

    def __repr__(self) -> str:
        return f"<Organization {self.id}: {self.code}>"
