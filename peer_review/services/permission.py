"""
Role-Based Access Control — capability predicates.

Each capability is a frozenset of programme roles plus a predicate function,
so authorization is decided in one place and can be tested without a request.
Ownership rules (host organization, confirmed lead, team membership) are
layered on top by the services that know the entities.

Usage:
    from peer_review.services.permission import Actor, can_approve, require

    require(actor, "decide_approval", can_approve(actor.role))
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from peer_review.core.exceptions import ForbiddenError


class Role(str, Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    SYSTEM_ADMIN = "SYSTEM_ADMIN"
    PROGRAMME_COORDINATOR = "PROGRAMME_COORDINATOR"
    STEERING_COMMITTEE = "STEERING_COMMITTEE"
    ANSP_ADMIN = "ANSP_ADMIN"
    SAFETY_MANAGER = "SAFETY_MANAGER"
    QUALITY_MANAGER = "QUALITY_MANAGER"
    LEAD_REVIEWER = "LEAD_REVIEWER"
    PEER_REVIEWER = "PEER_REVIEWER"


VALID_ROLES = frozenset(r.value for r in Role)


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as resolved by the identity collaborator."""

    user_id: int
    role: str
    organization_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "role": self.role,
            "organization_id": self.organization_id,
        }


# ── Role sets ────────────────────────────────────────────────────────────────

ADMIN_ROLES = frozenset({Role.SUPER_ADMIN, Role.SYSTEM_ADMIN})

REVIEW_MANAGER_ROLES = frozenset({
    Role.SUPER_ADMIN,
    Role.SYSTEM_ADMIN,
    Role.PROGRAMME_COORDINATOR,
    Role.STEERING_COMMITTEE,
})

APPROVAL_ROLES = REVIEW_MANAGER_ROLES

TEAM_ASSIGN_ROLES = frozenset({Role.SUPER_ADMIN, Role.SYSTEM_ADMIN, Role.PROGRAMME_COORDINATOR})

CROSS_TEAM_APPROVER_ROLES = TEAM_ASSIGN_ROLES

LEAD_OVERRIDE_ROLES = frozenset({Role.SUPER_ADMIN, Role.PROGRAMME_COORDINATOR})

ORGANIZATION_ROLES = frozenset({Role.ANSP_ADMIN, Role.SAFETY_MANAGER, Role.QUALITY_MANAGER})

REQUEST_REVIEW_ROLES = TEAM_ASSIGN_ROLES | ORGANIZATION_ROLES

REVIEWER_ROLES = frozenset({Role.LEAD_REVIEWER, Role.PEER_REVIEWER})

FINDING_EDIT_ROLES = TEAM_ASSIGN_ROLES | REVIEWER_ROLES

CAP_CREATE_ROLES = frozenset({Role.SUPER_ADMIN}) | ORGANIZATION_ROLES

CAP_REVIEW_ROLES = REVIEW_MANAGER_ROLES | frozenset({Role.LEAD_REVIEWER})

CAP_VERIFY_ROLES = CAP_REVIEW_ROLES | frozenset({Role.PEER_REVIEWER})

EVIDENCE_UPLOAD_ROLES = CAP_CREATE_ROLES

EVIDENCE_REVIEW_ROLES = CAP_REVIEW_ROLES

CHECKLIST_OVERRIDE_ROLES = TEAM_ASSIGN_ROLES

FIELDWORK_ADMIN_ROLES = TEAM_ASSIGN_ROLES


def _in(role, roles: frozenset) -> bool:
    return role in roles


# ── Capability predicates ────────────────────────────────────────────────────

def is_admin(role) -> bool:
    return _in(role, ADMIN_ROLES)


def can_request_review(role) -> bool:
    return _in(role, REQUEST_REVIEW_ROLES)


def can_approve(role) -> bool:
    """Decide REQUESTED reviews (approve, reject, defer)."""
    return _in(role, APPROVAL_ROLES)


def can_manage_review(role) -> bool:
    """Drive the review status machine."""
    return _in(role, REVIEW_MANAGER_ROLES)


def can_assign_team(role) -> bool:
    return _in(role, TEAM_ASSIGN_ROLES)


def can_approve_cross_team(role) -> bool:
    return _in(role, CROSS_TEAM_APPROVER_ROLES)


def can_override_lead_qualification(role) -> bool:
    return _in(role, LEAD_OVERRIDE_ROLES)


def can_match_reviewers(role) -> bool:
    return _in(role, REVIEW_MANAGER_ROLES)


def can_edit_findings(role) -> bool:
    return _in(role, FINDING_EDIT_ROLES)


def can_create_cap(role) -> bool:
    return _in(role, CAP_CREATE_ROLES)


def can_review_cap(role) -> bool:
    return _in(role, CAP_REVIEW_ROLES)


def can_verify_cap(role) -> bool:
    return _in(role, CAP_VERIFY_ROLES)


def can_upload_evidence(role) -> bool:
    return _in(role, EVIDENCE_UPLOAD_ROLES)


def can_review_evidence(role) -> bool:
    return _in(role, EVIDENCE_REVIEW_ROLES)


def can_override_checklist(role) -> bool:
    return _in(role, CHECKLIST_OVERRIDE_ROLES)


def can_complete_fieldwork_as_admin(role) -> bool:
    return _in(role, FIELDWORK_ADMIN_ROLES)


def require(actor: Actor | None, action: str, allowed: bool, reason: str | None = None) -> None:
    """
    Assert the capability check passed; raise ForbiddenError otherwise.

    Raises:
        ForbiddenError: if there is no actor or *allowed* is False.
    """
    if actor is None:
        raise ForbiddenError(None, action, "an authenticated actor is required")
    if not allowed:
        raise ForbiddenError(actor.user_id, action, reason or f"role {actor.role} lacks this capability")
