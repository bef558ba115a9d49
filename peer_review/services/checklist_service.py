"""
Fieldwork Checklist Service

Each review carries the fourteen items of ``CHECKLIST_ITEM_DEFINITIONS``.
Items are ticked by team members (subject to per-item rules) or overridden by
a coordinator with a reason.  ``complete_fieldwork`` is the only way out of
IN_PROGRESS into REPORT_DRAFTING and requires every item to be satisfied.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from peer_review.core.exceptions import ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError
from peer_review.models import db
from peer_review.models.audit import write_audit
from peer_review.models.checklist import (
    CHECKLIST_ITEM_DEFINITIONS,
    CHECKLIST_ITEMS_BY_CODE,
    CHECKLIST_PHASES,
    FieldworkChecklistItem,
)
from peer_review.models.review import InvitationStatus, Review, ReviewStatus, TeamRole
from peer_review.services.helpers.queries import get_for_update, get_or_404
from peer_review.services.helpers.validation import require_min_length
from peer_review.services.notification import NotificationService
from peer_review.services.permission import (
    Actor,
    can_complete_fieldwork_as_admin,
    can_manage_review,
    can_override_checklist,
    require,
)

logger = logging.getLogger(__name__)

# Checklist items may be edited while the review is in these statuses.
_CHECKLIST_EDITABLE_STATUSES = frozenset({
    ReviewStatus.APPROVED,
    ReviewStatus.PLANNING,
    ReviewStatus.SCHEDULED,
    ReviewStatus.IN_PROGRESS,
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def seed_checklist_items(review: Review) -> int:
    """Create missing checklist items for *review*; flushes, never commits."""
    existing = {item.item_code for item in review.checklist_items}
    created = 0
    for definition in CHECKLIST_ITEM_DEFINITIONS:
        if definition["item_code"] in existing:
            continue
        db.session.add(FieldworkChecklistItem(
            review_id=review.id,
            item_code=definition["item_code"],
            phase=definition["phase"],
            sort_order=definition["sort_order"],
            label=definition["label"],
        ))
        created += 1
    if created:
        db.session.flush()
        db.session.expire(review, ["checklist_items"])
    return created


def initialize_checklist(review_id: int, actor: Actor) -> dict:
    """Seed the checklist of a review; safe to call repeatedly."""
    require(actor, "initialize_checklist", actor is not None and can_manage_review(actor.role))
    review = get_for_update(Review, review_id)
    created = seed_checklist_items(review)
    db.session.commit()
    if created:
        logger.info("Checklist initialized", extra={"review_id": review_id, "count": created})
    return get_checklist_status(review_id)


def _get_item(review_id: int, item_code: str) -> FieldworkChecklistItem:
    item = db.session.execute(
        select(FieldworkChecklistItem).where(
            FieldworkChecklistItem.review_id == review_id,
            FieldworkChecklistItem.item_code == item_code,
        )
    ).scalar_one_or_none()
    if item is None:
        raise NotFoundError(resource="FieldworkChecklistItem", resource_id=item_code)
    return item


def _confirmed_member(review: Review, user_id: int):
    for member in review.team_members:
        if member.user_id == user_id and member.invitation_status == InvitationStatus.CONFIRMED.value:
            return member
    return None


def _is_confirmed_lead(review: Review, user_id: int) -> bool:
    member = _confirmed_member(review, user_id)
    return member is not None and member.role == TeamRole.LEAD_REVIEWER.value


def _check_item_rule(review: Review, item: FieldworkChecklistItem, actor: Actor) -> None:
    definition = CHECKLIST_ITEMS_BY_CODE[item.item_code]
    rule = definition["rule"]

    if rule == "APPROVAL_REQUIRED":
        if actor.role not in definition["approver_roles"] and not _is_confirmed_lead(review, actor.user_id):
            raise ForbiddenError(
                actor.user_id, "update_checklist_item",
                f"{item.item_code} can only be completed by the confirmed lead reviewer or "
                + " or ".join(definition["approver_roles"]),
            )
    elif rule == "FINDINGS_EXIST":
        if not review.findings:
            raise ValidationError(
                f"{item.item_code} requires at least one finding on the review",
                details={"item_code": item.item_code, "findings": 0},
            )
    elif rule == "PREREQUISITE_ITEMS":
        by_code = {i.item_code: i for i in review.checklist_items}
        pending = [code for code in definition["prerequisites"] if not by_code[code].is_satisfied]
        if pending:
            raise ValidationError(
                f"{item.item_code} requires these items first: " + ", ".join(pending),
                details={"item_code": item.item_code, "pending": pending},
            )


def update_fieldwork_checklist_item(review_id: int, item_code: str, is_completed: bool, actor: Actor) -> dict:
    """
    Tick or untick one checklist item.

    Allowed for confirmed team members and review managers.  Ticking enforces
    the item's rule and stamps completed_at/by; unticking clears them.
    """
    review = get_or_404(Review, review_id)
    require(
        actor, "update_checklist_item",
        actor is not None and (can_manage_review(actor.role) or _confirmed_member(review, actor.user_id) is not None),
        "only team members or review managers may update the checklist",
    )
    review = get_for_update(Review, review_id)
    if item_code not in CHECKLIST_ITEMS_BY_CODE:
        raise NotFoundError(resource="FieldworkChecklistItem", resource_id=item_code)
    if review.status not in _CHECKLIST_EDITABLE_STATUSES:
        raise InvalidTransitionError(
            "Review", review.status, review.status, "checklist cannot be changed in this status",
        )

    item = _get_item(review.id, item_code)
    if is_completed:
        _check_item_rule(review, item, actor)
        if not item.is_completed:
            item.is_completed = True
            item.completed_at = _utcnow()
            item.completed_by_id = actor.user_id
    else:
        item.is_completed = False
        item.completed_at = None
        item.completed_by_id = None

    write_audit(
        entity_type="checklist_item", entity_id=item.id, review_id=review.id,
        action="checklist.update", actor_user_id=actor.user_id,
        diff={"item_code": item_code, "is_completed": is_completed},
    )
    db.session.commit()
    return item.to_dict()


def override_checklist_item(review_id: int, item_code: str, reason: str, actor: Actor) -> dict:
    """Mark an item satisfied without completing it; coordinators and admins only."""
    require(actor, "override_checklist_item", actor is not None and can_override_checklist(actor.role))
    reason = require_min_length(reason, "reason", label="Override reason")
    review = get_for_update(Review, review_id)
    if review.status not in _CHECKLIST_EDITABLE_STATUSES:
        raise InvalidTransitionError(
            "Review", review.status, review.status, "checklist cannot be changed in this status",
        )
    item = _get_item(review.id, item_code)

    item.is_overridden = True
    item.override_reason = reason
    item.overridden_by_id = actor.user_id
    item.overridden_at = _utcnow()

    write_audit(
        entity_type="checklist_item", entity_id=item.id, review_id=review.id,
        action="checklist.override", actor_user_id=actor.user_id,
        diff={"item_code": item_code, "is_overridden": True, "reason": reason},
    )
    db.session.commit()
    logger.info(
        "Checklist item overridden",
        extra={"review_id": review.id, "actor_id": actor.user_id, "item_code": item_code},
    )
    return item.to_dict()


def remove_checklist_override(review_id: int, item_code: str, actor: Actor) -> dict:
    require(actor, "remove_checklist_override", actor is not None and can_override_checklist(actor.role))
    review = get_for_update(Review, review_id)
    item = _get_item(review.id, item_code)
    if not item.is_overridden:
        raise ValidationError(f"{item_code} is not overridden", details={"item_code": item_code})

    item.is_overridden = False
    item.override_reason = None
    item.overridden_by_id = None
    item.overridden_at = None

    write_audit(
        entity_type="checklist_item", entity_id=item.id, review_id=review.id,
        action="checklist.override", actor_user_id=actor.user_id,
        diff={"item_code": item_code, "is_overridden": False},
    )
    db.session.commit()
    return item.to_dict()


def get_checklist_status(review_id: int) -> dict:
    """Items with per-phase progress and whether fieldwork can be completed."""
    review = get_or_404(Review, review_id)
    items = list(review.checklist_items)

    phases = {}
    for phase in CHECKLIST_PHASES:
        phase_items = [i for i in items if i.phase == phase]
        done = sum(1 for i in phase_items if i.is_satisfied)
        phases[phase] = {
            "total": len(phase_items),
            "completed": done,
            "percentage": round(done / len(phase_items) * 100) if phase_items else 0,
        }

    satisfied = sum(1 for i in items if i.is_satisfied)
    incomplete = [i.item_code for i in items if not i.is_satisfied]
    return {
        "review_id": review.id,
        "items": [i.to_dict() for i in items],
        "phases": phases,
        "total": len(items),
        "completed": satisfied,
        "incomplete_items": incomplete,
        "can_complete": bool(items) and not incomplete and review.status == ReviewStatus.IN_PROGRESS.value,
    }


def complete_fieldwork(review_id: int, actor: Actor) -> dict:
    """
    Close on-site fieldwork and move the review to REPORT_DRAFTING.

    Raises:
        ForbiddenError: actor is neither the confirmed lead nor a coordinator/admin.
        InvalidTransitionError: review is not IN_PROGRESS.
        ValidationError: one or more checklist items are not satisfied.
    """
    review = get_or_404(Review, review_id)
    require(
        actor, "complete_fieldwork",
        actor is not None and (
            can_complete_fieldwork_as_admin(actor.role) or _is_confirmed_lead(review, actor.user_id)
        ),
        "only the confirmed lead reviewer or a coordinator may complete fieldwork",
    )
    review = get_for_update(Review, review_id)
    if review.status != ReviewStatus.IN_PROGRESS.value:
        raise InvalidTransitionError("Review", review.status, ReviewStatus.REPORT_DRAFTING.value)

    incomplete = [i.item_code for i in review.checklist_items if not i.is_satisfied]
    if incomplete or not review.checklist_items:
        raise ValidationError("all items required", details={"incomplete_items": incomplete})

    old_status = review.status
    review.status = ReviewStatus.REPORT_DRAFTING.value
    review.phase = "REPORTING"
    review.fieldwork_completed_at = _utcnow()
    review.fieldwork_completed_by_id = actor.user_id

    write_audit(
        entity_type="review", entity_id=review.id, review_id=review.id,
        action="review.fieldwork_complete", actor_user_id=actor.user_id,
        diff={"status": [old_status, review.status]},
    )
    db.session.commit()

    logger.info("Fieldwork completed", extra={"review_id": review.id, "actor_id": actor.user_id})
    NotificationService.dispatch("review.fieldwork_completed", {
        "review_id": review.id, "actor_id": actor.user_id,
    })
    NotificationService.dispatch("review.status_changed", {
        "review_id": review.id,
        "from_status": old_status,
        "to_status": review.status,
        "actor_id": actor.user_id,
        "reason": None,
    })
    return review.to_dict()
