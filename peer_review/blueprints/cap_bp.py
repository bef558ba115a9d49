"""
Corrective Action Plan blueprint — plans, milestones and evidence.

Endpoints:
    POST /api/v1/findings/<fid>/cap                — draft the finding's CAP
    GET  /api/v1/caps/<cid>                        — detail with milestones and evidence
    PUT  /api/v1/caps/<cid>                        — edit a DRAFT / REJECTED plan
    POST /api/v1/caps/<cid>/transition             — {status, reason?, verification_method?, verification_notes?}
    POST /api/v1/caps/<cid>/milestones             — add a milestone
    PUT  /api/v1/milestones/<mid>/status           — {status}
    POST /api/v1/caps/<cid>/evidence               — upload (or resubmit with evidence_id)
    GET  /api/v1/caps/<cid>/evidence               — list evidence
    POST /api/v1/evidence/<eid>/review             — {status, comments?, rejection_reason?}
"""

import logging

from flask import Blueprint, jsonify

from peer_review.blueprints import as_int, register_error_handlers
from peer_review.services import cap_service, evidence_service
from peer_review.utils.errors import E, api_error
from peer_review.utils.helpers import convert_dates, current_actor, json_body

logger = logging.getLogger(__name__)

cap_bp = register_error_handlers(Blueprint("cap", __name__, url_prefix="/api/v1"))


@cap_bp.route("/findings/<int:finding_id>/cap", methods=["POST"])
def create_cap(finding_id):
    """Body: {root_cause, corrective_action, due_date, preventive_action?, assigned_to_id?}"""
    data, err = json_body()
    if err:
        return err
    for field in ("root_cause", "corrective_action", "due_date"):
        if not data.get(field):
            return api_error(E.VALIDATION_REQUIRED, f"{field} is required")
    data, err = convert_dates(data, ("due_date",))
    if err:
        return err
    return jsonify(cap_service.create_cap(finding_id, current_actor(), data)), 201


@cap_bp.route("/caps/<int:cap_id>", methods=["GET"])
def get_cap(cap_id):
    return jsonify(cap_service.get_cap(cap_id)), 200


@cap_bp.route("/caps/<int:cap_id>", methods=["PUT"])
def update_cap(cap_id):
    data, err = json_body()
    if err:
        return err
    data, err = convert_dates(data, ("due_date",))
    if err:
        return err
    return jsonify(cap_service.update_cap(cap_id, current_actor(), data)), 200


@cap_bp.route("/caps/<int:cap_id>/transition", methods=["POST"])
def transition_cap(cap_id):
    data, err = json_body()
    if err:
        return err
    target = data.get("status")
    if not target:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    cap = cap_service.transition_cap(
        cap_id, target, current_actor(),
        reason=data.get("reason"),
        verification_method=data.get("verification_method"),
        verification_notes=data.get("verification_notes"),
    )
    return jsonify(cap), 200


# ── Milestones ───────────────────────────────────────────────────────────────

@cap_bp.route("/caps/<int:cap_id>/milestones", methods=["POST"])
def add_milestone(cap_id):
    """Body: {title, description?, due_date?, sort_order?}"""
    data, err = json_body()
    if err:
        return err
    if not data.get("title"):
        return api_error(E.VALIDATION_REQUIRED, "title is required")
    data["sort_order"], err = as_int(data.get("sort_order"), "sort_order")
    if err:
        return err
    data, err = convert_dates(data, ("due_date",))
    if err:
        return err
    return jsonify(cap_service.add_milestone(cap_id, current_actor(), data)), 201


@cap_bp.route("/milestones/<int:milestone_id>/status", methods=["PUT"])
def update_milestone_status(milestone_id):
    data, err = json_body()
    if err:
        return err
    status = data.get("status")
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    return jsonify(cap_service.update_milestone_status(milestone_id, status, current_actor())), 200


# ── Evidence ─────────────────────────────────────────────────────────────────

@cap_bp.route("/caps/<int:cap_id>/evidence", methods=["POST"])
def submit_evidence(cap_id):
    """Body: {title, file_url, milestone_id?, description?, evidence_id?}"""
    data, err = json_body()
    if err:
        return err
    for field in ("title", "file_url"):
        if not data.get(field):
            return api_error(E.VALIDATION_REQUIRED, f"{field} is required")
    milestone_id, err = as_int(data.get("milestone_id"), "milestone_id")
    if err:
        return err
    evidence_id, err = as_int(data.get("evidence_id"), "evidence_id")
    if err:
        return err

    evidence = evidence_service.submit_evidence(
        cap_id, current_actor(),
        title=data["title"],
        file_url=data["file_url"],
        milestone_id=milestone_id,
        description=data.get("description"),
        evidence_id=evidence_id,
    )
    return jsonify(evidence), 200 if evidence_id is not None else 201


@cap_bp.route("/caps/<int:cap_id>/evidence", methods=["GET"])
def list_evidence(cap_id):
    items = evidence_service.list_evidence(cap_id)
    return jsonify({"items": items, "total": len(items)}), 200


@cap_bp.route("/evidence/<int:evidence_id>/review", methods=["POST"])
def review_evidence(evidence_id):
    data, err = json_body()
    if err:
        return err
    status = data.get("status")
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    evidence = evidence_service.review_evidence(
        evidence_id, status, current_actor(),
        comments=data.get("comments"),
        rejection_reason=data.get("rejection_reason"),
    )
    return jsonify(evidence), 200
