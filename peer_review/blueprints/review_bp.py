"""
Review lifecycle blueprint.

Endpoints:
    POST /api/v1/reviews                              — request a review
    GET  /api/v1/reviews                              — list (?status, ?host_organization_id)
    GET  /api/v1/reviews/<id>                         — detail with team
    PUT  /api/v1/reviews/<id>                         — edit dates / scope
    POST /api/v1/reviews/<id>/approval                — record an approval decision
    GET  /api/v1/reviews/<id>/approval/history        — every decision, oldest first
    POST /api/v1/reviews/<id>/transition              — move along the status machine
    GET  /api/v1/reviews/<id>/audit                   — audit trail

Service layer owns all business logic and commits.
"""

import logging

from flask import Blueprint, jsonify, request

from peer_review.blueprints import as_int, register_error_handlers
from peer_review.services import review_lifecycle
from peer_review.utils.errors import E, api_error
from peer_review.utils.helpers import convert_dates, current_actor, json_body

logger = logging.getLogger(__name__)

review_bp = register_error_handlers(Blueprint("review", __name__, url_prefix="/api/v1"))

_DATE_FIELDS = ("requested_start_date", "requested_end_date", "planned_start_date", "planned_end_date")


@review_bp.route("/reviews", methods=["POST"])
def request_review():
    """Body: {host_organization_id, review_type?, requested_start_date?, requested_end_date?,
    areas_in_scope?, language_preference?, min_team_size?, max_team_size?, special_requirements?}"""
    data, err = json_body()
    if err:
        return err
    host_id, err = as_int(data.get("host_organization_id"), "host_organization_id")
    if err:
        return err
    if host_id is None:
        return api_error(E.VALIDATION_REQUIRED, "host_organization_id is required")
    data["host_organization_id"] = host_id
    for field in ("min_team_size", "max_team_size"):
        data[field], err = as_int(data.get(field), field)
        if err:
            return err
    data, err = convert_dates(data, _DATE_FIELDS)
    if err:
        return err

    review = review_lifecycle.request_review(current_actor(), data)
    return jsonify(review), 201


@review_bp.route("/reviews", methods=["GET"])
def list_reviews():
    reviews = review_lifecycle.list_reviews(
        status=request.args.get("status"),
        host_organization_id=request.args.get("host_organization_id", type=int),
    )
    return jsonify({"items": reviews, "total": len(reviews)}), 200


@review_bp.route("/reviews/<int:review_id>", methods=["GET"])
def get_review(review_id):
    return jsonify(review_lifecycle.get_review(review_id)), 200


@review_bp.route("/reviews/<int:review_id>", methods=["PUT"])
def update_review(review_id):
    data, err = json_body()
    if err:
        return err
    data, err = convert_dates(data, _DATE_FIELDS)
    if err:
        return err
    return jsonify(review_lifecycle.update_review(review_id, current_actor(), data)), 200


@review_bp.route("/reviews/<int:review_id>/approval", methods=["POST"])
def decide_approval(review_id):
    """Body: {status: APPROVED|REJECTED|DEFERRED, comments?}"""
    data, err = json_body()
    if err:
        return err
    status = data.get("status")
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    result = review_lifecycle.decide_approval(review_id, status, current_actor(), comments=data.get("comments"))
    return jsonify(result), 200


@review_bp.route("/reviews/<int:review_id>/approval/history", methods=["GET"])
def approval_history(review_id):
    return jsonify({"review_id": review_id, "decisions": review_lifecycle.get_approval_history(review_id)}), 200


@review_bp.route("/reviews/<int:review_id>/transition", methods=["POST"])
def transition_review(review_id):
    """Body: {status, notes?, reason?}"""
    data, err = json_body()
    if err:
        return err
    target = data.get("status")
    if not target:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    review = review_lifecycle.transition_status(
        review_id, target, current_actor(), notes=data.get("notes"), reason=data.get("reason"),
    )
    return jsonify(review), 200


@review_bp.route("/reviews/<int:review_id>/audit", methods=["GET"])
def audit_trail(review_id):
    entries = review_lifecycle.get_audit_trail(review_id)
    return jsonify({"review_id": review_id, "entries": entries, "total": len(entries)}), 200
