"""
Reviewer eligibility and matching blueprint.

Endpoints:
    GET  /api/v1/reviews/<id>/eligible-reviewers       — ?include_cross_team=true
    POST /api/v1/reviews/<id>/matching                 — ranked matches (body: criteria overrides)
    POST /api/v1/reviews/<id>/team/recommendation      — greedy team proposal, not persisted
    GET  /api/v1/reviews/<id>/coverage                 — coverage of the current team

Everything here is read-only; POST is used only so criteria can travel in
the body.
"""

import logging

from flask import Blueprint, jsonify, request

from peer_review.blueprints import as_bool, register_error_handlers
from peer_review.services import eligibility, matching
from peer_review.utils.errors import E, api_error
from peer_review.utils.helpers import convert_dates, current_actor, json_body

logger = logging.getLogger(__name__)

reviewer_bp = register_error_handlers(Blueprint("reviewer", __name__, url_prefix="/api/v1"))

_LIST_CRITERIA = ("required_expertise", "preferred_expertise", "required_languages", "must_include_ids", "exclude_ids")


def _criteria_overrides():
    """Return ``(overrides, None)`` or ``(None, error_response)``."""
    data, err = json_body()
    if err:
        return None, err
    overrides = data.get("criteria", data)
    if not isinstance(overrides, dict):
        return None, api_error(E.BAD_REQUEST, "criteria must be an object")
    for field in _LIST_CRITERIA:
        if field in overrides and not isinstance(overrides[field], list):
            return None, api_error(E.BAD_REQUEST, f"{field} must be a list")
    if "team_size" in overrides and not isinstance(overrides["team_size"], int):
        return None, api_error(E.BAD_REQUEST, "team_size must be an integer")
    return convert_dates(overrides, ("start_date", "end_date"))


@reviewer_bp.route("/reviews/<int:review_id>/eligible-reviewers", methods=["GET"])
def eligible_reviewers(review_id):
    include_cross_team = as_bool(request.args.get("include_cross_team"))
    return jsonify(eligibility.list_eligible_reviewers(review_id, include_cross_team=include_cross_team)), 200


@reviewer_bp.route("/reviews/<int:review_id>/matching", methods=["POST"])
def match_reviewers(review_id):
    overrides, err = _criteria_overrides()
    if err:
        return err
    return jsonify(matching.match_reviewers_for_review(review_id, current_actor(), overrides)), 200


@reviewer_bp.route("/reviews/<int:review_id>/team/recommendation", methods=["POST"])
def recommend_team(review_id):
    overrides, err = _criteria_overrides()
    if err:
        return err
    return jsonify(matching.recommend_team_for_review(review_id, current_actor(), overrides)), 200


@reviewer_bp.route("/reviews/<int:review_id>/coverage", methods=["GET"])
def coverage(review_id):
    return jsonify(matching.coverage_for_review(review_id)), 200
