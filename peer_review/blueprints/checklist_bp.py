"""
Fieldwork checklist blueprint.

Endpoints:
    GET    /api/v1/reviews/<id>/checklist                        — items and progress
    POST   /api/v1/reviews/<id>/checklist/initialize             — seed missing items
    PUT    /api/v1/reviews/<id>/checklist/<code>                 — {is_completed}
    POST   /api/v1/reviews/<id>/checklist/<code>/override        — {reason}
    DELETE /api/v1/reviews/<id>/checklist/<code>/override        — remove an override
    POST   /api/v1/reviews/<id>/fieldwork/complete               — IN_PROGRESS → REPORT_DRAFTING
"""

import logging

from flask import Blueprint, jsonify

from peer_review.blueprints import as_bool, register_error_handlers
from peer_review.services import checklist_service
from peer_review.utils.errors import E, api_error
from peer_review.utils.helpers import current_actor, json_body

logger = logging.getLogger(__name__)

checklist_bp = register_error_handlers(Blueprint("checklist", __name__, url_prefix="/api/v1"))


@checklist_bp.route("/reviews/<int:review_id>/checklist", methods=["GET"])
def get_checklist(review_id):
    return jsonify(checklist_service.get_checklist_status(review_id)), 200


@checklist_bp.route("/reviews/<int:review_id>/checklist/initialize", methods=["POST"])
def initialize_checklist(review_id):
    return jsonify(checklist_service.initialize_checklist(review_id, current_actor())), 200


@checklist_bp.route("/reviews/<int:review_id>/checklist/<item_code>", methods=["PUT"])
def update_item(review_id, item_code):
    data, err = json_body()
    if err:
        return err
    if "is_completed" not in data:
        return api_error(E.VALIDATION_REQUIRED, "is_completed is required")
    item = checklist_service.update_fieldwork_checklist_item(
        review_id, item_code, as_bool(data["is_completed"]), current_actor(),
    )
    return jsonify(item), 200


@checklist_bp.route("/reviews/<int:review_id>/checklist/<item_code>/override", methods=["POST"])
def override_item(review_id, item_code):
    data, err = json_body()
    if err:
        return err
    item = checklist_service.override_checklist_item(review_id, item_code, data.get("reason"), current_actor())
    return jsonify(item), 200


@checklist_bp.route("/reviews/<int:review_id>/checklist/<item_code>/override", methods=["DELETE"])
def remove_override(review_id, item_code):
    return jsonify(checklist_service.remove_checklist_override(review_id, item_code, current_actor())), 200


@checklist_bp.route("/reviews/<int:review_id>/fieldwork/complete", methods=["POST"])
def complete_fieldwork(review_id):
    return jsonify(checklist_service.complete_fieldwork(review_id, current_actor())), 200
