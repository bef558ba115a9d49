"""
Findings blueprint.

Endpoints:
    POST /api/v1/reviews/<id>/findings     — raise a finding
    GET  /api/v1/reviews/<id>/findings     — list a review's findings
    GET  /api/v1/findings/<fid>            — detail with its CAP
    PUT  /api/v1/findings/<fid>            — edit fields / move status
"""

import logging

from flask import Blueprint, jsonify

from peer_review.blueprints import register_error_handlers
from peer_review.services import finding_service
from peer_review.utils.errors import E, api_error
from peer_review.utils.helpers import convert_dates, current_actor, json_body

logger = logging.getLogger(__name__)

finding_bp = register_error_handlers(Blueprint("finding", __name__, url_prefix="/api/v1"))


@finding_bp.route("/reviews/<int:review_id>/findings", methods=["POST"])
def create_finding(review_id):
    """Body: {finding_type, title, description, severity?, cap_required?, target_close_date?}"""
    data, err = json_body()
    if err:
        return err
    for field in ("finding_type", "title", "description"):
        if not data.get(field):
            return api_error(E.VALIDATION_REQUIRED, f"{field} is required")
    data, err = convert_dates(data, ("target_close_date",))
    if err:
        return err
    return jsonify(finding_service.create_finding(review_id, current_actor(), data)), 201


@finding_bp.route("/reviews/<int:review_id>/findings", methods=["GET"])
def list_findings(review_id):
    findings = finding_service.list_findings(review_id)
    return jsonify({"items": findings, "total": len(findings)}), 200


@finding_bp.route("/findings/<int:finding_id>", methods=["GET"])
def get_finding(finding_id):
    return jsonify(finding_service.get_finding(finding_id)), 200


@finding_bp.route("/findings/<int:finding_id>", methods=["PUT"])
def update_finding(finding_id):
    data, err = json_body()
    if err:
        return err
    data, err = convert_dates(data, ("target_close_date",))
    if err:
        return err
    return jsonify(finding_service.update_finding(finding_id, current_actor(), data)), 200
