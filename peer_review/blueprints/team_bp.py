"""
Review team blueprint.

Endpoints:
    GET    /api/v1/reviews/<id>/team                    — members and readiness
    PUT    /api/v1/reviews/<id>/team                    — bulk assign
    POST   /api/v1/reviews/<id>/team/members            — add one member
    POST   /api/v1/reviews/<id>/team/invitations        — invite PENDING members
    GET    /api/v1/reviews/<id>/team/readiness          — readiness breakdown
    PUT    /api/v1/team-members/<mid>/role              — change role
    DELETE /api/v1/team-members/<mid>                   — remove member
    POST   /api/v1/team-members/<mid>/response          — accept / decline invitation
    POST   /api/v1/team-members/<mid>/replace           — replace a declined member

Lead override fields (``lead_override``, ``lead_override_reason``) are
honoured only for roles allowed to override lead qualification.
"""

import logging

from flask import Blueprint, jsonify

from peer_review.blueprints import as_bool, as_int, register_error_handlers
from peer_review.models.review import Review
from peer_review.services import team_service
from peer_review.services.helpers.queries import get_or_404
from peer_review.utils.errors import E, api_error
from peer_review.utils.helpers import current_actor, json_body

logger = logging.getLogger(__name__)

team_bp = register_error_handlers(Blueprint("team", __name__, url_prefix="/api/v1"))


def _override_kwargs(data: dict) -> dict:
    return {
        "lead_override": as_bool(data.get("lead_override")),
        "lead_override_reason": data.get("lead_override_reason"),
    }


@team_bp.route("/reviews/<int:review_id>/team", methods=["GET"])
def get_team(review_id):
    return jsonify(team_service.get_team(review_id)), 200


@team_bp.route("/reviews/<int:review_id>/team", methods=["PUT"])
def assign_team(review_id):
    """Body: {members: [{reviewer_profile_id, role?, assigned_areas?, cross_team_justification?}],
    replace_existing?, lead_override?, lead_override_reason?}"""
    data, err = json_body()
    if err:
        return err
    members = data.get("members")
    if not isinstance(members, list) or not members:
        return api_error(E.VALIDATION_REQUIRED, "members must be a non-empty list")
    if not all(isinstance(m, dict) for m in members):
        return api_error(E.BAD_REQUEST, "each member must be an object")

    result = team_service.assign_team_bulk(
        review_id, members, current_actor(),
        replace_existing=as_bool(data.get("replace_existing")),
        **_override_kwargs(data),
    )
    return jsonify(result), 200


@team_bp.route("/reviews/<int:review_id>/team/members", methods=["POST"])
def add_member(review_id):
    data, err = json_body()
    if err:
        return err
    if data.get("reviewer_profile_id") is None:
        return api_error(E.VALIDATION_REQUIRED, "reviewer_profile_id is required")
    member = team_service.add_team_member(review_id, data, current_actor(), **_override_kwargs(data))
    return jsonify(member), 201


@team_bp.route("/reviews/<int:review_id>/team/invitations", methods=["POST"])
def send_invitations(review_id):
    return jsonify(team_service.send_invitations(review_id, current_actor())), 200


@team_bp.route("/reviews/<int:review_id>/team/readiness", methods=["GET"])
def readiness(review_id):
    review = get_or_404(Review, review_id)
    return jsonify(team_service.team_readiness(review)), 200


@team_bp.route("/team-members/<int:member_id>/role", methods=["PUT"])
def update_role(member_id):
    """Body: {role, lead_override?, lead_override_reason?}"""
    data, err = json_body()
    if err:
        return err
    role = data.get("role")
    if not role:
        return api_error(E.VALIDATION_REQUIRED, "role is required")
    member = team_service.update_team_member_role(member_id, role, current_actor(), **_override_kwargs(data))
    return jsonify(member), 200


@team_bp.route("/team-members/<int:member_id>", methods=["DELETE"])
def remove_member(member_id):
    return jsonify(team_service.remove_team_member(member_id, current_actor())), 200


@team_bp.route("/team-members/<int:member_id>/response", methods=["POST"])
def respond(member_id):
    """Body: {accept: bool, decline_reason?}"""
    data, err = json_body()
    if err:
        return err
    if "accept" not in data:
        return api_error(E.VALIDATION_REQUIRED, "accept is required")
    member = team_service.respond_to_invitation(
        member_id, as_bool(data["accept"]), current_actor(), decline_reason=data.get("decline_reason"),
    )
    return jsonify(member), 200


@team_bp.route("/team-members/<int:member_id>/replace", methods=["POST"])
def replace_member(member_id):
    """Body: {reviewer_profile_id, cross_team_justification?, lead_override?, lead_override_reason?}"""
    data, err = json_body()
    if err:
        return err
    profile_id, err = as_int(data.get("reviewer_profile_id"), "reviewer_profile_id")
    if err:
        return err
    if profile_id is None:
        return api_error(E.VALIDATION_REQUIRED, "reviewer_profile_id is required")
    member = team_service.replace_declined_member(
        member_id, profile_id, current_actor(),
        cross_team_justification=data.get("cross_team_justification"),
        **_override_kwargs(data),
    )
    return jsonify(member), 201
