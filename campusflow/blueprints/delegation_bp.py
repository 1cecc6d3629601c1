"""
Campus Request Routing
Delegation blueprint.

Endpoints:
    GET  /api/v1/delegations                     caller's delegations (``?include_inactive=true``)
    POST /api/v1/delegations                     create
    PUT  /api/v1/delegations/<id>                change window / active flag / reason
    POST /api/v1/delegations/<id>/deactivate     deactivate
"""

from flask import Blueprint, jsonify, request

from campusflow.blueprints import as_datetime, as_int, json_body
from campusflow.middleware.identity import current_scope, current_user
from campusflow.services import delegation_service

delegation_bp = Blueprint("delegations", __name__, url_prefix="/api/v1")


@delegation_bp.route("/delegations", methods=["GET"])
def list_delegations():
    user = current_user()
    include_inactive = request.args.get("include_inactive") == "true"
    items = delegation_service.list_delegations(user.id, include_inactive=include_inactive)
    return jsonify([d.to_dict() for d in items])


@delegation_bp.route("/delegations", methods=["POST"])
def create_delegation():
    """Body: { grantee_id, starts_at, ends_at, reason?, grantor_id? (admin only) }"""
    body = json_body()
    delegation = delegation_service.create_delegation(
        current_user(), current_scope(),
        grantee_id=as_int(body.get("grantee_id"), "grantee_id", required=True),
        starts_at=as_datetime(body.get("starts_at"), "starts_at"),
        ends_at=as_datetime(body.get("ends_at"), "ends_at"),
        reason=body.get("reason"),
        grantor_id=as_int(body.get("grantor_id"), "grantor_id"),
    )
    return jsonify(delegation.to_dict()), 201


@delegation_bp.route("/delegations/<int:delegation_id>", methods=["PUT"])
def update_delegation(delegation_id):
    body = json_body()
    is_active = body.get("is_active")
    delegation = delegation_service.update_delegation(
        current_user(), current_scope(), delegation_id,
        starts_at=as_datetime(body.get("starts_at"), "starts_at"),
        ends_at=as_datetime(body.get("ends_at"), "ends_at"),
        is_active=None if is_active is None else bool(is_active),
        reason=body.get("reason"),
    )
    return jsonify(delegation.to_dict())


@delegation_bp.route("/delegations/<int:delegation_id>/deactivate", methods=["POST"])
def deactivate_delegation(delegation_id):
    delegation = delegation_service.deactivate_delegation(current_user(), current_scope(), delegation_id)
    return jsonify(delegation.to_dict())
