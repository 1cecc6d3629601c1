"""
Campus Request Routing
Workflow definition blueprint.

Endpoints:
    GET    /api/v1/workflows                         list (``?active=true``)
    POST   /api/v1/workflows                         create with steps
    GET    /api/v1/workflows/<id>                    detail
    PUT    /api/v1/workflows/<id>                    rename / toggle / replace steps
    DELETE /api/v1/workflows/<id>                    delete (refused while bound)
    GET    /api/v1/request-types                     request types with their workflow
    PUT    /api/v1/request-types/<id>/workflow       bind / unbind a workflow
"""

from flask import Blueprint, jsonify, request

from campusflow.blueprints import BadRequest, as_int, json_body
from campusflow.middleware.identity import current_scope, current_user
from campusflow.services import workflow_service

workflow_bp = Blueprint("workflows", __name__, url_prefix="/api/v1")


def _workflow_body():
    body = json_body()
    if "steps" in body and body["steps"] is not None and not isinstance(body["steps"], list):
        raise BadRequest("steps must be an array", "steps")
    return body


@workflow_bp.route("/workflows", methods=["GET"])
def list_workflows():
    current_user()
    active_only = request.args.get("active") == "true"
    return jsonify([w.to_dict() for w in workflow_service.list_workflows(active_only)])


@workflow_bp.route("/workflows", methods=["POST"])
def create_workflow():
    """Create a workflow.

    Body: { name, is_active?, steps: [{name, order?, approver_role_id | approver_user_id, sla_hours?}] }
    """
    workflow = workflow_service.create_workflow(current_user(), current_scope(), _workflow_body())
    return jsonify(workflow.to_dict()), 201


@workflow_bp.route("/workflows/<int:workflow_id>", methods=["GET"])
def get_workflow(workflow_id):
    current_user()
    return jsonify(workflow_service.get_workflow(workflow_id).to_dict())


@workflow_bp.route("/workflows/<int:workflow_id>", methods=["PUT"])
def update_workflow(workflow_id):
    workflow = workflow_service.update_workflow(current_user(), current_scope(), workflow_id, _workflow_body())
    return jsonify(workflow.to_dict())


@workflow_bp.route("/workflows/<int:workflow_id>", methods=["DELETE"])
def delete_workflow(workflow_id):
    workflow_service.delete_workflow(current_user(), current_scope(), workflow_id)
    return jsonify({"deleted": True})


@workflow_bp.route("/request-types", methods=["GET"])
def list_request_types():
    current_user()
    return jsonify([rt.to_dict() for rt in workflow_service.list_request_types()])


@workflow_bp.route("/request-types/<int:request_type_id>/workflow", methods=["PUT"])
def assign_workflow(request_type_id):
    """Body: { workflow_id } (null unbinds)."""
    body = json_body()
    if "workflow_id" not in body:
        raise BadRequest("workflow_id is required (null to unbind)", "workflow_id")
    workflow_id = as_int(body.get("workflow_id"), "workflow_id")
    request_type = workflow_service.assign_workflow(current_user(), current_scope(), request_type_id, workflow_id)
    return jsonify(request_type.to_dict())
