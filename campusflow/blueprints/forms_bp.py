"""
Campus Request Routing
Form catalog blueprint.

Endpoints:
    GET    /api/v1/forms                  all forms incl. drafts (admin)
    GET    /api/v1/forms/available        forms the caller may submit
    POST   /api/v1/forms                  save a new draft
    GET    /api/v1/forms/<id>             form with schema
    PUT    /api/v1/forms/<id>             update draft fields
    DELETE /api/v1/forms/<id>             delete, or deactivate when used
    POST   /api/v1/forms/<id>/publish     audience + workflow binding, activates
    POST   /api/v1/forms/<id>/toggle      activate / deactivate
"""

from flask import Blueprint, jsonify

from campusflow.blueprints import BadRequest, json_body, page_payload
from campusflow.core.exceptions import NotFoundError, UnauthorizedError
from campusflow.middleware.identity import current_scope, current_user
from campusflow.services import form_service
from campusflow.services.audience import available_forms, is_form_visible
from campusflow.utils.helpers import paginate_args

forms_bp = Blueprint("forms", __name__, url_prefix="/api/v1")


@forms_bp.route("/forms", methods=["GET"])
def list_forms():
    current_user()
    if not current_scope().unrestricted:
        raise UnauthorizedError("Only administrators can list the full form catalog")
    page, per_page = paginate_args(default_per_page=20, max_per_page=100)
    items, total = form_service.list_forms(page, per_page)
    return jsonify(page_payload("forms", [f.to_dict(include_schema=False) for f in items], total, page, per_page))


@forms_bp.route("/forms/available", methods=["GET"])
def list_available():
    current_user()
    return jsonify([f.to_dict() for f in available_forms(current_scope())])


@forms_bp.route("/forms", methods=["POST"])
def create_form():
    """Body: { name, schema: [...], request_type_id?, audience_config?, document_template? }"""
    form = form_service.save_draft(current_user(), current_scope(), json_body())
    return jsonify(form.to_dict()), 201


@forms_bp.route("/forms/<int:form_id>", methods=["GET"])
def get_form(form_id):
    current_user()
    scope = current_scope()
    form = form_service.get_form(form_id)
    if not scope.unrestricted and not is_form_visible(form, scope):
        raise NotFoundError("FormTemplate", form_id)
    return jsonify(form.to_dict())


@forms_bp.route("/forms/<int:form_id>", methods=["PUT"])
def update_form(form_id):
    form = form_service.save_draft(current_user(), current_scope(), json_body(), form_id=form_id)
    return jsonify(form.to_dict())


@forms_bp.route("/forms/<int:form_id>", methods=["DELETE"])
def delete_form(form_id):
    outcome = form_service.delete_form(current_user(), current_scope(), form_id)
    return jsonify({"result": outcome})


@forms_bp.route("/forms/<int:form_id>/publish", methods=["POST"])
def publish_form(form_id):
    """
    Publish a form.

    Body:
        audience_config  {student?, employee?, colleges?, departments?}
        workflow         {mode: existing|new|none, workflow_id?, workflow?: {name, steps}}
    """
    body = json_body()
    workflow_options = body.get("workflow")
    if workflow_options is not None and not isinstance(workflow_options, dict):
        raise BadRequest("workflow must be an object", "workflow")
    form = form_service.publish_form(
        current_user(), current_scope(), form_id, body.get("audience_config"), workflow_options,
    )
    return jsonify(form.to_dict())


@forms_bp.route("/forms/<int:form_id>/toggle", methods=["POST"])
def toggle_form(form_id):
    body = json_body()
    if not isinstance(body.get("is_active"), bool):
        raise BadRequest("is_active must be a boolean", "is_active")
    form = form_service.toggle_form(current_user(), current_scope(), form_id, body["is_active"])
    return jsonify(form.to_dict())
