"""
Campus Request Routing
Organisation directory blueprint.

Endpoints:
    GET|POST   /api/v1/colleges
    PUT|DELETE /api/v1/colleges/<id>
    GET|POST   /api/v1/departments
    PUT        /api/v1/departments/<id>
    GET|POST   /api/v1/users
    GET|PUT    /api/v1/users/<id>
    POST       /api/v1/users/<id>/deactivate
    GET        /api/v1/roles
    GET        /api/v1/approvers          roles + scoped users for step binding
    GET        /api/v1/colleagues         delegation candidates
    GET        /api/v1/me                 caller profile and resolved scope
"""

from dataclasses import asdict

from flask import Blueprint, jsonify, request

from campusflow.blueprints import as_int, json_body, page_payload
from campusflow.middleware.identity import current_scope, current_user
from campusflow.services import org_service
from campusflow.utils.helpers import paginate_args

org_bp = Blueprint("org", __name__, url_prefix="/api/v1")


# ── Colleges ─────────────────────────────────────────────────────────────────

@org_bp.route("/colleges", methods=["GET"])
def list_colleges():
    current_user()
    include_departments = request.args.get("include_departments") == "true"
    colleges = org_service.list_colleges(current_scope())
    return jsonify([c.to_dict(include_departments=include_departments) for c in colleges])


@org_bp.route("/colleges", methods=["POST"])
def create_college():
    college = org_service.create_college(current_user(), current_scope(), json_body())
    return jsonify(college.to_dict()), 201


@org_bp.route("/colleges/<int:college_id>", methods=["PUT"])
def update_college(college_id):
    college = org_service.update_college(current_user(), current_scope(), college_id, json_body())
    return jsonify(college.to_dict())


@org_bp.route("/colleges/<int:college_id>", methods=["DELETE"])
def delete_college(college_id):
    org_service.delete_college(current_user(), current_scope(), college_id)
    return jsonify({"deleted": True})


# ── Departments ──────────────────────────────────────────────────────────────

@org_bp.route("/departments", methods=["GET"])
def list_departments():
    current_user()
    college_id = as_int(request.args.get("college_id"), "college_id")
    return jsonify([d.to_dict() for d in org_service.list_departments(current_scope(), college_id)])


@org_bp.route("/departments", methods=["POST"])
def create_department():
    department = org_service.create_department(current_user(), current_scope(), json_body())
    return jsonify(department.to_dict()), 201


@org_bp.route("/departments/<int:department_id>", methods=["PUT"])
def update_department(department_id):
    department = org_service.update_department(current_user(), current_scope(), department_id, json_body())
    return jsonify(department.to_dict())


# ── Users ────────────────────────────────────────────────────────────────────

@org_bp.route("/users", methods=["GET"])
def list_users():
    """
    Scoped user roster.

    Query params:
        role           role name
        department_id  home department
        q              name / university id / email fragment
        active         ``true`` for active users only
        page / per_page
    """
    current_user()
    page, per_page = paginate_args()
    users, total = org_service.list_users(
        current_scope(),
        role=request.args.get("role"),
        department_id=as_int(request.args.get("department_id"), "department_id"),
        q=request.args.get("q"),
        active_only=request.args.get("active") == "true",
        page=page, per_page=per_page,
    )
    return jsonify(page_payload("users", [u.to_dict() for u in users], total, page, per_page))


@org_bp.route("/users", methods=["POST"])
def create_user():
    """Body: { university_id, full_name, role_id, department_id?, email?, phone? }"""
    user = org_service.create_user(current_user(), current_scope(), json_body())
    return jsonify(user.to_dict()), 201


@org_bp.route("/users/<int:user_id>", methods=["GET"])
def get_user(user_id):
    current_user()
    return jsonify(org_service.get_user_in_scope(current_scope(), user_id).to_dict())


@org_bp.route("/users/<int:user_id>", methods=["PUT"])
def update_user(user_id):
    user = org_service.update_user(current_user(), current_scope(), user_id, json_body())
    return jsonify(user.to_dict())


@org_bp.route("/users/<int:user_id>/deactivate", methods=["POST"])
def deactivate_user(user_id):
    user = org_service.deactivate_user(current_user(), current_scope(), user_id)
    return jsonify(user.to_dict())


# ── Pickers ──────────────────────────────────────────────────────────────────

@org_bp.route("/roles", methods=["GET"])
def list_roles():
    current_user()
    return jsonify([r.to_dict() for r in org_service.list_roles()])


@org_bp.route("/approvers", methods=["GET"])
def list_approvers():
    current_user()
    return jsonify(org_service.eligible_approvers(current_scope()))


@org_bp.route("/colleagues", methods=["GET"])
def list_colleagues():
    return jsonify([u.to_dict() for u in org_service.colleagues(current_user())])


@org_bp.route("/me", methods=["GET"])
def me():
    user = current_user()
    scope = current_scope()
    return jsonify({"user": user.to_dict(), "scope": {**asdict(scope), "level": scope.level}})
