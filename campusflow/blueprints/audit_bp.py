"""
Campus Request Routing
Audit blueprint.

Endpoints:
    GET /api/v1/audit   merged audit rows and request actions, scoped to the caller
"""

from flask import Blueprint, jsonify, request

from campusflow.blueprints import as_datetime, as_int
from campusflow.middleware.identity import current_scope, current_user
from campusflow.services.audit_service import list_audit_log

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")


@audit_bp.route("/audit", methods=["GET"])
def list_audit_logs():
    """
    Return audit entries newest first.

    Query params:
        actor_id     filter by acting user
        entity_type  request | workflow | form_template | delegation | ...
        entity_id    filter by entity PK
        action       prefix match (``request.`` for all request events)
        request_id   everything about one request
        since / until
        limit        max entries (default 100, max 500)
    """
    current_user()
    entries = list_audit_log(
        current_scope(),
        actor_id=as_int(request.args.get("actor_id"), "actor_id"),
        entity_type=request.args.get("entity_type") or None,
        entity_id=request.args.get("entity_id") or None,
        action=request.args.get("action") or None,
        request_id=as_int(request.args.get("request_id"), "request_id"),
        since=as_datetime(request.args.get("since"), "since"),
        until=as_datetime(request.args.get("until"), "until"),
        limit=as_int(request.args.get("limit"), "limit") or 100,
    )
    return jsonify({"entries": entries, "total": len(entries)})
