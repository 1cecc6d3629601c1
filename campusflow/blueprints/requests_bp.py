"""
Campus Request Routing
Requests blueprint: submission, decisions, resubmission, inbox and history.

Endpoints:
    POST /api/v1/requests                          submit a form
    GET  /api/v1/requests/mine                     caller's own requests
    GET  /api/v1/requests/stats                    caller's per-status counts
    GET  /api/v1/requests/search                   scoped search
    GET  /api/v1/requests/<id>                     detail (with action log)
    GET  /api/v1/requests/<id>/actions             action log only
    GET  /api/v1/requests/<id>/attachments/<aid>   download an attachment
    POST /api/v1/requests/<id>/process             approver decision
    PUT  /api/v1/requests/<id>                     requester resubmission
    GET  /api/v1/inbox                             requests awaiting the caller
    GET  /api/v1/history                           decisions the caller made
"""

import base64
import binascii
import logging
import os

from flask import Blueprint, jsonify, request, send_file

from campusflow.blueprints import BadRequest, as_datetime, as_int, json_body, limit_offset, page_payload
from campusflow.core.exceptions import NotFoundError
from campusflow.middleware.identity import current_scope, current_user
from campusflow.models import db
from campusflow.models.request import DECISION_ACTIONS, REQUEST_STATUSES, Attachment
from campusflow.services import request_service
from campusflow.services.request_lifecycle import (
    AttachmentUpload,
    process_request,
    resubmit_request,
    submit_request,
)
from campusflow.utils.helpers import paginate_args

logger = logging.getLogger(__name__)

requests_bp = Blueprint("requests", __name__, url_prefix="/api/v1")


def _status_arg():
    status = request.args.get("status")
    if status and status not in REQUEST_STATUSES:
        raise BadRequest(f"status must be one of {sorted(REQUEST_STATUSES)}", "status")
    return status or None


def _data_arg(body):
    data = body.get("data", {})
    if not isinstance(data, dict):
        raise BadRequest("data must be an object", "data")
    return data


def _attachment_from_request(body):
    """Attachment from a multipart ``file`` part or a base64 JSON object."""
    upload = request.files.get("file")
    if upload is not None and upload.filename:
        return AttachmentUpload(content=upload.read(), file_name=upload.filename)

    raw = body.get("attachment")
    if not raw:
        return None
    if not isinstance(raw, dict) or not raw.get("file_name") or not raw.get("content_base64"):
        raise BadRequest("attachment must be {file_name, content_base64}", "attachment")
    try:
        content = base64.b64decode(raw["content_base64"], validate=True)
    except (binascii.Error, ValueError):
        raise BadRequest("attachment.content_base64 is not valid base64", "attachment") from None
    return AttachmentUpload(content=content, file_name=str(raw["file_name"]))


# ═════════════════════════════════════════════════════════════════════════════
# SUBMIT / DECIDE / RESUBMIT
# ═════════════════════════════════════════════════════════════════════════════

@requests_bp.route("/requests", methods=["POST"])
def submit():
    """Submit a form.

    Body: { form_id, data: {field: value, ...} }
    """
    body = json_body()
    form_id = as_int(body.get("form_id"), "form_id", required=True)
    outcome = submit_request(current_user(), form_id, _data_arg(body))
    return jsonify(outcome), 201


@requests_bp.route("/requests/<int:request_id>/process", methods=["POST"])
def process(request_id):
    """Record an approver decision on the request's current step.

    JSON body: { action, comment?, expected_version?, attachment?: {file_name, content_base64} }
    Multipart: fields action / comment / expected_version plus a ``file`` part.
    """
    body = request.form.to_dict() if request.files or request.form else json_body()
    action = (body.get("action") or "").strip()
    if action not in DECISION_ACTIONS:
        raise BadRequest(f"action must be one of {sorted(DECISION_ACTIONS)}", "action")

    outcome = process_request(
        request_id,
        action,
        current_user(),
        comment=body.get("comment"),
        attachment=_attachment_from_request(body),
        expected_version=as_int(body.get("expected_version"), "expected_version"),
    )
    return jsonify(outcome)


@requests_bp.route("/requests/<int:request_id>", methods=["PUT"])
def resubmit(request_id):
    """Requester edits a returned request and sends it back to its step."""
    body = json_body()
    outcome = resubmit_request(request_id, current_user(), _data_arg(body))
    return jsonify(outcome)


# ═════════════════════════════════════════════════════════════════════════════
# READS
# ═════════════════════════════════════════════════════════════════════════════

@requests_bp.route("/requests/mine", methods=["GET"])
def my_requests():
    page, per_page = paginate_args(default_per_page=20, max_per_page=100)
    items, total = request_service.my_requests(current_user(), _status_arg(), page, per_page)
    return jsonify(page_payload("requests", items, total, page, per_page))


@requests_bp.route("/requests/stats", methods=["GET"])
def my_stats():
    return jsonify(request_service.request_stats(current_user()))


@requests_bp.route("/requests/search", methods=["GET"])
def search():
    """
    Search requests visible to the caller.

    Query params:
        q         reference number or form name fragment
        status    request status
        form_id   form template id
        since / until  submission window (ISO 8601 or DD.MM.YYYY)
        page / per_page
    """
    page, per_page = paginate_args(default_per_page=20, max_per_page=100)
    items, total = request_service.search_requests(
        current_user(), current_scope(),
        q=request.args.get("q"),
        status=_status_arg(),
        form_id=as_int(request.args.get("form_id"), "form_id"),
        since=as_datetime(request.args.get("since"), "since"),
        until=as_datetime(request.args.get("until"), "until"),
        page=page, per_page=per_page,
    )
    return jsonify(page_payload("requests", items, total, page, per_page))


@requests_bp.route("/requests/<int:request_id>", methods=["GET"])
def detail(request_id):
    return jsonify(request_service.request_detail(request_id, current_user(), current_scope()))


@requests_bp.route("/requests/<int:request_id>/actions", methods=["GET"])
def actions(request_id):
    return jsonify({
        "actions": request_service.request_actions(request_id, current_user(), current_scope()),
    })


@requests_bp.route("/requests/<int:request_id>/attachments/<int:attachment_id>", methods=["GET"])
def download_attachment(request_id, attachment_id):
    req = request_service.get_visible_request(request_id, current_user(), current_scope())
    attachment = db.session.get(Attachment, attachment_id)
    if attachment is None or attachment.request_id != req.id:
        raise NotFoundError("Attachment", attachment_id)
    if not os.path.isfile(attachment.storage_location):
        logger.warning("Attachment %s missing on disk: %s", attachment.id, attachment.storage_location)
        raise NotFoundError("Attachment", attachment_id)
    return send_file(attachment.storage_location, as_attachment=True, download_name=attachment.file_name)


@requests_bp.route("/inbox", methods=["GET"])
def inbox():
    limit, offset = limit_offset()
    items, total = request_service.inbox(current_user(), limit, offset)
    return jsonify({"requests": items, "total": total, "limit": limit, "offset": offset})


@requests_bp.route("/history", methods=["GET"])
def history():
    limit, offset = limit_offset()
    items, total = request_service.history(current_user(), limit, offset)
    return jsonify({"actions": items, "total": total, "limit": limit, "offset": offset})
