"""
Campus Request Routing
Blueprint helpers.

Malformed input (wrong JSON shape, non-numeric ids, bad dates) is answered
with 400 here; business-rule failures are raised by the services and mapped
to 422 / 403 / 404 / 409 by the app-level error handlers.
"""

from flask import request

from campusflow.utils.errors import E, api_error
from campusflow.utils.helpers import parse_datetime


class BadRequest(Exception):
    """Malformed client input; rendered as HTTP 400."""

    def __init__(self, message, field=None):
        super().__init__(message)
        self.field = field

    def response(self):
        details = {"field": self.field} if self.field else None
        return api_error(E.VALIDATION_INVALID, str(self), details=details)


def json_body() -> dict:
    """The request body as a JSON object; anything else is a BadRequest."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise BadRequest("Request body must be a JSON object")
    return data


def as_int(value, field, required=False):
    if value is None or value == "":
        if required:
            raise BadRequest(f"{field} is required", field)
        return None
    if isinstance(value, bool):
        raise BadRequest(f"{field} must be an integer", field)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise BadRequest(f"{field} must be an integer", field) from None


def as_datetime(value, field):
    try:
        return parse_datetime(value)
    except ValueError as exc:
        raise BadRequest(f"{field}: {exc}", field) from None


def limit_offset(default_limit=50, max_limit=200):
    """Read ``limit`` / ``offset`` query parameters with clamping."""
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return max(limit, 1), offset


def page_payload(key, items, total, page, per_page):
    pages = (total + per_page - 1) // per_page if per_page else 0
    return {key: items, "total": total, "page": page, "per_page": per_page, "pages": pages}
