"""Shared utility functions used across blueprints and services.

get_or_404:      tuple-return lookup for blueprints (NOT abort)
parse_datetime:  ISO / DD.MM.YYYY parser that raises ValueError on bad input
utcnow / ensure_aware: timezone-aware timestamps; SQLite hands back naive ones
paginate_args:   page / per_page query parameters with clamping
"""
import logging
from datetime import date, datetime, timezone

from flask import jsonify, request

from campusflow.models import db

logger = logging.getLogger(__name__)


def get_or_404(model, pk, label=None):
    """Fetch a model instance by primary key or return a 404 error tuple.

    - Success: (obj, None)
    - Failure: (None, (jsonify_response, 404))

        obj, err = get_or_404(Workflow, wid)
        if err:
            return err
    """
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if not obj:
        return None, (jsonify({"error": f"{label} not found", "code": "ERR_NOT_FOUND"}), 404)
    return obj, None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value):
    """Parse an ISO datetime, ISO date or DD.MM.YYYY string.

    Returns None for empty input and an aware UTC datetime otherwise.
    Raises ValueError on anything unparseable; blueprints turn that into 400.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_aware(datetime.fromisoformat(text))
    except ValueError:
        try:
            parsed = datetime.strptime(text, "%d.%m.%Y")
        except ValueError as exc:
            raise ValueError(
                "Invalid date format. Use ISO 8601 or DD.MM.YYYY."
            ) from exc
        return parsed.replace(tzinfo=timezone.utc)


def paginate_args(default_per_page=50, max_per_page=200):
    """Read ``page`` / ``per_page`` from the query string."""
    page = max(1, request.args.get("page", 1, type=int))
    per_page = min(max_per_page, max(1, request.args.get("per_page", default_per_page, type=int)))
    return page, per_page
