"""Local filesystem storage for request attachments.

Files land in ``UPLOAD_FOLDER`` as ``req-<request id>-<timestamp>-<name>``
so two uploads for the same request never collide.  Callers write files
*before* opening a database transaction and call ``remove_attachment`` if
that transaction later fails.
"""

import logging
import os
from datetime import datetime, timezone

from flask import current_app
from werkzeug.utils import secure_filename

from campusflow.core.exceptions import DependencyError, ValidationError

logger = logging.getLogger(__name__)


def file_extension(name: str) -> str:
    _, ext = os.path.splitext(name or "")
    return ext.lstrip(".").lower()


def check_attachment(content: bytes, suggested_name: str) -> str:
    """Apply the size / type policy; returns the sanitised file name."""
    safe_name = secure_filename(suggested_name or "")
    if not safe_name:
        raise ValidationError("Attachment name is invalid", details={"attachment": "invalid name"})

    allowed = current_app.config.get("ALLOWED_ATTACHMENT_TYPES", ())
    ext = file_extension(safe_name)
    if allowed and ext not in allowed:
        raise ValidationError(
            f"Attachment type .{ext or '?'} is not allowed",
            details={"attachment": f"allowed types: {', '.join(allowed)}"},
        )

    max_bytes = int(current_app.config.get("MAX_ATTACHMENT_MB", 10)) * 1024 * 1024
    if len(content) > max_bytes:
        raise ValidationError(
            "Attachment is too large",
            details={"attachment": f"max {current_app.config.get('MAX_ATTACHMENT_MB', 10)} MB"},
        )
    return safe_name


def save_attachment(content: bytes, suggested_name: str, request_id: int) -> str:
    """Persist ``content`` and return its storage location.

    Raises:
        ValidationError: name, type or size rejected by policy.
        DependencyError: the file could not be written.
    """
    safe_name = check_attachment(content, suggested_name)
    folder = current_app.config["UPLOAD_FOLDER"]
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
    file_name = f"req-{request_id}-{stamp}-{safe_name}"
    path = os.path.join(folder, file_name)

    try:
        os.makedirs(folder, exist_ok=True)
        with open(path, "wb") as fh:
            fh.write(content)
    except OSError as exc:
        logger.error("Attachment write failed for request %s: %s", request_id, exc)
        raise DependencyError("attachment_storage", str(exc)) from exc

    logger.debug("Stored attachment %s (%d bytes)", file_name, len(content))
    return path


def remove_attachment(location: str) -> None:
    """Best-effort cleanup of a stored file."""
    try:
        os.remove(location)
    except FileNotFoundError:
        return
    except OSError:
        logger.warning("Could not remove orphaned attachment %s", location, exc_info=True)
