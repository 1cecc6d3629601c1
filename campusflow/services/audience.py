"""Audience targeting: which active forms a user may submit.

A form's ``audience_config`` looks like::

    {"student": true, "employee": false, "colleges": [7], "departments": []}

* a base flag only excludes when it is explicitly ``false``;
* an empty or missing id list imposes no restriction at that level;
* college and department lists are independent and both must pass.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from campusflow.core.exceptions import ValidationError
from campusflow.models import db
from campusflow.models.org import EMPLOYEE_ROLE_MARKERS, STAFF_ROLES, STUDENT_ROLE_MARKERS
from campusflow.models.workflow import AUDIENCE_FLAGS, AUDIENCE_LISTS, FormTemplate

logger = logging.getLogger(__name__)


def audience_category(role_name: str) -> str | None:
    """Coarse category for a role name: ``"student"``, ``"employee"`` or None."""
    role = (role_name or "").lower()
    if any(marker in role for marker in STUDENT_ROLE_MARKERS):
        return "student"
    if role in STAFF_ROLES or role.startswith("head"):
        return "employee"
    if any(marker in role for marker in EMPLOYEE_ROLE_MARKERS):
        return "employee"
    return None


def normalize_audience_config(config) -> dict:
    """Validate and normalise an audience config.

    Raises:
        ValidationError: wrong shapes (non-bool flag, non-positive ids).
    """
    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ValidationError("audience_config must be an object")

    errors = {}
    unknown = set(config) - set(AUDIENCE_FLAGS) - set(AUDIENCE_LISTS)
    for key in sorted(unknown):
        errors[key] = "unknown audience key"

    normalized: dict = {}
    for flag in AUDIENCE_FLAGS:
        if flag not in config or config[flag] is None:
            continue
        if not isinstance(config[flag], bool):
            errors[flag] = "must be a boolean"
        else:
            normalized[flag] = config[flag]

    for key in AUDIENCE_LISTS:
        values = config.get(key)
        if values is None:
            continue
        if not isinstance(values, list):
            errors[key] = "must be a list of ids"
            continue
        ids = []
        for value in values:
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                errors[key] = "ids must be positive integers"
                break
            if value not in ids:
                ids.append(value)
        else:
            normalized[key] = ids

    if errors:
        raise ValidationError("Invalid audience_config", details=errors)
    return normalized


def is_form_visible(form: FormTemplate, scope) -> bool:
    """True iff ``form`` is active and its audience admits ``scope``'s user."""
    if form is None or not form.is_active:
        return False

    config = form.audience_config or {}
    if not config:
        return True

    category = audience_category(scope.role)
    if category is not None and config.get(category) is False:
        return False

    colleges = config.get("colleges") or []
    if colleges and scope.college_id not in colleges:
        return False

    departments = config.get("departments") or []
    if departments and scope.department_id not in departments:
        return False

    return True


def available_forms(scope) -> list[FormTemplate]:
    """Active forms visible to ``scope``, ordered by name."""
    forms = db.session.execute(
        select(FormTemplate)
        .where(FormTemplate.is_active.is_(True))
        .order_by(FormTemplate.name, FormTemplate.id)
    ).scalars().all()
    visible = [form for form in forms if is_form_visible(form, scope)]
    logger.debug("Audience filter: %d of %d active forms visible to user %s",
                 len(visible), len(forms), scope.user_id)
    return visible
