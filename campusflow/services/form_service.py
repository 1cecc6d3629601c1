"""Form catalog: templates, field schemas, publication and submission checks.

A form is created as an inactive draft.  Publishing sets its audience,
binds it to a workflow through its ``RequestType`` (creating one when
missing) and activates it.
"""

import logging
import re
from datetime import date, datetime, timezone

from sqlalchemy import func, select

from campusflow.core.exceptions import NotFoundError, UnauthorizedError, ValidationError
from campusflow.models import db
from campusflow.models.request import Request
from campusflow.models.workflow import FIELD_TYPES, FormTemplate, RequestType, Workflow
from campusflow.services import workflow_service
from campusflow.services.audience import normalize_audience_config
from campusflow.services.audit_service import record_audit

logger = logging.getLogger(__name__)

WORKFLOW_MODES = ("existing", "new", "none")

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off", ""}


def _require_admin(scope):
    if not scope.unrestricted:
        raise UnauthorizedError("Only administrators manage the form catalog")


# ── Schema validation ────────────────────────────────────────────────────────


def validate_schema(schema) -> list[dict]:
    """Validate a declared field list and return it normalised.

    Each field: ``{name, label, type, required, options?}``.
    """
    if schema is None:
        return []
    if not isinstance(schema, list):
        raise ValidationError("schema must be a list of fields", details={"schema": "must be a list"})

    errors = {}
    seen = set()
    fields = []
    for idx, raw in enumerate(schema):
        prefix = f"schema[{idx}]"
        if not isinstance(raw, dict):
            errors[prefix] = "must be an object"
            continue
        name = str(raw.get("name") or "").strip()
        if not _FIELD_NAME.match(name):
            errors[f"{prefix}.name"] = "must be an identifier"
        elif name in seen:
            errors[f"{prefix}.name"] = f"duplicate field {name!r}"
        seen.add(name)

        field_type = raw.get("type", "text")
        if field_type not in FIELD_TYPES:
            errors[f"{prefix}.type"] = f"must be one of {sorted(FIELD_TYPES)}"

        field = {
            "name": name,
            "label": str(raw.get("label") or name),
            "type": field_type,
            "required": bool(raw.get("required", False)),
        }
        if field_type == "select":
            options = raw.get("options")
            if not isinstance(options, list) or not options:
                errors[f"{prefix}.options"] = "select fields need a non-empty options list"
            else:
                field["options"] = [str(o) for o in options]
        fields.append(field)

    if errors:
        raise ValidationError("Invalid form schema", details=errors)
    return fields


def _coerce(field, value):
    """Coerce one submitted value to its declared type; raises ValueError."""
    field_type = field["type"]
    if field_type in ("text", "textarea", "file"):
        if isinstance(value, (dict, list)):
            raise ValueError("must be a string")
        return str(value)
    if field_type == "number":
        if isinstance(value, bool):
            raise ValueError("must be a number")
        if isinstance(value, (int, float)):
            return value
        text = str(value).strip()
        try:
            return int(text)
        except ValueError:
            return float(text)
    if field_type == "date":
        if isinstance(value, (date, datetime)):
            return value.isoformat()[:10]
        return date.fromisoformat(str(value).strip()[:10]).isoformat()
    if field_type == "select":
        text = str(value)
        if text not in field.get("options", []):
            raise ValueError(f"must be one of {field.get('options', [])}")
        return text
    if field_type == "checkbox":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError("must be a boolean")
    raise ValueError(f"unsupported field type {field_type}")


def validate_submission(form: FormTemplate, data) -> dict:
    """Validate ``data`` against the form's declared fields.

    Unknown keys are rejected, required fields must be non-empty, and every
    value must coerce to its declared type.

    Returns:
        The cleaned payload.
    """
    if not isinstance(data, dict):
        raise ValidationError("Submission data must be an object", details={"data": "must be an object"})

    fields = {f["name"]: f for f in (form.schema or [])}
    errors = {}
    for key in sorted(set(data) - set(fields)):
        errors[key] = "unknown field"

    cleaned = {}
    for name, field in fields.items():
        value = data.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            if field.get("required"):
                errors[name] = "required"
            continue
        try:
            cleaned[name] = _coerce(field, value)
        except (TypeError, ValueError) as exc:
            errors[name] = str(exc) or "invalid value"

    if errors:
        raise ValidationError("Submission does not match the form", details=errors)
    return cleaned


# ── Reads ────────────────────────────────────────────────────────────────────


def get_form(form_id) -> FormTemplate:
    form = db.session.get(FormTemplate, form_id)
    if form is None:
        raise NotFoundError("FormTemplate", form_id)
    return form


def list_forms(page=1, per_page=20):
    total = db.session.execute(select(func.count(FormTemplate.id))).scalar_one()
    items = db.session.execute(
        select(FormTemplate)
        .order_by(FormTemplate.created_at.desc(), FormTemplate.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    ).scalars().all()
    return items, total


# ── Writes ───────────────────────────────────────────────────────────────────


def save_draft(actor, scope, data, form_id=None) -> FormTemplate:
    """Create a draft form, or update name / schema / type of an existing one."""
    _require_admin(scope)
    form = get_form(form_id) if form_id is not None else None

    name = data.get("name", form.name if form else None)
    name = (name or "").strip()
    if len(name) < 3:
        raise ValidationError("Form name must be at least 3 characters", details={"name": "too short"})

    if form is None or "schema" in data:
        schema = validate_schema(data.get("schema"))
    else:
        schema = form.schema

    request_type_id = data.get("request_type_id", form.request_type_id if form else None)
    request_type = db.session.get(RequestType, request_type_id) if request_type_id is not None else None
    if request_type_id is not None and request_type is None:
        raise NotFoundError("RequestType", request_type_id)
    if form is not None and request_type_id != form.request_type_id:
        workflow_service.ensure_rebind_allowed(
            request_type.workflow_id if request_type else None, form_id=form.id,
        )

    audience = None
    if "audience_config" in data:
        audience = normalize_audience_config(data.get("audience_config"))

    if form is None:
        form = FormTemplate(name=name, schema=schema, is_active=False,
                            request_type_id=request_type_id,
                            audience_config=audience,
                            document_template=data.get("document_template"))
        db.session.add(form)
        action = "create"
    else:
        form.name = name
        form.schema = schema
        form.request_type_id = request_type_id
        if audience is not None:
            form.audience_config = audience
        if "document_template" in data:
            form.document_template = data.get("document_template") or None
        action = "update"

    db.session.flush()
    record_audit(actor.id, action, "form_template", form.id, {"name": name, "fields": len(schema or [])})
    db.session.commit()
    return form


def publish_form(actor, scope, form_id, audience_config, workflow_options=None) -> FormTemplate:
    """Activate a form for an audience and bind its workflow.

    ``workflow_options``:
        {"mode": "existing", "workflow_id": 3}
        {"mode": "new", "workflow": {"name": ..., "steps": [...]}}
        {"mode": "none"}
        None leaves the current binding untouched.
    """
    _require_admin(scope)
    form = get_form(form_id)
    audience = normalize_audience_config(audience_config)

    workflow_id = None
    mode = None
    if workflow_options is not None:
        mode = workflow_options.get("mode")
        if mode not in WORKFLOW_MODES:
            raise ValidationError("Unknown workflow mode", details={"mode": f"one of {WORKFLOW_MODES}"})
        if mode == "existing":
            workflow_id = workflow_options.get("workflow_id")
            if workflow_id is None:
                raise ValidationError("workflow_id is required", details={"workflow_id": "required"})
            workflow_service.get_workflow(workflow_id)

        if form.request_type_id is not None:
            workflow_service.ensure_rebind_allowed(workflow_id, request_type_id=form.request_type_id)
        else:
            workflow_service.ensure_rebind_allowed(workflow_id, form_id=form.id)

        if mode == "new":
            requested = workflow_options.get("workflow") or {}
            wf_name = (requested.get("name") or "").strip()
            if not wf_name:
                raise ValidationError("Workflow name is required", details={"workflow.name": "required"})
            steps = workflow_service.validate_steps(requested.get("steps"), scope)
            workflow = Workflow(name=wf_name, is_active=True)
            db.session.add(workflow)
            db.session.flush()
            for step in steps:
                db.session.add(workflow_service.build_step(workflow.id, step))
            workflow_id = workflow.id

    request_type = form.request_type
    if request_type is None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        request_type = RequestType(key=f"form-{form.id}-{stamp}", label=form.name)
        db.session.add(request_type)
        db.session.flush()
        form.request_type_id = request_type.id

    if mode is not None:
        request_type.workflow_id = workflow_id

    form.audience_config = audience
    form.is_active = True
    db.session.flush()

    record_audit(actor.id, "form_template.publish", "form_template", form.id, {
        "audience": audience, "workflow_mode": mode, "workflow_id": request_type.workflow_id,
    })
    db.session.commit()
    logger.info("Form %s published (workflow=%s)", form.id, request_type.workflow_id,
                extra={"actor_id": actor.id, "event_type": "form.publish"})
    return form


def toggle_form(actor, scope, form_id, is_active) -> FormTemplate:
    _require_admin(scope)
    form = get_form(form_id)
    form.is_active = bool(is_active)
    db.session.flush()
    record_audit(actor.id, "form_template.toggle", "form_template", form.id, {"is_active": form.is_active})
    db.session.commit()
    return form


def delete_form(actor, scope, form_id) -> str:
    """Hard-delete a form without requests; otherwise deactivate it.

    Returns ``"deleted"`` or ``"deactivated"``.
    """
    _require_admin(scope)
    form = get_form(form_id)
    used = db.session.execute(
        select(func.count(Request.id)).where(Request.form_id == form.id)
    ).scalar_one()

    if used:
        form.is_active = False
        outcome = "deactivated"
    else:
        db.session.delete(form)
        outcome = "deleted"
    db.session.flush()
    record_audit(actor.id, "delete", "form_template", form_id, {"outcome": outcome, "requests": used})
    db.session.commit()
    return outcome
