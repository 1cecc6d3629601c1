"""Audit recorder and scoped audit-log reads.

``record_audit`` is fire-and-forget: it writes inside a savepoint and any
failure is logged and swallowed so it can never undo or fail the business
operation that triggered it.
"""

import logging

from sqlalchemy import false, select

from campusflow.models import db
from campusflow.models.audit import AuditLog, write_audit
from campusflow.models.request import Request, RequestAction
from campusflow.services.helpers.scoped_queries import requester_scope_predicate

logger = logging.getLogger(__name__)


def record_audit(actor_id, action, entity_type, entity_id, details=None):
    """Append an audit row; returns it, or None when recording failed."""
    try:
        with db.session.begin_nested():
            return write_audit(
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                actor_id=actor_id,
                details=details,
            )
    except Exception:
        logger.exception(
            "Audit write failed: %s %s/%s", action, entity_type, entity_id,
            extra={"actor_id": actor_id, "event_type": "audit.failed"},
        )
        return None


def list_audit_log(scope, *, actor_id=None, entity_type=None, entity_id=None,
                   action=None, request_id=None, since=None, until=None, limit=100):
    """
    Merged, newest-first view of audit rows and request actions.

    Both sources are bounded by ``scope``: audit rows through the acting
    user's department, request actions through the requester's.
    """
    limit = max(1, min(int(limit or 100), 500))

    audit_stmt = select(AuditLog).where(requester_scope_predicate(scope, AuditLog.actor_id))
    action_stmt = (
        select(RequestAction)
        .join(Request, Request.id == RequestAction.request_id)
        .where(requester_scope_predicate(scope, Request.requester_id))
    )

    if actor_id is not None:
        audit_stmt = audit_stmt.where(AuditLog.actor_id == actor_id)
        action_stmt = action_stmt.where(RequestAction.actor_id == actor_id)
    if entity_type:
        audit_stmt = audit_stmt.where(AuditLog.entity_type == entity_type)
        if entity_type != "request":
            action_stmt = action_stmt.where(false())
    if entity_id is not None:
        audit_stmt = audit_stmt.where(AuditLog.entity_id == str(entity_id))
    if action:
        audit_stmt = audit_stmt.where(AuditLog.action.startswith(action))
        action_stmt = action_stmt.where(RequestAction.action.startswith(action.removeprefix("request.")))
    if request_id is not None:
        audit_stmt = audit_stmt.where(
            AuditLog.entity_type == "request", AuditLog.entity_id == str(request_id),
        )
        action_stmt = action_stmt.where(RequestAction.request_id == request_id)
    if since is not None:
        audit_stmt = audit_stmt.where(AuditLog.timestamp >= since)
        action_stmt = action_stmt.where(RequestAction.created_at >= since)
    if until is not None:
        audit_stmt = audit_stmt.where(AuditLog.timestamp <= until)
        action_stmt = action_stmt.where(RequestAction.created_at <= until)

    audit_rows = db.session.execute(
        audit_stmt.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(limit)
    ).scalars().all()
    action_rows = db.session.execute(
        action_stmt.order_by(RequestAction.created_at.desc(), RequestAction.id.desc()).limit(limit)
    ).scalars().all()

    entries = [
        {"source": "audit", "at": row.timestamp.isoformat() if row.timestamp else "", **row.to_dict()}
        for row in audit_rows
    ] + [
        {"source": "request_action", "at": row.created_at.isoformat() if row.created_at else "", **row.to_dict()}
        for row in action_rows
    ]
    entries.sort(key=lambda e: e["at"], reverse=True)
    return entries[:limit]
