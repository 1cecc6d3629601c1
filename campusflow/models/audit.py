"""
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for administrative and
      lifecycle events.
"""

import json
from datetime import datetime, timezone

from campusflow.models import db

# ── Local coercion ───────────────────────────────────────────────────────────

def _as_int(value):
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class AuditLog(db.Model):
    """
    Immutable audit trail row.

    One row per action.  ``details_json`` carries the free-form payload
    (old→new snapshot, workflow step ids, etc.).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    actor_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="NULL for system entries",
    )

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="request | workflow | form_template | delegation | …",
    )
    entity_id = db.Column(
        db.String(64), nullable=True,
        comment="PK or display name of the referenced entity",
    )

    action = db.Column(
        db.String(60), nullable=False,
        comment="request.approve | delegation.create | create | …",
    )

    details_json = db.Column(db.Text, default="{}")
    ip_address = db.Column(db.String(45), nullable=True)

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    actor = db.relationship("User")

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def details(self) -> dict:
        """Deserialise *details_json* to a Python dict."""
        try:
            return json.loads(self.details_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor_id": self.actor_id,
            "actor_name": self.actor.full_name if self.actor else None,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "details": self.details,
            "ip_address": self.ip_address,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor_id: int | None = None,
    details: dict | None = None,
    ip_address: str | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    if ip_address is None:
        try:
            from flask import has_request_context, request
            if has_request_context():
                forwarded_for = request.headers.get("X-Forwarded-For", "")
                ip_address = forwarded_for.split(",")[0].strip() or request.remote_addr
        except RuntimeError:
            # Never block business flow on audit context enrichment.
            ip_address = None

    log = AuditLog(
        actor_id=_as_int(actor_id),
        entity_type=entity_type,
        entity_id=None if entity_id is None else str(entity_id),
        action=action,
        details_json=json.dumps(details or {}, default=str),
        ip_address=ip_address,
    )
    db.session.add(log)
    db.session.flush()
    return log
