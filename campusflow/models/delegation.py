"""
Delegation model: time-bounded grantor → grantee authority records.

Records are never hard-deleted; deactivation flips ``is_active``.
"""

from datetime import datetime, timezone

from campusflow.models import db


class Delegation(db.Model):
    __tablename__ = "delegations"
    __table_args__ = (
        db.CheckConstraint("ends_at > starts_at", name="ck_delegation_window"),
        db.Index("ix_delegations_grantee_active", "grantee_id", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    grantor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    grantee_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    starts_at = db.Column(db.DateTime(timezone=True), nullable=False)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    grantor = db.relationship("User", foreign_keys=[grantor_id])
    grantee = db.relationship("User", foreign_keys=[grantee_id])

    def to_dict(self):
        return {
            "id": self.id,
            "grantor_id": self.grantor_id,
            "grantor_name": self.grantor.full_name if self.grantor else None,
            "grantee_id": self.grantee_id,
            "grantee_name": self.grantee.full_name if self.grantee else None,
            "starts_at": self.starts_at.isoformat() if self.starts_at else None,
            "ends_at": self.ends_at.isoformat() if self.ends_at else None,
            "is_active": self.is_active,
            "reason": self.reason,
        }

    def __repr__(self):
        return f"<Delegation {self.id}: {self.grantor_id} -> {self.grantee_id}>"
