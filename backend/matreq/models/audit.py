from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from matreq.time_utils import to_utc_z
from matreq.services.errors import ImmutableRecordError


class AuditLog(db.Model):
    """
    Audit trail of state-changing core operations.

    One row per submit, approve, reject, issue, receipt, adjustment and
    threshold change, written inside the same DB transaction as the change
    it records. before/after carry small JSON snapshots.

    IMMUTABLE: Never update or delete. Append-only for audit integrity.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_resource", "resource_type", "resource_id"),
        db.Index("ix_audit_logs_occurred", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    action = db.Column(db.String(64), nullable=False, index=True)  # e.g., request.submitted, stock.adjusted
    resource_type = db.Column(db.String(32), nullable=False)  # request, stock_record
    resource_id = db.Column(db.Integer, nullable=False)

    before = db.Column(db.Text, nullable=True)
    after = db.Column(db.Text, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor_user_id": self.actor_user_id,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "before": self.before,
            "after": self.after,
            "occurred_at": to_utc_z(self.occurred_at),
        }


@event.listens_for(AuditLog, "before_update")
def prevent_audit_update(mapper, connection, target):
    raise ImmutableRecordError("AuditLog", target.id, "audit rows cannot be modified")


@event.listens_for(AuditLog, "before_delete")
def prevent_audit_delete(mapper, connection, target):
    raise ImmutableRecordError("AuditLog", target.id, "audit rows cannot be deleted")
