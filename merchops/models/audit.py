"""
Append-only record of who changed a projection's lifecycle, and how.

Rows are written inside the same transaction as the change they describe
(``write_audit`` never flushes), so a rolled-back match or a lost optimistic
lock leaves no trail behind.
"""

import json
from datetime import UTC, datetime

from sqlalchemy import select

from merchops.models import db

AUDIT_ACTIONS = {
    "projection": {
        "projection.import",
        "projection.match",
        "projection.manual_match",
        "projection.unmatch",
        "projection.remove",
        "projection.order_type",
        "projection.expire",
    },
    "expired_projection": {
        "expired_projection.verify",
        "expired_projection.cancel",
        "expired_projection.restore",
    },
}


class AuditLog(db.Model):
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(36), nullable=False)
    action = db.Column(db.String(60), nullable=False)
    actor = db.Column(db.String(150), nullable=False, default="system")
    diff_json = db.Column(db.Text, default="{}", comment="{field: {old, new}} for the fields the action touched")
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))

    @property
    def diff(self) -> dict:
        return json.loads(self.diff_json) if self.diff_json else {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.action} {self.entity_type}:{self.entity_id} by {self.actor}>"


def write_audit(*, entity_type: str, entity_id, action: str, actor: str = "system",
                diff: dict | None = None, session=None) -> AuditLog:
    """Add one audit row to *session* (default ``db.session``) without flushing.

    Raises ``ValueError`` for an action that does not belong to *entity_type*.
    """
    if action not in AUDIT_ACTIONS.get(entity_type, ()):
        raise ValueError(f"Unknown audit action {action!r} for {entity_type!r}")
    entry = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        diff_json=json.dumps(diff or {}, default=str),
    )
    (session or db.session).add(entry)
    return entry


def audit_trail(entity_type: str, entity_id, *, session=None) -> list[AuditLog]:
    """All rows for one entity, oldest first."""
    stmt = (
        select(AuditLog)
        .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == str(entity_id))
        .order_by(AuditLog.id)
    )
    return list((session or db.session).execute(stmt).scalars())
