"""
Risk / Issue / Opportunity Tracker
Audit domain model.

Models:
    - AuditLog: immutable, append-only field-level audit trail for tracked
      entities and their progress steps.
"""

import json
from datetime import UTC, datetime

from app.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_TARGET_TYPES = {
    "risk", "issue", "opportunity",
    "mitigation_step", "resolution_step", "action_plan_step",
}

AUDIT_ACTIONS = {"created", "updated", "deleted"}


class AuditLog(db.Model):
    """
    Immutable audit trail row.

    One row per mutation.  ``diff_json`` carries ``changed_fields`` and
    ``changes`` ({field: {from, to}}) for updates, plus verbatim
    justification texts and, for steps, the 1-based ``step_number``.
    Rows belong to the owning entity and disappear only with it.
    """

    __tablename__ = "tracking_audit_logs"
    __table_args__ = (
        db.Index("idx_tracking_audit_entity", "entity_id"),
        db.Index("idx_tracking_audit_target", "target_type", "target_id"),
        db.Index("idx_tracking_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_id = db.Column(
        db.Integer,
        db.ForeignKey("tracked_entities.id", ondelete="CASCADE"),
        nullable=False,
        comment="Owning tracked entity",
    )

    # Polymorphic target reference
    target_type = db.Column(
        db.String(30), nullable=False,
        comment="risk | issue | opportunity | mitigation_step | …",
    )
    target_id = db.Column(db.Integer, nullable=False)

    # What happened
    action = db.Column(db.String(20), nullable=False, comment="created | updated | deleted")
    actor = db.Column(db.String(150), nullable=False, default="system")

    # Change payload
    diff_json = db.Column(db.Text, default="{}")

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        ts = self.timestamp
        if ts is not None and ts.tzinfo is None:
            ts = ts.replace(tzinfo=UTC)
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "target_type": self.target_type,
            "target_id": self.target_id,
            "action": self.action,
            "actor": self.actor,
            "details": self.diff,
            "timestamp": ts.isoformat() if ts else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.target_type}/{self.target_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_id: int,
    target_type: str,
    target_id: int,
    action: str,
    actor: str | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    The actor defaults to the ``X-User`` request header when called inside
    a request, else ``"system"``.

    Returns the (flushed) AuditLog instance.
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")

    if actor is None:
        from flask import has_request_context, request
        actor = "system"
        if has_request_context():
            actor = request.headers.get("X-User") or "system"

    log = AuditLog(
        entity_id=entity_id,
        target_type=target_type,
        target_id=target_id,
        action=action,
        actor=actor,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
