"""Audit recorder - field-level audit entries for entities and steps.

Transaction policy: writes flush(), never commit().

Update entries diff a fixed allow-list of fields; derived level/rank are
never diffed.  Dates and datetimes are compared in ISO form.  Mandatory
justification texts are stored verbatim next to the diff.
"""
import logging
from datetime import date, datetime

from sqlalchemy import select

from app.models import db
from app.models.audit import AuditLog, write_audit
from app.models.tracking import as_utc

logger = logging.getLogger(__name__)


def normalize_value(value):
    """Comparable, JSON-safe form of a field value."""
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def diff_fields(before: dict, after: dict, fields) -> dict:
    """Return {field: {"from", "to"}} for allow-listed fields that changed."""
    changes = {}
    for field in fields:
        old = normalize_value(before.get(field))
        new = normalize_value(after.get(field))
        if old != new:
            changes[field] = {"from": old, "to": new}
    return changes


def _details(step_number=None, **extra) -> dict:
    details = {k: v for k, v in extra.items() if v is not None}
    if step_number is not None:
        details["step_number"] = step_number
    return details


def record_create(entity_id: int, target_type: str, target_id: int,
                  step_number: int | None = None, actor: str | None = None) -> AuditLog:
    return write_audit(
        entity_id=entity_id, target_type=target_type, target_id=target_id,
        action="created", actor=actor, diff=_details(step_number),
    )


def record_update(entity_id: int, target_type: str, target_id: int,
                  before: dict, after: dict, fields,
                  justifications: dict | None = None,
                  step_number: int | None = None,
                  actor: str | None = None) -> AuditLog:
    """Append an "updated" entry with the diff of ``fields``.

    An entry is written even when nothing in the allow-list changed, so
    every accepted write leaves a trace.
    """
    changes = diff_fields(before, after, fields)
    details = _details(step_number, changed_fields=list(changes), changes=changes)
    for key, text in (justifications or {}).items():
        if text:
            details[key] = text
    logger.debug("Audit update on %s id=%s: %s", target_type, target_id, list(changes))
    return write_audit(
        entity_id=entity_id, target_type=target_type, target_id=target_id,
        action="updated", actor=actor, diff=details,
    )


def record_delete(entity_id: int, target_type: str, target_id: int,
                  step_number: int | None = None, actor: str | None = None) -> AuditLog:
    return write_audit(
        entity_id=entity_id, target_type=target_type, target_id=target_id,
        action="deleted", actor=actor, diff=_details(step_number),
    )


def record_reorder(entity, before_ids: list[int], after_ids: list[int],
                   actor: str | None = None) -> AuditLog:
    """One synthetic entry on the entity describing the new step order.

    Steps are named by their 1-based position before the reorder, so
    swapping the first two of three reads "1, 2, 3" → "2, 1, 3".
    """
    position = {step_id: index + 1 for index, step_id in enumerate(before_ids)}
    field = f"{entity.step_collection}_reordered"
    change = {
        "from": ", ".join(str(position[s]) for s in before_ids),
        "to": ", ".join(str(position[s]) for s in after_ids),
    }
    return write_audit(
        entity_id=entity.id, target_type=entity.kind, target_id=entity.id,
        action="updated", actor=actor,
        diff={"changed_fields": [field], "changes": {field: change}},
    )


def list_audit_entries(entity_id: int) -> list[AuditLog]:
    """All entries owned by an entity, most recent first."""
    return list(db.session.execute(
        select(AuditLog)
        .where(AuditLog.entity_id == entity_id)
        .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
    ).scalars())
