"""Version store - append-only snapshot history for entities and steps.

Transaction policy: functions flush() inside a SAVEPOINT, never commit().
Caller (route handler) is responsible for db.session.commit().

Version numbers are assigned as max(version)+1 while the owner row is
locked with SELECT … FOR UPDATE; the (owner, version) unique constraint
rejects a writer that still collides, surfaced as ConcurrencyConflictError.
Creation timestamps are strictly increasing per owner.
"""
import logging
from datetime import datetime, timedelta

from sqlalchemy import exists, func, select
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConcurrencyConflictError, NotFoundError
from app.models import db
from app.models.tracking import (
    EntityVersion,
    ProgressStep,
    StepVersion,
    TrackedEntity,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

_TICK = timedelta(microseconds=1)

JUSTIFICATION_FIELDS = (
    "likelihood_change_reason",
    "consequence_change_reason",
    "status_change_rationale",
)


def _next_slot(version_model, owner_column, owner_id):
    """Return (next version number, creation timestamp) for an owner."""
    latest = db.session.execute(
        select(version_model.version, version_model.created_at)
        .where(owner_column == owner_id)
        .order_by(version_model.version.desc())
        .limit(1)
    ).first()
    now = utcnow()
    if latest is None:
        return 1, now
    previous = as_utc(latest.created_at)
    if previous is not None and now <= previous:
        now = previous + _TICK
    return latest.version + 1, now


def _append(version, resource, owner_column, owner_id):
    """Flush ``version`` in a savepoint.

    Only a clash on (owner, version) is a concurrency conflict; any other
    integrity failure propagates unchanged.
    """
    try:
        with db.session.begin_nested():
            db.session.add(version)
            db.session.flush()
    except IntegrityError as exc:
        version_model = type(version)
        taken = db.session.execute(
            select(exists().where(
                owner_column == owner_id, version_model.version == version.version,
            ))
        ).scalar()
        if owner_id is None or not taken:
            raise
        logger.warning(
            "Version collision on %s id=%s version=%s", resource, owner_id, version.version,
        )
        raise ConcurrencyConflictError(resource, owner_id, version.version) from exc
    return version


# ── Entity versions ──────────────────────────────────────────────────────


def append_entity_version(entity: TrackedEntity, justifications: dict | None = None) -> EntityVersion:
    """Snapshot the entity's current state as its next version.

    ``justifications`` may carry likelihood_change_reason,
    consequence_change_reason and status_change_rationale; other keys
    are ignored.

    Returns:
        EntityVersion instance (already flushed).
    """
    db.session.flush()
    db.session.execute(
        select(TrackedEntity.id).where(TrackedEntity.id == entity.id).with_for_update()
    )
    number, created_at = _next_slot(EntityVersion, EntityVersion.entity_id, entity.id)

    justifications = justifications or {}
    version = EntityVersion(
        entity_id=entity.id,
        version=number,
        snapshot=entity.snapshot(),
        created_at=created_at,
        **{k: justifications.get(k) or None for k in JUSTIFICATION_FIELDS},
    )
    _append(version, "EntityVersion", EntityVersion.entity_id, entity.id)
    logger.info("Entity version appended: entity_id=%s version=%s", entity.id, number)
    return version


def latest_entity_version(entity_id: int) -> EntityVersion | None:
    return db.session.execute(
        select(EntityVersion)
        .where(EntityVersion.entity_id == entity_id)
        .order_by(EntityVersion.version.desc())
        .limit(1)
    ).scalar_one_or_none()


def list_entity_versions(entity_id: int) -> list[EntityVersion]:
    """All versions of an entity, ascending by version number."""
    return list(db.session.execute(
        select(EntityVersion)
        .where(EntityVersion.entity_id == entity_id)
        .order_by(EntityVersion.version.asc())
    ).scalars())


def entity_version_at(entity_id: int, at: datetime) -> EntityVersion:
    """Return the version in effect at ``at`` (latest created at or before it).

    Raises:
        NotFoundError: If the entity had no version yet at that instant.
    """
    at = as_utc(at)
    found = None
    for version in list_entity_versions(entity_id):
        if as_utc(version.created_at) <= at:
            found = version
        else:
            break
    if found is None:
        raise NotFoundError("EntityVersion", f"{entity_id}@{at.isoformat()}")
    return found


def entity_versions_for(entity_ids) -> list[EntityVersion]:
    """Versions of many entities in one query, ordered by entity then version."""
    ids = list(entity_ids)
    if not ids:
        return []
    return list(db.session.execute(
        select(EntityVersion)
        .where(EntityVersion.entity_id.in_(ids))
        .order_by(EntityVersion.entity_id, EntityVersion.version)
    ).scalars())


# ── Step versions ────────────────────────────────────────────────────────


def append_step_version(step: ProgressStep) -> StepVersion:
    """Snapshot the step's current state as its next version."""
    db.session.flush()
    db.session.execute(
        select(ProgressStep.id).where(ProgressStep.id == step.id).with_for_update()
    )
    number, created_at = _next_slot(StepVersion, StepVersion.step_id, step.id)
    version = StepVersion(
        step_id=step.id,
        version=number,
        snapshot=step.snapshot(),
        created_at=created_at,
    )
    _append(version, "StepVersion", StepVersion.step_id, step.id)
    logger.info("Step version appended: step_id=%s version=%s", step.id, number)
    return version


def list_step_versions(step_id: int) -> list[StepVersion]:
    return list(db.session.execute(
        select(StepVersion)
        .where(StepVersion.step_id == step_id)
        .order_by(StepVersion.version.asc())
    ).scalars())


def step_versions_for_entity(entity_id: int) -> list[StepVersion]:
    """Every version of every (still existing) step of an entity."""
    return list(db.session.execute(
        select(StepVersion)
        .join(ProgressStep, ProgressStep.id == StepVersion.step_id)
        .where(ProgressStep.entity_id == entity_id)
        .order_by(StepVersion.created_at, StepVersion.id)
    ).scalars())


# ── Maintenance ──────────────────────────────────────────────────────────


def entities_without_versions() -> list[TrackedEntity]:
    has_version = exists().where(EntityVersion.entity_id == TrackedEntity.id)
    return list(db.session.execute(
        select(TrackedEntity).where(~has_version).order_by(TrackedEntity.id)
    ).scalars())


def backfill_missing_versions() -> int:
    """Create version 1 from current state for every entity without history.

    Idempotent: a second run finds nothing to do and returns 0.
    """
    created = 0
    for entity in entities_without_versions():
        append_entity_version(entity)
        created += 1
    logger.info("Backfilled initial versions for %d entit(ies)", created)
    return created


def count_versions(entity_id: int) -> int:
    return db.session.execute(
        select(func.count(EntityVersion.id)).where(EntityVersion.entity_id == entity_id)
    ).scalar_one()
