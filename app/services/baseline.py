"""Baseline extractor - the creation posture of an entity.

Version 1 of the version log is the ground truth for where an entity
started.  The ``original_*`` columns on tracked_entities are only a cache
of it; ``repair_baselines`` rewrites that cache and never touches the log.
"""
import logging

from sqlalchemy import select

from app.core.exceptions import NoBaselineError, NotFoundError
from app.models import db
from app.models.classification import ISSUE_PINNED_LIKELIHOOD, clamp_dimension
from app.models.tracking import EntityVersion, TrackedEntity

logger = logging.getLogger(__name__)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def baseline_from_snapshot(entity_cls: type[TrackedEntity], snapshot) -> tuple[int, int] | None:
    """Extract the clamped (likelihood, dimension B) pair from a snapshot.

    Returns None when the snapshot lacks usable values.
    """
    if not isinstance(snapshot, dict):
        return None
    b = snapshot.get(entity_cls.IMPACT_FIELD, snapshot.get("consequence"))
    if entity_cls.SINGLE_DIMENSION:
        a = ISSUE_PINNED_LIKELIHOOD
    else:
        a = snapshot.get("likelihood")
    if not (_is_number(a) and _is_number(b)):
        return None
    return clamp_dimension(a), clamp_dimension(b)


def _first_versions(entity_ids=None):
    stmt = (
        select(EntityVersion, TrackedEntity)
        .join(TrackedEntity, TrackedEntity.id == EntityVersion.entity_id)
        .where(EntityVersion.version == 1)
    )
    if entity_ids is not None:
        stmt = stmt.where(EntityVersion.entity_id.in_(list(entity_ids)))
    return db.session.execute(stmt.order_by(EntityVersion.entity_id)).all()


def original_of(entity_id: int) -> tuple[int, int]:
    """Return the creation (likelihood, dimension B) pair of an entity.

    Raises:
        NotFoundError: If the entity has no version 1.
        NoBaselineError: If version 1 lacks the dimension values.
    """
    rows = _first_versions([entity_id])
    if not rows:
        raise NotFoundError("EntityVersion", f"{entity_id}@v1")
    version, entity = rows[0]
    pair = baseline_from_snapshot(type(entity), version.snapshot)
    if pair is None:
        raise NoBaselineError(entity_id)
    return pair


def originals_for(entity_ids) -> dict[int, tuple[int, int]]:
    """Batch form of original_of for list views.

    Entities without a usable version 1 are left out of the result.
    """
    ids = list(entity_ids)
    if not ids:
        return {}
    result = {}
    for version, entity in _first_versions(ids):
        pair = baseline_from_snapshot(type(entity), version.snapshot)
        if pair is not None:
            result[entity.id] = pair
    return result


def repair_baselines(dry_run: bool = False) -> int:
    """Overwrite cached original_* columns from version 1.

    Counts only rows whose cache actually differed, so running it twice
    returns 0 the second time.  With ``dry_run`` nothing is written.
    """
    repaired = 0
    for version, entity in _first_versions():
        pair = baseline_from_snapshot(type(entity), version.snapshot)
        if pair is None:
            logger.warning("Entity id=%s has no usable baseline in version 1", entity.id)
            continue
        if (entity.original_likelihood, entity.original_consequence) == pair:
            continue
        repaired += 1
        if not dry_run:
            entity.original_likelihood, entity.original_consequence = pair
    if not dry_run:
        db.session.flush()
    logger.info("Baseline repair: %d entit(ies) %s", repaired, "to fix" if dry_run else "fixed")
    return repaired
