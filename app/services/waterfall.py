"""Waterfall reconstructor - planned vs. actual rank trajectories.

Actual series:  one point per entity version plus one point per completed
                step carrying both actual values.
Planned series: one point per step with an estimated end (or start) date,
                valued at the step's expected posture.

Both series are sorted by date.  Points sharing a timestamp are all kept;
entity updates sort before step completions so a forward-filling chart
shows the step completion's value for that instant.
"""
import logging
from datetime import datetime, time

from sqlalchemy import select

from app.core.exceptions import NotFoundError
from app.models import db
from app.models.classification import ISSUE_PINNED_LIKELIHOOD, clamp_dimension
from app.models.tracking import TrackedEntity, as_utc, entity_class
from app.services import version_store

logger = logging.getLogger(__name__)

# Value assumed for a dimension absent from a legacy snapshot.
DEFAULT_DIMENSION = 3

# Tie-break order for points sharing a timestamp.
_SOURCE_ORDER = {"update": 0, "step": 1}


def _pair_from_snapshot(cls, snapshot: dict) -> tuple[int, int]:
    b = snapshot.get(cls.IMPACT_FIELD, snapshot.get("consequence"))
    a = ISSUE_PINNED_LIKELIHOOD if cls.SINGLE_DIMENSION else snapshot.get("likelihood")
    a = DEFAULT_DIMENSION if a is None else a
    b = DEFAULT_DIMENSION if b is None else b
    return clamp_dimension(a), clamp_dimension(b)


def _point(cls, when: datetime, likelihood: int, consequence: int, source: str, **extra) -> dict:
    result = cls.classify_pair(likelihood, consequence)
    point = {
        "date": as_utc(when).isoformat(),
        "rank": result.rank,
        "level": result.level,
        "likelihood": likelihood,
        cls.IMPACT_FIELD: consequence,
        "source": source,
    }
    point.update(extra)
    return point


def _planned_datetime(step) -> datetime | None:
    planned = step.planned_date
    if planned is None:
        return None
    return as_utc(datetime.combine(planned, time.min))


def actual_series(entity: TrackedEntity) -> list[dict]:
    cls = type(entity)
    keyed = []
    for version in version_store.list_entity_versions(entity.id):
        likelihood, consequence = _pair_from_snapshot(cls, version.snapshot or {})
        when = as_utc(version.created_at)
        point = _point(
            cls, when, likelihood, consequence, f"{entity.kind}_update",
            is_original=version.version == 1, version=version.version,
        )
        keyed.append(((when, _SOURCE_ORDER["update"], version.version), point))

    for step in entity.steps:
        if not step.is_completed:
            continue
        likelihood = clamp_dimension(step.actual_likelihood)
        consequence = clamp_dimension(step.actual_consequence)
        when = as_utc(step.actual_completed_at)
        point = _point(
            cls, when, likelihood, consequence, entity.STEP_TYPE,
            is_original=False, step_id=step.id, planned_action=step.planned_action,
        )
        keyed.append(((when, _SOURCE_ORDER["step"], step.sequence_order), point))

    keyed.sort(key=lambda item: item[0])
    return [point for _, point in keyed]


def planned_series(entity: TrackedEntity) -> list[dict]:
    cls = type(entity)
    keyed = []
    for step in entity.steps:
        when = _planned_datetime(step)
        if when is None:
            continue
        likelihood = clamp_dimension(step.expected_likelihood)
        consequence = clamp_dimension(step.expected_consequence)
        point = _point(
            cls, when, likelihood, consequence, entity.STEP_TYPE,
            step_id=step.id, planned_action=step.planned_action,
        )
        keyed.append(((when, step.sequence_order), point))
    keyed.sort(key=lambda item: item[0])
    return [point for _, point in keyed]


def build_waterfall(entity_id: int) -> dict:
    """Return {"planned": [...], "actual": [...]} for one entity."""
    entity = db.session.get(TrackedEntity, entity_id)
    if entity is None:
        raise NotFoundError("TrackedEntity", entity_id)
    return {"planned": planned_series(entity), "actual": actual_series(entity)}


def org_waterfall(kind: str, org_unit_id: str) -> list[dict]:
    """Every version event of every entity of ``kind`` in an org unit, by date."""
    cls = entity_class(kind)
    ids = list(db.session.execute(
        select(cls.id).where(cls.org_unit_id == org_unit_id)
    ).scalars())
    events = []
    for version in version_store.entity_versions_for(ids):
        likelihood, consequence = _pair_from_snapshot(cls, version.snapshot or {})
        when = as_utc(version.created_at)
        result = cls.classify_pair(likelihood, consequence)
        events.append({
            "date": when.isoformat(),
            "entity_id": version.entity_id,
            "rank": result.rank,
            "level": result.level,
            "version": version.version,
            "_key": (when, version.entity_id, version.version),
        })
    events.sort(key=lambda e: e["_key"])
    for event in events:
        del event["_key"]
    logger.debug("Org waterfall for %s/%s: %d event(s)", kind, org_unit_id, len(events))
    return events
