"""Tracking service layer - the write path for risks, issues, opportunities.

Transaction policy: methods use flush() for ID generation, never commit().
Caller (route handler) is responsible for db.session.commit(), so each
mutation (entity row + version row + audit row) is one unit of work.

Write path: validate → reject baseline writes → apply → append version →
append audit entry.

Operations:
- Entity CRUD with classification, mandatory change justifications, versioning
- History (time travel, optional merged step history), audit log, waterfall
- Realize risk → linked issue
- Progress step CRUD, completion, reordering; completed steps are locked
"""
import logging

from flask import current_app
from sqlalchemy import select

from app.core.exceptions import (
    ImmutableFieldError,
    NoBaselineError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.models.classification import ISSUE_PINNED_LIKELIHOOD, clamp_dimension
from app.models.tracking import (
    MITIGATION_STRATEGIES,
    ProgressStep,
    TrackedEntity,
    as_utc,
    entity_class,
    pinned_likelihood_for,
    utcnow,
)
from app.services import audit_recorder, baseline, version_store, waterfall
from app.utils.helpers import parse_date_input, parse_datetime

logger = logging.getLogger(__name__)

# Dimension value used when a create request omits one.
DEFAULT_DIMENSION = 3

_IGNORED_ON_UPDATE = {"id", "kind", "org_unit_id", "source_risk_id"}


# ── Validation helpers ───────────────────────────────────────────────────


def _setting(name: str, default=True):
    return current_app.config.get(name, default)


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _text(value):
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip()


def _reject_baseline_fields(data: dict):
    for key in data:
        if key.startswith("original_"):
            raise ImmutableFieldError(
                key,
                f"{key} is derived from the entity's first version and cannot be set. "
                "If it is wrong, delete the entity and create a new one.",
            )


def _require(data: dict, fields):
    for field in fields:
        if _is_blank(data.get(field)):
            raise ValidationError(f"{field} is required", details={field: "required"})


def _dimension(value, field: str) -> int:
    try:
        return clamp_dimension(value)
    except ValidationError as exc:
        raise ValidationError(f"{field} must be an integer between 1 and 5",
                              details={field: "invalid"}) from exc


def _require_text(data: dict, fields):
    for field in fields:
        value = data.get(field)
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{field} must be a string", details={field: "invalid"})


def _validate_descriptive(cls, data: dict):
    _require_text(data, [f for f in cls.DESCRIPTIVE_FIELDS if f != "source_risk_id"] + ["status"])
    if data.get("status") is not None and data["status"] not in cls.STATUSES:
        raise ValidationError(
            f"Invalid status '{data['status']}' for {cls.LABEL.lower()}",
            details={"status": f"one of {', '.join(cls.STATUSES)}"},
        )
    category = data.get("category")
    if cls.CATEGORIES is not None and category is not None and category not in cls.CATEGORIES:
        raise ValidationError(
            f"Invalid category '{category}'",
            details={"category": f"one of {', '.join(sorted(cls.CATEGORIES))}"},
        )
    strategy = data.get("mitigation_strategy")
    if "mitigation_strategy" in cls.DESCRIPTIVE_FIELDS and strategy is not None \
            and strategy not in MITIGATION_STRATEGIES:
        raise ValidationError(
            f"Invalid mitigation_strategy '{strategy}'",
            details={"mitigation_strategy": f"one of {', '.join(sorted(MITIGATION_STRATEGIES))}"},
        )


def _require_reason(data: dict, field: str) -> str | None:
    reason = _text(data.get(field))
    if reason is None and _setting("TRACKING_REQUIRE_CHANGE_REASONS"):
        raise ValidationError(f"{field} is required when this value changes",
                              details={field: "required"})
    return reason


def _get_entity(entity_id: int, kind: str | None = None) -> TrackedEntity:
    entity = db.session.get(TrackedEntity, entity_id)
    if entity is None or (kind is not None and entity.kind != kind):
        label = entity_class(kind).LABEL if kind else "TrackedEntity"
        raise NotFoundError(label, entity_id)
    return entity


# ── Entity CRUD ──────────────────────────────────────────────────────────


def create_entity(kind: str, data: dict) -> TrackedEntity:
    """Create an entity and its version 1 (the creation baseline).

    Returns:
        TrackedEntity subclass instance (already flushed).
    """
    cls = entity_class(kind)
    _reject_baseline_fields(data)
    _require(data, cls.REQUIRED_FIELDS)
    _validate_descriptive(cls, data)

    likelihood = pinned_likelihood_for(
        cls, _dimension(data.get("likelihood", DEFAULT_DIMENSION), "likelihood"),
    )
    consequence = _dimension(data.get(cls.IMPACT_FIELD, DEFAULT_DIMENSION), cls.IMPACT_FIELD)
    status = data.get("status") or cls.DEFAULT_STATUS

    rationale = None
    if status in cls.RATIONALE_STATUSES:
        rationale = _require_reason(data, "status_change_rationale")

    source_risk_id = data.get("source_risk_id") if cls.SINGLE_DIMENSION else None
    if source_risk_id is not None:
        source = db.session.get(TrackedEntity, source_risk_id)
        if source is None or source.kind != "risk":
            raise ValidationError("source_risk_id must reference an existing risk",
                                  details={"source_risk_id": "invalid"})

    entity = cls(
        org_unit_id=str(data["org_unit_id"]),
        name=str(data["name"]).strip(),
        condition=data.get("condition"),
        if_text=data.get("if_text"),
        then_text=data.get("then_text"),
        description=data.get("description"),
        category=data.get("category"),
        owner=data.get("owner"),
        status=status,
        likelihood=likelihood,
        consequence=consequence,
        original_likelihood=likelihood,
        original_consequence=consequence,
        mitigation_strategy=data.get("mitigation_strategy") if kind == "risk" else None,
        mitigation_plan=data.get("mitigation_plan") if kind == "risk" else None,
        source_risk_id=source_risk_id,
    )
    entity.recalculate_level()
    db.session.add(entity)
    db.session.flush()

    version_store.append_entity_version(entity, {"status_change_rationale": rationale})
    audit_recorder.record_create(entity.id, entity.kind, entity.id)
    logger.info("%s created: entity_id=%s rank=%s", cls.LABEL, entity.id, entity.rank)
    return entity


def update_entity(entity_id: int, data: dict, kind: str | None = None) -> TrackedEntity:
    """Apply a partial update, enforcing change justifications.

    ``likelihood_change_reason`` is required when likelihood changes,
    ``<dimension B>_change_reason`` when dimension B changes and
    ``status_change_rationale`` when status moves into a justified status.
    """
    entity = _get_entity(entity_id, kind)
    cls = type(entity)
    _reject_baseline_fields(data)
    _validate_descriptive(cls, data)
    for field in cls.REQUIRED_FIELDS:
        if field in data and field not in _IGNORED_ON_UPDATE and _is_blank(data[field]):
            raise ValidationError(f"{field} cannot be empty", details={field: "required"})

    before = {f: entity.get_field(f) for f in cls.audited_fields()}
    justifications = {}

    new_likelihood = entity.likelihood
    if "likelihood" in data and not cls.SINGLE_DIMENSION:
        new_likelihood = _dimension(data["likelihood"], "likelihood")
    new_consequence = entity.consequence
    if cls.IMPACT_FIELD in data:
        new_consequence = _dimension(data[cls.IMPACT_FIELD], cls.IMPACT_FIELD)

    if new_likelihood != entity.likelihood:
        justifications["likelihood_change_reason"] = _require_reason(data, "likelihood_change_reason")
    b_reason_field = cls.change_reason_field(cls.IMPACT_FIELD)
    if new_consequence != entity.consequence:
        justifications[b_reason_field] = _require_reason(data, b_reason_field)

    new_status = data.get("status") or entity.status
    if new_status != entity.status and new_status in cls.RATIONALE_STATUSES:
        justifications["status_change_rationale"] = _require_reason(data, "status_change_rationale")

    for field in cls.DESCRIPTIVE_FIELDS:
        if field in data and field not in _IGNORED_ON_UPDATE:
            value = data[field]
            setattr(entity, field, value.strip() if field == "name" else value)
    entity.likelihood = new_likelihood
    entity.consequence = new_consequence
    entity.status = new_status
    entity.recalculate_level()
    db.session.flush()

    version_store.append_entity_version(entity, {
        "likelihood_change_reason": justifications.get("likelihood_change_reason"),
        "consequence_change_reason": justifications.get(b_reason_field),
        "status_change_rationale": justifications.get("status_change_rationale"),
    })
    after = {f: entity.get_field(f) for f in cls.audited_fields()}
    audit_recorder.record_update(
        entity.id, entity.kind, entity.id, before, after, cls.audited_fields(),
        justifications=justifications,
    )
    logger.info("%s updated: entity_id=%s rank=%s", cls.LABEL, entity.id, entity.rank)
    return entity


def delete_entity(entity_id: int, kind: str | None = None):
    """Record the deletion, then remove the entity (logs cascade with it)."""
    entity = _get_entity(entity_id, kind)
    audit_recorder.record_delete(entity.id, entity.kind, entity.id)
    db.session.delete(entity)
    db.session.flush()
    logger.info("%s deleted: entity_id=%s", entity.LABEL, entity_id)


def get_entity(entity_id: int, kind: str | None = None) -> TrackedEntity:
    return _get_entity(entity_id, kind)


def latest_status_rationale(entity: TrackedEntity) -> str | None:
    """Rationale recorded when the entity entered its current justified status."""
    if entity.status not in entity.RATIONALE_STATUSES:
        return None
    for version in reversed(version_store.list_entity_versions(entity.id)):
        if version.status_change_rationale:
            return version.status_change_rationale
    return None


def entity_detail(entity: TrackedEntity) -> dict:
    """Entity with steps, baseline read from version 1 and status rationale."""
    data = entity.to_dict(include_steps=True)
    try:
        original = baseline.original_of(entity.id)
    except (NotFoundError, NoBaselineError):
        original = None
    if original is not None:
        data["original_likelihood"], data[f"original_{entity.IMPACT_FIELD}"] = original
    if entity.status in entity.RATIONALE_STATUSES:
        data["status_change_rationale"] = latest_status_rationale(entity)
    return data


def list_entities(kind: str, org_unit_id: str | None = None) -> list[dict]:
    """Entities of a kind (optionally one org unit), most recently updated first."""
    cls = entity_class(kind)
    stmt = select(cls)
    if org_unit_id is not None:
        stmt = stmt.where(cls.org_unit_id == str(org_unit_id))
    entities = list(db.session.execute(
        stmt.order_by(cls.updated_at.desc(), cls.id.desc())
    ).scalars())
    originals = baseline.originals_for(e.id for e in entities)
    result = []
    for entity in entities:
        data = entity.to_dict()
        if entity.id in originals:
            data["original_likelihood"], data[f"original_{cls.IMPACT_FIELD}"] = originals[entity.id]
        result.append(data)
    return result


# ── History, audit, waterfall ────────────────────────────────────────────


def get_history(entity_id: int, at=None, include_steps: bool = False, kind: str | None = None):
    """Version history of an entity.

    With ``at`` the single version in effect at that instant is returned
    (NotFoundError if none).  With ``include_steps`` step versions are
    merged into the list chronologically.
    """
    entity = _get_entity(entity_id, kind)
    if at is not None:
        version = version_store.entity_version_at(entity.id, parse_datetime(at, "at"))
        return version.to_dict(entity.IMPACT_FIELD)

    entries = []
    for version in version_store.list_entity_versions(entity.id):
        item = version.to_dict(entity.IMPACT_FIELD)
        item["target_type"] = entity.kind
        entries.append((as_utc(version.created_at), 0, item))
    if include_steps:
        numbers = {s.id: s.step_number for s in entity.steps}
        for version in version_store.step_versions_for_entity(entity.id):
            item = version.to_dict()
            item["target_type"] = entity.STEP_TYPE
            item["step_number"] = numbers.get(version.step_id)
            entries.append((as_utc(version.created_at), 1, item))
    entries.sort(key=lambda e: (e[0], e[1]))
    return [item for _, _, item in entries]


def get_audit_log(entity_id: int, kind: str | None = None) -> list[dict]:
    entity = _get_entity(entity_id, kind)
    return [entry.to_dict() for entry in audit_recorder.list_audit_entries(entity.id)]


def get_waterfall(entity_id: int, kind: str | None = None) -> dict:
    entity = _get_entity(entity_id, kind)
    return waterfall.build_waterfall(entity.id)


# ── Realized risks ───────────────────────────────────────────────────────


def realize_risk(risk_id: int, data: dict):
    """Move a risk to ``realized`` and open the issue it became.

    Returns:
        (risk, issue) tuple, both flushed.
    """
    risk = _get_entity(risk_id, "risk")
    if risk.status == "realized":
        raise ValidationError(f"Risk id={risk_id} is already realized",
                              details={"status": "realized"})
    update_entity(risk.id, {
        "status": "realized",
        "status_change_rationale": data.get("status_change_rationale"),
    })
    issue = create_entity("issue", {
        "org_unit_id": risk.org_unit_id,
        "name": data.get("name") or risk.name,
        "description": data.get("description") or risk.then_text,
        "category": data.get("category"),
        "owner": data.get("owner", risk.owner),
        "consequence": risk.consequence,
        "source_risk_id": risk.id,
    })
    logger.info("Risk realized: risk_id=%s issue_id=%s", risk.id, issue.id)
    return risk, issue


# ── Progress steps ───────────────────────────────────────────────────────


def _get_step(entity: TrackedEntity, step_id: int) -> ProgressStep:
    step = db.session.get(ProgressStep, step_id)
    if step is None or step.entity_id != entity.id:
        raise NotFoundError(entity.STEP_TYPE, step_id)
    return step


def _renumber(steps):
    for index, step in enumerate(steps):
        step.sequence_order = index


def _parse_step_values(cls, data: dict) -> dict:
    """Translate public step fields into column values (only keys present)."""
    impact = cls.IMPACT_FIELD
    values = {}
    _require_text(data, ("planned_action", "closure_criteria"))
    for field in ("planned_action", "closure_criteria"):
        if field in data:
            values[field] = data[field]
    for field in ("estimated_start_date", "estimated_end_date"):
        if field in data:
            values[field] = parse_date_input(data[field], field)
    for prefix in ("expected", "actual"):
        if f"{prefix}_likelihood" in data and not cls.SINGLE_DIMENSION:
            raw = data[f"{prefix}_likelihood"]
            values[f"{prefix}_likelihood"] = (
                None if raw is None and prefix == "actual"
                else _dimension(raw, f"{prefix}_likelihood")
            )
        if f"{prefix}_{impact}" in data:
            raw = data[f"{prefix}_{impact}"]
            values[f"{prefix}_consequence"] = (
                None if raw is None and prefix == "actual"
                else _dimension(raw, f"{prefix}_{impact}")
            )
    if "actual_completed_at" in data:
        values["actual_completed_at"] = parse_datetime(data["actual_completed_at"], "actual_completed_at")
    if cls.SINGLE_DIMENSION:
        values["expected_likelihood"] = ISSUE_PINNED_LIKELIHOOD
        if "actual_consequence" in values:
            values["actual_likelihood"] = (
                None if values["actual_consequence"] is None else ISSUE_PINNED_LIKELIHOOD
            )
    return values


def _check_actuals(step: ProgressStep, impact: str):
    triple = (step.actual_likelihood, step.actual_consequence, step.actual_completed_at)
    if any(v is None for v in triple) and any(v is not None for v in triple):
        raise ValidationError(
            f"actual_likelihood, actual_{impact} and actual_completed_at must be set together",
            details={"actual_completed_at": "must be set together with the actual values"},
        )


def _step_audit_fields(impact: str) -> tuple:
    return (
        "planned_action", "closure_criteria", "estimated_start_date",
        "estimated_end_date", "expected_likelihood", f"expected_{impact}",
        "actual_likelihood", f"actual_{impact}", "actual_completed_at",
    )


def list_steps(entity_id: int, kind: str | None = None) -> list[ProgressStep]:
    return list(_get_entity(entity_id, kind).steps)


def create_step(entity_id: int, data: dict, kind: str | None = None) -> ProgressStep:
    """Add a step, appended last unless ``sequence_order`` asks for a position."""
    entity = _get_entity(entity_id, kind)
    cls = type(entity)
    impact = cls.IMPACT_FIELD
    _require(data, cls.STEP_REQUIRED_FIELDS)
    expected = (f"expected_{impact}",) if cls.SINGLE_DIMENSION \
        else ("expected_likelihood", f"expected_{impact}")
    _require(data, expected)

    existing = list(entity.steps)
    position = len(existing)
    if data.get("sequence_order") is not None:
        try:
            position = max(0, min(int(data["sequence_order"]), len(existing)))
        except (TypeError, ValueError) as exc:
            raise ValidationError("sequence_order must be an integer",
                                  details={"sequence_order": "invalid"}) from exc

    step = ProgressStep(entity=entity, **_parse_step_values(cls, data))
    _check_actuals(step, impact)
    db.session.add(step)
    existing.insert(position, step)
    _renumber(existing)
    step.recalculate_ranks(cls)
    db.session.flush()
    db.session.expire(entity, ["steps"])

    version_store.append_step_version(step)
    audit_recorder.record_create(entity.id, cls.STEP_TYPE, step.id, step_number=step.step_number)
    logger.info("Step created: entity_id=%s step_id=%s order=%s", entity.id, step.id, step.sequence_order)
    return step


def update_step(entity_id: int, step_id: int, data: dict, kind: str | None = None) -> ProgressStep:
    """Edit a step.  Planned fields of a completed step are locked."""
    entity = _get_entity(entity_id, kind)
    cls = type(entity)
    impact = cls.IMPACT_FIELD
    step = _get_step(entity, step_id)
    values = _parse_step_values(cls, data)

    if step.is_completed and _setting("TRACKING_LOCK_COMPLETED_STEPS"):
        for field in ProgressStep.PLANNED_FIELDS:
            if field in values and values[field] != getattr(step, field):
                public = field.replace("consequence", impact)
                raise ImmutableFieldError(
                    public, f"{public} cannot be changed once step {step.step_number} is completed",
                )
    for field in cls.STEP_REQUIRED_FIELDS:
        if field in values and _is_blank(values[field]):
            raise ValidationError(f"{field} cannot be empty", details={field: "required"})

    before = step.public_fields(impact)
    for field, value in values.items():
        setattr(step, field, value)
    _check_actuals(step, impact)
    step.recalculate_ranks(cls)
    db.session.flush()

    version_store.append_step_version(step)
    audit_recorder.record_update(
        entity.id, cls.STEP_TYPE, step.id, before, step.public_fields(impact),
        _step_audit_fields(impact), step_number=step.step_number,
    )
    logger.info("Step updated: entity_id=%s step_id=%s", entity.id, step.id)
    return step


def complete_step(entity_id: int, step_id: int, data: dict, kind: str | None = None) -> ProgressStep:
    """Record the actual posture reached by a step.

    The completion time defaults to now.
    """
    entity = _get_entity(entity_id, kind)
    cls = type(entity)
    impact = cls.IMPACT_FIELD
    required = (f"actual_{impact}",) if cls.SINGLE_DIMENSION \
        else ("actual_likelihood", f"actual_{impact}")
    _require(data, required)
    payload = {field: data[field] for field in required}
    payload["actual_completed_at"] = data.get("actual_completed_at") or utcnow()
    return update_step(entity.id, step_id, payload)


def delete_step(entity_id: int, step_id: int, kind: str | None = None):
    entity = _get_entity(entity_id, kind)
    step = _get_step(entity, step_id)
    if step.is_completed and _setting("TRACKING_LOCK_COMPLETED_STEPS"):
        raise ImmutableFieldError(
            "actual_completed_at", f"Step {step.step_number} is completed and cannot be deleted",
        )
    audit_recorder.record_delete(entity.id, entity.STEP_TYPE, step.id, step_number=step.step_number)
    remaining = [s for s in entity.steps if s.id != step.id]
    db.session.delete(step)
    _renumber(remaining)
    db.session.flush()
    db.session.expire(entity, ["steps"])
    logger.info("Step deleted: entity_id=%s step_id=%s", entity.id, step_id)


def reorder_steps(entity_id: int, step_ids, kind: str | None = None) -> list[ProgressStep]:
    """Reassign sequence 0..n-1 following ``step_ids``.

    ``step_ids`` must be a permutation of the entity's step ids.
    """
    entity = _get_entity(entity_id, kind)
    steps = list(entity.steps)
    before_ids = [s.id for s in steps]
    try:
        after_ids = [int(s) for s in (step_ids or [])]
    except (TypeError, ValueError) as exc:
        raise ValidationError("step_ids must be a list of step ids",
                              details={"step_ids": "invalid"}) from exc
    if not after_ids or sorted(after_ids) != sorted(before_ids):
        raise ValidationError(
            "step_ids must list every step of the entity exactly once",
            details={"step_ids": "not a permutation of the entity's steps"},
        )

    by_id = {s.id: s for s in steps}
    _renumber([by_id[i] for i in after_ids])
    db.session.flush()
    db.session.expire(entity, ["steps"])

    audit_recorder.record_reorder(entity, before_ids, after_ids)
    logger.info("Steps reordered: entity_id=%s order=%s", entity.id, after_ids)
    return list(entity.steps)


# ── Maintenance ──────────────────────────────────────────────────────────


def repair_baselines(dry_run: bool = False) -> int:
    return baseline.repair_baselines(dry_run=dry_run)


def backfill_missing_versions() -> int:
    return version_store.backfill_missing_versions()
