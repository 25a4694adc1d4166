"""
Risk / Issue / Opportunity Tracker
Tracking domain models.

Models:
    - TrackedEntity: single-table base for every tracked kind
        - Risk: likelihood × consequence, mitigation steps
        - Opportunity: likelihood × impact, action plan steps
        - Issue: consequence only (likelihood pinned), resolution steps
    - EntityVersion: append-only full-state snapshots per entity
    - ProgressStep: planned action with expected and actual posture
    - StepVersion: append-only snapshots per step

Architecture chain: OrgUnit → TrackedEntity → ProgressStep
                                      ├── EntityVersion
                                      └── AuditLog (app.models.audit)

Kinds differ only by class-level configuration (statuses, dimension naming,
classifier, required fields); every service works on the base class.
"""

from datetime import datetime, timezone

from sqlalchemy.orm import synonym

from app.models import db
from app.models.classification import (
    ISSUE_PINNED_LIKELIHOOD,
    Classification,
    classify,
    classify_issue,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value):
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return value.isoformat()


# ── Constants ────────────────────────────────────────────────────────────────

ENTITY_KINDS = ("risk", "issue", "opportunity")

RISK_STATUSES = ("open", "mitigating", "accepted", "closed", "realized")
RISK_RATIONALE_STATUSES = frozenset({"accepted", "closed", "realized"})
RISK_CATEGORIES = frozenset({"technical", "schedule", "cost", "other"})
MITIGATION_STRATEGIES = frozenset({"acceptance", "avoidance", "transfer", "control", "burn_down"})

OPPORTUNITY_STATUSES = ("pursue_now", "defer", "reevaluate", "reject")
OPPORTUNITY_RATIONALE_STATUSES = frozenset({"defer", "reevaluate", "reject"})

ISSUE_STATUSES = ("control", "ignore")


# ═══════════════════════════════════════════════════════════════════════════
#  TRACKED ENTITY
# ═══════════════════════════════════════════════════════════════════════════

class TrackedEntity(db.Model):
    """
    A Risk, Issue or Opportunity tracked for an organizational unit.

    ``likelihood`` and ``consequence`` are the current ordinal pair; ``level``
    and ``rank`` are cached derivations kept consistent by
    ``recalculate_level()``. ``original_*`` columns cache the creation
    baseline, whose ground truth is version 1 of the entity's history.
    """

    __tablename__ = "tracked_entities"
    __table_args__ = (
        db.CheckConstraint("likelihood BETWEEN 1 AND 5", name="ck_tracked_likelihood_range"),
        db.CheckConstraint("consequence BETWEEN 1 AND 5", name="ck_tracked_consequence_range"),
        db.Index("ix_tracked_entities_kind_org", "kind", "org_unit_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(20), nullable=False, index=True)
    org_unit_id = db.Column(db.String(64), nullable=False, index=True,
                            comment="Owning organizational unit (managed outside this service)")

    # Descriptive
    name = db.Column(db.String(300), nullable=False)
    condition = db.Column(db.Text, nullable=True, comment="Statement: condition")
    if_text = db.Column(db.Text, nullable=True, comment="Statement: if …")
    then_text = db.Column(db.Text, nullable=True, comment="Statement: then …")
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(50), nullable=True)
    owner = db.Column(db.String(150), nullable=True)
    status = db.Column(db.String(30), nullable=False, index=True)

    # Current posture
    likelihood = db.Column(db.Integer, nullable=False, comment="1-5 scale")
    consequence = db.Column(db.Integer, nullable=False, comment="1-5 scale (impact for opportunities)")
    level = db.Column(db.String(10), nullable=False, comment="low/moderate/high (derived)")
    rank = db.Column(db.Integer, nullable=False, index=True, comment="1-25 matrix rank (derived)")

    # Baseline cache - derived from version 1, never client-writable
    original_likelihood = db.Column(db.Integer, nullable=True)
    original_consequence = db.Column(db.Integer, nullable=True)

    # Risk-specific
    mitigation_strategy = db.Column(db.String(20), nullable=True)
    mitigation_plan = db.Column(db.Text, nullable=True)

    # Issue-specific
    source_risk_id = db.Column(
        db.Integer,
        db.ForeignKey("tracked_entities.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Risk this issue was opened from when the risk was realized",
    )

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    versions = db.relationship(
        "EntityVersion", back_populates="entity",
        order_by="EntityVersion.version",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    steps = db.relationship(
        "ProgressStep", back_populates="entity",
        order_by="ProgressStep.sequence_order",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    __mapper_args__ = {"polymorphic_on": kind}

    # ── Per-kind configuration (overridden by subclasses) ────────────────
    LABEL = "Entity"
    STATUSES = ()
    DEFAULT_STATUS = ""
    RATIONALE_STATUSES = frozenset()
    CATEGORIES = None
    IMPACT_FIELD = "consequence"
    SINGLE_DIMENSION = False
    STEP_TYPE = "step"
    REQUIRED_FIELDS = ("org_unit_id", "name")
    DESCRIPTIVE_FIELDS = ("name", "description", "category", "owner")
    STEP_REQUIRED_FIELDS = ("planned_action",)

    @classmethod
    def classify_pair(cls, likelihood, consequence) -> Classification:
        return classify(likelihood, consequence)

    @classmethod
    def audited_fields(cls) -> tuple:
        """Snapshot / audit allow-list, using this kind's public field names."""
        return cls.DESCRIPTIVE_FIELDS + ("likelihood", cls.IMPACT_FIELD, "status")

    @classmethod
    def dimension_fields(cls) -> tuple:
        if cls.SINGLE_DIMENSION:
            return (cls.IMPACT_FIELD,)
        return ("likelihood", cls.IMPACT_FIELD)

    @classmethod
    def change_reason_field(cls, dimension: str) -> str:
        return f"{dimension}_change_reason"

    @classmethod
    def baseline_fields(cls) -> tuple:
        return ("original_likelihood", f"original_{cls.IMPACT_FIELD}")

    @property
    def step_collection(self) -> str:
        return f"{self.STEP_TYPE}s"

    def recalculate_level(self):
        """Recalculate level and rank from likelihood & consequence."""
        result = self.classify_pair(self.likelihood, self.consequence)
        self.level = result.level
        self.rank = result.rank

    def get_field(self, name: str):
        if name == self.IMPACT_FIELD:
            return self.consequence
        return getattr(self, name)

    def snapshot(self) -> dict:
        """Full-state snapshot stored in the version log."""
        snap = {field: self.get_field(field) for field in self.audited_fields()}
        snap.setdefault("likelihood", self.likelihood)
        snap["level"] = self.level
        return snap

    def to_dict(self, include_steps: bool = False) -> dict:
        data = {
            "id": self.id,
            "kind": self.kind,
            "org_unit_id": self.org_unit_id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "owner": self.owner,
            "status": self.status,
            "likelihood": self.likelihood,
            self.IMPACT_FIELD: self.consequence,
            "level": self.level,
            "rank": self.rank,
            "original_likelihood": self.original_likelihood,
            f"original_{self.IMPACT_FIELD}": self.original_consequence,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        for field in self.DESCRIPTIVE_FIELDS:
            data.setdefault(field, getattr(self, field))
        if include_steps:
            data[self.step_collection] = [s.to_dict() for s in self.steps]
        return data

    def __repr__(self):
        return f"<{self.LABEL} {self.id}: {(self.name or '')[:40]}>"


class Risk(TrackedEntity):
    """A risk: if <condition> then <consequence>, scored likelihood × consequence."""

    __mapper_args__ = {"polymorphic_identity": "risk"}

    LABEL = "Risk"
    STATUSES = RISK_STATUSES
    DEFAULT_STATUS = "open"
    RATIONALE_STATUSES = RISK_RATIONALE_STATUSES
    CATEGORIES = RISK_CATEGORIES
    STEP_TYPE = "mitigation_step"
    REQUIRED_FIELDS = ("org_unit_id", "name", "condition", "if_text", "then_text")
    DESCRIPTIVE_FIELDS = (
        "name", "condition", "if_text", "then_text", "category",
        "mitigation_strategy", "mitigation_plan", "owner",
    )
    STEP_REQUIRED_FIELDS = ("planned_action", "closure_criteria")


class Opportunity(TrackedEntity):
    """An opportunity scored likelihood × impact."""

    __mapper_args__ = {"polymorphic_identity": "opportunity"}

    impact = synonym("consequence")

    LABEL = "Opportunity"
    STATUSES = OPPORTUNITY_STATUSES
    DEFAULT_STATUS = "pursue_now"
    RATIONALE_STATUSES = OPPORTUNITY_RATIONALE_STATUSES
    IMPACT_FIELD = "impact"
    STEP_TYPE = "action_plan_step"
    REQUIRED_FIELDS = ("org_unit_id", "name", "condition", "if_text", "then_text")
    DESCRIPTIVE_FIELDS = ("name", "condition", "if_text", "then_text", "category", "owner")


class Issue(TrackedEntity):
    """An issue: the event already happened, only consequence varies."""

    __mapper_args__ = {"polymorphic_identity": "issue"}

    LABEL = "Issue"
    STATUSES = ISSUE_STATUSES
    DEFAULT_STATUS = "control"
    SINGLE_DIMENSION = True
    STEP_TYPE = "resolution_step"
    DESCRIPTIVE_FIELDS = ("name", "description", "category", "owner", "source_risk_id")

    @classmethod
    def classify_pair(cls, likelihood, consequence) -> Classification:
        return classify_issue(consequence)

    @classmethod
    def audited_fields(cls) -> tuple:
        return cls.DESCRIPTIVE_FIELDS + (cls.IMPACT_FIELD, "status")

    @classmethod
    def baseline_fields(cls) -> tuple:
        return (f"original_{cls.IMPACT_FIELD}",)


ENTITY_CLASSES = {"risk": Risk, "issue": Issue, "opportunity": Opportunity}


def entity_class(kind: str) -> type[TrackedEntity]:
    return ENTITY_CLASSES[kind]


# ═══════════════════════════════════════════════════════════════════════════
#  ENTITY VERSION
# ═══════════════════════════════════════════════════════════════════════════

class EntityVersion(db.Model):
    """
    Immutable full-state snapshot of a tracked entity.

    Version 1 is the creation baseline and is never rewritten. Version
    numbers are unique per entity; a concurrent writer that collides on
    (entity_id, version) is rejected by the constraint.
    """

    __tablename__ = "entity_versions"
    __table_args__ = (
        db.UniqueConstraint("entity_id", "version", name="uq_entity_version"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_id = db.Column(
        db.Integer, db.ForeignKey("tracked_entities.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    version = db.Column(db.Integer, nullable=False)
    snapshot = db.Column(db.JSON, nullable=False)
    likelihood_change_reason = db.Column(db.Text, nullable=True)
    consequence_change_reason = db.Column(db.Text, nullable=True)
    status_change_rationale = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    entity = db.relationship("TrackedEntity", back_populates="versions")

    def to_dict(self, impact_field: str = "consequence") -> dict:
        data = {
            "version": self.version,
            "snapshot": self.snapshot,
            "created_at": _iso(self.created_at),
        }
        if self.likelihood_change_reason:
            data["likelihood_change_reason"] = self.likelihood_change_reason
        if self.consequence_change_reason:
            data[f"{impact_field}_change_reason"] = self.consequence_change_reason
        if self.status_change_rationale:
            data["status_change_rationale"] = self.status_change_rationale
        return data

    def __repr__(self):
        return f"<EntityVersion {self.entity_id} v{self.version}>"


# ═══════════════════════════════════════════════════════════════════════════
#  PROGRESS STEP
# ═══════════════════════════════════════════════════════════════════════════

class ProgressStep(db.Model):
    """
    A mitigation / resolution / action-plan step of a tracked entity.

    ``expected_*`` is the posture the entity should reach once the step is
    done; ``actual_*`` and ``actual_completed_at`` are all null until the
    completion is recorded, then all set together.
    """

    __tablename__ = "progress_steps"
    __table_args__ = (
        db.Index("ix_progress_steps_entity_order", "entity_id", "sequence_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_id = db.Column(
        db.Integer, db.ForeignKey("tracked_entities.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    sequence_order = db.Column(db.Integer, nullable=False, default=0, comment="Dense, zero-based")
    planned_action = db.Column(db.Text, nullable=False)
    closure_criteria = db.Column(db.Text, nullable=True)

    estimated_start_date = db.Column(db.Date, nullable=True)
    estimated_end_date = db.Column(db.Date, nullable=True)

    expected_likelihood = db.Column(db.Integer, nullable=False)
    expected_consequence = db.Column(db.Integer, nullable=False)
    expected_rank = db.Column(db.Integer, nullable=False)

    actual_likelihood = db.Column(db.Integer, nullable=True)
    actual_consequence = db.Column(db.Integer, nullable=True)
    actual_rank = db.Column(db.Integer, nullable=True)
    actual_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    entity = db.relationship("TrackedEntity", back_populates="steps")
    versions = db.relationship(
        "StepVersion", back_populates="step",
        order_by="StepVersion.version",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    PLANNED_FIELDS = (
        "planned_action", "closure_criteria", "estimated_start_date",
        "estimated_end_date", "expected_likelihood", "expected_consequence",
    )
    ACTUAL_FIELDS = ("actual_likelihood", "actual_consequence", "actual_completed_at")

    @property
    def is_completed(self) -> bool:
        return (
            self.actual_completed_at is not None
            and self.actual_likelihood is not None
            and self.actual_consequence is not None
        )

    @property
    def planned_date(self):
        """Estimated end date, falling back to the estimated start date."""
        return self.estimated_end_date or self.estimated_start_date

    @property
    def step_number(self) -> int:
        return (self.sequence_order or 0) + 1

    def recalculate_ranks(self, entity_cls=None):
        """Recalculate expected and actual rank with the owning kind's classifier."""
        cls = entity_cls or (type(self.entity) if self.entity is not None else TrackedEntity)
        self.expected_rank = cls.classify_pair(self.expected_likelihood, self.expected_consequence).rank
        if self.actual_likelihood is not None and self.actual_consequence is not None:
            self.actual_rank = cls.classify_pair(self.actual_likelihood, self.actual_consequence).rank
        else:
            self.actual_rank = None

    def public_fields(self, impact_field: str = "consequence") -> dict:
        """Field values keyed by the owning kind's public names."""
        return {
            "sequence_order": self.sequence_order,
            "planned_action": self.planned_action,
            "closure_criteria": self.closure_criteria,
            "estimated_start_date": self.estimated_start_date,
            "estimated_end_date": self.estimated_end_date,
            "expected_likelihood": self.expected_likelihood,
            f"expected_{impact_field}": self.expected_consequence,
            "actual_likelihood": self.actual_likelihood,
            f"actual_{impact_field}": self.actual_consequence,
            "actual_completed_at": self.actual_completed_at,
        }

    def snapshot(self) -> dict:
        impact_field = self.entity.IMPACT_FIELD if self.entity is not None else "consequence"
        snap = {k: _iso(v) if hasattr(v, "isoformat") else v
                for k, v in self.public_fields(impact_field).items()}
        snap.pop("sequence_order")
        return snap

    def to_dict(self) -> dict:
        impact_field = self.entity.IMPACT_FIELD if self.entity is not None else "consequence"
        data = {"id": self.id, "entity_id": self.entity_id}
        for key, value in self.public_fields(impact_field).items():
            data[key] = _iso(value) if hasattr(value, "isoformat") else value
        data.update({
            "step_number": self.step_number,
            "expected_rank": self.expected_rank,
            "actual_rank": self.actual_rank,
            "is_completed": self.is_completed,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        })
        return data

    def __repr__(self):
        return f"<ProgressStep {self.id} #{self.step_number} of entity {self.entity_id}>"


class StepVersion(db.Model):
    """Immutable snapshot of a progress step."""

    __tablename__ = "step_versions"
    __table_args__ = (
        db.UniqueConstraint("step_id", "version", name="uq_step_version"),
    )

    id = db.Column(db.Integer, primary_key=True)
    step_id = db.Column(
        db.Integer, db.ForeignKey("progress_steps.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    version = db.Column(db.Integer, nullable=False)
    snapshot = db.Column(db.JSON, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    step = db.relationship("ProgressStep", back_populates="versions")

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "version": self.version,
            "snapshot": self.snapshot,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<StepVersion {self.step_id} v{self.version}>"


def pinned_likelihood_for(cls: type[TrackedEntity], likelihood):
    """Issues always carry the pinned likelihood; other kinds keep theirs."""
    if cls.SINGLE_DIMENSION:
        return ISSUE_PINNED_LIKELIHOOD
    return likelihood
