"""
Tracking service: entity write path, justifications, baseline immutability,
history, realize-risk and the progress step lifecycle.
"""

from datetime import timedelta

import pytest

from app.core.exceptions import ImmutableFieldError, NotFoundError, ValidationError
from app.models import db as _db
from app.models.tracking import (
    EntityVersion,
    Issue,
    ProgressStep,
    Risk,
    StepVersion,
    TrackedEntity,
    as_utc,
)
from app.services import audit_recorder, baseline, tracking_service, version_store


def _step(entity, **kw):
    data = {
        "planned_action": "Qualify second source",
        "closure_criteria": "PO placed",
        "expected_likelihood": 1,
        "expected_consequence": 2,
    }
    data.update(kw)
    step = tracking_service.create_step(entity.id, data)
    _db.session.commit()
    return step


# ═════════════════════════════════════════════════════════════════════════════
# ENTITY WRITE PATH
# ═════════════════════════════════════════════════════════════════════════════


class TestCreate:
    def test_risk_classified_and_baselined(self, risk):
        assert (risk.level, risk.rank) == ("low", 4)
        assert risk.status == "open"
        assert (risk.original_likelihood, risk.original_consequence) == (2, 2)
        assert version_store.count_versions(risk.id) == 1

    def test_defaults_to_middle_of_scale(self):
        entity = tracking_service.create_entity("risk", {
            "org_unit_id": "OU-1", "name": "n", "condition": "c", "if_text": "i", "then_text": "t",
        })
        assert (entity.likelihood, entity.consequence) == (3, 3)

    def test_values_clamped(self):
        entity = tracking_service.create_entity("risk", {
            "org_unit_id": "OU-1", "name": "n", "condition": "c", "if_text": "i",
            "then_text": "t", "likelihood": 0, "consequence": 9,
        })
        assert (entity.likelihood, entity.consequence, entity.rank) == (1, 5, 12)

    def test_fractional_dimension_rejected(self):
        with pytest.raises(ValidationError) as exc:
            tracking_service.create_entity("risk", {
                "org_unit_id": "OU-1", "name": "n", "condition": "c", "if_text": "i",
                "then_text": "t", "likelihood": 4.7,
            })
        assert exc.value.details == {"likelihood": "invalid"}

    def test_non_string_text_rejected(self):
        with pytest.raises(ValidationError) as exc:
            tracking_service.create_entity("risk", {
                "org_unit_id": "OU-1", "name": "n", "condition": ["c"], "if_text": "i",
                "then_text": "t",
            })
        assert exc.value.details == {"condition": "invalid"}

    def test_kind_settings_are_not_columns(self):
        columns = set(TrackedEntity.__table__.c.keys())
        for setting in ("STATUSES", "RATIONALE_STATUSES", "CATEGORIES", "REQUIRED_FIELDS",
                        "DESCRIPTIVE_FIELDS", "STEP_REQUIRED_FIELDS"):
            assert setting not in columns
        assert Risk.CATEGORIES is not None
        assert Issue.CATEGORIES is None

    @pytest.mark.parametrize("missing", ["org_unit_id", "name", "condition", "if_text", "then_text"])
    def test_risk_required_fields(self, missing):
        data = {"org_unit_id": "OU-1", "name": "n", "condition": "c", "if_text": "i", "then_text": "t"}
        data[missing] = "  "
        with pytest.raises(ValidationError) as exc:
            tracking_service.create_entity("risk", data)
        assert missing in exc.value.details

    def test_issue_needs_only_org_and_name(self, issue):
        assert issue.likelihood == 5
        assert (issue.level, issue.rank) == ("low", 20)
        assert issue.status == "control"

    def test_issue_ignores_client_likelihood(self):
        entity = tracking_service.create_entity("issue", {
            "org_unit_id": "OU-1", "name": "n", "likelihood": 1, "consequence": 4,
        })
        assert entity.likelihood == 5
        assert entity.rank == 23

    def test_opportunity_impact(self, opportunity):
        assert opportunity.impact == 4
        assert opportunity.status == "pursue_now"
        assert opportunity.to_dict()["impact"] == 4

    def test_original_fields_rejected(self):
        with pytest.raises(ImmutableFieldError) as exc:
            tracking_service.create_entity("risk", {
                "org_unit_id": "OU-1", "name": "n", "condition": "c", "if_text": "i",
                "then_text": "t", "original_likelihood": 1,
            })
        assert exc.value.field == "original_likelihood"

    def test_closed_risk_category_set(self):
        with pytest.raises(ValidationError):
            tracking_service.create_entity("risk", {
                "org_unit_id": "OU-1", "name": "n", "condition": "c", "if_text": "i",
                "then_text": "t", "category": "weather",
            })

    def test_free_text_category_for_issue(self):
        entity = tracking_service.create_entity("issue", {
            "org_unit_id": "OU-1", "name": "n", "category": "LOGISTICS",
        })
        assert entity.category == "LOGISTICS"

    def test_invalid_mitigation_strategy(self):
        with pytest.raises(ValidationError):
            tracking_service.create_entity("risk", {
                "org_unit_id": "OU-1", "name": "n", "condition": "c", "if_text": "i",
                "then_text": "t", "mitigation_strategy": "hope",
            })

    def test_create_in_justified_status_needs_rationale(self):
        with pytest.raises(ValidationError) as exc:
            tracking_service.create_entity("opportunity", {
                "org_unit_id": "OU-1", "name": "n", "condition": "c", "if_text": "i",
                "then_text": "t", "status": "defer",
            })
        assert "status_change_rationale" in exc.value.details


class TestUpdate:
    def test_end_to_end_likelihood_change(self, risk):
        assert risk.rank == 4
        tracking_service.update_entity(risk.id, {
            "likelihood": 4, "likelihood_change_reason": "Supplier confirmed a slip",
        })
        _db.session.commit()

        refreshed = tracking_service.get_entity(risk.id)
        assert (refreshed.likelihood, refreshed.consequence) == (4, 2)
        assert (refreshed.level, refreshed.rank) == ("moderate", 13)
        assert [v.version for v in version_store.list_entity_versions(risk.id)] == [1, 2]
        latest = audit_recorder.list_audit_entries(risk.id)[0]
        assert latest.diff["changes"] == {"likelihood": {"from": 2, "to": 4}}
        assert baseline.original_of(risk.id) == (2, 2)

    def test_likelihood_change_needs_reason(self, risk):
        with pytest.raises(ValidationError) as exc:
            tracking_service.update_entity(risk.id, {"likelihood": 4})
        assert "likelihood_change_reason" in exc.value.details

    def test_blank_reason_rejected(self, risk):
        with pytest.raises(ValidationError):
            tracking_service.update_entity(risk.id, {
                "consequence": 5, "consequence_change_reason": "   ",
            })

    def test_opportunity_impact_reason_name(self, opportunity):
        with pytest.raises(ValidationError) as exc:
            tracking_service.update_entity(opportunity.id, {"impact": 1})
        assert "impact_change_reason" in exc.value.details

    def test_same_value_needs_no_reason(self, risk):
        tracking_service.update_entity(risk.id, {"likelihood": 2, "consequence": 2})
        _db.session.commit()
        assert version_store.count_versions(risk.id) == 2

    def test_reason_stored_on_version(self, risk):
        tracking_service.update_entity(risk.id, {
            "consequence": 4, "consequence_change_reason": "  Penalty clause  ",
        })
        _db.session.commit()
        latest = version_store.latest_entity_version(risk.id)
        assert latest.consequence_change_reason == "Penalty clause"
        assert latest.likelihood_change_reason is None

    @pytest.mark.parametrize("status", ["accepted", "closed", "realized"])
    def test_risk_justified_statuses(self, risk, status):
        with pytest.raises(ValidationError) as exc:
            tracking_service.update_entity(risk.id, {"status": status})
        assert "status_change_rationale" in exc.value.details

    def test_unjustified_transition_free(self, risk):
        tracking_service.update_entity(risk.id, {"status": "mitigating"})
        _db.session.commit()
        assert tracking_service.get_entity(risk.id).status == "mitigating"

    def test_issue_status_needs_no_rationale(self, issue):
        tracking_service.update_entity(issue.id, {"status": "ignore"})
        _db.session.commit()
        assert tracking_service.get_entity(issue.id).status == "ignore"

    def test_invalid_status(self, risk):
        with pytest.raises(ValidationError):
            tracking_service.update_entity(risk.id, {"status": "pursue_now"})

    def test_original_fields_rejected_on_update(self, risk):
        with pytest.raises(ImmutableFieldError):
            tracking_service.update_entity(risk.id, {"original_consequence": 5})

    @pytest.mark.parametrize("value", [123, ["Renamed"], {"text": "Renamed"}])
    def test_non_string_name_rejected(self, risk, value):
        with pytest.raises(ValidationError) as exc:
            tracking_service.update_entity(risk.id, {"name": value})
        assert exc.value.details == {"name": "invalid"}

    def test_reasons_optional_when_disabled(self, app, risk):
        app.config["TRACKING_REQUIRE_CHANGE_REASONS"] = False
        try:
            tracking_service.update_entity(risk.id, {"likelihood": 5})
            _db.session.commit()
        finally:
            app.config["TRACKING_REQUIRE_CHANGE_REASONS"] = True
        assert tracking_service.get_entity(risk.id).likelihood == 5

    def test_kind_mismatch_not_found(self, risk):
        with pytest.raises(NotFoundError):
            tracking_service.update_entity(risk.id, {"name": "x"}, kind="issue")


class TestDeleteAndRead:
    def test_delete_cascades_history(self, risk):
        _step(risk)
        tracking_service.delete_entity(risk.id)
        _db.session.commit()
        assert _db.session.query(EntityVersion).count() == 0
        assert _db.session.query(ProgressStep).count() == 0
        assert _db.session.query(StepVersion).count() == 0
        with pytest.raises(NotFoundError):
            tracking_service.get_entity(risk.id)

    def test_list_by_org_unit(self, risk, opportunity):
        tracking_service.create_entity("risk", {
            "org_unit_id": "OU-OTHER", "name": "n", "condition": "c", "if_text": "i", "then_text": "t",
        })
        _db.session.commit()
        items = tracking_service.list_entities("risk", risk.org_unit_id)
        assert [i["id"] for i in items] == [risk.id]
        assert items[0]["original_likelihood"] == 2

    def test_detail_surfaces_status_rationale(self, risk):
        tracking_service.update_entity(risk.id, {
            "status": "accepted", "status_change_rationale": "Residual risk within tolerance",
        })
        _db.session.commit()
        detail = tracking_service.entity_detail(tracking_service.get_entity(risk.id))
        assert detail["status_change_rationale"] == "Residual risk within tolerance"
        assert detail["mitigation_steps"] == []

    def test_detail_prefers_version_one_over_cache(self, risk):
        risk.original_likelihood = 5
        _db.session.commit()
        detail = tracking_service.entity_detail(tracking_service.get_entity(risk.id))
        assert detail["original_likelihood"] == 2


class TestHistory:
    def test_full_history(self, risk):
        tracking_service.update_entity(risk.id, {"owner": "PMO"})
        _db.session.commit()
        history = tracking_service.get_history(risk.id)
        assert [h["version"] for h in history] == [1, 2]
        assert history[1]["snapshot"]["owner"] == "PMO"

    def test_history_at(self, risk):
        v1 = version_store.latest_entity_version(risk.id)
        at = (as_utc(v1.created_at) + timedelta(microseconds=1)).isoformat()
        assert tracking_service.get_history(risk.id, at=at)["version"] == 1

    def test_history_before_creation(self, risk):
        with pytest.raises(NotFoundError):
            tracking_service.get_history(risk.id, at="2000-01-01T00:00:00Z")

    def test_bad_timestamp(self, risk):
        with pytest.raises(ValidationError):
            tracking_service.get_history(risk.id, at="yesterday")

    def test_include_steps_merges_chronologically(self, risk):
        step = _step(risk)
        tracking_service.update_entity(risk.id, {"owner": "PMO"})
        _db.session.commit()
        history = tracking_service.get_history(risk.id, include_steps=True)
        assert [h["target_type"] for h in history] == ["risk", "mitigation_step", "risk"]
        assert history[1]["step_id"] == step.id
        assert history[1]["step_number"] == 1


class TestRealizeRisk:
    def test_realize_opens_linked_issue(self, risk):
        realized, issue = tracking_service.realize_risk(risk.id, {
            "status_change_rationale": "Supplier missed the date",
        })
        _db.session.commit()
        assert realized.status == "realized"
        assert isinstance(issue, Issue)
        assert issue.source_risk_id == risk.id
        assert issue.consequence == 2
        assert issue.name == risk.name
        assert version_store.count_versions(issue.id) == 1
        assert audit_recorder.list_audit_entries(risk.id)[0].diff["status_change_rationale"] == \
            "Supplier missed the date"

    def test_realize_needs_rationale(self, risk):
        with pytest.raises(ValidationError):
            tracking_service.realize_risk(risk.id, {})

    def test_realize_twice_rejected(self, risk):
        tracking_service.realize_risk(risk.id, {"status_change_rationale": "happened"})
        _db.session.commit()
        with pytest.raises(ValidationError):
            tracking_service.realize_risk(risk.id, {"status_change_rationale": "again"})

    def test_deleting_risk_keeps_issue(self, risk):
        _, issue = tracking_service.realize_risk(risk.id, {"status_change_rationale": "happened"})
        _db.session.commit()
        issue_id = issue.id
        tracking_service.delete_entity(risk.id)
        _db.session.commit()
        _db.session.expire_all()
        assert tracking_service.get_entity(issue_id).source_risk_id is None


# ═════════════════════════════════════════════════════════════════════════════
# PROGRESS STEPS
# ═════════════════════════════════════════════════════════════════════════════


class TestSteps:
    def test_created_step_is_persisted(self, risk):
        step = _step(risk, estimated_end_date="2026-09-30")
        _db.session.expire_all()
        stored = _db.session.get(ProgressStep, step.id)
        assert stored is not None
        assert stored.entity_id == risk.id
        assert stored.estimated_end_date.isoformat() == "2026-09-30"
        assert [v.version for v in version_store.list_step_versions(step.id)] == [1]

    def test_non_string_planned_action_rejected(self, risk):
        with pytest.raises(ValidationError) as exc:
            _step(risk, planned_action=42)
        assert exc.value.details == {"planned_action": "invalid"}

    def test_appended_in_order(self, risk):
        a, b, c = (_step(risk, planned_action=n) for n in ("A", "B", "C"))
        assert [s.sequence_order for s in tracking_service.list_steps(risk.id)] == [0, 1, 2]
        assert [s.id for s in tracking_service.list_steps(risk.id)] == [a.id, b.id, c.id]

    def test_insert_at_position(self, risk):
        a = _step(risk, planned_action="A")
        b = _step(risk, planned_action="B")
        first = _step(risk, planned_action="First", sequence_order=0)
        assert [s.id for s in tracking_service.list_steps(risk.id)] == [first.id, a.id, b.id]
        assert [s.sequence_order for s in tracking_service.list_steps(risk.id)] == [0, 1, 2]

    def test_expected_rank(self, risk):
        step = _step(risk, expected_likelihood=3, expected_consequence=3)
        assert step.expected_rank == 14
        assert step.actual_rank is None

    def test_mitigation_step_needs_closure_criteria(self, risk):
        with pytest.raises(ValidationError) as exc:
            tracking_service.create_step(risk.id, {
                "planned_action": "x", "expected_likelihood": 1, "expected_consequence": 1,
            })
        assert "closure_criteria" in exc.value.details

    def test_resolution_step_without_closure_criteria(self, issue):
        step = tracking_service.create_step(issue.id, {
            "planned_action": "Rework boards", "expected_consequence": 1,
        })
        assert step.expected_likelihood == 5
        assert step.expected_rank == 8

    def test_partial_actuals_rejected(self, risk):
        with pytest.raises(ValidationError):
            tracking_service.create_step(risk.id, {
                "planned_action": "x", "closure_criteria": "y",
                "expected_likelihood": 1, "expected_consequence": 1,
                "actual_likelihood": 1, "actual_consequence": 1,
            })

    def test_complete_defaults_timestamp(self, risk):
        step = _step(risk)
        done = tracking_service.complete_step(risk.id, step.id, {
            "actual_likelihood": 2, "actual_consequence": 1,
        })
        _db.session.commit()
        assert done.is_completed
        assert done.actual_completed_at is not None
        assert done.actual_rank == 2

    def test_complete_needs_actual_values(self, risk):
        step = _step(risk)
        with pytest.raises(ValidationError):
            tracking_service.complete_step(risk.id, step.id, {"actual_likelihood": 2})

    def test_step_of_other_entity_not_found(self, risk, opportunity):
        step = _step(risk)
        with pytest.raises(NotFoundError):
            tracking_service.update_step(opportunity.id, step.id, {"planned_action": "x"})

    def test_delete_renumbers(self, risk):
        a, b, c = (_step(risk, planned_action=n) for n in ("A", "B", "C"))
        tracking_service.delete_step(risk.id, b.id)
        _db.session.commit()
        steps = tracking_service.list_steps(risk.id)
        assert [s.id for s in steps] == [a.id, c.id]
        assert [s.sequence_order for s in steps] == [0, 1]
        deleted = audit_recorder.list_audit_entries(risk.id)[0]
        assert (deleted.action, deleted.diff["step_number"]) == ("deleted", 2)

    def test_reorder(self, risk):
        a, b, c = (_step(risk, planned_action=n) for n in ("A", "B", "C"))
        steps = tracking_service.reorder_steps(risk.id, [c.id, a.id, b.id])
        _db.session.commit()
        assert [s.id for s in steps] == [c.id, a.id, b.id]
        assert [s.sequence_order for s in steps] == [0, 1, 2]

    @pytest.mark.parametrize("bad", [[], "nope", [1, 1, 1]])
    def test_reorder_requires_permutation(self, risk, bad):
        for name in ("A", "B", "C"):
            _step(risk, planned_action=name)
        with pytest.raises(ValidationError):
            tracking_service.reorder_steps(risk.id, bad)

    def test_reorder_rejects_missing_step(self, risk):
        a = _step(risk, planned_action="A")
        _step(risk, planned_action="B")
        with pytest.raises(ValidationError):
            tracking_service.reorder_steps(risk.id, [a.id])


class TestCompletedStepLock:
    def _completed(self, risk):
        step = _step(risk)
        tracking_service.complete_step(risk.id, step.id, {
            "actual_likelihood": 1, "actual_consequence": 1,
        })
        _db.session.commit()
        return step

    def test_planned_fields_locked(self, risk):
        step = self._completed(risk)
        with pytest.raises(ImmutableFieldError) as exc:
            tracking_service.update_step(risk.id, step.id, {"expected_likelihood": 3})
        assert exc.value.field == "expected_likelihood"

    def test_unchanged_planned_values_accepted(self, risk):
        step = self._completed(risk)
        tracking_service.update_step(risk.id, step.id, {"planned_action": step.planned_action})
        _db.session.commit()

    def test_actuals_can_be_corrected(self, risk):
        step = self._completed(risk)
        fixed = tracking_service.update_step(risk.id, step.id, {"actual_consequence": 3})
        _db.session.commit()
        assert fixed.actual_consequence == 3
        assert fixed.actual_rank == 5

    def test_completion_can_be_cleared(self, risk):
        step = self._completed(risk)
        cleared = tracking_service.update_step(risk.id, step.id, {
            "actual_likelihood": None, "actual_consequence": None, "actual_completed_at": None,
        })
        _db.session.commit()
        assert not cleared.is_completed
        assert cleared.actual_rank is None

    def test_completed_step_cannot_be_deleted(self, risk):
        step = self._completed(risk)
        with pytest.raises(ImmutableFieldError):
            tracking_service.delete_step(risk.id, step.id)

    def test_lock_can_be_disabled(self, app, risk):
        step = self._completed(risk)
        app.config["TRACKING_LOCK_COMPLETED_STEPS"] = False
        try:
            tracking_service.delete_step(risk.id, step.id)
            _db.session.commit()
        finally:
            app.config["TRACKING_LOCK_COMPLETED_STEPS"] = True
        assert tracking_service.list_steps(risk.id) == []
