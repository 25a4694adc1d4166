"""Baseline extraction from version 1 and the cache repair job."""

import pytest

from app.core.exceptions import NoBaselineError, NotFoundError
from app.models import db as _db
from app.models.tracking import EntityVersion, Risk
from app.services import baseline, tracking_service, version_store


def _corrupt_cache(entity, likelihood, consequence):
    entity.original_likelihood = likelihood
    entity.original_consequence = consequence
    _db.session.commit()


class TestOriginalOf:
    def test_baseline_survives_updates(self, risk):
        tracking_service.update_entity(risk.id, {
            "likelihood": 5, "likelihood_change_reason": "escalated",
            "consequence": 4, "consequence_change_reason": "contract penalty",
        })
        _db.session.commit()
        assert baseline.original_of(risk.id) == (2, 2)

    def test_opportunity_uses_impact(self, opportunity):
        assert baseline.original_of(opportunity.id) == (3, 4)

    def test_issue_baseline_pins_likelihood(self, issue):
        assert baseline.original_of(issue.id) == (5, 3)

    def test_snapshot_values_are_clamped(self, risk):
        v1 = version_store.list_entity_versions(risk.id)[0]
        v1.snapshot = {**v1.snapshot, "likelihood": 9, "consequence": 0}
        _db.session.commit()
        assert baseline.original_of(risk.id) == (5, 1)

    def test_missing_fields_raise_no_baseline(self, risk):
        v1 = version_store.list_entity_versions(risk.id)[0]
        v1.snapshot = {"name": risk.name}
        _db.session.commit()
        with pytest.raises(NoBaselineError):
            baseline.original_of(risk.id)

    def test_missing_version_one_not_found(self):
        legacy = Risk(
            org_unit_id="OU-1", name="No history", condition="c", if_text="i",
            then_text="t", status="open", likelihood=2, consequence=2,
        )
        legacy.recalculate_level()
        _db.session.add(legacy)
        _db.session.commit()
        with pytest.raises(NotFoundError):
            baseline.original_of(legacy.id)

    def test_originals_for_batch(self, risk, opportunity, issue):
        result = baseline.originals_for([risk.id, opportunity.id, issue.id])
        assert result == {risk.id: (2, 2), opportunity.id: (3, 4), issue.id: (5, 3)}
        assert baseline.originals_for([]) == {}


class TestRepair:
    def test_repair_fixes_only_divergent_rows(self, risk, opportunity):
        _corrupt_cache(risk, 4, 4)
        assert baseline.repair_baselines() == 1
        _db.session.commit()
        refreshed = _db.session.get(Risk, risk.id)
        assert (refreshed.original_likelihood, refreshed.original_consequence) == (2, 2)

    def test_repair_is_idempotent(self, risk):
        _corrupt_cache(risk, 1, 5)
        assert baseline.repair_baselines() == 1
        _db.session.commit()
        assert baseline.repair_baselines() == 0

    def test_dry_run_writes_nothing(self, risk):
        _corrupt_cache(risk, 1, 5)
        assert baseline.repair_baselines(dry_run=True) == 1
        _db.session.commit()
        refreshed = _db.session.get(Risk, risk.id)
        assert (refreshed.original_likelihood, refreshed.original_consequence) == (1, 5)

    def test_repair_never_touches_version_log(self, risk):
        _corrupt_cache(risk, 3, 3)
        before = [(v.version, dict(v.snapshot)) for v in version_store.list_entity_versions(risk.id)]
        baseline.repair_baselines()
        _db.session.commit()
        after = [(v.version, dict(v.snapshot)) for v in version_store.list_entity_versions(risk.id)]
        assert before == after
        assert _db.session.query(EntityVersion).count() == 1
