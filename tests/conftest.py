"""
Shared pytest fixtures for the tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - risk / issue / opportunity: Pre-created entities via the service layer
"""

import pytest

from app import create_app
from app.models import db as _db
from app.services import tracking_service

ORG_UNIT = "OU-ALPHA"


def risk_payload(**overrides):
    data = {
        "org_unit_id": ORG_UNIT,
        "name": "Supplier delay",
        "condition": "Single-source supplier for the main board",
        "if_text": "the supplier slips delivery",
        "then_text": "integration testing starts late",
        "category": "schedule",
        "likelihood": 2,
        "consequence": 2,
    }
    data.update(overrides)
    return data


def opportunity_payload(**overrides):
    data = {
        "org_unit_id": ORG_UNIT,
        "name": "Reuse test rig",
        "condition": "Sister program owns an idle rig",
        "if_text": "we borrow the rig",
        "then_text": "test cost drops",
        "likelihood": 3,
        "impact": 4,
    }
    data.update(overrides)
    return data


def issue_payload(**overrides):
    data = {"org_unit_id": ORG_UNIT, "name": "Board rework", "consequence": 3}
    data.update(overrides)
    return data


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def risk():
    """A committed risk at (2, 2) with one version."""
    entity = tracking_service.create_entity("risk", risk_payload())
    _db.session.commit()
    return entity


@pytest.fixture()
def opportunity():
    entity = tracking_service.create_entity("opportunity", opportunity_payload())
    _db.session.commit()
    return entity


@pytest.fixture()
def issue():
    entity = tracking_service.create_entity("issue", issue_payload())
    _db.session.commit()
    return entity
