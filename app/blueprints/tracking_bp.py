"""
Risk / Issue / Opportunity Tracker
Tracking blueprint - JSON surface over the tracking service.

<kind> is one of risks | issues | opportunities.

Endpoints summary:
    ENTITY   /api/v1/<kind>                                GET (?org_unit_id=), POST
             /api/v1/<kind>/<id>                           GET, PUT, PATCH, DELETE
             /api/v1/<kind>/<id>/history                   GET (?at=, ?include_steps=1)
             /api/v1/<kind>/<id>/audit-log                 GET
             /api/v1/<kind>/<id>/waterfall                 GET
             /api/v1/<kind>/waterfall/data                 GET (?org_unit_id=)

    STEPS    /api/v1/<kind>/<id>/steps                     GET, POST
             /api/v1/<kind>/<id>/steps/<sid>               PUT, PATCH, DELETE
             /api/v1/<kind>/<id>/steps/<sid>/complete      POST
             /api/v1/<kind>/<id>/steps/reorder             PATCH, POST

    RISK     /api/v1/risks/<id>/realize                    POST

    MAINT    /api/v1/maintenance/repair-baselines          POST (?dry_run=1)
             /api/v1/maintenance/backfill-versions         POST

    MATRIX   /api/v1/classification/matrix                 GET
"""

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

from app.blueprints import paginate_items
from app.core.exceptions import (
    ConcurrencyConflictError,
    ImmutableFieldError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.models.classification import CONSEQUENCE_LABELS, LIKELIHOOD_LABELS, matrix_cells
from app.services import tracking_service
from app.services import waterfall as waterfall_service
from app.utils.errors import E, api_error
from app.utils.helpers import db_commit_or_error, parse_bool

logger = logging.getLogger(__name__)

tracking_bp = Blueprint("tracking", __name__, url_prefix="/api/v1")

KIND_SEGMENTS = {"risks": "risk", "issues": "issue", "opportunities": "opportunity"}
KIND = "<any(risks, issues, opportunities):kind>"


# ── Error handlers ───────────────────────────────────────────────────────────


@tracking_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    db.session.rollback()
    return api_error(E.NOT_FOUND, str(error))


@tracking_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    db.session.rollback()
    missing = any(v == "required" for v in error.details.values())
    code = E.VALIDATION_REQUIRED if missing else E.VALIDATION_INVALID
    return api_error(code, str(error), details=error.details)


@tracking_bp.errorhandler(ImmutableFieldError)
def _handle_immutable(error: ImmutableFieldError):
    db.session.rollback()
    return api_error(E.VALIDATION_IMMUTABLE, str(error), details={error.field: "immutable"})


@tracking_bp.errorhandler(ConcurrencyConflictError)
def _handle_conflict(error: ConcurrencyConflictError):
    db.session.rollback()
    return api_error(E.CONFLICT_VERSION, str(error),
                     details={"resource": error.resource, "version": error.version})


@tracking_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    db.session.rollback()
    logger.exception("Unexpected error in tracking_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ── Helpers ──────────────────────────────────────────────────────────────────


def _kind(segment: str) -> str:
    return KIND_SEGMENTS[segment]


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _require_org_unit():
    org_unit_id = request.args.get("org_unit_id")
    if not org_unit_id:
        raise ValidationError("org_unit_id is required", details={"org_unit_id": "required"})
    return org_unit_id


# ═══════════════════════════════════════════════════════════════════════════
#  ENTITY CRUD
# ═══════════════════════════════════════════════════════════════════════════


@tracking_bp.route(f"/{KIND}", methods=["GET"])
def list_entities(kind):
    items = tracking_service.list_entities(_kind(kind), _require_org_unit())
    page, total = paginate_items(items)
    return jsonify({"items": page, "total": total})


@tracking_bp.route(f"/{KIND}", methods=["POST"])
def create_entity(kind):
    entity = tracking_service.create_entity(_kind(kind), _body())
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(tracking_service.entity_detail(entity)), 201


@tracking_bp.route(f"/{KIND}/<int:entity_id>", methods=["GET"])
def get_entity(kind, entity_id):
    entity = tracking_service.get_entity(entity_id, _kind(kind))
    return jsonify(tracking_service.entity_detail(entity))


@tracking_bp.route(f"/{KIND}/<int:entity_id>", methods=["PUT", "PATCH"])
def update_entity(kind, entity_id):
    entity = tracking_service.update_entity(entity_id, _body(), kind=_kind(kind))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(tracking_service.entity_detail(entity))


@tracking_bp.route(f"/{KIND}/<int:entity_id>", methods=["DELETE"])
def delete_entity(kind, entity_id):
    tracking_service.delete_entity(entity_id, kind=_kind(kind))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"message": "Deleted", "id": entity_id}), 200


# ═══════════════════════════════════════════════════════════════════════════
#  HISTORY / AUDIT / WATERFALL
# ═══════════════════════════════════════════════════════════════════════════


@tracking_bp.route(f"/{KIND}/<int:entity_id>/history", methods=["GET"])
def get_history(kind, entity_id):
    history = tracking_service.get_history(
        entity_id,
        at=request.args.get("at") or None,
        include_steps=parse_bool(request.args.get("include_steps")),
        kind=_kind(kind),
    )
    return jsonify(history)


@tracking_bp.route(f"/{KIND}/<int:entity_id>/audit-log", methods=["GET"])
def get_audit_log(kind, entity_id):
    return jsonify(tracking_service.get_audit_log(entity_id, kind=_kind(kind)))


@tracking_bp.route(f"/{KIND}/<int:entity_id>/waterfall", methods=["GET"])
def get_waterfall(kind, entity_id):
    return jsonify(tracking_service.get_waterfall(entity_id, kind=_kind(kind)))


@tracking_bp.route(f"/{KIND}/waterfall/data", methods=["GET"])
def get_org_waterfall(kind):
    return jsonify(waterfall_service.org_waterfall(_kind(kind), _require_org_unit()))


# ═══════════════════════════════════════════════════════════════════════════
#  PROGRESS STEPS
# ═══════════════════════════════════════════════════════════════════════════


@tracking_bp.route(f"/{KIND}/<int:entity_id>/steps", methods=["GET"])
def list_steps(kind, entity_id):
    steps = tracking_service.list_steps(entity_id, kind=_kind(kind))
    return jsonify([s.to_dict() for s in steps])


@tracking_bp.route(f"/{KIND}/<int:entity_id>/steps", methods=["POST"])
def create_step(kind, entity_id):
    step = tracking_service.create_step(entity_id, _body(), kind=_kind(kind))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(step.to_dict()), 201


@tracking_bp.route(f"/{KIND}/<int:entity_id>/steps/reorder", methods=["PATCH", "POST"])
def reorder_steps(kind, entity_id):
    steps = tracking_service.reorder_steps(
        entity_id, _body().get("step_ids"), kind=_kind(kind),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify([s.to_dict() for s in steps])


@tracking_bp.route(f"/{KIND}/<int:entity_id>/steps/<int:step_id>", methods=["PUT", "PATCH"])
def update_step(kind, entity_id, step_id):
    step = tracking_service.update_step(entity_id, step_id, _body(), kind=_kind(kind))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(step.to_dict())


@tracking_bp.route(f"/{KIND}/<int:entity_id>/steps/<int:step_id>/complete", methods=["POST"])
def complete_step(kind, entity_id, step_id):
    step = tracking_service.complete_step(entity_id, step_id, _body(), kind=_kind(kind))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(step.to_dict())


@tracking_bp.route(f"/{KIND}/<int:entity_id>/steps/<int:step_id>", methods=["DELETE"])
def delete_step(kind, entity_id, step_id):
    tracking_service.delete_step(entity_id, step_id, kind=_kind(kind))
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"message": "Deleted", "id": step_id}), 200


# ═══════════════════════════════════════════════════════════════════════════
#  REALIZED RISKS
# ═══════════════════════════════════════════════════════════════════════════


@tracking_bp.route("/risks/<int:entity_id>/realize", methods=["POST"])
def realize_risk(entity_id):
    risk, issue = tracking_service.realize_risk(entity_id, _body())
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({
        "risk": tracking_service.entity_detail(risk),
        "issue": tracking_service.entity_detail(issue),
    }), 201


# ═══════════════════════════════════════════════════════════════════════════
#  MAINTENANCE / MATRIX
# ═══════════════════════════════════════════════════════════════════════════


@tracking_bp.route("/maintenance/repair-baselines", methods=["POST"])
def repair_baselines():
    dry_run = parse_bool(request.args.get("dry_run"))
    fixed = tracking_service.repair_baselines(dry_run=dry_run)
    if not dry_run:
        err = db_commit_or_error()
        if err:
            return err
    return jsonify({
        "repaired": fixed,
        "dry_run": dry_run,
        "message": f"Fixed original values for {fixed} entit(ies) from version history",
    })


@tracking_bp.route("/maintenance/backfill-versions", methods=["POST"])
def backfill_versions():
    created = tracking_service.backfill_missing_versions()
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({
        "created": created,
        "message": f"Created {created} initial version(s) for entities without history",
    })


@tracking_bp.route("/classification/matrix", methods=["GET"])
def classification_matrix():
    return jsonify({
        "likelihood_labels": LIKELIHOOD_LABELS,
        "consequence_labels": CONSEQUENCE_LABELS,
        "cells": matrix_cells(),
    })
