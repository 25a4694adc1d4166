#!/usr/bin/env python3
"""Backfill missing version history and repair cached baselines (idempotent)."""

import argparse
import sys

sys.path.insert(0, ".")

from sqlalchemy.exc import SQLAlchemyError

from app import create_app
from app.models import db
from app.services.baseline import repair_baselines
from app.services.version_store import entities_without_versions, backfill_missing_versions


def repair_tracking_history(*, apply: bool = False) -> dict:
    """Create version 1 where missing, then sync original_* from version 1."""
    summary = {
        "mode": "apply" if apply else "dry-run",
        "missing_versions": 0,
        "backfilled": 0,
        "baselines_fixed": 0,
        "baselines_to_fix": 0,
        "errors": 0,
    }

    missing = entities_without_versions()
    summary["missing_versions"] = len(missing)
    print(f"[INFO] mode={summary['mode']} entities_without_history={len(missing)}")
    for entity in missing:
        print(f"[PLAN] entity_id={entity.id} kind={entity.kind} create version=1")

    try:
        if apply:
            summary["backfilled"] = backfill_missing_versions()
            summary["baselines_fixed"] = repair_baselines()
            db.session.commit()
        else:
            summary["baselines_to_fix"] = repair_baselines(dry_run=True)
            db.session.rollback()
    except SQLAlchemyError as exc:
        db.session.rollback()
        summary["errors"] += 1
        print(f"[ERROR] error={exc}")

    print(
        "[SUMMARY] "
        f"mode={summary['mode']} "
        f"missing_versions={summary['missing_versions']} "
        f"backfilled={summary['backfilled']} "
        f"baselines_fixed={summary['baselines_fixed']} "
        f"baselines_to_fix={summary['baselines_to_fix']} "
        f"errors={summary['errors']}"
    )
    return summary


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Backfill missing version history and repair cached baselines (idempotent)."
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", action="store_true", help="Preview only; do not write data")
    mode.add_argument("--apply", action="store_true", help="Persist repairs")
    args = parser.parse_args()

    apply = bool(args.apply)
    if not args.dry_run and not args.apply:
        print("[INFO] No mode specified; defaulting to --dry-run")

    app = create_app()
    with app.app_context():
        result = repair_tracking_history(apply=apply)

    return 1 if result["errors"] > 0 else 0


if __name__ == "__main__":
    raise SystemExit(main())
