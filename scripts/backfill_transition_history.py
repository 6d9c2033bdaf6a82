#!/usr/bin/env python3
"""Backfill one initial history record per job that has none (idempotent)."""

import argparse
import sys

sys.path.insert(0, ".")

from jobflow import create_app
from jobflow.services.audit_log import backfill_initial_history


def backfill_transition_history(*, apply: bool = False) -> dict:
    """Run the backfill and print a line per outcome."""
    summary = backfill_initial_history(apply=apply)

    print(f"[INFO] mode={summary['mode']} jobs={summary['processed_jobs']}")
    for detail in summary["error_details"]:
        print(f"[ERROR] tenant_id={detail['tenant_id']} job_id={detail['job_id']} error={detail['error']}")

    print(
        "[SUMMARY] "
        f"mode={summary['mode']} "
        f"processed={summary['processed_jobs']} "
        f"created={summary['created']} "
        f"would_create={summary['would_create']} "
        f"skipped={summary['skipped_existing']} "
        f"errors={summary['errors']}"
    )
    return summary


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Backfill an initial transition record for jobs without history (idempotent)."
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", action="store_true", help="Preview only; do not write data")
    mode.add_argument("--apply", action="store_true", help="Persist backfill changes")
    parser.add_argument("--env", default=None, help="Config name (defaults to APP_ENV)")
    args = parser.parse_args()

    apply = bool(args.apply)
    if not args.dry_run and not args.apply:
        print("[INFO] No mode specified; defaulting to --dry-run")

    app = create_app(args.env)
    with app.app_context():
        result = backfill_transition_history(apply=apply)

    if apply and result["errors"] > 0:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
