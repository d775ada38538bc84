#!/usr/bin/env python3
"""Migrate legacy pipeline history snapshots into the pipeline_build table.

Run once at upgrade time; re-running only picks up what is left.

Examples:
  python scripts/migrate_pipeline_history.py --dry-run
  python scripts/migrate_pipeline_history.py --workers 4 \
    --report /tmp/history_migration.txt \
    --json-report /tmp/history_migration.json
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pipeline_history.core.config import get_settings
from pipeline_history.core.logging import configure_logging
from pipeline_history.services.error_codes import GroupQueryError
from pipeline_history.services.history_migration_service import run_pipeline_history_migration
from pipeline_history.services.migration_report import MigrationReport


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Migrate legacy pipeline history into pipeline_build")
    parser.add_argument(
        "--window-size",
        type=int,
        default=None,
        help="most recent records migrated per application/pipeline/environment/branch",
    )
    parser.add_argument("--workers", type=int, default=None, help="groups processed in parallel")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--report", default="", help="text report file")
    parser.add_argument("--json-report", default="", help="json report file")
    return parser.parse_args(argv)


def _write_report(report: MigrationReport, path_str: str, as_json: bool) -> None:
    if not path_str:
        return
    path = Path(path_str)
    path.parent.mkdir(parents=True, exist_ok=True)
    if as_json:
        path.write_text(json.dumps(report.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
    else:
        path.write_text(report.to_text(), encoding="utf-8")


def _print_summary(report: MigrationReport) -> None:
    print(
        "migration summary "
        f"groups={report.total_groups} migrated={report.migrated} "
        f"skipped={report.skipped} failed={report.failed} "
        f"failed_groups={report.failed_groups}"
    )


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)

    from pipeline_history.db.session import SessionLocal

    try:
        report = run_pipeline_history_migration(
            SessionLocal,
            window_size=args.window_size,
            workers=args.workers,
            dry_run=args.dry_run,
        )
    except GroupQueryError as exc:
        raise SystemExit(f"migration aborted: {exc.message}") from exc

    _write_report(report, args.report, as_json=False)
    _write_report(report, args.json_report, as_json=True)
    _print_summary(report)

    if report.has_failures:
        raise SystemExit(2)


if __name__ == "__main__":
    main()
