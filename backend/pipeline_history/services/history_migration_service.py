"""Migrate legacy pipeline history snapshots into the pipeline_build table.

Each candidate record runs in its own transaction: lock the legacy row,
decode it, skip it if already migrated, rebuild it and insert it. Any
failure rolls back that record only and the run moves on. Re-running the
whole migration is safe; the existence check and the row lock keep every
build id inserted at most once.
"""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pipeline_history.core.config import get_settings
from pipeline_history.services.build_reconstructor import reconstruct_pipeline_build
from pipeline_history.services.error_codes import (
    CandidateQueryError,
    GroupQueryError,
    HistoryMigrationError,
    LockContendedError,
    WriteError,
    error_code_for,
)
from pipeline_history.services.history_decoder import decode_legacy_record
from pipeline_history.services.legacy_history_store import (
    DEFAULT_WINDOW_SIZE,
    HistoryGroup,
    list_history_candidates,
    list_history_groups,
    lock_history_record,
)
from pipeline_history.services.migration_report import (
    GroupResult,
    MigrationReport,
    RecordOutcome,
    SkipReason,
)
from pipeline_history.services.pipeline_build_store import insert_pipeline_build, pipeline_build_exists

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], Session]


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _commit(db: Session, pipeline_build_id: int) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        raise WriteError(f"cannot commit transaction: {exc}", pipeline_build_id=pipeline_build_id) from exc


def _already_migrated(db: Session, pipeline_build_id: int, log) -> RecordOutcome:
    db.rollback()
    log.info("pipeline_history_already_migrated")
    return RecordOutcome.skipped(pipeline_build_id, SkipReason.ALREADY_MIGRATED)


def migrate_history_record(db: Session, pipeline_build_id: int, *, dry_run: bool = False) -> RecordOutcome:
    log = logger.bind(pipeline_build_id=pipeline_build_id)
    log.info("pipeline_history_migrate_start")

    try:
        raw = lock_history_record(db, pipeline_build_id)
        # legacy row id and build id are the same identity
        if pipeline_build_exists(db, pipeline_build_id):
            return _already_migrated(db, pipeline_build_id, log)

        decoded = decode_legacy_record(raw, pipeline_build_id=pipeline_build_id)
        build_id = decoded.skeleton.id
        if build_id != pipeline_build_id and pipeline_build_exists(db, build_id):
            return _already_migrated(db, pipeline_build_id, log)

        if not decoded.has_stages_key:
            db.rollback()
            log.warning("pipeline_history_no_stages")
            return RecordOutcome.skipped(pipeline_build_id, SkipReason.NO_STAGES, "payload has no stages key")

        build = reconstruct_pipeline_build(decoded.skeleton, decoded.tree, pipeline_build_id=pipeline_build_id)

        if dry_run:
            db.rollback()
            log.info("pipeline_history_dry_run", stages=len(build.stages))
            return RecordOutcome.skipped(pipeline_build_id, SkipReason.DRY_RUN)

        insert_pipeline_build(db, build)
        _commit(db, pipeline_build_id)
    except LockContendedError:
        db.rollback()
        log.info("pipeline_history_lock_contended")
        return RecordOutcome.skipped(pipeline_build_id, SkipReason.LOCK_CONTENDED)
    except HistoryMigrationError as exc:
        db.rollback()
        log.critical("pipeline_history_migrate_failed", error_code=exc.code, error=exc.message)
        return RecordOutcome.failed(pipeline_build_id, exc.code, exc.message)
    except Exception as exc:  # noqa: BLE001
        db.rollback()
        code = error_code_for(exc)
        log.critical("pipeline_history_migrate_failed", error_code=code, exc_info=True)
        return RecordOutcome.failed(pipeline_build_id, code, str(exc))

    log.info("pipeline_history_migrated")
    return RecordOutcome.migrated(pipeline_build_id)


def migrate_history_group(
    session_factory: SessionFactory,
    group: HistoryGroup,
    *,
    window_size: int = DEFAULT_WINDOW_SIZE,
    dry_run: bool = False,
) -> GroupResult:
    result = GroupResult(group=group)

    with session_factory() as db:
        try:
            candidate_ids = list_history_candidates(db, group, limit=window_size)
        except CandidateQueryError as exc:
            db.rollback()
            logger.critical(
                "pipeline_history_candidates_failed",
                error_code=exc.code,
                error=exc.message,
                **group.as_log_context(),
            )
            result.error_code = exc.code
            result.message = exc.message
            return result
        db.rollback()

        for pipeline_build_id in candidate_ids:
            result.outcomes.append(migrate_history_record(db, pipeline_build_id, dry_run=dry_run))

    return result


def run_pipeline_history_migration(
    session_factory: SessionFactory,
    *,
    window_size: int | None = None,
    workers: int | None = None,
    dry_run: bool = False,
) -> MigrationReport:
    settings = get_settings()
    if window_size is None:
        window_size = settings.history_window_size
    if window_size <= 0:
        window_size = DEFAULT_WINDOW_SIZE
    if workers is None:
        workers = settings.history_workers
    if workers <= 0:
        workers = 1

    report = MigrationReport(
        started_at=_now_iso(),
        args={"window_size": window_size, "workers": workers, "dry_run": dry_run},
    )

    with session_factory() as db:
        try:
            groups = list_history_groups(db)
        except GroupQueryError as exc:
            logger.critical("pipeline_history_groups_failed", error_code=exc.code, error=exc.message)
            raise
    report.total_groups = len(groups)
    logger.info("pipeline_history_migration_start", groups=len(groups), **report.args)

    def _run(group: HistoryGroup) -> GroupResult:
        return migrate_history_group(session_factory, group, window_size=window_size, dry_run=dry_run)

    if workers == 1:
        for group in groups:
            report.add_group(_run(group))
    else:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="history-migrate") as pool:
            for result in pool.map(_run, groups):
                report.add_group(result)

    report.finished_at = _now_iso()
    logger.info(
        "pipeline_history_migration_done",
        migrated=report.migrated,
        skipped=report.skipped,
        failed=report.failed,
        failed_groups=report.failed_groups,
    )
    return report
