from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from pipeline_history.db.models import PipelineHistoryOld
from pipeline_history.services.error_codes import (
    CandidateQueryError,
    DecodeError,
    GroupQueryError,
    LockContendedError,
    MigrationErrorCode,
    is_lock_not_available,
)

DEFAULT_WINDOW_SIZE = 10


@dataclass(frozen=True)
class HistoryGroup:
    application_id: int
    pipeline_id: int
    environment_id: int
    vcs_changes_branch: str | None

    def as_log_context(self) -> dict:
        return {
            "application_id": self.application_id,
            "pipeline_id": self.pipeline_id,
            "environment_id": self.environment_id,
            "vcs_changes_branch": self.vcs_changes_branch,
        }


def list_history_groups(db: Session) -> list[HistoryGroup]:
    stmt = (
        select(
            PipelineHistoryOld.application_id,
            PipelineHistoryOld.pipeline_id,
            PipelineHistoryOld.environment_id,
            PipelineHistoryOld.vcs_changes_branch,
        )
        .distinct()
        .order_by(
            PipelineHistoryOld.application_id.asc(),
            PipelineHistoryOld.pipeline_id.asc(),
            PipelineHistoryOld.environment_id.asc(),
            PipelineHistoryOld.vcs_changes_branch.asc().nulls_last(),
        )
    )
    try:
        rows = db.execute(stmt).all()
    except SQLAlchemyError as exc:
        raise GroupQueryError(f"cannot select distinct pipeline history: {exc}") from exc

    return [
        HistoryGroup(
            application_id=application_id,
            pipeline_id=pipeline_id,
            environment_id=environment_id,
            vcs_changes_branch=branch,
        )
        for application_id, pipeline_id, environment_id, branch in rows
    ]


def list_history_candidates(db: Session, group: HistoryGroup, limit: int = DEFAULT_WINDOW_SIZE) -> list[int]:
    if limit <= 0:
        limit = DEFAULT_WINDOW_SIZE

    stmt = (
        select(PipelineHistoryOld.pipeline_build_id)
        .where(
            PipelineHistoryOld.application_id == group.application_id,
            PipelineHistoryOld.pipeline_id == group.pipeline_id,
            PipelineHistoryOld.environment_id == group.environment_id,
            PipelineHistoryOld.vcs_changes_branch.is_not_distinct_from(group.vcs_changes_branch),
        )
        .order_by(PipelineHistoryOld.version.desc(), PipelineHistoryOld.pipeline_build_id.desc())
        .limit(limit)
    )
    try:
        return list(db.execute(stmt).scalars().all())
    except SQLAlchemyError as exc:
        raise CandidateQueryError(f"cannot get pipeline history by criteria: {exc}") from exc


def lock_history_record(db: Session, pipeline_build_id: int) -> str:
    """Lock the legacy row for the current transaction and return its payload.

    Raises LockContendedError immediately when another transaction holds the row.
    """
    stmt = (
        select(PipelineHistoryOld.data)
        .where(PipelineHistoryOld.pipeline_build_id == pipeline_build_id)
        .with_for_update(nowait=True)
    )
    try:
        data = db.execute(stmt).scalar_one_or_none()
    except OperationalError as exc:
        if is_lock_not_available(exc):
            raise LockContendedError(
                "pipeline history row locked by another transaction", pipeline_build_id=pipeline_build_id
            ) from exc
        raise

    if data is None:
        raise DecodeError(
            "pipeline history row not found",
            code=MigrationErrorCode.LEGACY_RECORD_MISSING,
            pipeline_build_id=pipeline_build_id,
        )
    return data
