from __future__ import annotations

from pydantic import TypeAdapter
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from pipeline_history.db.models import PipelineBuild
from pipeline_history.schemas.pipeline_build import Build, Parameter, Stage
from pipeline_history.services.error_codes import HistoryMigrationError, MigrationErrorCode, WriteError

_PARAMETERS_JSON = TypeAdapter(list[Parameter])
_STAGES_JSON = TypeAdapter(list[Stage])


def dump_parameters(parameters: list[Parameter]) -> str:
    return _PARAMETERS_JSON.dump_json(parameters).decode("utf-8")


def dump_stages(stages: list[Stage]) -> str:
    return _STAGES_JSON.dump_json(stages).decode("utf-8")


def pipeline_build_exists(db: Session, build_id: int) -> bool:
    stmt = select(func.count()).select_from(PipelineBuild).where(PipelineBuild.id == build_id)
    try:
        return db.execute(stmt).scalar_one() > 0
    except SQLAlchemyError as exc:
        raise HistoryMigrationError(
            f"cannot count pipeline build: {exc}",
            code=MigrationErrorCode.EXISTS_QUERY_FAIL,
            pipeline_build_id=build_id,
        ) from exc


def insert_pipeline_build(db: Session, build: Build) -> PipelineBuild:
    trigger = build.trigger
    row = PipelineBuild(
        id=build.id,
        pipeline_id=build.pipeline_id,
        application_id=build.application_id,
        environment_id=build.environment_id,
        build_number=build.build_number,
        version=build.version,
        status=build.status,
        args=dump_parameters(build.parameters),
        start=build.start,
        done=build.done,
        manual_trigger=trigger.manual_trigger,
        scheduled_trigger=trigger.scheduled_trigger,
        triggered_by=trigger.triggered_by,
        parent_pipeline_build_id=trigger.parent_pipeline_build_id,
        vcs_changes_branch=trigger.vcs_changes_branch,
        vcs_changes_hash=trigger.vcs_changes_hash,
        vcs_changes_author=trigger.vcs_changes_author,
        stages=dump_stages(build.stages),
    )
    db.add(row)
    try:
        db.flush()
    except IntegrityError as exc:
        raise WriteError(
            f"cannot insert pipeline build: {exc.orig}",
            code=MigrationErrorCode.DB_CONSTRAINT_FAIL,
            pipeline_build_id=build.id,
        ) from exc
    except SQLAlchemyError as exc:
        raise WriteError(f"cannot insert pipeline build: {exc}", pipeline_build_id=build.id) from exc
    return row
