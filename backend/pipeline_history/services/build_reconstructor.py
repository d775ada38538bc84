"""Rebuild a typed pipeline build from a decoded legacy snapshot.

The typed skeleton gives the stage list in payload order. Jobs only exist
in the untyped tree under ``stages[*].builds`` and are projected field by
field, since their shape changed between releases.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import TypeAdapter, ValidationError

from pipeline_history.schemas.legacy_history import LegacyPipelineBuild
from pipeline_history.schemas.pipeline_build import (
    Build,
    BuildStatus,
    BuildTrigger,
    Job,
    Parameter,
    Stage,
)
from pipeline_history.services.error_codes import (
    MigrationErrorCode,
    ParameterDecodeError,
    ReconstructionError,
)
from pipeline_history.services.timestamp_parser import parse_legacy_timestamp

_PARAMETER_LIST = TypeAdapter(list[Parameter])


def derive_stage_status(jobs: list[Job]) -> BuildStatus:
    for job in jobs:
        if job.status == BuildStatus.FAIL.value:
            return BuildStatus.FAIL
    return BuildStatus.SUCCESS


def decode_parameters(value: Any, *, pipeline_build_id: int | None = None) -> list[Parameter]:
    if value is None:
        return []

    # some releases stored the list as an embedded json string
    if isinstance(value, (str, bytes)):
        try:
            value = json.loads(value)
        except ValueError as exc:
            raise ParameterDecodeError(
                f"embedded parameter list is not json: {exc}", pipeline_build_id=pipeline_build_id
            ) from exc
        if value is None:
            return []

    try:
        payload = json.dumps(value)
    except (TypeError, ValueError) as exc:
        raise ParameterDecodeError(
            f"parameter list cannot be serialized: {exc}", pipeline_build_id=pipeline_build_id
        ) from exc

    try:
        return _PARAMETER_LIST.validate_json(payload)
    except ValidationError as exc:
        raise ParameterDecodeError(
            f"parameter list has unexpected shape: {exc.errors()[0].get('msg', exc)}",
            pipeline_build_id=pipeline_build_id,
        ) from exc


def _field(entry: dict[str, Any], key: str, where: str, pipeline_build_id: int | None) -> Any:
    value = entry.get(key)
    if value is None:
        raise ReconstructionError(f"{where}: missing {key}", pipeline_build_id=pipeline_build_id)
    return value


def _int_field(entry: dict[str, Any], key: str, where: str, pipeline_build_id: int | None) -> int:
    value = _field(entry, key, where, pipeline_build_id)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ReconstructionError(
            f"{where}: {key} must be a number, got {type(value).__name__}",
            pipeline_build_id=pipeline_build_id,
        )
    if isinstance(value, float) and not value.is_integer():
        raise ReconstructionError(f"{where}: {key} is not an integer: {value}", pipeline_build_id=pipeline_build_id)
    return int(value)


def _str_field(entry: dict[str, Any], key: str, where: str, pipeline_build_id: int | None) -> str:
    value = _field(entry, key, where, pipeline_build_id)
    if not isinstance(value, str):
        raise ReconstructionError(
            f"{where}: {key} must be a string, got {type(value).__name__}",
            pipeline_build_id=pipeline_build_id,
        )
    return value


def _as_list(value: Any, where: str, pipeline_build_id: int | None) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ReconstructionError(
            f"{where} must be a list, got {type(value).__name__}", pipeline_build_id=pipeline_build_id
        )
    return value


def _as_object(value: Any, where: str, pipeline_build_id: int | None) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ReconstructionError(
            f"{where} must be an object, got {type(value).__name__}", pipeline_build_id=pipeline_build_id
        )
    return value


def _build_job(entry: dict[str, Any], where: str, pipeline_build_id: int | None) -> Job:
    return Job(
        id=_int_field(entry, "id", where, pipeline_build_id),
        action_name=_str_field(entry, "action_name", where, pipeline_build_id),
        enabled=True,
        pipeline_action_id=_int_field(entry, "pipeline_action_id", where, pipeline_build_id),
        parameters=decode_parameters(entry.get("args"), pipeline_build_id=pipeline_build_id),
        status=_str_field(entry, "status", where, pipeline_build_id),
        start=parse_legacy_timestamp(entry.get("start")),
        done=parse_legacy_timestamp(entry.get("done")),
    )


def _build_trigger(skeleton: LegacyPipelineBuild) -> BuildTrigger:
    trigger = skeleton.trigger
    parent = trigger.parent_pipeline_build or skeleton.previous_pipeline_build
    return BuildTrigger(
        manual_trigger=trigger.manual_trigger,
        scheduled_trigger=trigger.scheduled_trigger,
        triggered_by=trigger.triggered_by.id if trigger.triggered_by else None,
        parent_pipeline_build_id=parent.id if parent else None,
        vcs_changes_branch=trigger.vcs_branch,
        vcs_changes_hash=trigger.vcs_hash,
        vcs_changes_author=trigger.vcs_author,
    )


def _attach_jobs(stages: list[Stage], raw_stages: Any, pipeline_build_id: int | None) -> None:
    stages_by_id = {stage.id: stage for stage in stages}

    for index, raw_stage in enumerate(_as_list(raw_stages, "stages", pipeline_build_id)):
        where = f"stages[{index}]"
        stage_entry = _as_object(raw_stage, where, pipeline_build_id)
        stage_id = _int_field(stage_entry, "id", where, pipeline_build_id)

        stage = stages_by_id.get(stage_id)
        if stage is None:
            raise ReconstructionError(
                f"stage to update not found: {stage_id}",
                code=MigrationErrorCode.STAGE_NOT_FOUND,
                pipeline_build_id=pipeline_build_id,
            )

        jobs: list[Job] = []
        for job_index, raw_job in enumerate(_as_list(stage_entry.get("builds"), f"{where}.builds", pipeline_build_id)):
            job_where = f"{where}.builds[{job_index}]"
            jobs.append(_build_job(_as_object(raw_job, job_where, pipeline_build_id), job_where, pipeline_build_id))
        stage.jobs = jobs


def reconstruct_pipeline_build(
    skeleton: LegacyPipelineBuild,
    tree: dict[str, Any],
    *,
    pipeline_build_id: int | None = None,
) -> Build:
    raw_stages = tree.get("stages")
    if raw_stages is None:
        stages: list[Stage] = []
    else:
        stages = [
            Stage(id=legacy.id, name=legacy.name, build_order=legacy.build_order, enabled=legacy.enabled)
            for legacy in skeleton.stages or []
        ]
        _attach_jobs(stages, raw_stages, pipeline_build_id)

    for stage in stages:
        stage.status = derive_stage_status(stage.jobs)

    return Build(
        id=skeleton.id,
        pipeline_id=skeleton.pipeline.id,
        application_id=skeleton.application.id if skeleton.application else 0,
        environment_id=skeleton.environment.id if skeleton.environment else 0,
        version=skeleton.version,
        build_number=skeleton.build_number,
        status=skeleton.status,
        start=parse_legacy_timestamp(skeleton.start),
        done=parse_legacy_timestamp(skeleton.done),
        parameters=decode_parameters(skeleton.parameters, pipeline_build_id=pipeline_build_id),
        trigger=_build_trigger(skeleton),
        stages=stages,
    )
