"""Typed skeleton of a legacy pipeline history snapshot.

Only the fields the migration needs are declared; every model ignores
unknown keys so snapshots written by older or newer releases still decode.
Explicit ``null`` values fall back to the field default, the way the
legacy writer treated them.
"""

from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator


def _identity(value: Any) -> Any:
    # JSON numbers only; bools and numeric strings are not ids
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"id must be a number, got {type(value).__name__}")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"id is not an integer: {value}")
        return int(value)
    return value


LegacyId = Annotated[int, BeforeValidator(_identity)]


class LegacyModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


class LegacyRef(LegacyModel):
    id: LegacyId = 0


class LegacyTrigger(LegacyModel):
    manual_trigger: bool = False
    scheduled_trigger: bool = False
    triggered_by: LegacyRef | None = None
    parent_pipeline_build: LegacyRef | None = None
    vcs_branch: str | None = None
    vcs_hash: str | None = None
    vcs_author: str | None = None


class LegacyStage(LegacyModel):
    id: LegacyId
    name: str = ""
    build_order: int = 0
    enabled: bool = True


class LegacyPipelineBuild(LegacyModel):
    id: LegacyId
    pipeline: LegacyRef
    application: LegacyRef | None = None
    environment: LegacyRef | None = None
    build_number: int = 0
    version: int = 0
    status: str = ""
    start: Any = None
    done: Any = None
    # shape differs across releases, decoded during reconstruction
    parameters: Any = None
    trigger: LegacyTrigger = Field(default_factory=LegacyTrigger)
    previous_pipeline_build: LegacyRef | None = None
    stages: list[LegacyStage] | None = None
