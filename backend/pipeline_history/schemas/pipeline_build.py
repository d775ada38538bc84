import enum
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class BuildStatus(str, enum.Enum):
    SUCCESS = "Success"
    FAIL = "Fail"
    BUILDING = "Building"
    WAITING = "Waiting"
    SKIPPED = "Skipped"
    DISABLED = "Disabled"
    UNKNOWN = "Unknown"


class Parameter(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    type: str = ""
    value: str = ""


class Job(BaseModel):
    id: int
    action_name: str
    enabled: bool = True
    pipeline_action_id: int
    parameters: list[Parameter] = Field(default_factory=list)
    status: str
    start: datetime | None = None
    done: datetime | None = None


class Stage(BaseModel):
    id: int
    name: str = ""
    build_order: int = 0
    enabled: bool = True
    status: BuildStatus = BuildStatus.UNKNOWN
    jobs: list[Job] = Field(default_factory=list)


class BuildTrigger(BaseModel):
    manual_trigger: bool = False
    scheduled_trigger: bool = False
    triggered_by: int | None = None
    parent_pipeline_build_id: int | None = None
    vcs_changes_branch: str | None = None
    vcs_changes_hash: str | None = None
    vcs_changes_author: str | None = None


class Build(BaseModel):
    id: int
    pipeline_id: int
    application_id: int = 0
    environment_id: int = 0
    version: int = 0
    build_number: int = 0
    status: str = ""
    start: datetime | None = None
    done: datetime | None = None
    parameters: list[Parameter] = Field(default_factory=list)
    trigger: BuildTrigger = Field(default_factory=BuildTrigger)
    stages: list[Stage] = Field(default_factory=list)

    @property
    def is_done(self) -> bool:
        return self.done is not None
