from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any

from pipeline_history.services.legacy_history_store import HistoryGroup

MAX_DETAIL_ROWS = 2000


class OutcomeStatus(str, enum.Enum):
    MIGRATED = "migrated"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason:
    LOCK_CONTENDED = "lock_contended"
    ALREADY_MIGRATED = "already_migrated"
    NO_STAGES = "no_stages"
    DRY_RUN = "dry_run"


@dataclass
class RecordOutcome:
    pipeline_build_id: int
    status: OutcomeStatus
    reason: str | None = None
    error_code: str | None = None
    message: str = ""

    @classmethod
    def migrated(cls, pipeline_build_id: int) -> RecordOutcome:
        return cls(pipeline_build_id=pipeline_build_id, status=OutcomeStatus.MIGRATED)

    @classmethod
    def skipped(cls, pipeline_build_id: int, reason: str, message: str = "") -> RecordOutcome:
        return cls(pipeline_build_id=pipeline_build_id, status=OutcomeStatus.SKIPPED, reason=reason, message=message)

    @classmethod
    def failed(cls, pipeline_build_id: int, error_code: str, message: str) -> RecordOutcome:
        return cls(
            pipeline_build_id=pipeline_build_id,
            status=OutcomeStatus.FAILED,
            error_code=error_code,
            message=message,
        )


@dataclass
class GroupResult:
    group: HistoryGroup
    outcomes: list[RecordOutcome] = field(default_factory=list)
    error_code: str | None = None
    message: str = ""

    @property
    def failed(self) -> bool:
        return self.error_code is not None


@dataclass
class MigrationReport:
    started_at: str
    finished_at: str = ""
    args: dict[str, Any] = field(default_factory=dict)
    total_groups: int = 0
    migrated: int = 0
    skipped: int = 0
    failed: int = 0
    failed_groups: int = 0
    skipped_by_reason: dict[str, int] = field(default_factory=dict)
    results: list[RecordOutcome] = field(default_factory=list)
    group_errors: list[dict[str, Any]] = field(default_factory=list)

    def add(self, outcome: RecordOutcome) -> None:
        self.results.append(outcome)
        if outcome.status == OutcomeStatus.MIGRATED:
            self.migrated += 1
        elif outcome.status == OutcomeStatus.SKIPPED:
            self.skipped += 1
            reason = outcome.reason or "unknown"
            self.skipped_by_reason[reason] = self.skipped_by_reason.get(reason, 0) + 1
        elif outcome.status == OutcomeStatus.FAILED:
            self.failed += 1

    def add_group(self, result: GroupResult) -> None:
        if result.failed:
            self.failed_groups += 1
            self.group_errors.append(
                {**result.group.as_log_context(), "error_code": result.error_code, "error": result.message}
            )
        for outcome in result.outcomes:
            self.add(outcome)

    @property
    def has_failures(self) -> bool:
        return self.failed > 0 or self.failed_groups > 0

    @property
    def migrated_ids(self) -> list[int]:
        return [row.pipeline_build_id for row in self.results if row.status == OutcomeStatus.MIGRATED]

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "args": self.args,
            "summary": {
                "total_groups": self.total_groups,
                "processed": len(self.results),
                "migrated": self.migrated,
                "skipped": self.skipped,
                "failed": self.failed,
                "failed_groups": self.failed_groups,
                "skipped_by_reason": dict(sorted(self.skipped_by_reason.items())),
            },
            "group_errors": self.group_errors,
            "results": [{**asdict(row), "status": row.status.value} for row in self.results],
        }

    def to_text(self) -> str:
        lines: list[str] = []
        lines.append("# Pipeline History Migration Report")
        lines.append(f"- started_at: {self.started_at}")
        lines.append(f"- finished_at: {self.finished_at}")
        lines.append(f"- total_groups: {self.total_groups}")
        lines.append(f"- migrated: {self.migrated}")
        lines.append(f"- skipped: {self.skipped}")
        for reason, count in sorted(self.skipped_by_reason.items()):
            lines.append(f"  - {reason}: {count}")
        lines.append(f"- failed: {self.failed}")
        lines.append(f"- failed_groups: {self.failed_groups}")
        lines.append("")

        if self.group_errors:
            lines.append("## Group errors")
            for row in self.group_errors:
                lines.append(
                    f"- app={row['application_id']} pip={row['pipeline_id']} env={row['environment_id']} "
                    f"branch={row['vcs_changes_branch'] or '-'} code={row['error_code']} msg={row['error']}"
                )
            lines.append("")

        lines.append("## Details")
        if not self.results:
            lines.append("- no rows")
            return "\n".join(lines) + "\n"

        for row in self.results[:MAX_DETAIL_ROWS]:
            lines.append(
                f"- [{row.status.value}] id={row.pipeline_build_id} "
                f"reason={row.reason or '-'} code={row.error_code or '-'} msg={row.message}"
            )
        if len(self.results) > MAX_DETAIL_ROWS:
            lines.append(f"- ... truncated {len(self.results) - MAX_DETAIL_ROWS} rows")

        return "\n".join(lines) + "\n"
