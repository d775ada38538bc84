import json

import pytest

pytest.importorskip("sqlalchemy")
structlog = pytest.importorskip("structlog")

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from history_fixtures import job_entry, legacy_payload, one_stage
from pipeline_history.db.base import Base
from pipeline_history.db.models import PipelineBuild, PipelineHistoryOld
from pipeline_history.services import history_migration_service as service
from pipeline_history.services.error_codes import (
    CandidateQueryError,
    GroupQueryError,
    LockContendedError,
    MigrationErrorCode,
)
from pipeline_history.services.migration_report import OutcomeStatus, SkipReason


def _builds(session_factory) -> dict[int, PipelineBuild]:
    with session_factory() as db:
        rows = db.execute(select(PipelineBuild)).scalars().all()
    return {row.id: row for row in rows}


def _add_valid(add_history, build_id: int, **kwargs) -> None:
    add_history(build_id, legacy_payload(build_id, stages=one_stage(job_entry(build_id * 10))), **kwargs)


def test_migrates_every_group_within_window(session_factory, add_history):
    for build_id in range(1, 13):
        _add_valid(add_history, build_id)
    _add_valid(add_history, 50, application_id=4)
    _add_valid(add_history, 60, branch=None)

    report = service.run_pipeline_history_migration(session_factory)

    assert report.total_groups == 3
    assert report.migrated == 12
    assert report.failed == 0
    assert sorted(_builds(session_factory)) == list(range(3, 13)) + [50, 60]


def test_migrated_row_matches_legacy_snapshot(session_factory, add_history):
    stages = one_stage(job_entry(9, "Fail"), job_entry(10, "Success"))
    add_history(42, legacy_payload(42, stages=stages))

    service.run_pipeline_history_migration(session_factory)

    row = _builds(session_factory)[42]
    assert row.pipeline_id == 7
    assert row.application_id == 3
    assert row.status == "Success"
    assert row.manual_trigger is True
    stored_stages = json.loads(row.stages)
    assert stored_stages[0]["status"] == "Fail"
    assert [job["id"] for job in stored_stages[0]["jobs"]] == [9, 10]
    assert stored_stages[0]["jobs"][0]["parameters"] == [{"name": "X", "type": "", "value": "1"}]
    assert json.loads(row.args) == [{"name": "cds.version", "type": "string", "value": "42"}]


def test_second_run_inserts_nothing(session_factory, add_history):
    for build_id in range(1, 4):
        _add_valid(add_history, build_id)

    first = service.run_pipeline_history_migration(session_factory)
    snapshot = {build_id: row.stages for build_id, row in _builds(session_factory).items()}
    second = service.run_pipeline_history_migration(session_factory)

    assert first.migrated == 3
    assert second.migrated == 0
    assert second.skipped_by_reason == {SkipReason.ALREADY_MIGRATED: 3}
    assert {build_id: row.stages for build_id, row in _builds(session_factory).items()} == snapshot


def test_malformed_record_does_not_block_siblings(session_factory, add_history):
    _add_valid(add_history, 1)
    add_history(2, "{this is not json")
    _add_valid(add_history, 3)

    report = service.run_pipeline_history_migration(session_factory)

    assert sorted(_builds(session_factory)) == [1, 3]
    failed = [row for row in report.results if row.status == OutcomeStatus.FAILED]
    assert [(row.pipeline_build_id, row.error_code) for row in failed] == [(2, MigrationErrorCode.DECODE_FAIL)]
    assert report.has_failures is True


def test_reconstruction_failures_roll_back_only_that_record(session_factory, add_history):
    _add_valid(add_history, 1)
    add_history(2, legacy_payload(2, stages=one_stage(job_entry(20, args={"X": "1"}))))
    add_history(3, legacy_payload(3, stages=one_stage(job_entry(30, action_name=None))))

    report = service.run_pipeline_history_migration(session_factory)

    assert sorted(_builds(session_factory)) == [1]
    codes = {row.pipeline_build_id: row.error_code for row in report.results if row.status == OutcomeStatus.FAILED}
    assert codes == {2: MigrationErrorCode.PARAMETER_DECODE_FAIL, 3: MigrationErrorCode.RECONSTRUCT_FAIL}


def test_existing_target_row_is_left_untouched(session_factory, add_history, monkeypatch):
    _add_valid(add_history, 42)
    with session_factory() as db:
        db.add(PipelineBuild(id=42, pipeline_id=7, application_id=3, environment_id=1, status="Building"))
        db.commit()

    def _must_not_run(*args, **kwargs):
        raise AssertionError("already migrated record was processed")

    monkeypatch.setattr(service, "decode_legacy_record", _must_not_run)
    monkeypatch.setattr(service, "reconstruct_pipeline_build", _must_not_run)
    monkeypatch.setattr(service, "insert_pipeline_build", _must_not_run)

    report = service.run_pipeline_history_migration(session_factory)

    assert report.skipped_by_reason == {SkipReason.ALREADY_MIGRATED: 1}
    row = _builds(session_factory)[42]
    assert row.status == "Building"
    assert row.stages == "[]"


def test_snapshot_id_already_migrated_is_skipped(session_factory, add_history):
    add_history(5, legacy_payload(77, stages=one_stage(job_entry(1))))
    with session_factory() as db:
        db.add(PipelineBuild(id=77, pipeline_id=7, application_id=3, environment_id=1, status="Success"))
        db.commit()

    report = service.run_pipeline_history_migration(session_factory)

    assert report.skipped_by_reason == {SkipReason.ALREADY_MIGRATED: 1}
    assert sorted(_builds(session_factory)) == [77]


def test_locked_record_is_skipped_and_retried_next_run(session_factory, add_history, monkeypatch):
    _add_valid(add_history, 1)
    _add_valid(add_history, 2)
    original_lock = service.lock_history_record

    def _contended(db, pipeline_build_id):
        if pipeline_build_id == 2:
            raise LockContendedError("locked", pipeline_build_id=pipeline_build_id)
        return original_lock(db, pipeline_build_id)

    monkeypatch.setattr(service, "lock_history_record", _contended)
    first = service.run_pipeline_history_migration(session_factory)

    assert first.skipped_by_reason == {SkipReason.LOCK_CONTENDED: 1}
    assert first.has_failures is False
    assert sorted(_builds(session_factory)) == [1]

    monkeypatch.setattr(service, "lock_history_record", original_lock)
    second = service.run_pipeline_history_migration(session_factory)

    assert second.migrated_ids == [2]
    assert sorted(_builds(session_factory)) == [1, 2]


def test_concurrent_insert_race_is_a_write_failure(session_factory, add_history, monkeypatch):
    _add_valid(add_history, 1)
    original_exists = service.pipeline_build_exists

    def _racing_exists(db, build_id):
        exists = original_exists(db, build_id)
        with session_factory() as other:
            if other.get(PipelineBuild, build_id) is None:
                other.add(PipelineBuild(id=build_id, pipeline_id=7, application_id=3, environment_id=1, status="Success"))
                other.commit()
        return exists

    monkeypatch.setattr(service, "pipeline_build_exists", _racing_exists)
    report = service.run_pipeline_history_migration(session_factory)

    assert report.results[0].status == OutcomeStatus.FAILED
    assert report.results[0].error_code == MigrationErrorCode.DB_CONSTRAINT_FAIL
    with session_factory() as db:
        assert db.execute(select(func.count()).select_from(PipelineBuild)).scalar_one() == 1


def test_payload_without_stages_key_is_skipped(session_factory, add_history):
    add_history(1, legacy_payload(1))
    null_stages = legacy_payload(2)
    null_stages["stages"] = None
    add_history(2, null_stages)

    report = service.run_pipeline_history_migration(session_factory)

    assert report.skipped_by_reason == {SkipReason.NO_STAGES: 1}
    assert report.migrated_ids == [2]
    assert _builds(session_factory)[2].stages == "[]"


def test_dry_run_writes_nothing(session_factory, add_history):
    _add_valid(add_history, 1)
    add_history(2, "[]")

    report = service.run_pipeline_history_migration(session_factory, dry_run=True)

    assert report.skipped_by_reason == {SkipReason.DRY_RUN: 1}
    assert report.failed == 1
    assert _builds(session_factory) == {}


def test_legacy_rows_are_never_modified(session_factory, add_history):
    _add_valid(add_history, 1)
    add_history(2, "{broken")
    with session_factory() as db:
        before = db.execute(select(PipelineHistoryOld.pipeline_build_id, PipelineHistoryOld.data)).all()

    service.run_pipeline_history_migration(session_factory)

    with session_factory() as db:
        after = db.execute(select(PipelineHistoryOld.pipeline_build_id, PipelineHistoryOld.data)).all()
    assert sorted(after) == sorted(before)


def test_candidate_query_failure_skips_only_that_group(session_factory, add_history, monkeypatch):
    _add_valid(add_history, 1, application_id=1)
    _add_valid(add_history, 2, application_id=2)
    original_candidates = service.list_history_candidates

    def _candidates(db, group, limit=10):
        if group.application_id == 1:
            raise CandidateQueryError("relation does not exist")
        return original_candidates(db, group, limit=limit)

    monkeypatch.setattr(service, "list_history_candidates", _candidates)
    report = service.run_pipeline_history_migration(session_factory)

    assert report.failed_groups == 1
    assert report.group_errors[0]["application_id"] == 1
    assert report.migrated_ids == [2]


def test_group_query_failure_aborts_run(session_factory, monkeypatch):
    def _groups(db):
        raise GroupQueryError("relation pipeline_history_old does not exist")

    monkeypatch.setattr(service, "list_history_groups", _groups)
    with pytest.raises(GroupQueryError):
        service.run_pipeline_history_migration(session_factory)


def test_unexpected_errors_are_contained(session_factory, add_history, monkeypatch):
    _add_valid(add_history, 1)
    _add_valid(add_history, 2)
    original_reconstruct = service.reconstruct_pipeline_build

    def _flaky(skeleton, tree, *, pipeline_build_id=None):
        if pipeline_build_id == 2:
            raise KeyError("boom")
        return original_reconstruct(skeleton, tree, pipeline_build_id=pipeline_build_id)

    monkeypatch.setattr(service, "reconstruct_pipeline_build", _flaky)
    report = service.run_pipeline_history_migration(session_factory)

    assert report.migrated_ids == [1]
    assert [row.error_code for row in report.results if row.status == OutcomeStatus.FAILED] == [
        MigrationErrorCode.UNEXPECTED
    ]


def test_failures_log_critical_and_progress_logs_info(session_factory, add_history):
    _add_valid(add_history, 1)
    add_history(2, "{broken")

    with structlog.testing.capture_logs() as logs:
        service.run_pipeline_history_migration(session_factory)

    critical = [entry for entry in logs if entry["log_level"] == "critical"]
    assert [(entry["event"], entry["pipeline_build_id"]) for entry in critical] == [
        ("pipeline_history_migrate_failed", 2)
    ]
    migrated = [entry for entry in logs if entry["event"] == "pipeline_history_migrated"]
    assert [(entry["log_level"], entry["pipeline_build_id"]) for entry in migrated] == [("info", 1)]


def test_invalid_window_and_workers_fall_back(session_factory, add_history):
    _add_valid(add_history, 1)
    report = service.run_pipeline_history_migration(session_factory, window_size=0, workers=0)

    assert report.args["window_size"] == 10
    assert report.args["workers"] == 1
    assert report.migrated == 1


def test_boolean_snapshot_id_fails_instead_of_migrating_as_one(session_factory, add_history):
    payload = legacy_payload(5, stages=one_stage(job_entry(50)))
    payload["id"] = True
    add_history(5, payload)

    report = service.run_pipeline_history_migration(session_factory)

    assert [(row.pipeline_build_id, row.error_code) for row in report.results] == [
        (5, MigrationErrorCode.DECODE_FAIL)
    ]
    assert _builds(session_factory) == {}


def _file_session_factory(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'history.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def test_parallel_workers_match_sequential_run(session_factory, tmp_path):
    engine, parallel_factory = _file_session_factory(tmp_path)
    rows = []
    for application_id in range(1, 5):
        for offset in range(1, 13):
            build_id = application_id * 100 + offset
            data = json.dumps(legacy_payload(build_id, stages=one_stage(job_entry(build_id))))
            if build_id == 305:
                data = "{broken"
            rows.append((build_id, application_id, data))

    for factory in (session_factory, parallel_factory):
        with factory() as db:
            for build_id, application_id, data in rows:
                db.add(
                    PipelineHistoryOld(
                        pipeline_build_id=build_id,
                        application_id=application_id,
                        pipeline_id=7,
                        environment_id=1,
                        vcs_changes_branch="master",
                        version=build_id,
                        data=data,
                    )
                )
            db.commit()

    try:
        sequential = service.run_pipeline_history_migration(session_factory, workers=1)
        parallel = service.run_pipeline_history_migration(parallel_factory, workers=2)

        assert parallel.args["workers"] == 2
        assert parallel.total_groups == sequential.total_groups == 4
        assert (parallel.migrated, parallel.skipped, parallel.failed) == (
            sequential.migrated,
            sequential.skipped,
            sequential.failed,
        )
        assert [(row.pipeline_build_id, row.status, row.error_code) for row in parallel.results] == [
            (row.pipeline_build_id, row.status, row.error_code) for row in sequential.results
        ]
        assert sorted(_builds(parallel_factory)) == sorted(_builds(session_factory))
        assert len(_builds(parallel_factory)) == 39
    finally:
        engine.dispose()
