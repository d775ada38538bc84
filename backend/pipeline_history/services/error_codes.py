from __future__ import annotations

from sqlalchemy.exc import DBAPIError

LOCK_NOT_AVAILABLE_SQLSTATE = "55P03"


class MigrationErrorCode:
    GROUP_QUERY_FAIL = "GROUP_QUERY_FAIL"
    CANDIDATE_QUERY_FAIL = "CANDIDATE_QUERY_FAIL"
    LOCK_CONTENDED = "LOCK_CONTENDED"
    LEGACY_RECORD_MISSING = "LEGACY_RECORD_MISSING"
    DECODE_FAIL = "DECODE_FAIL"
    STAGE_NOT_FOUND = "STAGE_NOT_FOUND"
    RECONSTRUCT_FAIL = "RECONSTRUCT_FAIL"
    PARAMETER_DECODE_FAIL = "PARAMETER_DECODE_FAIL"
    EXISTS_QUERY_FAIL = "EXISTS_QUERY_FAIL"
    DB_WRITE_FAIL = "DB_WRITE_FAIL"
    DB_CONSTRAINT_FAIL = "DB_CONSTRAINT_FAIL"
    UNEXPECTED = "UNEXPECTED"


class HistoryMigrationError(RuntimeError):
    code = MigrationErrorCode.UNEXPECTED

    def __init__(self, message: str, *, code: str | None = None, pipeline_build_id: int | None = None):
        super().__init__(message)
        if code:
            self.code = code
        self.message = message
        self.pipeline_build_id = pipeline_build_id


class GroupQueryError(HistoryMigrationError):
    code = MigrationErrorCode.GROUP_QUERY_FAIL


class CandidateQueryError(HistoryMigrationError):
    code = MigrationErrorCode.CANDIDATE_QUERY_FAIL


class LockContendedError(HistoryMigrationError):
    code = MigrationErrorCode.LOCK_CONTENDED


class DecodeError(HistoryMigrationError):
    code = MigrationErrorCode.DECODE_FAIL


class ReconstructionError(HistoryMigrationError):
    code = MigrationErrorCode.RECONSTRUCT_FAIL


class ParameterDecodeError(HistoryMigrationError):
    code = MigrationErrorCode.PARAMETER_DECODE_FAIL


class WriteError(HistoryMigrationError):
    code = MigrationErrorCode.DB_WRITE_FAIL


def _sqlstate(exc: BaseException) -> str | None:
    orig = getattr(exc, "orig", None)
    if orig is None:
        return None
    # psycopg exposes sqlstate, psycopg2 exposes pgcode
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_lock_not_available(exc: BaseException) -> bool:
    if not isinstance(exc, DBAPIError):
        return False
    return _sqlstate(exc) == LOCK_NOT_AVAILABLE_SQLSTATE


def error_code_for(exc: BaseException) -> str:
    if isinstance(exc, HistoryMigrationError):
        return exc.code
    return MigrationErrorCode.UNEXPECTED
