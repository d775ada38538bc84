import json

import pytest

sqlalchemy = pytest.importorskip("sqlalchemy")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pipeline_history.db.base import Base
from pipeline_history.db.models import PipelineHistoryOld


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def add_history(session_factory):
    def _add(
        build_id: int,
        data,
        *,
        application_id: int = 3,
        pipeline_id: int = 7,
        environment_id: int = 1,
        branch: str | None = "master",
        version: int | None = None,
    ) -> None:
        raw = data if isinstance(data, str) else json.dumps(data)
        with session_factory() as db:
            db.add(
                PipelineHistoryOld(
                    pipeline_build_id=build_id,
                    application_id=application_id,
                    pipeline_id=pipeline_id,
                    environment_id=environment_id,
                    vcs_changes_branch=branch,
                    version=build_id if version is None else version,
                    data=raw,
                )
            )
            db.commit()

    return _add
