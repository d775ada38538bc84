from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pipeline_history.db.base import Base


class PipelineHistoryOld(Base):
    """Deprecated history table: one JSON snapshot per past pipeline build."""

    __tablename__ = "pipeline_history_old"
    __table_args__ = (
        Index(
            "idx_pipeline_history_old_unit_version",
            "application_id",
            "pipeline_id",
            "environment_id",
            "vcs_changes_branch",
            "version",
        ),
    )

    pipeline_build_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    application_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    pipeline_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    environment_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    vcs_changes_branch: Mapped[str | None] = mapped_column(String(256))
    version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    data: Mapped[str] = mapped_column(Text, nullable=False)


class PipelineBuild(Base):
    __tablename__ = "pipeline_build"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    pipeline_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    application_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    environment_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    build_number: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    args: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    done: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    manual_trigger: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    scheduled_trigger: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    triggered_by: Mapped[int | None] = mapped_column(BigInteger)
    parent_pipeline_build_id: Mapped[int | None] = mapped_column(BigInteger)
    vcs_changes_branch: Mapped[str | None] = mapped_column(String(256))
    vcs_changes_hash: Mapped[str | None] = mapped_column(String(256))
    vcs_changes_author: Mapped[str | None] = mapped_column(String(256))
    stages: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
