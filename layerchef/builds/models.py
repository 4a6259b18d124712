"""Build ORM models.

This module defines the BuildRecord model for storing pipeline runs in
the database.
"""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from layerchef.db import Base
from layerchef.types import BuildStatus

if TYPE_CHECKING:
    from layerchef.images.models import RuntimeImage


class BuildRecord(Base):
    """ORM model for pipeline runs.

    A BuildRecord captures a single pipeline execution: the source tree,
    the recipe and layer it used, the stage it reached, and how it ended.

    Attributes:
        id: Primary key.
        project_name: Project the build belongs to.
        binary: Binary the build produces.
        source_root: Source tree the build read.
        status: Build status (pending, running, succeeded, failed, cancelled).
        stage: Stage currently running, or the stage that failed.
        requested_at: Timestamp when the build was requested.
        started_at: Timestamp when the pipeline started.
        finished_at: Timestamp when the pipeline finished.
        environment_key: Key of the prepared environment.
        recipe_digest: Digest of the extracted recipe.
        layer_key: Key of the dependency layer.
        layer_cache_hit: Whether the dependency layer was reused.
        build_dir: Directory with logs, recipe and manifest.
        log_path: Log file of the last stage that ran a command.
        error_type: Error code if the build failed.
        error_message: Error message if the build failed.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    project_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    binary: Mapped[str] = mapped_column(String(255), nullable=False)
    source_root: Mapped[str] = mapped_column(String(500), nullable=False)

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value, index=True
    )
    stage: Mapped[str | None] = mapped_column(String(20), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Cache identity
    environment_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    recipe_digest: Mapped[str | None] = mapped_column(
        String(128), nullable=True, index=True
    )
    layer_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    layer_cache_hit: Mapped[bool] = mapped_column(nullable=False, default=False)

    # Build paths
    build_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    images: Mapped[list["RuntimeImage"]] = relationship(
        "RuntimeImage", back_populates="build", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_build_records_project_status", "project_name", "status"),
    )

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, project='{self.project_name}', "
            f"status='{self.status}', stage='{self.stage}')>"
        )

    def mark_running(self) -> None:
        """Mark this build as running."""
        self.status = BuildStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_stage(self, stage: str) -> None:
        """Record the stage the build is entering."""
        self.stage = stage

    def mark_succeeded(self) -> None:
        """Mark this build as succeeded."""
        self.status = BuildStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this build as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = BuildStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def mark_cancelled(self, message: str | None = None) -> None:
        """Mark this build as cancelled."""
        self.status = BuildStatus.CANCELLED.value
        self.finished_at = datetime.now()
        self.error_type = "cancelled"
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.status == BuildStatus.SUCCEEDED.value


__all__ = ["BuildRecord"]
