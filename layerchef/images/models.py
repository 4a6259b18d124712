"""Runtime image ORM model."""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from layerchef.db import Base

if TYPE_CHECKING:
    from layerchef.builds.models import BuildRecord


class RuntimeImage(Base):
    """ORM model for packaged runtime images.

    One row is written per successful build. Builds that produce an
    identical image share the same ``image_id`` and path.

    Attributes:
        id: Primary key.
        build_id: Foreign key to BuildRecord.
        project_name: Project the image belongs to.
        image_id: Content hash of the image config.
        path: Image directory.
        binary: Binary name.
        artifact_sha256: SHA-256 of the packaged binary.
        size_bytes: Size of the packaged binary.
        entrypoint: Exec-form entrypoint.
        working_dir: Working directory inside the image.
        archive_path: Reproducible archive, if written.
        reused: Whether the image already existed.
        created_at: When the row was written.
    """

    __tablename__ = "runtime_images"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    build_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("build_records.id"), nullable=False, index=True
    )
    project_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    image_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    path: Mapped[str] = mapped_column(String(500), nullable=False)

    binary: Mapped[str] = mapped_column(String(255), nullable=False)
    artifact_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    entrypoint: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    working_dir: Mapped[str] = mapped_column(String(255), nullable=False)
    archive_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    reused: Mapped[bool] = mapped_column(nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    build: Mapped["BuildRecord"] = relationship("BuildRecord", back_populates="images")

    def __repr__(self) -> str:
        """Return string representation of RuntimeImage."""
        return (
            f"<RuntimeImage(id={self.id}, project='{self.project_name}', "
            f"image_id='{self.image_id[:23]}...')>"
        )


__all__ = ["RuntimeImage"]
