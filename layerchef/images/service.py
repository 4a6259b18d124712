"""Runtime image records."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from layerchef.images.models import RuntimeImage

if TYPE_CHECKING:
    from layerchef.builds.models import BuildRecord
    from layerchef.images.packager import RuntimeImageInfo

logger = logging.getLogger(__name__)


def record_image(
    session: Session,
    build: BuildRecord,
    image: RuntimeImageInfo,
) -> RuntimeImage:
    """Persist a RuntimeImage row for a packaged image.

    Args:
        session: Database session.
        build: Build that produced the image.
        image: Packaged image.

    Returns:
        Created RuntimeImage record.
    """
    artifact = image.config["artifact"]
    record = RuntimeImage(
        build_id=build.id,
        project_name=build.project_name,
        image_id=image.image_id,
        path=str(image.path),
        binary=str(image.config["binary"]),
        artifact_sha256=str(artifact["sha256"]),
        size_bytes=int(artifact["size_bytes"]),
        entrypoint=image.entrypoint,
        working_dir=image.working_dir,
        archive_path=str(image.archive_path) if image.archive_path else None,
        reused=image.reused,
    )
    session.add(record)
    session.flush()
    logger.debug("Recorded image %s for build %d", image.image_id[:23], build.id)
    return record


def list_images(
    session: Session,
    project_name: str | None = None,
    limit: int = 100,
) -> list[RuntimeImage]:
    """List image records, newest first.

    Args:
        session: Database session.
        project_name: Filter by project name.
        limit: Maximum results to return.

    Returns:
        List of RuntimeImage instances.
    """
    stmt = select(RuntimeImage)
    if project_name is not None:
        stmt = stmt.where(RuntimeImage.project_name == project_name)
    stmt = stmt.order_by(RuntimeImage.id.desc()).limit(limit)
    return list(session.execute(stmt).scalars().all())


__all__ = ["list_images", "record_image"]
