"""Dependency layer ORM model.

The filesystem store is the source of truth for layer contents; this table
tracks usage so layers can be listed and pruned.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from layerchef.db import Base


class DependencyLayer(Base):
    """ORM model for committed dependency layers.

    Attributes:
        id: Primary key.
        layer_key: Layer key (sha256:...), unique.
        recipe_digest: Digest of the recipe the layer was cooked from.
        environment_key: Key of the environment the cook ran in.
        project_name: Project that first produced the layer.
        path: Layer directory.
        size_bytes: Size of the cached content.
        hit_count: Number of builds that reused the layer.
        created_at: When the layer was committed.
        last_used_at: When a build last used the layer.
    """

    __tablename__ = "dependency_layers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    layer_key: Mapped[str] = mapped_column(
        String(128), nullable=False, unique=True, index=True
    )
    recipe_digest: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    environment_key: Mapped[str] = mapped_column(String(128), nullable=False)
    project_name: Mapped[str | None] = mapped_column(String(100), nullable=True)

    path: Mapped[str] = mapped_column(String(500), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    hit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        """Return string representation of DependencyLayer."""
        return (
            f"<DependencyLayer(id={self.id}, layer_key='{self.layer_key[:23]}...', "
            f"hits={self.hit_count})>"
        )

    def mark_used(self, hit: bool) -> None:
        """Record that a build used this layer."""
        self.last_used_at = datetime.now()
        if hit:
            self.hit_count = (self.hit_count or 0) + 1


__all__ = ["DependencyLayer"]
