"""Application builder stage and build record queries.

This module provides:
- compile_application(): stage the source tree over a restored dependency
  layer and run the release build
- Build record lookup and listing
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from layerchef.builds.models import BuildRecord
from layerchef.builds.runner import CommandError, run_commands
from layerchef.builds.workspace import WorkspaceStagingError, stage_source_tree
from layerchef.cache.store import LayerStore, LayerStoreError
from layerchef.errors import CompilationError, PipelineCancelled
from layerchef.types import BuildStatus

if TYPE_CHECKING:
    from layerchef.config import Settings
    from layerchef.projects.toolchain import ResolvedToolchain

logger = logging.getLogger(__name__)


class BuildNotFoundError(Exception):
    """Raised when a build is not found."""

    def __init__(self, build_id: int, code: str = "build_not_found") -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id
        self.code = code


@dataclass
class CompiledApplication:
    """Result of the application build.

    Attributes:
        workspace: Workspace the build ran in.
        artifact_path: Where the toolchain places the binary.
        restored_paths: Paths restored from the dependency layer.
    """

    workspace: Path
    artifact_path: Path
    restored_paths: list[str]

    def cleanup(self) -> None:
        """Remove the workspace."""
        shutil.rmtree(self.workspace, ignore_errors=True)


def compile_application(
    source_root: Path,
    toolchain: ResolvedToolchain,
    layer_key: str,
    settings: Settings,
    log_path: Path,
    excludes: list[str] | None = None,
    store: LayerStore | None = None,
    cancel: threading.Event | None = None,
) -> CompiledApplication:
    """Build the application in a fresh workspace.

    The source tree is staged into the workspace, the dependency layer's
    cached paths are restored on top, then the build commands run. The
    source tree itself is never written to.

    Args:
        source_root: Source tree root.
        toolchain: Resolved toolchain.
        layer_key: Key of the dependency layer to restore.
        settings: Application settings.
        log_path: Log file for build output.
        excludes: Glob patterns skipped when staging sources.
        store: Layer store (defaults to one rooted at settings.cache_dir).
        cancel: Cancellation event.

    Returns:
        CompiledApplication with the workspace and expected artifact path.

    Raises:
        CompilationError: If staging, restoring or a build command fails.
        PipelineCancelled: If cancelled while the build runs.
    """
    if store is None:
        store = LayerStore(settings.cache_dir)

    if settings.tmp_dir is not None:
        settings.tmp_dir.mkdir(parents=True, exist_ok=True)
    workspace = Path(tempfile.mkdtemp(prefix="layerchef_build_", dir=settings.tmp_dir))

    try:
        try:
            stage_source_tree(source_root, workspace, excludes)
        except WorkspaceStagingError as e:
            raise CompilationError(str(e), reason=e.code) from e

        try:
            restored = store.restore_layer(
                layer_key, workspace, lock_timeout=settings.lock_timeout
            )
        except LayerStoreError as e:
            raise CompilationError(str(e), reason=e.code) from e

        commands = toolchain.commands(toolchain.build, workspace)
        logger.info("Building %s (%d commands)", toolchain.binary, len(commands))
        try:
            run_commands(
                commands,
                cwd=workspace,
                log_path=log_path,
                timeout=settings.build_timeout,
                env_override=toolchain.environment(workspace),
                cancel=cancel,
            )
        except CommandError as e:
            raise CompilationError(
                f"Compilation failed: {e}", log_path=str(log_path)
            ) from e
    except (CompilationError, PipelineCancelled):
        shutil.rmtree(workspace, ignore_errors=True)
        raise

    artifact_path = workspace.joinpath(
        *PurePosixPath(toolchain.resolved_artifact_path()).parts
    )
    logger.info("Build finished; expected artifact at %s", artifact_path)
    return CompiledApplication(
        workspace=workspace,
        artifact_path=artifact_path,
        restored_paths=restored,
    )


def get_build(session: Session, build_id: int) -> BuildRecord:
    """Get a build record by ID.

    Args:
        session: Database session.
        build_id: Build ID.

    Returns:
        BuildRecord instance.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = session.get(BuildRecord, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def list_builds(
    session: Session,
    project_name: str | None = None,
    status: BuildStatus | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records with optional filters.

    Args:
        session: Database session.
        project_name: Filter by project name.
        status: Filter by status.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances, newest first.
    """
    stmt = select(BuildRecord)

    if project_name is not None:
        stmt = stmt.where(BuildRecord.project_name == project_name)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


__all__ = [
    "BuildNotFoundError",
    "CompiledApplication",
    "compile_application",
    "get_build",
    "list_builds",
]
