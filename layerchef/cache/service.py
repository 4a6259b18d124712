"""Dependency cache builder stage.

This module provides the high-level layer API:
- ensure_dependency_layer(): reuse the layer for a recipe or cook a new one
- Per-key locking so a layer is assembled at most once
- DependencyLayer record persistence
- Listing and pruning of committed layers

The cook only ever sees a skeleton tree materialized from the recipe, so
the layer is a function of the recipe and the environment alone.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from layerchef.builds.runner import CommandError, run_commands
from layerchef.cache.cache_key import LayerInputs, compute_layer_key_for_recipe
from layerchef.cache.models import DependencyLayer
from layerchef.cache.store import LayerInfo, LayerStore, LayerStoreError, layer_lock
from layerchef.errors import DependencyBuildError
from layerchef.recipe.skeleton import materialize_recipe

if TYPE_CHECKING:
    from layerchef.config import Settings
    from layerchef.environment.service import Environment
    from layerchef.projects.toolchain import ResolvedToolchain
    from layerchef.recipe.models import Recipe

logger = logging.getLogger(__name__)


class LayerNotFoundError(Exception):
    """Raised when a layer is not found."""

    def __init__(self, key: str, code: str = "layer_not_found") -> None:
        super().__init__(f"Layer not found: {key}")
        self.key = key
        self.code = code


@dataclass
class LayerResult:
    """Outcome of the dependency cache stage.

    Attributes:
        key: Layer key.
        path: Layer directory.
        cache_hit: Whether an existing layer was reused.
        inputs: Inputs the key was computed from.
        size_bytes: Size of the cached content.
    """

    key: str
    path: Path
    cache_hit: bool
    inputs: LayerInputs
    size_bytes: int = 0


def _record_layer_use(
    session: Session,
    info: LayerInfo,
    inputs: LayerInputs,
    hit: bool,
    project_name: str | None = None,
) -> DependencyLayer:
    """Create or update the DependencyLayer row for a layer."""
    stmt = select(DependencyLayer).where(DependencyLayer.layer_key == info.key)
    record = session.execute(stmt).scalar_one_or_none()
    if record is None:
        record = DependencyLayer(
            layer_key=info.key,
            recipe_digest=inputs.recipe_digest,
            environment_key=inputs.environment_key,
            project_name=project_name,
            path=str(info.path),
            size_bytes=info.size_bytes,
            hit_count=0,
        )
        session.add(record)
    elif not hit:
        # Re-cooked in place
        record.path = str(info.path)
        record.size_bytes = info.size_bytes
    record.mark_used(hit)
    session.flush()
    return record


def cook_layer(
    recipe: Recipe,
    toolchain: ResolvedToolchain,
    store: LayerStore,
    key: str,
    settings: Settings,
    log_path: Path,
    metadata: dict[str, str] | None = None,
    cancel: threading.Event | None = None,
    replace: bool = False,
) -> LayerInfo:
    """Cook dependencies in a recipe skeleton and commit the layer.

    The caller must hold the layer lock for ``key``. With ``replace`` an
    existing layer is swapped out, but only after the cook succeeded.

    Raises:
        DependencyBuildError: If a cook command fails or the layer cannot
            be committed.
        PipelineCancelled: If cancelled while the cook runs.
    """
    if settings.tmp_dir is not None:
        settings.tmp_dir.mkdir(parents=True, exist_ok=True)
    scratch = Path(tempfile.mkdtemp(prefix="layerchef_cook_", dir=settings.tmp_dir))
    try:
        try:
            materialize_recipe(recipe, scratch)
        except (OSError, ValueError) as e:
            raise DependencyBuildError(
                f"Failed to materialize recipe: {e}", reason="recipe_materialize_error"
            ) from e

        commands = toolchain.commands(toolchain.cook, scratch)
        logger.info("Cooking dependencies for layer %s (%d commands)", key[:23], len(commands))
        try:
            run_commands(
                commands,
                cwd=scratch,
                log_path=log_path,
                timeout=settings.cook_timeout,
                env_override=toolchain.environment(scratch),
                cancel=cancel,
            )
        except CommandError as e:
            raise DependencyBuildError(
                f"Dependency build failed: {e}", log_path=str(log_path)
            ) from e

        try:
            return store.commit_layer(
                key,
                scratch,
                list(toolchain.cache_paths),
                metadata=metadata,
                replace=replace,
            )
        except LayerStoreError as e:
            raise DependencyBuildError(str(e), reason=e.code) from e
    finally:
        shutil.rmtree(scratch, ignore_errors=True)


def ensure_dependency_layer(
    recipe: Recipe,
    environment: Environment,
    toolchain: ResolvedToolchain,
    settings: Settings,
    log_path: Path,
    session: Session | None = None,
    store: LayerStore | None = None,
    force: bool = False,
    project_name: str | None = None,
    cancel: threading.Event | None = None,
) -> LayerResult:
    """Return the dependency layer for a recipe, cooking it on a miss.

    Args:
        recipe: Extracted recipe.
        environment: Prepared environment.
        toolchain: Resolved toolchain.
        settings: Application settings.
        log_path: Log file for cook output.
        session: Optional database session for layer records.
        store: Layer store (defaults to one rooted at settings.cache_dir).
        force: Cook again and replace an existing layer. The existing layer
            stays in place if the cook fails or is cancelled.
        project_name: Project name recorded on new layers.
        cancel: Cancellation event.

    Returns:
        LayerResult describing the layer.

    Raises:
        DependencyBuildError: If the cook fails or the lock times out.
        PipelineCancelled: If cancelled while the cook runs.
    """
    if store is None:
        store = LayerStore(settings.cache_dir)
    if toolchain.home is None and environment.home is not None:
        toolchain = toolchain.with_home(environment.home)

    key, inputs = compute_layer_key_for_recipe(recipe, environment.key, toolchain)
    logger.info("Computed layer key: %s", key[:23])

    try:
        with layer_lock(store.lock_dir, key, timeout=settings.lock_timeout):
            info = store.get_layer(key)
            if info is not None and not force:
                logger.info("Cache hit for layer %s, skipping cook", key[:23])
                hit = True
            else:
                if info is not None:
                    logger.info("Forcing rebuild of layer %s", key[:23])
                info = cook_layer(
                    recipe,
                    toolchain,
                    store,
                    key,
                    settings,
                    log_path,
                    metadata={
                        "recipe_digest": inputs.recipe_digest,
                        "environment_key": inputs.environment_key,
                    },
                    cancel=cancel,
                    replace=info is not None,
                )
                hit = False
    except TimeoutError as e:
        raise DependencyBuildError(str(e), reason="lock_timeout") from e

    if session is not None:
        _record_layer_use(session, info, inputs, hit, project_name=project_name)

    return LayerResult(
        key=key,
        path=info.path,
        cache_hit=hit,
        inputs=inputs,
        size_bytes=info.size_bytes,
    )


def list_layer_records(session: Session) -> list[DependencyLayer]:
    """List layer records, most recently used first."""
    stmt = select(DependencyLayer).order_by(
        DependencyLayer.last_used_at.desc(), DependencyLayer.id.desc()
    )
    return list(session.execute(stmt).scalars().all())


def get_layer_record(session: Session, key: str) -> DependencyLayer | None:
    """Get a layer record by key or unique key prefix."""
    stmt = select(DependencyLayer).where(DependencyLayer.layer_key.startswith(key))
    records = list(session.execute(stmt).scalars().all())
    if len(records) == 1:
        return records[0]
    return None


def resolve_layer_key(store: LayerStore, key: str) -> str:
    """Resolve a full layer key from a key or unique prefix.

    Raises:
        LayerNotFoundError: If no single layer matches.
    """
    if not key.startswith("sha256:"):
        key = f"sha256:{key}"
    matches = [info.key for info in store.list_layers() if info.key.startswith(key)]
    if len(matches) != 1:
        raise LayerNotFoundError(key)
    return matches[0]


def remove_dependency_layer(
    store: LayerStore,
    key: str,
    session: Session | None = None,
    lock_timeout: float | None = None,
) -> bool:
    """Remove one layer and its record under the layer lock.

    Returns:
        True if a layer directory was removed.
    """
    with layer_lock(store.lock_dir, key, timeout=lock_timeout):
        removed = store.remove_layer(key)
    if session is not None:
        record = session.execute(
            select(DependencyLayer).where(DependencyLayer.layer_key == key)
        ).scalar_one_or_none()
        if record is not None:
            session.delete(record)
            session.flush()
    return removed


def prune_layers(
    store: LayerStore,
    session: Session | None = None,
    older_than_days: int | None = None,
    dry_run: bool = False,
    lock_timeout: float | None = None,
) -> list[str]:
    """Remove layers not used within a period.

    A layer's age is its last use recorded in the database, falling back
    to its commit time. With ``older_than_days`` unset every layer is
    pruned. Layers whose lock cannot be taken within ``lock_timeout``,
    such as one being restored by a running build, are skipped.

    Args:
        store: Layer store.
        session: Optional database session.
        older_than_days: Only prune layers idle for at least this many days.
        dry_run: Report what would be pruned without deleting.
        lock_timeout: Timeout for each layer lock.

    Returns:
        Keys of pruned (or prunable, with dry_run) layers.
    """
    cutoff = (
        datetime.now() - timedelta(days=older_than_days)
        if older_than_days is not None
        else None
    )

    last_used: dict[str, datetime] = {}
    if session is not None:
        for record in session.execute(select(DependencyLayer)).scalars():
            last_used[record.layer_key] = record.last_used_at or record.created_at

    pruned: list[str] = []
    for info in store.list_layers():
        if cutoff is not None:
            used = last_used.get(info.key)
            if used is None and info.created_at:
                used = datetime.fromisoformat(info.created_at).astimezone().replace(
                    tzinfo=None
                )
            if used is not None and used >= cutoff:
                continue
        if dry_run:
            logger.info("Would prune layer %s", info.key[:23])
            pruned.append(info.key)
            continue
        try:
            remove_dependency_layer(
                store, info.key, session, lock_timeout=lock_timeout
            )
        except TimeoutError:
            logger.warning("Layer %s is in use; not pruned", info.key[:23])
            continue
        pruned.append(info.key)

    logger.info("Pruned %d layer(s)%s", len(pruned), " (dry run)" if dry_run else "")
    return pruned


__all__ = [
    "LayerNotFoundError",
    "LayerResult",
    "cook_layer",
    "ensure_dependency_layer",
    "get_layer_record",
    "list_layer_records",
    "prune_layers",
    "remove_dependency_layer",
    "resolve_layer_key",
]
