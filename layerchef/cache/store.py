"""Content-addressed dependency layer store.

Layout under the cache root::

    layers/<hex>/layer.json     metadata, written last
    layers/<hex>/content/...    cached workspace paths
    .tmp/                       layers being assembled or removed
    .locks/                     per-key lock files

A layer becomes visible only through an atomic rename of a fully
assembled directory, and is never modified afterwards. Writers and
removers hold the per-key lock exclusively; restores hold it shared so a
layer cannot disappear while it is being copied.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import shutil
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any

logger = logging.getLogger(__name__)

LAYER_METADATA = "layer.json"
LAYER_CONTENT = "content"


class LayerStoreError(Exception):
    """Raised when a layer cannot be committed, restored or removed."""

    def __init__(self, message: str, code: str = "layer_store_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class LayerInfo:
    """Metadata of a committed layer.

    Attributes:
        key: Layer key (sha256:...).
        path: Layer directory.
        paths: Workspace-relative paths captured in the layer.
        size_bytes: Total size of the layer content.
        created_at: ISO timestamp of the commit.
        metadata: Extra metadata recorded at commit time.
    """

    key: str
    path: Path
    paths: list[str] = field(default_factory=list)
    size_bytes: int = 0
    created_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


def key_hex(key: str) -> str:
    """Return the hex part of a ``sha256:<hex>`` key."""
    return key.split(":", 1)[-1]


def directory_size(path: Path) -> int:
    """Return the total size of regular files under a path."""
    if path.is_file():
        return path.stat().st_size
    total = 0
    for item in path.rglob("*"):
        if item.is_file() and not item.is_symlink():
            total += item.stat().st_size
    return total


@contextmanager
def layer_lock(
    lock_dir: Path,
    key: str,
    timeout: float | None = None,
    shared: bool = False,
) -> Iterator[None]:
    """Acquire a lock for a layer key.

    Uses a file-based lock so concurrent builds never assemble the same
    layer twice. Shared holders may copy a layer concurrently; an exclusive
    holder waits until they are done.

    Args:
        lock_dir: Directory for lock files.
        key: Layer key to lock on.
        timeout: Lock acquisition timeout in seconds (None = blocking).
        shared: Take a shared lock instead of an exclusive one.

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_file = lock_dir / f"layer_{key_hex(key)[:64]}.lock"

    mode = fcntl.LOCK_SH if shared else fcntl.LOCK_EX
    logger.debug(
        "Acquiring %s layer lock for key: %s",
        "shared" if shared else "exclusive",
        key[:23],
    )

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, mode | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for layer lock on {key[:23]}"
                        ) from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, mode)
            lock_acquired = True

        logger.debug("Layer lock acquired for key: %s", key[:23])
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Layer lock released for key: %s", key[:23])
        os.close(fd)


def _copy_path(src: Path, dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    if src.is_dir() and not src.is_symlink():
        shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
    else:
        shutil.copy2(src, dest, follow_symlinks=False)


class LayerStore:
    """Filesystem store of dependency layers keyed by layer key."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.layers_dir = root / "layers"
        self.lock_dir = root / ".locks"
        self.tmp_dir = root / ".tmp"

    def layer_path(self, key: str) -> Path:
        """Return the directory a layer lives in."""
        return self.layers_dir / key_hex(key)

    def has_layer(self, key: str) -> bool:
        """Check whether a complete layer exists for a key."""
        return (self.layer_path(key) / LAYER_METADATA).is_file()

    def get_layer(self, key: str) -> LayerInfo | None:
        """Load layer metadata, or None if the layer does not exist."""
        path = self.layer_path(key)
        return self._read_info(path)

    def _read_info(self, path: Path) -> LayerInfo | None:
        metadata_path = path / LAYER_METADATA
        if not metadata_path.is_file():
            return None
        try:
            with metadata_path.open(encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Unreadable layer metadata %s: %s", metadata_path, e)
            return None
        return LayerInfo(
            key=data.get("key", f"sha256:{path.name}"),
            path=path,
            paths=list(data.get("paths", [])),
            size_bytes=int(data.get("size_bytes", 0)),
            created_at=str(data.get("created_at", "")),
            metadata=dict(data.get("metadata", {})),
        )

    def list_layers(self) -> list[LayerInfo]:
        """List all complete layers, sorted by creation time."""
        if not self.layers_dir.is_dir():
            return []
        layers = [
            info
            for path in self.layers_dir.iterdir()
            if path.is_dir() and (info := self._read_info(path)) is not None
        ]
        return sorted(layers, key=lambda info: (info.created_at, info.key))

    def commit_layer(
        self,
        key: str,
        workspace: Path,
        cache_paths: list[str] | tuple[str, ...],
        metadata: dict[str, Any] | None = None,
        replace: bool = False,
    ) -> LayerInfo:
        """Capture workspace paths as a new layer.

        The caller must hold the layer lock for ``key``. An existing layer is
        kept unless ``replace`` is set; a replaced layer is only moved aside
        once the new one is fully assembled.

        Args:
            key: Layer key.
            workspace: Directory the cook ran in.
            cache_paths: Workspace-relative paths to capture.
            metadata: Extra metadata to record.
            replace: Swap out an existing layer for the new content.

        Returns:
            LayerInfo of the committed (or already present) layer.

        Raises:
            LayerStoreError: If the layer cannot be assembled or published.
        """
        final_path = self.layer_path(key)
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        staging = self.tmp_dir / f"{key_hex(key)[:16]}-{uuid.uuid4().hex[:8]}"
        content = staging / LAYER_CONTENT

        try:
            content.mkdir(parents=True)
            captured: list[str] = []
            for rel in cache_paths:
                src = workspace.joinpath(*PurePosixPath(rel).parts)
                if not src.exists():
                    logger.warning("Cache path %s was not produced; skipping", rel)
                    continue
                _copy_path(src, content.joinpath(*PurePosixPath(rel).parts))
                captured.append(rel)

            info_data = {
                "key": key,
                "paths": captured,
                "size_bytes": directory_size(content),
                "created_at": datetime.now(timezone.utc).isoformat(),
                "metadata": metadata or {},
            }
            with (staging / LAYER_METADATA).open("w", encoding="utf-8") as f:
                json.dump(info_data, f, indent=2, sort_keys=True)

            self.layers_dir.mkdir(parents=True, exist_ok=True)
            replaced: Path | None = None
            if final_path.exists():
                if self.has_layer(key) and not replace:
                    logger.info("Layer %s already present; discarding copy", key[:23])
                    shutil.rmtree(staging, ignore_errors=True)
                    return self.get_layer(key)  # type: ignore[return-value]
                # Moved aside only now that the new layer is complete
                replaced = self.tmp_dir / (
                    f"replaced-{final_path.name[:16]}-{uuid.uuid4().hex[:8]}"
                )
                os.rename(final_path, replaced)
            try:
                os.rename(staging, final_path)
            except OSError:
                if replaced is not None:
                    os.rename(replaced, final_path)
                raise
            if replaced is not None:
                shutil.rmtree(replaced, ignore_errors=True)
                logger.info("Replaced layer %s", key[:23])
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise LayerStoreError(
                f"Failed to commit layer {key[:23]}: {e}", code="layer_commit_error"
            ) from e

        logger.info(
            "Committed layer %s (%d path(s), %d bytes)",
            key[:23],
            len(captured),
            info_data["size_bytes"],
        )
        return LayerInfo(
            key=key,
            path=final_path,
            paths=captured,
            size_bytes=int(info_data["size_bytes"]),
            created_at=str(info_data["created_at"]),
            metadata=metadata or {},
        )

    def restore_layer(
        self, key: str, dest: Path, lock_timeout: float | None = None
    ) -> list[str]:
        """Copy a layer's content into a workspace.

        Holds the layer lock shared so the layer cannot be removed or
        replaced mid-copy.

        Args:
            key: Layer key.
            dest: Workspace directory.
            lock_timeout: Lock acquisition timeout in seconds.

        Returns:
            Workspace-relative paths that were restored.

        Raises:
            LayerStoreError: If the layer is missing, its lock times out or
                the copy fails.
        """
        try:
            with layer_lock(self.lock_dir, key, timeout=lock_timeout, shared=True):
                info = self.get_layer(key)
                if info is None:
                    raise LayerStoreError(
                        f"Layer not found: {key}", code="layer_not_found"
                    )
                content = info.path / LAYER_CONTENT
                for rel in info.paths:
                    parts = PurePosixPath(rel).parts
                    _copy_path(content.joinpath(*parts), dest.joinpath(*parts))
        except TimeoutError as e:
            raise LayerStoreError(str(e), code="lock_timeout") from e
        except OSError as e:
            raise LayerStoreError(
                f"Failed to restore layer {key[:23]}: {e}", code="layer_restore_error"
            ) from e

        logger.info("Restored layer %s into %s", key[:23], dest)
        return list(info.paths)

    def remove_layer(self, key: str) -> bool:
        """Remove a layer. The caller must hold the layer lock.

        The layer directory is first renamed out of ``layers/`` so it
        disappears atomically, then deleted.

        Returns:
            True if a layer was removed.
        """
        path = self.layer_path(key)
        if not path.exists():
            return False
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        doomed = self.tmp_dir / f"removed-{path.name[:16]}-{uuid.uuid4().hex[:8]}"
        os.rename(path, doomed)
        shutil.rmtree(doomed, ignore_errors=True)
        logger.info("Removed layer %s", key[:23])
        return True


__all__ = [
    "LAYER_CONTENT",
    "LAYER_METADATA",
    "LayerInfo",
    "LayerStore",
    "LayerStoreError",
    "directory_size",
    "key_hex",
    "layer_lock",
]
