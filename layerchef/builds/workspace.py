"""Source tree staging for application builds.

This module handles:
- Copying a source tree into a fresh build workspace
- Applying exclude globs (build outputs, VCS metadata)
- Rejecting symlinks that point outside the source tree

Staged files get fresh modification times, so the toolchain treats
application sources as newer than the stub targets cooked into the
dependency layer.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


class WorkspaceStagingError(Exception):
    """Raised when the source tree cannot be staged."""

    def __init__(self, message: str, code: str = "workspace_staging_error") -> None:
        super().__init__(message)
        self.code = code


def is_excluded(rel_path: str, patterns: list[str]) -> bool:
    """Check whether a root-relative POSIX path matches an exclude glob.

    A pattern matches either the full relative path or the entry's own
    name, so ``target`` excludes every directory called ``target``.
    """
    name = rel_path.rsplit("/", 1)[-1]
    return any(
        fnmatch.fnmatchcase(rel_path, pattern) or fnmatch.fnmatchcase(name, pattern)
        for pattern in patterns
    )


def _copy_fresh(src: Path, dest: Path) -> None:
    shutil.copyfile(src, dest)
    shutil.copymode(src, dest)


def stage_source_tree(
    source_root: Path,
    dest: Path,
    excludes: list[str] | None = None,
) -> int:
    """Copy a source tree into a workspace.

    Symlinks are copied by content when their target stays inside the
    source tree.

    Args:
        source_root: Source tree root (read-only).
        dest: Workspace directory to copy into.
        excludes: Glob patterns of paths to skip.

    Returns:
        Number of files staged.

    Raises:
        WorkspaceStagingError: If a symlink escapes the tree or copying fails.
    """
    excludes = excludes or []
    root_resolved = source_root.resolve()
    dest.mkdir(parents=True, exist_ok=True)
    count = 0

    try:
        for dirpath, dirnames, filenames in os.walk(source_root, followlinks=False):
            current = Path(dirpath)
            rel_dir = current.relative_to(source_root).as_posix()
            prefix = "" if rel_dir == "." else f"{rel_dir}/"

            kept_dirs: list[str] = []
            for name in sorted(dirnames):
                rel = prefix + name
                if is_excluded(rel, excludes):
                    logger.debug("Excluding %s", rel)
                    continue
                item = current / name
                if item.is_symlink():
                    _check_symlink(item, root_resolved)
                    if item.resolve().is_dir():
                        # Symlinked directories are copied as regular trees
                        shutil.copytree(
                            item.resolve(),
                            dest / rel,
                            copy_function=_copy_fresh,
                            dirs_exist_ok=True,
                        )
                        count += sum(1 for p in (dest / rel).rglob("*") if p.is_file())
                    continue
                (dest / rel).mkdir(parents=True, exist_ok=True)
                kept_dirs.append(name)
            dirnames[:] = kept_dirs

            for name in sorted(filenames):
                rel = prefix + name
                if is_excluded(rel, excludes):
                    logger.debug("Excluding %s", rel)
                    continue
                item = current / name
                if item.is_symlink():
                    _check_symlink(item, root_resolved)
                    src = item.resolve()
                    if not src.is_file():
                        logger.warning("Skipping dangling symlink %s", rel)
                        continue
                else:
                    src = item
                _copy_fresh(src, dest / rel)
                count += 1
    except OSError as e:
        raise WorkspaceStagingError(
            f"Failed to stage source tree {source_root}: {e}",
            code="dir_stage_error",
        ) from e

    logger.info("Staged %d file(s) from %s into %s", count, source_root, dest)
    return count


def _check_symlink(item: Path, root_resolved: Path) -> None:
    target = item.resolve()
    try:
        target.relative_to(root_resolved)
    except ValueError:
        raise WorkspaceStagingError(
            f"Symlink {item} points outside source tree: {target}",
            code="symlink_escape",
        ) from None


__all__ = ["WorkspaceStagingError", "is_excluded", "stage_source_tree"]
