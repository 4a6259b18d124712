"""Recipe materialization.

Writes a recipe back out as a skeleton tree: the manifests, the lockfile,
a stub file for every target, and the recipe itself. The dependency cook
runs inside this skeleton and sees nothing else.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath

from layerchef.recipe.models import RECIPE_FILENAME, Recipe, write_recipe
from layerchef.types import ManifestFormat

logger = logging.getLogger(__name__)

CARGO_BIN_STUB = "fn main() {}\n"
CARGO_LIB_STUB = ""


def stub_contents(recipe_format: str, kind: str) -> str:
    """Return stub file contents for a target kind."""
    if recipe_format == ManifestFormat.CARGO.value:
        return CARGO_LIB_STUB if kind == "lib" else CARGO_BIN_STUB
    return ""


def _safe_path(dest: Path, rel_path: str) -> Path:
    pure = PurePosixPath(rel_path)
    if pure.is_absolute() or ".." in pure.parts:
        raise ValueError(f"Recipe path escapes the skeleton: {rel_path}")
    return dest.joinpath(*pure.parts)


def materialize_recipe(recipe: Recipe, dest: Path) -> list[Path]:
    """Write the skeleton tree for a recipe.

    Args:
        recipe: Recipe to materialize.
        dest: Empty destination directory.

    Returns:
        Paths of every file written.

    Raises:
        ValueError: If a recipe path is absolute or escapes dest.
    """
    dest.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []

    files = list(recipe.manifests)
    if recipe.lockfile is not None:
        files.append(recipe.lockfile)
    for manifest in files:
        path = _safe_path(dest, manifest.path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(manifest.contents, encoding="utf-8")
        written.append(path)

    declared = {m.path for m in files}
    for target in recipe.targets:
        if target.path in declared:
            continue
        path = _safe_path(dest, target.path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(stub_contents(recipe.format, target.kind), encoding="utf-8")
        written.append(path)

    written.append(write_recipe(recipe, dest / RECIPE_FILENAME))
    logger.debug("Materialized %d file(s) into %s", len(written), dest)
    return written


__all__ = ["materialize_recipe", "stub_contents"]
