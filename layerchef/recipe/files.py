"""Recipe extraction for generic manifest files.

The ``files`` format treats every file matched by the project's manifest
globs as an opaque dependency declaration. Contents are kept verbatim apart
from line-ending normalization.
"""

from __future__ import annotations

import logging
from pathlib import Path

from layerchef.errors import ManifestMalformedError
from layerchef.recipe.cargo import read_text
from layerchef.recipe.models import ManifestFile, Recipe
from layerchef.types import ManifestFormat

logger = logging.getLogger(__name__)


def match_manifest_files(root: Path, patterns: list[str]) -> list[str]:
    """Return root-relative paths of files matching any pattern, sorted.

    Raises:
        ManifestMalformedError: If a match resolves outside the source tree.
    """
    resolved_root = root.resolve()
    matched: set[str] = set()
    for pattern in patterns:
        for path in root.glob(pattern):
            if not path.is_file():
                continue
            try:
                path.resolve().relative_to(resolved_root)
            except ValueError:
                raise ManifestMalformedError(
                    f"Manifest {path} resolves outside the source tree"
                ) from None
            matched.add(path.relative_to(root).as_posix())
    return sorted(matched)


def extract_files_recipe(root: Path, patterns: list[str]) -> Recipe:
    """Extract a recipe from glob-matched manifest files.

    Args:
        root: Source tree root.
        patterns: Glob patterns relative to the root.

    Returns:
        Recipe in canonical order.

    Raises:
        ManifestMalformedError: If nothing matches or a file is not text.
    """
    paths = match_manifest_files(root, patterns)
    if not paths:
        raise ManifestMalformedError(
            f"No dependency manifests matched {patterns} in {root}"
        )
    manifests = [ManifestFile(path=p, contents=read_text(root / p)) for p in paths]
    logger.debug("Matched %d manifest file(s) in %s", len(manifests), root)
    return Recipe.create(format=ManifestFormat.FILES.value, manifests=manifests)


__all__ = ["extract_files_recipe", "match_manifest_files"]
