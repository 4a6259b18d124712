"""Manifest extraction stage.

Reads the dependency declarations of a source tree and produces its
recipe. Application source bodies are never read.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from layerchef.recipe.cargo import extract_cargo_recipe
from layerchef.recipe.files import extract_files_recipe
from layerchef.recipe.models import Recipe
from layerchef.types import ManifestFormat

if TYPE_CHECKING:
    from layerchef.projects.schema import ProjectSchema

logger = logging.getLogger(__name__)


def extract_recipe(source_root: Path, project: ProjectSchema) -> Recipe:
    """Extract the recipe for a source tree.

    Args:
        source_root: Source tree root.
        project: Project definition selecting the manifest format.

    Returns:
        Recipe in canonical order.

    Raises:
        ManifestMalformedError: If dependency declarations are invalid.
    """
    if project.manifest_format == ManifestFormat.FILES:
        recipe = extract_files_recipe(source_root, project.manifests or [])
    else:
        recipe = extract_cargo_recipe(
            source_root, require_lockfile=project.require_lockfile
        )

    logger.info(
        "Extracted %s recipe from %s (%d manifests, %d dependencies, digest=%s)",
        recipe.format,
        source_root,
        len(recipe.manifests),
        len(recipe.dependencies),
        recipe.digest[:23],
    )
    return recipe


__all__ = ["extract_recipe"]
