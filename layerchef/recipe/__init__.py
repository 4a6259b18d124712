"""Dependency recipe planning.

This module handles:
- Extracting a canonical, dependency-only recipe from a source tree
- Cargo and generic manifest formats
- Materializing a recipe into a skeleton tree for the dependency cook
"""

from layerchef.recipe.models import Recipe, load_recipe, write_recipe

__all__ = ["Recipe", "load_recipe", "write_recipe"]
