"""Layer key computation for the dependency cache.

This module handles:
- Canonical layer input snapshot from a recipe and an environment
- Deterministic hash computation over the normalized inputs

Layer keys depend on the recipe digest, never on application source, so
edits to application code always map to the same layer.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from layerchef.projects.toolchain import ResolvedToolchain
    from layerchef.recipe.models import Recipe

# Schema version for layer key format; bump when the key format changes
LAYER_KEY_SCHEMA_VERSION = "1"


@dataclass
class LayerInputs:
    """Canonical representation of all inputs that shape a dependency layer.

    Attributes:
        schema_version: Version of layer key schema.
        recipe_digest: Digest of the recipe's canonical JSON.
        environment_key: Key of the prepared environment.
        cache_paths: Sorted workspace paths captured into the layer.
    """

    schema_version: str = LAYER_KEY_SCHEMA_VERSION
    recipe_digest: str = ""
    environment_key: str = ""
    cache_paths: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def create_layer_inputs(
    recipe: Recipe,
    environment_key: str,
    toolchain: ResolvedToolchain,
) -> LayerInputs:
    """Create canonical layer inputs.

    Args:
        recipe: Extracted recipe.
        environment_key: Key of the prepared environment.
        toolchain: Resolved toolchain.

    Returns:
        LayerInputs instance with all normalized inputs.
    """
    return LayerInputs(
        schema_version=LAYER_KEY_SCHEMA_VERSION,
        recipe_digest=recipe.digest,
        environment_key=environment_key,
        cache_paths=sorted(toolchain.cache_paths),
    )


def compute_layer_key(inputs: LayerInputs) -> str:
    """Compute a layer key from layer inputs.

    The key is a SHA-256 hash of the canonical JSON representation of the
    inputs.

    Args:
        inputs: LayerInputs instance.

    Returns:
        Layer key as hex string (sha256:...).
    """
    canonical_json = json.dumps(
        inputs.to_dict(),
        sort_keys=True,
        separators=(",", ":"),
    )
    hash_hex = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"sha256:{hash_hex}"


def compute_layer_key_for_recipe(
    recipe: Recipe,
    environment_key: str,
    toolchain: ResolvedToolchain,
) -> tuple[str, LayerInputs]:
    """Convenience function to compute a layer key directly from a recipe.

    Returns:
        Tuple of (layer_key, LayerInputs).
    """
    inputs = create_layer_inputs(recipe, environment_key, toolchain)
    return compute_layer_key(inputs), inputs


__all__ = [
    "LAYER_KEY_SCHEMA_VERSION",
    "LayerInputs",
    "compute_layer_key",
    "compute_layer_key_for_recipe",
    "create_layer_inputs",
]
