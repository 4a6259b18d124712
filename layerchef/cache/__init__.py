"""Content-addressed dependency cache.

This module handles:
- Layer key computation from the recipe digest and environment key
- The on-disk layer store with atomic commits and per-key locks
- Cooking dependencies from a recipe skeleton
"""

from layerchef.cache.cache_key import LayerInputs, compute_layer_key
from layerchef.cache.store import LayerInfo, LayerStore

__all__ = ["LayerInfo", "LayerInputs", "LayerStore", "compute_layer_key"]
