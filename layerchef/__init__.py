"""layerchef - staged container-style builds with a dependency layer cache.

This package plans a dependency-only recipe from a source tree, cooks the
dependencies into a content-addressed cache layer, builds the application on
top of it, and packages the single resulting binary into a minimal runtime
image.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
