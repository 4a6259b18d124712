"""Runtime image packaging.

This module handles:
- Packaging the compiled binary into a minimal rootfs with an exec-form
  entrypoint
- Image records and lookup
"""

from layerchef.images.models import RuntimeImage

__all__ = ["RuntimeImage"]
