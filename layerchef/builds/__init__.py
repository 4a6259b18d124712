"""Application build orchestration.

This module handles:
- Running stage commands with logs, timeouts and cancellation
- Staging the source tree into a build workspace
- Compiling the application over a restored dependency layer
- Build records
"""

from layerchef.builds.models import BuildRecord

__all__ = ["BuildRecord"]

# Submodules are imported lazily to avoid circular imports
# Access via layerchef.builds.runner, etc.
