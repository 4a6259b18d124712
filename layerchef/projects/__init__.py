"""Project definitions.

This module handles:
- Project file schema (binary, manifest format, toolchain, runtime layout)
- Loading project files from a source tree, or inferring a cargo project
- Resolving toolchain presets into concrete stage commands
"""

from layerchef.projects.schema import ProjectSchema, RuntimeSchema, ToolchainSchema

__all__ = ["ProjectSchema", "RuntimeSchema", "ToolchainSchema"]
