"""Build environment preparation.

This module handles:
- Environment keys derived from the toolchain definition and host platform
- One-time toolchain setup per key, recorded as a marker file
"""

from layerchef.environment.service import Environment, prepare_environment

__all__ = ["Environment", "prepare_environment"]
