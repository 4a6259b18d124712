"""Shared type definitions for layerchef.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class StageName(str, Enum):
    """Pipeline stages, in execution order."""

    PREPARE = "prepare"
    EXTRACT = "extract"
    CACHE_DEPS = "cache_deps"
    BUILD = "build"
    PACKAGE = "package"


class BuildStatus(str, Enum):
    """Status of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ManifestFormat(str, Enum):
    """Supported dependency manifest formats."""

    CARGO = "cargo"
    FILES = "files"


@dataclass
class ArtifactInfo:
    """Information about a build artifact."""

    filename: str
    relative_path: str
    size_bytes: int
    sha256: str


@dataclass
class StageOutcome:
    """Outcome of a single pipeline stage."""

    stage: StageName
    duration_seconds: float
    skipped: bool = False
    log_path: str | None = None
    details: dict[str, object] = field(default_factory=dict)


__all__ = [
    "ArtifactInfo",
    "BuildStatus",
    "ManifestFormat",
    "StageName",
    "StageOutcome",
]
