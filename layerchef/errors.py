"""Pipeline error taxonomy.

Every pipeline failure is fatal for the run. Each error type carries a
stable code for programmatic handling, the stage it belongs to, the process
exit status the CLI uses, and the log file holding details when one exists.
A finer-grained ``reason`` (for example ``artifact_missing``) may accompany
the code but never replaces it.
"""

from __future__ import annotations

from typing import Any

from layerchef.types import StageName

# Error code constants
INVALID_PROJECT = "invalid_project"
TOOLCHAIN_SETUP_FAILURE = "toolchain_setup_failure"
MANIFEST_MALFORMED = "manifest_malformed"
DEPENDENCY_BUILD_FAILURE = "dependency_build_failure"
COMPILATION_FAILURE = "compilation_failure"
PACKAGING_FAILURE = "packaging_failure"
CANCELLED = "cancelled"


class PipelineError(Exception):
    """Base error for all pipeline failures."""

    code = "pipeline_error"
    stage: StageName | None = None
    exit_code = 1

    def __init__(
        self,
        message: str,
        reason: str | None = None,
        log_path: str | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.log_path = log_path

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "code": self.code,
            "message": str(self),
        }
        if self.reason is not None:
            result["reason"] = self.reason
        if self.stage is not None:
            result["stage"] = self.stage.value
        if self.log_path is not None:
            result["log_path"] = self.log_path
        return result


class ProjectError(PipelineError):
    """Raised when the project file is missing or invalid."""

    code = INVALID_PROJECT
    exit_code = 2


class ToolchainSetupError(PipelineError):
    """Raised when the build environment could not be prepared."""

    code = TOOLCHAIN_SETUP_FAILURE
    stage = StageName.PREPARE
    exit_code = 10


class ManifestMalformedError(PipelineError):
    """Raised when dependency declarations cannot be parsed."""

    code = MANIFEST_MALFORMED
    stage = StageName.EXTRACT
    exit_code = 11


class DependencyBuildError(PipelineError):
    """Raised when external dependencies fail to fetch or build."""

    code = DEPENDENCY_BUILD_FAILURE
    stage = StageName.CACHE_DEPS
    exit_code = 12


class CompilationError(PipelineError):
    """Raised when application source fails to compile."""

    code = COMPILATION_FAILURE
    stage = StageName.BUILD
    exit_code = 13


class PackagingError(PipelineError):
    """Raised when the artifact cannot be located or copied into the image."""

    code = PACKAGING_FAILURE
    stage = StageName.PACKAGE
    exit_code = 14


class PipelineCancelled(PipelineError):
    """Raised when a run is cancelled before it completes."""

    code = CANCELLED
    exit_code = 130

    def __init__(
        self,
        message: str = "Pipeline cancelled",
        reason: str | None = None,
        log_path: str | None = None,
    ) -> None:
        super().__init__(message, reason=reason, log_path=log_path)


__all__ = [
    "CANCELLED",
    "COMPILATION_FAILURE",
    "DEPENDENCY_BUILD_FAILURE",
    "INVALID_PROJECT",
    "MANIFEST_MALFORMED",
    "PACKAGING_FAILURE",
    "TOOLCHAIN_SETUP_FAILURE",
    "CompilationError",
    "DependencyBuildError",
    "ManifestMalformedError",
    "PackagingError",
    "PipelineCancelled",
    "PipelineError",
    "ProjectError",
    "ToolchainSetupError",
]
