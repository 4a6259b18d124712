"""Pydantic models for project file validation.

A project file (``layerchef.yaml``) sits at the root of a source tree and
declares the binary to build, how dependency manifests are discovered, the
toolchain commands for each stage, and the runtime image layout.
"""

import re
from pathlib import PurePosixPath
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from layerchef.types import ManifestFormat

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-]+$")

# Source paths never staged into a build workspace
DEFAULT_EXCLUDES = [".git", "target", ".layerchef"]


def _validate_relative(path: str, field_name: str) -> str:
    """Validate a path is relative and stays inside its root."""
    pure = PurePosixPath(path)
    if pure.is_absolute() or ".." in pure.parts or not path.strip():
        raise ValueError(
            f"{field_name} entries must be relative paths inside the tree, got '{path}'"
        )
    return path


class ToolchainSchema(BaseModel):
    """Schema for the toolchain definition.

    Command arguments may contain the placeholders ``{binary}``,
    ``{workspace}`` and ``{toolchain_home}``; they are substituted when the
    stage runs.

    Attributes:
        preset: Base preset to fill unset fields from (cargo or custom).
        setup: Commands that verify or install the toolchain.
        cook: Commands that fetch and build dependencies from the recipe.
        build: Commands that compile the application in release mode.
        artifact_path: Workspace-relative path of the built binary.
        cache_paths: Workspace-relative paths captured into the dependency layer.
        env: Extra environment variables for every command.
    """

    model_config = ConfigDict(extra="forbid")

    preset: Literal["cargo", "custom"] = Field(
        default="cargo", description="Toolchain preset"
    )
    setup: list[list[str]] | None = Field(default=None)
    cook: list[list[str]] | None = Field(default=None)
    build: list[list[str]] | None = Field(default=None)
    artifact_path: str | None = Field(default=None)
    cache_paths: list[str] | None = Field(default=None)
    env: dict[str, str] | None = Field(default=None)

    @field_validator("setup", "cook", "build")
    @classmethod
    def validate_commands(cls, v: list[list[str]] | None) -> list[list[str]] | None:
        """Validate each command is a non-empty argv list."""
        if v is None:
            return v
        for cmd in v:
            if not cmd or not cmd[0].strip():
                raise ValueError("commands must be non-empty argument lists")
        return v

    @field_validator("artifact_path")
    @classmethod
    def validate_artifact_path(cls, v: str | None) -> str | None:
        """Validate artifact path is workspace-relative."""
        if v is None:
            return v
        return _validate_relative(v, "artifact_path")

    @field_validator("cache_paths")
    @classmethod
    def validate_cache_paths(cls, v: list[str] | None) -> list[str] | None:
        """Validate cache paths are workspace-relative."""
        if v is None:
            return v
        return [_validate_relative(p, "cache_paths") for p in v]


class RuntimeSchema(BaseModel):
    """Schema for the runtime image layout.

    Attributes:
        workdir: Absolute working directory inside the image.
        entrypoint: Exec-form entrypoint; defaults to ``["./<binary>"]``.
        labels: Free-form labels recorded in the image config.
    """

    model_config = ConfigDict(extra="forbid")

    workdir: str = Field(default="/app", description="Working directory in image")
    entrypoint: list[str] | None = Field(default=None)
    labels: dict[str, str] | None = Field(default=None)

    @field_validator("workdir")
    @classmethod
    def validate_workdir(cls, v: str) -> str:
        """Validate workdir is absolute."""
        if not v.startswith("/"):
            raise ValueError("workdir must start with '/'")
        if ".." in PurePosixPath(v).parts:
            raise ValueError("workdir must not contain '..'")
        return v

    @field_validator("entrypoint")
    @classmethod
    def validate_entrypoint(cls, v: list[str] | None) -> list[str] | None:
        """Validate entrypoint is a non-empty exec-form list."""
        if v is None:
            return v
        if not v or not v[0].strip():
            raise ValueError("entrypoint must be a non-empty argument list")
        return v


class ProjectSchema(BaseModel):
    """Complete project schema.

    Attributes:
        name: Project name, used to group images.
        binary: Name of the single binary the build produces.
        manifest_format: How dependency manifests are extracted.
        manifests: Glob patterns of manifest files (``files`` format only).
        exclude: Extra glob patterns excluded when staging the source tree.
        require_lockfile: Fail extraction when no lockfile pins versions.
        toolchain: Toolchain definition.
        runtime: Runtime image layout.
    """

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(min_length=1, max_length=255)]
    binary: Annotated[str, Field(min_length=1, max_length=255)]
    manifest_format: ManifestFormat = Field(default=ManifestFormat.CARGO)
    manifests: list[str] | None = Field(default=None)
    exclude: list[str] | None = Field(default=None)
    require_lockfile: bool = Field(default=False)
    toolchain: ToolchainSchema = Field(default_factory=ToolchainSchema)
    runtime: RuntimeSchema = Field(default_factory=RuntimeSchema)

    @field_validator("name", "binary")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate names match a filesystem-safe pattern."""
        if not NAME_PATTERN.match(v):
            raise ValueError(f"must match pattern {NAME_PATTERN.pattern}, got '{v}'")
        # Names become directory and file names
        if not v.strip("."):
            raise ValueError(f"must not consist only of dots, got '{v}'")
        return v

    @field_validator("manifests")
    @classmethod
    def validate_manifests(cls, v: list[str] | None) -> list[str] | None:
        """Validate manifest globs are relative."""
        if v is None:
            return v
        return [_validate_relative(p, "manifests") for p in v]

    @model_validator(mode="after")
    def validate_format_requirements(self) -> "ProjectSchema":
        """Validate fields required by the chosen format and preset."""
        if self.manifest_format == ManifestFormat.FILES and not self.manifests:
            raise ValueError("manifest_format 'files' requires a manifests list")
        if self.toolchain.preset == "custom":
            if not self.toolchain.build:
                raise ValueError("custom toolchain requires build commands")
            if not self.toolchain.artifact_path:
                raise ValueError("custom toolchain requires artifact_path")
        return self

    def effective_excludes(self) -> list[str]:
        """Return default excludes merged with project excludes."""
        excludes = list(DEFAULT_EXCLUDES)
        for pattern in self.exclude or []:
            if pattern not in excludes:
                excludes.append(pattern)
        return excludes


__all__ = [
    "DEFAULT_EXCLUDES",
    "NAME_PATTERN",
    "ProjectSchema",
    "RuntimeSchema",
    "ToolchainSchema",
]
