"""Toolchain presets and resolution.

A resolved toolchain merges a preset's defaults with the project's
overrides. Commands stay as templates until a stage expands them for its
own workspace.

``{workspace}`` changes on every cook and build. ``{toolchain_home}`` is a
directory shared by every stage of one prepared environment, so tools that
fingerprint dependencies by absolute source path (cargo's registry and git
checkouts) see the same paths in the cook and in the application build.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from layerchef.projects.schema import ProjectSchema

BINARY_PLACEHOLDER = "{binary}"
WORKSPACE_PLACEHOLDER = "{workspace}"
TOOLCHAIN_HOME_PLACEHOLDER = "{toolchain_home}"

PRESETS: dict[str, dict[str, Any]] = {
    "cargo": {
        "setup": [["cargo", "--version"], ["rustc", "--version"]],
        "cook": [["cargo", "build", "--release"]],
        "build": [["cargo", "build", "--release", "--bin", BINARY_PLACEHOLDER]],
        "artifact_path": f"target/release/{BINARY_PLACEHOLDER}",
        "cache_paths": ["target"],
        "env": {"CARGO_HOME": f"{TOOLCHAIN_HOME_PLACEHOLDER}/cargo"},
    },
    "custom": {
        "setup": [],
        "cook": [],
        "build": [],
        "artifact_path": "",
        "cache_paths": [],
        "env": {},
    },
}


@dataclass(frozen=True)
class ResolvedToolchain:
    """Toolchain with preset defaults applied.

    Attributes:
        preset: Preset name the defaults came from.
        binary: Binary name substituted for ``{binary}``.
        setup: Setup command templates.
        cook: Dependency cook command templates.
        build: Application build command templates.
        artifact_path: Artifact path template.
        cache_paths: Paths captured into the dependency layer.
        env: Environment override templates.
        home: Toolchain home substituted for ``{toolchain_home}``; set once
            the environment is prepared.
    """

    preset: str
    binary: str
    setup: tuple[tuple[str, ...], ...] = ()
    cook: tuple[tuple[str, ...], ...] = ()
    build: tuple[tuple[str, ...], ...] = ()
    artifact_path: str = ""
    cache_paths: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    home: Path | None = None

    def with_home(self, home: Path) -> ResolvedToolchain:
        """Return a copy bound to a prepared environment's toolchain home."""
        return replace(self, home=home)

    def expand(self, value: str, workspace: Path | None = None) -> str:
        """Substitute placeholders in a single template string."""
        value = value.replace(BINARY_PLACEHOLDER, self.binary)
        if workspace is not None:
            value = value.replace(WORKSPACE_PLACEHOLDER, str(workspace))
        if self.home is not None:
            value = value.replace(TOOLCHAIN_HOME_PLACEHOLDER, str(self.home))
        return value

    def commands(
        self,
        templates: tuple[tuple[str, ...], ...],
        workspace: Path | None = None,
    ) -> list[list[str]]:
        """Expand a group of command templates for a workspace."""
        return [[self.expand(arg, workspace) for arg in cmd] for cmd in templates]

    def environment(self, workspace: Path | None = None) -> dict[str, str]:
        """Expand environment overrides for a workspace."""
        return {key: self.expand(val, workspace) for key, val in self.env.items()}

    def resolved_artifact_path(self) -> str:
        """Return the artifact path with the binary name substituted."""
        return self.expand(self.artifact_path)

    def key_material(self) -> dict[str, Any]:
        """Return the parts of the toolchain that shape the dependency layer.

        Build commands and the artifact path are excluded: they only affect
        the application build, never the cooked dependencies.
        """
        return {
            "preset": self.preset,
            "setup": [list(cmd) for cmd in self.setup],
            "cook": [list(cmd) for cmd in self.cook],
            "cache_paths": list(self.cache_paths),
            "env": dict(sorted(self.env.items())),
        }


def resolve_toolchain(project: ProjectSchema) -> ResolvedToolchain:
    """Merge a project's toolchain overrides onto its preset.

    Args:
        project: ProjectSchema instance.

    Returns:
        ResolvedToolchain with all fields populated.
    """
    spec = project.toolchain
    defaults = PRESETS[spec.preset]

    def pick(name: str) -> Any:
        value = getattr(spec, name)
        return defaults[name] if value is None else value

    env = dict(defaults["env"])
    if spec.env:
        env.update(spec.env)

    return ResolvedToolchain(
        preset=spec.preset,
        binary=project.binary,
        setup=tuple(tuple(cmd) for cmd in pick("setup")),
        cook=tuple(tuple(cmd) for cmd in pick("cook")),
        build=tuple(tuple(cmd) for cmd in pick("build")),
        artifact_path=pick("artifact_path"),
        cache_paths=tuple(pick("cache_paths")),
        env=env,
    )


__all__ = [
    "BINARY_PLACEHOLDER",
    "PRESETS",
    "TOOLCHAIN_HOME_PLACEHOLDER",
    "WORKSPACE_PLACEHOLDER",
    "ResolvedToolchain",
    "resolve_toolchain",
]
