"""Recipe data model.

A recipe is the dependency-only description of a source tree. It holds
manifest files, the lockfile, target stub locations and dependency
metadata, but never application source bodies. Its canonical JSON form is
byte-stable, and its digest keys the dependency layer.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

# Schema version for recipe format; bump when the canonical form changes
RECIPE_SCHEMA_VERSION = "1"

RECIPE_FILENAME = "recipe.json"


@dataclass(frozen=True)
class ManifestFile:
    """A dependency declaration file with normalized contents."""

    path: str
    contents: str


@dataclass(frozen=True)
class TargetStub:
    """Location of a build target whose body is replaced by a stub."""

    path: str
    kind: str


@dataclass(frozen=True)
class DeclaredDependency:
    """A dependency as declared in a manifest."""

    name: str
    requirement: str
    kind: str
    manifest: str


@dataclass(frozen=True)
class PinnedPackage:
    """A resolved external package from the lockfile."""

    name: str
    version: str
    source: str


@dataclass(frozen=True)
class Recipe:
    """Canonical dependency recipe.

    Use ``Recipe.create`` to build one; it sorts every collection so equal
    inputs always serialize identically.

    Attributes:
        format: Manifest format the recipe was extracted with.
        manifests: Manifest files sorted by path.
        lockfile: Normalized lockfile, if the tree has one.
        targets: Target stubs sorted by path.
        dependencies: Declared dependencies, sorted.
        pinned: Resolved external packages, sorted.
        schema_version: Recipe schema version.
    """

    format: str
    manifests: tuple[ManifestFile, ...] = ()
    lockfile: ManifestFile | None = None
    targets: tuple[TargetStub, ...] = ()
    dependencies: tuple[DeclaredDependency, ...] = ()
    pinned: tuple[PinnedPackage, ...] = ()
    schema_version: str = RECIPE_SCHEMA_VERSION

    @classmethod
    def create(
        cls,
        format: str,
        manifests: list[ManifestFile],
        lockfile: ManifestFile | None = None,
        targets: list[TargetStub] | None = None,
        dependencies: list[DeclaredDependency] | None = None,
        pinned: list[PinnedPackage] | None = None,
    ) -> Recipe:
        """Create a recipe with all collections in canonical order."""
        return cls(
            format=format,
            manifests=tuple(sorted(manifests, key=lambda m: m.path)),
            lockfile=lockfile,
            targets=tuple(sorted(set(targets or []), key=lambda t: (t.path, t.kind))),
            dependencies=tuple(
                sorted(
                    set(dependencies or []),
                    key=lambda d: (d.manifest, d.kind, d.name, d.requirement),
                )
            ),
            pinned=tuple(
                sorted(set(pinned or []), key=lambda p: (p.name, p.version, p.source))
            ),
        )

    @property
    def is_pinned(self) -> bool:
        """Whether resolved versions are pinned by a lockfile."""
        return self.lockfile is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["manifests"] = list(data["manifests"])
        data["targets"] = list(data["targets"])
        data["dependencies"] = list(data["dependencies"])
        data["pinned"] = list(data["pinned"])
        return data

    def to_json(self) -> str:
        """Serialize to canonical JSON (sorted keys, no extra whitespace)."""
        return json.dumps(
            self.to_dict(),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )

    @property
    def digest(self) -> str:
        """Content hash of the canonical JSON (sha256:...)."""
        return "sha256:" + hashlib.sha256(self.to_json().encode("utf-8")).hexdigest()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Recipe:
        """Rebuild a recipe from its dictionary form.

        Raises:
            ValueError: If the data is not a recipe of a supported schema.
        """
        version = data.get("schema_version")
        if version != RECIPE_SCHEMA_VERSION:
            raise ValueError(f"Unsupported recipe schema version: {version!r}")
        try:
            lockfile = data.get("lockfile")
            return cls.create(
                format=data["format"],
                manifests=[ManifestFile(**m) for m in data.get("manifests", [])],
                lockfile=ManifestFile(**lockfile) if lockfile else None,
                targets=[TargetStub(**t) for t in data.get("targets", [])],
                dependencies=[
                    DeclaredDependency(**d) for d in data.get("dependencies", [])
                ],
                pinned=[PinnedPackage(**p) for p in data.get("pinned", [])],
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed recipe data: {e}") from e


def write_recipe(recipe: Recipe, path: Path) -> Path:
    """Write a recipe's canonical JSON to a file.

    Args:
        recipe: Recipe to write.
        path: Output file path.

    Returns:
        Path to the written file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(recipe.to_json().encode("utf-8"))
    return path


def load_recipe(path: Path) -> Recipe:
    """Load a recipe from a canonical JSON file.

    Raises:
        ValueError: If the file does not hold a valid recipe.
    """
    with path.open(encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object in {path}")
    return Recipe.from_dict(data)


__all__ = [
    "RECIPE_FILENAME",
    "RECIPE_SCHEMA_VERSION",
    "DeclaredDependency",
    "ManifestFile",
    "PinnedPackage",
    "Recipe",
    "TargetStub",
    "load_recipe",
    "write_recipe",
]
