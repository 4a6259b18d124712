"""Recipe extraction for cargo projects.

This module handles:
- Collecting the root manifest, workspace members and local path dependencies
- Masking local package versions so version bumps keep the recipe stable
- Recording target stub locations (paths only, never file contents)
- Normalizing Cargo.lock and recording pinned external packages
"""

from __future__ import annotations

import logging
import re
import tomllib
from pathlib import Path, PurePosixPath
from typing import Any

from layerchef.errors import ManifestMalformedError
from layerchef.recipe.models import (
    DeclaredDependency,
    ManifestFile,
    PinnedPackage,
    Recipe,
    TargetStub,
)
from layerchef.types import ManifestFormat

logger = logging.getLogger(__name__)

MANIFEST_NAME = "Cargo.toml"
LOCKFILE_NAME = "Cargo.lock"

# Version written in place of local package versions
MASKED_VERSION = "0.0.1"

DEPENDENCY_TABLES = ("dependencies", "dev-dependencies", "build-dependencies")

# Toolchain files copied verbatim when present at the root
EXTRA_FILES = ("rust-toolchain", "rust-toolchain.toml", ".cargo/config.toml")

# Explicit target arrays and the stub kind for each
TARGET_ARRAYS = (("bin", "bin"), ("example", "example"), ("test", "test"), ("bench", "bench"))

# Requirement table keys, in the order they appear in the description
REQUIREMENT_KEYS = (
    "version",
    "path",
    "git",
    "branch",
    "tag",
    "rev",
    "registry",
    "package",
    "workspace",
    "default-features",
    "optional",
    "features",
)

_HEADER_RE = re.compile(r"^\s*\[\[?\s*([^\[\]]+?)\s*\]\]?\s*(#.*)?$")
_VERSION_RE = re.compile(r"""^(\s*version\s*=\s*)(["']).*?\2""")
_NAME_RE = re.compile(r"""^\s*name\s*=\s*(["'])(.*?)\1""")


def read_text(path: Path) -> str:
    """Read a manifest as text with line endings normalized to LF."""
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ManifestMalformedError(f"{path.name} is not valid UTF-8: {e}") from e
    return text.replace("\r\n", "\n").replace("\r", "\n")


def parse_toml(text: str, rel_path: str) -> dict[str, Any]:
    """Parse TOML text, mapping decode errors to ManifestMalformedError."""
    try:
        return tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise ManifestMalformedError(f"{rel_path}: {e}") from e


def mask_package_version(text: str) -> str:
    """Replace the version in [package] and [workspace.package] tables.

    Args:
        text: Manifest text.

    Returns:
        Manifest text with local package versions set to MASKED_VERSION.
    """
    lines = text.split("\n")
    section: str | None = None
    for i, line in enumerate(lines):
        header = _HEADER_RE.match(line)
        if header:
            section = header.group(1)
            continue
        if section in ("package", "workspace.package"):
            lines[i] = _VERSION_RE.sub(
                rf'\g<1>"{MASKED_VERSION}"', line, count=1
            )
    return "\n".join(lines)


def mask_lockfile(text: str, local_names: set[str]) -> str:
    """Replace the version of local packages in Cargo.lock text.

    Args:
        text: Lockfile text.
        local_names: Names of packages without a source (local crates).

    Returns:
        Lockfile text with local versions set to MASKED_VERSION.
    """
    lines = text.split("\n")
    current_name: str | None = None
    in_package = False
    for i, line in enumerate(lines):
        header = _HEADER_RE.match(line)
        if header:
            in_package = header.group(1) == "package"
            current_name = None
            continue
        if not in_package:
            continue
        name_match = _NAME_RE.match(line)
        if name_match:
            current_name = name_match.group(2)
            continue
        if current_name in local_names:
            lines[i] = _VERSION_RE.sub(rf'\g<1>"{MASKED_VERSION}"', line, count=1)
    return "\n".join(lines)


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ",".join(sorted(str(v) for v in value))
    return str(value)


def describe_requirement(spec: Any, rel_path: str, name: str) -> str:
    """Render a dependency specification as a stable string.

    Args:
        spec: Requirement string or table from the manifest.
        rel_path: Manifest path for error messages.
        name: Dependency name for error messages.

    Returns:
        Normalized requirement description.

    Raises:
        ManifestMalformedError: If the requirement has an invalid type.
    """
    if isinstance(spec, str):
        return spec
    if isinstance(spec, dict):
        parts = [
            f"{key}={_format_value(spec[key])}" for key in REQUIREMENT_KEYS if key in spec
        ]
        return ";".join(parts) if parts else "*"
    raise ManifestMalformedError(
        f"{rel_path}: dependency '{name}' must be a string or table, "
        f"got {type(spec).__name__}"
    )


def _dependencies_from_table(
    table: Any, rel_path: str, kind: str
) -> list[DeclaredDependency]:
    if table is None:
        return []
    if not isinstance(table, dict):
        raise ManifestMalformedError(f"{rel_path}: [{kind}] must be a table")
    return [
        DeclaredDependency(
            name=name,
            requirement=describe_requirement(spec, rel_path, name),
            kind=kind,
            manifest=rel_path,
        )
        for name, spec in table.items()
    ]


def collect_dependencies(data: dict[str, Any], rel_path: str) -> list[DeclaredDependency]:
    """Collect every declared dependency of one manifest.

    Args:
        data: Parsed manifest.
        rel_path: Manifest path relative to the source root.

    Returns:
        List of declared dependencies (unsorted).
    """
    deps: list[DeclaredDependency] = []
    for table in DEPENDENCY_TABLES:
        deps.extend(_dependencies_from_table(data.get(table), rel_path, table))

    targets = data.get("target")
    if targets is not None:
        if not isinstance(targets, dict):
            raise ManifestMalformedError(f"{rel_path}: [target] must be a table")
        for cfg, target_data in targets.items():
            if not isinstance(target_data, dict):
                raise ManifestMalformedError(
                    f"{rel_path}: [target.{cfg}] must be a table"
                )
            for table in DEPENDENCY_TABLES:
                deps.extend(
                    _dependencies_from_table(
                        target_data.get(table), rel_path, f"target.{cfg}.{table}"
                    )
                )

    workspace = data.get("workspace")
    if isinstance(workspace, dict):
        deps.extend(
            _dependencies_from_table(
                workspace.get("dependencies"), rel_path, "workspace.dependencies"
            )
        )
    return deps


def _inside_root(root: Path, candidate: Path) -> bool:
    try:
        candidate.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True


def _normalize_dir(rel_dir: str) -> str:
    return "" if rel_dir == "." else rel_dir


def _join(rel_dir: str, path: str) -> str:
    joined = PurePosixPath(rel_dir) / path if rel_dir else PurePosixPath(path)
    return joined.as_posix()


def discover_targets(
    root: Path, rel_dir: str, data: dict[str, Any], rel_path: str
) -> list[TargetStub]:
    """Find target stub locations for one package manifest.

    Only file existence is inspected; contents are never read.

    Args:
        root: Source tree root.
        rel_dir: Package directory relative to the root ("" for the root).
        data: Parsed manifest.
        rel_path: Manifest path for error messages.

    Returns:
        List of target stubs with root-relative paths.
    """
    package = data.get("package")
    if not isinstance(package, dict):
        return []

    base = root / rel_dir if rel_dir else root
    found: list[tuple[str, str]] = []

    if (base / "src" / "main.rs").is_file():
        found.append(("src/main.rs", "bin"))
    if (base / "src" / "lib.rs").is_file():
        found.append(("src/lib.rs", "lib"))
    bin_dir = base / "src" / "bin"
    if bin_dir.is_dir():
        for path in sorted(bin_dir.glob("*.rs")):
            found.append((path.relative_to(base).as_posix(), "bin"))
        for path in sorted(bin_dir.glob("*/main.rs")):
            found.append((path.relative_to(base).as_posix(), "bin"))

    build = package.get("build")
    if isinstance(build, str):
        found.append((build, "build"))
    elif build is not False and (base / "build.rs").is_file():
        found.append(("build.rs", "build"))

    lib = data.get("lib")
    if isinstance(lib, dict) and isinstance(lib.get("path"), str):
        found.append((lib["path"], "lib"))

    for section, kind in TARGET_ARRAYS:
        entries = data.get(section)
        if entries is None:
            continue
        if not isinstance(entries, list):
            raise ManifestMalformedError(f"{rel_path}: [[{section}]] must be an array")
        for entry in entries:
            if isinstance(entry, dict) and isinstance(entry.get("path"), str):
                found.append((entry["path"], kind))

    stubs: list[TargetStub] = []
    for path, kind in found:
        full = _join(rel_dir, path)
        if not _inside_root(root, root / full):
            raise ManifestMalformedError(
                f"{rel_path}: target path '{path}' escapes the source tree"
            )
        stubs.append(TargetStub(path=full, kind=kind))
    return stubs


def _local_path_dependencies(data: dict[str, Any]) -> list[str]:
    paths: list[str] = []
    tables: list[Any] = [data.get(t) for t in DEPENDENCY_TABLES]
    targets = data.get("target")
    if isinstance(targets, dict):
        for target_data in targets.values():
            if isinstance(target_data, dict):
                tables.extend(target_data.get(t) for t in DEPENDENCY_TABLES)
    workspace = data.get("workspace")
    if isinstance(workspace, dict):
        tables.append(workspace.get("dependencies"))
    for table in tables:
        if not isinstance(table, dict):
            continue
        for spec in table.values():
            if isinstance(spec, dict) and isinstance(spec.get("path"), str):
                paths.append(spec["path"])
    return paths


def _workspace_members(root: Path, workspace: dict[str, Any]) -> list[str]:
    members = workspace.get("members", [])
    excludes = workspace.get("exclude", [])
    if not isinstance(members, list) or not isinstance(excludes, list):
        raise ManifestMalformedError(
            f"{MANIFEST_NAME}: workspace members and exclude must be arrays"
        )
    excluded = {PurePosixPath(e).as_posix() for e in excludes if isinstance(e, str)}
    result: list[str] = []
    for pattern in members:
        if not isinstance(pattern, str):
            raise ManifestMalformedError(
                f"{MANIFEST_NAME}: workspace member entries must be strings"
            )
        for match in sorted(root.glob(pattern)):
            if not (match / MANIFEST_NAME).is_file():
                continue
            if not _inside_root(root, match):
                raise ManifestMalformedError(
                    f"{MANIFEST_NAME}: workspace member '{pattern}' escapes the source tree"
                )
            rel = _normalize_dir(match.relative_to(root).as_posix())
            if rel not in excluded:
                result.append(rel)
    return result


def collect_manifests(root: Path) -> list[tuple[str, str, dict[str, Any]]]:
    """Collect the root manifest and every local manifest it reaches.

    Args:
        root: Source tree root.

    Returns:
        List of (package directory, manifest text, parsed manifest) tuples.

    Raises:
        ManifestMalformedError: If a manifest is missing, unparsable or invalid.
    """
    if not (root / MANIFEST_NAME).is_file():
        raise ManifestMalformedError(f"No {MANIFEST_NAME} found in {root}")

    collected: list[tuple[str, str, dict[str, Any]]] = []
    queue: list[str] = [""]
    seen: set[str] = set()

    while queue:
        rel_dir = queue.pop(0)
        if rel_dir in seen:
            continue
        seen.add(rel_dir)

        rel_path = _join(rel_dir, MANIFEST_NAME)
        text = read_text(root / rel_path)
        data = parse_toml(text, rel_path)

        package = data.get("package")
        workspace = data.get("workspace")
        if package is None and workspace is None:
            raise ManifestMalformedError(
                f"{rel_path}: neither [package] nor [workspace] is declared"
            )
        if package is not None:
            if not isinstance(package, dict) or not isinstance(package.get("name"), str):
                raise ManifestMalformedError(f"{rel_path}: missing [package].name")

        collected.append((rel_dir, text, data))

        if rel_dir == "" and isinstance(workspace, dict):
            queue.extend(_workspace_members(root, workspace))

        for dep_path in _local_path_dependencies(data):
            dep_rel = _join(rel_dir, dep_path)
            dep_dir = root / dep_rel
            if not _inside_root(root, dep_dir):
                raise ManifestMalformedError(
                    f"{rel_path}: path dependency '{dep_path}' escapes the source tree"
                )
            if (dep_dir / MANIFEST_NAME).is_file():
                queue.append(
                    _normalize_dir(dep_dir.resolve().relative_to(root.resolve()).as_posix())
                )

    return collected


def parse_lockfile(text: str) -> tuple[set[str], list[PinnedPackage]]:
    """Validate Cargo.lock and split local from external packages.

    Args:
        text: Lockfile text.

    Returns:
        Tuple of (local package names, pinned external packages).

    Raises:
        ManifestMalformedError: If the lockfile is invalid.
    """
    data = parse_toml(text, LOCKFILE_NAME)
    packages = data.get("package", [])
    if not isinstance(packages, list):
        raise ManifestMalformedError(f"{LOCKFILE_NAME}: [[package]] must be an array")

    local: set[str] = set()
    pinned: list[PinnedPackage] = []
    for entry in packages:
        if not isinstance(entry, dict):
            raise ManifestMalformedError(f"{LOCKFILE_NAME}: package entries must be tables")
        name = entry.get("name")
        version = entry.get("version")
        if not isinstance(name, str) or not isinstance(version, str):
            raise ManifestMalformedError(
                f"{LOCKFILE_NAME}: package entries need string name and version"
            )
        source = entry.get("source")
        if source is None:
            local.add(name)
        else:
            pinned.append(PinnedPackage(name=name, version=version, source=str(source)))
    return local, pinned


def extract_cargo_recipe(root: Path, require_lockfile: bool = False) -> Recipe:
    """Extract a recipe from a cargo source tree.

    Args:
        root: Source tree root.
        require_lockfile: Fail when Cargo.lock is absent.

    Returns:
        Recipe in canonical order.

    Raises:
        ManifestMalformedError: If declarations are invalid or a required
            lockfile is missing.
    """
    manifests: list[ManifestFile] = []
    targets: list[TargetStub] = []
    dependencies: list[DeclaredDependency] = []

    for rel_dir, text, data in collect_manifests(root):
        rel_path = _join(rel_dir, MANIFEST_NAME)
        manifests.append(ManifestFile(path=rel_path, contents=mask_package_version(text)))
        targets.extend(discover_targets(root, rel_dir, data, rel_path))
        dependencies.extend(collect_dependencies(data, rel_path))

    for extra in EXTRA_FILES:
        path = root / extra
        if path.is_file():
            manifests.append(ManifestFile(path=extra, contents=read_text(path)))

    lockfile: ManifestFile | None = None
    pinned: list[PinnedPackage] = []
    lock_path = root / LOCKFILE_NAME
    if lock_path.is_file():
        lock_text = read_text(lock_path)
        local_names, pinned = parse_lockfile(lock_text)
        lockfile = ManifestFile(
            path=LOCKFILE_NAME, contents=mask_lockfile(lock_text, local_names)
        )
    elif require_lockfile:
        raise ManifestMalformedError(
            f"{LOCKFILE_NAME} is required but missing in {root}",
            reason="lockfile_required",
        )
    else:
        logger.warning(
            "No %s in %s; recipe records declared requirements without pinned versions",
            LOCKFILE_NAME,
            root,
        )

    return Recipe.create(
        format=ManifestFormat.CARGO.value,
        manifests=manifests,
        lockfile=lockfile,
        targets=targets,
        dependencies=dependencies,
        pinned=pinned,
    )


__all__ = [
    "DEPENDENCY_TABLES",
    "LOCKFILE_NAME",
    "MANIFEST_NAME",
    "MASKED_VERSION",
    "collect_dependencies",
    "collect_manifests",
    "describe_requirement",
    "discover_targets",
    "extract_cargo_recipe",
    "mask_lockfile",
    "mask_package_version",
    "parse_lockfile",
    "parse_toml",
    "read_text",
]
