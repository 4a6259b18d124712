"""Project file loading.

This module finds and validates the project file at the root of a source
tree. When no project file exists, a cargo project is inferred from the
root ``Cargo.toml``.
"""

import json
import logging
import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from layerchef.errors import ProjectError
from layerchef.projects.schema import ProjectSchema

logger = logging.getLogger(__name__)

PROJECT_FILENAMES = ("layerchef.yaml", "layerchef.yml", "layerchef.json")


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def load_project(path: Path) -> ProjectSchema:
    """Load and validate a project file (YAML or JSON).

    Args:
        path: Path to the project file.

    Returns:
        Validated ProjectSchema instance.

    Raises:
        ProjectError: If the file is missing, unparsable, or invalid.
    """
    suffix = path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            data = load_yaml(path)
        elif suffix == ".json":
            data = load_json(path)
        else:
            raise ProjectError(
                f"Unsupported file extension '{suffix}'. Use .yaml, .yml, or .json"
            )
        return ProjectSchema.model_validate(data)
    except FileNotFoundError as e:
        raise ProjectError(f"Project file not found: {path}") from e
    except ValidationError as e:
        raise ProjectError(f"Invalid project file {path}: {e}") from e
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ProjectError(f"Parse error in {path}: {e}") from e
    except ValueError as e:
        raise ProjectError(f"Invalid project file {path}: {e}") from e


def find_project_file(source_root: Path) -> Path | None:
    """Return the project file in a source tree, if any."""
    for name in PROJECT_FILENAMES:
        candidate = source_root / name
        if candidate.is_file():
            return candidate
    return None


def infer_cargo_project(source_root: Path) -> ProjectSchema:
    """Infer a cargo project from the root Cargo.toml.

    Args:
        source_root: Source tree root.

    Returns:
        ProjectSchema using the cargo preset and the package name as binary.

    Raises:
        ProjectError: If no usable Cargo.toml exists.
    """
    manifest = source_root / "Cargo.toml"
    if not manifest.is_file():
        raise ProjectError(
            f"No project file or Cargo.toml found in {source_root}"
        )
    try:
        with manifest.open("rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ProjectError(f"Cannot infer project from {manifest}: {e}") from e

    package = data.get("package")
    name = package.get("name") if isinstance(package, dict) else None
    if not isinstance(name, str) or not name:
        raise ProjectError(
            f"Cannot infer project from {manifest}: missing [package].name"
        )

    logger.info("No project file in %s; inferred cargo project '%s'", source_root, name)
    try:
        return ProjectSchema(name=name, binary=name)
    except ValidationError as e:
        raise ProjectError(f"Cannot infer project from {manifest}: {e}") from e


def load_project_for_source(source_root: Path) -> ProjectSchema:
    """Load the project for a source tree, inferring one when absent.

    Args:
        source_root: Source tree root.

    Returns:
        Validated ProjectSchema instance.

    Raises:
        ProjectError: If the source root is not a directory or no project
            can be loaded or inferred.
    """
    if not source_root.is_dir():
        raise ProjectError(f"Source tree not found: {source_root}")
    project_file = find_project_file(source_root)
    if project_file is not None:
        return load_project(project_file)
    return infer_cargo_project(source_root)


def project_to_yaml_string(project: ProjectSchema) -> str:
    """Convert a project to a YAML string.

    Args:
        project: ProjectSchema instance to convert.

    Returns:
        YAML string representation.
    """
    data = project.model_dump(mode="json", exclude_none=True)
    result: str = yaml.dump(
        data, default_flow_style=False, allow_unicode=True, sort_keys=False
    )
    return result


__all__ = [
    "PROJECT_FILENAMES",
    "find_project_file",
    "infer_cargo_project",
    "load_json",
    "load_project",
    "load_project_for_source",
    "load_yaml",
    "project_to_yaml_string",
]
