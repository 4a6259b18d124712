"""Artifact inspection and build manifests.

This module handles:
- Computing artifact checksums
- Describing the compiled binary
- Writing the per-build manifest next to the build logs
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from layerchef.types import ArtifactInfo

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

MANIFEST_FILENAME = "manifest.json"


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def describe_artifact(path: Path, root: Path | None = None) -> ArtifactInfo:
    """Describe a built artifact.

    Args:
        path: Artifact file.
        root: Directory relative paths are computed from.

    Returns:
        ArtifactInfo with size and checksum.
    """
    try:
        relative_path = path.relative_to(root).as_posix() if root else path.name
    except ValueError:
        relative_path = path.name
    return ArtifactInfo(
        filename=path.name,
        relative_path=relative_path,
        size_bytes=path.stat().st_size,
        sha256=compute_file_hash(path),
    )


def generate_manifest(
    artifact: ArtifactInfo | None,
    build_id: int | None = None,
    project_name: str | None = None,
    recipe_digest: str | None = None,
    layer_key: str | None = None,
    layer_cache_hit: bool | None = None,
    image_id: str | None = None,
    extra_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a build manifest.

    Args:
        artifact: The compiled binary, if the build produced one.
        build_id: Optional database build ID.
        project_name: Optional project name.
        recipe_digest: Digest of the recipe the build used.
        layer_key: Key of the dependency layer the build used.
        layer_cache_hit: Whether the layer was reused.
        image_id: ID of the packaged runtime image.
        extra_metadata: Optional additional metadata.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "artifact": asdict(artifact) if artifact is not None else None,
    }

    if build_id is not None:
        manifest["build_id"] = build_id
    if project_name:
        manifest["project"] = project_name
    if recipe_digest:
        manifest["recipe_digest"] = recipe_digest
    if layer_key:
        manifest["layer_key"] = layer_key
    if layer_cache_hit is not None:
        manifest["layer_cache_hit"] = layer_cache_hit
    if image_id:
        manifest["image_id"] = image_id
    if extra_metadata:
        manifest["metadata"] = extra_metadata

    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "HASH_CHUNK_SIZE",
    "MANIFEST_FILENAME",
    "compute_file_hash",
    "describe_artifact",
    "generate_manifest",
    "write_manifest",
]
