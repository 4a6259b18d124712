"""Runtime image packaging.

This module handles:
- Copying the compiled binary, and nothing else, into a minimal rootfs
- Writing the image config with an exec-form entrypoint
- Content-addressed image directories with atomic publication
- Reproducible tar.gz export
- Running a packaged image's entrypoint

Image layout::

    <images_dir>/<project>/<hex>/config.json
    <images_dir>/<project>/<hex>/rootfs/<workdir>/<binary>
    <images_dir>/<project>/<hex>/image.tar.gz    (optional)
"""

from __future__ import annotations

import gzip
import hashlib
import json
import logging
import os
import shutil
import subprocess
import tarfile
import uuid
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from layerchef.builds.artifacts import describe_artifact
from layerchef.errors import PackagingError

if TYPE_CHECKING:
    from layerchef.projects.schema import ProjectSchema

logger = logging.getLogger(__name__)

# Schema version for image config; bump when the layout changes
IMAGE_SCHEMA_VERSION = "1"

CONFIG_FILENAME = "config.json"
ROOTFS_DIRNAME = "rootfs"
ARCHIVE_FILENAME = "image.tar.gz"
BINARY_MODE = 0o755


class ImageError(Exception):
    """Raised when a packaged image cannot be loaded or run."""

    def __init__(self, message: str, code: str = "image_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class RuntimeImageInfo:
    """A packaged runtime image on disk.

    Attributes:
        image_id: Content hash of the image config (sha256:...).
        path: Image directory.
        config: Parsed image config.
        archive_path: Reproducible archive, if one was written.
        reused: Whether an identical image already existed.
    """

    image_id: str
    path: Path
    config: dict[str, Any]
    archive_path: Path | None = None
    reused: bool = False

    @property
    def rootfs(self) -> Path:
        """Root filesystem directory."""
        return self.path / ROOTFS_DIRNAME

    @property
    def working_dir(self) -> str:
        """Working directory inside the image."""
        return str(self.config["working_dir"])

    @property
    def entrypoint(self) -> list[str]:
        """Exec-form entrypoint."""
        return list(self.config["entrypoint"])

    @property
    def binary_path(self) -> Path:
        """Path of the binary inside the rootfs."""
        return rootfs_path(self.rootfs, self.config["artifact"]["path"])

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "image_id": self.image_id,
            "path": str(self.path),
            "archive_path": str(self.archive_path) if self.archive_path else None,
            "reused": self.reused,
            "config": self.config,
        }


def rootfs_path(rootfs: Path, image_path: str) -> Path:
    """Map an absolute path inside the image onto the rootfs directory."""
    parts = [p for p in PurePosixPath(image_path).parts if p != "/"]
    return rootfs.joinpath(*parts)


def image_config(
    project: ProjectSchema,
    sha256: str,
    size_bytes: int,
) -> dict[str, Any]:
    """Build the image config for a project and artifact.

    The config holds no timestamps, so identical inputs produce an
    identical config and image ID.
    """
    runtime = project.runtime
    binary_path = str(PurePosixPath(runtime.workdir) / project.binary)
    return {
        "schema_version": IMAGE_SCHEMA_VERSION,
        "project": project.name,
        "binary": project.binary,
        "working_dir": runtime.workdir,
        "entrypoint": list(runtime.entrypoint or [f"./{project.binary}"]),
        "artifact": {
            "path": binary_path,
            "sha256": sha256,
            "size_bytes": size_bytes,
        },
        "labels": dict(sorted((runtime.labels or {}).items())),
    }


def compute_image_id(config: dict[str, Any]) -> str:
    """Compute the image ID from its config (sha256:...)."""
    canonical_json = json.dumps(config, sort_keys=True, separators=(",", ":"))
    return "sha256:" + hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()


def _archive_filter(tarinfo: tarfile.TarInfo) -> tarfile.TarInfo:
    tarinfo.uid = 0
    tarinfo.gid = 0
    tarinfo.uname = ""
    tarinfo.gname = ""
    tarinfo.mtime = 0
    return tarinfo


def write_image_archive(image_dir: Path, output: Path) -> Path:
    """Write a reproducible tar.gz of an image's rootfs and config.

    Ownership and modification times are normalized, and entries are
    added in sorted order, so equal images produce identical archives.
    """
    tmp_output = output.with_name(f".{output.name}.{uuid.uuid4().hex[:8]}")
    try:
        with open(tmp_output, "wb") as raw, gzip.GzipFile(
            filename="", mode="wb", fileobj=raw, mtime=0
        ) as gz, tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
            tar.add(image_dir / CONFIG_FILENAME, arcname=CONFIG_FILENAME, filter=_archive_filter)
            tar.add(image_dir / ROOTFS_DIRNAME, arcname=ROOTFS_DIRNAME, filter=_archive_filter)
        os.replace(tmp_output, output)
    finally:
        tmp_output.unlink(missing_ok=True)
    logger.info("Wrote image archive %s", output)
    return output


def package_runtime_image(
    artifact_path: Path,
    project: ProjectSchema,
    images_dir: Path,
    archive: bool = False,
) -> RuntimeImageInfo:
    """Package the compiled binary into a runtime image.

    Args:
        artifact_path: Compiled binary in the build workspace.
        project: Project definition (binary name, runtime layout).
        images_dir: Root directory for images.
        archive: Also write a reproducible image.tar.gz.

    Returns:
        RuntimeImageInfo of the new or reused image.

    Raises:
        PackagingError: If the artifact is missing or the image cannot
            be written.
    """
    if not artifact_path.is_file():
        raise PackagingError(
            f"Build artifact not found: {artifact_path}", reason="artifact_missing"
        )

    try:
        artifact = describe_artifact(artifact_path)
        config = image_config(project, artifact.sha256, artifact.size_bytes)
        image_id = compute_image_id(config)
        project_dir = images_dir / project.name
        final_path = project_dir / image_id.split(":", 1)[-1]

        if (final_path / CONFIG_FILENAME).is_file():
            logger.info("Reusing identical image %s", image_id[:23])
            image = RuntimeImageInfo(
                image_id=image_id, path=final_path, config=config, reused=True
            )
        else:
            project_dir.mkdir(parents=True, exist_ok=True)
            staging = project_dir / f".tmp-{uuid.uuid4().hex[:12]}"
            try:
                _assemble_image(staging, artifact_path, config)
                if archive:
                    write_image_archive(staging, staging / ARCHIVE_FILENAME)
                try:
                    os.rename(staging, final_path)
                    reused = False
                except OSError:
                    if not (final_path / CONFIG_FILENAME).is_file():
                        raise
                    logger.info("Image %s published concurrently", image_id[:23])
                    reused = True
            finally:
                shutil.rmtree(staging, ignore_errors=True)
            image = RuntimeImageInfo(
                image_id=image_id, path=final_path, config=config, reused=reused
            )

        archive_path = final_path / ARCHIVE_FILENAME
        if archive:
            # Reused images may predate the archive request
            if not archive_path.is_file():
                write_image_archive(final_path, archive_path)
            image.archive_path = archive_path
        elif archive_path.is_file():
            image.archive_path = archive_path
    except OSError as e:
        raise PackagingError(f"Failed to package image: {e}") from e

    logger.info(
        "Packaged %s into image %s at %s", project.binary, image.image_id[:23], image.path
    )
    return image


def _assemble_image(staging: Path, artifact_path: Path, config: dict[str, Any]) -> None:
    rootfs = staging / ROOTFS_DIRNAME
    binary_dest = rootfs_path(rootfs, config["artifact"]["path"])
    binary_dest.parent.mkdir(parents=True)
    shutil.copyfile(artifact_path, binary_dest)
    binary_dest.chmod(BINARY_MODE)
    with (staging / CONFIG_FILENAME).open("w", encoding="utf-8") as f:
        json.dump(config, f, indent=2, sort_keys=True)
        f.write("\n")


def load_image(image_dir: Path) -> RuntimeImageInfo:
    """Load a packaged image from its directory.

    Raises:
        ImageError: If the directory holds no valid image.
    """
    config_path = image_dir / CONFIG_FILENAME
    if not config_path.is_file():
        raise ImageError(f"No image config found in {image_dir}", code="image_not_found")
    try:
        with config_path.open(encoding="utf-8") as f:
            config = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ImageError(f"Unreadable image config {config_path}: {e}") from e

    archive_path = image_dir / ARCHIVE_FILENAME
    return RuntimeImageInfo(
        image_id=compute_image_id(config),
        path=image_dir,
        config=config,
        archive_path=archive_path if archive_path.is_file() else None,
        reused=True,
    )


def list_rootfs_files(image_dir: Path) -> list[str]:
    """Return image-absolute paths of every file in an image's rootfs."""
    rootfs = image_dir / ROOTFS_DIRNAME
    return sorted(
        "/" + path.relative_to(rootfs).as_posix()
        for path in rootfs.rglob("*")
        if path.is_file()
    )


def run_image(
    image: RuntimeImageInfo,
    args: list[str] | None = None,
    capture_output: bool = False,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run an image's entrypoint.

    The entrypoint runs in exec form from the image's working directory,
    with the invoker's arguments appended. No shell is involved.

    Args:
        image: Packaged image.
        args: Extra arguments for the entrypoint.
        capture_output: Capture stdout/stderr instead of inheriting them.
        timeout: Timeout in seconds.

    Returns:
        CompletedProcess of the entrypoint.

    Raises:
        ImageError: If the entrypoint cannot be started.
    """
    cwd = rootfs_path(image.rootfs, image.working_dir)
    argv = image.entrypoint
    if argv[0].startswith("/"):
        argv[0] = str(rootfs_path(image.rootfs, argv[0]))
    argv.extend(args or [])

    logger.debug("Running %s in %s", argv, cwd)
    try:
        return subprocess.run(
            argv,
            cwd=cwd,
            capture_output=capture_output,
            text=True,
            timeout=timeout,
            check=False,
        )
    except OSError as e:
        raise ImageError(f"Failed to run entrypoint {argv[0]}: {e}", code="run_error") from e


__all__ = [
    "ARCHIVE_FILENAME",
    "CONFIG_FILENAME",
    "IMAGE_SCHEMA_VERSION",
    "ROOTFS_DIRNAME",
    "ImageError",
    "RuntimeImageInfo",
    "compute_image_id",
    "image_config",
    "list_rootfs_files",
    "load_image",
    "package_runtime_image",
    "rootfs_path",
    "run_image",
    "write_image_archive",
]
