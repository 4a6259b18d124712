"""Environment preparation stage.

This module handles:
- Computing the environment key from the toolchain definition and host
- Running toolchain setup commands once per key
- Providing a per-key toolchain home shared by the cook and the build
- Recording an environment marker that later builds reference instead of
  re-running setup
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import platform
import shutil
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from layerchef.builds.runner import CommandError, run_commands
from layerchef.errors import ToolchainSetupError

if TYPE_CHECKING:
    from layerchef.config import Settings
    from layerchef.projects.toolchain import ResolvedToolchain

logger = logging.getLogger(__name__)

# Schema version for environment keys; bump when key material changes
ENVIRONMENT_SCHEMA_VERSION = "1"


@dataclass
class Environment:
    """A prepared build environment.

    Attributes:
        key: Environment key (sha256:...).
        marker_path: Path to the environment marker file.
        prepared_at: ISO timestamp when setup last ran.
        reused: Whether an existing marker was referenced.
        home: Toolchain home substituted for ``{toolchain_home}``.
    """

    key: str
    marker_path: Path
    prepared_at: str
    reused: bool = False
    home: Path | None = None


def environment_inputs(toolchain: ResolvedToolchain) -> dict[str, Any]:
    """Return the canonical inputs of the environment key."""
    return {
        "schema_version": ENVIRONMENT_SCHEMA_VERSION,
        "toolchain": toolchain.key_material(),
        "platform": {
            "system": platform.system(),
            "machine": platform.machine(),
        },
    }


def compute_environment_key(toolchain: ResolvedToolchain) -> str:
    """Compute the environment key for a toolchain on this host.

    Args:
        toolchain: Resolved toolchain.

    Returns:
        Environment key as hex string (sha256:...).
    """
    canonical_json = json.dumps(
        environment_inputs(toolchain), sort_keys=True, separators=(",", ":")
    )
    return "sha256:" + hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()


def environment_marker_path(cache_dir: Path, key: str) -> Path:
    """Return the marker file path for an environment key."""
    return cache_dir / "environments" / f"{key.split(':', 1)[-1]}.json"


def environment_home(cache_dir: Path, key: str) -> Path:
    """Return the toolchain home directory for an environment key.

    The home outlives every workspace, so paths tools record in their
    caches stay valid between the cook and later application builds.
    """
    return cache_dir / "toolchains" / key.split(":", 1)[-1]


def captured_tool_output(log_path: Path, limit: int = 20) -> list[str]:
    """Return the command output lines of a setup log, without headers.

    Setup commands usually print tool versions, so these lines are kept in
    the environment marker.
    """
    if not log_path.exists():
        return []
    with log_path.open(encoding="utf-8", errors="replace") as f:
        lines = [
            line.rstrip()
            for line in f
            if line.strip() and not line.startswith("# ")
        ]
    return lines[-limit:]


def _write_marker(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(f".tmp-{os.getpid()}-{threading.get_ident()}")
    with tmp_path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=True)
    os.replace(tmp_path, path)


def prepare_environment(
    toolchain: ResolvedToolchain,
    settings: Settings,
    log_path: Path,
    refresh: bool = False,
    cancel: threading.Event | None = None,
) -> Environment:
    """Prepare the build environment, reusing a recorded one when present.

    Args:
        toolchain: Resolved toolchain.
        settings: Application settings.
        log_path: Log file for setup command output.
        refresh: Re-run setup even if a marker exists.
        cancel: Cancellation event.

    Returns:
        Environment describing the prepared toolchain.

    Raises:
        ToolchainSetupError: If any setup command fails.
        PipelineCancelled: If cancelled while setup runs.
    """
    key = compute_environment_key(toolchain)
    marker = environment_marker_path(settings.cache_dir, key)
    home = environment_home(settings.cache_dir, key)
    home.mkdir(parents=True, exist_ok=True)
    toolchain = toolchain.with_home(home)

    if marker.exists() and not refresh:
        try:
            with marker.open(encoding="utf-8") as f:
                data = json.load(f)
            logger.info("Reusing prepared environment %s", key[:23])
            return Environment(
                key=key,
                marker_path=marker,
                prepared_at=str(data.get("prepared_at", "")),
                reused=True,
                home=home,
            )
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable environment marker %s: %s", marker, e)

    if settings.tmp_dir is not None:
        settings.tmp_dir.mkdir(parents=True, exist_ok=True)
    scratch = Path(tempfile.mkdtemp(prefix="layerchef_env_", dir=settings.tmp_dir))
    try:
        commands = toolchain.commands(toolchain.setup, scratch)
        logger.info("Preparing environment %s (%d setup commands)", key[:23], len(commands))
        try:
            run_commands(
                commands,
                cwd=scratch,
                log_path=log_path,
                timeout=settings.setup_timeout,
                env_override=toolchain.environment(scratch),
                cancel=cancel,
            )
        except CommandError as e:
            raise ToolchainSetupError(
                f"Toolchain setup failed: {e}", log_path=str(log_path)
            ) from e
    finally:
        shutil.rmtree(scratch, ignore_errors=True)

    prepared_at = datetime.now(timezone.utc).isoformat()
    _write_marker(
        marker,
        {
            "key": key,
            "prepared_at": prepared_at,
            "inputs": environment_inputs(toolchain),
            "home": str(home),
            "tool_versions": captured_tool_output(log_path),
        },
    )
    logger.info("Prepared environment %s", key[:23])
    return Environment(key=key, marker_path=marker, prepared_at=prepared_at, home=home)


def list_environments(cache_dir: Path) -> list[dict[str, Any]]:
    """List recorded environment markers.

    Args:
        cache_dir: Cache root directory.

    Returns:
        Marker contents, sorted by key.
    """
    env_dir = cache_dir / "environments"
    if not env_dir.is_dir():
        return []
    markers: list[dict[str, Any]] = []
    for path in sorted(env_dir.glob("*.json")):
        try:
            with path.open(encoding="utf-8") as f:
                markers.append(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Skipping unreadable environment marker %s: %s", path, e)
    return markers


__all__ = [
    "ENVIRONMENT_SCHEMA_VERSION",
    "Environment",
    "captured_tool_output",
    "compute_environment_key",
    "environment_home",
    "environment_inputs",
    "environment_marker_path",
    "list_environments",
    "prepare_environment",
]
