"""Build pipeline orchestration.

Runs the stages in order::

    Prepare ─┐
             ├─> CacheDeps -> Build -> Package
    Extract ─┘

Prepare and Extract run concurrently; everything after runs on the
calling thread. Any stage failure ends the run: the BuildRecord is marked
failed and the error propagates. No image is produced by a failed or
cancelled run, and committed layers and images are never touched.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from layerchef.builds.artifacts import (
    MANIFEST_FILENAME,
    describe_artifact,
    generate_manifest,
    write_manifest,
)
from layerchef.builds.models import BuildRecord
from layerchef.builds.service import CompiledApplication, compile_application
from layerchef.cache.service import ensure_dependency_layer
from layerchef.cache.store import LayerStore
from layerchef.config import get_settings
from layerchef.environment.service import Environment, prepare_environment
from layerchef.errors import PipelineCancelled, PipelineError
from layerchef.images.packager import RuntimeImageInfo, package_runtime_image
from layerchef.images.service import record_image
from layerchef.projects.io import load_project_for_source
from layerchef.projects.toolchain import resolve_toolchain
from layerchef.recipe.extract import extract_recipe
from layerchef.recipe.models import RECIPE_FILENAME, Recipe, write_recipe
from layerchef.types import BuildStatus, StageName, StageOutcome

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from layerchef.config import Settings
    from layerchef.projects.schema import ProjectSchema

logger = logging.getLogger(__name__)

T = TypeVar("T")

SETUP_LOG = "setup.log"
COOK_LOG = "cook.log"
BUILD_LOG = "build.log"

# Seconds between cancellation checks while concurrent stages run
CANCEL_POLL_INTERVAL = 0.1


@dataclass
class PipelineResult:
    """Result of a successful pipeline run.

    Attributes:
        build_id: BuildRecord ID.
        project_name: Project name.
        build_dir: Directory with logs, recipe and manifest.
        environment_key: Key of the prepared environment.
        recipe_digest: Digest of the extracted recipe.
        layer_key: Key of the dependency layer.
        layer_cache_hit: Whether the dependency layer was reused.
        image: Packaged runtime image.
        stages: Outcome of each stage, in order.
    """

    build_id: int
    project_name: str
    build_dir: Path
    environment_key: str
    recipe_digest: str
    layer_key: str
    layer_cache_hit: bool
    image: RuntimeImageInfo
    stages: list[StageOutcome] = field(default_factory=list)
    status: BuildStatus = BuildStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "build_id": self.build_id,
            "project": self.project_name,
            "status": self.status.value,
            "build_dir": str(self.build_dir),
            "environment_key": self.environment_key,
            "recipe_digest": self.recipe_digest,
            "layer_key": self.layer_key,
            "layer_cache_hit": self.layer_cache_hit,
            "image": self.image.to_dict(),
            "stages": [
                {
                    "stage": s.stage.value,
                    "duration_seconds": round(s.duration_seconds, 3),
                    "skipped": s.skipped,
                    "log_path": s.log_path,
                    "details": s.details,
                }
                for s in self.stages
            ],
        }


def _check_cancel(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise PipelineCancelled()


def _timed(func: Callable[[], T]) -> tuple[T, float]:
    start = time.monotonic()
    result = func()
    return result, time.monotonic() - start


def _prepare_and_extract(
    source_root: Path,
    project: ProjectSchema,
    toolchain_prepare: Callable[[threading.Event], Environment],
    cancel: threading.Event | None,
) -> tuple[tuple[Environment, float], tuple[Recipe, float]]:
    """Run Prepare and Extract concurrently, failing fast.

    When either stage fails, or the caller cancels, the other is
    cancelled and the first error in stage order is raised.
    """
    abort = threading.Event()
    with ThreadPoolExecutor(max_workers=2, thread_name_prefix="layerchef") as pool:
        prepare_future: Future[tuple[Environment, float]] = pool.submit(
            _timed, lambda: toolchain_prepare(abort)
        )
        extract_future: Future[tuple[Recipe, float]] = pool.submit(
            _timed, lambda: extract_recipe(source_root, project)
        )
        pending = {prepare_future, extract_future}
        while pending:
            done, pending = wait(
                pending, timeout=CANCEL_POLL_INTERVAL, return_when=FIRST_EXCEPTION
            )
            if any(f.exception() is not None for f in done):
                abort.set()
            if cancel is not None and cancel.is_set():
                abort.set()

    _check_cancel(cancel)
    for future in (prepare_future, extract_future):
        error = future.exception()
        if error is not None and not isinstance(error, PipelineCancelled):
            raise error
    for future in (prepare_future, extract_future):
        error = future.exception()
        if error is not None:
            raise error
    return prepare_future.result(), extract_future.result()


def _fail(session: Session, build: BuildRecord, error: PipelineError) -> None:
    if isinstance(error, PipelineCancelled):
        build.mark_cancelled(str(error))
    else:
        if error.stage is not None:
            build.mark_stage(error.stage.value)
        build.mark_failed(error_type=error.code, message=str(error))
    if error.log_path:
        build.log_path = error.log_path
    session.commit()


def run_pipeline(
    source_root: Path,
    session: Session,
    settings: Settings | None = None,
    project: ProjectSchema | None = None,
    force_deps: bool = False,
    archive: bool = False,
    refresh_environment: bool = False,
    cancel: threading.Event | None = None,
) -> PipelineResult:
    """Build a runtime image from a source tree.

    Args:
        source_root: Source tree root (read-only).
        session: Database session; committed at every stage transition.
        settings: Application settings.
        project: Project definition; loaded or inferred from the source
            tree when not given.
        force_deps: Re-cook the dependency layer even if it exists.
        archive: Also write a reproducible image archive.
        refresh_environment: Re-run toolchain setup even if recorded.
        cancel: Event that cancels the run when set.

    Returns:
        PipelineResult describing the image and every stage.

    Raises:
        ProjectError: If the project cannot be loaded.
        ToolchainSetupError: If environment preparation fails.
        ManifestMalformedError: If dependency manifests are invalid.
        DependencyBuildError: If the dependency cook fails.
        CompilationError: If the application build fails.
        PackagingError: If the artifact cannot be packaged.
        PipelineCancelled: If the run is cancelled.
    """
    if settings is None:
        settings = get_settings()

    source_root = source_root.resolve()
    if project is None:
        project = load_project_for_source(source_root)
    toolchain = resolve_toolchain(project)
    store = LayerStore(settings.cache_dir)

    build = BuildRecord(
        project_name=project.name,
        binary=project.binary,
        source_root=str(source_root),
        status=BuildStatus.PENDING.value,
    )
    session.add(build)
    session.flush()

    build_dir = settings.builds_dir / f"{build.id:08d}_{uuid.uuid4().hex[:8]}"
    build_dir.mkdir(parents=True, exist_ok=True)
    build.build_dir = str(build_dir)
    build.mark_running()
    session.commit()
    logger.info("Build %d started for %s (%s)", build.id, project.name, source_root)

    stages: list[StageOutcome] = []
    compiled: CompiledApplication | None = None

    try:
        _check_cancel(cancel)

        # Prepare + Extract
        build.mark_stage(StageName.PREPARE.value)
        build.log_path = str(build_dir / SETUP_LOG)
        session.commit()

        (environment, prepare_secs), (recipe, extract_secs) = _prepare_and_extract(
            source_root,
            project,
            lambda abort: prepare_environment(
                toolchain,
                settings,
                build_dir / SETUP_LOG,
                refresh=refresh_environment,
                cancel=abort,
            ),
            cancel,
        )
        stages.append(
            StageOutcome(
                stage=StageName.PREPARE,
                duration_seconds=prepare_secs,
                skipped=environment.reused,
                log_path=None if environment.reused else str(build_dir / SETUP_LOG),
                details={"environment_key": environment.key},
            )
        )
        recipe_path = write_recipe(recipe, build_dir / RECIPE_FILENAME)
        stages.append(
            StageOutcome(
                stage=StageName.EXTRACT,
                duration_seconds=extract_secs,
                details={
                    "recipe_digest": recipe.digest,
                    "recipe_path": str(recipe_path),
                    "pinned": recipe.is_pinned,
                },
            )
        )
        build.environment_key = environment.key
        build.recipe_digest = recipe.digest
        session.commit()
        if environment.home is not None:
            toolchain = toolchain.with_home(environment.home)
        _check_cancel(cancel)

        # CacheDeps
        build.mark_stage(StageName.CACHE_DEPS.value)
        build.log_path = str(build_dir / COOK_LOG)
        session.commit()
        layer, cook_secs = _timed(
            lambda: ensure_dependency_layer(
                recipe,
                environment,
                toolchain,
                settings,
                build_dir / COOK_LOG,
                session=session,
                store=store,
                force=force_deps,
                project_name=project.name,
                cancel=cancel,
            )
        )
        stages.append(
            StageOutcome(
                stage=StageName.CACHE_DEPS,
                duration_seconds=cook_secs,
                skipped=layer.cache_hit,
                log_path=None if layer.cache_hit else str(build_dir / COOK_LOG),
                details={"layer_key": layer.key, "size_bytes": layer.size_bytes},
            )
        )
        build.layer_key = layer.key
        build.layer_cache_hit = layer.cache_hit
        session.commit()
        _check_cancel(cancel)

        # Build
        build.mark_stage(StageName.BUILD.value)
        build.log_path = str(build_dir / BUILD_LOG)
        session.commit()
        compiled, build_secs = _timed(
            lambda: compile_application(
                source_root,
                toolchain,
                layer.key,
                settings,
                build_dir / BUILD_LOG,
                excludes=project.effective_excludes(),
                store=store,
                cancel=cancel,
            )
        )
        stages.append(
            StageOutcome(
                stage=StageName.BUILD,
                duration_seconds=build_secs,
                log_path=str(build_dir / BUILD_LOG),
                details={"workspace": str(compiled.workspace)},
            )
        )
        _check_cancel(cancel)

        # Package
        build.mark_stage(StageName.PACKAGE.value)
        session.commit()
        artifact_path = compiled.artifact_path
        image, package_secs = _timed(
            lambda: package_runtime_image(
                artifact_path, project, settings.images_dir, archive=archive
            )
        )
        stages.append(
            StageOutcome(
                stage=StageName.PACKAGE,
                duration_seconds=package_secs,
                details={"image_id": image.image_id, "reused": image.reused},
            )
        )

        record_image(session, build, image)
        write_manifest(
            generate_manifest(
                describe_artifact(image.binary_path, image.rootfs),
                build_id=build.id,
                project_name=project.name,
                recipe_digest=recipe.digest,
                layer_key=layer.key,
                layer_cache_hit=layer.cache_hit,
                image_id=image.image_id,
            ),
            build_dir / MANIFEST_FILENAME,
        )
        build.mark_succeeded()
        session.commit()
    except PipelineError as e:
        outcome = "cancelled" if isinstance(e, PipelineCancelled) else "failed"
        logger.error("Build %d %s: %s", build.id, outcome, e)
        _fail(session, build, e)
        raise
    except Exception as e:
        logger.exception("Build %d failed unexpectedly", build.id)
        build.mark_failed(error_type="internal_error", message=str(e))
        session.commit()
        raise
    finally:
        if compiled is not None:
            if settings.keep_workspace:
                logger.info("Keeping workspace %s", compiled.workspace)
            else:
                compiled.cleanup()

    logger.info(
        "Build %d succeeded: image %s (layer %s, %s)",
        build.id,
        image.image_id[:23],
        layer.key[:23],
        "reused" if layer.cache_hit else "cooked",
    )
    return PipelineResult(
        build_id=build.id,
        project_name=project.name,
        build_dir=build_dir,
        environment_key=environment.key,
        recipe_digest=recipe.digest,
        layer_key=layer.key,
        layer_cache_hit=layer.cache_hit,
        image=image,
        stages=stages,
    )


__all__ = ["BUILD_LOG", "COOK_LOG", "SETUP_LOG", "PipelineResult", "run_pipeline"]
