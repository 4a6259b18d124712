"""Thin CLI wrapper for layerchef.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from layerchef import __version__
from layerchef.builds.runner import read_log_tail
from layerchef.config import get_settings, print_settings_json
from layerchef.errors import PipelineError

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

    from layerchef.builds.models import BuildRecord

app = typer.Typer(
    name="layerchef",
    help="layerchef - build minimal runtime images with cached dependency layers",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

# Log lines shown after a failed stage
LOG_TAIL_LINES = 15


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"layerchef version {__version__}")
        raise typer.Exit()


def setup_logging(level: str) -> None:
    """Route log records to stderr through Rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(console=err_console, show_path=False, rich_tracebacks=True)
        ],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """layerchef - build minimal runtime images with cached dependency layers."""
    setup_logging("DEBUG" if verbose else get_settings().log_level)


def _fail(error: PipelineError, json_output: bool = False) -> NoReturn:
    """Report a pipeline error and exit with its status."""
    if json_output:
        typer.echo(json.dumps({"error": error.to_dict()}, indent=2))
    else:
        label = error.code if error.reason is None else f"{error.code}: {error.reason}"
        console.print(f"[red]Error ({label}):[/red] {escape(str(error))}")
        if error.log_path:
            console.print(f"  Log: {error.log_path}")
            tail = read_log_tail(Path(error.log_path), lines=LOG_TAIL_LINES)
            if tail:
                console.print(escape(tail.rstrip("\n")), highlight=False)
    raise typer.Exit(code=error.exit_code)


def _session_factory() -> "sessionmaker[Session]":
    from layerchef.db import init_database

    return init_database()


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
    else:
        tmp_dir_display = (
            str(settings.tmp_dir) if settings.tmp_dir else "(system default)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Images directory:    {settings.images_dir}")
        console.print(f"  Builds directory:    {settings.builds_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Temp directory:      {tmp_dir_display}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Keep workspace:      {settings.keep_workspace}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Lock timeout:        {settings.lock_timeout}")
        console.print(f"  Setup timeout:       {settings.setup_timeout}")
        console.print(f"  Cook timeout:        {settings.cook_timeout}")
        console.print(f"  Build timeout:       {settings.build_timeout}")


@app.command()
def build(
    source: Annotated[
        Path,
        typer.Argument(help="Source tree to build"),
    ] = Path("."),
    force_deps: Annotated[
        bool,
        typer.Option("--force-deps", help="Re-cook the dependency layer"),
    ] = False,
    archive: Annotated[
        bool,
        typer.Option("--archive", help="Also write a reproducible image.tar.gz"),
    ] = False,
    refresh_env: Annotated[
        bool,
        typer.Option("--refresh-env", help="Re-run toolchain setup"),
    ] = False,
    keep_workspace: Annotated[
        bool,
        typer.Option("--keep-workspace", help="Keep the build workspace"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build a runtime image from a source tree."""
    import signal
    import threading

    from layerchef.pipeline import run_pipeline

    settings = get_settings()
    if keep_workspace:
        settings.keep_workspace = True

    cancel = threading.Event()

    def _on_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).warning("Received signal %d, cancelling", signum)
        cancel.set()

    previous = {
        sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)
    }
    factory = _session_factory()
    try:
        with factory() as session:
            result = run_pipeline(
                source,
                session,
                settings=settings,
                force_deps=force_deps,
                archive=archive,
                refresh_environment=refresh_env,
                cancel=cancel,
            )
    except PipelineError as e:
        _fail(e, json_output)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if json_output:
        typer.echo(json.dumps(result.to_dict(), indent=2))
        return

    console.print(f"[green]Build #{result.build_id} succeeded[/green]")
    console.print(f"  Recipe:  {result.recipe_digest}")
    layer_state = "reused" if result.layer_cache_hit else "cooked"
    console.print(f"  Layer:   {result.layer_key} ({layer_state})")
    console.print(f"  Image:   {result.image.image_id}")
    console.print(f"  Path:    {result.image.path}")
    if result.image.archive_path:
        console.print(f"  Archive: {result.image.archive_path}")
    console.print()
    console.print("[bold]Stages:[/bold]")
    for stage in result.stages:
        suffix = " (skipped)" if stage.skipped else ""
        console.print(
            f"  {stage.stage.value:<11} {stage.duration_seconds:7.2f}s{suffix}"
        )


@app.command()
def recipe(
    source: Annotated[
        Path,
        typer.Argument(help="Source tree to plan"),
    ] = Path("."),
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write the recipe to a file"),
    ] = None,
    digest: Annotated[
        bool,
        typer.Option("--digest", help="Print only the recipe digest"),
    ] = False,
) -> None:
    """Extract the dependency recipe of a source tree."""
    from layerchef.projects.io import load_project_for_source
    from layerchef.recipe.extract import extract_recipe
    from layerchef.recipe.models import write_recipe

    try:
        project = load_project_for_source(source)
        planned = extract_recipe(source, project)
    except PipelineError as e:
        _fail(e)

    if output is not None:
        write_recipe(planned, output)
        console.print(f"Wrote recipe to {output}")
    if digest:
        typer.echo(planned.digest)
    elif output is None:
        typer.echo(planned.to_json())


@app.command(
    context_settings={"allow_extra_args": True, "ignore_unknown_options": True}
)
def run(
    ctx: typer.Context,
    image_dir: Annotated[
        Path,
        typer.Argument(help="Packaged image directory"),
    ],
) -> None:
    """Run a packaged image's entrypoint with extra arguments."""
    from layerchef.images.packager import ImageError, load_image, run_image

    try:
        image = load_image(image_dir)
        result = run_image(image, list(ctx.args))
    except ImageError as e:
        console.print(f"[red]Error ({e.code}):[/red] {escape(str(e))}")
        raise typer.Exit(code=1) from None
    raise typer.Exit(code=result.returncode)


project_app = typer.Typer(help="Inspect project definitions")
app.add_typer(project_app, name="project")


@project_app.command("validate")
def project_validate(
    source: Annotated[
        Path,
        typer.Argument(help="Source tree with the project file"),
    ] = Path("."),
) -> None:
    """Validate the project file of a source tree."""
    from layerchef.projects.io import load_project_for_source
    from layerchef.projects.toolchain import resolve_toolchain

    try:
        project = load_project_for_source(source)
    except PipelineError as e:
        _fail(e)

    toolchain = resolve_toolchain(project)
    console.print(f"[green]✓ Valid project: {project.name}[/green]")
    console.print(f"  Binary: {project.binary}")
    console.print(f"  Format: {project.manifest_format.value}")
    console.print(f"  Toolchain: {toolchain.preset}")
    console.print(f"  Artifact: {toolchain.resolved_artifact_path()}")


@project_app.command("show")
def project_show(
    source: Annotated[
        Path,
        typer.Argument(help="Source tree with the project file"),
    ] = Path("."),
) -> None:
    """Show the effective project definition as YAML."""
    from layerchef.projects.io import load_project_for_source, project_to_yaml_string

    try:
        project = load_project_for_source(source)
    except PipelineError as e:
        _fail(e)
    typer.echo(project_to_yaml_string(project))


cache_app = typer.Typer(help="Manage dependency layers")
app.add_typer(cache_app, name="cache")


@cache_app.command("list")
def cache_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List dependency layers."""
    from layerchef.cache.service import list_layer_records
    from layerchef.cache.store import LayerStore

    settings = get_settings()
    layers = LayerStore(settings.cache_dir).list_layers()
    factory = _session_factory()
    with factory() as session:
        records = {r.layer_key: r for r in list_layer_records(session)}

        output = []
        for info in layers:
            record = records.get(info.key)
            output.append(
                {
                    "key": info.key,
                    "path": str(info.path),
                    "paths": info.paths,
                    "size_bytes": info.size_bytes,
                    "created_at": info.created_at,
                    "hit_count": record.hit_count if record else 0,
                    "last_used_at": record.last_used_at.isoformat()
                    if record and record.last_used_at
                    else None,
                }
            )

    if json_output:
        typer.echo(json.dumps(output, indent=2))
        return
    if not output:
        console.print("[yellow]No dependency layers found[/yellow]")
        return
    console.print(f"[bold]Found {len(output)} layer(s):[/bold]")
    console.print()
    for entry in output:
        console.print(f"  [green]{entry['key'][:23]}[/green]")
        console.print(f"    Paths: {', '.join(entry['paths']) or '(none)'}")
        console.print(f"    Size: {entry['size_bytes']} bytes")
        console.print(f"    Hits: {entry['hit_count']}")
        console.print(f"    Created: {entry['created_at']}")
        console.print()


@cache_app.command("show")
def cache_show(
    key: Annotated[str, typer.Argument(help="Layer key or unique prefix")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show details of a dependency layer."""
    from layerchef.cache.service import LayerNotFoundError, resolve_layer_key
    from layerchef.cache.store import LayerStore

    settings = get_settings()
    store = LayerStore(settings.cache_dir)
    try:
        full_key = resolve_layer_key(store, key)
    except LayerNotFoundError:
        console.print(f"[red]Layer not found: {key}[/red]")
        raise typer.Exit(code=1) from None

    info = store.get_layer(full_key)
    assert info is not None
    data = {
        "key": info.key,
        "path": str(info.path),
        "paths": info.paths,
        "size_bytes": info.size_bytes,
        "created_at": info.created_at,
        "metadata": info.metadata,
    }
    if json_output:
        typer.echo(json.dumps(data, indent=2))
        return
    console.print(f"[bold]Layer {info.key}[/bold]")
    console.print(f"  Path: {info.path}")
    console.print(f"  Paths: {', '.join(info.paths) or '(none)'}")
    console.print(f"  Size: {info.size_bytes} bytes")
    console.print(f"  Created: {info.created_at}")
    for name, value in sorted(info.metadata.items()):
        console.print(f"  {name}: {value}")


@cache_app.command("remove")
def cache_remove(
    key: Annotated[str, typer.Argument(help="Layer key or unique prefix")],
) -> None:
    """Remove a dependency layer."""
    from layerchef.cache.service import (
        LayerNotFoundError,
        remove_dependency_layer,
        resolve_layer_key,
    )
    from layerchef.cache.store import LayerStore
    from layerchef.db import get_session

    settings = get_settings()
    store = LayerStore(settings.cache_dir)
    try:
        full_key = resolve_layer_key(store, key)
    except LayerNotFoundError:
        console.print(f"[red]Layer not found: {key}[/red]")
        raise typer.Exit(code=1) from None

    try:
        with get_session(_session_factory()) as session:
            remove_dependency_layer(
                store, full_key, session, lock_timeout=settings.lock_timeout
            )
    except TimeoutError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None
    console.print(f"[green]Removed layer {full_key}[/green]")


@cache_app.command("prune")
def cache_prune(
    older_than: Annotated[
        int | None,
        typer.Option("--older-than", help="Prune layers idle for this many days"),
    ] = None,
    all_layers: Annotated[
        bool,
        typer.Option("--all", help="Prune every layer"),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Only report what would be pruned"),
    ] = False,
) -> None:
    """Prune unused dependency layers."""
    from layerchef.cache.service import prune_layers
    from layerchef.cache.store import LayerStore
    from layerchef.db import get_session

    if older_than is None and not all_layers:
        console.print("[red]Specify --older-than DAYS or --all[/red]")
        raise typer.Exit(code=1)

    settings = get_settings()
    with get_session(_session_factory()) as session:
        pruned = prune_layers(
            LayerStore(settings.cache_dir),
            session,
            older_than_days=None if all_layers else older_than,
            dry_run=dry_run,
            lock_timeout=settings.lock_timeout,
        )

    verb = "Would prune" if dry_run else "Pruned"
    console.print(f"{verb} {len(pruned)} layer(s)")
    for key in pruned:
        console.print(f"  {key}")


@cache_app.command("environments")
def cache_environments(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List prepared toolchain environments."""
    from layerchef.environment.service import list_environments

    markers = list_environments(get_settings().cache_dir)
    if json_output:
        typer.echo(json.dumps(markers, indent=2))
        return
    if not markers:
        console.print("[yellow]No prepared environments found[/yellow]")
        return
    for marker in markers:
        preset = marker.get("inputs", {}).get("toolchain", {}).get("preset", "?")
        console.print(f"  [green]{str(marker.get('key', ''))[:23]}[/green]")
        console.print(f"    Preset: {preset}")
        console.print(f"    Prepared: {marker.get('prepared_at', 'N/A')}")
        for line in marker.get("tool_versions", []):
            console.print(f"    {escape(line)}")


builds_app = typer.Typer(help="Inspect build records")
app.add_typer(builds_app, name="builds")


def _build_to_dict(b: "BuildRecord") -> dict[str, object]:
    return {
        "id": b.id,
        "project": b.project_name,
        "binary": b.binary,
        "source_root": b.source_root,
        "status": b.status,
        "stage": b.stage,
        "recipe_digest": b.recipe_digest,
        "layer_key": b.layer_key,
        "layer_cache_hit": b.layer_cache_hit,
        "requested_at": b.requested_at.isoformat() if b.requested_at else None,
        "started_at": b.started_at.isoformat() if b.started_at else None,
        "finished_at": b.finished_at.isoformat() if b.finished_at else None,
        "build_dir": b.build_dir,
        "log_path": b.log_path,
        "error_type": b.error_type,
        "error_message": b.error_message,
        "images": [i.image_id for i in b.images],
    }


@builds_app.command("list")
def builds_list(
    project: Annotated[
        str | None,
        typer.Option("--project", "-p", help="Filter by project name"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status",
            "-s",
            help="Filter by status (pending/running/succeeded/failed/cancelled)",
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List build records."""
    from layerchef.builds.service import list_builds
    from layerchef.types import BuildStatus

    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print(
                "Valid values: pending, running, succeeded, failed, cancelled"
            )
            raise typer.Exit(code=1) from None

    factory = _session_factory()
    with factory() as session:
        builds = list_builds(
            session, project_name=project, status=status_filter, limit=limit
        )

        if json_output:
            typer.echo(json.dumps([_build_to_dict(b) for b in builds], indent=2))
            return
        if not builds:
            console.print("[yellow]No build records found[/yellow]")
            return

        console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
        console.print()
        for b in builds:
            status_color = {
                "succeeded": "green",
                "failed": "red",
                "cancelled": "magenta",
                "running": "blue",
                "pending": "yellow",
            }.get(b.status, "white")
            console.print(f"  [{status_color}]Build #{b.id}[/{status_color}]")
            console.print(f"    Project: {b.project_name}")
            console.print(f"    Status: {b.status}")
            console.print(f"    Layer reused: {b.layer_cache_hit}")
            if b.error_message:
                console.print(f"    Error: {b.error_message}")
            console.print()


@builds_app.command("show")
def builds_show(
    build_id: Annotated[int, typer.Argument(help="Build ID to show")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show details of a build record."""
    from layerchef.builds.service import BuildNotFoundError, get_build

    factory = _session_factory()
    with factory() as session:
        try:
            b = get_build(session, build_id)
        except BuildNotFoundError:
            console.print(f"[red]Build not found: {build_id}[/red]")
            raise typer.Exit(code=1) from None

        data = _build_to_dict(b)

    if json_output:
        typer.echo(json.dumps(data, indent=2))
        return
    console.print(f"[bold]Build #{data['id']}[/bold]")
    for name, value in data.items():
        if name == "id" or value in (None, []):
            continue
        console.print(f"  {name}: {value}")


images_app = typer.Typer(help="Inspect runtime images")
app.add_typer(images_app, name="images")


@images_app.command("list")
def images_list(
    project: Annotated[
        str | None,
        typer.Option("--project", "-p", help="Filter by project name"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List packaged runtime images."""
    from layerchef.images.service import list_images

    factory = _session_factory()
    with factory() as session:
        images = list_images(session, project_name=project)
        output = [
            {
                "id": i.id,
                "build_id": i.build_id,
                "project": i.project_name,
                "image_id": i.image_id,
                "path": i.path,
                "binary": i.binary,
                "artifact_sha256": i.artifact_sha256,
                "size_bytes": i.size_bytes,
                "entrypoint": i.entrypoint,
                "working_dir": i.working_dir,
                "archive_path": i.archive_path,
                "reused": i.reused,
            }
            for i in images
        ]

    if json_output:
        typer.echo(json.dumps(output, indent=2))
        return
    if not output:
        console.print("[yellow]No images found[/yellow]")
        return
    console.print(f"[bold]Found {len(output)} image(s):[/bold]")
    console.print()
    for entry in output:
        console.print(f"  [green]{str(entry['image_id'])[:23]}[/green]")
        console.print(f"    Project: {entry['project']} (build #{entry['build_id']})")
        console.print(f"    Path: {entry['path']}")
        console.print(f"    Entrypoint: {entry['entrypoint']}")
        console.print()


if __name__ == "__main__":
    app()
