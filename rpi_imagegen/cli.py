"""Thin CLI wrapper for rpi_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from rpi_imagegen import __version__
from rpi_imagegen.config import get_settings, load_build_configuration
from rpi_imagegen.errors import PipelineError

app = typer.Typer(
    name="rpi-imagegen",
    help="Raspberry Pi image builder - drive pi-gen to produce a projection-mapping image",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def configure_logging(level: str) -> None:
    """Route all logging through a rich handler at the given level."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, markup=False)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"rpi-imagegen version {__version__}")
        raise typer.Exit()


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
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            help=f"Logging level ({', '.join(LOG_LEVELS)}); default from RPI_IMG_LOG_LEVEL",
        ),
    ] = None,
) -> None:
    """Raspberry Pi image builder - drive pi-gen to produce a projection-mapping image."""
    level = (log_level or get_settings().log_level).upper()
    if level not in LOG_LEVELS:
        console.print(f"[red]Invalid log level: {escape(level)}[/red]")
        raise typer.Exit(code=2)
    configure_logging(level)


def _print_error(e: PipelineError) -> None:
    console.print(f"[red]Error ({e.category}/{e.code}): {escape(e.message)}[/red]")


@app.command()
def build(
    docker: Annotated[
        bool,
        typer.Option("--docker", help="Build with pi-gen's Docker wrapper (no root needed)"),
    ] = False,
    config_path: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Override configuration file (KEY=value)"),
    ] = None,
    clean: Annotated[
        bool,
        typer.Option("--clean", help="Remove previous build output first"),
    ] = False,
    stage: Annotated[
        str | None,
        typer.Option("--stage", help="Stop after this stage (e.g. stage2)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the result as JSON"),
    ] = False,
) -> None:
    """Build the image.

    Loads the base configuration plus the optional override, verifies the
    host, prepares pi-gen and runs it. Exits non-zero on any failure.
    """
    from rpi_imagegen.builds.pipeline import (
        BuilderFailedError,
        PipelineOptions,
        run_pipeline,
    )

    settings = get_settings()
    options = PipelineOptions(
        use_docker=docker,
        override_config=config_path,
        clean=clean,
        stage=stage,
    )

    try:
        result = run_pipeline(options, settings)
    except BuilderFailedError as e:
        _print_error(e)
        if e.log_tail:
            console.print("[bold]Last lines of the build log:[/bold]")
            for line in e.log_tail:
                console.print(line, markup=False, highlight=False)
        console.print(f"Full log: {e.log_path}")
        raise typer.Exit(code=1) from None
    except PipelineError as e:
        _print_error(e)
        raise typer.Exit(code=1) from None

    if json_output:
        output = {
            "status": result.status.value,
            "branch": result.checkout.branch,
            "commit": result.checkout.commit,
            "stage_list": result.stage_list,
            "duration_seconds": round(result.duration_seconds, 1),
            "image": result.artifact.path if result.artifact else None,
            "sha256": result.artifact.sha256 if result.artifact else None,
            "record": str(result.record_path) if result.record_path else None,
            "log": str(result.log_path),
        }
        console.print_json(json.dumps(output))
        return

    console.print("[green]✓ Build complete[/green]")
    console.print(f"  pi-gen:   {result.checkout.branch} @ {result.checkout.commit}")
    console.print(f"  Stages:   {result.stage_list}")
    console.print(f"  Duration: {result.duration_seconds / 60:.1f} min")
    if result.artifact is not None:
        console.print(f"  Image:    {result.artifact.path}")
        if result.artifact.sha256:
            console.print(f"  SHA256:   {result.artifact.sha256}")
        if result.artifact.compressed_path:
            console.print(f"  Compressed: {result.artifact.compressed_path}")
    else:
        console.print("[yellow]  No image exported (build limited with --stage)[/yellow]")
    console.print(f"  Record:   {result.record_path}")
    console.print(f"  Log:      {result.log_path}")


@app.command()
def config(
    config_path: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Override configuration file (KEY=value)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective settings and the merged build configuration."""
    settings = get_settings()
    try:
        build_config = load_build_configuration(settings.base_config, config_path)
    except PipelineError as e:
        _print_error(e)
        raise typer.Exit(code=1) from None

    masked = build_config.masked()

    if json_output:
        output = {
            "settings": settings.model_dump(mode="json"),
            "build": masked,
            "sources": [str(p) for p in build_config.sources],
        }
        console.print_json(json.dumps(output))
        return

    timeout_display = (
        str(settings.build_timeout) if settings.build_timeout else "(no limit)"
    )
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Base config:         {settings.base_config}")
    console.print(f"  Work directory:      {settings.work_dir}")
    console.print(f"  Deploy directory:    {settings.deploy_dir}")
    console.print(f"  Scripts directory:   {settings.scripts_dir}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  pi-gen repository:   {settings.pigen_repo_url}")
    console.print(f"  Min free space:      {settings.min_free_space_gb} GiB")
    console.print(f"  Retry attempts:      {settings.retry_max_attempts}")
    console.print(f"  Retry initial delay: {settings.retry_initial_delay}s")
    console.print(f"  Build timeout:       {timeout_display}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    sources = ", ".join(str(p) for p in build_config.sources)
    console.print(f"[bold]Build configuration[/bold] ({escape(sources)}):")
    for key, value in masked.items():
        console.print(f"  {key:<20} {escape(value)}")


__all__ = ["app"]
