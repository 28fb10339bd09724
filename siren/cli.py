"""Command-line interface for Siren.

This module defines the CLI commands using the Click framework. Each command
runs one entry point of the task registry against the project in the current
directory.

Commands:
- build: Clear the output directory and run every stage.
- lint: Check the built HTML.
- postcss: Post-process the compiled stylesheets in the output directory.
- minify-scripts: Minify the scripts in the output directory.
- serve: Build, serve with live reload, and rebuild on change (the default).
- run: Run any registered task or stage by name.
"""

from __future__ import annotations

import logging
from pathlib import Path

import click

from . import __version__
from .config import ConfigError, SiteConfig, load_config
from .errors import PipelineError
from .pipeline import UnknownTaskError


class _ClickHandler(logging.Handler):
    """Logging handler that writes through click, colouring by level."""

    STYLES = {
        logging.DEBUG: {"dim": True},
        logging.WARNING: {"fg": "yellow"},
        logging.ERROR: {"fg": "red"},
        logging.CRITICAL: {"fg": "red", "bold": True},
    }

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return
        style = self.STYLES.get(record.levelno)
        if style:
            message = click.style(message, **style)
        click.echo(message, err=record.levelno >= logging.WARNING)


def _configure_logging(verbose: bool) -> None:
    handler = _ClickHandler()
    handler.setFormatter(logging.Formatter("[%(asctime)s] %(message)s", "%H:%M:%S"))
    logger = logging.getLogger("siren")
    logger.handlers[:] = [handler]
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="siren")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool):
    """Siren static-site asset pipeline."""
    _configure_logging(verbose)
    if ctx.invoked_subcommand is None:
        ctx.invoke(serve)


@cli.command()
def build():
    """Clear the output directory and build everything."""
    config = _load_config()
    _run_task(config, "build")
    click.echo(f"Built site into {config.output_dir}")


@cli.command()
def lint():
    """Check the built HTML files."""
    _run_task(_load_config(), "lint")


@cli.command()
def postcss():
    """Post-process compiled stylesheets in the output directory."""
    _run_task(_load_config(), "postcss")


@cli.command("minify-scripts")
def minify_scripts():
    """Minify scripts in the output directory."""
    _run_task(_load_config(), "minify-scripts")


@cli.command()
@click.option(
    "--port",
    type=int,
    required=False,
    help="Port to run the dev server (overrides siren.yaml)",
)
@click.option(
    "--ws-port",
    type=int,
    required=False,
    help="Port for the live reload websocket server (overrides siren.yaml ws_port)",
)
@click.option("--open", "open_browser", is_flag=True, help="Open the site in a browser")
def serve(port: int | None, ws_port: int | None, open_browser: bool):
    """Build, serve with live reload, and rebuild on change."""
    config = _load_config(http_port=port, ws_port=ws_port)
    if open_browser:
        config.open_browser = True
    try:
        _run_task(config, "dev")
    except KeyboardInterrupt:
        click.echo("Stopped.")


@cli.command()
@click.argument("name")
def run(name: str):
    """Run a registered task or stage by name."""
    _run_task(_load_config(), name)


def _load_config(http_port: int | None = None, ws_port: int | None = None) -> SiteConfig:
    try:
        return load_config(Path.cwd(), http_port=http_port, ws_port=ws_port)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from None


def _run_task(config: SiteConfig, name: str) -> None:
    from .build import create_default_registry

    try:
        registry = create_default_registry(config)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from None
    try:
        registry.run_sync(name)
    except UnknownTaskError as exc:
        raise click.ClickException(str(exc)) from None
    except PipelineError as exc:
        _report_failure(config, name, exc)
        raise SystemExit(1) from None


def _report_failure(config: SiteConfig, name: str, exc: PipelineError) -> None:
    click.echo(click.style(f"Task '{name}' failed:", fg="red", bold=True), err=True)
    for failure in exc.failures:
        click.echo(click.style(f"  Stage: {failure.stage}", fg="yellow"), err=True)
        if failure.source_path is not None:
            click.echo(
                click.style(f"  File: {_display_path(failure.source_path, config)}", fg="yellow"),
                err=True,
            )
        click.echo(f"  Error: {failure.message}", err=True)


def _display_path(path: Path, config: SiteConfig) -> Path:
    try:
        return path.relative_to(config.project_root)
    except ValueError:
        return path


def main():
    """Entry point for the CLI application."""
    cli()
