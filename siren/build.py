"""Pipeline definition for Siren.

This module declares the stages of a site build, how they compose into the
named entry points, and which stages each watch rule re-runs in development
mode.

Entry points:
- build: clear, then every stage including CSS post-processing and script
  minification. Static HTML is copied before templates render.
- lint: check the built HTML.
- postcss / minify-scripts: the single post-processing stage, run against an
  existing output tree.
- dev: clear, build without post-processing, serve, and watch.

Every stage is also registered under its own name.

Key functions:
- create_stages: Stage objects for a configuration.
- create_watch_rules: Watch rules for development mode.
- create_default_registry: TaskRegistry with every entry point.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from watchdog.observers import Observer

from .config import SiteConfig
from .lint import HtmlLinter, LintTransform
from .output import OutputStore
from .pipeline import Parallel, RunContext, StepTask, TaskRegistry, parallel, series
from .protocols import StaticServer
from .server import DevServer
from .stages import ClearStage, Origin, Stage
from .transforms import (
    CopyTransform,
    ImageTransform,
    PostCSSTransform,
    SassTransform,
    ScriptMinifyTransform,
    SpriteTransform,
    TemplateTransform,
)
from .utils import is_within
from .watch import WatchCoordinator, WatchRule, watch_events

STYLES_DIR = "styles"
SCRIPTS_DIR = "scripts"
FONTS_DIR = "fonts"
IMAGES_DIR = "imgs"
ICONS_DIR = "imgs/icons"
SPRITE_NAME = "icons.svg"

# Root-level stages skip the directories owned by the fonts and images stages.
ASSET_EXCLUDES = (f"!{FONTS_DIR}/**", f"!{IMAGES_DIR}/**")

TEMPLATE_PATTERNS = ("**/[!_]*.twig", "**/[!_]*.jinja", *ASSET_EXCLUDES)


def create_stages(config: SiteConfig) -> dict[str, Stage | ClearStage]:
    """Build the stage table for a configuration.

    Args:
        config: Resolved project configuration.

    Returns:
        Mapping of stage name to stage, in build order.
    """
    stages: list[Stage | ClearStage] = [
        ClearStage(),
        Stage("html", ("**/*.html", *ASSET_EXCLUDES), CopyTransform()),
        Stage(
            "templates",
            TEMPLATE_PATTERNS,
            TemplateTransform(config.src_dir, config.data_file, minify=config.minify_html),
        ),
        Stage("fonts", ("**/*",), CopyTransform(), dest=FONTS_DIR, base=FONTS_DIR),
        Stage(
            "scss",
            ("[!_]*.scss",),
            SassTransform(
                config.output_dir / STYLES_DIR,
                include_paths=[config.src_dir / STYLES_DIR],
                sourcemaps=config.sourcemaps,
            ),
            dest=STYLES_DIR,
            base=STYLES_DIR,
        ),
        Stage(
            "postcss",
            ("*.css",),
            PostCSSTransform(config.project_root, config.postcss_plugins),
            dest=STYLES_DIR,
            origin=Origin.OUTPUT,
            base=STYLES_DIR,
            allow_empty=config.postcss_allow_empty,
        ),
        Stage("scripts", ("**/*.js", *ASSET_EXCLUDES), CopyTransform()),
        Stage(
            "minify-scripts",
            ("**/*.js",),
            ScriptMinifyTransform(),
            dest=SCRIPTS_DIR,
            origin=Origin.OUTPUT,
            base=SCRIPTS_DIR,
        ),
        Stage(
            "images",
            ("**/*", "!**/icons/**", f"!{SPRITE_NAME}"),
            ImageTransform(),
            dest=IMAGES_DIR,
            base=IMAGES_DIR,
        ),
        Stage(
            "sprite",
            ("**/*.svg",),
            SpriteTransform(SPRITE_NAME),
            dest=IMAGES_DIR,
            base=ICONS_DIR,
        ),
        Stage(
            "htmllint",
            ("**/*.html",),
            LintTransform(HtmlLinter(config.lint_rules)),
            origin=Origin.OUTPUT,
        ),
    ]
    return {stage.name: stage for stage in stages}


def create_watch_rules(
    config: SiteConfig, stages: dict[str, Stage | ClearStage]
) -> list[WatchRule]:
    """Bind source globs to the stage each one invalidates.

    Template partials and the data file affect every page, so any of them
    re-renders all templates. Static HTML shares the rule so that a page is
    never written by two rule runs at once.
    """
    return [
        WatchRule(
            "pages",
            ("**/*.html", "**/*.twig", "**/*.jinja", *ASSET_EXCLUDES),
            series(stages["html"], stages["templates"]),
            files=(config.data_file.resolve(),),
        ),
        WatchRule("fonts", (f"{FONTS_DIR}/**",), series(stages["fonts"])),
        WatchRule("styles", ("**/*.scss",), series(stages["scss"])),
        WatchRule("scripts", ("**/*.js", *ASSET_EXCLUDES), series(stages["scripts"])),
        WatchRule(
            "images", (f"{IMAGES_DIR}/**", "!**/icons/**"), series(stages["images"])
        ),
        WatchRule("icons", (f"{ICONS_DIR}/**",), series(stages["sprite"])),
    ]


def _build_group(stages: dict[str, Stage | ClearStage], postprocess: bool) -> Parallel:
    """Every build stage after ``clear``.

    Branches run concurrently and write disjoint output paths. Static HTML is
    copied before templates render, so a template wins over an HTML file of
    the same name.
    """
    styles = [stages["scss"]]
    scripts = [stages["scripts"]]
    if postprocess:
        styles.append(stages["postcss"])
        scripts.append(stages["minify-scripts"])
    return parallel(
        series(stages["html"], stages["templates"]),
        stages["fonts"],
        series(*styles),
        series(*scripts),
        stages["images"],
        stages["sprite"],
    )


def _watch_roots(config: SiteConfig) -> list[tuple[Path, bool]]:
    roots = [(config.src_dir, True)]
    if not is_within(config.data_file.resolve(), config.src_dir.resolve()):
        roots.append((config.data_file.parent, False))
    return roots


def create_default_registry(
    config: SiteConfig,
    server: StaticServer | None = None,
    observer_factory: Callable[[], Observer] = Observer,
) -> TaskRegistry:
    """Create the registry of entry points for a project.

    Args:
        config: Resolved project configuration.
        server: Dev server used by the dev entry point; a DevServer for the
            configured ports by default.
        observer_factory: Creates the watchdog observer for dev mode.

    Returns:
        TaskRegistry with build, lint, dev and every individual stage.
    """
    context = RunContext(config.src_dir, OutputStore(config.output_dir))
    registry = TaskRegistry(context)
    stages = create_stages(config)
    for name, stage in stages.items():
        registry.register(name, stage)

    registry.register(
        "build", series(stages["clear"], _build_group(stages, postprocess=True), name="build")
    )
    registry.register("lint", series(stages["htmllint"], name="lint"))

    dev_server = server or DevServer(
        config.output_dir,
        http_port=config.port,
        ws_port=config.ws_port,
        open_browser=config.open_browser,
    )
    coordinator = WatchCoordinator(
        create_watch_rules(config, stages),
        context,
        notifier=dev_server,
        debounce=config.debounce,
    )

    async def serve(ctx: RunContext) -> None:
        dev_server.start()

    async def watch(ctx: RunContext) -> None:
        events = watch_events(
            _watch_roots(config),
            ignored=[config.output_dir],
            observer_factory=observer_factory,
        )
        try:
            await coordinator.run(events)
        finally:
            await events.aclose()
            dev_server.stop()

    registry.register(
        "dev",
        series(
            stages["clear"],
            _build_group(stages, postprocess=False),
            StepTask("serve", serve),
            StepTask("watch", watch),
            name="dev",
        ),
    )
    return registry
