"""Transforms for Siren stages.

Each transform wraps exactly one external collaborator and maps source files
to output files. Transforms never write to disk themselves: they yield
OutputFile objects and the owning stage writes them through the OutputStore.

Key classes:
- BaseTransform: Abstract base; per-file transform with an all-files hook.
- CopyTransform: Copies files unchanged (static HTML, scripts, fonts).
- TemplateTransform: Renders Twig/Jinja templates and collapses the HTML.
- SassTransform: Compiles SCSS with libsass, optionally with source maps.
- PostCSSTransform: Minifies CSS with rcssmin, then runs PostCSS plugins.
- ScriptMinifyTransform: Minifies JavaScript with rjsmin.
- ImageTransform: Re-saves images through Pillow with optimization.
- SpriteTransform: Combines SVG icons into one symbol sprite.
"""

from __future__ import annotations

import io
import logging
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import minify_html
import rcssmin
import rjsmin
import sass
from PIL import Image

from .errors import TransformError, describe_exception
from .templates import TemplateEngine, load_template_data, output_name
from .tools import find_executable, run_tool

logger = logging.getLogger(__name__)


def read_utf8(path: Path) -> str:
    """Read a text file as UTF-8.

    Raises:
        TransformError: If the file is not valid UTF-8.
    """
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        bad = exc.object[exc.start]
        message = f"Not valid UTF-8 (byte 0x{bad:02x} at offset {exc.start})"
        raise TransformError(path, message, exc) from exc


@dataclass(frozen=True)
class SourceFile:
    """A file selected by a stage.

    Attributes:
        path: Absolute path on disk.
        rel: Path relative to the directory the stage reads from.
    """

    path: Path
    rel: PurePosixPath


@dataclass(frozen=True)
class OutputFile:
    """A file produced by a transform, relative to the stage's destination."""

    rel: PurePosixPath
    content: str | bytes


class BaseTransform(ABC):
    """Base class for transforms.

    Subclasses implement ``transform`` for one file. Transforms that combine
    many inputs into one output (the icon sprite) override ``transform_all``.
    """

    label: str = "transform"

    @abstractmethod
    def transform(self, source: SourceFile) -> Iterator[OutputFile]:
        """Transform one source file.

        Args:
            source: File to transform.

        Yields:
            Output files, relative to the stage destination.

        Raises:
            TransformError: If the collaborator rejects the input.
        """
        ...

    def transform_all(self, sources: Sequence[SourceFile]) -> Iterator[OutputFile]:
        for source in sources:
            try:
                yield from self.transform(source)
            except (TransformError, OSError):
                raise
            except Exception as exc:
                raise TransformError(source.path, describe_exception(exc), exc) from exc

    @staticmethod
    def read_text(source: SourceFile) -> str:
        return read_utf8(source.path)


class CopyTransform(BaseTransform):
    """Copies files unchanged."""

    label = "copy"

    def transform(self, source: SourceFile) -> Iterator[OutputFile]:
        yield OutputFile(source.rel, source.path.read_bytes())


class TemplateTransform(BaseTransform):
    """Renders templates to HTML.

    The data file is read once per run, so edits to it are picked up by the
    next watch-triggered rebuild.
    """

    label = "jinja"

    def __init__(self, src_dir: Path, data_file: Path | None = None, minify: bool = True):
        self.src_dir = src_dir
        self.data_file = data_file
        self.minify = minify

    def engine(self) -> TemplateEngine:
        return TemplateEngine(self.src_dir, load_template_data(self.data_file))

    def transform_all(self, sources: Sequence[SourceFile]) -> Iterator[OutputFile]:
        if not sources:
            return
        engine = self.engine()
        for source in sources:
            yield self._render(engine, source)

    def transform(self, source: SourceFile) -> Iterator[OutputFile]:
        yield self._render(self.engine(), source)

    def _render(self, engine: TemplateEngine, source: SourceFile) -> OutputFile:
        html = engine.render(source.rel, source.path)
        if self.minify:
            try:
                html = collapse_html(html)
            except Exception as exc:
                raise TransformError(source.path, describe_exception(exc), exc) from exc
        return OutputFile(output_name(source.rel), html)


def collapse_html(html: str) -> str:
    """Collapse whitespace and strip comments from rendered HTML.

    Closing tags and the html/head opening tags are kept so that the output
    still passes the tag-close lint rule. Inline scripts are left alone.
    """
    return minify_html.minify(
        html,
        minify_css=True,
        minify_js=False,
        keep_closing_tags=True,
        keep_html_and_head_opening_tags=True,
    )


class SassTransform(BaseTransform):
    """Compiles SCSS entry files to CSS with libsass.

    Attributes:
        dest_dir: Absolute directory the CSS is written to; source map paths
            are computed relative to it.
        include_paths: Directories searched by ``@import`` / ``@use``.
        sourcemaps: Whether to emit a ``.css.map`` next to each stylesheet.
    """

    label = "sass"

    def __init__(
        self,
        dest_dir: Path,
        include_paths: Iterable[Path] = (),
        sourcemaps: bool = True,
    ):
        self.dest_dir = dest_dir
        self.include_paths = [str(p) for p in include_paths]
        self.sourcemaps = sourcemaps

    def transform(self, source: SourceFile) -> Iterator[OutputFile]:
        css_rel = source.rel.with_suffix(".css")
        try:
            if self.sourcemaps:
                map_rel = css_rel.with_name(css_rel.name + ".map")
                css, source_map = sass.compile(
                    filename=str(source.path),
                    include_paths=self.include_paths,
                    output_style="expanded",
                    output_filename_hint=str(self.dest_dir / css_rel),
                    source_map_filename=str(self.dest_dir / map_rel),
                )
            else:
                css = sass.compile(
                    filename=str(source.path),
                    include_paths=self.include_paths,
                    output_style="expanded",
                )
                source_map = None
        except sass.CompileError as exc:
            raise TransformError(source.path, str(exc).strip(), exc) from exc
        yield OutputFile(css_rel, css)
        if source_map is not None:
            yield OutputFile(map_rel, source_map)


class PostCSSTransform(BaseTransform):
    """Post-processes compiled CSS.

    The stylesheet is first minified with rcssmin (``/*! ... */`` comments are
    kept), then piped through the ``postcss`` CLI with the configured plugins
    (autoprefixer, flexbugs fixes). When the CLI is not installed the plugins
    are skipped with a warning; a CLI that runs and fails is an error.
    """

    label = "postcss"

    def __init__(self, project_root: Path, plugins: Sequence[str] = ()):
        self.project_root = project_root
        self.plugins = list(plugins)
        self._warned = False

    def transform(self, source: SourceFile) -> Iterator[OutputFile]:
        css = rcssmin.cssmin(self.read_text(source), keep_bang_comments=True)
        if self.plugins:
            css = self._run_plugins(css, source)
        yield OutputFile(source.rel, css)

    def _run_plugins(self, css: str, source: SourceFile) -> str:
        postcss_bin = find_executable("postcss", self.project_root)
        if not postcss_bin:
            if not self._warned:
                logger.warning(
                    "PostCSS CLI not found; skipping %s. Install with "
                    "`npm install -D postcss postcss-cli %s`.",
                    ", ".join(self.plugins),
                    " ".join(self.plugins),
                )
                self._warned = True
            return css
        cmd = [postcss_bin, "--no-map"]
        for plugin in self.plugins:
            cmd.extend(["--use", plugin])
        return run_tool(cmd, source.path, stdin=css)


class ScriptMinifyTransform(BaseTransform):
    """Minifies JavaScript files with rjsmin."""

    label = "rjsmin"

    def transform(self, source: SourceFile) -> Iterator[OutputFile]:
        yield OutputFile(source.rel, rjsmin.jsmin(self.read_text(source)))


class ImageTransform(BaseTransform):
    """Optimizes raster images with Pillow.

    Supported formats are re-saved with ``optimize=True``; the original bytes
    are kept when Pillow cannot read the file or when the re-saved file is not
    smaller. Other formats (SVG, GIF, ICO) are copied unchanged.
    """

    label = "imagemin"
    SUPPORTED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp"}

    def transform(self, source: SourceFile) -> Iterator[OutputFile]:
        original = source.path.read_bytes()
        if source.path.suffix.lower() not in self.SUPPORTED_EXTENSIONS:
            yield OutputFile(source.rel, original)
            return
        yield OutputFile(source.rel, self._optimize(source.path, original))

    @staticmethod
    def _optimize(path: Path, original: bytes) -> bytes:
        try:
            with Image.open(io.BytesIO(original)) as img:
                buffer = io.BytesIO()
                img.save(buffer, format=img.format, optimize=True)
        except Exception as exc:
            logger.debug("Pillow could not optimize %s (%s); copying", path, exc)
            return original
        optimized = buffer.getvalue()
        return optimized if len(optimized) < len(original) else original


SVG_NS = "http://www.w3.org/2000/svg"
XLINK_NS = "http://www.w3.org/1999/xlink"

ET.register_namespace("", SVG_NS)
ET.register_namespace("xlink", XLINK_NS)


class SpriteTransform(BaseTransform):
    """Combines SVG icons into a single ``<symbol>`` sprite.

    Each icon becomes ``<symbol id="{file stem}">`` keeping its ``viewBox``, so
    pages reference it as ``<svg><use href="imgs/icons.svg#name"/></svg>``.
    """

    label = "svgstore"

    def __init__(self, sprite_name: str = "icons.svg"):
        self.sprite_name = sprite_name

    def transform(self, source: SourceFile) -> Iterator[OutputFile]:
        yield from self.transform_all([source])

    def transform_all(self, sources: Sequence[SourceFile]) -> Iterator[OutputFile]:
        if not sources:
            return
        sprite = ET.Element(f"{{{SVG_NS}}}svg")
        seen: dict[str, Path] = {}
        for source in sorted(sources, key=lambda s: s.rel.as_posix()):
            symbol_id = source.rel.stem
            if symbol_id in seen:
                raise TransformError(
                    source.path,
                    f"Duplicate icon id '{symbol_id}' (also in {seen[symbol_id]})",
                )
            seen[symbol_id] = source.path
            sprite.append(self._symbol(source, symbol_id))
        body = ET.tostring(sprite, encoding="unicode")
        yield OutputFile(PurePosixPath(self.sprite_name), body)

    @staticmethod
    def _symbol(source: SourceFile, symbol_id: str) -> ET.Element:
        try:
            root = ET.fromstring(source.path.read_bytes())
        except ET.ParseError as exc:
            raise TransformError(source.path, f"Invalid SVG: {exc}", exc) from exc
        if root.tag not in (f"{{{SVG_NS}}}svg", "svg"):
            raise TransformError(source.path, f"Expected <svg> root, found <{root.tag}>")
        symbol = ET.Element(f"{{{SVG_NS}}}symbol", {"id": symbol_id})
        view_box = root.get("viewBox")
        if view_box:
            symbol.set("viewBox", view_box)
        symbol.extend(list(root))
        return symbol
