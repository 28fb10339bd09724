"""Template rendering for Siren.

Templates (``*.twig`` and ``*.jinja``) are rendered with Jinja2, whose syntax
is close enough to Twig that the usual ``{% extends %}``, ``{% include %}`` and
``{% block %}`` tags work unchanged. The loader is rooted at the source
directory, so partials are referenced by their path relative to it
(``{% include "partials/_nav.twig" %}``).

Template variables come from an optional JSON data file. When the file is
missing templates render with no variables; undefined names render empty.

Key objects:
- load_template_data: Read the optional JSON data file.
- TemplateEngine: Jinja2 environment bound to a source directory.
"""

from __future__ import annotations

import json
from pathlib import Path, PurePosixPath
from typing import Any

from jinja2 import Environment, FileSystemLoader, TemplateSyntaxError, select_autoescape

from .errors import TransformError

TEMPLATE_SUFFIXES = (".twig", ".jinja")


def load_template_data(data_file: Path | None) -> dict[str, Any]:
    """Load template variables from a JSON file.

    Args:
        data_file: Path to the JSON document, or None.

    Returns:
        Parsed variables, or an empty dict when the file does not exist.

    Raises:
        TransformError: If the file exists but is not a JSON object.
    """
    if data_file is None or not data_file.exists():
        return {}
    try:
        with open(data_file, encoding="utf-8") as f:
            payload = json.load(f)
    except json.JSONDecodeError as exc:
        raise TransformError(
            data_file, f"Invalid JSON on line {exc.lineno}: {exc.msg}", exc
        ) from exc
    if not isinstance(payload, dict):
        raise TransformError(data_file, "Template data must be a JSON object")
    return payload


def output_name(rel: PurePosixPath) -> PurePosixPath:
    """Map a template path to the HTML file it renders to.

    Examples:
        >>> output_name(PurePosixPath("blog/post.twig"))
        PurePosixPath('blog/post.html')
    """
    return rel.with_suffix(".html")


class TemplateEngine:
    """Template rendering engine using Jinja2.

    Attributes:
        src_dir: Directory templates are loaded from.
        data: Variables available to every template.
        env: Jinja2 environment.
    """

    def __init__(self, src_dir: Path, data: dict[str, Any] | None = None):
        self.src_dir = src_dir
        self.data = data or {}
        self.env = Environment(
            loader=FileSystemLoader(str(src_dir)),
            autoescape=select_autoescape(["html", "twig", "jinja"]),
            keep_trailing_newline=True,
        )

    def render(self, rel: PurePosixPath, source_path: Path | None = None) -> str:
        """Render a template by its path relative to src_dir.

        Args:
            rel: Template path relative to the source directory.
            source_path: Absolute path used for error context.

        Returns:
            Rendered HTML.

        Raises:
            TransformError: On syntax errors or failures during rendering.
        """
        location = source_path or self.src_dir / rel
        try:
            template = self.env.get_template(rel.as_posix())
            return template.render(**self.data)
        except TemplateSyntaxError as exc:
            where = Path(exc.filename) if exc.filename else location
            raise TransformError(
                where,
                f"Template syntax error on line {exc.lineno}: {exc.message}",
                exc,
            ) from exc
        except Exception as exc:
            raise TransformError(location, _format_error_message(exc), exc) from exc


def _format_error_message(exc: Exception) -> str:
    error_type = type(exc).__name__
    if error_type == "UndefinedError":
        return f"Undefined variable: {exc}"
    if error_type == "TemplateNotFound":
        return f"Template not found: {exc}"
    return f"{error_type}: {exc}"
