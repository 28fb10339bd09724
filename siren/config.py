"""Project configuration for Siren.

Settings live in ``siren.yaml`` at the project root. Missing keys fall back to
DEFAULT_CONFIG; nested mappings (``postcss``, ``lint``) are merged key by key so
a project can override a single lint rule without restating the rest.

Key objects:
- DEFAULT_CONFIG: Built-in defaults.
- SiteConfig: Resolved configuration with absolute paths.
- load_config: Read siren.yaml and apply defaults and overrides.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILENAME = "siren.yaml"

DEFAULT_CONFIG: dict[str, Any] = {
    "src_dir": "src",
    "output_dir": "public",
    "data_file": "src/twig.json",
    "port": 3000,
    "ws_port": None,
    # Seconds a watch rule waits after a change before re-running, so that
    # editors which save twice in quick succession trigger a single rebuild.
    "debounce": 0.2,
    "sourcemaps": True,
    "minify_html": True,
    "open_browser": False,
    "postcss": {
        "plugins": ["autoprefixer", "postcss-flexbugs-fixes"],
        "allow_empty": True,
    },
    "lint": {
        "tag-close": True,
        "attr-no-dup": True,
        "id-no-dup": True,
        "img-req-alt": True,
        "tag-name-lowercase": False,
        "doctype-first": False,
    },
}


class ConfigError(Exception):
    """Raised when siren.yaml cannot be parsed or has the wrong shape."""


@dataclass
class SiteConfig:
    """Resolved project configuration.

    Attributes:
        project_root: Directory containing siren.yaml.
        src_dir: Source tree root.
        output_dir: Output tree root.
        data_file: Optional JSON file with template variables.
        port: HTTP port for the dev server.
        ws_port: Websocket port for reload notifications.
        debounce: Seconds each watch rule waits before re-running.
        sourcemaps: Whether SCSS compilation writes .map files.
        minify_html: Whether rendered templates are collapsed.
        open_browser: Whether serve opens the site in a browser.
        postcss_plugins: PostCSS plugin packages run through the postcss CLI.
        postcss_allow_empty: Whether post-processing may find no CSS to process.
        lint_rules: Mapping of HTML lint rule name to enabled flag.
    """

    project_root: Path
    src_dir: Path
    output_dir: Path
    data_file: Path
    port: int = 3000
    ws_port: int = 3001
    debounce: float = 0.2
    sourcemaps: bool = True
    minify_html: bool = True
    open_browser: bool = False
    postcss_plugins: list[str] = field(default_factory=list)
    postcss_allow_empty: bool = True
    lint_rules: dict[str, bool] = field(default_factory=dict)


def _merge(base: dict[str, Any], loaded: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in loaded.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


def load_config(
    project_root: Path,
    http_port: int | None = None,
    ws_port: int | None = None,
) -> SiteConfig:
    """Load site configuration from siren.yaml.

    Args:
        project_root: Root directory of the project.
        http_port: Optional override for the HTTP port.
        ws_port: Optional override for the websocket port.

    Returns:
        SiteConfig with defaults applied and paths resolved against project_root.

    Raises:
        ConfigError: If siren.yaml is not valid YAML or not a mapping.
    """
    config_path = project_root / CONFIG_FILENAME
    loaded: Any = {}
    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"{config_path}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigError(f"{config_path}: expected a mapping at top level")
    raw = _merge(DEFAULT_CONFIG, loaded)

    # An explicit --port moves the websocket port along with it unless the
    # websocket port is also given.
    port = int(http_port or raw["port"])
    if ws_port is not None:
        resolved_ws = ws_port
    elif http_port is not None or raw.get("ws_port") is None:
        resolved_ws = port + 1
    else:
        resolved_ws = int(raw["ws_port"])

    return SiteConfig(
        project_root=project_root,
        src_dir=project_root / raw["src_dir"],
        output_dir=project_root / raw["output_dir"],
        data_file=project_root / raw["data_file"],
        port=port,
        ws_port=resolved_ws,
        debounce=float(raw["debounce"]),
        sourcemaps=bool(raw["sourcemaps"]),
        minify_html=bool(raw["minify_html"]),
        open_browser=bool(raw["open_browser"]),
        postcss_plugins=list(raw["postcss"].get("plugins") or []),
        postcss_allow_empty=bool(raw["postcss"].get("allow_empty", True)),
        lint_rules=dict(raw["lint"]),
    )
