import logging
from pathlib import Path

import pytest
from PIL import Image

from siren.config import load_config

SVG_ICON = (
    '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 24 24">'
    '<path d="M0 0h24v24H0z"/></svg>'
)


def write(path: Path, content: str | bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content, encoding="utf-8")
    return path


def write_png(path: Path, size=(16, 16)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, (200, 40, 40)).save(path, format="PNG")
    return path


@pytest.fixture(autouse=True)
def reset_siren_logger():
    yield
    logger = logging.getLogger("siren")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def project(tmp_path):
    """A small site exercising every stage."""
    root = tmp_path / "site"
    src = root / "src"
    write(root / "siren.yaml", "postcss:\n  plugins: []\n")
    write(src / "twig.json", '{"title": "Hello", "items": ["a", "b"]}')
    write(
        src / "index.twig",
        "<!DOCTYPE html>\n<html>\n<head><title>{{ title }}</title></head>\n"
        "<body>\n  {% include \"partials/_nav.twig\" %}\n"
        "  <ul>{% for item in items %}<li>{{ item }}</li>{% endfor %}</ul>\n"
        "</body>\n</html>\n",
    )
    write(src / "partials" / "_nav.twig", "<nav id=\"main-nav\">{{ title }}</nav>\n")
    write(src / "about.html", "<!DOCTYPE html><html><body><p>About</p></body></html>\n")
    write(src / "styles" / "_vars.scss", "$brand: #c33;\n")
    write(
        src / "styles" / "main.scss",
        "@import 'vars';\n\nbody {\n  color: $brand;\n  .nav { display: flex; }\n}\n",
    )
    write(src / "scripts" / "app.js", "// greet\nfunction greet(name) {\n  return 'hi ' + name;\n}\n")
    write(src / "fonts" / "body.woff2", b"\x00woff2-font-bytes")
    write_png(src / "imgs" / "photo.png")
    write(src / "imgs" / "icons" / "star.svg", SVG_ICON)
    write(src / "imgs" / "icons" / "heart.svg", SVG_ICON)
    return root


@pytest.fixture
def config(project):
    return load_config(project)


def snapshot(directory: Path) -> dict[str, bytes]:
    return {
        path.relative_to(directory).as_posix(): path.read_bytes()
        for path in sorted(directory.rglob("*"))
        if path.is_file()
    }
