"""Siren static-site asset pipeline.

This package compiles templates, stylesheets, scripts, fonts and images from a
source tree into a deployable output directory, and runs a development server
that watches the sources and reloads the browser on change.

The actual transformations are delegated to third-party libraries (Jinja2,
libsass, rcssmin, rjsmin, Pillow). Siren wires them together:
- Stages map source globs to output locations through one transform each.
- Task graphs compose stages sequentially or in parallel.
- Watch rules map file changes to the smallest graph that must re-run.
"""

__all__ = ["__version__"]
__version__ = "0.1.0"
