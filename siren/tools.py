"""External executable helpers for Siren.

Some transforms have no Python implementation (PostCSS plugins) and
run Node tools instead. They are looked up on PATH first, then in the
project's ``node_modules/.bin``, so that ``npm install -D postcss-cli`` in the
project is enough.

Functions:
    find_executable: Locate an executable in PATH or node_modules.
    run_tool: Run an executable and raise TransformError if it fails.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path

from .errors import TransformError

logger = logging.getLogger(__name__)


def find_executable(name: str, project_root: Path | None = None) -> str | None:
    """Find an executable in PATH or local node_modules.

    Args:
        name: Name of the executable to find (e.g., 'postcss').
        project_root: Optional project root to search for a local
            node_modules installation.

    Returns:
        Full path to the executable if found, None otherwise.
    """
    found = shutil.which(name)
    if found:
        return found
    if project_root is not None:
        local = project_root / "node_modules" / ".bin" / name
        if local.exists():
            return str(local)
    return None


def run_tool(cmd: Sequence[str], source: Path, stdin: str | None = None) -> str:
    """Run an external tool on one file.

    Args:
        cmd: Command line; cmd[0] is the executable path.
        source: File being processed, used for error context.
        stdin: Optional text fed to the process.

    Returns:
        The tool's standard output.

    Raises:
        TransformError: If the tool exits non-zero or cannot be started.
    """
    logger.debug("Running %s", " ".join(cmd))
    try:
        result = subprocess.run(
            list(cmd), input=stdin, capture_output=True, text=True
        )
    except OSError as exc:
        raise TransformError(source, f"Could not run {cmd[0]}: {exc}", exc) from exc
    if result.returncode != 0:
        detail = result.stderr.strip() or result.stdout.strip() or f"exit {result.returncode}"
        raise TransformError(source, f"{Path(cmd[0]).name} failed: {detail}")
    return result.stdout
