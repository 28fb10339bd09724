"""Output tree management for Siren.

The output directory is the build artifact and the only resource shared
between stages. OutputStore wraps it with the two operations the pipeline
needs: clearing it at the start of a build, and writing files under
namespaced subpaths (``styles/``, ``scripts/``, ``fonts/``, ``imgs/``).

Stages that run concurrently write disjoint subpaths; the task graph is
responsible for ordering stages that touch the same files.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterable, Sequence
from pathlib import Path, PurePosixPath

from .utils import iter_matching

logger = logging.getLogger(__name__)

Content = str | bytes | Iterable[bytes]


class OutputStore:
    """Destination directory for build output.

    Attributes:
        root (Path): Output root directory. It does not need to exist yet.
    """

    def __init__(self, root: Path):
        self.root = root

    def __repr__(self) -> str:
        return f"OutputStore({str(self.root)!r})"

    def path(self, relative_path: str | PurePosixPath) -> Path:
        """Resolve a relative output path to an absolute one.

        Raises:
            ValueError: If the path is absolute or escapes the output root.
        """
        rel = PurePosixPath(relative_path)
        if rel.is_absolute() or ".." in rel.parts:
            raise ValueError(f"Output path must stay inside {self.root}: {relative_path}")
        return self.root.joinpath(*rel.parts)

    def clear(self) -> None:
        """Delete everything inside the output root.

        The root directory itself is kept. A missing root is not an error.
        """
        if not self.root.exists():
            logger.debug("Output directory %s does not exist; nothing to clear", self.root)
            return
        for item in self.root.iterdir():
            if item.is_dir() and not item.is_symlink():
                shutil.rmtree(item)
            else:
                item.unlink()
        logger.debug("Cleared %s", self.root)

    def write(self, relative_path: str | PurePosixPath, content: Content) -> Path:
        """Write a file, creating parent directories and overwriting.

        Args:
            relative_path: Destination path relative to the output root.
            content: Text (written as UTF-8), bytes, or an iterable of byte chunks.

        Returns:
            Absolute path of the written file.
        """
        dest = self.path(relative_path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            dest.write_text(content, encoding="utf-8")
        elif isinstance(content, (bytes, bytearray)):
            dest.write_bytes(content)
        else:
            with open(dest, "wb") as f:
                for chunk in content:
                    f.write(chunk)
        return dest

    def files(self, patterns: Sequence[str], base: str = "") -> list[Path]:
        """List output files matching glob patterns, sorted.

        Patterns are relative to ``base`` under the output root.
        """
        return iter_matching(self.path(base) if base else self.root, patterns)
