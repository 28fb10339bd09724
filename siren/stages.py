"""Stages: the units a Siren task graph is built from.

A stage is a fixed description (input globs, one transform, an output
location) plus a ``run`` method that selects the input files, feeds them
through the transform and writes every produced file into the output tree.
Stages hold no state between runs, so running one twice over the same
sources writes the same bytes.

Most stages read the source tree. Stages that post-process earlier output
(CSS post-processing, script minification, lint) read the output tree
instead; the task graph orders them after the stage that produced their
input.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath

from .errors import StageError, TransformError
from .output import OutputStore
from .transforms import BaseTransform, SourceFile
from .utils import iter_matching

logger = logging.getLogger(__name__)


class Origin(str, Enum):
    """Where a stage reads its input from."""

    SOURCE = "source"
    OUTPUT = "output"


@dataclass(frozen=True)
class StageResult:
    """Outcome of one stage run.

    Attributes:
        stage: Stage name.
        inputs: Number of files selected.
        written: Output paths written, relative to the output root.
    """

    stage: str
    inputs: int
    written: list[PurePosixPath] = field(default_factory=list)


@dataclass(frozen=True)
class Stage:
    """One source-to-output transformation.

    Attributes:
        name: Identifier used in logs and errors.
        patterns: Glob patterns relative to the input root; ``!`` excludes.
        transform: The collaborator that produces output files.
        dest: Output subdirectory, relative to the output root ("" for the root).
        origin: Whether input comes from the source tree or the output tree.
        base: Subdirectory of the input root that patterns and output paths are
            relative to; ``src/fonts/a.woff`` with base ``fonts`` lands at
            ``{dest}/a.woff``.
        allow_empty: Whether matching no files is acceptable.
    """

    name: str
    patterns: tuple[str, ...]
    transform: BaseTransform
    dest: str = ""
    origin: Origin = Origin.SOURCE
    base: str = ""
    allow_empty: bool = True

    def input_root(self, src_dir: Path, store: OutputStore) -> Path:
        root = src_dir if self.origin is Origin.SOURCE else store.root
        return root / self.base if self.base else root

    def select(self, src_dir: Path, store: OutputStore) -> list[SourceFile]:
        root = self.input_root(src_dir, store)
        if self.origin is Origin.OUTPUT:
            paths = store.files(self.patterns, base=self.base)
        else:
            paths = iter_matching(root, self.patterns)
        return [
            SourceFile(path, PurePosixPath(path.relative_to(root).as_posix())) for path in paths
        ]

    def run(self, src_dir: Path, store: OutputStore) -> StageResult:
        """Run the stage to completion.

        Every output file is written before this returns.

        Args:
            src_dir: Source tree root.
            store: Output tree.

        Returns:
            StageResult describing what was read and written.

        Raises:
            StageError: If the transform fails, a write fails, or no input
                matched and ``allow_empty`` is False. Unexpected exceptions
                are wrapped too, so callers only ever see StageError.
        """
        sources = self.select(src_dir, store)
        if not sources:
            if not self.allow_empty:
                root = self.input_root(src_dir, store)
                raise StageError(
                    self.name, f"No files matching {list(self.patterns)} in {root}"
                )
            logger.debug("'%s' matched no files", self.name)
            return StageResult(self.name, 0)

        written: list[PurePosixPath] = []
        try:
            for output in self.transform.transform_all(sources):
                rel = PurePosixPath(self.dest) / output.rel if self.dest else output.rel
                store.write(rel, output.content)
                written.append(rel)
        except TransformError as exc:
            raise StageError.from_transform(self.name, exc) from exc
        except OSError as exc:
            path = Path(exc.filename) if exc.filename else None
            raise StageError(self.name, exc.strerror or str(exc), path) from exc
        except Exception as exc:
            raise StageError.from_exception(self.name, exc) from exc
        logger.debug("'%s' wrote %d file(s)", self.name, len(written))
        return StageResult(self.name, len(sources), written)


class ClearStage:
    """Stage that empties the output tree."""

    name = "clear"

    def run(self, src_dir: Path, store: OutputStore) -> StageResult:
        try:
            store.clear()
        except OSError as exc:
            path = Path(exc.filename) if exc.filename else store.root
            raise StageError(self.name, exc.strerror or str(exc), path) from exc
        return StageResult(self.name, 0)

