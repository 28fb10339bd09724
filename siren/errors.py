"""Exceptions raised by the Siren pipeline.

Failures travel outward through three layers, each adding context:
- TransformError: one source file could not be transformed.
- StageError: a stage failed; carries the stage name.
- PipelineError: a task graph failed; collects every stage failure, including
  those of parallel siblings that were allowed to finish.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path


def describe_exception(exc: BaseException) -> str:
    """One-line description of an exception, prefixed with its type."""
    detail = str(exc)
    return f"{type(exc).__name__}: {detail}" if detail else type(exc).__name__


class TransformError(Exception):
    """Error while transforming a single file.

    Attributes:
        source_path: Path to the file that caused the error, if known.
        message: Human-readable error message.
        original_error: The original exception that was caught.
    """

    def __init__(
        self,
        source_path: Path | None,
        message: str,
        original_error: Exception | None = None,
    ):
        self.source_path = source_path
        self.message = message
        self.original_error = original_error
        super().__init__(f"{source_path}: {message}" if source_path else message)


class StageError(Exception):
    """A stage failed.

    Attributes:
        stage: Name of the failing stage.
        source_path: File being processed when the stage failed, if known.
        message: Human-readable error message.
    """

    def __init__(self, stage: str, message: str, source_path: Path | None = None):
        self.stage = stage
        self.message = message
        self.source_path = source_path
        location = f" ({source_path})" if source_path else ""
        super().__init__(f"'{stage}'{location}: {message}")

    @classmethod
    def from_transform(cls, stage: str, exc: TransformError) -> StageError:
        return cls(stage, exc.message, exc.source_path)

    @classmethod
    def from_exception(
        cls, stage: str, exc: BaseException, source_path: Path | None = None
    ) -> StageError:
        """Wrap an exception no transform anticipated."""
        return cls(stage, describe_exception(exc), source_path)


class PipelineError(Exception):
    """A task graph failed.

    Attributes:
        failures: Every StageError raised while the graph ran, in completion order.
    """

    def __init__(self, failures: Sequence[StageError]):
        self.failures = list(failures)
        if len(self.failures) == 1:
            summary = str(self.failures[0])
        else:
            summary = f"{len(self.failures)} stages failed: " + "; ".join(
                str(f) for f in self.failures
            )
        super().__init__(summary)
