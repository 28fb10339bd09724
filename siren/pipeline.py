"""Task graphs for Siren.

Stages are composed into task graphs that run on an asyncio event loop:

- ``series(a, b, c)`` awaits each member in order. A member only starts after
  the previous one has written all of its output; the first failure stops the
  chain.
- ``parallel(a, b, c)`` starts every member at once and waits for all of them.
  Siblings of a failing member run to completion, and every failure is
  reported together in one PipelineError.

Stage work is blocking file I/O, so StageTask runs it on a worker thread; the
event loop stays free for parallel siblings, the watch dispatcher and the
reload channel.

Named graphs are kept in a TaskRegistry built once at startup and handed to
whichever entry point the command line selects.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .errors import PipelineError, StageError, describe_exception
from .output import OutputStore
from .stages import StageResult
from .utils import format_duration

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """What every task needs to run.

    Attributes:
        src_dir: Source tree root.
        store: Output tree.
    """

    src_dir: Path
    store: OutputStore


class Runnable(Protocol):
    """Anything with a name and a blocking ``run`` (Stage, ClearStage)."""

    name: str

    def run(self, src_dir: Path, store: OutputStore) -> StageResult: ...


class Task(ABC):
    """A unit of a task graph.

    ``run`` completes only when all of the task's work has finished and
    raises PipelineError on failure.
    """

    name: str

    @abstractmethod
    async def run(self, ctx: RunContext) -> None: ...


class StageTask(Task):
    """Runs one stage on a worker thread and reports its timing."""

    def __init__(self, stage: Runnable):
        self.stage = stage
        self.name = stage.name

    def __repr__(self) -> str:
        return f"StageTask({self.name!r})"

    async def run(self, ctx: RunContext) -> None:
        logger.info("Starting '%s'...", self.name)
        started = time.perf_counter()
        try:
            result = await asyncio.to_thread(self.stage.run, ctx.src_dir, ctx.store)
        except Exception as exc:
            if isinstance(exc, StageError):
                failure = exc
            else:
                failure = StageError.from_exception(self.name, exc)
            elapsed = format_duration(time.perf_counter() - started)
            logger.error("'%s' errored after %s", self.name, elapsed)
            raise PipelineError([failure]) from exc
        elapsed = format_duration(time.perf_counter() - started)
        if result.written:
            logger.info(
                "Finished '%s' after %s (%d file(s))", self.name, elapsed, len(result.written)
            )
        else:
            logger.info("Finished '%s' after %s", self.name, elapsed)


class StepTask(Task):
    """Runs an async callable as a graph step (starting servers, watching)."""

    def __init__(self, name: str, step: Callable[[RunContext], Awaitable[None]]):
        self.name = name
        self.step = step

    def __repr__(self) -> str:
        return f"StepTask({self.name!r})"

    async def run(self, ctx: RunContext) -> None:
        logger.info("Starting '%s'...", self.name)
        await self.step(ctx)


class _Composite(Task):
    def __init__(self, tasks: list[Task], name: str | None = None):
        if not tasks:
            raise ValueError(f"{type(self).__name__} needs at least one task")
        self.tasks = tasks
        joined = ", ".join(t.name for t in tasks)
        self.name = name or f"{type(self).__name__.lower()}({joined})"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.tasks!r})"


class Series(_Composite):
    """Runs tasks one after another, stopping at the first failure."""

    async def run(self, ctx: RunContext) -> None:
        for task in self.tasks:
            await task.run(ctx)


class Parallel(_Composite):
    """Runs tasks concurrently and waits for all of them."""

    async def run(self, ctx: RunContext) -> None:
        outcomes = await asyncio.gather(
            *(task.run(ctx) for task in self.tasks), return_exceptions=True
        )
        failures: list[StageError] = []
        unexpected: BaseException | None = None
        for task, outcome in zip(self.tasks, outcomes):
            if isinstance(outcome, PipelineError):
                failures.extend(outcome.failures)
            elif isinstance(outcome, Exception):
                logger.error("'%s' raised %s", task.name, describe_exception(outcome))
                failures.append(StageError.from_exception(task.name, outcome))
            elif isinstance(outcome, BaseException) and unexpected is None:
                # cancellation and interrupts are not stage failures
                unexpected = outcome
        if unexpected is not None:
            raise unexpected
        if failures:
            raise PipelineError(failures)


def as_task(item: Task | Runnable) -> Task:
    return item if isinstance(item, Task) else StageTask(item)


def series(*items: Task | Runnable, name: str | None = None) -> Series:
    """Compose tasks (or stages) to run in order."""
    return Series([as_task(i) for i in items], name=name)


def parallel(*items: Task | Runnable, name: str | None = None) -> Parallel:
    """Compose tasks (or stages) to run concurrently."""
    return Parallel([as_task(i) for i in items], name=name)


class UnknownTaskError(KeyError):
    """Raised when an entry point name is not registered."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class TaskRegistry:
    """Named entry points, fixed after startup.

    Attributes:
        context: RunContext shared by every graph in the registry.
    """

    def __init__(self, context: RunContext):
        self.context = context
        self._graphs: dict[str, Task] = {}

    def register(self, name: str, task: Task | Runnable) -> Task:
        if name in self._graphs:
            raise ValueError(f"Task '{name}' is already registered")
        graph = as_task(task)
        self._graphs[name] = graph
        return graph

    def get(self, name: str) -> Task:
        try:
            return self._graphs[name]
        except KeyError:
            known = ", ".join(sorted(self._graphs))
            raise UnknownTaskError(f"Unknown task '{name}'. Known tasks: {known}") from None

    def names(self) -> list[str]:
        return sorted(self._graphs)

    def __contains__(self, name: object) -> bool:
        return name in self._graphs

    async def run(self, name: str) -> None:
        """Run a registered graph to completion.

        Raises:
            PipelineError: If any stage in the graph fails.
        """
        graph = self.get(name)
        started = time.perf_counter()
        await graph.run(self.context)
        logger.debug(
            "'%s' completed after %s", name, format_duration(time.perf_counter() - started)
        )

    def run_sync(self, name: str) -> None:
        """Run a registered graph from synchronous code (the CLI)."""
        asyncio.run(self.run(name))
