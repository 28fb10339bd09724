"""File watching for Siren's development mode.

Filesystem notifications come from a watchdog Observer thread and are turned
into an async stream of ChangeEvent objects. The WatchCoordinator consumes
that stream and maps each event to the watch rules whose globs it matches.

Each rule moves through a small state machine::

    IDLE --change--> TRIGGERED --debounce elapsed--> RUNNING --done--> IDLE
                        ^                               |
                        +------ change while running ---+

Changes that arrive while a rule is TRIGGERED are absorbed into the pending
run. Changes that arrive while it is RUNNING set a single pending flag, so any
number of them cause at most one more run. Rules are independent: two rules
can be RUNNING at the same time. After a successful run the coordinator asks
the reload notifier to refresh connected browsers.

Key classes:
- ChangeEvent: One filesystem change.
- WatchRule: Glob patterns bound to the task graph they re-run.
- WatchCoordinator: Dispatches events and serializes runs per rule.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .errors import PipelineError
from .pipeline import RunContext, Task
from .protocols import ReloadNotifier
from .utils import is_within, match_path

logger = logging.getLogger(__name__)

IGNORED_EVENT_TYPES = frozenset({"opened", "closed", "closed_no_write"})


@dataclass(frozen=True)
class ChangeEvent:
    """A change to one file.

    Attributes:
        path: Absolute path of the changed file.
        kind: watchdog event type ("created", "modified", "deleted", "moved").
    """

    path: Path
    kind: str


@dataclass(frozen=True)
class WatchRule:
    """Globs bound to the task graph that must re-run when they change.

    Attributes:
        name: Identifier used in logs.
        patterns: Globs relative to the source directory; ``!`` excludes.
        task: Graph to run; a reload notification follows automatically.
        files: Extra absolute paths that trigger the rule (the data file).
    """

    name: str
    patterns: tuple[str, ...]
    task: Task
    files: tuple[Path, ...] = ()

    def matches(self, path: Path, src_dir: Path) -> bool:
        if any(path == f for f in self.files):
            return True
        if not is_within(path, src_dir):
            return False
        return match_path(path.relative_to(src_dir).as_posix(), self.patterns)


class RuleStatus(str, Enum):
    IDLE = "idle"
    TRIGGERED = "triggered"
    RUNNING = "running"


@dataclass
class _RuleState:
    rule: WatchRule
    status: RuleStatus = RuleStatus.IDLE
    pending: bool = False
    runs: int = 0
    failures: int = 0
    job: asyncio.Task | None = field(default=None, repr=False)


class _ChangeHandler(FileSystemEventHandler):
    """Forwards watchdog events from the observer thread into an asyncio queue."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue[ChangeEvent],
        ignored: Sequence[Path] = (),
    ):
        super().__init__()
        self.loop = loop
        self.queue = queue
        self.ignored = [p.resolve() for p in ignored]

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in IGNORED_EVENT_TYPES:
            return
        raw_paths = [event.src_path]
        dest_path = getattr(event, "dest_path", "")
        if dest_path:
            raw_paths.append(dest_path)
        for raw in raw_paths:
            path = Path(os.fsdecode(raw)).resolve()
            if any(is_within(path, ignored) for ignored in self.ignored):
                continue
            if "node_modules" in path.parts:
                continue
            self.loop.call_soon_threadsafe(
                self.queue.put_nowait, ChangeEvent(path, event.event_type)
            )


async def watch_events(
    roots: Iterable[tuple[Path, bool]],
    ignored: Sequence[Path] = (),
    observer_factory: Callable[[], Observer] = Observer,
) -> AsyncIterator[ChangeEvent]:
    """Stream filesystem changes under the given roots.

    The stream is infinite; closing the generator stops the observer.

    Args:
        roots: (directory, recursive) pairs to watch. Missing directories are
            skipped.
        ignored: Directories whose changes are dropped (the output tree).
        observer_factory: Creates the watchdog observer.

    Yields:
        ChangeEvent for every file created, modified, deleted or moved.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
    handler = _ChangeHandler(loop, queue, ignored)
    observer = observer_factory()
    for root, recursive in roots:
        if root.exists():
            observer.schedule(handler, str(root), recursive=recursive)
            logger.debug("Watching %s%s", root, " recursively" if recursive else "")
    observer.start()
    try:
        while True:
            yield await queue.get()
    finally:
        observer.stop()
        observer.join()


class WatchCoordinator:
    """Maps change events to watch rules and runs them.

    Attributes:
        context: RunContext the rule graphs run with.
        notifier: Receives a reload request after each successful run.
        debounce: Seconds a triggered rule waits before running.
    """

    def __init__(
        self,
        rules: Sequence[WatchRule],
        context: RunContext,
        notifier: ReloadNotifier | None = None,
        debounce: float = 0.2,
    ):
        names = [rule.name for rule in rules]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate watch rule names: {names}")
        self.context = context
        self.notifier = notifier
        self.debounce = debounce
        self._src_dir = context.src_dir.resolve()
        self._states = {rule.name: _RuleState(rule) for rule in rules}

    @property
    def rules(self) -> list[WatchRule]:
        return [state.rule for state in self._states.values()]

    def status(self, name: str) -> RuleStatus:
        return self._states[name].status

    def runs(self, name: str) -> int:
        return self._states[name].runs

    def match(self, path: Path) -> list[WatchRule]:
        resolved = path.resolve()
        return [rule for rule in self.rules if rule.matches(resolved, self._src_dir)]

    def dispatch(self, event: ChangeEvent) -> list[str]:
        """Trigger every rule matching the event.

        Must be called from the event loop thread.

        Returns:
            Names of the rules the event matched.
        """
        matched = self.match(event.path)
        for rule in matched:
            logger.debug("%s %s -> '%s'", event.kind, event.path, rule.name)
            self._trigger(self._states[rule.name])
        return [rule.name for rule in matched]

    def _trigger(self, state: _RuleState) -> None:
        if state.status is RuleStatus.IDLE:
            state.status = RuleStatus.TRIGGERED
            state.job = asyncio.get_running_loop().create_task(self._drive(state))
        elif state.status is RuleStatus.RUNNING:
            state.pending = True

    async def _drive(self, state: _RuleState) -> None:
        try:
            while True:
                await asyncio.sleep(self.debounce)
                state.status = RuleStatus.RUNNING
                state.pending = False
                if await self._run_rule(state) and self.notifier is not None:
                    self.notifier.notify_reload()
                if not state.pending:
                    break
                state.status = RuleStatus.TRIGGERED
        finally:
            state.status = RuleStatus.IDLE
            state.pending = False
            state.job = None

    async def _run_rule(self, state: _RuleState) -> bool:
        state.runs += 1
        try:
            await state.rule.task.run(self.context)
        except PipelineError as exc:
            state.failures += 1
            for failure in exc.failures:
                logger.error("Watch '%s' failed: %s", state.rule.name, failure)
            return False
        except Exception:
            state.failures += 1
            logger.exception("Watch '%s' failed unexpectedly", state.rule.name)
            return False
        return True

    async def run(self, events: AsyncIterator[ChangeEvent]) -> None:
        """Dispatch events until the stream ends (normally never)."""
        logger.info("Watching for changes (%d rules)", len(self._states))
        async for event in events:
            self.dispatch(event)

    async def wait_idle(self) -> None:
        """Wait until no rule is triggered or running."""
        while True:
            jobs = [s.job for s in self._states.values() if s.job is not None]
            if not jobs:
                return
            await asyncio.gather(*jobs, return_exceptions=True)
