import asyncio
import logging
import threading
import time
from pathlib import Path, PurePosixPath

import pytest

from conftest import write
from siren.errors import PipelineError, StageError, TransformError
from siren.output import OutputStore
from siren.pipeline import (
    Parallel,
    RunContext,
    Series,
    StageTask,
    StepTask,
    Task,
    TaskRegistry,
    UnknownTaskError,
    parallel,
    series,
)
from siren.stages import ClearStage, Origin, Stage, StageResult
from siren.transforms import BaseTransform, CopyTransform, OutputFile


class Recorder:
    """Runnable that records start/finish order, optionally sleeping or failing."""

    def __init__(self, name, log, delay=0.0, fail=False):
        self.name = name
        self.log = log
        self.delay = delay
        self.fail = fail

    def run(self, src_dir, store):
        self.log.append(f"start:{self.name}")
        time.sleep(self.delay)
        if self.fail:
            self.log.append(f"fail:{self.name}")
            raise StageError(self.name, "boom")
        self.log.append(f"end:{self.name}")
        return StageResult(self.name, 0)


class UpperTransform(BaseTransform):
    def transform(self, source):
        yield OutputFile(source.rel.with_suffix(".txt"), self.read_text(source).upper())


class ExplodingTransform(BaseTransform):
    def transform(self, source):
        raise TransformError(source.path, "cannot handle this")
        yield


class CrashingTransform(BaseTransform):
    def transform(self, source):
        raise ValueError("bad input")
        yield


class EscapingTransform(BaseTransform):
    def transform(self, source):
        yield OutputFile(PurePosixPath("../outside.txt"), "x")


class CrashingTask(Task):
    name = "crash"

    async def run(self, ctx):
        raise RuntimeError("socket closed")


@pytest.fixture
def ctx(tmp_path):
    return RunContext(tmp_path / "src", OutputStore(tmp_path / "public"))


def test_series_runs_in_order(ctx):
    log = []
    graph = series(Recorder("a", log, delay=0.02), Recorder("b", log), Recorder("c", log))
    asyncio.run(graph.run(ctx))
    assert log == ["start:a", "end:a", "start:b", "end:b", "start:c", "end:c"]


def test_series_stops_at_first_failure(ctx):
    log = []
    graph = series(Recorder("a", log), Recorder("b", log, fail=True), Recorder("c", log))
    with pytest.raises(PipelineError) as excinfo:
        asyncio.run(graph.run(ctx))
    assert "start:c" not in log
    assert [f.stage for f in excinfo.value.failures] == ["b"]


def test_parallel_members_overlap(ctx):
    log = []
    graph = parallel(Recorder("a", log, delay=0.1), Recorder("b", log, delay=0.1))
    asyncio.run(graph.run(ctx))
    # both start before either finishes
    assert set(log[:2]) == {"start:a", "start:b"}


def test_parallel_collects_every_failure(ctx):
    log = []
    graph = parallel(
        Recorder("a", log, fail=True),
        Recorder("b", log, delay=0.05),
        Recorder("c", log, fail=True),
    )
    with pytest.raises(PipelineError) as excinfo:
        asyncio.run(graph.run(ctx))
    assert "end:b" in log
    assert sorted(f.stage for f in excinfo.value.failures) == ["a", "c"]
    assert str(excinfo.value).startswith("2 stages failed")


def test_nested_graph_orders_inner_series(ctx):
    log = []
    graph = series(
        Recorder("clear", log),
        parallel(
            series(Recorder("scss", log, delay=0.05), Recorder("postcss", log)),
            Recorder("html", log),
        ),
    )
    asyncio.run(graph.run(ctx))
    assert log[:2] == ["start:clear", "end:clear"]
    assert log.index("end:scss") < log.index("start:postcss")


def test_composite_names():
    log = []
    graph = series(Recorder("a", log), parallel(Recorder("b", log), Recorder("c", log)))
    assert graph.name == "series(a, parallel(b, c))"
    assert [t.name for t in graph.tasks[1].tasks] == ["b", "c"]
    assert isinstance(graph, Series)
    assert isinstance(graph.tasks[1], Parallel)
    assert isinstance(graph.tasks[0], StageTask)
    assert series(Recorder("a", log), name="build").name == "build"


def test_empty_composite_rejected():
    with pytest.raises(ValueError):
        series()


def test_step_task_runs_callable(ctx):
    seen = []

    async def step(run_ctx):
        seen.append(run_ctx)

    asyncio.run(series(StepTask("serve", step)).run(ctx))
    assert seen == [ctx]


def test_stage_runs_off_the_event_loop(ctx):
    threads = []

    class ThreadRecorder(Recorder):
        def run(self, src_dir, store):
            threads.append(threading.current_thread())
            return super().run(src_dir, store)

    asyncio.run(series(ThreadRecorder("a", [])).run(ctx))
    assert threads[0] is not threading.main_thread()


def test_registry(ctx):
    log = []
    registry = TaskRegistry(ctx)
    registry.register("a", Recorder("a", log))
    registry.register("build", series(Recorder("b", log), name="build"))
    assert registry.names() == ["a", "build"]
    assert "build" in registry
    with pytest.raises(ValueError, match="already registered"):
        registry.register("a", Recorder("a", log))
    with pytest.raises(UnknownTaskError) as excinfo:
        registry.get("missing")
    assert str(excinfo.value) == "Unknown task 'missing'. Known tasks: a, build"

    registry.run_sync("build")
    assert log == ["start:b", "end:b"]


def test_stage_writes_outputs_under_dest(ctx):
    write(ctx.src_dir / "notes" / "a.md", "hello")
    write(ctx.src_dir / "notes" / "skip.css", "x")
    stage = Stage("upper", ("**/*.md",), UpperTransform(), dest="out", base="notes")
    result = stage.run(ctx.src_dir, ctx.store)
    assert result.inputs == 1
    assert result.written == [PurePosixPath("out/a.txt")]
    assert (ctx.store.root / "out" / "a.txt").read_text(encoding="utf-8") == "HELLO"


def test_stage_reads_output_tree(ctx):
    ctx.store.write("scripts/app.js", "var a = 1;")
    stage = Stage(
        "copy-out", ("*.js",), CopyTransform(), dest="copy", origin=Origin.OUTPUT, base="scripts"
    )
    stage.run(ctx.src_dir, ctx.store)
    assert (ctx.store.root / "copy" / "app.js").read_bytes() == b"var a = 1;"


def test_stage_empty_selection(ctx):
    lenient = Stage("fonts", ("**/*",), CopyTransform(), base="fonts")
    assert lenient.run(ctx.src_dir, ctx.store) == StageResult("fonts", 0)

    strict = Stage("postcss", ("*.css",), CopyTransform(), origin=Origin.OUTPUT, allow_empty=False)
    with pytest.raises(StageError, match="No files matching"):
        strict.run(ctx.src_dir, ctx.store)


def test_stage_wraps_transform_errors(ctx):
    bad = write(ctx.src_dir / "bad.md", "x")
    stage = Stage("explode", ("*.md",), ExplodingTransform())
    with pytest.raises(StageError) as excinfo:
        stage.run(ctx.src_dir, ctx.store)
    assert excinfo.value.stage == "explode"
    assert excinfo.value.source_path == bad
    assert str(excinfo.value) == f"'explode' ({bad}): cannot handle this"


def test_clear_stage(ctx):
    ctx.store.write("stale.html", "old")
    ClearStage().run(ctx.src_dir, ctx.store)
    assert list(ctx.store.root.iterdir()) == []
    assert ClearStage().run(ctx.src_dir, OutputStore(Path("/nonexistent/siren"))).stage == "clear"


def test_stage_wraps_unexpected_errors_with_file(ctx):
    bad = write(ctx.src_dir / "bad.md", "x")
    stage = Stage("crash", ("*.md",), CrashingTransform())
    with pytest.raises(StageError) as excinfo:
        stage.run(ctx.src_dir, ctx.store)
    assert excinfo.value.source_path == bad
    assert excinfo.value.message == "ValueError: bad input"


def test_stage_wraps_rejected_output_paths(ctx):
    write(ctx.src_dir / "a.md", "x")
    stage = Stage("escape", ("*.md",), EscapingTransform())
    with pytest.raises(StageError) as excinfo:
        stage.run(ctx.src_dir, ctx.store)
    assert excinfo.value.stage == "escape"
    assert excinfo.value.message.startswith("ValueError: Output path must stay inside")


def test_stage_task_wraps_unexpected_errors(ctx):
    class Broken(Recorder):
        def run(self, src_dir, store):
            raise KeyError("missing")

    with pytest.raises(PipelineError) as excinfo:
        asyncio.run(series(Broken("broken", [])).run(ctx))
    (failure,) = excinfo.value.failures
    assert failure.stage == "broken"
    assert failure.message == "KeyError: 'missing'"


def test_parallel_keeps_sibling_failures_next_to_unexpected_errors(ctx):
    log = []
    graph = parallel(
        Recorder("a", log, fail=True),
        CrashingTask(),
        Recorder("b", log, delay=0.05),
    )
    with pytest.raises(PipelineError) as excinfo:
        asyncio.run(graph.run(ctx))
    assert "end:b" in log
    assert sorted(f.stage for f in excinfo.value.failures) == ["a", "crash"]
    crash = next(f for f in excinfo.value.failures if f.stage == "crash")
    assert crash.message == "RuntimeError: socket closed"


def test_finished_log_counts_written_files(ctx, caplog):
    write(ctx.src_dir / "notes" / "a.md", "hello")
    write(ctx.src_dir / "notes" / "b.md", "world")
    stage = Stage("upper", ("**/*.md",), UpperTransform(), base="notes")
    with caplog.at_level(logging.INFO, logger="siren"):
        asyncio.run(series(stage, ClearStage()).run(ctx))
    messages = [r.getMessage() for r in caplog.records]
    upper = [m for m in messages if m.startswith("Finished 'upper' after")]
    clear = [m for m in messages if m.startswith("Finished 'clear' after")]
    assert len(upper) == 1 and upper[0].endswith("(2 file(s))")
    assert len(clear) == 1 and "file(s)" not in clear[0]
