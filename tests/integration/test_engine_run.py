"""
Engine runs over small compiled graphs.

Each test builds a GraphSpec out of in-process commands (tests.helpers) and
checks one run-level guarantee: barrier semantics, index-before-search,
resource bounds, fail-fast with a grace period, stall detection, and chunk
release.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from annoflow.api.errors import ExpansionFormatError, InputFormatError, StallError, TaskExecutionError
from annoflow.core.config import EngineConfig
from annoflow.runtime.engine import Engine
from annoflow.runtime.task import CallableCommand, TaskContext, TaskState
from tests.helpers import Recorder, chunk_echo, write_fasta, writes

pytestmark = pytest.mark.integration


def _items(name: str, n: int) -> dict:
    return {"kind": "items", "name": name, "items": {f"k{i}": i for i in range(n)}}


def _task(name: str, command, over=None, **kw) -> dict:
    return {"kind": "task", "name": name, "command": command, "over": over, **kw}


def _tail(source: str) -> list[dict]:
    return [
        {"kind": "merge", "name": "annotations", "sources": [source]},
        {"kind": "collect", "name": "collected", "source": "annotations"},
    ]


@pytest.mark.asyncio
async def test_fan_out_collect_and_single_terminal_instance(engine_cfg, tmp_path):
    work = Recorder(outputs=("{key}.out",))
    final = Recorder()
    spec = {
        "nodes": [
            _items("src", 4),
            _task("work", work.command(), "src", outputs=["{key}.out"]),
            *_tail("work"),
            _task("report", final.command(), "collected"),
        ]
    }

    engine = Engine(engine_cfg)
    report = await engine.run(spec)

    assert sorted(work.finished) == ["k0", "k1", "k2", "k3"]
    assert final.finished == ["collected"]
    collected = report.outputs("collected")
    assert len(collected) == 1
    assert sorted(t.key for t in collected[0].payload) == ["k0", "k1", "k2", "k3"]
    assert report.succeeded("work") == 4
    assert all(i.state is TaskState.SUCCEEDED for i in report.instances)
    assert engine.metrics.sample("annoflow_task_instances_total", node="work", state="succeeded") == 4
    assert engine.metrics.sample("annoflow_runs_total", outcome="succeeded") == 1


@pytest.mark.asyncio
async def test_search_instances_wait_for_the_index(engine_cfg, tmp_path):
    events: list[str] = []

    async def build_index(ctx: TaskContext) -> None:
        await asyncio.sleep(0.05)
        (ctx.work_dir / f"{ctx.key or ctx.node}.dmnd").write_text("idx", encoding="utf-8")
        events.append("index")

    def search(ctx: TaskContext) -> None:
        events.append(f"search:{ctx.key}")
        assert ctx.values["index"].name == "nr_index.dmnd"

    src = write_fasta(tmp_path / "proteins.fa", 5)
    spec = {
        "nodes": [
            {"kind": "source", "name": "chunks", "path": src, "chunk_size": 2},
            _task("nr_index", CallableCommand(build_index), outputs=["{key}.dmnd"], emits_value=True),
            _task("blast_nr", CallableCommand(search), "chunks", values={"index": "nr_index"}),
        ]
    }

    report = await Engine(engine_cfg).run(spec)

    assert events[0] == "index"
    assert sorted(events[1:]) == ["search:proteins.1", "search:proteins.2", "search:proteins.3"]
    assert report.values["nr_index"].payload.name == "nr_index.dmnd"


@pytest.mark.asyncio
async def test_concurrency_bounded_by_cpu_budget(tmp_path):
    rec = Recorder(delay=0.03)
    spec = {"nodes": [_items("src", 8), _task("work", rec.command(), "src", resources={"cpus": 2})]}
    cfg = EngineConfig(cpus=4, memory_mb=0, work_dir=tmp_path / "work")

    await Engine(cfg).run(spec)

    assert len(rec.finished) == 8
    assert rec.peak == 2


@pytest.mark.asyncio
async def test_failure_aborts_run_without_partial_collection(engine_cfg):
    work = Recorder(delay=0.01, fail_keys=frozenset({"k2"}))
    final = Recorder()
    spec = {
        "nodes": [
            _items("src", 5),
            _task("work", work.command(), "src"),
            *_tail("work"),
            _task("report", final.command(), "collected"),
        ]
    }
    engine = Engine(engine_cfg)

    with pytest.raises(TaskExecutionError) as ei:
        await engine.run(spec)

    assert ei.value.node == "work"
    assert ei.value.key == "k2"
    assert final.started == []
    assert engine.report is not None
    assert engine.report.outputs("collected") == []
    assert engine.report.instances_of("report") == []
    failed = [i for i in engine.report.instances_of("work") if i.state is TaskState.FAILED]
    assert [i.key for i in failed] == ["k2"]
    assert engine.metrics.sample("annoflow_runs_total", outcome="failed") == 1


@pytest.mark.asyncio
async def test_in_flight_instances_cancelled_after_grace(tmp_path):
    slow = Recorder(delay=10.0)

    async def bad(ctx: TaskContext) -> None:
        await asyncio.sleep(0.05)  # let the slow instances reach Running
        raise RuntimeError("index build failed")

    spec = {
        "nodes": [
            _items("src", 2),
            _task("slow", slow.command(), "src"),
            _task("bad_index", CallableCommand(bad)),
        ]
    }
    cfg = EngineConfig(cpus=4, memory_mb=0, work_dir=tmp_path / "work", cancel_grace_sec=0.1)
    engine = Engine(cfg)

    with pytest.raises(TaskExecutionError) as ei:
        await asyncio.wait_for(engine.run(spec), timeout=5.0)

    assert ei.value.node == "bad_index"
    assert sorted(slow.cancelled) == ["k0", "k1"]
    assert slow.finished == []
    states = {i.key: i.state for i in engine.report.instances_of("slow")}
    assert states == {"k0": TaskState.FAILED, "k1": TaskState.FAILED}


@pytest.mark.asyncio
async def test_collector_stall_is_reported(tmp_path):
    async def never(token):
        await asyncio.Event().wait()

    spec = {
        "nodes": [
            _items("levels", 1),
            {"kind": "expand", "name": "dbs", "source": "levels", "resolve": never},
            *_tail("dbs"),
        ]
    }
    cfg = EngineConfig(cpus=2, memory_mb=0, work_dir=tmp_path / "work", stall_timeout_sec=0.1, cancel_grace_sec=0)

    with pytest.raises(StallError) as ei:
        await asyncio.wait_for(Engine(cfg).run(spec), timeout=5.0)
    assert ei.value.node == "collected"
    assert ei.value.received == 0


@pytest.mark.asyncio
async def test_long_running_instance_is_not_a_stall(tmp_path):
    slow = Recorder(delay=0.4)
    spec = {"nodes": [_items("src", 1), _task("work", slow.command(), "src"), *_tail("work")]}
    cfg = EngineConfig(cpus=2, memory_mb=0, work_dir=tmp_path / "work", stall_timeout_sec=0.05)

    report = await asyncio.wait_for(Engine(cfg).run(spec), timeout=5.0)
    assert slow.finished == ["k0"]
    assert [t.key for t in report.outputs("collected")[0].payload] == ["k0"]


@pytest.mark.asyncio
async def test_chunks_released_after_every_branch_consumed_them(tmp_path):
    src = write_fasta(tmp_path / "proteins.fa", 6)
    spec = {
        "nodes": [
            {"kind": "source", "name": "chunks", "path": src, "chunk_size": 2},
            _task("a", chunk_echo(".a"), "chunks", outputs=["{key}.a"]),
            _task("b", chunk_echo(".b"), "chunks", outputs=["{key}.b"]),
        ]
    }
    cfg = EngineConfig(cpus=2, memory_mb=0, work_dir=tmp_path / "work", keep_chunks=False)

    report = await Engine(cfg).run(spec)

    assert report.succeeded("a") == report.succeeded("b") == 3
    assert list((tmp_path / "work" / "chunks").glob("*.fa")) == []


@pytest.mark.asyncio
async def test_chunks_outlive_the_direct_branch_while_pairs_still_use_them(tmp_path):
    src = write_fasta(tmp_path / "proteins.fa", 2)
    read: list[str] = []

    async def search(ctx: TaskContext) -> None:
        await asyncio.sleep(0.1)  # the direct branch has long acked the chunk
        chunk, _db = ctx.payload
        read.append(Path(chunk).read_text(encoding="utf-8"))

    spec = {
        "nodes": [
            {"kind": "source", "name": "chunks", "path": src, "chunk_size": 1},
            {"kind": "items", "name": "dbs", "items": {"d1": "d1.dmnd"}},
            _task("quick", chunk_echo(".q"), "chunks", outputs=["{key}.q"]),
            {"kind": "cross", "name": "pairs", "left": "chunks", "right": "dbs"},
            _task("search", CallableCommand(search), "pairs"),
        ]
    }
    cfg = EngineConfig(cpus=4, memory_mb=0, work_dir=tmp_path / "work", keep_chunks=False)

    report = await asyncio.wait_for(Engine(cfg).run(spec), timeout=5.0)

    assert report.succeeded("quick") == report.succeeded("search") == 2
    assert sorted(r.split()[0] for r in read) == [">seq1", ">seq2"]
    assert list((tmp_path / "work" / "chunks").glob("*.fa")) == []


@pytest.mark.asyncio
async def test_collected_chunks_stay_on_disk_until_the_report_ran(tmp_path):
    src = write_fasta(tmp_path / "proteins.fa", 3)
    sizes: list[int] = []

    async def report_all(ctx: TaskContext) -> None:
        await asyncio.sleep(0.05)
        sizes.extend(len(Path(t.payload).read_text(encoding="utf-8")) for t in ctx.payload)

    spec = {
        "nodes": [
            {"kind": "source", "name": "chunks", "path": src, "chunk_size": 1},
            _task("quick", chunk_echo(".q"), "chunks", outputs=["{key}.q"]),
            {"kind": "merge", "name": "annotations", "sources": ["chunks"]},
            {"kind": "collect", "name": "collected", "source": "annotations"},
            _task("report", CallableCommand(report_all), "collected"),
        ]
    }
    cfg = EngineConfig(cpus=4, memory_mb=0, work_dir=tmp_path / "work", keep_chunks=False)

    report = await asyncio.wait_for(Engine(cfg).run(spec), timeout=5.0)

    assert report.succeeded("report") == 1
    assert len(sizes) == 3 and all(s > 0 for s in sizes)
    assert list((tmp_path / "work" / "chunks").glob("*.fa")) == []


@pytest.mark.asyncio
async def test_abort_keeps_waiting_instances_from_running(tmp_path):
    work = Recorder(delay=0.01, fail_keys=frozenset(f"k{i}" for i in range(4)))
    spec = {"nodes": [_items("src", 4), _task("work", work.command(), "src", resources={"cpus": 1})]}
    cfg = EngineConfig(cpus=1, memory_mb=0, work_dir=tmp_path / "work", cancel_grace_sec=0.5)
    engine = Engine(cfg)

    with pytest.raises(TaskExecutionError) as ei:
        await asyncio.wait_for(engine.run(spec), timeout=5.0)

    # the run reports the failure, not the nodes that stopped because of it
    assert ei.value.key == work.started[0]
    assert len(work.started) == 1
    assert engine.report.dispatched() == 1
    states = [i.state for i in engine.report.instances_of("work")]
    assert states.count(TaskState.FAILED) == 1
    assert TaskState.RUNNING not in states
    assert TaskState.SUCCEEDED not in states


@pytest.mark.asyncio
async def test_bad_expansion_aborts_before_collection(engine_cfg):
    def members(ctx: TaskContext) -> None:
        (ctx.work_dir / "members.txt").write_text("m1\nbad id!\n", encoding="utf-8")

    final = Recorder()
    spec = {
        "nodes": [
            {"kind": "items", "name": "levels", "items": {"L1": "L1"}},
            _task("members", CallableCommand(members), "levels", outputs=["members.txt"]),
            {"kind": "expand", "name": "dbs", "source": "members"},
            *_tail("dbs"),
            _task("report", final.command(), "collected"),
        ]
    }
    engine = Engine(engine_cfg)

    with pytest.raises(ExpansionFormatError) as ei:
        await asyncio.wait_for(engine.run(spec), timeout=5.0)

    assert ei.value.node == "dbs"
    assert ei.value.key == "L1"
    assert engine.report.outputs("dbs") == []
    assert engine.report.outputs("collected") == []
    assert final.started == []


@pytest.mark.asyncio
async def test_late_bad_header_fails_before_any_dispatch(engine_cfg, tmp_path):
    src = tmp_path / "proteins.fa"
    src.write_text(">a\nMK\n>b\nMK\n>\nMK\n", encoding="utf-8")
    work = Recorder()
    spec = {
        "nodes": [
            {"kind": "source", "name": "chunks", "path": src, "chunk_size": 1},
            _task("work", work.command(), "chunks"),
            *_tail("work"),
        ]
    }
    engine = Engine(engine_cfg)

    with pytest.raises(InputFormatError):
        await asyncio.wait_for(engine.run(spec), timeout=5.0)

    assert work.started == []
    assert engine.report.dispatched() == 0
    assert engine.report.outputs("chunks") == []
    assert engine.report.outputs("collected") == []
    assert not (engine_cfg.work_dir / "chunks").exists()


@pytest.mark.asyncio
async def test_expand_then_cross_join_runs_p_times_q_instances(engine_cfg, tmp_path):
    src = write_fasta(tmp_path / "proteins.fa", 5)

    def members(ctx: TaskContext) -> None:
        (ctx.work_dir / f"{ctx.key}.members.txt").write_text("m1\nm2\nm3\n", encoding="utf-8")

    pairs = Recorder()
    spec = {
        "nodes": [
            {"kind": "source", "name": "chunks", "path": src, "chunk_size": 3},
            {"kind": "items", "name": "levels", "items": {"L1": "L1"}},
            _task("members", CallableCommand(members), "levels", outputs=["{key}.members.txt"]),
            {"kind": "expand", "name": "dbs", "source": "members"},
            _task("index", writes("member.dmnd"), "dbs", outputs=["member.dmnd"]),
            {"kind": "cross", "name": "pairs", "left": "chunks", "right": "index"},
            _task("search", pairs.command(), "pairs"),
        ]
    }

    report = await Engine(engine_cfg).run(spec)

    assert [t.key for t in report.outputs("dbs")] == ["L1/m1", "L1/m2", "L1/m3"]
    assert len(pairs.finished) == 2 * 3
    assert set(pairs.finished) == {f"proteins.{c}/L1/m{m}" for c in (1, 2) for m in (1, 2, 3)}


@pytest.mark.asyncio
async def test_empty_expansion_emits_nothing_downstream(engine_cfg):
    def members(ctx: TaskContext) -> None:
        (ctx.work_dir / "none.txt").write_text("", encoding="utf-8")

    index = Recorder()
    spec = {
        "nodes": [
            {"kind": "items", "name": "levels", "items": {"L1": "L1"}},
            _task("members", CallableCommand(members), "levels", outputs=["none.txt"]),
            {"kind": "expand", "name": "dbs", "source": "members"},
            _task("index", index.command(), "dbs"),
        ]
    }
    report = await Engine(engine_cfg).run(spec)
    assert report.outputs("dbs") == []
    assert index.started == []
