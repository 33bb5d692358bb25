"""
Unit tests for task instances and commands.

Contract:
  - exit 0 + every declared output present -> output token with the same key;
  - nonzero exit or a missing output -> TaskExecutionError;
  - state transitions are validated.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from annoflow.api.errors import TaskExecutionError
from annoflow.runtime.scheduler import Resources
from annoflow.runtime.task import (
    CallableCommand,
    ShellCommand,
    TaskContext,
    TaskInstance,
    TaskState,
    run_command,
)
from tests.helpers import fails, writes

pytestmark = pytest.mark.unit


def _ctx(tmp_path: Path, key: str | None = "proteins.1", **values) -> TaskContext:
    return TaskContext(
        node="interproscan",
        key=key,
        payload=tmp_path / "proteins.1.fa",
        values=values,
        work_dir=tmp_path / "work",
        resources=Resources(),
    )


def test_state_machine_allows_only_forward_transitions():
    inst = TaskInstance(node="n", key="k")
    inst.advance(TaskState.READY)
    inst.advance(TaskState.RUNNING)
    inst.advance(TaskState.SUCCEEDED)
    with pytest.raises(RuntimeError):
        inst.advance(TaskState.RUNNING)

    other = TaskInstance(node="n", key="k")
    with pytest.raises(RuntimeError):
        other.advance(TaskState.RUNNING)


@pytest.mark.asyncio
async def test_declared_outputs_become_the_output_token(tmp_path):
    token = await run_command(writes("{key}.ips.tsv"), _ctx(tmp_path), outputs=["{key}.ips.tsv"])
    assert token.key == "proteins.1"
    assert token.origin == "interproscan"
    assert token.payload == tmp_path / "work" / "proteins.1.ips.tsv"


@pytest.mark.asyncio
async def test_several_outputs_are_a_tuple_and_get_published(tmp_path):
    names = ["{basename}.annotation.tsv", "{basename}.summary.json"]
    ctx = _ctx(tmp_path, key=None, basename="proteins")
    token = await run_command(writes(*names), ctx, outputs=names, publish_dir=tmp_path / "out")

    assert token.key == "interproscan"  # run-once instance: key falls back to the node
    assert [p.name for p in token.payload] == ["proteins.annotation.tsv", "proteins.summary.json"]
    assert sorted(p.name for p in (tmp_path / "out").iterdir()) == ["proteins.annotation.tsv", "proteins.summary.json"]


@pytest.mark.asyncio
async def test_missing_declared_output_fails(tmp_path):
    with pytest.raises(TaskExecutionError) as ei:
        await run_command(writes("other.txt"), _ctx(tmp_path), outputs=["{key}.ips.tsv"])
    assert "proteins.1.ips.tsv" in str(ei.value)
    assert ei.value.node == "interproscan"
    assert ei.value.key == "proteins.1"


@pytest.mark.asyncio
async def test_output_pattern_with_unknown_value_fails(tmp_path):
    with pytest.raises(TaskExecutionError):
        await run_command(writes("x"), _ctx(tmp_path), outputs=["{basename}.tsv"])


@pytest.mark.asyncio
async def test_callable_exception_is_a_task_failure(tmp_path):
    with pytest.raises(TaskExecutionError) as ei:
        await run_command(fails("kaput"), _ctx(tmp_path), outputs=[])
    assert ei.value.exit_code == 1
    assert "kaput" in str(ei.value)


@pytest.mark.asyncio
async def test_async_callable_is_awaited(tmp_path):
    seen = []

    async def fn(ctx: TaskContext) -> None:
        seen.append(ctx.key)

    token = await run_command(CallableCommand(fn), _ctx(tmp_path), outputs=[])
    assert seen == ["proteins.1"]
    assert token.payload == tmp_path / "proteins.1.fa"  # no outputs: input payload passes through


@pytest.mark.asyncio
async def test_shell_command_exit_status_and_logs(tmp_path):
    script = "import sys; open('hits.tsv', 'w').write('q\\ts\\n'); sys.exit(0)"
    ok = ShellCommand(lambda ctx: [sys.executable, "-c", script])
    token = await run_command(ok, _ctx(tmp_path), outputs=["hits.tsv"])
    assert token.payload.name == "hits.tsv"
    assert (tmp_path / "work" / ".command.sh").is_file()

    bad = ShellCommand(lambda ctx: [sys.executable, "-c", "import sys; sys.stderr.write('bad db\\n'); sys.exit(3)"])
    with pytest.raises(TaskExecutionError) as ei:
        await run_command(bad, _ctx(tmp_path), outputs=[])
    assert ei.value.exit_code == 3
    assert "bad db" in str(ei.value)


@pytest.mark.asyncio
async def test_shell_command_not_found_is_127(tmp_path):
    missing = ShellCommand(lambda ctx: ["definitely-not-an-annoflow-tool"])
    with pytest.raises(TaskExecutionError) as ei:
        await run_command(missing, _ctx(tmp_path), outputs=[])
    assert ei.value.exit_code == 127
