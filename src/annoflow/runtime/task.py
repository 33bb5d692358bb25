# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Task instances and the commands they run.

A task node runs one instance per input token (or exactly once when it has
no queue input). Each instance gets its own work directory and goes through

    Pending -> Ready -> Running -> Succeeded | Failed

The engine's only contract with a command is: exit code 0 and every declared
output present => Succeeded; anything else => Failed (TaskExecutionError).
"""

import asyncio
import inspect
import os
import shutil
import signal
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, Union

from ..api.errors import TaskExecutionError
from ..api.streams import Token
from ..core.logging import get_logger
from .scheduler import Resources

_log = get_logger("runtime.task")

_STDERR_TAIL = 400
_TERM_GRACE_SEC = 5.0


class TaskState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.PENDING: frozenset({TaskState.READY}),
    TaskState.READY: frozenset({TaskState.RUNNING}),
    TaskState.RUNNING: frozenset({TaskState.SUCCEEDED, TaskState.FAILED}),
    TaskState.SUCCEEDED: frozenset(),
    TaskState.FAILED: frozenset(),
}


@dataclass
class TaskInstance:
    """Bookkeeping for one execution of a task node on one token."""

    node: str
    key: str | None
    state: TaskState = TaskState.PENDING
    started_ms: int | None = None
    finished_ms: int | None = None
    error: str | None = None
    outputs: tuple[Path, ...] = ()

    def advance(self, new: TaskState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"{self.node}[{self.key}]: illegal transition {self.state.value} -> {new.value}")
        self.state = new

    @property
    def duration_ms(self) -> int | None:
        if self.started_ms is None or self.finished_ms is None:
            return None
        return self.finished_ms - self.started_ms


@dataclass
class TaskContext:
    """Everything a command needs to build its invocation."""

    node: str
    key: str | None
    payload: Any
    values: Mapping[str, Any]
    work_dir: Path
    resources: Resources
    extras: dict[str, Any] = field(default_factory=dict)

    def fmt(self) -> dict[str, str]:
        """Values usable in output patterns, e.g. "{basename}.summary.json"."""
        out = {k: str(v) for k, v in self.values.items()}
        out["key"] = self.key or self.node
        return out


@dataclass
class CommandResult:
    exit_code: int
    stderr_tail: str = ""


class Command(Protocol):
    async def __call__(self, ctx: TaskContext) -> CommandResult: ...


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


ArgvBuilder = Callable[[TaskContext], Sequence[Union[str, os.PathLike[str]]]]


class ShellCommand:
    """
    External program started with `asyncio.create_subprocess_exec` in the
    instance work dir. stdout/stderr go to `.command.out` / `.command.err`.
    Cancellation terminates the whole process group.
    """

    def __init__(self, build: ArgvBuilder, *, env: Mapping[str, str] | None = None) -> None:
        self.build = build
        self.env = dict(env or {})

    def argv(self, ctx: TaskContext) -> list[str]:
        return [os.fspath(a) for a in self.build(ctx)]

    async def __call__(self, ctx: TaskContext) -> CommandResult:
        argv = self.argv(ctx)
        (ctx.work_dir / ".command.sh").write_text(" ".join(argv) + "\n", encoding="utf-8")
        out_path = ctx.work_dir / ".command.out"
        err_path = ctx.work_dir / ".command.err"
        env = {**os.environ, **self.env} if self.env else None
        with out_path.open("wb") as out, err_path.open("wb") as err:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv, cwd=str(ctx.work_dir), stdout=out, stderr=err, env=env, start_new_session=True
                )
            except FileNotFoundError as e:
                return CommandResult(exit_code=127, stderr_tail=f"command not found: {argv[0]} ({e})")
            try:
                code = await proc.wait()
            except asyncio.CancelledError:
                await _terminate(proc)
                raise
        tail = err_path.read_text(encoding="utf-8", errors="replace")[-_STDERR_TAIL:].strip()
        return CommandResult(exit_code=code, stderr_tail=tail)


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=_TERM_GRACE_SEC)
    except TimeoutError:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        await proc.wait()


class CallableCommand:
    """
    In-process command: a Python callable receiving the TaskContext.
    Sync callables run in a worker thread; raising marks the instance failed.
    """

    def __init__(self, fn: Callable[[TaskContext], Union[None, Awaitable[None]]]) -> None:
        self.fn = fn

    async def __call__(self, ctx: TaskContext) -> CommandResult:
        try:
            if inspect.iscoroutinefunction(self.fn):
                await self.fn(ctx)
            else:
                await asyncio.to_thread(self.fn, ctx)
        except Exception as e:
            return CommandResult(exit_code=1, stderr_tail=f"{type(e).__name__}: {e}")
        return CommandResult(exit_code=0)


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------


def collect_outputs(ctx: TaskContext, patterns: Sequence[str]) -> tuple[Path, ...]:
    """Resolve declared output patterns inside the work dir; every pattern must match."""
    found: list[Path] = []
    fmt = ctx.fmt()
    for raw in patterns:
        try:
            pattern = raw.format(**fmt)
        except KeyError as e:
            raise TaskExecutionError(ctx.node, ctx.key, f"output pattern {raw!r} references unknown value {e}") from e
        matches = sorted(p for p in ctx.work_dir.glob(pattern) if p.is_file())
        if not matches:
            raise TaskExecutionError(ctx.node, ctx.key, f"missing declared output '{pattern}'")
        found.extend(matches)
    return tuple(found)


def output_payload(paths: tuple[Path, ...]) -> Path | tuple[Path, ...]:
    return paths[0] if len(paths) == 1 else paths


def publish(paths: Sequence[Path], dest: Path) -> list[Path]:
    dest.mkdir(parents=True, exist_ok=True)
    published = []
    for p in paths:
        target = dest / p.name
        shutil.copy2(p, target)
        published.append(target)
    return published


async def run_command(
    command: Command,
    ctx: TaskContext,
    *,
    outputs: Sequence[str],
    publish_dir: Path | None = None,
) -> Token:
    """Run one instance and turn its declared outputs into the output token."""
    ctx.work_dir.mkdir(parents=True, exist_ok=True)
    result = await command(ctx)
    if result.exit_code != 0:
        reason = f"exit status {result.exit_code}"
        if result.stderr_tail:
            reason += f": {result.stderr_tail.splitlines()[-1]}"
        raise TaskExecutionError(ctx.node, ctx.key, reason, exit_code=result.exit_code)
    paths = collect_outputs(ctx, outputs)
    if publish_dir is not None:
        published = publish(paths, publish_dir)
        _log.info("outputs published", event="task.published", node=ctx.node, files=[str(p) for p in published])
    payload: Any = output_payload(paths) if paths else ctx.payload
    return Token(key=ctx.key or ctx.node, payload=payload, origin=ctx.node)


__all__ = [
    "CallableCommand",
    "Command",
    "CommandResult",
    "ShellCommand",
    "TaskContext",
    "TaskInstance",
    "TaskState",
    "collect_outputs",
    "output_payload",
    "publish",
    "run_command",
]
