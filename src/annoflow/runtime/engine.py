# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Engine: compiles a GraphSpec and drives it to completion.

Responsibilities:
  - compile (config/precondition errors surface before any dispatch)
  - one channel per surviving node; subscriptions wired before any token flows
  - one driver coroutine per node (source, value, items, task, expand,
    cross, merge, collect)
  - resource-bounded dispatch of task instances
  - fail fast: the first failure sets the abort signal, no new instance is
    started, in-flight instances get `cancel_grace_sec` to finish, then
    everything left is cancelled and the first error is raised. Work that
    observes the signal raises RunAborted, which ends its driver quietly.
  - payload lifetime: merge, collect, cross and expand nodes acknowledge their
    inputs through an AckRelay, so a chunk file is only released once every
    token that carries it has been consumed
"""

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, cast

from ..api.errors import RunAborted
from ..api.streams import Token
from ..core.config import EngineConfig
from ..core.logging import get_logger, log_context
from ..core.time import Clock, SystemClock
from ..core.utils import nanoid, safe_name
from ..graph.compiler import ExecutionPlan, compile_graph
from ..graph.spec import (
    CollectNode,
    CrossNode,
    ExpandNode,
    GraphSpec,
    ItemsNode,
    MergeNode,
    SourceNode,
    TaskNode,
    ValueNode,
)
from ..observability.metrics import EngineMetrics
from ..observability.tracing import span
from .channel import AckRelay, Channel, Subscription, ValueChannel
from .collect import BarrierCollector, merge
from .crossjoin import CrossJoiner
from .expander import Expander
from .scheduler import ResourceBudget
from .splitter import FastaSplitter
from .task import TaskContext, TaskInstance, TaskState, run_command

_log = get_logger("runtime.engine")


@dataclass
class RunReport:
    """What happened during a run (also available after a failed run)."""

    run_id: str
    plan: ExecutionPlan
    instances: list[TaskInstance] = field(default_factory=list)
    emitted: dict[str, list[Token]] = field(default_factory=lambda: defaultdict(list))
    values: dict[str, Token] = field(default_factory=dict)
    error: BaseException | None = None

    def instances_of(self, node: str) -> list[TaskInstance]:
        return [i for i in self.instances if i.node == node]

    def succeeded(self, node: str) -> int:
        return sum(1 for i in self.instances_of(node) if i.state is TaskState.SUCCEEDED)

    def dispatched(self) -> int:
        """Instances that reached Running (whatever their outcome)."""
        return sum(1 for i in self.instances if i.started_ms is not None)

    def outputs(self, node: str) -> list[Token]:
        return list(self.emitted.get(node, []))

    @property
    def pruned(self) -> dict[str, str]:
        return self.plan.pruned


class Engine:
    """
    Usage:
        engine = Engine(EngineConfig.load(overrides={"cpus": 8}))
        report = await engine.run(spec)
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        clock: Clock | None = None,
        metrics: EngineMetrics | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.clock = clock or SystemClock()
        self.metrics = metrics or EngineMetrics()
        self.report: RunReport | None = None

    async def run(self, spec: GraphSpec | Mapping[str, Any], *, run_id: str | None = None) -> RunReport:
        run_id = run_id or nanoid()
        self.report = None
        budget = ResourceBudget(cpus=self.config.cpus, memory_mb=self.config.memory_mb)
        with log_context(run_id=run_id):
            with span("annoflow.compile", run_id=run_id):
                plan = compile_graph(spec, budget=budget)
            self.metrics.pruned.inc(len(plan.pruned))
            run = _Run(run_id, plan, self.config, budget, self.clock, self.metrics)
            self.report = run.report
            try:
                await run.execute()
            except BaseException:
                self.metrics.runs.labels(outcome="failed").inc()
                raise
            self.metrics.runs.labels(outcome="succeeded").inc()
            return run.report


class _Run:
    """State of one execution of a compiled plan."""

    def __init__(
        self,
        run_id: str,
        plan: ExecutionPlan,
        config: EngineConfig,
        budget: ResourceBudget,
        clock: Clock,
        metrics: EngineMetrics,
    ) -> None:
        self.run_id = run_id
        self.plan = plan
        self.config = config
        self.budget = budget
        self.clock = clock
        self.metrics = metrics
        self.report = RunReport(run_id=run_id, plan=plan)

        self.abort = asyncio.Event()
        self.first_error: BaseException | None = None
        self.running: set[asyncio.Task[Any]] = set()  # instances past resource acquisition
        self.splitting = 0  # source drivers still reading their input

        self.queues: dict[str, Channel] = {}
        self.relays: dict[str, AckRelay] = {}
        self.value_channels: dict[str, ValueChannel] = {}
        self.subs: dict[str, list[Subscription]] = {}
        self._wire()

    # ---- wiring

    def _wire(self) -> None:
        for name, node in self.plan.nodes.items():
            if node.emits_value_channel:
                self.value_channels[name] = ValueChannel(name)
                continue
            release = None
            if isinstance(node, (MergeNode, CollectNode, CrossNode, ExpandNode)):
                self.relays[name] = AckRelay()
                release = self.relays[name].release
            elif isinstance(node, SourceNode) and not self.config.keep_chunks:
                release = self._release_chunk
            self.queues[name] = Channel(name, consumers=len(self.plan.consumers[name]), on_release=release)
        for name in self.plan.nodes:
            self.subs[name] = [self.queues[ref].subscribe(name) for ref in self.plan.inputs_of(name)]

    @staticmethod
    def _release_chunk(token: Token) -> None:
        if isinstance(token.payload, Path):
            token.payload.unlink(missing_ok=True)

    async def _emit(self, name: str, token: Token) -> None:
        if self.abort.is_set():
            raise RunAborted(name, token.key)
        self.report.emitted[name].append(token)
        self.metrics.tokens.labels(channel=name).inc()
        await self.queues[name].put(token)

    def _set_value(self, name: str, token: Token) -> None:
        if self.abort.is_set():
            raise RunAborted(name)
        self.report.values[name] = token
        self.metrics.tokens.labels(channel=name).inc()
        self.value_channels[name].set(token)

    # ---- failure handling

    def _fail(self, node: str, exc: BaseException) -> None:
        if self.first_error is None:
            self.first_error = exc
            self.report.error = exc
            _log.error("run failed", event="run.failed", node=node, error=str(exc), error_type=type(exc).__name__)
            self.abort.set()
        else:
            _log.warning(
                "additional failure after abort",
                event="run.failed.secondary",
                node=node,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def _guard(self, name: str, coro: Awaitable[Any]) -> None:
        with log_context(node=name):
            try:
                await coro
            except asyncio.CancelledError:
                raise
            except RunAborted as e:
                _log.debug("driver stopped", event="run.aborted.node", stopped_at=str(e))
            except Exception as e:
                self._fail(name, e)

    # ---- main loop

    async def execute(self) -> None:
        _log.info("run started", event="run.started", graph=self.plan.name, nodes=len(self.plan.nodes))
        drivers = [asyncio.create_task(self._guard(name, self._driver(name))) for name in self.plan.nodes]
        all_done = asyncio.gather(*drivers)
        aborted = asyncio.create_task(self.abort.wait())
        try:
            await asyncio.wait({all_done, aborted}, return_when=asyncio.FIRST_COMPLETED)
            if self.abort.is_set():
                await self._wind_down(drivers)
        finally:
            aborted.cancel()
            if not all_done.done():
                all_done.cancel()
            await asyncio.gather(all_done, aborted, return_exceptions=True)

        if self.first_error is not None:
            raise self.first_error
        _log.info(
            "run finished",
            event="run.finished",
            instances=len(self.report.instances),
            peak_running=self.budget.peak_running,
        )

    async def _wind_down(self, drivers: list[asyncio.Task[Any]]) -> None:
        if self.running:
            _log.info(
                "waiting for in-flight instances",
                event="run.draining",
                inflight=len(self.running),
                grace_sec=self.config.cancel_grace_sec,
            )
            await asyncio.wait(set(self.running), timeout=self.config.cancel_grace_sec)
        for t in (*self.running, *drivers):
            t.cancel()
        await asyncio.gather(*self.running, *drivers, return_exceptions=True)

    # ---- drivers

    def _driver(self, name: str) -> Awaitable[Any]:
        node = self.plan.nodes[name]
        subs = self.subs[name]
        if isinstance(node, SourceNode):
            return self._drive_source(node)
        if isinstance(node, ValueNode):
            return self._drive_value(node)
        if isinstance(node, ItemsNode):
            return self._drive_items(node)
        if isinstance(node, TaskNode):
            return self._drive_task(node, subs[0] if subs else None)
        if isinstance(node, ExpandNode):
            return self._drive_expand(node, subs[0])
        if isinstance(node, CrossNode):
            return self._drive_cross(node, subs[0], subs[1])
        if isinstance(node, MergeNode):
            return self._drive_merge(node, subs)
        if isinstance(node, CollectNode):
            return self._drive_collect(node, subs[0])
        raise TypeError(f"unsupported node kind: {type(node).__name__}")

    async def _drive_source(self, node: SourceNode) -> None:
        splitter = FastaSplitter(
            node.path, size=node.chunk_size, out_dir=self.config.work_dir / node.name, origin=node.name
        )
        self.splitting += 1
        try:
            async for token in splitter:
                await self._emit(node.name, token)
        finally:
            self.splitting -= 1
        self.queues[node.name].close()

    async def _drive_value(self, node: ValueNode) -> None:
        self._set_value(node.name, Token(key=node.name, payload=node.value, origin=node.name))

    async def _drive_items(self, node: ItemsNode) -> None:
        for key, payload in node.items.items():
            await self._emit(node.name, Token(key=key, payload=payload, origin=node.name))
        self.queues[node.name].close()

    async def _drive_expand(self, node: ExpandNode, source: Subscription) -> None:
        expander = Expander(node.name, resolve=node.resolve, payload=node.payload)
        out = _Recording(self, node.name)
        await expander.run(source, out, relay=self.relays[node.name])  # type: ignore[arg-type]

    async def _drive_cross(self, node: CrossNode, left: Subscription, right: Subscription) -> None:
        out = _Recording(self, node.name)
        await CrossJoiner(node.name).run(left, right, out, relay=self.relays[node.name])  # type: ignore[arg-type]

    async def _drive_merge(self, node: MergeNode, sources: list[Subscription]) -> None:
        out = _Recording(self, node.name)
        await merge(node.name, sources, out, relay=self.relays[node.name])  # type: ignore[arg-type]

    async def _drive_collect(self, node: CollectNode, source: Subscription) -> None:
        collector = BarrierCollector(
            node.name,
            stall_timeout=self.config.stall_timeout_sec,
            busy=self._busy,
            relay=self.relays[node.name],
        )
        token = await collector.collect(source)
        await self._emit(node.name, token)
        self.queues[node.name].close()

    def _busy(self) -> bool:
        """Upstream work that can still produce tokens without emitting right now."""
        return bool(self.running) or self.splitting > 0

    # ---- tasks

    async def _resolve_values(self, node: TaskNode) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for alias, ref in node.values.items():
            values[alias] = (await self.value_channels[ref].get()).payload
        return values

    async def _drive_task(self, node: TaskNode, source: Subscription | None) -> None:
        values_fut = asyncio.ensure_future(self._resolve_values(node))
        instances: list[asyncio.Task[Token]] = []
        try:
            if source is None:
                instances.append(asyncio.create_task(self._instance(node, None, values_fut)))
            else:
                async for token in source:
                    if self.abort.is_set():
                        break
                    instances.append(asyncio.create_task(self._instance(node, token, values_fut, source)))
            # instances settle on their own; in-flight ones keep their grace period
            results = await asyncio.gather(*instances, return_exceptions=True)
        except BaseException:
            values_fut.cancel()
            for t in instances:
                t.cancel()
            await asyncio.gather(values_fut, *instances, return_exceptions=True)
            raise

        if self.abort.is_set():
            raise RunAborted(node.name)
        for r in results:
            if isinstance(r, BaseException):
                raise r
        if node.emits_value:
            self._set_value(node.name, cast(Token, results[0]))
        else:
            self.queues[node.name].close()

    async def _instance(
        self,
        node: TaskNode,
        token: Token | None,
        values_fut: asyncio.Future[dict[str, Any]],
        source: Subscription | None = None,
    ) -> Token:
        key = token.key if token is not None else None
        inst = TaskInstance(node=node.name, key=key)
        self.report.instances.append(inst)
        with log_context(node=node.name, key=key):
            values = await asyncio.shield(values_fut)
            inst.advance(TaskState.READY)
            if self.abort.is_set():
                raise RunAborted(node.name, key)

            req = node.resources.to_runtime()
            await self.budget.acquire(req)
            if self.abort.is_set():
                self.budget.release(req)
                raise RunAborted(node.name, key)

            me = cast("asyncio.Task[Any]", asyncio.current_task())
            self.running.add(me)
            inst.advance(TaskState.RUNNING)
            inst.started_ms = self.clock.mono_ms()
            ctx = TaskContext(
                node=node.name,
                key=key,
                payload=token.payload if token is not None else None,
                values=values,
                work_dir=self.config.work_dir / node.name / safe_name(key or "_"),
                resources=req,
            )
            _log.debug("instance started", event="task.started")
            try:
                with span("annoflow.task", node=node.name, key=key, run_id=self.run_id):
                    out = await run_command(node.command, ctx, outputs=node.outputs, publish_dir=node.publish_dir)
            except asyncio.CancelledError:
                self._finish(inst, TaskState.FAILED, "cancelled")
                raise
            except Exception as e:
                self._finish(inst, TaskState.FAILED, str(e))
                self._fail(node.name, e)
                raise RunAborted(node.name, key) from e
            finally:
                self.budget.release(req)
                self.running.discard(me)

            produced = out.payload if isinstance(out.payload, tuple) else (out.payload,)
            inst.outputs = tuple(p for p in produced if isinstance(p, Path))
            self._finish(inst, TaskState.SUCCEEDED)
            if source is not None and token is not None:
                source.ack(token)
            if not node.emits_value:
                await self._emit(node.name, out)
            return out

    def _finish(self, inst: TaskInstance, state: TaskState, error: str | None = None) -> None:
        inst.advance(state)
        inst.finished_ms = self.clock.mono_ms()
        inst.error = error
        self.metrics.instances.labels(node=inst.node, state=state.value).inc()
        if inst.duration_ms is not None:
            self.metrics.duration.labels(node=inst.node).observe(inst.duration_ms / 1000.0)
        _log.info(
            "instance finished",
            event=f"task.{state.value}",
            duration_ms=inst.duration_ms,
            error=error,
        )


class _Recording:
    """Channel facade that records emitted tokens in the run report."""

    def __init__(self, run: _Run, name: str) -> None:
        self._run = run
        self._name = name

    async def put(self, token: Token) -> None:
        await self._run._emit(self._name, token)

    def close(self) -> None:
        self._run.queues[self._name].close()


__all__ = ["Engine", "RunReport"]
