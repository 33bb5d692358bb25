from __future__ import annotations

"""
Running the annotation pipeline.

`run()` builds the graph from a PipelineConfig and executes it on an Engine.
`main()` is the process entry point: it prints one diagnostic line on
failure and maps errors to exit statuses (2: configuration or precondition
problem caught before anything ran, 1: run failure, 0: success).
"""

import argparse
import asyncio
import sys
from collections.abc import Sequence
from pathlib import Path

from opentelemetry.sdk.trace.export import ConsoleSpanExporter

from ..api.errors import AnnoflowError, ConfigurationError, PreconditionError
from ..core.config import EngineConfig
from ..core.logging import configure_from_env, enable_stdout_logging, get_logger
from ..observability.metrics import EngineMetrics
from ..observability.tracing import setup_tracing, trace
from ..runtime.engine import Engine, RunReport
from .config import PipelineConfig
from .graph import build_graph
from .tools import Toolbox

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

_log = get_logger("pipeline.run")


@trace("annoflow.pipeline")
async def run(
    cfg: PipelineConfig,
    engine_cfg: EngineConfig | None = None,
    toolbox: Toolbox | None = None,
    *,
    metrics: EngineMetrics | None = None,
) -> RunReport:
    spec = build_graph(cfg, toolbox)
    engine = Engine(engine_cfg, metrics=metrics)
    report = await engine.run(spec)
    published = [p for inst in report.instances_of("report") for p in inst.outputs]
    _log.info(
        "pipeline finished",
        event="pipeline.done",
        output_dir=str(cfg.output.dir),
        reports=[p.name for p in published],
    )
    return report


def exit_code(exc: BaseException) -> int:
    return EXIT_USAGE if isinstance(exc, (ConfigurationError, PreconditionError)) else EXIT_FAILED


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="annoflow", description="Run the sequence annotation pipeline.")
    p.add_argument("config", type=Path, help="pipeline config (JSON or YAML)")
    p.add_argument("--engine-config", type=Path, default=None, help="engine config (JSON)")
    p.add_argument("--cpus", type=int, default=None, help="override the CPU budget")
    p.add_argument("--memory-mb", type=int, default=None, help="override the memory budget")
    p.add_argument("--work-dir", type=Path, default=None, help="where chunks and task work dirs live")
    p.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="override a pipeline option, e.g. --set steps.nr.enable=true",
    )
    p.add_argument("--metrics-port", type=int, default=None, help="serve Prometheus metrics on this port")
    p.add_argument("--log-level", default=None, help="enable stdout logging at this level")
    p.add_argument("--log-json", action="store_true", help="log as JSON lines")
    p.add_argument("--trace", action="store_true", help="print OpenTelemetry spans to stderr when the run ends")
    return p.parse_args(argv)


def _coerce(value: str) -> object:
    low = value.strip().lower()
    if low in ("true", "yes", "on"):
        return True
    if low in ("false", "no", "off"):
        return False
    if "," in value:
        return [v.strip() for v in value.split(",") if v.strip()]
    return value


def _overrides(pairs: Sequence[str]) -> dict[str, object]:
    out: dict[str, object] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ConfigurationError(f"--set expects KEY=VALUE, got {pair!r}", key="--set")
        out[key.strip()] = _coerce(value)
    return out


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_from_env()
    if args.log_level:
        enable_stdout_logging(
            level=args.log_level, json_output=args.log_json, pretty=not args.log_json, route_errors_to_stderr=True
        )
    provider = setup_tracing(exporter=ConsoleSpanExporter(out=sys.stderr)) if args.trace else None

    try:
        cfg = PipelineConfig.load(args.config, overrides=_overrides(args.overrides))
        engine_overrides = {
            k: v
            for k, v in (("cpus", args.cpus), ("memory_mb", args.memory_mb), ("work_dir", args.work_dir))
            if v is not None
        }
        engine_cfg = EngineConfig.load(args.engine_config, overrides=engine_overrides)
        metrics = EngineMetrics()
        if args.metrics_port:
            metrics.serve(args.metrics_port)
        asyncio.run(run(cfg, engine_cfg, metrics=metrics))
    except AnnoflowError as e:
        print(e.diagnostic(), file=sys.stderr)
        return exit_code(e)
    except KeyboardInterrupt:
        print("[annoflow] interrupted", file=sys.stderr)
        return EXIT_FAILED
    finally:
        if provider is not None:
            provider.shutdown()
    return EXIT_OK


__all__ = ["EXIT_FAILED", "EXIT_OK", "EXIT_USAGE", "exit_code", "main", "run"]
