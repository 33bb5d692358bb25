from __future__ import annotations

"""
annoflow.core.logging
=====================

Structured logging for the engine and the pipeline, on top of stdlib `logging`.

* `get_logger(name)` returns an adapter under the `annoflow` tree that takes
  arbitrary keyword fields: `log.info("task finished", event="task.finished", state="SUCCEEDED")`.
* A contextvars-backed log context (`run_id`, `node`, `key`) is attached to
  every record; each asyncio task sees its own copy.
* Two formatters: one JSON object per line, or a compact human line.

Nothing is printed until `enable_stdout_logging()` or `configure_from_env()`
is called; the tree only carries a NullHandler.
"""

import contextvars
import json
import logging
import os
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, Final

__all__ = [
    "bind_context",
    "configure_from_env",
    "disable_stdout_logging",
    "enable_stdout_logging",
    "get_logger",
    "log_context",
    "set_level",
    "warn_once",
]

ROOT: Final[str] = "annoflow"
_HANDLER_NAMES: Final[tuple[str, str]] = ("annoflow.stdout", "annoflow.stderr")

# ---------- Context ----------

_ctx_var: contextvars.ContextVar[Mapping[str, Any]] = contextvars.ContextVar("annoflow_log_ctx", default={})


def _merged(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {**_ctx_var.get(), **{k: v for k, v in fields.items() if v is not None}}


def bind_context(**fields: Any) -> None:
    """Add fields to the log context of the current task (None values are ignored)."""
    _ctx_var.set(_merged(fields))


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Scope fields to a block; the previous context comes back on exit."""
    token = _ctx_var.set(_merged(fields))
    try:
        yield
    finally:
        _ctx_var.reset(token)


# ---------- Formatters ----------

# Attributes every LogRecord carries; anything else on a record came in through `extra`.
_RECORD_ATTRS: Final[frozenset[str]] = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

_HUMAN_CTX: Final[tuple[str, ...]] = ("run_id", "node", "key")
_HUMAN_FIELDS: Final[tuple[str, ...]] = ("state", "duration_ms", "error")


def _fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}


def _exc_info(record: logging.LogRecord):
    info = record.exc_info
    if isinstance(info, BaseException):
        return type(info), info, info.__traceback__
    if info is True:
        return sys.exc_info()
    return info or None


class JsonFormatter(logging.Formatter):
    """One JSON object per line; context first, then the record's own fields."""

    def __init__(self, *, include_stack: bool = False) -> None:
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds")
        doc: dict[str, Any] = {"ts": ts.replace("+00:00", "Z"), "level": record.levelname, "logger": record.name}
        if message := record.getMessage():
            doc["message"] = message
        doc.update(_ctx_var.get())
        for k, v in _fields(record).items():
            doc.setdefault(k, v)

        exc = _exc_info(record)
        if exc and exc[0] is not None:
            doc["error"] = {"type": exc[0].__name__, "message": str(exc[1])}
            if self.include_stack:
                doc["error"]["stack"] = self.formatException(exc)
        return json.dumps(doc, ensure_ascii=False, separators=(",", ":"), default=str)


class HumanFormatter(logging.Formatter):
    """`time LEVEL logger: message <event> [run_id=.., node=.., key=..] state=..`"""

    default_time_format = "%Y-%m-%d %H:%M:%S"
    default_msec_format = "%s.%03d"

    def format(self, record: logging.LogRecord) -> str:
        parts = [f"{self.formatTime(record)} {record.levelname:<5} {record.name}: {record.getMessage()}"]
        fields = _fields(record)
        if fields.get("event"):
            parts.append(f"<{fields['event']}>")
        ctx = _ctx_var.get()
        scoped = [f"{k}={ctx[k]}" for k in _HUMAN_CTX if ctx.get(k) is not None]
        if scoped:
            parts.append("[" + ", ".join(scoped) + "]")
        parts.extend(f"{k}={fields[k]}" for k in _HUMAN_FIELDS if fields.get(k) is not None)

        line = " ".join(parts)
        exc = _exc_info(record)
        if exc:
            line += "\n" + self.formatException(exc)
        return line


# ---------- Filters / adapter ----------


class ContextFilter(logging.Filter):
    """Copy the log context onto records so foreign handlers see it too."""

    def filter(self, record: logging.LogRecord) -> bool:
        for k, v in _ctx_var.get().items():
            record.__dict__.setdefault(k, v)
        return True


class _BelowLevel(logging.Filter):
    def __init__(self, level: int) -> None:
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.level


class _KwExtraAdapter(logging.LoggerAdapter):
    """Turns unknown keyword arguments into `extra` fields (prefixed when they clash with LogRecord)."""

    _PASSTHROUGH: Final[frozenset[str]] = frozenset({"exc_info", "stack_info", "stacklevel", "extra"})

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        for k in [k for k in kwargs if k not in self._PASSTHROUGH]:
            extra.setdefault(f"field_{k}" if k in _RECORD_ATTRS else k, kwargs.pop(k))
        kwargs["extra"] = extra
        return msg, kwargs


_warned: set[str] = set()
_warned_lock = threading.Lock()


def warn_once(
    logger: logging.Logger | logging.LoggerAdapter,
    code: str,
    msg: str,
    *,
    level: int = logging.WARNING,
    **extra: Any,
) -> None:
    """Log `msg` the first time `code` is seen in this process; later calls are no-ops."""
    with _warned_lock:
        if code in _warned:
            return
        _warned.add(code)
    if not isinstance(logger, logging.LoggerAdapter):
        logger = _KwExtraAdapter(logger, {})
    logger.log(level, msg, code=code, **extra)


# ---------- Public configuration API ----------


def _root() -> logging.Logger:
    lg = logging.getLogger(ROOT)
    if not any(isinstance(h, logging.NullHandler) for h in lg.handlers):
        lg.addHandler(logging.NullHandler())
        lg.setLevel(logging.INFO)
    if not any(isinstance(f, ContextFilter) for f in lg.filters):
        lg.addFilter(ContextFilter())
    return lg


def get_logger(name: str | None = None) -> logging.LoggerAdapter:
    """Adapter for `annoflow.<name>` (or the root of the tree) taking keyword fields."""
    base = _root()
    return _KwExtraAdapter(base.getChild(name) if name else base, {})


def _level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Invalid level name: {level!r}")
    return resolved


def set_level(level: int | str) -> None:
    """Level of the whole `annoflow` tree."""
    _root().setLevel(_level(level))


def enable_stdout_logging(
    *,
    level: int | str = logging.INFO,
    json_output: bool = True,
    include_stack: bool = False,
    pretty: bool = False,
    route_errors_to_stderr: bool = False,
) -> None:
    """
    Attach a stream handler to the tree, replacing one installed earlier.

    `pretty` selects HumanFormatter and wins over `json_output`; with neither the
    plain stdlib format is used. `route_errors_to_stderr` sends ERROR and above
    to stderr and keeps the rest on stdout.
    """
    lvl = _level(level)
    lg = _root()
    lg.setLevel(lvl)
    disable_stdout_logging()

    if pretty:
        fmt: logging.Formatter = HumanFormatter()
    elif json_output:
        fmt = JsonFormatter(include_stack=include_stack)
    else:
        fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    targets = [(_HANDLER_NAMES[0], sys.stdout, lvl)]
    if route_errors_to_stderr:
        targets.append((_HANDLER_NAMES[1], sys.stderr, max(lvl, logging.ERROR)))
    for name, stream, handler_level in targets:
        handler = logging.StreamHandler(stream)
        handler.set_name(name)
        handler.setLevel(handler_level)
        handler.setFormatter(fmt)
        if route_errors_to_stderr and stream is sys.stdout:
            handler.addFilter(_BelowLevel(logging.ERROR))
        lg.addHandler(handler)


def disable_stdout_logging() -> None:
    """Remove the handlers installed by `enable_stdout_logging`."""
    lg = logging.getLogger(ROOT)
    for handler in [h for h in lg.handlers if h.get_name() in _HANDLER_NAMES]:
        lg.removeHandler(handler)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


def configure_from_env() -> None:
    """
    Entry-point helper driven by environment variables:

      ANNOFLOW_LOG_STDOUT  enable the stream handler
      ANNOFLOW_LOG_LEVEL   DEBUG / INFO / WARNING / ...
      ANNOFLOW_LOG_PRETTY  human lines instead of JSON
      ANNOFLOW_LOG_STACK   stack traces in JSON error fields
    """
    level = os.getenv("ANNOFLOW_LOG_LEVEL", "INFO")
    set_level(level)
    if not _env_flag("ANNOFLOW_LOG_STDOUT"):
        disable_stdout_logging()
        return
    pretty = _env_flag("ANNOFLOW_LOG_PRETTY")
    enable_stdout_logging(level=level, json_output=not pretty, include_stack=_env_flag("ANNOFLOW_LOG_STACK"), pretty=pretty)


_root()
