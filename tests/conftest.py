# conftest.py
from __future__ import annotations

import os
import uuid

import pytest

from annoflow.core.config import EngineConfig
from annoflow.core.logging import (
    bind_context,
    configure_from_env,
    enable_stdout_logging,
    get_logger,
    log_context,
)


def pytest_addoption(parser):
    parser.addoption(
        "--log-json",
        action="store_true",
        default=False,
        help="Emit annoflow logs in JSON format during tests",
    )


@pytest.fixture(scope="session", autouse=True)
def _configure_annoflow_logging(request):
    configure_from_env()
    prefer_json = request.config.getoption("--log-json")
    # unless explicitly enabled via env, turn stdout logging on (human readable by default)
    if os.getenv("ANNOFLOW_LOG_STDOUT", "").lower() not in ("1", "true", "yes", "on"):
        enable_stdout_logging(
            level="DEBUG",
            json_output=prefer_json,
            pretty=not prefer_json,
            route_errors_to_stderr=True,
        )
    bind_context(role="pytest")


@pytest.fixture(scope="session")
def session_run_id():
    return uuid.uuid4().hex[:8]


@pytest.fixture(autouse=True)
def _test_log_context(request, session_run_id):
    log = get_logger("test")
    with log_context(pytest_nodeid=request.node.nodeid, test=request.node.name, test_run=session_run_id):
        log.debug("pytest.test.start", event="pytest.test.start")
        yield


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    outcome = yield
    rep = outcome.get_result()
    if rep.when == "call":
        log = get_logger("test")
        with log_context(pytest_nodeid=item.nodeid, test=item.name):
            log.debug(
                "pytest.test.finish",
                event="pytest.test.finish",
                outcome=rep.outcome,
                duration=getattr(rep, "duration", None),
            )


@pytest.fixture(autouse=True)
def _clean_engine_env(monkeypatch):
    for name in ("ANNOFLOW_CPUS", "ANNOFLOW_MEMORY_MB", "ANNOFLOW_WORK_DIR"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def engine_cfg(tmp_path) -> EngineConfig:
    """Small, fast engine config rooted in the test's tmp dir."""
    return EngineConfig(cpus=4, memory_mb=4096, work_dir=tmp_path / "work", cancel_grace_sec=0.5)
