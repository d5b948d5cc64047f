from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Dict, List, Tuple

import pytest

import docpool.worker as worker_module
from docpool import telemetry
from docpool.exceptions import WorkerRestartExhaustedError, WorkerStartError
from docpool.worker import RestartPolicy
from tests.fakes import FakeWorker, ValueTask


class FakeLogfire:
    def __init__(self) -> None:
        self.configured: List[Dict[str, object]] = []
        self.spans: List[Tuple[str, Dict[str, object]]] = []
        self.events: List[Tuple[str, str]] = []

    def configure(self, **kwargs: object) -> None:
        self.configured.append(kwargs)

    @contextmanager
    def span(self, name: str, **attrs: object):
        self.spans.append((name, attrs))
        yield

    def info(self, message: str, **attrs: object) -> None:
        self.events.append(("info", message))

    def error(self, message: str, **attrs: object) -> None:
        self.events.append(("error", message))


@pytest.fixture
def fake_logfire(monkeypatch: pytest.MonkeyPatch) -> FakeLogfire:
    fake = FakeLogfire()
    monkeypatch.setattr(telemetry, "_logfire", fake)
    monkeypatch.setattr(telemetry, "_configured", False)
    monkeypatch.setenv("DOCPOOL_LOGFIRE", "1")
    monkeypatch.delenv("DOCPOOL_LOGFIRE_CONSOLE", raising=False)
    return fake


def test_disabled_without_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(telemetry, "_logfire", FakeLogfire())
    monkeypatch.delenv("DOCPOOL_LOGFIRE", raising=False)
    assert telemetry.enabled() is False
    with telemetry.span("noop"):
        pass


def test_disabled_without_package(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(telemetry, "_logfire", False)
    monkeypatch.setenv("DOCPOOL_LOGFIRE", "true")
    assert telemetry.enabled() is False
    assert telemetry.configure() is False


def test_task_execution_is_wrapped_in_span(fake_logfire: FakeLogfire) -> None:
    worker = FakeWorker("w1")
    worker.start()
    worker.run(ValueTask(1))

    assert fake_logfire.configured == [{"console": False}]
    assert fake_logfire.spans == [("docpool.task", {"worker_id": "w1", "task": "ValueTask"})]


def test_span_propagates_exceptions(fake_logfire: FakeLogfire) -> None:
    with pytest.raises(KeyError):
        with telemetry.span("failing"):
            raise KeyError("x")
    assert fake_logfire.spans == [("failing", {})]


def test_log_always_reaches_stdlib(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    monkeypatch.delenv("DOCPOOL_LOGFIRE", raising=False)
    with caplog.at_level(logging.WARNING, logger="docpool.telemetry"):
        telemetry.log("warn", "Worker degraded", worker_id="w9")
    assert "Worker degraded" in caplog.text
    assert "w9" in caplog.text


def test_log_forwards_to_logfire(fake_logfire: FakeLogfire) -> None:
    telemetry.log("error", "Worker permanently failed", worker_id="w1")
    assert fake_logfire.events == [("error", "Worker permanently failed")]


def test_worker_restarts_are_reported(monkeypatch: pytest.MonkeyPatch) -> None:
    logged: List[Tuple[str, str, Dict[str, object]]] = []

    def fake_log(level: str, event: str, **kwargs: object) -> None:
        logged.append((level, event, kwargs))

    monkeypatch.setattr(worker_module.telemetry, "log", fake_log)

    worker = FakeWorker("w1", start_failures=-1)
    worker.policy = RestartPolicy(max_restart_attempts=1, restart_delay=0.0)
    with pytest.raises(WorkerStartError):
        worker.start()
    with pytest.raises(WorkerRestartExhaustedError):
        worker.recover()

    assert ("info", "Restarting worker", {"worker_id": "w1"}) in logged
    assert ("error", "Worker permanently failed", {"worker_id": "w1", "attempts": 2}) in logged
