"""
Local Worker Integration Tests.

Runs LocalWorker and local pools against tests/engine_stub.py, a small
engine that speaks the bridge protocol. Covers:
- Launch, convert and graceful stop
- Conversion errors reported by the engine
- Engines that die during startup, while idle or mid-conversion
- Deadlines on slow conversions
- A two-engine pool end to end
"""
from __future__ import annotations

import logging
import socket
import sys
import threading
import time
from pathlib import Path
from typing import List

import pytest

from docpool import ConversionTask, PoolConfig, PoolManager
from docpool.exceptions import TaskExecutionError, TaskTimeoutError, WorkerStartError
from docpool.models import LocalWorkerConfig, WorkerState
from docpool.process import HandleProcessLocator
from docpool.worker import LocalWorker, RestartPolicy
from tests.fakes import wait_for

pytestmark = pytest.mark.integration

STUB = Path(__file__).parent / "engine_stub.py"


# =============================================================================
# TEST HELPERS
# =============================================================================


def find_free_ports(count: int) -> List[int]:
    """Distinct free ports; the reserved sockets stay bound until all are picked."""
    holders = [socket.socket(socket.AF_INET, socket.SOCK_STREAM) for _ in range(count)]
    try:
        for holder in holders:
            holder.bind(("127.0.0.1", 0))
        return [holder.getsockname()[1] for holder in holders]
    finally:
        for holder in holders:
            holder.close()


def find_free_port() -> int:
    return find_free_ports(1)[0]


def stub_config(*flags: str, port: int = 0, **overrides) -> LocalWorkerConfig:
    values = dict(
        command=[sys.executable, str(STUB), *flags],
        port=port or find_free_port(),
        start_timeout=10.0,
        process_timeout=2.0,
        connect_retry_interval=0.05,
    )
    values.update(overrides)
    return LocalWorkerConfig(**values)


@pytest.fixture
def workers():
    """Tracks created workers and force-stops them after the test."""
    created: List[LocalWorker] = []

    def _make(config: LocalWorkerConfig) -> LocalWorker:
        worker = LocalWorker(
            config,
            locator=HandleProcessLocator(),
            policy=RestartPolicy(max_restart_attempts=1, restart_delay=0.0),
        )
        created.append(worker)
        return worker

    yield _make
    for worker in created:
        worker.stop(force=True)


@pytest.fixture
def source(tmp_path: Path) -> Path:
    path = tmp_path / "memo.docx"
    path.write_bytes(b"memo body")
    return path


# =============================================================================
# TEST CLASS: Lifecycle
# =============================================================================


class TestLocalLifecycle:
    def test_start_convert_and_stop(self, workers, source, tmp_path):
        worker = workers(stub_config())
        worker.start()
        assert worker.state is WorkerState.AVAILABLE
        assert worker.worker_id == f"local-{worker.config.port}"

        target = tmp_path / "memo.pdf"
        result = worker.run(ConversionTask(source, target), deadline=time.monotonic() + 10)

        assert Path(result).resolve() == target.resolve()
        assert target.read_bytes() == b"[pdf]memo body"

        supervisor = worker.supervisor
        process = supervisor._process
        worker.stop()
        assert worker.state is WorkerState.STOPPED
        assert not supervisor.is_running()
        assert process.returncode == 0

    def test_engine_error_fails_task_and_schedules_restart(self, workers, source, tmp_path):
        worker = workers(stub_config())
        worker.start()

        with pytest.raises(TaskExecutionError, match="unsupported format"):
            worker.run(ConversionTask(source, tmp_path / "out.bin", target_format="fail"))
        assert worker.state is WorkerState.RESTARTING

        assert worker.recover()
        result = worker.run(ConversionTask(source, tmp_path / "out.odt"))
        assert Path(result).read_bytes() == b"[odt]memo body"

    def test_engine_exiting_during_startup(self, workers, caplog):
        worker = workers(stub_config("--exit-code=3"))

        with caplog.at_level(logging.ERROR, logger="docpool.supervisor"):
            with pytest.raises(WorkerStartError, match="code 3"):
                worker.start()
            # The stderr pump may still be flushing the last line.
            assert wait_for(
                lambda: any("failing on purpose" in r.getMessage() for r in caplog.records)
            )
        assert worker.state is WorkerState.RESTARTING

    def test_slow_conversion_hits_deadline(self, workers, source, tmp_path):
        worker = workers(stub_config("--convert-delay=2", process_timeout=0.5))
        worker.start()

        started = time.monotonic()
        with pytest.raises(TaskTimeoutError):
            worker.run(
                ConversionTask(source, tmp_path / "out.pdf"),
                deadline=time.monotonic() + 0.3,
            )
        assert time.monotonic() - started < 1.5
        assert worker.state is WorkerState.RESTARTING

    def test_engine_crash_mid_conversion_is_a_task_failure(self, workers, source, tmp_path):
        worker = workers(stub_config("--convert-delay=5"))
        worker.start()
        errors = []

        def _run():
            try:
                worker.run(
                    ConversionTask(source, tmp_path / "out.pdf"),
                    deadline=time.monotonic() + 10,
                )
            except Exception as exc:
                errors.append(exc)

        runner = threading.Thread(target=_run)
        runner.start()
        assert wait_for(lambda: worker.state is WorkerState.BUSY)
        # Let the CONVERT request reach the engine before it dies.
        time.sleep(0.3)
        worker.supervisor._process.kill()
        runner.join(timeout=5)

        assert len(errors) == 1
        assert isinstance(errors[0], TaskExecutionError)
        assert "connection lost" in str(errors[0])
        assert worker.state is WorkerState.RESTARTING


# =============================================================================
# TEST CLASS: Health
# =============================================================================


class TestLocalHealth:
    def test_killed_engine_is_detected_and_replaced(self, workers, source, tmp_path):
        worker = workers(stub_config())
        worker.start()
        first_pid = worker.supervisor.pid

        worker.supervisor._process.kill()
        assert wait_for(lambda: not worker.supervisor.is_running())

        assert worker.check_health() is False
        assert worker.state is WorkerState.RESTARTING

        assert worker.recover()
        assert worker.supervisor.pid != first_pid
        assert worker.check_health() is True
        result = worker.run(ConversionTask(source, tmp_path / "after.pdf"))
        assert Path(result).exists()


# =============================================================================
# TEST CLASS: Local pool
# =============================================================================


class TestLocalPool:
    def test_two_engine_pool(self, source, tmp_path):
        ports = find_free_ports(2)
        pool = PoolManager.local(
            stub_config(),
            PoolConfig(restart_delay=0.0, startup_timeout=10, shutdown_timeout=5),
            ports=ports,
            locator=HandleProcessLocator(),
        )
        tasks = [ConversionTask(source, tmp_path / f"memo-{i}.txt") for i in range(6)]

        with pool:
            assert sorted(w.worker_id for w in pool.workers) == sorted(
                f"local-{port}" for port in ports
            )
            results = list(pool.map(tasks, timeout=20))
            stats = pool.stats()

        assert [Path(r).name for r in results] == [f"memo-{i}.txt" for i in range(6)]
        assert all(Path(r).read_bytes() == b"[txt]memo body" for r in results)
        assert stats.completed == 6
        assert stats.failed == 0
        assert all(not w.supervisor.is_running() for w in pool.workers)
