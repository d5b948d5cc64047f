"""
Worker state machine tests, driven through an in-memory backend.
"""
from __future__ import annotations

import threading
import time

import pytest

from docpool.exceptions import (
    BridgeError,
    StartupError,
    TaskExecutionError,
    TaskTimeoutError,
    WorkerRestartExhaustedError,
    WorkerStartError,
    WorkerUnavailableError,
)
from docpool.models import PoolConfig, WorkerState
from docpool.worker import RestartPolicy
from tests.fakes import BlockingTask, FailingTask, FakeWorker, ValueTask, wait_for


def started_worker(**kwargs) -> FakeWorker:
    worker = FakeWorker("w1", **kwargs)
    worker.policy = RestartPolicy(max_restart_attempts=2, restart_delay=0.0)
    worker.start()
    return worker


class TestStart:
    def test_start_makes_worker_available(self):
        worker = started_worker()
        assert worker.state is WorkerState.AVAILABLE
        assert worker.backend_up

    def test_start_is_idempotent(self):
        worker = started_worker()
        worker.start()
        assert worker.start_calls == 1

    def test_failed_start_leaves_worker_restarting(self):
        worker = FakeWorker("w1", start_failures=1)
        with pytest.raises(WorkerStartError) as exc_info:
            worker.start()
        assert isinstance(exc_info.value, StartupError)
        assert exc_info.value.worker_id == "w1"
        assert worker.state is WorkerState.RESTARTING
        assert worker.failed_starts == 1

    def test_stop_during_start_tears_backend_down(self):
        worker = FakeWorker("w1", start_delay=0.2)
        errors = []

        def _start():
            try:
                worker.start()
            except Exception as exc:
                errors.append(exc)

        starter = threading.Thread(target=_start)
        starter.start()
        assert wait_for(lambda: worker.state is WorkerState.STARTING)
        worker.stop()
        starter.join(timeout=2)

        assert errors == []
        assert worker.state is WorkerState.STOPPED
        assert not worker.backend_up


class TestRun:
    def test_run_returns_task_result(self):
        worker = started_worker()
        deadline = time.monotonic() + 5
        assert worker.run(ValueTask("done"), deadline=deadline) == "done"
        assert worker.state is WorkerState.AVAILABLE
        assert worker.task_count == 1
        assert worker.contexts[-1].deadline == deadline

    def test_context_is_reused_between_tasks(self):
        worker = started_worker()
        worker.run(ValueTask(1))
        worker.run(ValueTask(2))
        assert len(worker.contexts) == 1

    def test_unusable_context_is_replaced(self):
        worker = started_worker()
        worker.run(ValueTask(1))
        worker.contexts[-1].usable = False
        worker.run(ValueTask(2))
        assert len(worker.contexts) == 2

    def test_run_on_stopped_worker_is_refused(self):
        worker = FakeWorker("w1")
        task = ValueTask(1)
        with pytest.raises(WorkerUnavailableError):
            worker.run(task)
        assert task.runs == 0

    def test_run_with_dead_backend_is_refused_before_execution(self):
        worker = started_worker()
        worker.backend_up = False
        task = ValueTask(1)
        with pytest.raises(WorkerUnavailableError):
            worker.run(task)
        assert task.runs == 0
        assert worker.state is WorkerState.RESTARTING

    def test_reserved_worker_runs_and_release_undoes_reservation(self):
        worker = started_worker()
        assert worker.reserve()
        assert worker.state is WorkerState.BUSY
        assert not worker.reserve()
        worker.release()
        assert worker.state is WorkerState.AVAILABLE

        assert worker.reserve()
        assert worker.run(ValueTask("x")) == "x"
        assert worker.state is WorkerState.AVAILABLE

    def test_busy_worker_without_reservation_is_refused(self):
        worker = started_worker()
        blocker = BlockingTask()
        runner = threading.Thread(target=worker.run, args=(blocker,))
        runner.start()
        assert blocker.started.wait(2)

        with pytest.raises(WorkerUnavailableError):
            worker.run(ValueTask(1))
        blocker.release.set()
        runner.join(timeout=2)

    @pytest.mark.parametrize(
        "error, expected",
        [
            (ValueError("bad input"), TaskExecutionError),
            (TimeoutError("slow"), TaskTimeoutError),
            (TaskTimeoutError("already typed"), TaskTimeoutError),
            (WorkerUnavailableError("raised by the task"), TaskExecutionError),
            (BridgeError("engine closed the connection"), TaskExecutionError),
        ],
    )
    def test_failures_are_normalised(self, error, expected):
        worker = started_worker()
        with pytest.raises(expected):
            worker.run(FailingTask(error))
        assert worker.state is WorkerState.RESTARTING
        assert worker.stats.failed == 1

    def test_docpool_errors_pass_through_unchanged(self):
        worker = started_worker()
        error = TaskExecutionError("engine said no", status_code=422)
        with pytest.raises(TaskExecutionError) as exc_info:
            worker.run(FailingTask(error))
        assert exc_info.value is error

    def test_task_limit_schedules_restart(self):
        worker = started_worker()
        worker.policy = RestartPolicy(max_tasks=2, restart_delay=0.0)
        worker.run(ValueTask(1))
        assert worker.state is WorkerState.AVAILABLE
        worker.run(ValueTask(2))
        assert worker.state is WorkerState.RESTARTING

        assert worker.recover()
        assert worker.task_count == 0
        assert worker.start_calls == 2
        # A healthy backend at its task limit is shut down, not killed.
        assert worker.stop_calls == [False]


class TestRecovery:
    def test_recover_restarts_backend(self):
        worker = started_worker()
        with pytest.raises(TaskExecutionError):
            worker.run(FailingTask())

        assert worker.recover()
        assert worker.state is WorkerState.AVAILABLE
        assert worker.stop_calls == [True]
        assert worker.stats.restarts == 1

    def test_recover_on_available_worker_is_noop(self):
        worker = started_worker()
        assert worker.recover()
        assert worker.start_calls == 1

    def test_successful_restart_resets_failed_starts(self):
        worker = FakeWorker("w1", start_failures=2)
        worker.policy = RestartPolicy(max_restart_attempts=3, restart_delay=0.0)
        with pytest.raises(WorkerStartError):
            worker.start()

        assert worker.recover()
        assert worker.failed_starts == 0
        assert worker.start_calls == 3

    def test_restart_exhaustion_marks_worker_failed(self):
        worker = FakeWorker("w1", start_failures=-1)
        worker.policy = RestartPolicy(max_restart_attempts=2, restart_delay=0.0)
        with pytest.raises(WorkerStartError):
            worker.start()

        with pytest.raises(WorkerRestartExhaustedError) as exc_info:
            worker.recover()
        assert exc_info.value.attempts == 3
        assert worker.state is WorkerState.FAILED
        assert worker.start_calls == 3

        with pytest.raises(WorkerRestartExhaustedError):
            worker.start()
        assert not worker.reserve()

    def test_restart_attempts_are_spaced(self):
        worker = FakeWorker("w1", start_failures=3)
        worker.policy = RestartPolicy(max_restart_attempts=5, restart_delay=0.05)
        with pytest.raises(WorkerStartError):
            worker.start()

        started = time.monotonic()
        assert worker.recover()
        assert time.monotonic() - started >= 0.1

    def test_aborted_execution_does_not_touch_restarted_worker(self):
        worker = started_worker()
        hung = BlockingTask("late")
        results = []
        runner = threading.Thread(target=lambda: results.append(worker.run(hung)))
        runner.start()
        assert hung.started.wait(2)

        worker.abort()
        assert worker.state is WorkerState.RESTARTING
        assert worker.recover()

        hung.release.set()
        runner.join(timeout=2)
        assert results == ["late"]
        assert worker.state is WorkerState.AVAILABLE
        assert worker.task_count == 0

    def test_policy_from_pool_config(self):
        policy = RestartPolicy.from_pool_config(
            PoolConfig(max_restart_attempts=1, restart_delay=2.0, max_tasks_per_worker=None)
        )
        assert policy == RestartPolicy(max_restart_attempts=1, restart_delay=2.0, max_tasks=None)


class TestHealthAndStop:
    def test_dead_idle_worker_goes_to_restarting(self):
        worker = started_worker()
        worker.healthy = False
        assert worker.check_health() is False
        assert worker.state is WorkerState.RESTARTING

    def test_health_check_skips_busy_worker(self):
        worker = started_worker()
        worker.healthy = False
        assert worker.reserve()
        assert worker.check_health() is True
        assert worker.state is WorkerState.BUSY

    def test_stop_from_any_state(self):
        worker = started_worker()
        worker.abort()
        worker.stop()
        assert worker.state is WorkerState.STOPPED
        assert worker.stop_calls == [False]

    def test_snapshot(self):
        worker = started_worker()
        worker.run(ValueTask(1))
        snap = worker.snapshot()
        assert snap.worker_id == "w1"
        assert snap.state is WorkerState.AVAILABLE
        assert snap.task_count == 1
        assert snap.stats.completed == 1
        assert snap.stats.avg_duration >= 0.0
