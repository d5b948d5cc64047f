"""
Pool manager: a fixed set of workers behind a bounded FIFO queue.

Architecture:
    submit() -> queue (bounded, FIFO) -> first AVAILABLE worker -> Future

    One lock guards the queue, the in-flight table and the pool state; a
    Condition on that lock wakes blocked submitters, start() and the watchdog.
    Each assignment runs on its own daemon thread so a hung execution never
    holds another worker's slot. A single watchdog thread enforces task
    deadlines, expires tasks that waited longer than queue_timeout and
    health-checks idle workers. Recoveries run on their own threads.

Usage:
    from docpool import ConversionTask, LocalWorkerConfig, PoolConfig, PoolManager

    pool = PoolManager.local(
        LocalWorkerConfig(command=["soffice", "--headless"]),
        PoolConfig(pool_size=2, task_timeout=60),
    )
    with pool:
        future = pool.submit(ConversionTask("in.docx", "out.pdf"))
        future.result()

Guarantees:
    - A task is assigned to at most one worker, and runs at most once
    - Every future resolves exactly once (result, error or timeout)
    - Worker crashes, timeouts and start failures never escape the pool
    - Futures are completed outside the pool lock

Lock order: pool lock -> worker lock. Worker backend operations are never
performed while holding the pool lock.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import asdict, dataclass, field
from typing import Any, Deque, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from docpool.config import Settings, get_settings
from docpool.exceptions import (
    ConfigError,
    NoWorkersAvailableError,
    RejectedError,
    StartupError,
    TaskCancelledError,
    TaskTimeoutError,
    WorkerRestartExhaustedError,
    WorkerUnavailableError,
)
from docpool.models import (
    LocalWorkerConfig,
    PoolConfig,
    PoolState,
    RemoteWorkerConfig,
    WorkerState,
)
from docpool.process import ProcessLocator
from docpool.task import Task
from docpool.worker import (
    LocalWorker,
    RemoteWorker,
    RestartPolicy,
    Worker,
    WorkerSnapshot,
)

logger = logging.getLogger(__name__)

# Upper bound on a single watchdog sleep, so a lost wake-up costs little.
_WATCHDOG_MAX_WAIT = 1.0

_Outcome = Tuple[Future, Optional[BaseException], Any]


@dataclass
class QueuedTask:
    task: Task
    future: Future
    enqueued_at: float
    sequence: int


@dataclass
class Assignment:
    """A task running on a worker, with its absolute deadline."""

    worker: Worker
    queued: QueuedTask
    deadline: float
    started_at: float


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time snapshot of the pool."""

    state: PoolState
    queued: int
    in_flight: int
    submitted: int
    completed: int
    failed: int
    timed_out: int
    rejected: int
    workers: List[WorkerSnapshot] = field(default_factory=list)

    @property
    def available_workers(self) -> int:
        return sum(1 for w in self.workers if w.state is WorkerState.AVAILABLE)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["workers"] = [
            {**asdict(w), "state": w.state.value} for w in self.workers
        ]
        return data


def _settle(outcomes: Iterable[_Outcome]) -> None:
    """Complete futures. Must be called without the pool lock held."""
    for future, error, result in outcomes:
        if future.done():
            continue
        try:
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)
        except Exception:
            # Cancelled between the check and the call.
            logger.debug("Future already resolved, dropping outcome")


class PoolManager:
    """
    Fixed-size worker pool with a bounded FIFO queue.

    Lifecycle: CREATED -> start() -> RUNNING -> stop() -> STOPPING -> STOPPED.
    A stopped pool cannot be restarted.
    """

    def __init__(
        self,
        workers: Sequence[Worker],
        config: Optional[PoolConfig] = None,
    ) -> None:
        if not workers:
            raise ConfigError("A pool needs at least one worker")
        ids = [w.worker_id for w in workers]
        if len(set(ids)) != len(ids):
            raise ConfigError("Worker ids must be unique", details={"worker_ids": ids})

        self.config = config or PoolConfig()
        policy = RestartPolicy.from_pool_config(self.config)
        for worker in workers:
            worker.policy = policy

        self._workers: List[Worker] = list(workers)
        self._queue: Deque[QueuedTask] = deque()
        self._in_flight: Dict[str, Assignment] = {}
        self._recovering: Set[str] = set()
        self._state = PoolState.CREATED
        self._starting = False
        self._sequence = itertools.count()

        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        # Serialises start() and stop().
        self._lifecycle_lock = threading.Lock()
        self._watchdog: Optional[threading.Thread] = None

        self._submitted = 0
        self._completed = 0
        self._failed = 0
        self._timed_out = 0
        self._rejected = 0

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def local(
        cls,
        config: LocalWorkerConfig,
        pool_config: Optional[PoolConfig] = None,
        *,
        ports: Optional[Sequence[int]] = None,
        locator: Optional[ProcessLocator] = None,
    ) -> "PoolManager":
        """
        Pool of supervised engine processes, one per port.

        Ports default to config.port, config.port + 1, ... for pool_size
        workers. An explicit port list sets the pool size.
        """
        pool_config = pool_config or PoolConfig()
        if ports is None:
            ports = [config.port + i for i in range(pool_config.pool_size)]
        workers = [
            LocalWorker(
                config.model_copy(update={"port": port}),
                worker_id=f"local-{port}",
                locator=locator,
            )
            for port in ports
        ]
        return cls(workers, pool_config)

    @classmethod
    def remote(
        cls,
        config: RemoteWorkerConfig,
        pool_config: Optional[PoolConfig] = None,
    ) -> "PoolManager":
        """Pool of pool_size workers sharing one remote endpoint."""
        pool_config = pool_config or PoolConfig()
        workers = [
            RemoteWorker(config, worker_id=f"remote-{i + 1}")
            for i in range(pool_config.pool_size)
        ]
        return cls(workers, pool_config)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PoolManager":
        """Build a pool from DOCPOOL_* environment settings."""
        settings = settings or get_settings()
        pool_config = settings.pool_config()

        remote = settings.remote_config()
        if remote is not None:
            return cls.remote(remote, pool_config)

        local = settings.local_config()
        if local is not None:
            return cls.local(local, pool_config, ports=settings.engine_ports or None)

        raise ConfigError(
            "Set DOCPOOL_REMOTE_URL or DOCPOOL_ENGINE_COMMAND to configure workers"
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> PoolState:
        with self._lock:
            return self._state

    @property
    def workers(self) -> Tuple[Worker, ...]:
        return tuple(self._workers)

    def stats(self) -> PoolStats:
        with self._lock:
            return PoolStats(
                state=self._state,
                queued=len(self._queue),
                in_flight=len(self._in_flight),
                submitted=self._submitted,
                completed=self._completed,
                failed=self._failed,
                timed_out=self._timed_out,
                rejected=self._rejected,
                workers=[w.snapshot() for w in self._workers],
            )

    def __repr__(self) -> str:
        return f"PoolManager(workers={len(self._workers)}, state={self._state.value})"

    def __enter__(self) -> "PoolManager":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Start every worker in parallel and wait for the first to be AVAILABLE.

        Workers that fail their first start keep recovering in the
        background.

        Raises:
            StartupError: No worker became AVAILABLE within startup_timeout,
                or the pool was already stopped
        """
        with self._lifecycle_lock:
            with self._lock:
                if self._state is PoolState.RUNNING:
                    return
                if self._state is not PoolState.CREATED:
                    raise StartupError(
                        f"Pool is {self._state.value} and cannot be started again"
                    )
                self._starting = True

            logger.info("Starting pool with %d worker(s)", len(self._workers))
            for worker in self._workers:
                threading.Thread(
                    target=self._start_worker,
                    args=(worker,),
                    name=f"docpool-start-{worker.worker_id}",
                    daemon=True,
                ).start()

            timeout = self.config.startup_timeout
            with self._lock:
                deadline = time.monotonic() + timeout
                while not self._any_available_locked():
                    remaining = deadline - time.monotonic()
                    if remaining <= 0 or self._all_failed_locked():
                        break
                    self._changed.wait(remaining)

                started = self._any_available_locked()
                self._starting = False
                self._state = PoolState.RUNNING if started else PoolState.STOPPED
                if started:
                    self._watchdog = threading.Thread(
                        target=self._watchdog_loop, name="docpool-watchdog", daemon=True
                    )
                    self._watchdog.start()
                self._changed.notify_all()

            if not started:
                logger.error("No worker became available within %.1fs", timeout)
                self._stop_workers(self._workers, force=True)
                raise StartupError(
                    f"No worker became available within {timeout}s",
                    details={"startup_timeout": timeout},
                )
            logger.info("Pool started")

    def stop(self) -> None:
        """
        Shut the pool down. Idempotent.

        Queued tasks are rejected, in-flight tasks get shutdown_timeout to
        finish and are cancelled afterwards, then every worker is stopped.
        """
        with self._lifecycle_lock:
            with self._lock:
                if self._state is PoolState.STOPPED:
                    return
                if self._state is PoolState.CREATED:
                    self._state = PoolState.STOPPED
                    return
                self._state = PoolState.STOPPING
                rejected = self._drain_queue_locked(
                    lambda: RejectedError("Pool is shutting down")
                )
                self._changed.notify_all()

            logger.info("Stopping pool (%d queued task(s) rejected)", len(rejected))
            _settle(rejected)

            shutdown_timeout = self.config.shutdown_timeout
            with self._lock:
                deadline = time.monotonic() + shutdown_timeout
                while self._in_flight:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    self._changed.wait(remaining)
                leftovers = list(self._in_flight.values())
                self._in_flight.clear()
                self._failed += len(leftovers)

            if leftovers:
                logger.warning(
                    "Cancelling %d task(s) still running after %.1fs",
                    len(leftovers),
                    shutdown_timeout,
                )
            for assignment in leftovers:
                assignment.worker.abort()
            _settle(
                (
                    a.queued.future,
                    TaskCancelledError(
                        "Pool stopped before the task finished",
                        details={"worker_id": a.worker.worker_id},
                    ),
                    None,
                )
                for a in leftovers
            )

            self._stop_workers(self._workers, force=bool(leftovers))

            with self._lock:
                self._state = PoolState.STOPPED
                self._changed.notify_all()
            if self._watchdog is not None:
                self._watchdog.join(timeout=_WATCHDOG_MAX_WAIT * 5)
                self._watchdog = None
            logger.info("Pool stopped")

    def _start_worker(self, worker: Worker) -> None:
        try:
            worker.start()
        except WorkerRestartExhaustedError:
            logger.error("Worker %s is permanently failed", worker.worker_id)
        except Exception as exc:
            logger.warning("Worker %s failed to start: %s", worker.worker_id, exc)
            with self._lock:
                self._start_recovery_locked(worker)
        with self._lock:
            self._changed.notify_all()

    def _stop_workers(self, workers: Sequence[Worker], force: bool) -> None:
        threads = [
            threading.Thread(
                target=self._stop_worker,
                args=(worker, force),
                name=f"docpool-stop-{worker.worker_id}",
                daemon=True,
            )
            for worker in workers
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def _stop_worker(self, worker: Worker, force: bool) -> None:
        try:
            worker.stop(force=force)
        except Exception:
            logger.exception("Error stopping worker %s", worker.worker_id)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, task: Task) -> "Future[Any]":
        """
        Queue a task and return its future.

        Blocks up to queue_timeout while the queue is full.

        Raises:
            RejectedError: Pool not running, or the queue stayed full
            NoWorkersAvailableError: Every worker is permanently failed
        """
        with self._lock:
            self._check_accepting_locked()
            if len(self._queue) >= self.config.queue_capacity:
                deadline = time.monotonic() + self.config.queue_timeout
                while len(self._queue) >= self.config.queue_capacity:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        self._rejected += 1
                        raise RejectedError(
                            f"Queue full ({self.config.queue_capacity} tasks) "
                            f"for {self.config.queue_timeout}s",
                            details={"queue_capacity": self.config.queue_capacity},
                        )
                    self._changed.wait(remaining)
                    self._check_accepting_locked()

            future: Future = Future()
            queued = QueuedTask(
                task=task,
                future=future,
                enqueued_at=time.monotonic(),
                sequence=next(self._sequence),
            )
            self._queue.append(queued)
            self._submitted += 1
            self._dispatch_locked()
            self._changed.notify_all()

        future.add_done_callback(lambda f: self._forget_if_cancelled(queued))
        return future

    def execute(self, task: Task, timeout: Optional[float] = None) -> Any:
        """
        Submit a task and wait for its result.

        Raises:
            TaskTimeoutError: No result within timeout (the task keeps its
                own deadline in the pool)
            Any error the task's future resolves with
        """
        future = self.submit(task)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            raise TaskTimeoutError(
                f"No result within {timeout}s", timeout=timeout
            )

    def map(self, tasks: Iterable[Task], timeout: Optional[float] = None) -> Iterator[Any]:
        """Submit every task up front, then yield results in submission order."""
        futures = [self.submit(task) for task in tasks]
        deadline = None if timeout is None else time.monotonic() + timeout

        def results() -> Iterator[Any]:
            for future in futures:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                try:
                    yield future.result(timeout=remaining)
                except FutureTimeoutError:
                    raise TaskTimeoutError(f"No result within {timeout}s", timeout=timeout)

        return results()

    def _check_accepting_locked(self) -> None:
        if self._state is not PoolState.RUNNING:
            self._rejected += 1
            raise RejectedError(
                f"Pool is {self._state.value}", details={"state": self._state.value}
            )
        if self._all_failed_locked():
            self._rejected += 1
            raise NoWorkersAvailableError("All workers are permanently failed")

    def _forget_if_cancelled(self, queued: QueuedTask) -> None:
        if not queued.future.cancelled():
            return
        with self._lock:
            try:
                self._queue.remove(queued)
            except ValueError:
                return
            self._changed.notify_all()

    # ------------------------------------------------------------------
    # Dispatch (pool lock held)
    # ------------------------------------------------------------------

    def _any_available_locked(self) -> bool:
        return any(w.state is WorkerState.AVAILABLE for w in self._workers)

    def _all_failed_locked(self) -> bool:
        return all(w.state is WorkerState.FAILED for w in self._workers)

    def _dispatch_locked(self) -> None:
        """Match the oldest queued tasks to AVAILABLE workers, in pool order."""
        if self._state is not PoolState.RUNNING:
            return
        while self._queue:
            head = self._queue[0]
            if head.future.cancelled():
                self._queue.popleft()
                continue
            # A worker whose last outcome is not recorded yet stays out of dispatch,
            # even if run() already made it AVAILABLE again.
            worker = next(
                (
                    w
                    for w in self._workers
                    if w.worker_id not in self._in_flight and w.reserve()
                ),
                None,
            )
            if worker is None:
                return
            self._queue.popleft()
            # A re-queued task is already RUNNING and cannot be cancelled.
            if not (head.future.running() or head.future.set_running_or_notify_cancel()):
                worker.release()
                continue

            now = time.monotonic()
            assignment = Assignment(
                worker=worker,
                queued=head,
                deadline=now + self.config.task_timeout,
                started_at=now,
            )
            self._in_flight[worker.worker_id] = assignment
            logger.debug("Task #%d assigned to %s", head.sequence, worker.worker_id)
            threading.Thread(
                target=self._run_assignment,
                args=(assignment,),
                name=f"docpool-task-{head.sequence}",
                daemon=True,
            ).start()
            self._changed.notify_all()

    def _drain_queue_locked(self, make_error) -> List[_Outcome]:
        outcomes = [(q.future, make_error(), None) for q in self._queue]
        self._rejected += len(outcomes)
        self._queue.clear()
        return outcomes

    def _start_recovery_locked(self, worker: Worker) -> None:
        if not (self._state is PoolState.RUNNING or self._starting):
            return
        if worker.worker_id in self._recovering:
            return
        self._recovering.add(worker.worker_id)
        threading.Thread(
            target=self._recover_worker,
            args=(worker,),
            name=f"docpool-recover-{worker.worker_id}",
            daemon=True,
        ).start()

    def _after_worker_change_locked(self) -> List[_Outcome]:
        """Dispatch what can run now; fail the queue if no worker can ever run it."""
        self._dispatch_locked()
        outcomes: List[_Outcome] = []
        if self._queue and self._all_failed_locked():
            logger.error("All workers failed, rejecting %d queued task(s)", len(self._queue))
            outcomes = self._drain_queue_locked(
                lambda: NoWorkersAvailableError("All workers are permanently failed")
            )
        self._changed.notify_all()
        return outcomes

    # ------------------------------------------------------------------
    # Worker threads
    # ------------------------------------------------------------------

    def _run_assignment(self, assignment: Assignment) -> None:
        worker = assignment.worker
        queued = assignment.queued
        try:
            result = worker.run(queued.task, deadline=assignment.deadline)
        except WorkerUnavailableError as exc:
            self._requeue(assignment, exc)
        except Exception as exc:
            self._finish(assignment, exc, None)
        else:
            self._finish(assignment, None, result)

    def _finish(
        self, assignment: Assignment, error: Optional[BaseException], result: Any
    ) -> None:
        worker = assignment.worker
        with self._lock:
            if self._in_flight.get(worker.worker_id) is not assignment:
                # Timed out or cancelled already; the outcome is stale.
                logger.debug(
                    "Dropping late outcome of task #%d on %s",
                    assignment.queued.sequence,
                    worker.worker_id,
                )
                return
            del self._in_flight[worker.worker_id]
            if error is None:
                self._completed += 1
            else:
                self._failed += 1
                logger.warning(
                    "Task #%d failed on %s: %s",
                    assignment.queued.sequence,
                    worker.worker_id,
                    error,
                )
            if worker.state is WorkerState.RESTARTING:
                self._start_recovery_locked(worker)
            outcomes = self._after_worker_change_locked()

        _settle([(assignment.queued.future, error, result), *outcomes])

    def _requeue(self, assignment: Assignment, error: WorkerUnavailableError) -> None:
        """The task never started: put it back at the head of the queue."""
        worker = assignment.worker
        queued = assignment.queued
        outcomes: List[_Outcome] = []
        with self._lock:
            if self._in_flight.get(worker.worker_id) is not assignment:
                return
            del self._in_flight[worker.worker_id]
            logger.warning(
                "Worker %s unusable before task #%d started, re-queueing: %s",
                worker.worker_id,
                queued.sequence,
                error,
            )
            if self._state is PoolState.RUNNING:
                queued.enqueued_at = time.monotonic()
                self._queue.appendleft(queued)
            else:
                self._rejected += 1
                outcomes.append(
                    (queued.future, RejectedError("Pool is shutting down"), None)
                )
            if worker.state is WorkerState.RESTARTING:
                self._start_recovery_locked(worker)
            outcomes.extend(self._after_worker_change_locked())

        _settle(outcomes)

    def _recover_worker(self, worker: Worker) -> None:
        try:
            worker.recover()
        except WorkerRestartExhaustedError as exc:
            logger.error("%s", exc)
        except Exception:
            logger.exception("Unexpected error while recovering %s", worker.worker_id)

        with self._lock:
            self._recovering.discard(worker.worker_id)
            outcomes = self._after_worker_change_locked()
        _settle(outcomes)

    # ------------------------------------------------------------------
    # Watchdog
    # ------------------------------------------------------------------

    def _watchdog_loop(self) -> None:
        interval = self.config.health_check_interval
        next_health_check = time.monotonic() + interval

        while True:
            idle: List[Worker] = []
            with self._lock:
                if self._state is PoolState.STOPPED:
                    return
                now = time.monotonic()
                outcomes = self._expire_locked(now)
                if now >= next_health_check:
                    next_health_check = now + interval
                    if self._state is PoolState.RUNNING:
                        idle = [
                            w for w in self._workers if w.state is WorkerState.AVAILABLE
                        ]

            _settle(outcomes)
            for worker in idle:
                if not worker.check_health():
                    with self._lock:
                        self._start_recovery_locked(worker)

            with self._lock:
                if self._state is PoolState.STOPPED:
                    return
                self._changed.wait(self._watchdog_wait_locked(next_health_check))

    def _expire_locked(self, now: float) -> List[_Outcome]:
        """Fail overdue tasks and tasks that waited too long for a worker."""
        outcomes: List[_Outcome] = []

        for worker_id, assignment in list(self._in_flight.items()):
            if assignment.deadline > now:
                continue
            del self._in_flight[worker_id]
            self._timed_out += 1
            worker = assignment.worker
            logger.warning(
                "Task #%d timed out after %.1fs on %s",
                assignment.queued.sequence,
                self.config.task_timeout,
                worker_id,
            )
            worker.abort()
            self._start_recovery_locked(worker)
            outcomes.append(
                (
                    assignment.queued.future,
                    TaskTimeoutError(
                        f"Task exceeded {self.config.task_timeout}s",
                        timeout=self.config.task_timeout,
                        details={"worker_id": worker_id},
                    ),
                    None,
                )
            )

        queue_timeout = self.config.queue_timeout
        expired = [
            q for q in self._queue
            if q.future.cancelled() or q.enqueued_at + queue_timeout <= now
        ]
        for queued in expired:
            self._queue.remove(queued)
            if queued.future.cancelled():
                continue
            self._rejected += 1
            outcomes.append(
                (
                    queued.future,
                    RejectedError(
                        f"No worker became available within {queue_timeout}s",
                        details={"queue_timeout": queue_timeout},
                    ),
                    None,
                )
            )
        if outcomes or expired:
            self._changed.notify_all()
        return outcomes

    def _watchdog_wait_locked(self, next_health_check: float) -> float:
        wake_at = [next_health_check]
        wake_at.extend(a.deadline for a in self._in_flight.values())
        if self._queue:
            wake_at.append(
                min(q.enqueued_at for q in self._queue) + self.config.queue_timeout
            )
        wait = min(wake_at) - time.monotonic()
        return min(max(wait, 0.0), _WATCHDOG_MAX_WAIT)
