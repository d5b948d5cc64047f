"""
Pool workers: one execution context, one task at a time.

State machine:

    STOPPED -> STARTING -> AVAILABLE <-> BUSY
                   |                      |
                   v                      v  (failure, timeout, task limit)
               RESTARTING  <--------------+
                   |
                   +--> AVAILABLE   (restart succeeded)
                   +--> FAILED      (max_restart_attempts + 1 failed starts)

    stop() moves any state to STOPPED.

Two variants share this base:
    LocalWorker  - supervised engine subprocess reached through a bridge
    RemoteWorker - HTTP(S) conversion endpoint through a pooled httpx.Client

The pool never inspects which variant it holds.

Stale executions:
    When the pool abandons a task (deadline passed), the worker thread may
    still be inside task.execute(). Every abort/restart/stop bumps a
    generation counter; an execution that finishes under an old generation
    leaves the worker state untouched.
"""

from __future__ import annotations

import logging
import socket
import ssl
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from docpool import telemetry
from docpool.context import (
    ExecutionContext,
    LocalExecutionContext,
    RemoteExecutionContext,
    build_conversion_url,
)
from docpool.exceptions import (
    BridgeError,
    ConfigError,
    DocpoolError,
    TaskExecutionError,
    TaskTimeoutError,
    WorkerRestartExhaustedError,
    WorkerStartError,
    WorkerUnavailableError,
)
from docpool.models import (
    LocalWorkerConfig,
    PoolConfig,
    RemoteWorkerConfig,
    SslConfig,
    WorkerState,
)
from docpool.process import ProcessLocator
from docpool.supervisor import ProcessSupervisor
from docpool.task import Task

logger = logging.getLogger(__name__)


@dataclass
class RestartPolicy:
    """How a worker recovers; applied by the pool from its PoolConfig."""

    max_restart_attempts: int = 3
    restart_delay: float = 0.5
    # Proactive restart after this many tasks (None disables it).
    max_tasks: Optional[int] = None

    @classmethod
    def from_pool_config(cls, config: PoolConfig) -> "RestartPolicy":
        return cls(
            max_restart_attempts=config.max_restart_attempts,
            restart_delay=config.restart_delay,
            max_tasks=config.max_tasks_per_worker,
        )


@dataclass
class WorkerStats:
    """Lifetime counters for one worker."""

    completed: int = 0
    failed: int = 0
    restarts: int = 0
    total_seconds: float = 0.0

    @property
    def avg_duration(self) -> float:
        if self.completed == 0:
            return 0.0
        return self.total_seconds / self.completed


@dataclass(frozen=True)
class WorkerSnapshot:
    """Point-in-time view of a worker, safe to hand out."""

    worker_id: str
    state: WorkerState
    task_count: int
    failed_starts: int
    stats: WorkerStats = field(default_factory=WorkerStats)


def _as_task_error(exc: BaseException) -> DocpoolError:
    """Map any failure raised inside a task onto the task error vocabulary."""
    if isinstance(exc, BridgeError):
        # Engine went away mid-task.
        return TaskExecutionError(f"Engine connection lost: {exc.message}")
    if isinstance(exc, DocpoolError):
        return exc
    if isinstance(exc, (TimeoutError, socket.timeout)):
        return TaskTimeoutError(f"Task timed out: {exc}")
    return TaskExecutionError(f"{type(exc).__name__}: {exc}")


class Worker:
    """
    Base worker: state machine, supervised run() and restart logic.

    Subclasses provide the backend hooks:
        _start_backend()        bring the backend up or raise
        _stop_backend(force)    tear it down (idempotent)
        _new_context()          build a context for the live backend
        _backend_healthy()      cheap liveness check for idle workers

    Thread safety: state lives under a short-held lock; backend operations
    run under a separate lock so a slow start never blocks dispatch.
    """

    def __init__(
        self,
        worker_id: str,
        *,
        policy: Optional[RestartPolicy] = None,
    ) -> None:
        self.worker_id = worker_id
        self.policy = policy or RestartPolicy()
        self.stats = WorkerStats()
        self.task_count = 0
        self.failed_starts = 0
        self.last_start_error: Optional[BaseException] = None
        self._state = WorkerState.STOPPED
        self._generation = 0
        self._reserved = False
        self._context: Optional[ExecutionContext] = None
        # Set when RESTARTING was entered for the task limit rather than a failure.
        self._graceful_restart = False
        self._lock = threading.Lock()
        self._backend_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.worker_id!r}, state={self._state.value})"

    @property
    def state(self) -> WorkerState:
        with self._lock:
            return self._state

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def snapshot(self) -> WorkerSnapshot:
        with self._lock:
            return WorkerSnapshot(
                worker_id=self.worker_id,
                state=self._state,
                task_count=self.task_count,
                failed_starts=self.failed_starts,
                stats=WorkerStats(**vars(self.stats)),
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Bring the worker from STOPPED to AVAILABLE.

        Raises:
            WorkerStartError: Backend did not come up; the worker is left
                RESTARTING so recover() can retry
            WorkerRestartExhaustedError: Worker is already FAILED
        """
        with self._lock:
            if self._state in (WorkerState.AVAILABLE, WorkerState.BUSY):
                return
            if self._state is WorkerState.FAILED:
                raise WorkerRestartExhaustedError(
                    f"Worker {self.worker_id} is permanently failed",
                    worker_id=self.worker_id,
                    attempts=self.failed_starts,
                )
            self._state = WorkerState.STARTING
            generation = self._generation

        if not self._attempt_start(generation):
            with self._lock:
                if self._state is WorkerState.STOPPED:
                    return
            raise WorkerStartError(
                f"Worker {self.worker_id} failed to start: {self.last_start_error}",
                worker_id=self.worker_id,
            )
        logger.info("Worker %s available", self.worker_id)

    def stop(self, force: bool = False) -> None:
        """Move to STOPPED and release the backend. Safe in any state."""
        with self._lock:
            self._generation += 1
            self._state = WorkerState.STOPPED
            self._reserved = False
            self._context = None
            self._graceful_restart = False
        with self._backend_lock:
            try:
                self._stop_backend(force=force)
            except Exception as exc:
                logger.warning("Worker %s: error while stopping: %s", self.worker_id, exc)
        logger.debug("Worker %s stopped", self.worker_id)

    def abort(self) -> None:
        """
        Give up on the current execution (its deadline passed).

        The worker goes to RESTARTING and is not trusted again until
        recover() has rebuilt its backend.
        """
        with self._lock:
            if self._state in (WorkerState.STOPPED, WorkerState.FAILED):
                return
            self._generation += 1
            self._state = WorkerState.RESTARTING
            self._reserved = False
            self._graceful_restart = False

    def recover(self) -> bool:
        """
        Restart a RESTARTING worker.

        Tears the backend down (gracefully after the task limit, forcibly
        after a failure), discards the context and starts again, pausing
        policy.restart_delay between attempts.

        Returns:
            True once AVAILABLE, False if the worker was stopped meanwhile

        Raises:
            WorkerRestartExhaustedError: max_restart_attempts + 1 consecutive
                failed starts; the worker is now FAILED
        """
        with self._lock:
            if self._state is not WorkerState.RESTARTING:
                return self._state is WorkerState.AVAILABLE
            self._generation += 1
            self._context = None
            generation = self._generation
            self.stats.restarts += 1
            force = not self._graceful_restart
            self._graceful_restart = False

        telemetry.log("info", "Restarting worker", worker_id=self.worker_id)
        with self._backend_lock:
            try:
                self._stop_backend(force=force)
            except Exception as exc:
                logger.warning("Worker %s: teardown failed: %s", self.worker_id, exc)

        while True:
            with self._lock:
                if generation != self._generation:
                    return self._state is WorkerState.AVAILABLE
                if self.failed_starts > self.policy.max_restart_attempts:
                    self._state = WorkerState.FAILED
                    attempts = self.failed_starts
                    break

            if self._attempt_start(generation):
                logger.info("Worker %s restarted", self.worker_id)
                return True

            with self._lock:
                if generation != self._generation:
                    return False
                exhausted = self.failed_starts > self.policy.max_restart_attempts
            if not exhausted:
                time.sleep(self.policy.restart_delay)

        telemetry.log(
            "error",
            "Worker permanently failed",
            worker_id=self.worker_id,
            attempts=attempts,
        )
        raise WorkerRestartExhaustedError(
            f"Worker {self.worker_id} failed to start {attempts} times",
            worker_id=self.worker_id,
            attempts=attempts,
        )

    def _attempt_start(self, generation: int) -> bool:
        """One start attempt. Counts failures; tears down if stopped meanwhile."""
        with self._backend_lock:
            try:
                self._start_backend()
                started = True
            except Exception as exc:
                started = False
                self.last_start_error = exc
                logger.warning("Worker %s: start failed: %s", self.worker_id, exc)

            with self._lock:
                current = generation == self._generation
                if started and current:
                    self._state = WorkerState.AVAILABLE
                    self.failed_starts = 0
                    self.task_count = 0
                    return True
                if not started and current:
                    self.failed_starts += 1
                    self._state = WorkerState.RESTARTING

            if started:
                # Stopped while starting: do not leave a backend behind.
                self._stop_backend(force=True)
            return False

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def reserve(self) -> bool:
        """Claim an AVAILABLE worker for the dispatcher (AVAILABLE -> BUSY)."""
        with self._lock:
            if self._state is not WorkerState.AVAILABLE:
                return False
            self._state = WorkerState.BUSY
            self._reserved = True
            return True

    def release(self) -> None:
        """Undo reserve() for a task that was cancelled before it ran."""
        with self._lock:
            if self._state is WorkerState.BUSY and self._reserved:
                self._state = WorkerState.AVAILABLE
                self._reserved = False

    def run(self, task: Task, deadline: Optional[float] = None) -> Any:
        """
        Execute one task on this worker's context.

        Args:
            task: The task to execute
            deadline: time.monotonic() value after which the task is late

        Returns:
            Whatever task.execute() returned

        Raises:
            WorkerUnavailableError: Worker not AVAILABLE (or reserved), or
                its backend is gone; the task did not start
            TaskTimeoutError: Backend did not answer in time
            TaskExecutionError: Any other task failure
        """
        with self._lock:
            if self._state is WorkerState.BUSY and self._reserved:
                self._reserved = False
            elif self._state is WorkerState.AVAILABLE:
                self._state = WorkerState.BUSY
            else:
                raise WorkerUnavailableError(
                    f"Worker {self.worker_id} is {self._state.value}",
                    details={"worker_id": self.worker_id},
                )
            generation = self._generation

        try:
            context = self._acquire_context()
        except WorkerUnavailableError:
            self._finish_failed(generation)
            raise

        context.deadline = deadline
        started = time.monotonic()
        try:
            with telemetry.span(
                "docpool.task", worker_id=self.worker_id, task=type(task).__name__
            ):
                result = task.execute(context)
        except Exception as exc:
            self._finish_failed(generation)
            error = _as_task_error(exc)
            if isinstance(error, WorkerUnavailableError):
                # Raised by the task itself: it did run, so it must not be re-queued.
                error = TaskExecutionError(str(exc))
            if error is exc:
                raise
            raise error from exc

        with self._lock:
            self.stats.completed += 1
            self.stats.total_seconds += time.monotonic() - started
            if generation != self._generation:
                return result
            self.task_count += 1
            max_tasks = self.policy.max_tasks
            if max_tasks is not None and self.task_count >= max_tasks:
                logger.info(
                    "Worker %s reached %d tasks, scheduling restart",
                    self.worker_id,
                    self.task_count,
                )
                self._state = WorkerState.RESTARTING
                self._graceful_restart = True
            else:
                self._state = WorkerState.AVAILABLE
        return result

    def _finish_failed(self, generation: int) -> None:
        with self._lock:
            self.stats.failed += 1
            if generation == self._generation:
                self._state = WorkerState.RESTARTING
                self._graceful_restart = False

    def _acquire_context(self) -> ExecutionContext:
        context = self._context
        if context is not None and context.is_usable():
            return context
        try:
            context = self._new_context()
        except WorkerUnavailableError:
            raise
        except Exception as exc:
            raise WorkerUnavailableError(
                f"Worker {self.worker_id} cannot build a context: {exc}",
                details={"worker_id": self.worker_id},
            )
        if not context.is_usable():
            raise WorkerUnavailableError(
                f"Worker {self.worker_id} backend is not usable",
                details={"worker_id": self.worker_id},
            )
        self._context = context
        return context

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def check_health(self) -> bool:
        """
        Check an idle worker. A dead backend moves it to RESTARTING.

        Returns:
            False if the worker was found dead and needs recover()
        """
        with self._lock:
            if self._state is not WorkerState.AVAILABLE:
                return True
            generation = self._generation

        healthy = self._backend_healthy()
        if healthy:
            return True

        with self._lock:
            if self._state is not WorkerState.AVAILABLE or generation != self._generation:
                return True
            self._generation += 1
            self._state = WorkerState.RESTARTING
        logger.warning("Worker %s backend died while idle", self.worker_id)
        return False

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    def _start_backend(self) -> None:
        raise NotImplementedError

    def _stop_backend(self, force: bool) -> None:
        raise NotImplementedError

    def _new_context(self) -> ExecutionContext:
        raise NotImplementedError

    def _backend_healthy(self) -> bool:
        return True


class LocalWorker(Worker):
    """Worker backed by a supervised engine subprocess."""

    def __init__(
        self,
        config: LocalWorkerConfig,
        *,
        worker_id: Optional[str] = None,
        locator: Optional[ProcessLocator] = None,
        policy: Optional[RestartPolicy] = None,
    ) -> None:
        super().__init__(worker_id or f"local-{config.port}", policy=policy)
        self.config = config
        self._supervisor = ProcessSupervisor(config, locator=locator, name=self.worker_id)

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    def _start_backend(self) -> None:
        self._supervisor.start()

    def _stop_backend(self, force: bool) -> None:
        self._supervisor.stop(force=force)

    def _new_context(self) -> ExecutionContext:
        bridge = self._supervisor.bridge
        if bridge is None or not self._supervisor.is_running():
            raise WorkerUnavailableError(
                f"Engine of worker {self.worker_id} is not running "
                f"(exit code {self._supervisor.exit_code})",
                details={"worker_id": self.worker_id},
            )
        return LocalExecutionContext(bridge, is_alive=self._supervisor.is_running)

    def _backend_healthy(self) -> bool:
        bridge = self._supervisor.bridge
        return self._supervisor.is_running() and bridge is not None and bridge.usable


def create_ssl_context(config: SslConfig) -> ssl.SSLContext:
    """
    Build the client SSL context for a remote worker.

    Raises:
        ConfigError: If a certificate, key or CA file cannot be loaded
    """
    try:
        context = ssl.create_default_context(cafile=config.ca_file)
        if config.cert_file:
            context.load_cert_chain(
                config.cert_file,
                keyfile=config.key_file,
                password=config.key_password,
            )
        if config.ciphers:
            context.set_ciphers(config.ciphers)
        if config.minimum_version:
            context.minimum_version = ssl.TLSVersion[config.minimum_version]
    except (OSError, ValueError, ssl.SSLError) as exc:
        raise ConfigError(f"Could not create SSL context: {exc}")

    if config.trust_all:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    elif not config.verify_hostname:
        context.check_hostname = False
    return context


class RemoteWorker(Worker):
    """
    Worker backed by a remote conversion endpoint.

    start()/stop() only flip availability (and close the HTTP client on
    stop); there is no process to supervise. One keep-alive connection is
    reused across this worker's tasks.
    """

    def __init__(
        self,
        config: RemoteWorkerConfig,
        *,
        worker_id: str = "remote",
        policy: Optional[RestartPolicy] = None,
    ) -> None:
        super().__init__(worker_id, policy=policy)
        self.config = config
        self.endpoint_url = build_conversion_url(config.url)
        self._ssl_context: Optional[ssl.SSLContext] = None
        if config.ssl is not None and config.ssl.enabled:
            self._ssl_context = create_ssl_context(config.ssl)
        self._client: Optional[httpx.Client] = None

    def _start_backend(self) -> None:
        logger.debug("Worker %s targets %s", self.worker_id, self.endpoint_url)

    def _stop_backend(self, force: bool) -> None:
        client, self._client = self._client, None
        if client is not None:
            client.close()

    def _new_context(self) -> ExecutionContext:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                timeout=httpx.Timeout(
                    self.config.read_timeout, connect=self.config.connect_timeout
                ),
                verify=self._ssl_context if self._ssl_context is not None else True,
                headers=self.config.headers,
                limits=httpx.Limits(max_connections=1, max_keepalive_connections=1),
            )
        return RemoteExecutionContext(
            self._client,
            self.endpoint_url,
            connect_timeout=self.config.connect_timeout,
            read_timeout=self.config.read_timeout,
        )
