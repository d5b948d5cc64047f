"""
Supervisor for a local engine process.

Owns the lifecycle of one engine subprocess and its control bridge:
- Launch with a unique --accept argument (so a leftover process can be found)
- Kill a leftover process bound to the same address before launching
- Forward the engine's stdout/stderr to the logger
- Wait for the bridge to become connectable within the start timeout
- Detect premature death
- Stop gracefully, or force-terminate by pid, then kill any process still
  carrying the accept argument (a launcher that handed off to a child engine,
  or a launch that failed before a pid was known)
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import threading
import time
from typing import IO, List, Optional

from docpool.bridge import Bridge
from docpool.exceptions import WorkerStartError
from docpool.models import LocalWorkerConfig
from docpool.process import ProcessLocator, detect_process_locator

logger = logging.getLogger(__name__)


class ProcessSupervisor:
    """
    Launches, monitors and terminates one engine process.

    Not thread-safe on its own; the owning LocalWorker serialises calls.
    """

    def __init__(
        self,
        config: LocalWorkerConfig,
        *,
        locator: Optional[ProcessLocator] = None,
        name: str = "engine",
    ) -> None:
        self._config = config
        self._locator = locator or detect_process_locator()
        self._name = name
        self._process: Optional[subprocess.Popen] = None
        self._pid: Optional[int] = None
        self._bridge: Optional[Bridge] = None
        self._pumps: List[threading.Thread] = []
        self._launched = False

    @property
    def pid(self) -> Optional[int]:
        return self._pid

    @property
    def bridge(self) -> Optional[Bridge]:
        return self._bridge

    @property
    def command(self) -> List[str]:
        return [*self._config.command, f"--accept={self._config.accept_string}"]

    @property
    def exit_code(self) -> Optional[int]:
        """Exit code of the engine, or None while it is running (or never ran)."""
        if self._process is None:
            return None
        return self._process.poll()

    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def is_healthy(self, timeout: float = 2.0) -> bool:
        """Process alive and answering on the bridge."""
        if not self.is_running() or self._bridge is None:
            return False
        return self._bridge.ping(timeout=timeout)

    def start(self) -> Bridge:
        """
        Launch the engine and connect its bridge.

        Returns:
            The connected bridge

        Raises:
            WorkerStartError: Leftover process could not be cleared, the
                engine could not be launched, exited early, or did not accept
                a connection within start_timeout
        """
        if self.is_running() and self._bridge is not None and self._bridge.usable:
            return self._bridge

        self._clear_leftover_process()

        cmd = self.command
        env = {**os.environ, **self._config.env}
        logger.info("Starting %s: %s", self._name, " ".join(cmd))
        self._launched = True
        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self._config.working_dir,
                env=env,
            )
        except OSError as exc:
            raise WorkerStartError(
                f"Could not launch {self._name}: {exc}", worker_id=self._name
            )
        self._pid = self._process.pid
        self._start_pumps(self._process)

        try:
            self._bridge = self._connect()
        except WorkerStartError:
            self._kill()
            raise

        logger.info(
            "%s started (pid=%s, accept=%s)",
            self._name,
            self._pid,
            self._config.accept_string,
        )
        return self._bridge

    def stop(self, force: bool = False) -> None:
        """
        Stop the engine.

        Graceful: send SHUTDOWN, wait up to process_timeout, then kill.
        Forced: kill immediately.
        """
        bridge, self._bridge = self._bridge, None
        if bridge is not None:
            if not force:
                bridge.shutdown()
            bridge.close()

        process = self._process
        if process is not None and process.poll() is None and not force:
            try:
                process.wait(timeout=self._config.process_timeout)
            except subprocess.TimeoutExpired:
                logger.warning(
                    "%s did not exit within %.1fs, killing it",
                    self._name,
                    self._config.process_timeout,
                )
        self._kill()

    def _connect(self) -> Bridge:
        config = self._config
        deadline = time.monotonic() + config.start_timeout
        last_error: Optional[Exception] = None

        while True:
            exit_code = self.exit_code
            if exit_code is not None:
                raise WorkerStartError(
                    f"{self._name} exited during startup with code {exit_code}",
                    worker_id=self._name,
                    details={"exit_code": exit_code},
                )
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                return Bridge.connect(
                    config.host, config.port, timeout=min(remaining, 1.0)
                )
            except OSError as exc:
                last_error = exc
            time.sleep(min(config.connect_retry_interval, max(0.0, remaining)))

        raise WorkerStartError(
            f"{self._name} did not accept connections on "
            f"{config.host}:{config.port} within {config.start_timeout}s: {last_error}",
            worker_id=self._name,
        )

    def _clear_leftover_process(self) -> None:
        pattern = re.escape(self._config.accept_string)
        leftovers = self._locator.list_matching(pattern)
        if not leftovers:
            return

        pids = [info.pid for info in leftovers]
        if not self._config.kill_existing_process:
            raise WorkerStartError(
                f"A process with accept '{self._config.accept_string}' is already "
                f"running (pid {pids}); set kill_existing_process to replace it",
                worker_id=self._name,
                details={"pids": pids},
            )

        logger.warning(
            "Killing leftover process(es) %s bound to %s",
            pids,
            self._config.accept_string,
        )
        for pid in pids:
            self._locator.terminate(pid=pid)

        deadline = time.monotonic() + self._config.process_timeout
        while self._locator.list_matching(pattern):
            if time.monotonic() >= deadline:
                raise WorkerStartError(
                    f"Leftover process(es) {pids} could not be killed",
                    worker_id=self._name,
                    details={"pids": pids},
                )
            time.sleep(self._config.connect_retry_interval)

    def _kill(self) -> None:
        process, self._process = self._process, None
        pid, self._pid = self._pid, None

        if process is not None and process.poll() is None:
            self._locator.terminate(pid=pid, handle=process)
        if process is not None:
            try:
                process.wait(timeout=self._config.process_timeout)
            except subprocess.TimeoutExpired:
                logger.error("%s (pid=%s) survived kill", self._name, pid)

        if self._launched:
            self._kill_strays(own_pid=pid)
        self._launched = False

        for pump in self._pumps:
            pump.join(timeout=1.0)
        self._pumps = []

    def _kill_strays(self, own_pid: Optional[int]) -> None:
        """
        Kill processes still carrying our accept argument.

        Launcher scripts hand off to a child engine and exit, and a failed
        launch leaves no handle; in both cases only the command line
        identifies the engine.
        """
        for info in self._locator.list_matching(re.escape(self._config.accept_string)):
            if info.pid == own_pid:
                continue
            logger.warning(
                "Killing %s process %s left behind by launch", self._name, info.pid
            )
            self._locator.terminate(pid=info.pid)

    def _start_pumps(self, process: subprocess.Popen) -> None:
        self._pumps = [
            threading.Thread(
                target=self._pump,
                args=(process.stdout, logging.INFO),
                name=f"{self._name}-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=self._pump,
                args=(process.stderr, logging.ERROR),
                name=f"{self._name}-stderr",
                daemon=True,
            ),
        ]
        for pump in self._pumps:
            pump.start()

    def _pump(self, stream: Optional[IO[bytes]], level: int) -> None:
        if stream is None:
            return
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    logger.log(level, "[%s] %s", self._name, line)
        except (OSError, ValueError):
            pass
        finally:
            stream.close()
