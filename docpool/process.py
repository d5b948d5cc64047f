"""
Process discovery and termination.

The local supervisor needs two OS-level operations:
- find processes whose command line matches a pattern (to clean up an
  engine left behind by an unclean shutdown)
- kill a process, by pid when known, else through its Popen handle

Both are platform-specific and inherently racy, so they sit behind the
small ProcessLocator protocol. detect_process_locator() picks the
implementation for the current platform; tests inject an in-memory fake.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import signal
import subprocess
import sys
from dataclasses import dataclass
from typing import List, Optional, Pattern, Protocol

logger = logging.getLogger(__name__)

# Timeout for the helper commands (ps, powershell, taskkill)
COMMAND_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class ProcessInfo:
    """One running process as reported by the OS."""

    pid: int
    command_line: str


class ProcessLocator(Protocol):
    """Interface for OS-level process enumeration and termination."""

    def list_matching(self, pattern: str) -> List[ProcessInfo]:
        """Return processes whose command line matches the regex pattern."""
        ...

    def terminate(
        self,
        pid: Optional[int] = None,
        handle: Optional[subprocess.Popen] = None,
    ) -> None:
        """Force-kill a process by pid, falling back to its handle."""
        ...


class _CommandProcessLocator:
    """Shared logic for locators that parse the output of a listing command."""

    line_pattern: Pattern[str] = re.compile(r"^\s*(\d+)\s+(.*)$")

    def _list_command(self) -> List[str]:
        raise NotImplementedError

    def _run(self, cmd: List[str]) -> List[str]:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=COMMAND_TIMEOUT_SECONDS,
        )
        return result.stdout.splitlines()

    def list_matching(self, pattern: str) -> List[ProcessInfo]:
        regex = re.compile(pattern)
        try:
            lines = self._run(self._list_command())
        except (subprocess.SubprocessError, OSError) as exc:
            logger.warning("Could not list running processes: %s", exc)
            return []

        matches: List[ProcessInfo] = []
        for line in lines:
            parsed = self.line_pattern.match(line)
            if parsed is None:
                continue
            pid, command_line = int(parsed.group(1)), parsed.group(2).strip()
            if pid == os.getpid():
                continue
            if regex.search(command_line):
                matches.append(ProcessInfo(pid=pid, command_line=command_line))
        return matches

    def terminate(
        self,
        pid: Optional[int] = None,
        handle: Optional[subprocess.Popen] = None,
    ) -> None:
        if pid is not None and pid > 0:
            self._kill_pid(pid)
            return
        if handle is None:
            raise ValueError("terminate() requires a pid or a process handle")
        handle.kill()

    def _kill_pid(self, pid: int) -> None:
        raise NotImplementedError


class UnixProcessLocator(_CommandProcessLocator):
    """Linux and other Unix variants: ps + SIGKILL."""

    def _list_command(self) -> List[str]:
        return ["ps", "-e", "-o", "pid,args"]

    def _kill_pid(self, pid: int) -> None:
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            logger.debug("Process %d already exited", pid)


class MacProcessLocator(UnixProcessLocator):
    """macOS: BSD ps reports the full command under 'command'."""

    def _list_command(self) -> List[str]:
        return ["ps", "-e", "-o", "pid,command"]


class WindowsProcessLocator(_CommandProcessLocator):
    """Windows: CIM query through PowerShell, taskkill to terminate."""

    def _list_command(self) -> List[str]:
        return [
            "powershell",
            "-NoProfile",
            "-NonInteractive",
            "-Command",
            'Get-CimInstance Win32_Process | ForEach-Object { "$($_.ProcessId) $($_.CommandLine)" }',
        ]

    def _kill_pid(self, pid: int) -> None:
        subprocess.run(
            ["taskkill", "/F", "/T", "/PID", str(pid)],
            capture_output=True,
            timeout=COMMAND_TIMEOUT_SECONDS,
        )


class HandleProcessLocator:
    """
    Portable fallback: no enumeration, termination through Popen only.

    Used where no listing command is available. Stale processes from a
    previous run cannot be discovered with this locator.
    """

    def list_matching(self, pattern: str) -> List[ProcessInfo]:
        return []

    def terminate(
        self,
        pid: Optional[int] = None,
        handle: Optional[subprocess.Popen] = None,
    ) -> None:
        if handle is not None:
            handle.kill()
            return
        if pid is not None and pid > 0 and hasattr(signal, "SIGKILL"):
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            return
        raise ValueError("terminate() requires a process handle")


def detect_process_locator() -> ProcessLocator:
    """
    Pick the process locator for the running platform.

    Priority:
    1. macOS -> MacProcessLocator
    2. Windows with PowerShell -> WindowsProcessLocator
    3. Other platforms with ps -> UnixProcessLocator
    4. HandleProcessLocator (no discovery)
    """
    if sys.platform == "darwin":
        logger.info("Using process locator: macOS ps")
        return MacProcessLocator()

    if sys.platform == "win32":
        if shutil.which("powershell"):
            logger.info("Using process locator: Windows CIM")
            return WindowsProcessLocator()
        logger.warning("PowerShell not found; stale engine processes cannot be discovered")
        return HandleProcessLocator()

    if shutil.which("ps"):
        logger.info("Using process locator: Unix ps")
        return UnixProcessLocator()

    logger.warning("ps not found; stale engine processes cannot be discovered")
    return HandleProcessLocator()
