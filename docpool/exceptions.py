"""
Typed exceptions for docpool.

Provides structured error handling with:
- DocpoolError: Base exception for all docpool errors
- ConfigError: Invalid pool/worker configuration (fatal at construction)
- StartupError / WorkerStartError: Pool or worker failed to reach ready state
- RejectedError / NoWorkersAvailableError: Submission refused
- TaskTimeoutError / TaskExecutionError / TaskCancelledError: Task outcomes
- WorkerRestartExhaustedError: Worker permanently FAILED

All exceptions include structured attributes for programmatic handling.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class DocpoolError(Exception):
    """Base exception for all docpool errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context as key-value pairs
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging or API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigError(DocpoolError):
    """Configuration invariant violation.

    Raised at construction time only:
    - Empty worker list
    - Malformed remote connection URL
    - Incompatible configuration combinations
    """

    pass


class StartupError(DocpoolError):
    """The pool (or a worker) failed to reach a ready state."""

    pass


class WorkerStartError(StartupError):
    """A single worker could not start its backend.

    Attributes:
        worker_id: Identifier of the worker that failed to start
    """

    def __init__(
        self,
        message: str,
        *,
        worker_id: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if worker_id:
            details["worker_id"] = worker_id
        self.worker_id = worker_id
        super().__init__(message, code=code, details=details)


class RejectedError(DocpoolError):
    """Submission refused.

    Raised when:
    - The pool is not running (not started, stopping or stopped)
    - The queue stayed full for the whole queue timeout
    - A queued task was not dispatched within the queue timeout
    """

    pass


class NoWorkersAvailableError(RejectedError):
    """Every worker in the pool is permanently FAILED."""

    pass


class TaskTimeoutError(DocpoolError):
    """Task deadline exceeded.

    The backend may still be processing the task when this is raised;
    callers must treat the side effect as unknown.

    Attributes:
        timeout: The deadline that was exceeded, in seconds
    """

    def __init__(
        self,
        message: str,
        *,
        timeout: Optional[float] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if timeout is not None:
            details["timeout"] = timeout
        self.timeout = timeout
        super().__init__(message, code=code, details=details)


class TaskExecutionError(DocpoolError):
    """Task-level failure reported by the backend.

    Attributes:
        status_code: HTTP status code when raised by a remote worker
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if status_code:
            details["status_code"] = status_code
        self.status_code = status_code
        super().__init__(message, code=code, details=details)


class TaskCancelledError(DocpoolError):
    """In-flight task abandoned because the shutdown grace period elapsed."""

    pass


class WorkerRestartExhaustedError(DocpoolError):
    """Worker exceeded its restart attempts and is permanently FAILED.

    Attributes:
        worker_id: Identifier of the failed worker
        attempts: Number of consecutive failed start attempts
    """

    def __init__(
        self,
        message: str,
        *,
        worker_id: Optional[str] = None,
        attempts: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if worker_id:
            details["worker_id"] = worker_id
        if attempts is not None:
            details["attempts"] = attempts
        self.worker_id = worker_id
        self.attempts = attempts
        super().__init__(message, code=code, details=details)


class WorkerUnavailableError(DocpoolError):
    """Worker cannot accept a task right now.

    Raised by Worker.run() before the task started, so the task can be
    handed to another worker without risking a double execution.
    """

    pass


class BridgeError(DocpoolError):
    """Control-channel failure talking to a local engine process."""

    pass


__all__ = [
    "DocpoolError",
    "ConfigError",
    "StartupError",
    "WorkerStartError",
    "RejectedError",
    "NoWorkersAvailableError",
    "TaskTimeoutError",
    "TaskExecutionError",
    "TaskCancelledError",
    "WorkerRestartExhaustedError",
    "WorkerUnavailableError",
    "BridgeError",
]
