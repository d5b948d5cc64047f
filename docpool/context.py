"""
Execution contexts: the handle a Task uses to talk to a conversion backend.

Both variants expose the same two capabilities, so a Task implementation
never needs to know whether its worker is local or remote:

    convert(source, target, target_format, options) -> Path
    is_usable() -> bool

LocalExecutionContext forwards requests over the bridge to a supervised
engine process. RemoteExecutionContext posts them to an HTTP(S) conversion
endpoint through the worker's pooled httpx.Client.

A context is owned by exactly one worker and reused across that worker's
tasks; the worker checks is_usable() before every reuse. The deadline it
carries is refreshed per task.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol, Union
from urllib.parse import urlsplit

import httpx

from docpool.bridge import MSG_CONVERT, Bridge
from docpool.exceptions import ConfigError, TaskExecutionError, TaskTimeoutError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class ExecutionContext(Protocol):
    """Capability interface handed to Task.execute()."""

    # time.monotonic() value by which the current task must finish.
    deadline: Optional[float]

    def convert(
        self,
        source: PathLike,
        target: PathLike,
        target_format: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> Path:
        """Convert source into target_format, writing the result to target."""
        ...

    def is_usable(self) -> bool:
        """True while the backend can still accept operations."""
        ...


def build_conversion_url(connection_url: str) -> str:
    """
    Normalise a base connection string to the conversion endpoint.

    Examples:
        http://host:9980                  -> http://host:9980/lool/convert-to/
        http://host:9980/lool             -> http://host:9980/lool/convert-to/
        http://host:9980/lool/convert-to  -> http://host:9980/lool/convert-to/

    Raises:
        ConfigError: If the URL is not an absolute http(s) URL
    """
    parts = urlsplit(connection_url.strip())
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        raise ConfigError(
            f"Invalid connection URL: {connection_url!r}",
            details={"url": connection_url},
        )

    url = connection_url.strip()
    lowered = url.lower()
    with_slash = url if url.endswith("/") else url + "/"
    if lowered.endswith(("lool/convert-to", "lool/convert-to/")):
        return with_slash
    if lowered.endswith(("lool", "lool/")):
        return with_slash + "convert-to/"
    return with_slash + "lool/convert-to/"


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise TaskTimeoutError("Task deadline reached before the request was sent")
    return remaining


def _format_extension(target_format: str) -> str:
    extension = target_format.strip().lstrip(".").lower()
    if not extension:
        raise TaskExecutionError("Target format must not be empty")
    return extension


class LocalExecutionContext:
    """Context backed by a live bridge to a supervised engine process."""

    def __init__(
        self,
        bridge: Bridge,
        *,
        is_alive: Optional[Callable[[], bool]] = None,
        deadline: Optional[float] = None,
    ) -> None:
        self._bridge = bridge
        self._is_alive = is_alive
        self.deadline = deadline

    @property
    def bridge(self) -> Bridge:
        return self._bridge

    def is_usable(self) -> bool:
        if not self._bridge.usable:
            return False
        return self._is_alive is None or bool(self._is_alive())

    def convert(
        self,
        source: PathLike,
        target: PathLike,
        target_format: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> Path:
        target_path = Path(target)
        payload = {
            "source": str(Path(source).resolve()),
            "target": str(target_path.resolve()),
            "format": _format_extension(target_format),
            "options": options or {},
        }
        result = self._bridge.request(
            MSG_CONVERT, payload, timeout=_remaining(self.deadline)
        )
        return Path(result.get("target") or target_path)


class RemoteExecutionContext:
    """Context backed by a pooled HTTP client and a conversion endpoint."""

    def __init__(
        self,
        client: httpx.Client,
        endpoint_url: str,
        *,
        connect_timeout: float,
        read_timeout: float,
        deadline: Optional[float] = None,
    ) -> None:
        self._client = client
        self._endpoint_url = endpoint_url
        self._connect_timeout = connect_timeout
        self._read_timeout = read_timeout
        self._broken = False
        self.deadline = deadline

    @property
    def endpoint_url(self) -> str:
        return self._endpoint_url

    def is_usable(self) -> bool:
        return not self._broken and not self._client.is_closed

    def convert(
        self,
        source: PathLike,
        target: PathLike,
        target_format: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> Path:
        source_path = Path(source)
        target_path = Path(target)
        url = self._endpoint_url + _format_extension(target_format)

        remaining = _remaining(self.deadline)
        read_timeout = (
            self._read_timeout if remaining is None else min(self._read_timeout, remaining)
        )
        timeout = httpx.Timeout(
            read_timeout,
            connect=min(self._connect_timeout, read_timeout),
        )
        form = {key: str(value) for key, value in (options or {}).items()}

        logger.debug("POST %s (%s)", url, source_path.name)
        try:
            with source_path.open("rb") as fh:
                response = self._client.post(
                    url,
                    files={"data": (source_path.name, fh)},
                    data=form,
                    timeout=timeout,
                )
        except httpx.TimeoutException as exc:
            self._broken = True
            raise TaskTimeoutError(
                f"Remote conversion timed out after {read_timeout:.1f}s: {exc}",
                timeout=read_timeout,
            )
        except httpx.HTTPError as exc:
            self._broken = True
            raise TaskExecutionError(f"Remote conversion failed: {exc}")
        except OSError as exc:
            raise TaskExecutionError(f"Could not read {source_path}: {exc}")

        if not response.is_success:
            raise TaskExecutionError(
                f"Remote conversion failed with HTTP {response.status_code}: "
                f"{response.text[:200]}",
                status_code=response.status_code,
                details={"url": url},
            )

        target_path.write_bytes(response.content)
        return target_path
