"""Optional Logfire integration for tracing task execution and worker lifecycle."""
from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)

_logfire = None
_configured = False

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def _load_logfire():
    global _logfire
    if _logfire is not None:
        return _logfire
    try:
        import logfire
    except Exception:
        _logfire = False
        return _logfire
    _logfire = logfire
    return _logfire


def _env_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def enabled() -> bool:
    logfire = _load_logfire()
    if not logfire:
        return False
    return _env_truthy(os.getenv("DOCPOOL_LOGFIRE"))


def configure() -> bool:
    logfire = _load_logfire()
    if not logfire or not enabled():
        return False
    global _configured
    if not _configured:
        try:
            console = None if _env_truthy(os.getenv("DOCPOOL_LOGFIRE_CONSOLE")) else False
            logfire.configure(console=console)
            _configured = True
        except Exception:
            return False
    return True


@contextmanager
def span(name: str, **attrs: Any) -> Iterator[None]:
    logfire = _load_logfire()
    if not logfire or not enabled() or not configure():
        yield
        return
    try:
        ctx = logfire.span(name, **attrs)
        ctx.__enter__()
    except Exception:
        yield
        return
    try:
        yield
    except Exception as exc:
        try:
            ctx.__exit__(type(exc), exc, exc.__traceback__)
        except Exception:
            pass
        raise
    else:
        try:
            ctx.__exit__(None, None, None)
        except Exception:
            pass


def log(level: str, message: str, **attrs: Any) -> None:
    """Emit an event to Logfire when enabled, and always to the stdlib logger."""
    levelno = _LEVELS.get(level, logging.INFO)
    logger.log(levelno, "%s %s", message, attrs)
    logfire = _load_logfire()
    if not logfire or not enabled() or not configure():
        return
    fn = getattr(logfire, level, None) or logfire.info
    try:
        fn(message, **attrs)
    except Exception:
        return
