from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Union

from docpool.context import ExecutionContext
from docpool.exceptions import TaskExecutionError

logger = logging.getLogger(__name__)


class Task(Protocol):
    """
    Unit of work submitted to the pool.

    execute() runs on a worker thread with that worker's context. Its return
    value becomes the future's result; failure must be signalled by raising,
    never by returning silently.
    """

    def execute(self, context: ExecutionContext) -> Any: ...


@dataclass(frozen=True)
class ConversionTask:
    """
    Convert one file into another format.

    The same task runs unchanged on local and remote workers. Staging of
    streams into files is the caller's job; both paths must be on a
    filesystem the backend can reach.
    """

    source: Union[str, Path]
    target: Union[str, Path]
    # Defaults to the target file's extension.
    target_format: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def format(self) -> str:
        return (self.target_format or Path(self.target).suffix).lstrip(".").lower()

    def execute(self, context: ExecutionContext) -> Path:
        source = Path(self.source)
        if not source.is_file():
            raise TaskExecutionError(f"Source file not found: {source}")
        if not self.format:
            raise TaskExecutionError(
                f"Cannot infer target format from {self.target}; set target_format"
            )

        logger.info(
            "Executing conversion task [%s -> %s]...",
            source.suffix.lstrip(".") or "?",
            self.format,
        )
        return context.convert(source, self.target, self.format, dict(self.options))
