"""
docpool - Run document conversions on a supervised pool of workers.

Local engine processes:
    from docpool import ConversionTask, LocalWorkerConfig, PoolConfig, PoolManager

    pool = PoolManager.local(
        LocalWorkerConfig(command=["soffice", "--headless", "--invisible"]),
        PoolConfig(pool_size=2),
    )
    with pool:
        pool.execute(ConversionTask("report.docx", "report.pdf"))

Remote conversion endpoint:
    from docpool import PoolManager, RemoteWorkerConfig

    with PoolManager.remote(RemoteWorkerConfig(url="https://convert:9980")) as pool:
        future = pool.submit(ConversionTask("sheet.xlsx", "sheet.pdf"))
        future.result()

From DOCPOOL_* environment variables:
    pool = PoolManager.from_settings()

Advanced usage via submodules:
    from docpool.worker import Worker, LocalWorker, RemoteWorker
    from docpool.process import ProcessLocator, detect_process_locator
    from docpool.bridge import Bridge
"""

from docpool.context import (  # noqa: F401
    ExecutionContext,
    LocalExecutionContext,
    RemoteExecutionContext,
    build_conversion_url,
)
from docpool.exceptions import (  # noqa: F401
    BridgeError,
    ConfigError,
    DocpoolError,
    NoWorkersAvailableError,
    RejectedError,
    StartupError,
    TaskCancelledError,
    TaskExecutionError,
    TaskTimeoutError,
    WorkerRestartExhaustedError,
    WorkerStartError,
    WorkerUnavailableError,
)
from docpool.models import (  # noqa: F401
    LocalWorkerConfig,
    PoolConfig,
    PoolState,
    RemoteWorkerConfig,
    SslConfig,
    WorkerState,
)
from docpool.pool import PoolManager, PoolStats  # noqa: F401
from docpool.task import ConversionTask, Task  # noqa: F401
from docpool.worker import LocalWorker, RemoteWorker, Worker  # noqa: F401

__version__ = "0.1.0"

__all__ = [
    "PoolManager",
    "PoolStats",
    "PoolConfig",
    "PoolState",
    "LocalWorkerConfig",
    "RemoteWorkerConfig",
    "SslConfig",
    "WorkerState",
    "Worker",
    "LocalWorker",
    "RemoteWorker",
    "Task",
    "ConversionTask",
    "ExecutionContext",
    "LocalExecutionContext",
    "RemoteExecutionContext",
    "build_conversion_url",
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
