from __future__ import annotations

from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class WorkerState(str, Enum):
    """
    Worker availability.

    STOPPED -> STARTING -> AVAILABLE <-> BUSY -> RESTARTING -> AVAILABLE | FAILED
    Any state returns to STOPPED on stop().
    """

    STOPPED = "stopped"
    STARTING = "starting"
    AVAILABLE = "available"
    BUSY = "busy"
    RESTARTING = "restarting"
    FAILED = "failed"


class PoolState(str, Enum):
    """Pool lifecycle. Transitions are one-way."""

    CREATED = "created"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class PoolConfig(BaseModel):
    """
    Pool-level settings. All durations are in seconds.

    Attributes:
        pool_size: Number of workers built by the factory constructors.
        queue_capacity: Max tasks waiting for a worker.
        queue_timeout: Max time submit() blocks for queue space, and max
            time a queued task waits for a worker before it is rejected.
        task_timeout: Max execution time once a task is assigned.
        startup_timeout: Grace period for at least one worker to come up.
        shutdown_timeout: Grace period for in-flight tasks on stop().
        max_restart_attempts: Consecutive failed restarts tolerated before
            a worker is marked FAILED.
        restart_delay: Pause between two restart attempts.
        max_tasks_per_worker: Proactive restart after this many tasks
            (None disables it).
        health_check_interval: How often idle workers are health-checked.
    """

    model_config = ConfigDict(extra="forbid")

    pool_size: int = Field(default=1, ge=1, le=1000)
    queue_capacity: int = Field(default=1000, ge=1)
    queue_timeout: float = Field(default=30.0, gt=0)
    task_timeout: float = Field(default=120.0, gt=0)
    startup_timeout: float = Field(default=120.0, gt=0)
    shutdown_timeout: float = Field(default=30.0, ge=0)
    max_restart_attempts: int = Field(default=3, ge=0)
    restart_delay: float = Field(default=0.5, ge=0)
    max_tasks_per_worker: Optional[int] = Field(default=200, ge=1)
    health_check_interval: float = Field(default=5.0, gt=0)


class SslConfig(BaseModel):
    """
    Transport-security material for a remote worker.

    Paths point to PEM files; loading them is left to the ssl module.
    """

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    ca_file: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    key_password: Optional[str] = None
    ciphers: Optional[str] = None
    # Lowest protocol accepted, as an ssl.TLSVersion member name.
    minimum_version: Optional[Literal["TLSv1", "TLSv1_1", "TLSv1_2", "TLSv1_3"]] = None
    # Disables certificate verification entirely. Test setups only.
    trust_all: bool = False
    verify_hostname: bool = True

    @model_validator(mode="after")
    def key_requires_cert(self) -> "SslConfig":
        if self.key_file and not self.cert_file:
            raise ValueError("key_file requires cert_file")
        return self


class RemoteWorkerConfig(BaseModel):
    """Connection settings shared by every remote worker of a pool."""

    model_config = ConfigDict(extra="forbid")

    url: str = Field(min_length=1)
    connect_timeout: float = Field(default=60.0, gt=0)
    # Max inactivity between two packets; capped by the task deadline.
    read_timeout: float = Field(default=120.0, gt=0)
    ssl: Optional[SslConfig] = None
    headers: Dict[str, str] = Field(default_factory=dict)


class LocalWorkerConfig(BaseModel):
    """
    Settings for one supervised local engine process.

    The engine is launched as ``[*command, "--accept=<accept_string>"]``.
    The accept string is unique per worker, which lets a stale process be
    found and killed even after an unclean shutdown.
    """

    model_config = ConfigDict(extra="forbid")

    command: List[str] = Field(min_length=1)
    host: str = "127.0.0.1"
    port: int = Field(default=2002, ge=1, le=65535)
    start_timeout: float = Field(default=30.0, gt=0)
    process_timeout: float = Field(default=10.0, gt=0)
    connect_retry_interval: float = Field(default=0.25, gt=0)
    kill_existing_process: bool = True
    env: Dict[str, str] = Field(default_factory=dict)
    working_dir: Optional[str] = None

    @property
    def accept_string(self) -> str:
        return f"socket,host={self.host},port={self.port};urp;"
