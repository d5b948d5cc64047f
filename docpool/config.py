"""
Pool configuration from environment variables.

Usage:
    from docpool.config import get_settings

    settings = get_settings()
    pool = PoolManager.from_settings(settings)

A remote pool is built when DOCPOOL_REMOTE_URL is set, a local one when
DOCPOOL_ENGINE_COMMAND is set.
"""

from functools import lru_cache
from typing import List, Optional
import os
import shlex

from docpool.exceptions import ConfigError
from docpool.models import LocalWorkerConfig, PoolConfig, RemoteWorkerConfig, SslConfig


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_number(name: str, default: str, cast=float):
    raw = os.getenv(name, default)
    try:
        return cast(raw)
    except ValueError:
        raise ConfigError(
            f"{name} must be a number, got {raw!r}", details={"variable": name}
        )


def _parse_ports(raw: Optional[str]) -> List[int]:
    if not raw:
        return []
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise ConfigError(
            f"DOCPOOL_ENGINE_PORTS must be a comma-separated list of ports, got {raw!r}",
            details={"variable": "DOCPOOL_ENGINE_PORTS"},
        )


class Settings:
    """Pool configuration loaded from environment variables."""

    def __init__(self) -> None:
        # Pool
        self.pool_size: int = _env_number("DOCPOOL_POOL_SIZE", "1", int)
        self.queue_capacity: int = _env_number("DOCPOOL_QUEUE_CAPACITY", "1000", int)
        self.queue_timeout: float = _env_number("DOCPOOL_QUEUE_TIMEOUT", "30")
        self.task_timeout: float = _env_number("DOCPOOL_TASK_TIMEOUT", "120")
        self.startup_timeout: float = _env_number("DOCPOOL_STARTUP_TIMEOUT", "120")
        self.shutdown_timeout: float = _env_number("DOCPOOL_SHUTDOWN_TIMEOUT", "30")
        self.max_restart_attempts: int = _env_number(
            "DOCPOOL_MAX_RESTART_ATTEMPTS", "3", int
        )
        self.restart_delay: float = _env_number("DOCPOOL_RESTART_DELAY", "0.5")
        # 0 disables proactive restarts.
        self.max_tasks_per_worker: int = _env_number(
            "DOCPOOL_MAX_TASKS_PER_WORKER", "200", int
        )
        self.health_check_interval: float = _env_number(
            "DOCPOOL_HEALTH_CHECK_INTERVAL", "5"
        )

        # Remote workers
        self.remote_url: Optional[str] = os.getenv("DOCPOOL_REMOTE_URL")
        self.connect_timeout: float = _env_number("DOCPOOL_CONNECT_TIMEOUT", "60")
        self.read_timeout: float = _env_number("DOCPOOL_READ_TIMEOUT", "120")
        self.ssl_ca_file: Optional[str] = os.getenv("DOCPOOL_SSL_CA_FILE")
        self.ssl_cert_file: Optional[str] = os.getenv("DOCPOOL_SSL_CERT_FILE")
        self.ssl_key_file: Optional[str] = os.getenv("DOCPOOL_SSL_KEY_FILE")
        self.ssl_key_password: Optional[str] = os.getenv("DOCPOOL_SSL_KEY_PASSWORD")
        self.ssl_trust_all: bool = _env_bool("DOCPOOL_SSL_TRUST_ALL", False)
        self.ssl_verify_hostname: bool = _env_bool("DOCPOOL_SSL_VERIFY_HOSTNAME", True)
        self.ssl_minimum_version: Optional[str] = os.getenv("DOCPOOL_SSL_MINIMUM_VERSION")

        # Local workers
        command = os.getenv("DOCPOOL_ENGINE_COMMAND")
        self.engine_command: List[str] = shlex.split(command) if command else []
        self.engine_host: str = os.getenv("DOCPOOL_ENGINE_HOST", "127.0.0.1")
        self.engine_ports: List[int] = _parse_ports(os.getenv("DOCPOOL_ENGINE_PORTS"))
        self.start_timeout: float = _env_number("DOCPOOL_START_TIMEOUT", "30")
        self.process_timeout: float = _env_number("DOCPOOL_PROCESS_TIMEOUT", "10")
        self.kill_existing_process: bool = _env_bool(
            "DOCPOOL_KILL_EXISTING_PROCESS", True
        )

    @property
    def ssl_configured(self) -> bool:
        """TLS settings are applied only if at least one DOCPOOL_SSL_* is set."""
        return bool(
            self.ssl_ca_file
            or self.ssl_cert_file
            or self.ssl_trust_all
            or self.ssl_minimum_version
            or not self.ssl_verify_hostname
        )

    def pool_config(self) -> PoolConfig:
        return PoolConfig(
            pool_size=len(self.engine_ports) or self.pool_size,
            queue_capacity=self.queue_capacity,
            queue_timeout=self.queue_timeout,
            task_timeout=self.task_timeout,
            startup_timeout=self.startup_timeout,
            shutdown_timeout=self.shutdown_timeout,
            max_restart_attempts=self.max_restart_attempts,
            restart_delay=self.restart_delay,
            max_tasks_per_worker=self.max_tasks_per_worker or None,
            health_check_interval=self.health_check_interval,
        )

    def remote_config(self) -> Optional[RemoteWorkerConfig]:
        if not self.remote_url:
            return None
        ssl = None
        if self.ssl_configured:
            ssl = SslConfig(
                ca_file=self.ssl_ca_file,
                cert_file=self.ssl_cert_file,
                key_file=self.ssl_key_file,
                key_password=self.ssl_key_password,
                trust_all=self.ssl_trust_all,
                verify_hostname=self.ssl_verify_hostname,
                minimum_version=self.ssl_minimum_version,
            )
        return RemoteWorkerConfig(
            url=self.remote_url,
            connect_timeout=self.connect_timeout,
            read_timeout=self.read_timeout,
            ssl=ssl,
        )

    def local_config(self) -> Optional[LocalWorkerConfig]:
        if not self.engine_command:
            return None
        port = self.engine_ports[0] if self.engine_ports else 2002
        return LocalWorkerConfig(
            command=self.engine_command,
            host=self.engine_host,
            port=port,
            start_timeout=self.start_timeout,
            process_timeout=self.process_timeout,
            kill_existing_process=self.kill_existing_process,
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def reset_settings() -> None:
    """Clear settings cache. For testing only."""
    get_settings.cache_clear()
