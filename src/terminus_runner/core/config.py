"""
System configuration for the Terminus runner.
"""

from dataclasses import dataclass, field
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# Devices may not refresh faster than this; the drift window arithmetic
# assumes at least one safety margin fits inside a refresh period.
MIN_REFRESH_RATE = 60


class EnvSettings(BaseSettings):
    """Environment-based settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    terminus_url: str
    terminus_port: int = 2300
    device_id: int = 1
    plugins_dir: Optional[str] = None
    request_timeout: float = 10.0
    render_timeout: float = 120.0
    execution_mode: str = "thread"
    max_workers: int = 4
    start_failure_policy: str = "exclude"
    safety_margin: float = 60.0
    poll_interval: float = 600.0
    recovery_poll_interval: float = 60.0
    recovery_refresh_rate: int = 60
    log_level: str = "INFO"


@dataclass
class ClientConfig:
    """Terminus server connection."""

    host: str = "localhost"
    port: int = 2300
    timeout: float = 10.0  # seconds, applied to every request

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass
class SandboxConfig:
    """Plugin execution configuration."""

    execution_mode: str = "thread"  # "thread" or "process"
    render_timeout: float = 120.0  # seconds
    max_workers: int = 4


@dataclass
class CoordinatorConfig:
    """Device refresh synchronization configuration."""

    safety_margin: float = 60.0  # seconds before predicted refresh
    poll_interval: float = 600.0  # seconds between steady-state polls
    recovery_poll_interval: float = 60.0  # seconds between polls while resyncing
    recovery_refresh_rate: Optional[int] = 60  # temporary device rate, None disables
    restore_attempts: int = 3
    restore_retry_delay: float = 1.0  # seconds between restore attempts


@dataclass
class SystemConfig:
    """Complete system configuration."""

    device_id: int = 1
    plugins_dir: Optional[str] = None
    start_failure_policy: str = "exclude"
    client: ClientConfig = field(default_factory=ClientConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)

    @classmethod
    def from_env(cls, env: Optional[EnvSettings] = None) -> "SystemConfig":
        """Build the configuration from environment settings."""
        if env is None:
            env = EnvSettings()

        return cls(
            device_id=env.device_id,
            plugins_dir=env.plugins_dir,
            start_failure_policy=env.start_failure_policy.lower(),
            client=ClientConfig(
                host=env.terminus_url,
                port=env.terminus_port,
                timeout=env.request_timeout,
            ),
            sandbox=SandboxConfig(
                execution_mode=env.execution_mode.lower(),
                render_timeout=env.render_timeout,
                max_workers=env.max_workers,
            ),
            coordinator=CoordinatorConfig(
                safety_margin=env.safety_margin,
                poll_interval=env.poll_interval,
                recovery_poll_interval=env.recovery_poll_interval,
                recovery_refresh_rate=env.recovery_refresh_rate or None,
            ),
        )
