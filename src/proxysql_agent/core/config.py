"""
Configuration management for the ProxySQL agent.

Uses pydantic-settings for environment variable support. Levels of
precedence, from least to most:

1. defaults declared on the models below
2. YAML config file (AGENT_CONFIG_FILE, /etc/proxysql-agent/config.yaml, ./config.yaml)
3. environment variables (AGENT_ prefix, `__` for nesting: AGENT_PROXYSQL__ADDRESS)
4. explicit overrides (command line flags)
"""

import logging
import os
import socket
from contextvars import ContextVar
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from proxysql_agent.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILE_ENV = "AGENT_CONFIG_FILE"
DEFAULT_CONFIG_PATHS = (
    Path("/etc/proxysql-agent/config.yaml"),
    Path("config.yaml"),
)

# File named by load_settings(); set only while that call builds its Settings.
_explicit_config_file: ContextVar[Path | None] = ContextVar("explicit_config_file", default=None)


def resolve_config_file() -> Path | None:
    """Locate the YAML config file, if any."""
    named = _explicit_config_file.get()
    if named is not None:
        return named
    explicit = os.environ.get(CONFIG_FILE_ENV)
    if explicit:
        return Path(explicit)
    for candidate in DEFAULT_CONFIG_PATHS:
        if candidate.is_file():
            return candidate
    return None


def _default_identity() -> str:
    return os.environ.get("HOSTNAME") or socket.gethostname()


class LogConfig(BaseModel):
    """Logging options."""
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["text", "json"] = "text"
    source: bool = False
    probes: bool = False

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.upper()
            return "WARNING" if v == "WARN" else v
        return v

    @field_validator("format", mode="before")
    @classmethod
    def normalize_format(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.lower()
            return "text" if v == "plain" else v
        return v


class ProxySQLConfig(BaseModel):
    """Admin interface connection."""
    address: str = "127.0.0.1:6032"
    username: str = "radmin"
    password: SecretStr = SecretStr("")
    connect_timeout: float = Field(default=5.0, gt=0)


class PodSelectorConfig(BaseModel):
    """Label selector for primary (core) members."""
    namespace: str = "proxysql"
    app: str = "proxysql"
    component: str = "core"

    @property
    def label_selector(self) -> str:
        return f"app={self.app},component={self.component}"


class CoreConfig(BaseModel):
    """Primary-role reconciliation."""
    interval: int = Field(default=10, gt=0)
    reconcile: Literal["watch", "poll"] = "watch"
    podselector: PodSelectorConfig = Field(default_factory=PodSelectorConfig)
    sync_timeout: float = Field(default=30.0, gt=0)
    watermark_file: Path = Path("/tmp/pods-cs.txt")


class SatelliteConfig(BaseModel):
    """Secondary-role resync."""
    interval: int = Field(default=10, gt=0)
    heartbeat_threshold_ms: int = Field(default=30000, gt=0)


class ApiConfig(BaseModel):
    """Probe HTTP server."""
    host: str = "0.0.0.0"
    port: int = Field(default=8080, gt=0, le=65535)


class ShutdownSettings(BaseModel):
    """Drain-and-stop timing."""
    draining_file: Path = Path("/var/lib/proxysql/draining")
    drain_timeout: float = Field(default=30.0, ge=0)
    shutdown_timeout: float = Field(default=60.0, gt=0)
    drain_poll_interval: float = Field(default=2.0, gt=0)
    transport_timeout: float = Field(default=10.0, gt=0)


class OtelConfig(BaseModel):
    """OpenTelemetry tracing."""
    enabled: bool = False
    endpoint: str = "http://localhost:4317"
    service_name: str = "proxysql-agent"
    insecure: bool = True
    console: bool = False


class Settings(BaseSettings):
    """Agent configuration with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    run_mode: Literal["core", "satellite"] | None = Field(
        default=None,
        description="Mode to run the agent in: core or satellite",
    )
    start_delay: int = Field(
        default=0,
        ge=0,
        description="Seconds to pause before connecting to ProxySQL",
    )
    identity: str = Field(
        default_factory=_default_identity,
        description="Name of this member as known to the orchestration platform",
    )

    log: LogConfig = Field(default_factory=LogConfig)
    proxysql: ProxySQLConfig = Field(default_factory=ProxySQLConfig)
    core: CoreConfig = Field(default_factory=CoreConfig)
    satellite: SatelliteConfig = Field(default_factory=SatelliteConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    shutdown: ShutdownSettings = Field(default_factory=ShutdownSettings)
    otel: OtelConfig = Field(default_factory=OtelConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=resolve_config_file()),
        )

    @field_validator("run_mode", mode="before")
    @classmethod
    def empty_run_mode(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def cluster_port(self) -> int:
        """Port of the admin interface, used for cluster server rows."""
        host, sep, port = self.proxysql.address.rpartition(":")
        if not sep or not host:
            raise ConfigurationError(f"missing port in address: {self.proxysql.address}")
        try:
            return int(port)
        except ValueError as e:
            raise ConfigurationError(f"missing port in address: {port}") from e

    def redacted(self) -> dict[str, Any]:
        """Flattened settings with secrets masked, for display."""
        flat: dict[str, Any] = {}

        def walk(prefix: str, value: Any) -> None:
            if isinstance(value, dict):
                for key, item in value.items():
                    walk(f"{prefix}.{key}" if prefix else key, item)
            else:
                flat[prefix] = value

        walk("", self.model_dump(mode="json"))
        if flat.get("proxysql.password"):
            flat["proxysql.password"] = "[REDACTED]"
        return flat


def load_settings(config_file: str | Path | None = None, **overrides: Any) -> Settings:
    """
    Build settings, raising ConfigurationError on invalid input.

    Args:
        config_file: Explicit YAML file; takes the place of AGENT_CONFIG_FILE
        **overrides: Top-level values that win over every other source
    """
    path: Path | None = None
    if config_file is not None:
        path = Path(config_file)
        if not path.is_file():
            raise ConfigurationError(f"config file not found: {path}")

    overrides = {k: v for k, v in overrides.items() if v is not None}
    token = _explicit_config_file.set(path)
    try:
        settings = Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"invalid configuration: {e}") from e
    finally:
        _explicit_config_file.reset(token)

    # Fail fast on an address without a port.
    _ = settings.cluster_port
    return settings


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Raises:
        ConfigurationError: if the environment or config file is invalid
    """
    return load_settings()
