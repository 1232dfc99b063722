"""
Configuration management for kv-offload.

Supports:
- Environment variables (prefix ``KVO_``, nested with ``__``)
- ``.env`` files
- Pydantic validation
"""

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Log level options."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class FastTierConfig(BaseSettings):
    """Fast tier (Redis Cluster) configuration."""

    model_config = SettingsConfigDict(env_prefix="KVO_FAST_")

    backend: Literal["redis", "memory"] = Field(
        default="redis", description="Fast tier implementation"
    )
    startup_nodes: str = Field(
        default="redis-1:7001",
        description="Comma-separated host:port bootstrap addresses",
    )
    connect_timeout: float = Field(default=2.0, gt=0, description="Dial timeout (s)")
    read_timeout: float = Field(default=2.0, gt=0, description="Read timeout (s)")
    write_timeout: float = Field(default=2.0, gt=0, description="Write timeout (s)")

    # In-memory backend
    memory_partitions: int = Field(default=3, ge=1, description="Partitions for memory backend")
    memory_max_bytes: int = Field(
        default=64 * 1024 * 1024,
        ge=0,
        description="Per-partition capacity for memory backend (0 = unbounded)",
    )

    @property
    def nodes(self) -> list[tuple[str, int]]:
        """Parse startup_nodes into (host, port) pairs."""
        result = []
        for item in self.startup_nodes.split(","):
            item = item.strip()
            if not item:
                continue
            host, _, port = item.rpartition(":")
            if not host:
                host, port = port, "6379"
            result.append((host, int(port)))
        return result


class ColdTierConfig(BaseSettings):
    """Cold tier configuration."""

    model_config = SettingsConfigDict(env_prefix="KVO_COLD_")

    backend: Literal["local", "hdfs"] = Field(
        default="local", description="Cold tier implementation"
    )
    root_path: Path = Field(
        default=Path("/events_overflow"),
        description="Root directory for overflow and offloaded objects",
    )
    hdfs_bin: str = Field(default="hdfs", description="HDFS CLI executable")
    command_timeout: float = Field(
        default=30.0, gt=0, description="Timeout for HDFS CLI calls (s)"
    )

    @field_validator("root_path", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        """Expand user home directory in paths."""
        return Path(v).expanduser()


class PressureConfig(BaseSettings):
    """Memory-pressure thresholds for the fast tier."""

    model_config = SettingsConfigDict(env_prefix="KVO_PRESSURE_")

    soft_threshold: float = Field(
        default=0.80,
        ge=0.0,
        le=1.0,
        description="Ingestion routes to the cold tier at or above this ratio",
    )
    force_threshold: float = Field(
        default=0.70,
        ge=0.0,
        le=1.0,
        description="Sweeper enters force mode at or above this ratio",
    )


class SweeperConfig(BaseSettings):
    """Offload sweeper configuration."""

    model_config = SettingsConfigDict(env_prefix="KVO_SWEEPER_")

    offload_after_seconds: int = Field(
        default=600, ge=0, description="Age after which records move to cold"
    )
    interval_seconds: float = Field(default=60.0, gt=0, description="Sweep interval")
    force_min_age_seconds: int = Field(
        default=5, ge=0, description="Minimum age for moves in force mode"
    )
    scan_count: int = Field(default=100, ge=1, description="SCAN page size")
    startup_attempts: int = Field(
        default=3, ge=1, description="Fast tier ping attempts before giving up"
    )


class LocalCacheConfig(BaseSettings):
    """In-process LRU cache configuration."""

    model_config = SettingsConfigDict(env_prefix="KVO_LOCAL_CACHE_")

    enabled: bool = Field(default=True, description="Enable the local LRU cache")
    capacity: int = Field(default=1024, description="Maximum cached entries")


class ServerConfig(BaseSettings):
    """HTTP server configuration."""

    model_config = SettingsConfigDict(env_prefix="KVO_SERVER_")

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=8080, ge=1, le=65535, description="Bind port")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="KVO_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Logging level",
    )
    log_format: Literal["json", "console"] = Field(
        default="json",
        description="Log output format",
    )

    fast: FastTierConfig = Field(default_factory=FastTierConfig)
    cold: ColdTierConfig = Field(default_factory=ColdTierConfig)
    pressure: PressureConfig = Field(default_factory=PressureConfig)
    sweeper: SweeperConfig = Field(default_factory=SweeperConfig)
    local_cache: LocalCacheConfig = Field(default_factory=LocalCacheConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @model_validator(mode="after")
    def check_nodes(self) -> "Settings":
        """Fast tier needs at least one bootstrap address."""
        if self.fast.backend == "redis" and not self.fast.nodes:
            raise ValueError("fast.startup_nodes must list at least one host:port")
        return self


def load_settings() -> Settings:
    """Load settings from environment and config files."""
    return Settings()


# Global settings instance (lazy loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings instance (creates on first call)."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset global settings (useful for testing)."""
    global _settings
    _settings = None
