"""
Configuration management for ThumbPilot.

Supports loading from environment variables and YAML files.
All tunables of the optimization engine live here so that a deployment
can adjust cadence, thresholds and dependency budgets without code changes.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from thumbpilot.common.exceptions import ConfigError


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------

class DatabaseSettings(BaseSettings):
    """PostgreSQL configuration."""

    host: str = "localhost"
    port: int = 5432
    name: str = "thumbpilot"
    user: str = "thumbpilot"
    password: str = ""
    pool_size: int = 10
    max_overflow: int = 20

    @property
    def async_url(self) -> str:
        return f"postgresql+asyncpg://{self.user}:{self.password}@{self.host}:{self.port}/{self.name}"

    @property
    def sync_url(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.name}"


class RedisSettings(BaseSettings):
    """Redis configuration (notification pub/sub)."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: str = ""
    pool_size: int = 10

    @property
    def url(self) -> str:
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class ServerSettings(BaseSettings):
    """Uvicorn / HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    # The scheduler guard is process-local, so one worker per deployment.
    workers: int = 1
    reload: bool = False


# ---------------------------------------------------------------------------
# Scheduling & Resilience
# ---------------------------------------------------------------------------

class SchedulerSettings(BaseSettings):
    """Periodic optimization sweep."""

    enabled: bool = True
    interval_minutes: float = 30.0


class RetrySettings(BaseSettings):
    """Retry-with-backoff budget for external calls."""

    max_retries: int = 3
    initial_delay: float = 1.0   # seconds
    max_delay: float = 30.0      # seconds
    backoff_multiplier: float = 2.0


class DependencySettings(BaseSettings):
    """Rate limiter + circuit breaker settings for one external dependency."""

    min_interval: float = 0.2    # seconds between the end of one call and the next
    failure_threshold: int = 5
    reset_timeout: float = 60.0  # seconds


class ResilienceSettings(BaseSettings):
    """Per-dependency resilience budgets."""

    retry: RetrySettings = Field(default_factory=RetrySettings)
    platform: DependencySettings = Field(default_factory=DependencySettings)
    generator: DependencySettings = Field(
        default_factory=lambda: DependencySettings(
            min_interval=0.1, failure_threshold=3, reset_timeout=30.0
        )
    )


# ---------------------------------------------------------------------------
# Optimization Engine
# ---------------------------------------------------------------------------

class EngineSettings(BaseSettings):
    """Campaign orchestration and settle-decision tunables."""

    # Creative batches
    initial_variant_count: int = 6
    iteration_variant_count: int = 3

    # Cadence
    first_iteration_delay_hours: float = 4.0
    default_max_iterations: int = 20
    default_iterations_per_day: int = 5
    analytics_lookback_days: int = 7

    # Decision procedure: "velocity" (views/hour over rotations) or
    # "proportion" (impression/click z-test)
    decision_method: Literal["velocity", "proportion"] = "velocity"
    confidence_threshold: float = 0.95

    # Proportion test
    min_impressions_per_variant: int = 500

    # Velocity heuristic
    min_velocity_window_minutes: float = 10.0
    min_rotations_per_variant: int = 2
    min_exposure_hours_per_variant: float = 2.0

    # Diminishing-returns early exit
    early_exit_min_iteration: int = 5
    early_exit_min_rotations: int = 3
    early_exit_max_improvement: float = 0.05
    early_exit_min_confidence: float = 0.70


# ---------------------------------------------------------------------------
# External Services
# ---------------------------------------------------------------------------

class PlatformSettings(BaseSettings):
    """Video platform (YouTube) API configuration."""

    data_api_url: str = "https://www.googleapis.com/youtube/v3"
    upload_api_url: str = "https://www.googleapis.com/upload/youtube/v3"
    analytics_api_url: str = "https://youtubeanalytics.googleapis.com/v2"
    access_token: str = ""
    timeout: float = 30.0
    reference_frame_count: int = 4


class GeneratorSettings(BaseSettings):
    """Creative generator service configuration."""

    base_url: str = "http://localhost:8100"
    api_key: str = ""
    timeout: float = 120.0


# ---------------------------------------------------------------------------
# Observability
# ---------------------------------------------------------------------------

class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["json", "console"] = "json"


class MonitoringSettings(BaseSettings):
    """Prometheus / monitoring configuration."""

    enabled: bool = True


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------

class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="THUMBPILOT_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Application
    app_name: str = "ThumbPilot"
    app_version: str = "0.1.0"
    debug: bool = False
    env: Literal["dev", "prod", "test"] = "dev"

    # Nested settings
    server: ServerSettings = Field(default_factory=ServerSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    resilience: ResilienceSettings = Field(default_factory=ResilienceSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    platform: PlatformSettings = Field(default_factory=PlatformSettings)
    generator: GeneratorSettings = Field(default_factory=GeneratorSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        if v not in ("dev", "prod", "test"):
            raise ValueError(f"Invalid environment: {v}")
        return v


# ---------------------------------------------------------------------------
# YAML Loader
# ---------------------------------------------------------------------------

def load_yaml_config(config_path: Path) -> dict:
    """Load configuration from YAML file."""
    if not config_path.exists():
        return {}
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}", details={"error": str(e)}) from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    return data


def merge_configs(base: dict, override: dict) -> dict:
    """Deep-merge two configuration dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_configs(result[key], value)
        else:
            result[key] = value
    return result


_SECTION_CLASSES: dict[str, type[BaseSettings]] = {
    "server": ServerSettings,
    "database": DatabaseSettings,
    "redis": RedisSettings,
    "scheduler": SchedulerSettings,
    "resilience": ResilienceSettings,
    "engine": EngineSettings,
    "platform": PlatformSettings,
    "generator": GeneratorSettings,
    "logging": LoggingSettings,
    "monitoring": MonitoringSettings,
}


@lru_cache
def get_settings() -> Settings:
    """
    Get application settings.

    Loads from:
    1. configs/base.yaml (base configuration)
    2. configs/{env}.yaml (environment-specific overrides)
    3. Environment variables (highest priority)
    """
    import os

    env = os.getenv("THUMBPILOT_ENV", "dev")

    config_dir = Path(__file__).parent.parent.parent / "configs"

    base_config = load_yaml_config(config_dir / "base.yaml")
    env_config = load_yaml_config(config_dir / f"{env}.yaml")
    merged = merge_configs(base_config, env_config)

    # Flatten nested config for Pydantic
    flat_config: dict = {}
    if "app" in merged:
        flat_config["app_name"] = merged["app"].get("name", "ThumbPilot")
        flat_config["app_version"] = merged["app"].get("version", "0.1.0")
        flat_config["debug"] = merged["app"].get("debug", False)

    flat_config["env"] = env

    # pydantic-settings gives init kwargs higher priority than env vars,
    # so env-var overrides are merged into the YAML dict first.
    for section_key, settings_cls in _SECTION_CLASSES.items():
        section_data = dict(merged.get(section_key, {}))

        # THUMBPILOT_SECTION__FIELD → field (one level of nesting)
        prefix = f"THUMBPILOT_{section_key.upper()}__"
        for env_key, env_value in os.environ.items():
            if env_key.startswith(prefix):
                field_name = env_key[len(prefix):].lower()
                if "__" not in field_name:
                    section_data[field_name] = env_value

        flat_config[section_key] = settings_cls(**section_data)

    return Settings(**flat_config)


# Convenience alias
settings = get_settings()
