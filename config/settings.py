"""
Configuration management for the tracking engine host.

Settings are loaded from environment variables and layered .env files
(``.env`` then ``.env.<environment>``) using pydantic-settings. Every
tunable threshold of the tracking components is a field here; the
``*_config()`` builders turn them into the component config dataclasses,
which validate their own ranges.
"""

import os
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from driving.tracker import AverageSpeedMode, DrivingConfig
from errors.exceptions import InvalidConfigurationError
from motion.classifier import MotionClassifierConfig
from policy.profiles import PolicyConfig
from sync.pipeline import SyncConfig
from sync.shaping import ShapingConfig


class Environment(str, Enum):
    """Supported deployment environments."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def _detect_environment() -> Environment:
    """
    Detect the current environment from the ENVIRONMENT variable.

    Returns:
        Environment: The detected environment, defaults to DEVELOPMENT if not set.
    """
    env_value = os.environ.get("ENVIRONMENT", "development").lower().strip()
    try:
        return Environment(env_value)
    except ValueError:
        return Environment.DEVELOPMENT


def _get_env_files(environment: Environment) -> Tuple[str, ...]:
    """
    Get the .env files to load for the given environment, base file first.
    """
    env_file_map = {
        Environment.DEVELOPMENT: ".env.development",
        Environment.STAGING: ".env.staging",
        Environment.PRODUCTION: ".env.production",
    }
    return (".env", env_file_map.get(environment, ".env.development"))


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Nothing is required: without a configured Elasticsearch endpoint or
    Redis URL the host delivers to memory and keeps sessions in memory.
    Production requires both real sinks.
    """

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment (development, staging, production)"
    )
    background_limited: bool = Field(
        default=False,
        description="Platform restricts background execution (enables the composite strategy)"
    )

    # Motion classification
    motion_window_size: int = Field(default=20, ge=1, le=1000)
    stationary_speed_threshold: float = Field(default=1.0, gt=0)
    walking_speed_threshold: float = Field(default=2.5, gt=0)
    running_speed_threshold: float = Field(default=4.0, gt=0)
    driving_speed_threshold: float = Field(default=5.0, gt=0)
    driving_acceleration_threshold: float = Field(default=2.0, ge=0)
    walking_acceleration_variance: float = Field(default=1.5, ge=0)
    driving_confirmation_window: float = Field(default=30.0, gt=0)
    stopped_confirmation_window: float = Field(default=120.0, gt=0)
    activity_confirmation_window: float = Field(default=30.0, gt=0)

    # Tracking policy
    policy_evaluation_interval: float = Field(default=60.0, gt=0)
    composite_geofence_radius: float = Field(default=100.0, gt=0, description="Meters")
    composite_responsiveness: float = Field(default=120.0, gt=0, description="Seconds")
    composite_batch_size: int = Field(default=10, ge=1)
    composite_flush_interval: float = Field(default=300.0, gt=0)
    composite_max_wait: float = Field(default=600.0, gt=0)
    composite_passive_enabled: bool = Field(default=True)
    degraded_network_flush_factor: float = Field(default=2.0, ge=1)

    # Sync pipeline
    sync_max_batch_size: int = Field(default=10, ge=1)
    sync_max_retries: int = Field(default=3, ge=0)
    sync_interval: float = Field(default=15.0, gt=0)
    sync_allow_poor_quality: bool = Field(default=False)
    sync_allow_metered: bool = Field(default=True)
    sync_min_bandwidth_kbps: float = Field(default=0.0, ge=0)
    sync_cooldown_floor: float = Field(default=1.0, gt=0)
    sync_cooldown_ceiling: float = Field(default=300.0, gt=0)
    sync_transmit_timeout: float = Field(default=30.0, gt=0)
    sync_max_queue_size: int = Field(default=10_000, ge=1)
    sync_shutdown_flush_timeout: float = Field(default=5.0, ge=0, description="Final flush grace on stop (s)")
    shaping_poor_level: float = Field(default=0.8, ge=0, lt=1)
    shaping_fair_level: float = Field(default=0.5, ge=0, lt=1)

    # Driving sessions
    driving_user_ref: str = Field(default="default", description="Identity recorded on sessions")
    hard_braking_threshold: float = Field(default=3.0, gt=0, description="m/s drop between fixes")
    rapid_acceleration_threshold: float = Field(default=3.0, gt=0, description="m/s gain between fixes")
    speeding_threshold: float = Field(default=30.0, gt=0, description="m/s")
    turn_rotation_threshold: float = Field(default=0.5, gt=0, description="rad/s")
    turn_min_duration: float = Field(default=1.0, ge=0)
    average_speed_mode: AverageSpeedMode = Field(default=AverageSpeedMode.ROUTE)
    recent_speed_window: int = Field(default=20, ge=1)

    # Delivery sink
    transmitter_type: str = Field(
        default="memory",
        description="Sink for queued items: 'memory' or 'elasticsearch'"
    )
    elastic_endpoint: Optional[str] = Field(default=None, description="Elasticsearch endpoint URL")
    elastic_api_key: Optional[str] = Field(default=None, description="Elasticsearch API key")
    elastic_index: str = Field(default="position-updates")

    # Session store
    session_store_type: str = Field(
        default="memory",
        description="Driving session store: 'memory' or 'redis'"
    )
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")
    session_ttl_days: int = Field(default=30, ge=1, le=365)

    # Observability
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    otel_endpoint: Optional[str] = Field(default=None, description="OpenTelemetry collector endpoint URL")
    otel_service_name: str = Field(default="tracking-engine")

    # CORS
    cors_origins: List[str] = Field(default=["http://localhost:3000"])

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("elastic_endpoint")
    @classmethod
    def validate_elastic_endpoint(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError("elastic_endpoint must be a valid HTTP/HTTPS URL")
        return v

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not (v.startswith("redis://") or v.startswith("rediss://") or v.startswith("unix://")):
            raise ValueError("redis_url must start with redis://, rediss:// or unix://")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.strip().upper()
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(valid_levels))}")
        return v

    @field_validator("transmitter_type")
    @classmethod
    def validate_transmitter_type(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in {"memory", "elasticsearch"}:
            raise ValueError("transmitter_type must be 'memory' or 'elasticsearch'")
        return v

    @field_validator("session_store_type")
    @classmethod
    def validate_session_store_type(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in {"memory", "redis"}:
            raise ValueError("session_store_type must be 'memory' or 'redis'")
        return v

    @field_validator("cors_origins")
    @classmethod
    def validate_cors_origins(cls, v: List[str]) -> List[str]:
        """Reject wildcards and non-HTTP origins."""
        validated_origins = []
        for origin in v:
            origin = origin.strip()
            if "*" in origin:
                raise ValueError(f"Wildcard patterns are not allowed in CORS origins: {origin}")
            if not (origin.startswith("http://") or origin.startswith("https://")):
                raise ValueError(
                    f"Invalid CORS origin format: {origin}. Must start with http:// or https://"
                )
            validated_origins.append(origin)
        return validated_origins

    @model_validator(mode="after")
    def validate_sinks(self) -> "Settings":
        """A selected sink needs its connection setting."""
        if self.transmitter_type == "elasticsearch" and not self.elastic_endpoint:
            raise ValueError("elastic_endpoint is required when transmitter_type is 'elasticsearch'")
        if self.session_store_type == "redis" and not self.redis_url:
            raise ValueError("redis_url is required when session_store_type is 'redis'")
        if self.environment == Environment.PRODUCTION:
            if self.transmitter_type == "memory":
                raise ValueError("production requires transmitter_type 'elasticsearch'")
            if self.session_store_type == "memory":
                raise ValueError("production requires session_store_type 'redis'")
        return self

    # Component configs

    def motion_config(self) -> MotionClassifierConfig:
        return MotionClassifierConfig(
            window_size=self.motion_window_size,
            stationary_speed_threshold=self.stationary_speed_threshold,
            walking_speed_threshold=self.walking_speed_threshold,
            running_speed_threshold=self.running_speed_threshold,
            driving_speed_threshold=self.driving_speed_threshold,
            driving_acceleration_threshold=self.driving_acceleration_threshold,
            walking_acceleration_variance=self.walking_acceleration_variance,
            driving_confirmation_window=self.driving_confirmation_window,
            stopped_confirmation_window=self.stopped_confirmation_window,
            activity_confirmation_window=self.activity_confirmation_window,
        )

    def policy_config(self) -> PolicyConfig:
        return PolicyConfig(
            geofence_radius_meters=self.composite_geofence_radius,
            geofence_responsiveness=self.composite_responsiveness,
            composite_batch_size=self.composite_batch_size,
            composite_flush_interval=self.composite_flush_interval,
            composite_max_wait=self.composite_max_wait,
            passive_enabled=self.composite_passive_enabled,
            degraded_network_flush_factor=self.degraded_network_flush_factor,
            evaluation_interval=self.policy_evaluation_interval,
        )

    def sync_config(self) -> SyncConfig:
        return SyncConfig(
            max_batch_size=self.sync_max_batch_size,
            max_retries=self.sync_max_retries,
            sync_interval=self.sync_interval,
            allow_poor_quality_sync=self.sync_allow_poor_quality,
            allow_metered_sync=self.sync_allow_metered,
            min_bandwidth_kbps=self.sync_min_bandwidth_kbps,
            cooldown_floor=self.sync_cooldown_floor,
            cooldown_ceiling=self.sync_cooldown_ceiling,
            transmit_timeout=self.sync_transmit_timeout,
            max_queue_size=self.sync_max_queue_size,
            shutdown_flush_timeout=self.sync_shutdown_flush_timeout,
            shaping=ShapingConfig(
                poor_level=self.shaping_poor_level,
                fair_level=self.shaping_fair_level,
            ),
        )

    def driving_config(self) -> DrivingConfig:
        return DrivingConfig(
            user_ref=self.driving_user_ref,
            hard_braking_threshold=self.hard_braking_threshold,
            rapid_acceleration_threshold=self.rapid_acceleration_threshold,
            speeding_threshold=self.speeding_threshold,
            turn_rotation_threshold=self.turn_rotation_threshold,
            turn_min_duration=self.turn_min_duration,
            average_speed_mode=self.average_speed_mode,
            recent_window_size=self.recent_speed_window,
        )


class ConfigurationError(Exception):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, missing_fields: Optional[List[str]] = None,
                 invalid_fields: Optional[dict] = None):
        self.message = message
        self.missing_fields = missing_fields or []
        self.invalid_fields = invalid_fields or {}
        super().__init__(self.format_error_message())

    def format_error_message(self) -> str:
        """Format a descriptive error message listing all issues."""
        parts = [self.message]

        if self.missing_fields:
            parts.append(f"\nMissing required fields: {', '.join(self.missing_fields)}")

        if self.invalid_fields:
            invalid_parts = [f"  - {field}: {error}" for field, error in self.invalid_fields.items()]
            parts.append("\nInvalid field values:\n" + "\n".join(invalid_parts))

        return "".join(parts)


def create_settings_for_environment(environment: Optional[Environment] = None) -> Settings:
    """
    Create Settings for a specific environment.

    Args:
        environment: Optional environment override. If not provided, detected from
                    the ENVIRONMENT variable.

    Raises:
        ConfigurationError: If settings are missing or invalid.
    """
    if environment is None:
        environment = _detect_environment()

    env_files = _get_env_files(environment)
    existing_env_files = [env_file for env_file in env_files if Path(env_file).exists()]
    if not existing_env_files:
        existing_env_files = list(env_files)

    try:
        class EnvironmentSettings(Settings):
            model_config = SettingsConfigDict(
                env_file=tuple(existing_env_files),
                env_file_encoding="utf-8",
                case_sensitive=False,
                extra="ignore"
            )

        return EnvironmentSettings(environment=environment)
    except Exception as e:
        missing_fields = []
        invalid_fields = {}

        if hasattr(e, "errors"):
            for error in e.errors():
                field_name = ".".join(str(loc) for loc in error.get("loc", [])) or "settings"
                error_type = error.get("type", "")
                error_msg = error.get("msg", str(error))

                if error_type == "missing":
                    missing_fields.append(field_name)
                else:
                    invalid_fields[field_name] = error_msg

        raise ConfigurationError(
            f"Failed to load configuration for environment '{environment.value}'",
            missing_fields=missing_fields,
            invalid_fields=invalid_fields
        ) from e


_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the application settings, loading them on first use.

    Raises:
        ConfigurationError: If settings are missing or invalid.
    """
    global _settings_cache

    if _settings_cache is None:
        _settings_cache = create_settings_for_environment()

    return _settings_cache


def clear_settings_cache() -> None:
    """Forget cached settings so the next get_settings() reloads them."""
    global _settings_cache
    _settings_cache = None


def validate_startup(settings: Optional[Settings] = None) -> None:
    """
    Validate settings at application startup.

    Builds every component config so that out-of-range combinations the
    field constraints cannot see (e.g. walking threshold above running
    threshold) fail before the engine is constructed.

    Raises:
        ConfigurationError: If any component config is invalid.
    """
    settings = settings or get_settings()
    validation_errors = {}

    for builder in (settings.motion_config, settings.policy_config,
                    settings.sync_config, settings.driving_config):
        try:
            builder()
        except InvalidConfigurationError as e:
            validation_errors[e.field] = e.reason

    if validation_errors:
        raise ConfigurationError(
            "Configuration validation failed during startup",
            invalid_fields=validation_errors
        )


def get_environment_info() -> dict:
    """Detected environment and the .env files checked and loaded."""
    environment = _detect_environment()
    env_files = _get_env_files(environment)

    return {
        "environment": environment.value,
        "env_files_checked": list(env_files),
        "env_files_loaded": [f for f in env_files if Path(f).exists()],
    }
