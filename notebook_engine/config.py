from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Engine-wide configuration read from NBENGINE_* environment variables."""

    # Kernel settings
    kernel_name: str = Field(default="python3", description="Name given to launched kernelspecs")
    startup_timeout: float = Field(
        default=60.0, gt=0, description="Seconds to wait for a new kernel to answer kernel_info"
    )
    shutdown_timeout: float = Field(default=5.0, gt=0)

    # Capability probes
    probe_timeout: float = Field(
        default=30.0, gt=0, description="Seconds before a single capability probe counts as failed"
    )

    # Transport listener circuit breaker
    listener_max_errors: int = Field(default=5, ge=1)
    listener_backoff: float = Field(default=1.0, ge=0, description="First retry delay; doubles per consecutive error")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_json: bool = False

    model_config = SettingsConfigDict(
        env_prefix="NBENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Process-wide settings instance."""
    return EngineSettings()


def load_settings(**overrides) -> EngineSettings:
    """Build a fresh, validated settings object; raises pydantic.ValidationError."""
    return EngineSettings(**overrides)
