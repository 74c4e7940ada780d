from typing import Optional
import os

from pydantic import BaseModel, Field

from deepagent.domain.models.errors import ConfigurationError
from deepagent.infrastructure.observability.logging import setup_logging


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'", variable=name) from e


def _env_timeout(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    if raw.lower() in ("none", "off", "0"):
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number of seconds, got '{raw}'", variable=name) from e


class RuntimeSettings(BaseModel):
    """Process-level settings read from the environment"""
    log_level: str = "INFO"
    log_format: str = Field("json", description="json or console")
    service_name: str = "deepagent"
    environment: str = "development"
    max_iterations: int = Field(10, ge=1)
    tool_timeout_seconds: Optional[float] = 30.0
    max_delegation_depth: int = Field(3, ge=0)

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            log_level=os.getenv("DEEPAGENT_LOG_LEVEL", "INFO"),
            log_format=os.getenv("DEEPAGENT_LOG_FORMAT", "json"),
            service_name=os.getenv("SERVICE_NAME", "deepagent"),
            environment=os.getenv("ENVIRONMENT", "development"),
            max_iterations=_env_int("DEEPAGENT_MAX_ITERATIONS", 10),
            tool_timeout_seconds=_env_timeout("DEEPAGENT_TOOL_TIMEOUT", 30.0),
            max_delegation_depth=_env_int("DEEPAGENT_MAX_DELEGATION_DEPTH", 3)
        )

    def configure_logging(self):
        """Apply the logging part of the settings"""

        setup_logging(log_level=self.log_level, log_format=self.log_format, service_name=self.service_name)
