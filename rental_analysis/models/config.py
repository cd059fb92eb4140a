"""Configuration management for the remote analysis pipeline."""

import os
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


class AnalysisConfig(BaseModel):
    """Analysis pipeline configuration."""

    # Remote endpoint
    endpoint_url: str = Field(
        default="http://localhost:3001/api/analyze",
        description="RemoteEndpoint accepting POSTed business records"
    )
    service_key: str = Field(default="analysis-api", description="Circuit breaker key for the endpoint")

    # Timeouts
    request_timeout_ms: int = Field(default=20000, description="Per-attempt deadline in milliseconds")
    connect_timeout: float = Field(default=3.0, description="HTTP connect timeout in seconds")

    # Retry policy
    max_attempts: int = Field(default=3, description="Maximum attempts per analysis request")
    base_delay_ms: int = Field(default=1000, description="Base delay for exponential backoff")
    max_delay_ms: int = Field(default=10000, description="Maximum backoff delay before jitter")
    backoff_factor: float = Field(default=2.0, description="Exponential backoff multiplier")

    # Circuit breaker
    circuit_breaker_failure_threshold: int = Field(default=5, description="Failures before opening circuit")
    circuit_breaker_reset_timeout_ms: int = Field(default=30000, description="Open period before a trial call")

    # Degraded mode
    degradation_threshold: int = Field(default=3, description="Consecutive failed requests before degrading")
    degraded_cooldown_seconds: float = Field(default=300.0, description="How long degraded mode lasts")

    # Local KPI fallback
    total_cabins: int = Field(default=3, description="Cabins available, used for occupancy KPIs")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator('endpoint_url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate URL format."""
        if not v.startswith(('http://', 'https://')):
            raise ValueError(f"URL must start with http:// or https://, got: {v}")
        return v

    @field_validator('max_attempts', 'circuit_breaker_failure_threshold', 'degradation_threshold')
    @classmethod
    def validate_counts(cls, v: int, info) -> int:
        if v < 1:
            raise ValueError(f"{info.field_name} must be at least 1, got: {v}")
        return v

    @field_validator('request_timeout_ms', 'base_delay_ms', 'circuit_breaker_reset_timeout_ms')
    @classmethod
    def validate_positive_ms(cls, v: int, info) -> int:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive, got: {v}")
        return v

    @field_validator('backoff_factor')
    @classmethod
    def validate_backoff_factor(cls, v: float) -> float:
        if v <= 1:
            raise ValueError(f"backoff_factor must be greater than 1, got: {v}")
        return v

    @field_validator('total_cabins')
    @classmethod
    def validate_cabins(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"total_cabins must not be negative, got: {v}")
        return v

    @model_validator(mode='after')
    def validate_delay_bounds(self) -> "AnalysisConfig":
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= base_delay_ms ({self.base_delay_ms})"
            )
        return self

    # Environment variable overrides
    @classmethod
    def from_env(cls) -> "AnalysisConfig":
        """Create configuration with environment variable overrides."""
        config = cls()

        env_mappings = {
            "ANALYSIS_ENDPOINT_URL": "endpoint_url",
            "ANALYSIS_TIMEOUT_MS": "request_timeout_ms",
            "ANALYSIS_MAX_ATTEMPTS": "max_attempts",
            "ANALYSIS_BASE_DELAY_MS": "base_delay_ms",
            "ANALYSIS_MAX_DELAY_MS": "max_delay_ms",
            "ANALYSIS_CONNECT_TIMEOUT": "connect_timeout",
            "ANALYSIS_TOTAL_CABINS": "total_cabins",
            "ANALYSIS_LOG_LEVEL": "log_level",
        }

        for env_var, field_name in env_mappings.items():
            if env_var in os.environ:
                value = os.environ[env_var]
                field_info = cls.model_fields[field_name]
                if field_info.annotation == int:
                    setattr(config, field_name, int(value))
                elif field_info.annotation == float:
                    setattr(config, field_name, float(value))
                else:
                    setattr(config, field_name, value)

        return config


class ConfigManager:
    """Manages configuration loading with override precedence."""

    def __init__(self, config_file: Optional[Path] = None):
        self.config_file = config_file or Path("config/config.yaml")
        self._config: Optional[AnalysisConfig] = None

    def load_config(self, cli_overrides: Optional[Dict] = None) -> AnalysisConfig:
        """
        Load configuration with override precedence: CLI > ENV > YAML.

        Args:
            cli_overrides: Optional dictionary of CLI flag overrides

        Returns:
            Fully merged AnalysisConfig instance

        Raises:
            ValueError: If configuration validation fails
        """
        config_dict = {}

        if self.config_file.exists():
            with open(self.config_file, 'r') as f:
                yaml_config = yaml.safe_load(f)
                if yaml_config:
                    config_dict.update(yaml_config)

        base_config = AnalysisConfig(**config_dict)
        env_config = AnalysisConfig.from_env()

        merged_dict = base_config.model_dump()
        env_dict = env_config.model_dump()

        # Only override with env values that differ from defaults
        default_dict = AnalysisConfig().model_dump()
        for key, value in env_dict.items():
            if value != default_dict[key]:
                merged_dict[key] = value

        if cli_overrides:
            cli_overrides = {k: v for k, v in cli_overrides.items() if v is not None}
            merged_dict.update(cli_overrides)

        self._config = AnalysisConfig(**merged_dict)
        return self._config

    @property
    def config(self) -> AnalysisConfig:
        """Get the loaded configuration."""
        if self._config is None:
            self._config = self.load_config()
        return self._config
