"""Configuration loader for recordops.

Loads YAML configuration files and validates them against Pydantic models.
"""

from pathlib import Path
from typing import Any, Dict, List, Set

import yaml
from pydantic import BaseModel, Field, ValidationError

from recordops.errors import DEFAULT_RETRYABLE_CODES, ConfigurationError
from recordops.models import StatusCode


class LoggingConfig(BaseModel):
    """Logging configuration."""

    log_level: str = Field(default="INFO", pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_format: str = Field(default="console", pattern=r"^(json|console)$")


class BatchConfig(BaseModel):
    """Batch executor configuration."""

    max_batch_size: int = Field(default=200, ge=1, le=100000)


class RetryConfig(BaseModel):
    """Configuration for retry-after-correction."""

    budget: int = Field(default=3, ge=1, description="Maximum resubmissions per record")
    base_delay_ms: int = Field(default=0, ge=0, description="Base delay in milliseconds")
    max_delay_ms: int = Field(default=30000, ge=0, description="Maximum delay in milliseconds")
    exponential_base: float = Field(default=2.0, ge=1.0, description="Exponential backoff base")
    jitter: bool = Field(default=True, description="Add random jitter to delays")
    jitter_ratio: float = Field(default=0.1, ge=0.0, le=1.0, description="Jitter ratio (0-1)")
    retryable_codes: Set[StatusCode] = Field(
        default_factory=lambda: set(DEFAULT_RETRYABLE_CODES),
        description="Error kinds that may be corrected and resubmitted",
    )


class StoreConfig(BaseModel):
    """In-memory store configuration."""

    namespace: str = Field(default="default")
    required_fields: Dict[str, List[str]] = Field(
        default_factory=dict, description="Required field names per record type"
    )
    unique_fields: Dict[str, List[str]] = Field(
        default_factory=dict, description="Fields whose values must be unique per record type"
    )


class Config(BaseModel):
    """Complete recordops configuration."""

    version: str = Field(default="1.0")
    environment: str = Field(default="development")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)


def load_config(path: Path | str) -> Config:
    """Load configuration from a YAML file or a directory.

    A directory is expected to hold ``recordops.yaml``; an
    ``environments/<environment>.yaml`` next to the main file is merged over
    it when present.

    Args:
        path: Configuration file or directory.

    Returns:
        Validated Config object.

    Raises:
        FileNotFoundError: If the path doesn't exist.
        ConfigurationError: If the configuration is invalid.
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Config path not found: {path}")

    if path.is_dir():
        config_dir = path
        main_file = path / "recordops.yaml"
    else:
        config_dir = path.parent
        main_file = path

    data = _read_yaml(main_file) if main_file.exists() else {}

    env = data.get("environment", "development")
    env_file = config_dir / "environments" / f"{env}.yaml"
    if env_file.exists():
        _deep_merge(data, _read_yaml(env_file))

    try:
        return Config(**data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration in {main_file}",
            details={"errors": e.errors(include_url=False)},
        ) from e


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Malformed YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Top level of {path} must be a mapping")
    return data


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    """Deep merge override into base dictionary."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
