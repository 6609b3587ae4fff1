"""Configuration loading and validation."""

from recordops.config.loader import (
    BatchConfig,
    Config,
    LoggingConfig,
    RetryConfig,
    StoreConfig,
    load_config,
)

__all__ = [
    # Main config
    "load_config",
    "Config",
    # Config sections
    "LoggingConfig",
    "BatchConfig",
    "RetryConfig",
    "StoreConfig",
]
