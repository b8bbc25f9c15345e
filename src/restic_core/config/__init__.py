"""Configuration system for restic-core.

This module provides TOML-based configuration loading, validation,
and schema definitions for the restic engine settings.
"""

from .loader import (
    ConfigError,
    configure,
    find_config_file,
    generate_example_config,
    load_config,
)
from .schema import Config, EngineConfig

__all__ = [
    "Config",
    "EngineConfig",
    "load_config",
    "configure",
    "find_config_file",
    "generate_example_config",
    "ConfigError",
]
