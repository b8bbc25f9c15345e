"""TOML configuration loading and validation.

Handles config file discovery, parsing, and validation with helpful error messages.
"""

import logging
import tomllib
from pathlib import Path
from typing import Any

from ..__logger__ import create_logger
from ..progress import TrailingOutputPolicy
from .schema import Config, EngineConfig


logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


# Config file search paths in priority order
CONFIG_PATHS = [
    Path.home() / ".config" / "restic-core" / "config.toml",
    Path("/etc/restic-core/config.toml"),
]

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def find_config_file(explicit_path: str | None = None) -> Path | None:
    """Find configuration file.

    Args:
        explicit_path: Explicitly specified config path (highest priority)

    Returns:
        Path to config file, or None if not found
    """
    if explicit_path:
        path = Path(explicit_path)
        if path.exists():
            return path
        raise ConfigError(f"Config file not found: {explicit_path}")

    for path in CONFIG_PATHS:
        if path.exists():
            return path

    return None


def _parse_engine(data: dict[str, Any]) -> EngineConfig:
    """Parse engine configuration from dict."""
    defaults = EngineConfig()

    trailing_output = data.get("trailing_output", defaults.trailing_output)
    valid = [p.value for p in TrailingOutputPolicy]
    if trailing_output not in valid:
        raise ConfigError(
            f"Invalid trailing_output {trailing_output!r}, expected one of {valid}"
        )

    propagate_env = data.get("propagate_env", defaults.propagate_env)
    if isinstance(propagate_env, str) or not all(
        isinstance(name, str) for name in propagate_env
    ):
        raise ConfigError("propagate_env must be a list of variable names")

    for key in ("terminate_grace", "poll_interval"):
        value = data.get(key, getattr(defaults, key))
        if not isinstance(value, (int, float)) or value <= 0:
            raise ConfigError(f"{key} must be a positive number, got {value!r}")

    return EngineConfig(
        binary=data.get("binary", defaults.binary),
        propagate_env=tuple(propagate_env),
        trailing_output=trailing_output,
        terminate_grace=float(data.get("terminate_grace", defaults.terminate_grace)),
        poll_interval=float(data.get("poll_interval", defaults.poll_interval)),
        lock_dir=data.get("lock_dir"),
    )


def _validate_config(config: Config) -> list[str]:
    """Validate configuration and return list of warnings."""
    warnings = []

    if "PATH" not in config.engine.propagate_env and "/" not in config.engine.binary:
        warnings.append(
            f"PATH is not propagated; binary '{config.engine.binary}' "
            "may not be found without an absolute path"
        )

    if config.engine.lock_dir and not Path(config.engine.lock_dir).is_dir():
        warnings.append(f"Lock directory '{config.engine.lock_dir}' does not exist")

    if config.engine.poll_interval > config.engine.terminate_grace:
        warnings.append("poll_interval is longer than terminate_grace")

    return warnings


def load_config(path: Path | str) -> tuple[Config, list[str]]:
    """Load and validate configuration from TOML file.

    Args:
        path: Path to configuration file

    Returns:
        Tuple of (Config object, list of warnings)

    Raises:
        ConfigError: If config is invalid or cannot be parsed
    """
    path = Path(path)

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML syntax: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read config file: {e}")

    engine = _parse_engine(data.get("engine", {}))

    logging_data = data.get("logging", {})
    log_level = str(logging_data.get("level", "INFO")).upper()
    if log_level not in _LOG_LEVELS:
        raise ConfigError(f"Invalid log level: {log_level}")

    config = Config(
        engine=engine,
        log_level=log_level,
        log_file=logging_data.get("file"),
    )

    # Validate and collect warnings
    warnings = _validate_config(config)

    return config, warnings


def configure(explicit_path: str | None = None) -> Config:
    """Load the configuration in effect and set up logging from it.

    Falls back to defaults when no config file is found.
    """
    path = find_config_file(explicit_path)
    if path is None:
        config, warnings = Config(), []
    else:
        config, warnings = load_config(path)

    create_logger(config.log_level, config.log_file)
    if path is not None:
        logger.debug("Loaded configuration from %s", path)
    for warning in warnings:
        logger.warning("Config: %s", warning)
    return config


def generate_example_config() -> str:
    """Generate example configuration file content."""
    return """# restic-core configuration

[engine]
binary = "restic"
# Host variables passed through to restic
propagate_env = ["PATH", "HOME", "XDG_CACHE_HOME"]
# "tolerate": non-JSON text after the last record of a failed backup is
# kept as diagnostic output. "strict": any non-JSON line is an error.
trailing_output = "tolerate"
terminate_grace = 5.0
poll_interval = 0.1
# Serialize access across processes sharing a repository
# lock_dir = "/run/restic-core"

[logging]
level = "INFO"
# file = "/var/log/restic-core.log"
"""
