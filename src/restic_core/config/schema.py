"""Configuration schema definitions using dataclasses.

Defines the engine settings shared by every repository handle, with
sensible defaults.
"""

from dataclasses import dataclass, field
from typing import Optional

from ..env import PROPAGATED_ENV_VARS
from ..progress import TrailingOutputPolicy
from ..runner import DEFAULT_POLL_INTERVAL, DEFAULT_TERMINATE_GRACE


@dataclass
class EngineConfig:
    """How restic is invoked.

    Attributes:
        binary: restic executable name or path
        propagate_env: Host environment variables passed through to restic
        trailing_output: "tolerate" or "strict" handling of non-JSON backup
            output (see TrailingOutputPolicy)
        terminate_grace: Seconds between SIGTERM and SIGKILL on cancellation
        poll_interval: Seconds between cancellation checks while waiting
        lock_dir: Directory for cross-process repository lock files
            (None disables cross-process locking)
    """

    binary: str = "restic"
    propagate_env: tuple[str, ...] = PROPAGATED_ENV_VARS
    trailing_output: str = TrailingOutputPolicy.TOLERATE_ON_FAILURE.value
    terminate_grace: float = DEFAULT_TERMINATE_GRACE
    poll_interval: float = DEFAULT_POLL_INTERVAL
    lock_dir: Optional[str] = None

    @property
    def trailing_output_policy(self) -> TrailingOutputPolicy:
        return TrailingOutputPolicy(self.trailing_output)


@dataclass
class Config:
    """Root configuration object.

    Attributes:
        engine: Settings for invoking restic
        log_level: Log level name for create_logger
        log_file: Path to log file (None for no file logging)
    """

    engine: EngineConfig = field(default_factory=EngineConfig)
    log_level: str = "INFO"
    log_file: Optional[str] = None
