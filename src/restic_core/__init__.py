"""restic-core: restic_core/__init__.py."""

from .context import Context, background
from .errors import (
    CommandCancelledError,
    CommandError,
    MultiError,
    OperationCancelledError,
    OutputDecodeError,
    PreconditionError,
    RepositoryInitError,
    ResticError,
)
from .options import BackupOptions, GenericOptions
from .progress import ErrorEvent, StatusEvent, SummaryEvent, TrailingOutputPolicy
from .decode import LsEntry, Snapshot
from .display import RichProgressReporter
from .repo import Repo

__version__ = "0.1.0"

__all__ = [
    "Repo",
    "Context",
    "background",
    "BackupOptions",
    "GenericOptions",
    "StatusEvent",
    "SummaryEvent",
    "ErrorEvent",
    "TrailingOutputPolicy",
    "Snapshot",
    "LsEntry",
    "RichProgressReporter",
    "ResticError",
    "PreconditionError",
    "CommandError",
    "CommandCancelledError",
    "OperationCancelledError",
    "OutputDecodeError",
    "RepositoryInitError",
    "MultiError",
]
