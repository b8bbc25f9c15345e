"""Exception types raised by restic_core.

Every failure reaching a caller is a ``ResticError``. Failures tied to a
subprocess invocation are ``CommandError`` instances carrying the command
line and whatever output was captured before the failure.
"""

import shlex
from typing import Optional, Sequence

# Captured output beyond this many bytes is elided in str() only
_MAX_OUTPUT_IN_MESSAGE = 4096


class ResticError(Exception):
    """Base class for all restic_core errors."""

    pass


class PreconditionError(ResticError, ValueError):
    """An operation was rejected before any subprocess was spawned."""

    pass


class CommandError(ResticError):
    """A restic invocation failed.

    Attributes:
        args_list: The full argument vector, binary first
        output: Combined stdout/stderr captured before the failure
        cause: The underlying exception (CalledProcessError, OSError, ...)
    """

    def __init__(
        self,
        args_list: Sequence[str],
        output: bytes = b"",
        cause: Optional[BaseException] = None,
    ) -> None:
        self.args_list = list(args_list)
        self.output = bytes(output or b"")
        self.cause = cause
        super().__init__(self._summary())

    def _summary(self) -> str:
        return f"command {self.command_line!r} failed: {self.cause}"

    @property
    def command_line(self) -> str:
        return shlex.join(self.args_list)

    @property
    def output_text(self) -> str:
        return self.output.decode("utf-8", errors="replace")

    @property
    def returncode(self) -> Optional[int]:
        """Exit status of the process, if it ran to completion."""
        return getattr(self.cause, "returncode", None)

    def __str__(self) -> str:
        text = self._summary()
        if self.output:
            output = self.output_text
            if len(output) > _MAX_OUTPUT_IN_MESSAGE:
                output = "..." + output[-_MAX_OUTPUT_IN_MESSAGE:]
            text += "\nOutput:\n" + output
        return text


class OperationCancelledError(ResticError):
    """The caller's context was cancelled before the operation finished."""

    pass


class CommandCancelledError(CommandError, OperationCancelledError):
    """The context was cancelled or its deadline passed while restic ran."""

    pass


class OutputDecodeError(CommandError):
    """restic exited cleanly but its output could not be interpreted."""

    pass


class RepositoryInitError(ResticError):
    """Lazy repository initialization failed; see __cause__."""

    pass


class MultiError(ResticError):
    """Several independent failures from one operation, in order."""

    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors = list(errors)
        super().__init__(self.errors)

    def __str__(self) -> str:
        lines = [f"{len(self.errors)} errors occurred:"]
        for err in self.errors:
            lines.append(f"  * {err}")
        return "\n".join(lines)
