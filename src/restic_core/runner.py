"""Launch restic subprocesses under a cancellable context.

Two modes are provided. ``run_buffered`` runs a command to completion and
returns its combined stdout/stderr. ``StreamedProcess`` starts a command
whose stdout and stderr share one OS pipe; a reader drains the pipe while
``StreamedProcess.wait`` blocks on exit and then closes the write end so
the reader always observes end-of-stream.
"""

import logging
import os
import shlex
import subprocess
import threading
from dataclasses import dataclass, field

from .context import Cancelled, Context
from .env import env_to_mapping
from .errors import CommandCancelledError, CommandError

logger = logging.getLogger(__name__)

DEFAULT_TERMINATE_GRACE = 5.0
DEFAULT_POLL_INTERVAL = 0.1


@dataclass
class Invocation:
    """Binary, arguments and environment for one restic call."""

    binary: str
    args: list[str] = field(default_factory=list)
    env: list[str] = field(default_factory=list)

    @property
    def argv(self) -> list[str]:
        return [self.binary, *self.args]

    def __str__(self) -> str:
        # Environment is left out, it holds the repository password
        return shlex.join(self.argv)


def _spawn(invocation: Invocation, **kwargs) -> subprocess.Popen:
    logger.debug("Executing: %s", invocation)
    try:
        return subprocess.Popen(
            invocation.argv,
            env=env_to_mapping(invocation.env),
            stdin=subprocess.DEVNULL,
            **kwargs,
        )
    except OSError as e:
        logger.error("Failed to start %s: %s", invocation.binary, e)
        raise CommandError(invocation.argv, b"", e) from e


def terminate(proc: subprocess.Popen, grace: float = DEFAULT_TERMINATE_GRACE) -> None:
    """Send SIGTERM, then SIGKILL if the process outlives the grace period."""
    if proc.poll() is not None:
        return
    logger.debug("Terminating pid %d", proc.pid)
    proc.terminate()
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning("pid %d ignored SIGTERM, killing", proc.pid)
        proc.kill()
        proc.wait()


def wait_cancellable(
    proc: subprocess.Popen,
    ctx: Context,
    terminate_grace: float = DEFAULT_TERMINATE_GRACE,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> int:
    """Wait for proc to exit, terminating it if ctx is cancelled first.

    Returns:
        The process exit status

    Raises:
        Cancelled: ctx was cancelled; the process has been reaped
    """
    while True:
        if ctx.cancelled:
            terminate(proc, terminate_grace)
            raise Cancelled(ctx.err())
        try:
            return proc.wait(timeout=poll_interval)
        except subprocess.TimeoutExpired:
            continue


def run_buffered(
    invocation: Invocation,
    ctx: Context,
    terminate_grace: float = DEFAULT_TERMINATE_GRACE,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> bytes:
    """Run a command to completion and return its combined output.

    Raises:
        CommandCancelledError: ctx was cancelled; carries partial output
        CommandError: the command could not start or exited non-zero
    """
    if ctx.cancelled:
        raise CommandCancelledError(invocation.argv, b"", Cancelled(ctx.err()))

    proc = _spawn(invocation, stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
    with proc:
        while True:
            try:
                output, _ = proc.communicate(timeout=poll_interval)
                break
            except subprocess.TimeoutExpired:
                if not ctx.cancelled:
                    continue
            proc.terminate()
            try:
                output, _ = proc.communicate(timeout=terminate_grace)
            except subprocess.TimeoutExpired:
                proc.kill()
                output, _ = proc.communicate()
            raise CommandCancelledError(
                invocation.argv, output, Cancelled(ctx.err())
            )

    if proc.returncode != 0:
        raise CommandError(
            invocation.argv,
            output,
            subprocess.CalledProcessError(proc.returncode, invocation.argv),
        )
    return output


class StreamedProcess:
    """A running command whose stdout and stderr are joined into one pipe.

    The parent keeps the write end open until ``wait`` has seen the process
    exit, then closes it exactly once.
    """

    def __init__(
        self,
        invocation: Invocation,
        terminate_grace: float = DEFAULT_TERMINATE_GRACE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.invocation = invocation
        self.terminate_grace = terminate_grace
        self.poll_interval = poll_interval

        read_fd, write_fd = os.pipe()
        try:
            self.proc = _spawn(invocation, stdout=write_fd, stderr=write_fd)
        except BaseException:
            os.close(read_fd)
            os.close(write_fd)
            raise
        self.stream = os.fdopen(read_fd, "rb")
        self._write_fd = write_fd
        self._writer_closed = False
        self._writer_lock = threading.Lock()

    def close_writer(self) -> None:
        with self._writer_lock:
            if self._writer_closed:
                return
            os.close(self._write_fd)
            self._writer_closed = True

    def wait(self, ctx: Context) -> int:
        """Wait for exit, then close the write end of the pipe.

        Raises:
            Cancelled: ctx was cancelled and the process was terminated
        """
        try:
            returncode = wait_cancellable(
                self.proc, ctx, self.terminate_grace, self.poll_interval
            )
            logger.debug("%s exited with status %d", self.invocation.binary, returncode)
            return returncode
        finally:
            self.close_writer()

    def close(self) -> None:
        """Release both pipe ends and reap the process if still running."""
        self.close_writer()
        self.stream.close()
        if self.proc.poll() is None:
            terminate(self.proc, self.terminate_grace)

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()
