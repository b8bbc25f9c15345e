"""Repository handle: the public entry point for restic operations.

One ``Repo`` exists per logical repository. Every operation holds the
repository's guard for its whole duration, including the lazy ``restic
init`` performed before the first operation.
"""

import logging
import os
import subprocess
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Iterable, Mapping, Optional, Sequence

from .args import (
    BACKUP_FLAGS,
    INIT_FLAGS,
    LS_FLAGS,
    SNAPSHOTS_FLAGS,
    build_args,
)
from .config.schema import EngineConfig
from .context import Cancelled, Context, background
from .decode import LsEntry, Snapshot, decode_ls, decode_snapshots
from .env import build_env, check_env
from .errors import (
    CommandCancelledError,
    CommandError,
    MultiError,
    OutputDecodeError,
    PreconditionError,
    RepositoryInitError,
)
from .guard import RepoState, RepositoryGuard, lock_file_for
from .options import BackupOptions, GenericOptions
from .progress import (
    MalformedLine,
    ProgressCallback,
    StreamResult,
    SummaryEvent,
    read_progress,
)
from .runner import Invocation, StreamedProcess, run_buffered, terminate

logger = logging.getLogger(__name__)

# restic init output when the repository already exists
_ALREADY_INITIALIZED = (
    b"config file already exists",
    b"repository master key and config already initialized",
)

# Malformed lines quoted in a decode error message
_MAX_QUOTED_LINES = 3


def _describe_malformed(lines: Sequence[MalformedLine]) -> str:
    quoted = "; ".join(
        f"line {m.lineno}: {m.reason} ({m.text[:80].decode('utf-8', 'replace')!r})"
        for m in lines[:_MAX_QUOTED_LINES]
    )
    more = len(lines) - _MAX_QUOTED_LINES
    if more > 0:
        quoted += f"; and {more} more"
    return f"{len(lines)} unparsable output line(s): {quoted}"


def _read_stream(
    process: StreamedProcess, callback: Optional[ProgressCallback]
) -> StreamResult:
    try:
        return read_progress(process.stream, callback)
    except BaseException:
        # Nobody drains the pipe any more; stop the writer so wait() returns
        terminate(process.proc, process.terminate_grace)
        raise


class Repo:
    """A restic repository and the operations that can be run against it.

    Args:
        uri: Repository location (RESTIC_REPOSITORY)
        password: Repository password (RESTIC_PASSWORD)
        extra_args: Arguments appended to every invocation
        extra_env: KEY=VALUE entries added to every invocation's environment
        config: Engine settings; defaults to EngineConfig()
        environ: Host environment used for variable propagation
            (defaults to os.environ at call time)
    """

    def __init__(
        self,
        uri: str,
        password: str,
        extra_args: Iterable[str] = (),
        extra_env: Iterable[str] = (),
        config: Optional[EngineConfig] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.uri = uri
        self.password = password
        self.extra_args = list(extra_args)
        self.extra_env = list(extra_env)
        check_env(self.extra_env)
        self.config = config or EngineConfig()
        self.environ = environ

        lock_file = None
        if self.config.lock_dir:
            lock_file = lock_file_for(self.config.lock_dir, uri)
        self._guard = RepositoryGuard(lock_file, self.config.poll_interval)

    def __repr__(self) -> str:
        return f"Repo({self.uri!r})"

    @property
    def initialized(self) -> bool:
        return self._guard.state is RepoState.READY

    def _invocation(
        self,
        operation: str,
        fixed_flags: Sequence[str],
        call_args: Sequence[str] = (),
        call_env: Sequence[str] = (),
    ) -> Invocation:
        return Invocation(
            binary=self.config.binary,
            args=build_args(operation, fixed_flags, self.extra_args, call_args),
            env=build_env(
                self.uri,
                self.password,
                self.extra_env,
                call_env,
                propagate=self.config.propagate_env,
                environ=self.environ,
            ),
        )

    def _run(self, invocation: Invocation, ctx: Context) -> bytes:
        return run_buffered(
            invocation,
            ctx,
            terminate_grace=self.config.terminate_grace,
            poll_interval=self.config.poll_interval,
        )

    def _init(self, ctx: Context) -> None:
        logger.info("Initializing repository %s", self.uri)
        invocation = self._invocation("init", INIT_FLAGS)
        try:
            self._run(invocation, ctx)
        except CommandError as e:
            if isinstance(e, CommandCancelledError) or not any(
                marker in e.output for marker in _ALREADY_INITIALIZED
            ):
                raise
            logger.info("Repository %s is already initialized", self.uri)

    def _ensure_initialized(self, ctx: Context) -> None:
        try:
            self._guard.ensure_ready(lambda: self._init(ctx))
        except CommandCancelledError:
            raise
        except CommandError as e:
            raise RepositoryInitError(f"failed to initialize repo {self.uri}") from e

    def init(self, ctx: Optional[Context] = None) -> None:
        """Initialize the repository, even if it was initialized before.

        Raises:
            CommandError: restic init failed
        """
        ctx = ctx or background()
        with self._guard.hold(ctx):
            self._guard.reset()
            self._guard.ensure_ready(lambda: self._init(ctx))

    def reset(self, ctx: Optional[Context] = None) -> None:
        """Force ``restic init`` to run again before the next operation."""
        with self._guard.hold(ctx or background()):
            self._guard.reset()

    def backup(
        self,
        options: Optional[BackupOptions] = None,
        callback: Optional[ProgressCallback] = None,
        ctx: Optional[Context] = None,
    ) -> Optional[SummaryEvent]:
        """Run ``restic backup`` and stream its progress to callback.

        Args:
            options: Paths, excludes, tags and extra flags/env for this run
            callback: Called on the reader thread with every progress event;
                the summary, if any, is always the last call
            ctx: Cancellation context

        Returns:
            The summary event, or None if restic emitted none

        Raises:
            PreconditionError: a source path does not exist or an env entry
                is not KEY=VALUE
            RepositoryInitError: lazy initialization failed
            CommandCancelledError: ctx was cancelled; restic was terminated
            CommandError: restic could not start or exited non-zero
            OutputDecodeError: restic output could not be interpreted
            MultiError: more than one of the above happened together

        An exception raised by callback is re-raised once the stream is
        drained, alone or inside a MultiError.
        """
        options = options or BackupOptions()
        ctx = ctx or background()

        with self._guard.hold(ctx):
            for path in options.paths:
                if not os.path.exists(path):
                    raise PreconditionError(f"path {path} does not exist")
            check_env(options.env)

            self._ensure_initialized(ctx)

            invocation = self._invocation(
                "backup", BACKUP_FLAGS, options.to_args(), options.env
            )
            logger.info("Backing up %s to %s", ", ".join(options.paths), self.uri)
            if ctx.cancelled:
                raise CommandCancelledError(
                    invocation.argv, b"", Cancelled(ctx.err())
                )

            with StreamedProcess(
                invocation,
                terminate_grace=self.config.terminate_grace,
                poll_interval=self.config.poll_interval,
            ) as process:
                with ThreadPoolExecutor(
                    max_workers=2, thread_name_prefix="restic-backup"
                ) as pool:
                    reader = pool.submit(_read_stream, process, callback)
                    waiter = pool.submit(process.wait, ctx)

            return self._finish_backup(invocation, reader, waiter)

    def _finish_backup(
        self, invocation: Invocation, reader: Future, waiter: Future
    ) -> Optional[SummaryEvent]:
        """Combine the reader and waiter outcomes into a result or an error."""
        argv = invocation.argv
        errors: list[BaseException] = []

        stream: Optional[StreamResult] = None
        read_error: Optional[BaseException] = reader.exception()
        if read_error is None:
            stream = reader.result()
        output = bytes(stream.output) if stream is not None else b""

        returncode: Optional[int] = None
        wait_error = waiter.exception()
        if isinstance(wait_error, Cancelled):
            logger.warning("Backup to %s cancelled: %s", self.uri, wait_error.reason)
            errors.append(CommandCancelledError(argv, output, wait_error))
        elif wait_error is not None:
            errors.append(CommandError(argv, output, wait_error))
        else:
            returncode = waiter.result()
            if returncode != 0:
                errors.append(
                    CommandError(
                        argv, output, subprocess.CalledProcessError(returncode, argv)
                    )
                )

        if read_error is not None:
            errors.append(OutputDecodeError(argv, output, read_error))
        else:
            if stream.callback_error is not None:
                errors.append(stream.callback_error)
            bad_lines = stream.decode_errors(
                returncode, self.config.trailing_output_policy
            )
            if bad_lines:
                errors.append(
                    OutputDecodeError(
                        argv, output, ValueError(_describe_malformed(bad_lines))
                    )
                )
            elif stream.malformed:
                logger.warning(
                    "restic exited with status %s; kept %d line(s) of trailing "
                    "output as diagnostics",
                    returncode,
                    len(stream.malformed),
                )

        if len(errors) == 1:
            raise errors[0]
        if errors:
            raise MultiError(errors)

        summary = stream.summary
        if summary is None:
            logger.warning("restic backup to %s produced no summary", self.uri)
        else:
            logger.info(
                "Backup complete: snapshot %s, %d file(s), %d byte(s) added in %.1fs",
                summary.snapshot_id,
                summary.total_files_processed,
                summary.data_added,
                summary.total_duration,
            )
        return summary

    def snapshots(
        self,
        options: Optional[GenericOptions] = None,
        ctx: Optional[Context] = None,
    ) -> list[Snapshot]:
        """List the repository's snapshots.

        Raises:
            PreconditionError: an env entry is not KEY=VALUE
            RepositoryInitError: lazy initialization failed
            CommandError: restic failed
            OutputDecodeError: restic output is not a snapshot array
        """
        options = options or GenericOptions()
        ctx = ctx or background()

        with self._guard.hold(ctx):
            check_env(options.env)
            self._ensure_initialized(ctx)
            invocation = self._invocation(
                "snapshots", SNAPSHOTS_FLAGS, options.to_args(), options.env
            )
            output = self._run(invocation, ctx)
            try:
                snapshots = decode_snapshots(output)
            except (TypeError, ValueError) as e:
                raise OutputDecodeError(invocation.argv, output, e) from e
            logger.debug("Found %d snapshot(s) in %s", len(snapshots), self.uri)
            return snapshots

    def list_directory(
        self,
        snapshot: str,
        path: str,
        options: Optional[GenericOptions] = None,
        ctx: Optional[Context] = None,
    ) -> tuple[Snapshot, list[LsEntry]]:
        """List the entries below path in a snapshot.

        Raises:
            PreconditionError: path is empty (would walk the whole snapshot)
                or an env entry is not KEY=VALUE
            RepositoryInitError: lazy initialization failed
            CommandError: restic failed
            OutputDecodeError: restic output could not be decoded
        """
        options = options or GenericOptions()
        ctx = ctx or background()

        with self._guard.hold(ctx):
            if not path:
                raise PreconditionError("path must not be empty")
            check_env(options.env)

            self._ensure_initialized(ctx)
            invocation = self._invocation(
                "ls", LS_FLAGS, [snapshot, path, *options.to_args()], options.env
            )
            output = self._run(invocation, ctx)
            try:
                return decode_ls(output)
            except (TypeError, ValueError) as e:
                raise OutputDecodeError(invocation.argv, output, e) from e
