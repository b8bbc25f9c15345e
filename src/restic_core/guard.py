"""Per-repository serialization and lazy initialization state."""

import hashlib
import logging
import threading
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional

from filelock import FileLock, Timeout

from .context import Context
from .errors import OperationCancelledError
from .runner import DEFAULT_POLL_INTERVAL

logger = logging.getLogger(__name__)


class RepoState(Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


def lock_file_for(lock_dir: Path | str, uri: str) -> Path:
    """Return the cross-process lock file path for a repository URI."""
    digest = hashlib.sha256(uri.encode("utf-8")).hexdigest()[:16]
    return Path(lock_dir) / f".restic-core.{digest}.lock"


class RepositoryGuard:
    """Serializes operations on one repository and tracks its init state.

    Every operation runs inside ``hold()``; the state is only read or changed
    while the lock is held. With a lock file configured, a FileLock is taken
    after the in-process lock so separate processes serialize too.
    """

    def __init__(
        self,
        lock_file: Optional[Path] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._lock = threading.Lock()
        self._file_lock = FileLock(str(lock_file)) if lock_file else None
        self.poll_interval = poll_interval
        self.state = RepoState.UNINITIALIZED

    def _acquire_lock(self, ctx: Context) -> None:
        while not self._lock.acquire(timeout=self.poll_interval):
            if ctx.cancelled:
                raise OperationCancelledError(
                    f"waiting for repository lock: {ctx.err()}"
                )

    def _acquire_file_lock(self, ctx: Context) -> None:
        while True:
            try:
                self._file_lock.acquire(timeout=self.poll_interval)
                return
            except Timeout:
                if ctx.cancelled:
                    raise OperationCancelledError(
                        f"waiting for {self._file_lock.lock_file}: {ctx.err()}"
                    )

    @contextmanager
    def hold(self, ctx: Context) -> Iterator["RepositoryGuard"]:
        """Hold the repository exclusively for the duration of the block.

        Raises:
            OperationCancelledError: ctx was cancelled while waiting
        """
        self._acquire_lock(ctx)
        try:
            if self._file_lock is None:
                yield self
                return
            self._acquire_file_lock(ctx)
            try:
                yield self
            finally:
                self._file_lock.release()
        finally:
            self._lock.release()

    def ensure_ready(self, init: Callable[[], None]) -> None:
        """Run init once unless already READY. Call only inside hold()."""
        if self.state is RepoState.READY:
            return
        init()
        self.state = RepoState.READY
        logger.debug("Repository state -> %s", self.state.value)

    def reset(self) -> None:
        """Force re-initialization on the next operation. Call only inside hold()."""
        self.state = RepoState.UNINITIALIZED
