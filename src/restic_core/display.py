"""Console rendering of backup progress with rich."""

import logging
from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TimeElapsedColumn,
)

from .progress import ErrorEvent, ProgressEvent, StatusEvent, SummaryEvent

logger = logging.getLogger(__name__)


class RichProgressReporter:
    """A backup callback drawing a progress bar for status events.

    Use as a context manager around ``Repo.backup`` and pass the instance as
    the callback:

        with RichProgressReporter("home") as reporter:
            repo.backup(options, callback=reporter)
    """

    def __init__(self, description: str = "backup", console: Optional[Console] = None):
        self.description = description
        self.progress = Progress(
            SpinnerColumn(),
            "[progress.description]{task.description}",
            BarColumn(),
            "[progress.percentage]{task.percentage:>3.0f}%",
            DownloadColumn(),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        )
        self.task_id: Optional[TaskID] = None
        self.summary: Optional[SummaryEvent] = None
        self.errors = 0
        self._total: Optional[int] = None

    def __enter__(self):
        self.progress.start()
        self.task_id = self.progress.add_task(
            f"[cyan]{self.description}", total=None
        )
        return self

    def __exit__(self, *exc) -> None:
        self.progress.stop()

    def __call__(self, event: ProgressEvent) -> None:
        if isinstance(event, StatusEvent):
            self._update(event)
        elif isinstance(event, ErrorEvent):
            self.errors += 1
        elif isinstance(event, SummaryEvent):
            self.summary = event
            if self.task_id is not None:
                self.progress.update(self.task_id, completed=self._total or 0)
            logger.info(
                "%s: %d new, %d changed, %d unmodified file(s)",
                self.description,
                event.files_new,
                event.files_changed,
                event.files_unmodified,
            )

    def _update(self, event: StatusEvent) -> None:
        if self.task_id is None:
            return
        current = escape(event.current_files[0]) if event.current_files else ""
        self._total = event.total_bytes or None
        self.progress.update(
            self.task_id,
            total=self._total,
            completed=event.bytes_done,
            description=f"[cyan]{self.description}[/] {current}",
        )
