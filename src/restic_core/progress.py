"""Backup progress stream parsing.

``restic backup --json`` writes one JSON object per line while it runs.
Each object carries a ``message_type``:

- status: periodic counters and the files currently being processed
- error: a per-item problem (unreadable file, ...); the backup continues
- summary: final totals, always the last record of a completed backup

``read_progress`` drains such a stream, hands every recognized record to a
callback and keeps the summary. It never stops reading early, so the
process writing the pipe can not block on a full buffer.
"""

import json
import logging
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, BinaryIO, Callable, Optional, Union

logger = logging.getLogger(__name__)


class TrailingOutputPolicy(Enum):
    """How malformed lines are treated once the exit status is known.

    STRICT: every malformed line is a decode error.
    TOLERATE_ON_FAILURE: when restic exits non-zero, malformed lines after
        the last well-formed record are diagnostic text, kept only as output.
    """

    STRICT = "strict"
    TOLERATE_ON_FAILURE = "tolerate"


def _from_dict(cls, data: dict[str, Any]):
    """Build a dataclass from the keys of data it declares."""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class StatusEvent:
    """Periodic progress counters."""

    percent_done: float = 0.0
    total_files: int = 0
    files_done: int = 0
    total_bytes: int = 0
    bytes_done: int = 0
    error_count: int = 0
    seconds_elapsed: int = 0
    seconds_remaining: int = 0
    current_files: tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "current_files", tuple(self.current_files or ()))


@dataclass(frozen=True)
class SummaryEvent:
    """Final totals of a completed backup."""

    files_new: int = 0
    files_changed: int = 0
    files_unmodified: int = 0
    dirs_new: int = 0
    dirs_changed: int = 0
    dirs_unmodified: int = 0
    data_blobs: int = 0
    tree_blobs: int = 0
    data_added: int = 0
    total_files_processed: int = 0
    total_bytes_processed: int = 0
    total_duration: float = 0.0
    snapshot_id: str = ""


@dataclass(frozen=True)
class ErrorEvent:
    """A non-fatal error restic reported for a single item."""

    message: str = ""
    during: str = ""
    item: str = ""

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "ErrorEvent":
        error = data.get("error")
        if isinstance(error, dict):
            message = str(error.get("message", ""))
        else:
            message = str(error or "")
        return cls(
            message=message,
            during=str(data.get("during", "")),
            item=str(data.get("item", "")),
        )


ProgressEvent = Union[StatusEvent, SummaryEvent, ErrorEvent]
ProgressCallback = Callable[[ProgressEvent], None]

# Emitted with --verbose; recognized but not delivered
_IGNORED_MESSAGE_TYPES = frozenset({"verbose_status"})


def parse_progress_line(line: bytes) -> Optional[ProgressEvent]:
    """Decode one line of backup output.

    Returns:
        The event, or None for a recognized record type that is not delivered

    Raises:
        ValueError: the line is not JSON or has no recognized message_type
        TypeError: a field holds a value of an unusable type
    """
    data = json.loads(line)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")

    message_type = data.get("message_type")
    if message_type == "status":
        return _from_dict(StatusEvent, data)
    if message_type == "summary":
        return _from_dict(SummaryEvent, data)
    if message_type == "error":
        return ErrorEvent.from_record(data)
    if message_type in _IGNORED_MESSAGE_TYPES:
        return None
    raise ValueError(f"unrecognized message_type {message_type!r}")


@dataclass
class MalformedLine:
    lineno: int
    text: bytes
    reason: str


@dataclass
class StreamResult:
    """Everything read from one backup stream."""

    summary: Optional[SummaryEvent] = None
    events: int = 0
    last_record_lineno: int = 0
    malformed: list[MalformedLine] = field(default_factory=list)
    output: bytearray = field(default_factory=bytearray)
    callback_error: Optional[Exception] = None

    def decode_errors(
        self, returncode: Optional[int], policy: TrailingOutputPolicy
    ) -> list[MalformedLine]:
        """Return the malformed lines that count as errors for this exit status."""
        if policy is TrailingOutputPolicy.TOLERATE_ON_FAILURE and returncode != 0:
            return [m for m in self.malformed if m.lineno < self.last_record_lineno]
        return list(self.malformed)


def read_progress(
    stream: BinaryIO, callback: Optional[ProgressCallback] = None
) -> StreamResult:
    """Read newline-delimited JSON progress records until end-of-stream.

    The callback is invoked synchronously for every status, error and summary
    record in stream order. If it raises, the exception is kept on the result,
    the callback is not called again, and reading continues.

    Args:
        stream: Binary stream, usually the read end of the process pipe
        callback: Called with each ProgressEvent

    Returns:
        StreamResult with the summary, the raw output and any malformed lines
    """
    result = StreamResult()

    for lineno, raw in enumerate(stream, 1):
        result.output += raw
        line = raw.strip()
        if not line:
            continue

        try:
            event = parse_progress_line(line)
        except (TypeError, ValueError) as e:
            logger.debug("Unparsable progress line %d: %s", lineno, e)
            result.malformed.append(MalformedLine(lineno, line, str(e)))
            continue

        if result.summary is not None:
            result.malformed.append(
                MalformedLine(lineno, line, "record after summary")
            )
            continue
        result.last_record_lineno = lineno
        if event is None:
            continue

        if isinstance(event, SummaryEvent):
            result.summary = event
        elif isinstance(event, ErrorEvent):
            logger.warning("restic error during %s: %s", event.during, event.message)

        result.events += 1
        if callback is not None and result.callback_error is None:
            try:
                callback(event)
            except Exception as e:
                logger.error("Progress callback failed: %s", e)
                result.callback_error = e

    return result
