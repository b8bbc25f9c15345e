"""Decoders for buffered restic JSON output.

``snapshots --json`` prints one JSON array. ``ls --json`` prints one JSON
object per line: a snapshot record followed by one node record per entry.
A single JSON array holding the same records is accepted as well.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

# restic prints nanoseconds; datetime keeps microseconds
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def parse_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a restic RFC 3339 timestamp, dropping sub-microsecond digits."""
    if not value:
        return None
    return datetime.fromisoformat(_FRACTION_RE.sub(r"\1", value))


@dataclass(frozen=True)
class Snapshot:
    """One point-in-time backup in a repository."""

    id: str
    short_id: str = ""
    time: Optional[datetime] = None
    hostname: str = ""
    username: str = ""
    tags: tuple[str, ...] = ()
    paths: tuple[str, ...] = ()
    parent: str = ""
    tree: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "Snapshot":
        if not isinstance(data, dict):
            raise ValueError(f"snapshot record must be an object, got {data!r}")
        if not data.get("id"):
            raise ValueError("snapshot record has no id")
        return cls(
            id=data["id"],
            short_id=data.get("short_id", ""),
            time=parse_time(data.get("time")),
            hostname=data.get("hostname", ""),
            username=data.get("username", ""),
            tags=tuple(data.get("tags") or ()),
            paths=tuple(data.get("paths") or ()),
            parent=data.get("parent", ""),
            tree=data.get("tree", ""),
        )


@dataclass(frozen=True)
class LsEntry:
    """A file, directory or other node inside a snapshot."""

    name: str
    path: str
    type: str
    size: int = 0
    mode: int = 0
    uid: int = 0
    gid: int = 0
    mtime: Optional[datetime] = None
    atime: Optional[datetime] = None
    ctime: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Any) -> "LsEntry":
        if not isinstance(data, dict):
            raise ValueError(f"node record must be an object, got {data!r}")
        if "path" not in data:
            raise ValueError("node record has no path")
        return cls(
            name=data.get("name", ""),
            path=data["path"],
            type=data.get("type", ""),
            size=data.get("size", 0),
            mode=data.get("mode", 0),
            uid=data.get("uid", 0),
            gid=data.get("gid", 0),
            mtime=parse_time(data.get("mtime")),
            atime=parse_time(data.get("atime")),
            ctime=parse_time(data.get("ctime")),
        )

    @property
    def is_dir(self) -> bool:
        return self.type == "dir"


def decode_snapshots(output: bytes) -> list[Snapshot]:
    """Decode ``restic snapshots --json`` output.

    Raises:
        ValueError: output is not a JSON array of snapshot records

    A JSON null decodes to an empty list.
    """
    data = json.loads(output)
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValueError(f"expected a JSON array, got {type(data).__name__}")
    return [Snapshot.from_dict(record) for record in data]


def _record_kind(record: Any) -> Optional[str]:
    if not isinstance(record, dict):
        return None
    return record.get("struct_type") or record.get("message_type")


def decode_ls(output: bytes) -> tuple[Snapshot, list[LsEntry]]:
    """Decode ``restic ls --json`` output into the snapshot and its entries.

    Raises:
        ValueError: records are missing, out of order or malformed
    """
    text = output.strip()
    if text.startswith(b"["):
        records = json.loads(text)
    else:
        records = [json.loads(line) for line in text.splitlines() if line.strip()]

    if not records:
        raise ValueError("no snapshot record in ls output")
    if _record_kind(records[0]) != "snapshot":
        raise ValueError("first ls record is not a snapshot")
    snapshot = Snapshot.from_dict(records[0])

    entries = []
    for record in records[1:]:
        if _record_kind(record) != "node":
            raise ValueError(f"unexpected ls record: {record!r}")
        entries.append(LsEntry.from_dict(record))
    return snapshot, entries
