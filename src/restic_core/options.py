"""Per-call options for repository operations."""

from dataclasses import dataclass, field

from .args import repeat_flag


@dataclass
class GenericOptions:
    """Options accepted by every operation.

    Attributes:
        flags: Extra arguments appended verbatim
        tags: Tag filters, each passed as ``--tag value``
        env: Extra KEY=VALUE environment entries for this call
    """

    flags: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    env: list[str] = field(default_factory=list)

    def to_args(self) -> list[str]:
        return [*self.flags, *repeat_flag("--tag", self.tags)]


@dataclass
class BackupOptions:
    """Options for a backup run.

    Attributes:
        paths: Local paths to back up; each must exist
        excludes: Exclude patterns, each passed as ``--exclude value``
        tags: Tags for the new snapshot, each passed as ``--tag value``
        flags: Extra arguments appended verbatim
        env: Extra KEY=VALUE environment entries for this call
    """

    paths: list[str] = field(default_factory=list)
    excludes: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    flags: list[str] = field(default_factory=list)
    env: list[str] = field(default_factory=list)

    def to_args(self) -> list[str]:
        return [
            *self.paths,
            *repeat_flag("--exclude", self.excludes),
            *repeat_flag("--tag", self.tags),
            *self.flags,
        ]
