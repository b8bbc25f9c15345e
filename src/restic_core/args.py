"""Argument vector assembly for restic subcommands."""

from typing import Iterable

# Flags always passed for each operation
INIT_FLAGS = ("--json",)
BACKUP_FLAGS = ("--json", "--exclude-caches")
SNAPSHOTS_FLAGS = ("--json",)
LS_FLAGS = ("--json",)


def repeat_flag(flag: str, values: Iterable[str]) -> list[str]:
    """Expand values into repeated ``flag value`` pairs, preserving order.

    >>> repeat_flag("--tag", ["a", "b"])
    ['--tag', 'a', '--tag', 'b']
    """
    args = []
    for value in values:
        args += [flag, value]
    return args


def build_args(
    operation: str,
    fixed_flags: Iterable[str] = (),
    handle_args: Iterable[str] = (),
    call_args: Iterable[str] = (),
) -> list[str]:
    """Return [operation, *fixed_flags, *handle_args, *call_args]."""
    return [operation, *fixed_flags, *handle_args, *call_args]
