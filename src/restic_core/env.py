"""Subprocess environment assembly for restic invocations."""

import os
from typing import Iterable, Mapping, Optional

from .errors import PreconditionError

# Host variables passed through to restic when set in the caller's environment
PROPAGATED_ENV_VARS = ("PATH", "HOME", "XDG_CACHE_HOME")


def propagated_env(
    names: Iterable[str], environ: Optional[Mapping[str, str]] = None
) -> list[str]:
    """Return KEY=VALUE entries for each allow-listed name present in environ."""
    if environ is None:
        environ = os.environ
    return [f"{name}={environ[name]}" for name in names if name in environ]


def build_env(
    uri: str,
    password: str,
    handle_env: Iterable[str] = (),
    call_env: Iterable[str] = (),
    propagate: Iterable[str] = PROPAGATED_ENV_VARS,
    environ: Optional[Mapping[str, str]] = None,
) -> list[str]:
    """Build the ordered environment list for one invocation.

    Order: repository location, password, propagated host variables,
    handle-level entries, call-level entries. Duplicate keys are kept; the
    later entry wins once the list is turned into a mapping.

    Args:
        uri: Repository location (RESTIC_REPOSITORY)
        password: Repository password (RESTIC_PASSWORD)
        handle_env: Entries fixed on the repository handle
        call_env: Entries supplied for this call only
        propagate: Names of host variables to pass through
        environ: Host environment to read from (defaults to os.environ)

    Returns:
        List of KEY=VALUE strings
    """
    env = [
        f"RESTIC_REPOSITORY={uri}",
        f"RESTIC_PASSWORD={password}",
    ]
    env.extend(propagated_env(propagate, environ))
    env.extend(handle_env)
    env.extend(call_env)
    return env


def check_env(env: Iterable[str]) -> None:
    """Reject entries that are not KEY=VALUE with a non-empty key.

    Raises:
        PreconditionError: an entry is malformed
    """
    for entry in env:
        key, sep, _ = entry.partition("=")
        if not sep or not key:
            raise PreconditionError(f"Invalid environment entry: {entry!r}")


def env_to_mapping(env: Iterable[str]) -> dict[str, str]:
    """Convert KEY=VALUE entries to a dict, later keys overriding earlier ones."""
    env = list(env)
    check_env(env)
    return dict(entry.split("=", 1) for entry in env)
