"""Pytest configuration and shared fixtures."""

import json
import stat
import sys
import textwrap

import pytest

from restic_core import Repo
from restic_core.config import EngineConfig

# Preamble of every fake restic script: log the call, then dispatch on cmd
FAKE_RESTIC_HEADER = """\
#!{python}
import json, os, sys, time

with open({log!r}, "a") as _log:
    _log.write(json.dumps({{"argv": sys.argv[1:], "env": dict(os.environ), "pid": os.getpid()}}) + "\\n")

cmd = sys.argv[1] if len(sys.argv) > 1 else ""
out = sys.stdout.buffer


def emit(line):
    out.write(line if isinstance(line, bytes) else line.encode())
    out.flush()

"""

SNAPSHOT_RECORDS = [
    {
        "time": "2026-01-01T12:00:00.123456789+01:00",
        "tree": "t1",
        "paths": ["/home"],
        "hostname": "host1",
        "username": "alice",
        "tags": ["daily"],
        "id": "aaaa1111",
        "short_id": "aaaa",
    },
    {
        "time": "2026-01-02T12:00:00Z",
        "parent": "aaaa1111",
        "tree": "t2",
        "paths": ["/home", "/etc"],
        "hostname": "host1",
        "username": "alice",
        "id": "bbbb2222",
        "short_id": "bbbb",
    },
]


class FakeRestic:
    """A Python script standing in for the restic binary."""

    def __init__(self, path, log):
        self.path = path
        self.log = log

    def calls(self):
        if not self.log.exists():
            return []
        return [json.loads(line) for line in self.log.read_text().splitlines()]

    def commands(self):
        return [call["argv"][0] for call in self.calls()]


@pytest.fixture
def make_restic(tmp_path):
    """Return a factory writing a fake restic whose behaviour is body."""

    def factory(body: str, name: str = "restic") -> FakeRestic:
        path = tmp_path / name
        log = tmp_path / f"{name}.calls.jsonl"
        header = FAKE_RESTIC_HEADER.format(python=sys.executable, log=str(log))
        path.write_text(header + textwrap.dedent(body))
        path.chmod(path.stat().st_mode | stat.S_IXUSR)
        return FakeRestic(path, log)

    return factory


@pytest.fixture
def engine_config():
    """Return a factory for an EngineConfig with fast polling."""

    def factory(binary, **kwargs) -> EngineConfig:
        kwargs.setdefault("poll_interval", 0.02)
        kwargs.setdefault("terminate_grace", 2.0)
        return EngineConfig(binary=str(binary), **kwargs)

    return factory


@pytest.fixture
def make_repo(engine_config):
    """Return a factory for a Repo backed by a fake restic."""

    def factory(fake: FakeRestic, **kwargs) -> Repo:
        config = engine_config(fake.path, **kwargs.pop("config", {}))
        kwargs.setdefault("uri", "/srv/restic-repo")
        kwargs.setdefault("password", "hunter2")
        return Repo(config=config, **kwargs)

    return factory


@pytest.fixture
def snapshots_json():
    """Return `restic snapshots --json` output for two snapshots."""
    return json.dumps(SNAPSHOT_RECORDS).encode()


@pytest.fixture
def sample_config_toml():
    """Return a sample valid TOML configuration string."""
    return """
[engine]
binary = "/usr/local/bin/restic"
propagate_env = ["PATH", "HOME", "XDG_CACHE_HOME", "RCLONE_CONFIG"]
trailing_output = "strict"
terminate_grace = 10
poll_interval = 0.5

[logging]
level = "debug"
file = "/var/log/restic-core.log"
"""


@pytest.fixture
def tmp_config_dir(tmp_path):
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def config_file(tmp_config_dir, sample_config_toml):
    """Create a temporary config file with sample content."""
    config_path = tmp_config_dir / "config.toml"
    config_path.write_text(sample_config_toml)
    return config_path
