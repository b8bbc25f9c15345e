"""Tests for the Repo handle against a fake restic binary."""

import json
import os
import threading
import time

import pytest

from restic_core import (
    BackupOptions,
    CommandCancelledError,
    CommandError,
    Context,
    GenericOptions,
    MultiError,
    OutputDecodeError,
    PreconditionError,
    RepositoryInitError,
    StatusEvent,
    SummaryEvent,
)
from restic_core.config import EngineConfig
from restic_core.repo import Repo

INIT_OK = """\
if cmd == "init":
    emit('{"message_type": "initialized", "id": "r1"}\\n')
    sys.exit(0)
"""

SERIAL_CHECK = """\
here = os.path.dirname(os.path.abspath(sys.argv[0]))
marker = os.path.join(here, "running")
try:
    os.close(os.open(marker, os.O_CREAT | os.O_EXCL))
except FileExistsError:
    open(os.path.join(here, "overlap"), "w").close()
time.sleep(0.05)
os.remove(marker)
"""


def status_line(bytes_done, total=1000):
    record = {
        "message_type": "status",
        "percent_done": bytes_done / total,
        "total_bytes": total,
        "bytes_done": bytes_done,
        "current_files": [f"/data/file{bytes_done}"],
    }
    return json.dumps(record).encode() + b"\n"


SUMMARY_LINE = (
    json.dumps(
        {
            "message_type": "summary",
            "files_new": 2,
            "total_files_processed": 2,
            "total_bytes_processed": 1000,
            "data_added": 1000,
            "total_duration": 0.5,
            "snapshot_id": "deadbeef",
        }
    ).encode()
    + b"\n"
)


def emit_lines(lines, exit_code=0):
    """Script body emitting lines for the backup command."""
    return (
        INIT_OK
        + f"for line in {lines!r}:\n"
        + "    emit(line)\n"
        + "    time.sleep(0.01)\n"
        + f"sys.exit({exit_code})\n"
    )


def snapshots_body(output: bytes, exit_code=0):
    return INIT_OK + f"emit({output!r})\nsys.exit({exit_code})\n"


class TestLazyInit:
    """Tests for one-time initialization."""

    def test_concurrent_calls_init_once(self, tmp_path, make_restic, make_repo, snapshots_json):
        fake = make_restic(SERIAL_CHECK + snapshots_body(snapshots_json))
        repo = make_repo(fake)
        results = []
        errors = []

        def worker():
            try:
                results.append(repo.snapshots())
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(results) == 8
        assert all(len(r) == 2 for r in results)
        commands = fake.commands()
        assert commands[0] == "init"
        assert commands.count("init") == 1
        assert commands.count("snapshots") == 8
        assert not (tmp_path / "overlap").exists()
        assert repo.initialized

    def test_init_skipped_when_ready(self, make_restic, make_repo):
        fake = make_restic(snapshots_body(b"[]"))
        repo = make_repo(fake)

        assert not repo.initialized
        repo.snapshots()
        repo.snapshots()

        assert fake.commands() == ["init", "snapshots", "snapshots"]

    def test_explicit_init_always_runs(self, make_restic, make_repo):
        fake = make_restic(snapshots_body(b"[]"))
        repo = make_repo(fake)

        repo.init()
        repo.snapshots()
        repo.init()

        assert fake.commands() == ["init", "snapshots", "init"]
        assert fake.calls()[0]["argv"] == ["init", "--json"]

    def test_reset_forces_reinit(self, make_restic, make_repo):
        fake = make_restic(snapshots_body(b"[]"))
        repo = make_repo(fake)

        repo.snapshots()
        repo.reset()
        assert not repo.initialized
        repo.snapshots()

        assert fake.commands() == ["init", "snapshots", "init", "snapshots"]

    def test_existing_repository_counts_as_initialized(self, make_restic, make_repo):
        fake = make_restic(
            """\
if cmd == "init":
    emit("Fatal: create repository at /srv/restic-repo failed: config file already exists\\n")
    sys.exit(1)
emit(b"[]")
"""
        )
        repo = make_repo(fake)

        assert repo.snapshots() == []
        assert repo.initialized
        assert fake.commands() == ["init", "snapshots"]

    def test_init_failure(self, make_restic, make_repo):
        fake = make_restic(
            """\
emit("Fatal: wrong password or no key found\\n")
sys.exit(1)
"""
        )
        repo = make_repo(fake)

        with pytest.raises(RepositoryInitError) as excinfo:
            repo.snapshots()

        cause = excinfo.value.__cause__
        assert isinstance(cause, CommandError)
        assert b"wrong password" in cause.output
        assert not repo.initialized
        assert fake.commands() == ["init"]

    def test_missing_binary(self, tmp_path):
        repo = Repo("/srv/repo", "pw", config=EngineConfig(binary=str(tmp_path / "nope")))

        with pytest.raises(RepositoryInitError) as excinfo:
            repo.snapshots()
        assert isinstance(excinfo.value.__cause__.cause, FileNotFoundError)

    def test_cancelled_init_is_not_wrapped(self, make_restic, make_repo):
        fake = make_restic("time.sleep(30)\n")
        repo = make_repo(fake)

        with pytest.raises(CommandCancelledError):
            repo.snapshots(ctx=Context(timeout=0.3))
        assert not repo.initialized


class TestInvocationShape:
    """Tests for the argument vector and environment restic receives."""

    def test_args_and_env(self, make_restic, make_repo):
        fake = make_restic(snapshots_body(b"[]"))
        repo = make_repo(
            fake,
            extra_args=["-o", "s3.connections=4"],
            extra_env=["HANDLE_VAR=1", "SHARED=handle"],
            environ={"HOME": "/home/tester", "SECRET_TOKEN": "x"},
        )

        repo.snapshots(
            GenericOptions(
                flags=["--host", "h1"], tags=["daily"], env=["CALL_VAR=2", "SHARED=call"]
            )
        )

        call = fake.calls()[-1]
        assert call["argv"] == [
            "snapshots",
            "--json",
            "-o",
            "s3.connections=4",
            "--host",
            "h1",
            "--tag",
            "daily",
        ]
        env = call["env"]
        assert env["RESTIC_REPOSITORY"] == "/srv/restic-repo"
        assert env["RESTIC_PASSWORD"] == "hunter2"
        assert env["HOME"] == "/home/tester"
        assert env["HANDLE_VAR"] == "1"
        assert env["CALL_VAR"] == "2"
        assert env["SHARED"] == "call"
        assert "SECRET_TOKEN" not in env

    def test_init_gets_handle_args_but_not_call_env(self, make_restic, make_repo):
        fake = make_restic(snapshots_body(b"[]"))
        repo = make_repo(fake, extra_args=["--insecure-tls"])

        repo.snapshots(GenericOptions(env=["CALL_VAR=2"]))

        init_call = fake.calls()[0]
        assert init_call["argv"] == ["init", "--json", "--insecure-tls"]
        assert "CALL_VAR" not in init_call["env"]

    def test_bad_handle_env_rejected(self, make_restic, make_repo):
        fake = make_restic(INIT_OK)

        with pytest.raises(PreconditionError, match="Invalid environment entry"):
            make_repo(fake, extra_env=["GOOD=1", "=nokey"])

    def test_bad_call_env_rejected_before_init(self, make_restic, make_repo):
        fake = make_restic(snapshots_body(b"[]"))
        repo = make_repo(fake)

        with pytest.raises(PreconditionError, match="NOEQUALS"):
            repo.snapshots(GenericOptions(env=["NOEQUALS"]))

        assert fake.calls() == []
        assert not repo.initialized


class TestSnapshots:
    """Tests for Repo.snapshots."""

    def test_decodes(self, make_restic, make_repo, snapshots_json):
        fake = make_restic(snapshots_body(snapshots_json))
        snapshots = make_repo(fake).snapshots()

        assert [s.id for s in snapshots] == ["aaaa1111", "bbbb2222"]

    def test_unparsable_output(self, make_restic, make_repo):
        fake = make_restic(snapshots_body(b"Warning: cache is old\n[]"))

        with pytest.raises(OutputDecodeError) as excinfo:
            make_repo(fake).snapshots()

        assert excinfo.value.output == b"Warning: cache is old\n[]"
        assert isinstance(excinfo.value.cause, ValueError)
        assert excinfo.value.returncode is None

    def test_nonzero_exit_is_not_a_decode_error(self, make_restic, make_repo):
        fake = make_restic(snapshots_body(b"Fatal: repository is locked\n", exit_code=1))

        with pytest.raises(CommandError) as excinfo:
            make_repo(fake).snapshots()

        assert type(excinfo.value) is CommandError
        assert excinfo.value.returncode == 1
        assert excinfo.value.output == b"Fatal: repository is locked\n"


class TestListDirectory:
    """Tests for Repo.list_directory."""

    def test_empty_path_rejected_without_spawning(self, make_restic, make_repo):
        fake = make_restic(INIT_OK)
        repo = make_repo(fake)

        with pytest.raises(PreconditionError, match="path must not be empty"):
            repo.list_directory("latest", "")

        assert fake.calls() == []
        assert not repo.initialized

    def test_bad_call_env_rejected_without_spawning(self, make_restic, make_repo):
        fake = make_restic(INIT_OK)
        repo = make_repo(fake)

        with pytest.raises(PreconditionError, match="Invalid environment entry"):
            repo.list_directory("latest", "/", GenericOptions(env=["NOEQUALS"]))

        assert fake.calls() == []

    def test_lists_entries(self, make_restic, make_repo):
        records = [
            {"id": "aaaa1111", "time": "2026-01-01T12:00:00Z", "struct_type": "snapshot"},
            {"name": "a", "type": "file", "path": "/home/a", "size": 3, "struct_type": "node"},
            {"name": "b", "type": "dir", "path": "/home/b", "struct_type": "node"},
        ]
        output = b"".join(json.dumps(r).encode() + b"\n" for r in records)
        fake = make_restic(snapshots_body(output))

        snapshot, entries = make_repo(fake).list_directory(
            "aaaa1111", "/home", GenericOptions(flags=["--long"])
        )

        assert snapshot.id == "aaaa1111"
        assert [(e.name, e.type, e.size) for e in entries] == [
            ("a", "file", 3),
            ("b", "dir", 0),
        ]
        assert fake.calls()[-1]["argv"] == ["ls", "--json", "aaaa1111", "/home", "--long"]

    def test_unparsable_output(self, make_restic, make_repo):
        fake = make_restic(snapshots_body(b"[]"))

        with pytest.raises(OutputDecodeError) as excinfo:
            make_repo(fake).list_directory("latest", "/")
        assert excinfo.value.output == b"[]"


class TestBackup:
    """Tests for Repo.backup."""

    def test_streams_events_and_returns_summary(self, tmp_path, make_restic, make_repo):
        source = tmp_path / "data"
        source.mkdir()
        lines = [status_line(0), status_line(400), status_line(1000), SUMMARY_LINE]
        fake = make_restic(emit_lines(lines))
        events = []

        summary = make_repo(fake).backup(
            BackupOptions(paths=[str(source)], excludes=["*.tmp"], tags=["nightly"]),
            callback=events.append,
        )

        assert isinstance(summary, SummaryEvent)
        assert summary.snapshot_id == "deadbeef"
        assert events[-1] == summary
        statuses = [e for e in events if isinstance(e, StatusEvent)]
        assert [e.bytes_done for e in statuses] == [0, 400, 1000]
        assert fake.calls()[-1]["argv"] == [
            "backup",
            "--json",
            "--exclude-caches",
            str(source),
            "--exclude",
            "*.tmp",
            "--tag",
            "nightly",
        ]

    def test_missing_path_rejected_without_spawning(self, tmp_path, make_restic, make_repo):
        fake = make_restic(emit_lines([SUMMARY_LINE]))

        with pytest.raises(PreconditionError, match="does not exist"):
            make_repo(fake).backup(BackupOptions(paths=[str(tmp_path / "missing")]))

        assert fake.calls() == []

    def test_bad_call_env_rejected_without_spawning(self, tmp_path, make_restic, make_repo):
        fake = make_restic(emit_lines([SUMMARY_LINE]))
        repo = make_repo(fake)

        with pytest.raises(PreconditionError, match="NOEQUALS"):
            repo.backup(BackupOptions(paths=[str(tmp_path)], env=["NOEQUALS"]))

        assert fake.calls() == []
        assert not repo.initialized

    def test_cancelled_context_does_not_start_backup(self, make_restic, make_repo):
        fake = make_restic(
            'if cmd == "snapshots":\n'
            + '    emit(b"[]")\n'
            + "    sys.exit(0)\n"
            + emit_lines([SUMMARY_LINE])
        )
        repo = make_repo(fake)
        repo.snapshots()
        ctx = Context()
        ctx.cancel()

        with pytest.raises(CommandCancelledError) as excinfo:
            repo.backup(ctx=ctx)

        assert excinfo.value.args_list[1] == "backup"
        assert excinfo.value.output == b""
        assert fake.commands() == ["init", "snapshots"]

    def test_reader_failure_stops_restic(self, make_restic, make_repo, monkeypatch):
        fake = make_restic(
            INIT_OK + f"emit({status_line(5)!r})\n" + "time.sleep(30)\n"
        )

        def broken_read(stream, callback=None):
            stream.readline()
            raise OSError("read failed")

        monkeypatch.setattr("restic_core.repo.read_progress", broken_read)

        start = time.monotonic()
        with pytest.raises(MultiError) as excinfo:
            make_repo(fake).backup()

        assert time.monotonic() - start < 10
        process_error, read_error = excinfo.value.errors
        assert type(process_error) is CommandError
        assert process_error.returncode != 0
        assert isinstance(read_error, OutputDecodeError)
        assert isinstance(read_error.cause, OSError)

        with pytest.raises(ProcessLookupError):
            os.kill(fake.calls()[-1]["pid"], 0)

    def test_no_summary(self, make_restic, make_repo):
        fake = make_restic(emit_lines([status_line(10)]))
        assert make_repo(fake).backup() is None

    def test_failure_keeps_partial_output(self, make_restic, make_repo):
        lines = [
            status_line(100),
            status_line(200),
            b"Fatal: unable to save snapshot: disk full\n",
        ]
        fake = make_restic(emit_lines(lines, exit_code=1))
        events = []

        with pytest.raises(CommandError) as excinfo:
            make_repo(fake).backup(callback=events.append)

        err = excinfo.value
        assert type(err) is CommandError
        assert err.returncode == 1
        assert err.output == b"".join(lines)
        assert [e.bytes_done for e in events] == [100, 200]

    def test_strict_policy_reports_both_failures(self, make_restic, make_repo):
        lines = [status_line(100), b"Fatal: disk full\n"]
        fake = make_restic(emit_lines(lines, exit_code=1))
        repo = make_repo(fake, config={"trailing_output": "strict"})

        with pytest.raises(MultiError) as excinfo:
            repo.backup()

        first, second = excinfo.value.errors
        assert type(first) is CommandError
        assert first.returncode == 1
        assert isinstance(second, OutputDecodeError)
        assert "Fatal: disk full" in str(second.cause)
        assert first.output == second.output == b"".join(lines)

    def test_garbage_between_records_is_an_error(self, make_restic, make_repo):
        lines = [status_line(1), b"garbage\n", status_line(2), SUMMARY_LINE]
        fake = make_restic(emit_lines(lines))
        events = []

        with pytest.raises(OutputDecodeError) as excinfo:
            make_repo(fake).backup(callback=events.append)

        assert "line 2" in str(excinfo.value.cause)
        assert len(events) == 3

    def test_callback_exception_is_raised(self, make_restic, make_repo):
        fake = make_restic(emit_lines([status_line(1), status_line(2), SUMMARY_LINE]))

        def callback(event):
            raise RuntimeError("ui went away")

        with pytest.raises(RuntimeError, match="ui went away"):
            make_repo(fake).backup(callback=callback)

    def test_cancel_mid_backup(self, make_restic, make_repo):
        fake = make_restic(
            INIT_OK
            + 'if cmd == "snapshots":\n'
            + '    emit(b"[]")\n'
            + "    sys.exit(0)\n"
            + f"emit({status_line(5)!r})\n"
            + "time.sleep(30)\n"
            + f"emit({SUMMARY_LINE!r})\n"
        )
        repo = make_repo(fake)
        ctx = Context()
        events = []

        def callback(event):
            events.append(event)
            ctx.cancel()

        start = time.monotonic()
        with pytest.raises(CommandCancelledError) as excinfo:
            repo.backup(callback=callback, ctx=ctx)

        assert time.monotonic() - start < 10
        assert excinfo.value.output == status_line(5)
        assert len(events) == 1

        backup_pid = fake.calls()[-1]["pid"]
        with pytest.raises(ProcessLookupError):
            os.kill(backup_pid, 0)

        # The guard was released
        assert repo.snapshots(ctx=Context(timeout=5)) == []
