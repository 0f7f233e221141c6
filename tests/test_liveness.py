"""Tests for parent process liveness detection."""

import os
import shutil
import sys
import time

import pytest

from forkguard.commands import CommandExecutionError
from forkguard.liveness import (
    ProcessLivenessDetector,
    UnixStrategy,
    UnsupportedStrategy,
    WindowsStrategy,
    pid,
    runtime_name,
    select_strategy,
)
from forkguard.models import INVALID_PROCESS, CreationTime, ElapsedTime

PARENT_CREATED = "20171018100000.000000+120"
SELF_CREATED = "20171019120000.000000+120"


class TestPid:
    """Tests for process identity extraction."""

    def test_pid_from_runtime_name(self):
        """Test digits before '@' are the PID."""
        assert pid("12345@build-host") == "12345"

    def test_pid_strips_whitespace(self):
        """Test surrounding whitespace is ignored."""
        assert pid(" 42 @host") == "42"

    def test_pid_not_numeric(self):
        """Test a non numeric prefix is unavailable."""
        assert pid("abc@host") is None
        assert pid("12a@host") is None
        assert pid("@host") is None

    def test_pid_without_delimiter(self):
        """Test a name without '@' is unavailable."""
        assert pid("12345") is None

    def test_pid_of_current_process(self):
        """Test the current process has a PID."""
        assert runtime_name().startswith(f"{os.getpid()}@")
        assert pid() == str(os.getpid())


class TestSelectStrategy:
    """Tests for platform strategy selection."""

    def test_windows(self, fake_runner):
        """Test Windows platforms use the wmic strategy."""
        assert isinstance(select_strategy("win32", fake_runner()), WindowsStrategy)

    def test_unix(self, fake_runner):
        """Test Unix platforms use the ps strategy."""
        for platform in ("linux", "darwin", "freebsd13"):
            assert isinstance(select_strategy(platform, fake_runner()), UnixStrategy)

    def test_unsupported(self, fake_runner):
        """Test other platforms get the unsupported strategy."""
        assert isinstance(select_strategy("emscripten", fake_runner()), UnsupportedStrategy)


class TestWindowsStrategy:
    """Tests for the wmic based strategy."""

    def test_query_timestamp_first(self, fake_runner):
        """Test parsing with CreationDate as the first column."""
        runner = fake_runner(
            (0, ["CreationDate               ParentProcessId", "", f"{SELF_CREATED}  200", ""])
        )
        snapshot = WindowsStrategy(runner).query("100")

        assert snapshot.valid
        assert snapshot.pid == "100"
        assert snapshot.ppid == "200"
        assert snapshot.time == CreationTime(SELF_CREATED)
        assert runner.calls == [
            [
                "wmic",
                "process",
                "where",
                "(ProcessId=100)",
                "get",
                "CreationDate,ParentProcessId",
            ]
        ]

    def test_query_ppid_first(self, fake_runner):
        """Test parsing with ParentProcessId as the first column."""
        runner = fake_runner((0, ["ParentProcessId  CreationDate", f"200  {SELF_CREATED}"]))
        snapshot = WindowsStrategy(runner).query("100")

        assert snapshot.ppid == "200"
        assert snapshot.time == CreationTime(SELF_CREATED)

    def test_query_ignores_rows_before_header(self, fake_runner):
        """Test data is only accepted after a recognized header."""
        runner = fake_runner((0, [f"{SELF_CREATED}  200", "Node  Name"]))

        assert WindowsStrategy(runner).query("100") is INVALID_PROCESS

    def test_query_ignores_malformed_rows(self, fake_runner):
        """Test rows without exactly two tokens are dropped."""
        runner = fake_runner(
            (0, ["CreationDate ParentProcessId", "only-one", "a b c", f"{SELF_CREATED} 200"])
        )
        snapshot = WindowsStrategy(runner).query("100")

        assert snapshot.ppid == "200"

    def test_query_non_zero_exit(self, fake_runner):
        """Test a failing command gives the invalid snapshot."""
        runner = fake_runner((1, ["CreationDate ParentProcessId", f"{SELF_CREATED} 200"]))

        assert WindowsStrategy(runner).query("100") is INVALID_PROCESS

    def test_query_launch_failure(self, fake_runner):
        """Test a command that cannot be launched gives the invalid snapshot."""
        runner = fake_runner(CommandExecutionError("no wmic"))

        assert WindowsStrategy(runner).query("100") is INVALID_PROCESS

    def test_parent_process(self, fake_runner):
        """Test the parent snapshot is keyed by the parent's own creation time."""
        runner = fake_runner(
            (0, ["CreationDate ParentProcessId", f"{SELF_CREATED} 200"]),
            (0, ["CreationDate ParentProcessId", f"{PARENT_CREATED} 1"]),
        )
        parent = WindowsStrategy(runner, own_pid=lambda: "100").parent_process()

        assert parent.pid == "200"
        assert parent.time == CreationTime(PARENT_CREATED)
        assert runner.calls[1][3] == "(ProcessId=200)"

    def test_parent_process_without_own_pid(self, fake_runner):
        """Test detection is disabled when the own PID is unknown."""
        runner = fake_runner()

        assert WindowsStrategy(runner, own_pid=lambda: None).parent_process() is INVALID_PROCESS
        assert runner.calls == []


class TestUnixStrategy:
    """Tests for the ps based strategy."""

    def test_query(self, fake_runner):
        """Test the elapsed seconds of the current parent are read."""
        runner = fake_runner((0, ["", "   3600  "]))
        snapshot = UnixStrategy(runner, parent_pid=lambda: 42).query()

        assert snapshot.valid
        assert snapshot.time == ElapsedTime(3600)
        assert runner.calls == [["ps", "-o", "etimes=", "-p", "42"]]

    def test_query_ignores_non_numeric_lines(self, fake_runner):
        """Test only pure decimal lines are accepted."""
        runner = fake_runner((0, ["ELAPSED", "1:00", "-5"]))

        assert UnixStrategy(runner, parent_pid=lambda: 42).query() is INVALID_PROCESS

    def test_query_non_zero_exit(self, fake_runner):
        """Test a failing command gives the invalid snapshot."""
        runner = fake_runner((1, ["3600"]))

        assert UnixStrategy(runner, parent_pid=lambda: 42).query() is INVALID_PROCESS

    def test_query_follows_current_parent(self, fake_runner):
        """Test every query targets whoever the parent is now."""
        parents = iter([42, 1])
        runner = fake_runner((0, ["10"]), (0, ["99999"]))
        strategy = UnixStrategy(runner, parent_pid=lambda: next(parents))
        strategy.query()
        strategy.query()

        assert [call[-1] for call in runner.calls] == ["42", "1"]


class TestProcessLivenessDetector:
    """Tests for ProcessLivenessDetector."""

    def test_unix_parent_alive_when_older(self, fake_runner):
        """Test the same parent keeps growing older."""
        runner = fake_runner((0, ["100"]), (0, ["100"]), (0, ["105"]))
        detector = ProcessLivenessDetector(strategy=UnixStrategy(runner, parent_pid=lambda: 42))

        assert detector.can_use()
        assert detector.parent_process.time == ElapsedTime(100)
        assert detector.is_parent_alive()
        assert detector.is_parent_alive()

    def test_unix_parent_dead_when_younger(self, fake_runner):
        """Test a younger parent means the original one died."""
        runner = fake_runner((0, ["100"]), (0, ["3"]))
        detector = ProcessLivenessDetector(strategy=UnixStrategy(runner, parent_pid=lambda: 42))

        assert not detector.is_parent_alive()

    def test_unix_parent_dead_when_query_fails(self, fake_runner):
        """Test an invalid fresh snapshot means not alive."""
        runner = fake_runner((0, ["100"]), (1, []))
        detector = ProcessLivenessDetector(strategy=UnixStrategy(runner, parent_pid=lambda: 42))

        assert not detector.is_parent_alive()

    def test_unix_parent_dead_when_reparented(self, fake_runner):
        """Test an orphaned worker adopted by an older init is not fooled."""
        parents = iter([4242, 1])
        runner = fake_runner((0, ["100"]), (0, ["999999"]))
        detector = ProcessLivenessDetector(
            strategy=UnixStrategy(runner, parent_pid=lambda: next(parents))
        )

        assert detector.parent_process.pid == "4242"
        assert not detector.is_parent_alive()
        assert runner.calls[1][-1] == "1"

    def test_windows_parent_alive_with_same_creation_time(self, fake_runner):
        """Test an unchanged creation timestamp means the same parent."""
        runner = fake_runner(
            (0, ["CreationDate ParentProcessId", f"{SELF_CREATED} 200"]),
            (0, ["CreationDate ParentProcessId", f"{PARENT_CREATED} 1"]),
            (0, ["ParentProcessId CreationDate", f"1 {PARENT_CREATED}"]),
        )
        strategy = WindowsStrategy(runner, own_pid=lambda: "100")
        detector = ProcessLivenessDetector(strategy=strategy)

        assert detector.can_use()
        assert detector.is_parent_alive()
        assert runner.calls[2][3] == "(ProcessId=200)"

    def test_windows_parent_dead_when_pid_reused(self, fake_runner):
        """Test a different creation timestamp means another process."""
        runner = fake_runner(
            (0, ["CreationDate ParentProcessId", f"{SELF_CREATED} 200"]),
            (0, ["CreationDate ParentProcessId", f"{PARENT_CREATED} 1"]),
            (0, ["CreationDate ParentProcessId", "20171019130000.000000+120 7"]),
        )
        detector = ProcessLivenessDetector(
            strategy=WindowsStrategy(runner, own_pid=lambda: "100")
        )

        assert not detector.is_parent_alive()

    def test_windows_parent_dead_when_gone(self, fake_runner):
        """Test a missing parent means not alive."""
        runner = fake_runner(
            (0, ["CreationDate ParentProcessId", f"{SELF_CREATED} 200"]),
            (0, ["CreationDate ParentProcessId", f"{PARENT_CREATED} 1"]),
            (0, ["No Instance(s) Available."]),
        )
        detector = ProcessLivenessDetector(
            strategy=WindowsStrategy(runner, own_pid=lambda: "100")
        )

        assert not detector.is_parent_alive()

    def test_cannot_use_after_failed_startup(self, fake_runner):
        """Test liveness queries fail when the parent is unknown."""
        detector = ProcessLivenessDetector(
            strategy=UnixStrategy(fake_runner((1, [])), parent_pid=lambda: 42)
        )

        assert not detector.can_use()
        assert detector.parent_process is INVALID_PROCESS
        with pytest.raises(RuntimeError):
            detector.is_parent_alive()

    def test_unsupported_platform(self, fake_runner):
        """Test unsupported platforms degrade to an unusable detector."""
        runner = fake_runner()
        detector = ProcessLivenessDetector(runner=runner, platform="emscripten")

        assert not detector.can_use()
        assert runner.calls == []
        with pytest.raises(RuntimeError):
            detector.is_parent_alive()

    @pytest.mark.skipif(
        not sys.platform.startswith("linux") or shutil.which("ps") is None,
        reason="needs procps ps",
    )
    def test_finds_alive_parent_process(self):
        """Test the real parent of the test run is recognized and alive."""
        detector = ProcessLivenessDetector()

        assert detector.can_use()
        time.sleep(0.1)
        assert detector.is_parent_alive()
