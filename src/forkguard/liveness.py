"""
Parent process liveness detection for forked workers.

The worker captures a snapshot of its parent once and later compares fresh
snapshots against it. Introspection shells out to platform utilities:

* Windows reports an absolute creation timestamp (``wmic``). The same parent
  keeps the same creation timestamp, a reused PID almost never does.
* Unix reports the elapsed running time of the current parent (``ps``). The
  same parent keeps growing older. A worker re-parented to init or a
  subreaper sees a different parent PID and reports its parent as gone.

Any failure of the utility degrades to ``INVALID_PROCESS``.
"""

import logging
import os
import re
import socket
import sys
from collections.abc import Callable
from typing import Protocol

from forkguard.commands import CommandExecutionError, CommandRunner, SubprocessRunner
from forkguard.models import INVALID_PROCESS, ProcessSnapshot

logger = logging.getLogger(__name__)

NUMBER_PATTERN = re.compile(r"^\d+$")

WMIC_PPID = "ParentProcessId"
WMIC_CREATION_DATE = "CreationDate"

WINDOWS_PLATFORMS = ("win32", "cygwin")
UNIX_PLATFORMS = ("linux", "darwin", "freebsd", "openbsd", "netbsd", "sunos", "aix")


def runtime_name() -> str:
    """Return the name of the running interpreter as ``<pid>@<hostname>``."""
    return f"{os.getpid()}@{socket.gethostname()}"


def pid(name: str | None = None) -> str | None:
    """
    Extract the process identity token from a runtime name.

    Args:
        name: Runtime name of the form ``<pid>@<host>``. Defaults to the
            name of the current process.

    Returns:
        The decimal PID string, or None if the name carries no numeric PID.
    """
    if name is None:
        name = runtime_name()
    if "@" not in name:
        return None
    token = name.split("@", 1)[0].strip()
    return token if NUMBER_PATTERN.match(token) else None


class _Strategy:
    """Platform specific way of snapshotting and re-checking the parent."""

    def parent_process(self) -> ProcessSnapshot:
        raise NotImplementedError

    def is_alive(self, parent: ProcessSnapshot) -> bool:
        raise NotImplementedError


class _WmicConsumer:
    """Parses ``wmic ... get CreationDate,ParentProcessId`` output lines."""

    def __init__(self, pid: str) -> None:
        self._pid = pid
        self._has_header = False
        self._timestamp_first = False
        self.result: ProcessSnapshot | None = None

    def __call__(self, line: str) -> None:
        tokens = line.split()
        if len(tokens) != 2:
            # blank lines and anything that is not a two column row
            return

        first, second = tokens
        if not self._has_header:
            labels = (WMIC_CREATION_DATE, WMIC_PPID)
            self._timestamp_first = first == WMIC_CREATION_DATE
            self._has_header = first in labels and second in labels and first != second
            return

        if self._timestamp_first:
            timestamp, ppid = first, second
        else:
            ppid, timestamp = first, second
        self.result = ProcessSnapshot.absolute(self._pid, timestamp, ppid)


class _UnixConsumer:
    """Picks the elapsed seconds out of ``ps -o etimes=`` output lines."""

    def __init__(self, pid: str) -> None:
        self._pid = pid
        self.result: ProcessSnapshot | None = None

    def __call__(self, line: str) -> None:
        line = line.strip()
        if NUMBER_PATTERN.match(line):
            self.result = ProcessSnapshot.elapsed(int(line), pid=self._pid)
        elif line:
            logger.debug("Ignoring ps output line %r", line)


class _OutputConsumer(Protocol):
    """Line consumer that leaves its parsed snapshot in ``result``."""

    result: ProcessSnapshot | None

    def __call__(self, line: str) -> None: ...


def _execute(runner: CommandRunner, args: list[str], consumer: _OutputConsumer) -> ProcessSnapshot:
    try:
        exit_code = runner.run(args, consumer)
    except CommandExecutionError as e:
        logger.debug("Process introspection unavailable: %s", e)
        return INVALID_PROCESS
    if exit_code != 0:
        logger.debug("%s exited with %d", args[0], exit_code)
        return INVALID_PROCESS
    return consumer.result if consumer.result is not None else INVALID_PROCESS


class WindowsStrategy(_Strategy):
    """Absolute-time family: compares creation timestamps reported by wmic."""

    def __init__(
        self,
        runner: CommandRunner,
        own_pid: Callable[[], str | None] = pid,
    ) -> None:
        self._runner = runner
        self._own_pid = own_pid

    def query(self, process_id: str) -> ProcessSnapshot:
        """Snapshot ``process_id`` with its creation timestamp and parent PID."""
        args = [
            "wmic",
            "process",
            "where",
            f"(ProcessId={process_id})",
            "get",
            f"{WMIC_CREATION_DATE},{WMIC_PPID}",
        ]
        return _execute(self._runner, args, _WmicConsumer(process_id))

    def parent_process(self) -> ProcessSnapshot:
        current_pid = self._own_pid()
        if current_pid is None:
            return INVALID_PROCESS
        current = self.query(current_pid)
        if not current.valid or current.ppid is None:
            return INVALID_PROCESS
        return self.query(current.ppid)

    def is_alive(self, parent: ProcessSnapshot) -> bool:
        fresh = self.query(parent.pid)
        return fresh.valid and fresh.time == parent.time


class UnixStrategy(_Strategy):
    """Elapsed-time family: the current parent must not have become younger."""

    def __init__(
        self,
        runner: CommandRunner,
        parent_pid: Callable[[], int] = os.getppid,
    ) -> None:
        self._runner = runner
        self._parent_pid = parent_pid

    def query(self) -> ProcessSnapshot:
        """Snapshot whichever process is the parent right now."""
        ppid = str(self._parent_pid())
        args = ["ps", "-o", "etimes=", "-p", ppid]
        return _execute(self._runner, args, _UnixConsumer(ppid))

    def parent_process(self) -> ProcessSnapshot:
        return self.query()

    def is_alive(self, parent: ProcessSnapshot) -> bool:
        fresh = self.query()
        if fresh.pid != parent.pid:
            # re-parented to init or a subreaper: the original parent is gone
            return False
        return fresh.valid and fresh.time >= parent.time


class UnsupportedStrategy(_Strategy):
    """Platforms without a known introspection utility."""

    def parent_process(self) -> ProcessSnapshot:
        return INVALID_PROCESS

    def is_alive(self, parent: ProcessSnapshot) -> bool:
        raise RuntimeError("parent liveness is not supported on this platform")


def select_strategy(platform: str, runner: CommandRunner) -> _Strategy:
    """Pick the liveness strategy for a ``sys.platform`` value."""
    if platform.startswith(WINDOWS_PLATFORMS):
        return WindowsStrategy(runner)
    if platform.startswith(UNIX_PLATFORMS):
        return UnixStrategy(runner)
    return UnsupportedStrategy()


class ProcessLivenessDetector:
    """
    Recognizes the parent process and tells whether it is still alive.

    The parent snapshot is taken once, on construction. Callers must check
    ``can_use()`` before asking ``is_parent_alive()``.
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        platform: str | None = None,
        strategy: _Strategy | None = None,
    ) -> None:
        """
        Initialize the ProcessLivenessDetector.

        Args:
            runner: Command runner used to query the process table.
            platform: ``sys.platform`` style name. Defaults to the running one.
            strategy: Explicit strategy, overriding platform selection.
        """
        if strategy is None:
            strategy = select_strategy(
                platform if platform is not None else sys.platform,
                runner if runner is not None else SubprocessRunner(),
            )
        self._strategy = strategy
        parent = strategy.parent_process()
        self._parent_process = parent if parent.valid else INVALID_PROCESS
        logger.debug("Parent process snapshot: %s", self._parent_process)

    @property
    def parent_process(self) -> ProcessSnapshot:
        """Get the snapshot of the parent taken at startup."""
        return self._parent_process

    def can_use(self) -> bool:
        """Whether the parent could be recognized at startup."""
        return self._parent_process.valid

    def is_parent_alive(self) -> bool:
        """
        Check whether the parent seen at startup is still alive.

        Raises:
            RuntimeError: If ``can_use()`` is False.
        """
        if not self.can_use():
            raise RuntimeError("parent process is unknown, check can_use() first")
        return self._strategy.is_alive(self._parent_process)
