"""Command execution port used for process introspection."""

import logging
import subprocess
from collections.abc import Callable, Sequence
from typing import IO, Protocol, cast

logger = logging.getLogger(__name__)

LineConsumer = Callable[[str], None]


class CommandExecutionError(Exception):
    """The command could not be launched or did not finish in time."""


class CommandRunner(Protocol):
    """Runs an external command and streams its output lines."""

    def run(self, args: Sequence[str], consume_line: LineConsumer) -> int:
        """Run ``args``, feed each stdout line to ``consume_line``, return the exit code."""
        ...


class SubprocessRunner:
    """
    CommandRunner backed by ``subprocess``.

    Without a timeout, stdout is consumed line by line while the command runs
    and the caller blocks until it exits. With a timeout, the output is
    collected first and then handed to the consumer line by line. Bytes the
    locale encoding cannot decode are replaced rather than raised.
    """

    def __init__(self, timeout: float | None = None) -> None:
        """
        Initialize the SubprocessRunner.

        Args:
            timeout: Seconds to wait for the command before killing it.
                None waits as long as the command takes.
        """
        self._timeout = timeout

    @property
    def timeout(self) -> float | None:
        """Get the command timeout."""
        return self._timeout

    def run(self, args: Sequence[str], consume_line: LineConsumer) -> int:
        logger.debug("Running %s", " ".join(args))
        try:
            proc = subprocess.Popen(
                list(args),
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
            )
        except (OSError, ValueError) as e:
            raise CommandExecutionError(f"cannot launch {args[0]!r}: {e}") from e

        with proc:
            if self._timeout is None:
                try:
                    for line in cast(IO[str], proc.stdout):
                        consume_line(line.rstrip("\r\n"))
                except OSError as e:
                    proc.kill()
                    raise CommandExecutionError(f"cannot read output of {args[0]!r}: {e}") from e
                return proc.wait()

            try:
                out, _ = proc.communicate(timeout=self._timeout)
            except subprocess.TimeoutExpired as e:
                proc.kill()
                proc.communicate()
                raise CommandExecutionError(
                    f"{args[0]!r} did not finish within {self._timeout}s"
                ) from e
            for line in out.splitlines():
                consume_line(line)
            return proc.returncode
