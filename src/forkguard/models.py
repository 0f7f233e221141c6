"""Data models for forkguard."""

from dataclasses import dataclass


@dataclass(slots=True, frozen=True, order=True)
class ElapsedTime:
    """Elapsed running time of a process, in whole seconds (Unix family)."""

    seconds: int


@dataclass(slots=True, frozen=True)
class CreationTime:
    """Opaque creation timestamp token of a process (Windows family)."""

    token: str


@dataclass(slots=True, frozen=True)
class ProcessSnapshot:
    """
    Immutable snapshot of a process identity and its liveness signal.

    A snapshot is either the invalid sentinel (no identity, no time) or carries
    exactly one kind of time value. Check ``valid`` before reading the rest.
    """

    pid: str | None = None
    time: ElapsedTime | CreationTime | None = None
    ppid: str | None = None

    @property
    def valid(self) -> bool:
        """Whether the process could be introspected."""
        return self.time is not None

    @classmethod
    def elapsed(cls, seconds: int, pid: str | None = None) -> "ProcessSnapshot":
        """Build a snapshot carrying the elapsed running time of a process."""
        if seconds < 0:
            raise ValueError(f"elapsed seconds must not be negative: {seconds}")
        return cls(pid=pid, time=ElapsedTime(seconds))

    @classmethod
    def absolute(cls, pid: str, token: str, ppid: str | None) -> "ProcessSnapshot":
        """Build a snapshot carrying the creation timestamp of a process."""
        return cls(pid=pid, time=CreationTime(token), ppid=ppid)


INVALID_PROCESS = ProcessSnapshot()
