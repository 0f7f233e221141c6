"""Heuristic deciding whether a silent orchestrator should be presumed idle."""

import time
from dataclasses import dataclass

import psutil

MIB = 1024 * 1024
GIB = 1024 * MIB

# (upper bound of committed memory in bytes, idle threshold in milliseconds)
# Larger workers run heavier jobs and see sparser pings from the orchestrator.
IDLE_THRESHOLDS: tuple[tuple[int, int], ...] = (
    (512 * MIB, 10_000),
    (1 * GIB, 20_000),
    (2 * GIB, 30_000),
    (4 * GIB - 1, 45_000),
)
MAX_IDLE_THRESHOLD = 60_000


@dataclass(slots=True, frozen=True)
class MemoryUsage:
    """Memory usage of the worker, in bytes."""

    init: int
    used: int
    committed: int
    max: int


def heap_memory_usage(process: psutil.Process | None = None) -> MemoryUsage:
    """
    Read the live memory usage of a process.

    The resident set is what the OS has actually committed to the process,
    so it is reported both as ``used`` and ``committed``.

    Args:
        process: Process to inspect. Defaults to the current process.
    """
    if process is None:
        process = psutil.Process()
    mem_info = process.memory_info()
    return MemoryUsage(init=0, used=mem_info.rss, committed=mem_info.rss, max=mem_info.vms)


def process_uptime_millis(process: psutil.Process | None = None) -> int:
    """Milliseconds since the given (default: current) process started."""
    if process is None:
        process = psutil.Process()
    return int((time.time() - process.create_time()) * 1000)


def idle_threshold_millis(committed_bytes: int) -> int:
    """Return how long the orchestrator may stay silent for this heap size."""
    for upper_bound, threshold in IDLE_THRESHOLDS:
        if committed_bytes <= upper_bound:
            return threshold
    return MAX_IDLE_THRESHOLD


def is_orchestrator_idle(elapsed_millis: int, heap: int | MemoryUsage) -> bool:
    """
    Decide whether the orchestrator has been silent for too long.

    Args:
        elapsed_millis: Milliseconds since the last contact with the orchestrator.
        heap: Committed memory in bytes, or a MemoryUsage snapshot.

    Returns:
        True if ``elapsed_millis`` exceeds the threshold for the heap size.
        Reaching the threshold exactly is not idle.
    """
    committed = heap.committed if isinstance(heap, MemoryUsage) else heap
    return elapsed_millis > idle_threshold_millis(committed)


def is_orchestrator_idle_since(
    previous_uptime_millis: int,
    heap: int | MemoryUsage,
    uptime_millis: int | None = None,
) -> bool:
    """
    Same as ``is_orchestrator_idle`` but measured between two worker uptimes.

    Args:
        previous_uptime_millis: Worker uptime at the last orchestrator contact.
        heap: Committed memory in bytes, or a MemoryUsage snapshot.
        uptime_millis: Current worker uptime. Defaults to the live value.
    """
    if uptime_millis is None:
        uptime_millis = process_uptime_millis()
    return is_orchestrator_idle(uptime_millis - previous_uptime_millis, heap)
