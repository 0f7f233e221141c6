"""Watchdog thread that stops a worker once its orchestrator is gone."""

import logging
import threading
import time
from collections.abc import Callable

from forkguard.idle import MemoryUsage, heap_memory_usage, is_orchestrator_idle
from forkguard.liveness import ProcessLivenessDetector

logger = logging.getLogger(__name__)

PARENT_DIED = "parent-died"
ORCHESTRATOR_IDLE = "orchestrator-idle"


class ParentWatchdog:
    """
    Periodically checks the parent process and the orchestrator's silence.

    Runs in a separate daemon thread. When the parent is no longer alive or
    the orchestrator has been idle for too long, ``on_exit`` is called once
    with the reason and the watchdog stops polling.
    """

    def __init__(
        self,
        on_exit: Callable[[str], None],
        detector: ProcessLivenessDetector | None = None,
        poll_rate: float = 1.0,
        memory_usage: Callable[[], MemoryUsage] = heap_memory_usage,
    ) -> None:
        """
        Initialize the ParentWatchdog.

        Args:
            on_exit: Called with PARENT_DIED or ORCHESTRATOR_IDLE.
            detector: Parent liveness detector. Created on first start if None.
            poll_rate: How often to check (in seconds). Default 1.0s.
            memory_usage: Source of the worker's memory usage.
        """
        self._on_exit = on_exit
        self._detector = detector
        self._poll_rate = max(0.1, poll_rate)
        self._memory_usage = memory_usage
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_contact = time.monotonic()

    @property
    def poll_rate(self) -> float:
        """Get the current poll rate."""
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        """Set the poll rate."""
        self._poll_rate = max(0.1, value)  # Minimum 0.1 seconds

    @property
    def is_running(self) -> bool:
        """Check if the watchdog thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def touch(self) -> None:
        """Record that the orchestrator has just been heard from."""
        self._last_contact = time.monotonic()

    def millis_since_contact(self) -> int:
        """Milliseconds since the last ``touch()`` (or construction)."""
        return int((time.monotonic() - self._last_contact) * 1000)

    def start(self) -> None:
        """Start the watchdog thread."""
        if self.is_running:
            return

        if self._detector is None:
            self._detector = ProcessLivenessDetector()
        if not self._detector.can_use():
            logger.info("Parent process cannot be recognized, only idle checks will run")

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="ParentWatchdog",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the watchdog thread.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        if self._thread is not None:
            if self._thread is not threading.current_thread():
                self._thread.join(timeout=timeout)
            self._thread = None

    def check(self) -> str | None:
        """Run one check and return the exit reason, if any."""
        detector = self._detector
        if detector is not None and detector.can_use() and not detector.is_parent_alive():
            return PARENT_DIED
        if is_orchestrator_idle(self.millis_since_contact(), self._memory_usage()):
            return ORCHESTRATOR_IDLE
        return None

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        while not self._stop_event.wait(timeout=self._poll_rate):
            try:
                reason = self.check()
            except Exception:
                logger.exception("Watchdog check failed")
                continue

            if reason is not None:
                logger.warning("Worker is exiting: %s", reason)
                self._stop_event.set()
                self._on_exit(reason)
                return
