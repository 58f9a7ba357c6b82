from __future__ import annotations

from typing import Any, Callable
import logging
import threading

logger = logging.getLogger(__name__)


class BackupScheduler:
    """Runs a backup cycle immediately and then every ``interval_seconds``.

    ``stop_event`` is only consulted between cycles, so a shutdown request
    lets the running cycle and its restic calls finish first.
    """

    def __init__(
        self,
        *,
        cycle: Callable[[], Any],
        interval_seconds: float,
        stop_event: threading.Event | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.cycle = cycle
        self.interval_seconds = interval_seconds
        self.stop_event = stop_event or threading.Event()
        self.completed_cycles = 0
        self.failed_cycles = 0

    def stop(self) -> None:
        self.stop_event.set()

    def run(self, *, max_cycles: int | None = None) -> None:
        if self.stop_event.is_set():
            return

        self._run_cycle(initial=True)
        if max_cycles is not None and self.completed_cycles >= max_cycles:
            return
        logger.info("Starting backup loop with interval: %ss", _format_seconds(self.interval_seconds))

        while max_cycles is None or self.completed_cycles < max_cycles:
            if self.stop_event.wait(self.interval_seconds):
                logger.info("Shutdown requested, stopping backup loop")
                break
            self._run_cycle(initial=False)

    def _run_cycle(self, *, initial: bool) -> None:
        try:
            self.cycle()
        except Exception as error:  # pylint: disable=broad-except
            self.failed_cycles += 1
            label = "Initial backup" if initial else "Backup cycle"
            logger.error("%s failed: %s", label, error)
        finally:
            self.completed_cycles += 1


def _format_seconds(seconds: float) -> str:
    return str(int(seconds)) if float(seconds).is_integer() else f"{seconds:g}"
