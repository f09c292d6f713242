"""Fixed-interval, single-flight trigger for reconciliation cycles.

The trigger thread fires every ``interval`` seconds. A fire starts the
job on a worker thread only if no job is running; otherwise that fire is
skipped, never queued. Stopping stops the trigger and waits for the
in-flight job to finish, so a cycle is never cut in half.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger("validator_updater.scheduler")


class Scheduler:
    """Run ``job`` every ``interval`` seconds without overlap.

    Args:
        job: Callable for one cycle. Exceptions are logged, not raised.
        interval: Seconds between fires (the first fire is immediate).
        name: Thread name prefix.
    """

    def __init__(self, job: Callable[[], None], interval: float = 5.0, name: str = "updater") -> None:
        self._job = job
        self.interval = interval
        self._name = name
        self._stop_event = threading.Event()
        self._busy = threading.Lock()
        self._trigger: Optional[threading.Thread] = None
        self._worker: Optional[threading.Thread] = None
        self.fired = 0
        self.skipped = 0

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> None:
        self._stop_event.clear()
        self._trigger = threading.Thread(
            target=self._trigger_loop, name=f"{self._name}-trigger", daemon=True,
        )
        self._trigger.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop firing and wait for the running cycle, if any, to complete."""
        self._stop_event.set()
        if self._trigger is not None:
            self._trigger.join(timeout=timeout)
        worker = self._worker
        if worker is not None and worker.is_alive():
            logger.info("Waiting for the in-flight cycle to finish...")
            worker.join(timeout=timeout)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop is requested. Returns True if it was."""
        return self._stop_event.wait(timeout=timeout)

    def request_stop(self) -> None:
        """Ask the trigger to stop at the next cycle boundary (signal-safe)."""
        self._stop_event.set()

    def fire(self) -> bool:
        """Start one cycle now unless one is running.

        Returns:
            bool: True if a cycle was started, False if skipped.
        """
        if not self._busy.acquire(blocking=False):
            self.skipped += 1
            logger.debug("Previous cycle still running, skipping this tick")
            return False
        self.fired += 1
        self._worker = threading.Thread(
            target=self._run_job, name=f"{self._name}-cycle", daemon=True,
        )
        self._worker.start()
        return True

    def _run_job(self) -> None:
        try:
            self._job()
        except Exception:
            logger.exception("Reconciliation cycle crashed")
        finally:
            self._busy.release()

    def _trigger_loop(self) -> None:
        next_fire = time.monotonic()
        while not self._stop_event.is_set():
            self.fire()
            next_fire += self.interval
            self._stop_event.wait(timeout=max(0.0, next_fire - time.monotonic()))
