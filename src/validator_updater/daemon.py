"""
Updater daemon: the always-on reconciliation service.

Owns the applied state, feeds it through the reconciler every poll
interval via the single-flight scheduler, and records cycle results for
status reporting. SIGTERM/SIGINT stop the service at the next cycle
boundary; a stop/create sequence in flight always runs to completion or
to its own timeout first.
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
from datetime import datetime, timezone
from typing import Optional

from .models import AppliedState
from .reconciler import CycleOutcome, CycleResult, Reconciler
from .scheduler import Scheduler
from .settings import UpdaterSettings

logger = logging.getLogger("validator_updater.daemon")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


class ServiceState:
    """Thread-safe record of what the service has been doing.

    The applied state lives here so status reporting can read it; only
    the cycle worker ever replaces it.
    """

    def __init__(self, applied: Optional[AppliedState] = None):
        self._lock = threading.Lock()
        self.applied: AppliedState = applied or AppliedState()
        self.started_at: Optional[datetime] = None
        self.last_cycle: Optional[datetime] = None
        self.last_outcome: Optional[CycleOutcome] = None
        self.cycles_run: int = 0
        self.replacements: int = 0
        self.errors: list[str] = []
        self.running: bool = False

    def record_cycle(self, result: CycleResult) -> None:
        """Store a cycle result and carry its applied state forward."""
        with self._lock:
            self.applied = result.applied
            self.last_cycle = datetime.now(timezone.utc)
            self.last_outcome = result.outcome
            self.cycles_run += 1
            if result.outcome == CycleOutcome.REPLACED:
                self.replacements += 1
            if result.error is not None:
                self._append_error(f"{type(result.error).__name__}: {result.error}")

    def _append_error(self, error: str) -> None:
        ts = datetime.now(timezone.utc).isoformat()
        self.errors.append(f"[{ts}] {error}")
        if len(self.errors) > 50:
            self.errors = self.errors[-50:]

    def snapshot(self) -> dict:
        """Serializable view of the current state."""
        with self._lock:
            return {
                "running": self.running,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "last_cycle": self.last_cycle.isoformat() if self.last_cycle else None,
                "last_outcome": self.last_outcome.value if self.last_outcome else None,
                "cycles_run": self.cycles_run,
                "replacements": self.replacements,
                "applied_fingerprint": self.applied.last_fingerprint,
                "vm_id": self.applied.vm_id,
                "recent_errors": self.errors[-10:],
                "pid": os.getpid(),
            }


class UpdaterService:
    """The update daemon.

    Args:
        settings: Service settings.
        reconciler: Cycle implementation. Built from settings if omitted.
        state: Initial service state (mostly for tests).
    """

    def __init__(
        self,
        settings: UpdaterSettings,
        reconciler: Optional[Reconciler] = None,
        state: Optional[ServiceState] = None,
    ):
        self.settings = settings
        self.reconciler = reconciler or Reconciler.from_settings(settings)
        self.state = state or ServiceState()
        self.scheduler = Scheduler(self.run_cycle, interval=settings.poll_interval)

    def run_cycle(self) -> CycleResult:
        """Run one cycle against the current applied state and record it."""
        result = self.reconciler.run_cycle(self.state.applied)
        self.state.record_cycle(result)
        if result.outcome in (CycleOutcome.REPLACED, CycleOutcome.ADOPTED):
            logger.info(
                "Applied state now fingerprint=%s vm_id=%s",
                result.applied.last_fingerprint, result.applied.vm_id,
            )
        return result

    def start(self) -> None:
        """Install signal handlers and start the scheduler."""
        self._setup_signals()
        self.state.running = True
        self.state.started_at = datetime.now(timezone.utc)
        logger.info("Starting validator auto-updater")
        logger.info(
            "Polling %s every %ss, VMM at %s",
            self.settings.api_url, self.settings.poll_interval, self.settings.vmm_url,
        )
        self.scheduler.start()

    def stop(self) -> None:
        """Stop firing cycles and wait for the current one to finish."""
        logger.info("Updater stopping...")
        self.scheduler.stop()
        self.state.running = False
        logger.info(
            "Updater stopped after %d cycles (%d skipped ticks).",
            self.state.cycles_run, self.scheduler.skipped,
        )

    def run_forever(self) -> None:
        """Block until a stop is requested, then shut down cleanly."""
        try:
            while not self.scheduler.wait(timeout=1):
                pass
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def _setup_signals(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame):
        logger.info("Received signal %s, stopping after the current cycle", signal.Signals(signum).name)
        self.scheduler.request_stop()


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure console (and optional file) logging for the service."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        handler = logging.FileHandler(log_file)
        handler.setFormatter(formatter)
        root.addHandler(handler)
