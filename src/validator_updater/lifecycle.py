"""
VM lifecycle manager: drives the single VM slot through replacement.

The slot moves through an explicit state machine:

    absent → creating → running → stopping → stopped → absent → creating …
                 └──────────┴─────────┴→ failed

Replacement is strictly stop-confirm-remove-create. If the old VM does
not confirm it stopped within the stop timeout, the replacement is
abandoned for this cycle and CreateVm is never called, so the slot never
has two live VMs. All waiting goes through an injectable Clock so the
timeouts are testable without real sleeps.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Protocol

from .errors import (
    CreateFailed,
    LifecycleError,
    NetworkError,
    RemoveFailed,
    StopTimeout,
    UpdaterError,
)
from .models import VmRecord, VmStatus

logger = logging.getLogger("validator_updater.lifecycle")

STOP_TIMEOUT = 60.0
CREATE_TIMEOUT = 300.0
POLL_INTERVAL = 2.0
REMOVE_ATTEMPTS = 3
REMOVE_RETRY_DELAY = 3.0

TRANSITIONS: dict[VmStatus, frozenset[VmStatus]] = {
    VmStatus.ABSENT: frozenset({VmStatus.CREATING}),
    VmStatus.CREATING: frozenset({VmStatus.RUNNING, VmStatus.STOPPED, VmStatus.FAILED}),
    VmStatus.RUNNING: frozenset({VmStatus.STOPPING}),
    VmStatus.STOPPING: frozenset({VmStatus.STOPPED, VmStatus.ABSENT, VmStatus.FAILED}),
    VmStatus.STOPPED: frozenset({VmStatus.ABSENT, VmStatus.CREATING, VmStatus.FAILED}),
    VmStatus.FAILED: frozenset({VmStatus.STOPPING, VmStatus.ABSENT, VmStatus.CREATING}),
}


class Clock(Protocol):
    def monotonic(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock implementation backed by the time module."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class VmManagerApi(Protocol):
    def get_vm_status(self, vm_id: str) -> VmStatus: ...

    def create_vm(self, request: Dict[str, Any]) -> str: ...

    def stop_vm(self, vm_id: str) -> None: ...

    def remove_vm(self, vm_id: str) -> None: ...


class VmLifecycle:
    """State machine for the VM slot.

    Args:
        vmm: VM manager API.
        clock: Time source for polling and timeouts.
        stop_timeout: Seconds to wait for a stop to be confirmed.
        create_timeout: Seconds to wait for a new VM to come up.
        poll_interval: Seconds between status polls.
        remove_attempts: RemoveVm attempts before giving up.
        remove_retry_delay: Seconds between RemoveVm attempts.
        force_remove_on_stop_timeout: Remove (destroy) a VM whose stop
            was never confirmed and carry on creating. Off by default.
    """

    def __init__(
        self,
        vmm: VmManagerApi,
        clock: Optional[Clock] = None,
        stop_timeout: float = STOP_TIMEOUT,
        create_timeout: float = CREATE_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
        remove_attempts: int = REMOVE_ATTEMPTS,
        remove_retry_delay: float = REMOVE_RETRY_DELAY,
        force_remove_on_stop_timeout: bool = False,
    ) -> None:
        self._vmm = vmm
        self._clock = clock or SystemClock()
        self.stop_timeout = stop_timeout
        self.create_timeout = create_timeout
        self.poll_interval = poll_interval
        self.remove_attempts = remove_attempts
        self.remove_retry_delay = remove_retry_delay
        self.force_remove_on_stop_timeout = force_remove_on_stop_timeout
        self.status = VmStatus.ABSENT
        self.vm_id: Optional[str] = None

    # -------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------

    def observe(self, record: Optional[VmRecord]) -> None:
        """Sync the machine with what the manager reports, no checks."""
        if record is None:
            self.status, self.vm_id = VmStatus.ABSENT, None
        else:
            self.status, self.vm_id = record.status, record.vm_id

    def _transition(self, new: VmStatus) -> None:
        if new == self.status:
            return
        if new not in TRANSITIONS[self.status]:
            raise LifecycleError(f"Illegal VM transition {self.status.value} -> {new.value}")
        logger.debug("VM slot %s -> %s", self.status.value, new.value)
        self.status = new

    def _fail(self) -> None:
        self.status = VmStatus.FAILED

    # -------------------------------------------------------------------
    # Replacement protocol
    # -------------------------------------------------------------------

    def replace(self, current: Optional[VmRecord], request: Dict[str, Any]) -> VmRecord:
        """Stop and remove ``current`` (if any), then create from ``request``.

        Args:
            current: The VM occupying the slot, or None.
            request: CreateVm body (compose file, encrypted env, hardware).

        Returns:
            VmRecord: The new VM, running (or stopped if requested so).

        Raises:
            StopTimeout: The old VM did not confirm it stopped.
            RemoveFailed: The old VM could not be removed.
            CreateFailed: The new VM did not come up.
            NetworkError: The manager could not be reached for a stop.
        """
        self.observe(current)
        if current is not None:
            self.retire(current)
        return self.create(request)

    def retire(self, current: VmRecord) -> None:
        """Stop the VM (confirming the stop) and remove it from the manager."""
        if current.status in (VmStatus.RUNNING, VmStatus.CREATING, VmStatus.STOPPING):
            try:
                self.stop(current.vm_id)
            except StopTimeout:
                if not self.force_remove_on_stop_timeout:
                    raise
                logger.warning(
                    "VM %s did not confirm stop; removing it anyway (force_remove_on_stop_timeout)",
                    current.vm_id,
                )
        self.remove(current.vm_id)

    def stop(self, vm_id: str) -> None:
        """Issue StopVm and poll until the VM reports stopped.

        Raises:
            StopTimeout: If not stopped within ``stop_timeout``.
        """
        if self.status == VmStatus.CREATING:
            # Still booting; treat like running for the purpose of stopping.
            self.status = VmStatus.RUNNING
        self._transition(VmStatus.STOPPING)
        try:
            self._vmm.stop_vm(vm_id)
        except UpdaterError:
            self._fail()
            raise
        logger.info("VM %s stop command sent, waiting for VM to stop...", vm_id)

        status = self._wait_for(vm_id, {VmStatus.STOPPED, VmStatus.ABSENT}, self.stop_timeout)
        if status is None:
            self._fail()
            logger.warning("Timeout stopping VM %s", vm_id)
            raise StopTimeout(vm_id, self.stop_timeout)
        self._transition(VmStatus.STOPPED)
        logger.info("VM %s stopped", vm_id)

    def remove(self, vm_id: str) -> None:
        """RemoveVm with a few retries.

        Raises:
            RemoveFailed: After the last failed attempt.
        """
        for attempt in range(1, self.remove_attempts + 1):
            try:
                self._vmm.remove_vm(vm_id)
            except UpdaterError as exc:
                if attempt < self.remove_attempts:
                    logger.warning(
                        "Failed to remove VM %s (attempt %d/%d): %s, retrying...",
                        vm_id, attempt, self.remove_attempts, exc,
                    )
                    self._clock.sleep(self.remove_retry_delay)
                    continue
                logger.error("Failed to remove VM %s after %d attempts", vm_id, attempt)
                self._fail()
                raise RemoveFailed(f"Failed to remove VM {vm_id}: {exc}") from exc
            else:
                break
        self.status, self.vm_id = VmStatus.ABSENT, None
        logger.info("VM %s removed successfully", vm_id)

    def create(self, request: Dict[str, Any]) -> VmRecord:
        """Submit CreateVm and poll until the VM is up.

        Raises:
            CreateFailed: Rejected, failed, or not up within ``create_timeout``.
        """
        self._transition(VmStatus.CREATING)
        try:
            vm_id = self._vmm.create_vm(request)
        except UpdaterError as exc:
            self._fail()
            raise CreateFailed(f"Failed to create VM: {exc}") from exc
        self.vm_id = vm_id
        logger.info("VM created with ID: %s", vm_id)

        target = VmStatus.STOPPED if request.get("stopped") else VmStatus.RUNNING
        status = self._wait_for(vm_id, {target, VmStatus.FAILED}, self.create_timeout)
        if status is None:
            self._fail()
            raise CreateFailed(f"VM {vm_id} not {target.value} within {self.create_timeout:.0f}s")
        if status == VmStatus.FAILED:
            self._fail()
            raise CreateFailed(f"VM {vm_id} entered failed state")
        self._transition(target)
        return VmRecord(vm_id=vm_id, name=request.get("name"), status=target)

    def _wait_for(self, vm_id: str, wanted: set[VmStatus], timeout: float) -> Optional[VmStatus]:
        """Poll until the status is in ``wanted``; None on timeout.

        Transient network errors while polling are logged and polling
        continues until the deadline.
        """
        deadline = self._clock.monotonic() + timeout
        while True:
            try:
                status = self._vmm.get_vm_status(vm_id)
            except NetworkError as exc:
                logger.warning("Status poll for VM %s failed: %s", vm_id, exc)
            else:
                if status in wanted:
                    return status
            if self._clock.monotonic() >= deadline:
                return None
            self._clock.sleep(self.poll_interval)
