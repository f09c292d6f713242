"""
Reconciler: one fetch → compare → (replace) pass.

A cycle is strictly sequential:

    fetch desired state
    → merge local secrets (abort on missing keys)
    → fingerprint and compare with the applied state
    → if drifted: seal env, stop/remove old VM, create new VM
    → return the new applied state

The applied state is passed in and handed back; the reconciler keeps no
record of it. Every failure returns the applied state it was given, so
the next cycle retries the same transition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .control_plane import ControlPlaneClient
from .crypto import CryptoChannel, EncryptedPayload
from .errors import MissingRequiredKeys, UpdaterError
from .fingerprint import app_id, fingerprint, has_drifted
from .lifecycle import Clock, SystemClock, VmLifecycle
from .manifest import compose_file, log_vm_parameters, validate_vm_parameters
from .models import AppliedState, DesiredState, VmRecord, VmStatus
from .settings import UpdaterSettings
from .store import SecretStore, merge_env
from .vmm import VmmClient

logger = logging.getLogger("validator_updater.reconciler")


class CycleOutcome(str, Enum):
    """How a cycle ended."""

    UNCHANGED = "unchanged"
    ADOPTED = "adopted"
    REPLACED = "replaced"
    BLOCKED = "blocked"
    FAILED = "failed"


@dataclass(frozen=True)
class CycleResult:
    """Result of one cycle: the applied state to carry forward and why."""

    applied: AppliedState
    outcome: CycleOutcome
    fingerprint: Optional[str] = None
    error: Optional[UpdaterError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def build_create_request(
    desired: DesiredState,
    compose: str,
    payload: EncryptedPayload,
) -> Dict[str, Any]:
    """CreateVm body for the desired state and sealed env."""
    params = desired.vm_parameters
    return {
        "name": params.name or desired.vm_name,
        "image": params.image,
        "compose_file": compose,
        "vcpu": params.vcpu,
        "memory": params.memory,
        "disk_size": params.disk_size,
        "user_config": params.user_config,
        "ports": [p.model_dump() for p in params.ports],
        "encrypted_env": payload.to_hex(),
        "hugepages": params.hugepages,
        "pin_numa": params.pin_numa,
        "stopped": params.stopped,
    }


class Reconciler:
    """Composes the clients, store, crypto channel and lifecycle into a cycle.

    Args:
        control_plane: Source of desired state.
        store: Local secret store.
        vmm: VM manager client.
        lifecycle: VM slot state machine.
        crypto: Env sealing channel. Defaults to one over ``vmm``.
        clock: Time source for log throttling.
        missing_keys_log_interval: Seconds between repeated error logs
            for the same set of missing keys.
    """

    def __init__(
        self,
        control_plane: ControlPlaneClient,
        store: SecretStore,
        vmm: VmmClient,
        lifecycle: VmLifecycle,
        crypto: Optional[CryptoChannel] = None,
        clock: Optional[Clock] = None,
        missing_keys_log_interval: float = 60.0,
    ) -> None:
        self._control_plane = control_plane
        self._store = store
        self._vmm = vmm
        self._lifecycle = lifecycle
        self._crypto = crypto or CryptoChannel(vmm)
        self._clock = clock or SystemClock()
        self._missing_keys_log_interval = missing_keys_log_interval
        self._missing_reported: Optional[tuple[str, ...]] = None
        self._missing_reported_at = 0.0

    @classmethod
    def from_settings(cls, settings: UpdaterSettings) -> "Reconciler":
        clock = SystemClock()
        vmm = VmmClient(settings.vmm_url, timeout=settings.http_timeout, verify=settings.verify_tls)
        lifecycle = VmLifecycle(
            vmm,
            clock=clock,
            stop_timeout=settings.stop_timeout,
            create_timeout=settings.create_timeout,
            poll_interval=settings.status_poll_interval,
            force_remove_on_stop_timeout=settings.force_remove_on_stop_timeout,
        )
        return cls(
            control_plane=ControlPlaneClient(
                settings.api_url, timeout=settings.http_timeout, verify=settings.api_verify_tls,
            ),
            store=SecretStore(settings.config_path),
            vmm=vmm,
            lifecycle=lifecycle,
            clock=clock,
            missing_keys_log_interval=settings.missing_keys_log_interval,
        )

    @property
    def lifecycle(self) -> VmLifecycle:
        return self._lifecycle

    def run_cycle(self, applied: AppliedState) -> CycleResult:
        """Run one reconciliation cycle.

        Args:
            applied: The state applied by the last successful cycle.

        Returns:
            CycleResult: Carries the input ``applied`` unchanged on any
            failure, or the new applied state on success.
        """
        try:
            return self._reconcile(applied)
        except MissingRequiredKeys as exc:
            self._report_missing(exc)
            return CycleResult(applied=applied, outcome=CycleOutcome.BLOCKED, error=exc)
        except UpdaterError as exc:
            logger.error("Update check failed: %s", exc)
            return CycleResult(applied=applied, outcome=CycleOutcome.FAILED, error=exc)
        except Exception as exc:
            logger.exception("Unexpected error during update check")
            return CycleResult(
                applied=applied,
                outcome=CycleOutcome.FAILED,
                error=UpdaterError(f"Unexpected error: {exc}"),
            )

    def _reconcile(self, applied: AppliedState) -> CycleResult:
        desired = self._control_plane.fetch()

        local = self._store.snapshot()
        logger.debug(
            "Loaded platform config: VMM URL=%s, env vars count=%d",
            local.dstack_vmm_url, len(local.env),
        )
        env = merge_env(desired.required_env_keys, local.env, local.dstack_vmm_url)
        self._missing_reported = None

        fp = fingerprint(desired)
        if not has_drifted(applied, desired):
            logger.debug("Compose hash unchanged (%s), no update needed", app_id(fp))
            return CycleResult(applied=applied, outcome=CycleOutcome.UNCHANGED, fingerprint=fp)

        logger.info(
            "Compose hash changed (image: %s): %s -> %s",
            desired.image_version, applied.last_fingerprint or "(none)", fp,
        )
        params = desired.vm_parameters
        validate_vm_parameters(params)
        log_vm_parameters(desired.vm_type, params)

        current = self._locate(applied, desired.vm_name)
        if self._can_adopt(applied, current, fp):
            logger.info(
                "Existing VM %s found at startup running with matching compose hash (%s), keeping it",
                current.vm_id, app_id(fp),
            )
            self._lifecycle.observe(current)
            return CycleResult(
                applied=AppliedState(last_fingerprint=fp, vm_id=current.vm_id),
                outcome=CycleOutcome.ADOPTED,
                fingerprint=fp,
            )

        compose = compose_file(desired)
        payload = self._crypto.seal(env, app_id(fp))
        request = build_create_request(desired, compose, payload)
        vmm_hash = self._vmm.get_compose_hash(request)
        logger.info("VMM computed compose hash: %s", vmm_hash)

        if current is None:
            logger.info("No existing VM found, will create new one")
        else:
            logger.info("Replacing VM %s (status %s)", current.vm_id, current.status.value)
        new_vm = self._lifecycle.replace(current, request)

        logger.info("VM updated successfully: %s", new_vm.vm_id)
        return CycleResult(
            applied=AppliedState(last_fingerprint=fp, vm_id=new_vm.vm_id),
            outcome=CycleOutcome.REPLACED,
            fingerprint=fp,
        )

    def _locate(self, applied: AppliedState, vm_name: str) -> Optional[VmRecord]:
        """The VM currently holding the slot, by applied id first, then by name."""
        if applied.vm_id:
            record = self._vmm.get_vm(applied.vm_id)
            if record is not None and record.status != VmStatus.ABSENT:
                return record
        record = self._vmm.find_vm(vm_name)
        if record is not None and record.status == VmStatus.ABSENT:
            return None
        return record

    @staticmethod
    def _can_adopt(applied: AppliedState, current: Optional[VmRecord], fp: str) -> bool:
        """A fresh service may take over a running VM already built from this fingerprint."""
        if applied.last_fingerprint is not None or current is None:
            return False
        if current.status != VmStatus.RUNNING or not current.app_id:
            return False
        return app_id(current.app_id) == app_id(fp)

    def _report_missing(self, exc: MissingRequiredKeys) -> None:
        """Log missing keys on change, then at most once per interval."""
        now = self._clock.monotonic()
        key = tuple(exc.missing)
        if (
            key != self._missing_reported
            or now - self._missing_reported_at >= self._missing_keys_log_interval
        ):
            logger.error("%s", exc)
            self._missing_reported = key
            self._missing_reported_at = now
        else:
            logger.debug("Still missing required env keys: %s", ", ".join(exc.missing))
