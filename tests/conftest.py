"""Shared test fixtures for validator-updater."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

import pytest
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from validator_updater.errors import RemoteError, Unreachable
from validator_updater.fingerprint import app_id, compute_hash
from validator_updater.lifecycle import VmLifecycle
from validator_updater.models import DesiredState, VmRecord, VmStatus
from validator_updater.reconciler import Reconciler
from validator_updater.store import SecretStore

MUTATING = ("StopVm", "RemoveVm", "CreateVm")


class FakeClock:
    """Clock that only moves when something sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeVmm:
    """In-memory VM manager with the same surface as VmmClient.

    Every call is appended to ``calls`` by its RPC method name.
    """

    def __init__(self) -> None:
        self.private_key = X25519PrivateKey.generate()
        self.vms: Dict[str, VmRecord] = {}
        self.calls: list[str] = []
        self.requests: list[Dict[str, Any]] = []
        self.stop_succeeds = True
        self.create_status = VmStatus.RUNNING
        self.fail_public_key = False
        self.fail_create = False
        self.remove_failures = 0
        self._next_id = 1

    @property
    def public_key_hex(self) -> str:
        raw = self.private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        return raw.hex()

    @property
    def mutating_calls(self) -> list[str]:
        return [c for c in self.calls if c in MUTATING]

    def add_vm(self, vm_id: str, status: VmStatus = VmStatus.RUNNING,
               app: Optional[str] = None, name: str = "validator_vm") -> VmRecord:
        record = VmRecord(vm_id=vm_id, name=name, status=status, app_id=app)
        self.vms[vm_id] = record
        return record

    def list_vms(self) -> list[VmRecord]:
        self.calls.append("Status")
        return list(self.vms.values())

    def find_vm(self, name: str) -> Optional[VmRecord]:
        for record in self.list_vms():
            if record.name == name:
                return record
        return None

    def get_vm(self, vm_id: str) -> Optional[VmRecord]:
        self.calls.append("GetInfo")
        return self.vms.get(vm_id)

    def get_vm_status(self, vm_id: str) -> VmStatus:
        record = self.get_vm(vm_id)
        return record.status if record else VmStatus.ABSENT

    def get_public_key(self, app_id: str) -> str:
        self.calls.append("GetAppEnvEncryptPubKey")
        if self.fail_public_key:
            raise Unreachable("VMM unreachable")
        return self.public_key_hex

    def get_compose_hash(self, request: Dict[str, Any]) -> str:
        self.calls.append("GetComposeHash")
        return compute_hash(request["compose_file"], request["image"])

    def create_vm(self, request: Dict[str, Any]) -> str:
        self.calls.append("CreateVm")
        if self.fail_create:
            raise RemoteError("CreateVm failed: 500", status=500)
        self.requests.append(request)
        vm_id = f"vm-{self._next_id}"
        self._next_id += 1
        self.vms[vm_id] = VmRecord(
            vm_id=vm_id,
            name=request["name"],
            status=self.create_status,
            app_id=app_id(compute_hash(request["compose_file"], request["image"])),
        )
        return vm_id

    def stop_vm(self, vm_id: str) -> None:
        self.calls.append("StopVm")
        record = self.vms[vm_id]
        new_status = VmStatus.STOPPED if self.stop_succeeds else VmStatus.STOPPING
        self.vms[vm_id] = record.model_copy(update={"status": new_status})

    def remove_vm(self, vm_id: str) -> None:
        self.calls.append("RemoveVm")
        if self.remove_failures > 0:
            self.remove_failures -= 1
            raise RemoteError("RemoveVm failed: 500", status=500)
        self.vms.pop(vm_id, None)


class FakeControlPlane:
    """Serves whatever desired state the test sets."""

    def __init__(self, desired: Optional[DesiredState] = None) -> None:
        self.desired = desired or DesiredState(compose_content="v1", image_version="img:1.0")
        self.error: Optional[Exception] = None
        self.fetches = 0

    def fetch(self) -> DesiredState:
        self.fetches += 1
        if self.error is not None:
            raise self.error
        return self.desired


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Path to a local platform config with the default secrets set."""
    path = tmp_path / "platform-validator" / "config.json"
    path.parent.mkdir()
    path.write_text(json.dumps({
        "dstack_vmm_url": "http://10.0.2.2:16850/",
        "env": {
            "HOTKEY_PASSPHRASE": "correct horse battery staple",
            "VALIDATOR_BASE_URL": "https://validator.example",
        },
    }))
    return path


@pytest.fixture
def store(config_file: Path) -> SecretStore:
    return SecretStore(config_file)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def vmm() -> FakeVmm:
    return FakeVmm()


@pytest.fixture
def control_plane() -> FakeControlPlane:
    return FakeControlPlane()


@pytest.fixture
def lifecycle(vmm: FakeVmm, clock: FakeClock) -> VmLifecycle:
    return VmLifecycle(vmm, clock=clock)


@pytest.fixture
def reconciler(control_plane, store, vmm, lifecycle, clock) -> Reconciler:
    return Reconciler(
        control_plane=control_plane,
        store=store,
        vmm=vmm,
        lifecycle=lifecycle,
        clock=clock,
    )
