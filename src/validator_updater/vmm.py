"""
dstack VM manager client.

Speaks the manager's pRPC-over-JSON API: every call is a POST to
``{vmm_url}/prpc/{Method}?json`` with a JSON body. Only the handful of
methods the updater needs are wrapped here.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .errors import RemoteError
from .models import VmRecord, VmStatus
from .transport import request_json, silence_insecure_warnings

logger = logging.getLogger("validator_updater.vmm")


def _to_record(vm: Dict[str, Any]) -> Optional[VmRecord]:
    """Turn one VM entry from Status/GetInfo into a VmRecord."""
    vm_id = vm.get("id")
    if not vm_id:
        return None
    return VmRecord(
        vm_id=str(vm_id),
        name=vm.get("name"),
        status=VmStatus.from_remote(vm.get("status")),
        # Older managers spell it app_id.
        app_id=vm.get("appId") or vm.get("app_id"),
    )


class VmmClient:
    """Client for the dstack VM manager.

    Args:
        vmm_url: Base URL of the manager (e.g. 'http://localhost:10300').
        timeout: Per-request timeout in seconds.
        verify: Verify TLS certificates.
    """

    def __init__(self, vmm_url: str, timeout: float = 10, verify: bool = False) -> None:
        self._vmm_url = vmm_url.rstrip("/")
        self._timeout = timeout
        self._verify = verify
        if not verify:
            silence_insecure_warnings()

    @property
    def url(self) -> str:
        return self._vmm_url

    def rpc_call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Call one manager method.

        Raises:
            NetworkError: On transport failure or error status.
            RemoteError: If the response is not a JSON object.
        """
        url = f"{self._vmm_url}/prpc/{method}?json"
        logger.debug("Making RPC call to: %s", url)
        result = request_json(
            "POST", url, data=params or {}, timeout=self._timeout, verify=self._verify,
        )
        if not isinstance(result, dict):
            raise RemoteError(f"Invalid {method} response: expected an object")
        return result

    def list_vms(self) -> list[VmRecord]:
        response = self.rpc_call("Status")
        vms = response.get("vms")
        if not isinstance(vms, list):
            raise RemoteError("Invalid status response: missing 'vms'")
        records = [_to_record(vm) for vm in vms if isinstance(vm, dict)]
        return [r for r in records if r is not None]

    def find_vm(self, name: str) -> Optional[VmRecord]:
        """Find the VM occupying the named slot, matched by name or app id."""
        for record in self.list_vms():
            if record.name == name or record.app_id == name:
                if record.app_id is None:
                    logger.warning("Found VM %s but appId is missing", record.vm_id)
                return record
        return None

    def get_vm(self, vm_id: str) -> Optional[VmRecord]:
        """Current record for a VM, or None if the manager doesn't know it."""
        response = self.rpc_call("GetInfo", {"id": vm_id})
        if not response.get("found", True):
            return None
        info = response.get("info") or {}
        return _to_record(info) if info else None

    def get_vm_status(self, vm_id: str) -> VmStatus:
        record = self.get_vm(vm_id)
        return record.status if record else VmStatus.ABSENT

    def get_public_key(self, app_id: str) -> str:
        """Fetch the env-encryption public key for an app id (hex)."""
        response = self.rpc_call("GetAppEnvEncryptPubKey", {"app_id": app_id})
        pubkey = response.get("public_key")
        if not isinstance(pubkey, str) or not pubkey:
            raise RemoteError("Invalid public key response")
        return pubkey

    def get_compose_hash(self, request: Dict[str, Any]) -> str:
        """Ask the manager what compose hash it computes for a create request."""
        response = self.rpc_call("GetComposeHash", request)
        compose_hash = response.get("hash")
        if not isinstance(compose_hash, str):
            raise RemoteError("Invalid hash response")
        return compose_hash

    def create_vm(self, request: Dict[str, Any]) -> str:
        """Submit a create request and return the new VM id."""
        response = self.rpc_call("CreateVm", request)
        vm_id = response.get("id")
        if not vm_id:
            raise RemoteError("Invalid create VM response: missing 'id'")
        return str(vm_id)

    def stop_vm(self, vm_id: str) -> None:
        logger.info("Stopping VM: %s", vm_id)
        self.rpc_call("StopVm", {"id": vm_id})

    def remove_vm(self, vm_id: str) -> None:
        logger.info("Removing VM: %s", vm_id)
        self.rpc_call("RemoveVm", {"id": vm_id})
