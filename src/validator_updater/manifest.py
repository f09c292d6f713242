"""
App manifest construction for the dstack VM manager.

The control plane serves a docker-compose document plus provisioning
defaults; the VM manager wants an app manifest (``app-compose.json``)
that embeds the compose file and lists which environment variables the
VM may receive. This manifest is also what gets fingerprinted, so it
must be built identically every cycle.
"""

from __future__ import annotations

import json
import logging

from .errors import InvalidVmParameters
from .models import DesiredState, VmParameters

logger = logging.getLogger("validator_updater.manifest")

# Keys the platform always expects in allowed_envs, whether or not the
# compose document lists them.
DEFAULT_ENV_KEYS = ("DSTACK_VMM_URL", "HOTKEY_PASSPHRASE", "VALIDATOR_BASE_URL")


def allowed_envs(desired: DesiredState) -> list[str]:
    """Sorted, de-duplicated env keys the VM is allowed to receive.

    Only keys the platform knows about go in here. Extra local keys are
    still delivered in the encrypted env but are not listed, otherwise
    the manifest (and so the compose hash) would diverge from the one
    the platform computes.
    """
    keys = set(desired.provisioning.env_keys)
    keys.update(DEFAULT_ENV_KEYS)
    keys.update(desired.required_env_keys)
    return sorted(keys)


def build_app_manifest(desired: DesiredState) -> dict:
    """Build the app manifest dict for a desired state."""
    defaults = desired.provisioning.manifest_defaults
    return {
        "manifest_version": defaults.manifest_version,
        "name": defaults.name or desired.vm_name,
        "runner": defaults.runner,
        "docker_compose_file": desired.compose_content,
        "kms_enabled": defaults.kms_enabled,
        "gateway_enabled": defaults.gateway_enabled,
        "local_key_provider_enabled": defaults.local_key_provider_enabled,
        "key_provider_id": defaults.key_provider_id,
        "public_logs": defaults.public_logs,
        "public_sysinfo": defaults.public_sysinfo,
        "public_tcbinfo": defaults.public_tcbinfo,
        "allowed_envs": allowed_envs(desired),
        "no_instance_id": defaults.no_instance_id,
        "secure_time": defaults.secure_time,
    }


def compose_file(desired: DesiredState) -> str:
    """Serialize the app manifest to the ``compose_file`` string sent to the VMM."""
    return json.dumps(build_app_manifest(desired), sort_keys=True, separators=(",", ":"))


def validate_vm_parameters(params: VmParameters) -> None:
    """Reject hardware settings the VM manager would fail on.

    Raises:
        InvalidVmParameters: If vcpu, memory, or disk size is zero.
    """
    if params.vcpu <= 0:
        raise InvalidVmParameters("Validator VM configuration must specify at least one vCPU")
    if params.memory <= 0:
        raise InvalidVmParameters("Validator VM configuration must specify memory in MB (> 0)")
    if params.disk_size <= 0:
        raise InvalidVmParameters("Validator VM configuration must specify disk_size in GB (> 0)")


def log_vm_parameters(vm_type: str, params: VmParameters) -> None:
    logger.info(
        "Validator VM hardware resolved: vm_type=%s, image=%s, vcpu=%d, memory_mb=%d, disk_gb=%d",
        vm_type, params.image, params.vcpu, params.memory, params.disk_size,
    )
