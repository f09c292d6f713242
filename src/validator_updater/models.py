"""
Pydantic models for everything the updater reads, writes, or sends.

Wire models mirror the control plane's compose document and the VM
manager's records. State models (DesiredState, AppliedState) are frozen
snapshots: a cycle gets a fresh DesiredState and hands back a new
AppliedState instead of mutating either.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

VM_NAME = "validator_vm"
DEFAULT_IMAGE = "dstack-0.5.2"


class PortMapping(BaseModel):
    """A host → VM port forward."""

    protocol: str = "tcp"
    host_port: int = 0
    vm_port: int = 0
    host_address: Optional[str] = None


class ManifestDefaults(BaseModel):
    """App manifest settings chosen by the control plane."""

    manifest_version: int = 2
    name: Optional[str] = VM_NAME
    runner: str = "docker-compose"
    kms_enabled: bool = True
    gateway_enabled: bool = True
    local_key_provider_enabled: bool = False
    key_provider_id: str = ""
    public_logs: bool = True
    public_sysinfo: bool = True
    public_tcbinfo: bool = True
    no_instance_id: bool = False
    secure_time: bool = False


class VmParameters(BaseModel):
    """Hardware sizing and boot options for the validator VM."""

    name: Optional[str] = VM_NAME
    image: str = DEFAULT_IMAGE
    vcpu: int = 16
    memory: int = Field(default=16 * 1024, description="Memory in MB")
    disk_size: int = Field(default=200, description="Disk size in GB")
    user_config: str = ""
    ports: list[PortMapping] = Field(default_factory=list)
    hugepages: bool = False
    pin_numa: bool = False
    stopped: bool = False


class VmProvisioning(BaseModel):
    """Provisioning block of the compose document."""

    env_keys: list[str] = Field(default_factory=list)
    manifest_defaults: ManifestDefaults = Field(default_factory=ManifestDefaults)
    vm_parameters: VmParameters = Field(default_factory=VmParameters)


class ComposeConfig(BaseModel):
    """The control plane's compose document, as served."""

    vm_type: str
    compose_content: str
    description: Optional[str] = None
    updated_at: str
    required_env: list[str] = Field(default_factory=list)
    provisioning: VmProvisioning = Field(default_factory=VmProvisioning)


class DesiredState(BaseModel):
    """What the control plane wants the VM to run, fetched each cycle."""

    model_config = ConfigDict(frozen=True)

    compose_content: str
    image_version: str
    required_env_keys: frozenset[str] = frozenset()
    vm_type: str = VM_NAME
    updated_at: str = ""
    provisioning: VmProvisioning = Field(default_factory=VmProvisioning)

    @classmethod
    def from_compose_config(cls, config: ComposeConfig) -> "DesiredState":
        """Build a desired state from the served compose document.

        Required keys are the union of ``required_env`` and
        ``provisioning.env_keys``; the image version comes from the VM
        parameters.
        """
        required = set(config.required_env) | set(config.provisioning.env_keys)
        return cls(
            compose_content=config.compose_content,
            image_version=config.provisioning.vm_parameters.image,
            required_env_keys=frozenset(required),
            vm_type=config.vm_type,
            updated_at=config.updated_at,
            provisioning=config.provisioning,
        )

    @property
    def vm_parameters(self) -> VmParameters:
        """VM parameters with the image pinned to ``image_version``."""
        return self.provisioning.vm_parameters.model_copy(
            update={"image": self.image_version}
        )

    @property
    def vm_name(self) -> str:
        """Name of the VM slot, falling back to the vm_type."""
        return self.provisioning.vm_parameters.name or self.vm_type


class AppliedState(BaseModel):
    """What was last applied successfully. Empty on first run."""

    model_config = ConfigDict(frozen=True)

    last_fingerprint: Optional[str] = None
    vm_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.last_fingerprint is None and self.vm_id is None


class PlatformConfig(BaseModel):
    """The operator's local config: VM manager endpoint and secret env."""

    dstack_vmm_url: Optional[str] = None
    env: dict[str, str] = Field(default_factory=dict)


class VmStatus(str, Enum):
    """Lifecycle status of the VM slot."""

    ABSENT = "absent"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CREATING = "creating"
    RUNNING = "running"
    FAILED = "failed"

    @classmethod
    def from_remote(cls, value: Optional[str]) -> "VmStatus":
        """Normalize a status string reported by the VM manager."""
        status = (value or "").strip().lower()
        if status in {"running"}:
            return cls.RUNNING
        if status in {"stopped", "exited", "killed", "shutdown"}:
            return cls.STOPPED
        if status in {"stopping", "shutting_down"}:
            return cls.STOPPING
        if status in {"creating", "starting", "booting", "pending"}:
            return cls.CREATING
        if status in {"error", "failed"}:
            return cls.FAILED
        if status in {"", "absent", "removed", "not_found"}:
            return cls.ABSENT
        # Unrecognized statuses may still be live and must be stopped first.
        return cls.STOPPING


class VmRecord(BaseModel):
    """A VM as reported by the VM manager."""

    vm_id: str
    name: Optional[str] = None
    status: VmStatus = VmStatus.ABSENT
    app_id: Optional[str] = None
