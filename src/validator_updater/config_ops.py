"""Configuration operations against the local secret store.

The operator-facing commands form a closed set of operation types.
apply_op runs any of them against a SecretStore and returns a result
the caller (CLI or otherwise) can render however it likes.

Usage:
    store = SecretStore()
    apply_op(store, SetEnv("HOTKEY_PASSPHRASE", "..."))
    result = apply_op(store, ListEnv())
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

from .models import PlatformConfig
from .store import SecretStore


@dataclass(frozen=True)
class ShowConfig:
    """Show the VMM URL and all env entries."""


@dataclass(frozen=True)
class SetVmmUrl:
    url: str


@dataclass(frozen=True)
class SetEnv:
    key: str
    value: str


@dataclass(frozen=True)
class RemoveEnv:
    key: str


@dataclass(frozen=True)
class ListEnv:
    """List all env entries."""


@dataclass(frozen=True)
class GetEnv:
    key: str


ConfigOp = Union[ShowConfig, SetVmmUrl, SetEnv, RemoveEnv, ListEnv, GetEnv]


@dataclass
class OpResult:
    """Outcome of a config operation.

    Attributes:
        message: One-line human summary.
        vmm_url: VMM URL after the operation (show/set-vmm-url).
        env: Env entries to display (show/list), sorted by key.
        value: Single value (get).
    """

    message: str
    vmm_url: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)
    value: Optional[str] = None


def _sorted_env(config: PlatformConfig) -> dict[str, str]:
    return {k: config.env[k] for k in sorted(config.env)}


def apply_op(store: SecretStore, op: ConfigOp) -> OpResult:
    """Run one config operation.

    Raises:
        KeyNotFound: For remove/get of an unset key.
        MalformedStore: If the config file cannot be read.
        TypeError: For anything outside the operation set.
    """
    if isinstance(op, ShowConfig):
        config = store.load()
        return OpResult(
            message="Current Platform Configuration",
            vmm_url=config.dstack_vmm_url,
            env=_sorted_env(config),
        )
    if isinstance(op, SetVmmUrl):
        config = store.set_vmm_url(op.url)
        return OpResult(message=f"VMM URL set to: {op.url}", vmm_url=config.dstack_vmm_url)
    if isinstance(op, SetEnv):
        store.set_env(op.key, op.value)
        return OpResult(message=f"Environment variable set: {op.key}")
    if isinstance(op, RemoveEnv):
        store.remove_env(op.key)
        return OpResult(message=f"Environment variable removed: {op.key}")
    if isinstance(op, ListEnv):
        env = store.list_env()
        message = "Environment Variables" if env else "No environment variables configured"
        return OpResult(message=message, env=env)
    if isinstance(op, GetEnv):
        return OpResult(message=op.key, value=store.get_env(op.key))
    raise TypeError(f"Unknown config operation: {op!r}")
