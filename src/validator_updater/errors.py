"""Exception hierarchy for the updater.

Every error raised inside a reconciliation cycle derives from
UpdaterError. The reconciler catches them at the cycle boundary, so
none of them is fatal to the service.
"""

from __future__ import annotations

from typing import Iterable, Optional


class UpdaterError(RuntimeError):
    """Base class for cycle-local failures."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigError(UpdaterError):
    """Local configuration prevents the update."""


class MissingRequiredKeys(ConfigError):
    """Required environment keys have no (or an empty) local value.

    Attributes:
        missing: Every missing key, sorted.
    """

    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = sorted(missing)
        super().__init__(
            "Missing values for required environment variable keys: "
            f"{', '.join(self.missing)}. Set them with "
            "'validator-updater config set-env <key> <value>'"
        )


class MalformedStore(ConfigError):
    """The persisted config file exists but cannot be parsed."""


class KeyNotFound(ConfigError):
    """An environment key is not present in the store."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Environment variable '{key}' not found")


class InvalidVmParameters(ConfigError):
    """The control plane sent VM parameters that cannot be honored."""


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


class NetworkError(UpdaterError):
    """A remote call did not complete."""


class Unreachable(NetworkError):
    """The remote endpoint refused or dropped the connection."""


class RequestTimeout(NetworkError):
    """The remote endpoint did not answer in time."""


class RemoteError(NetworkError):
    """The remote endpoint answered with an error status or bad body."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(message)


# ---------------------------------------------------------------------------
# Crypto
# ---------------------------------------------------------------------------


class CryptoError(UpdaterError):
    """The secret payload could not be produced."""


class HandshakeFailed(CryptoError):
    """The VM manager's public key could not be obtained or used."""


class EncryptionFailed(CryptoError):
    """Serialization or authenticated encryption of the env failed."""


# ---------------------------------------------------------------------------
# VM lifecycle
# ---------------------------------------------------------------------------


class LifecycleError(UpdaterError):
    """The replacement protocol did not complete."""


class StopTimeout(LifecycleError):
    """The running VM did not report stopped within the stop timeout."""

    def __init__(self, vm_id: str, timeout: float) -> None:
        self.vm_id = vm_id
        self.timeout = timeout
        super().__init__(f"VM {vm_id} did not stop within {timeout:.0f}s")


class RemoveFailed(LifecycleError):
    """The stopped VM could not be removed from the manager."""


class CreateFailed(LifecycleError):
    """The new VM was rejected, failed, or never reached running."""
