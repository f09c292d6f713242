"""
Local secret store: the operator's config file.

Holds the VM-manager URL the guest should use and the secret env values
the platform requires. The file is shared with the ``config`` commands,
which may rewrite it while the service is running, so every write is a
whole-file atomic replacement and the service reads one snapshot per
cycle.

Storage layout (JSON, mode 0600):
    {
      "dstack_vmm_url": "http://10.0.2.2:10300/",
      "env": {"HOTKEY_PASSPHRASE": "...", "VALIDATOR_BASE_URL": "..."}
    }
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, Mapping, Optional

from pydantic import ValidationError

from . import CONFIG_PATH
from .errors import KeyNotFound, MalformedStore, MissingRequiredKeys
from .models import PlatformConfig

logger = logging.getLogger("validator_updater.store")

# What the guest uses to reach the VM manager from inside QEMU user networking.
DEFAULT_GUEST_VMM_URL = "http://10.0.2.2:10300/"
VMM_URL_KEY = "DSTACK_VMM_URL"
FILE_MODE = 0o600


def merge_env(
    required_keys: Iterable[str],
    local_env: Mapping[str, str],
    vmm_url: Optional[str] = None,
) -> dict[str, str]:
    """Resolve the env to deliver to the VM.

    The result holds every locally defined key plus ``DSTACK_VMM_URL``
    (from ``vmm_url``, or the guest default) unless the operator set it
    explicitly.

    Args:
        required_keys: Keys the control plane requires.
        local_env: The operator's key/value map.
        vmm_url: VM-manager URL from the local config.

    Returns:
        dict: The resolved env.

    Raises:
        MissingRequiredKeys: Listing every required key that is absent
            or blank. Nothing partial is returned.
    """
    resolved = dict(local_env)
    if VMM_URL_KEY not in resolved:
        resolved[VMM_URL_KEY] = vmm_url or DEFAULT_GUEST_VMM_URL

    missing = [key for key in set(required_keys) if not resolved.get(key, "").strip()]
    if missing:
        raise MissingRequiredKeys(missing)
    return resolved


class SecretStore:
    """Read/modify/write access to the local config file.

    Args:
        path: Config file location. Defaults to CONFIG_PATH.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path or CONFIG_PATH)

    # -------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------

    def load(self) -> PlatformConfig:
        """Load the config. A missing file reads as an empty config.

        Raises:
            MalformedStore: If the file is not valid JSON or has the
                wrong shape.
        """
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return PlatformConfig()
        except OSError as exc:
            raise MalformedStore(f"Failed to read {self.path}: {exc}") from exc

        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedStore(f"Failed to parse {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise MalformedStore(f"{self.path} must hold a JSON object")
        # Older files write "env": null.
        if data.get("env") is None:
            data["env"] = {}
        try:
            return PlatformConfig.model_validate(data)
        except ValidationError as exc:
            raise MalformedStore(f"Invalid config in {self.path}: {exc}") from exc

    def snapshot(self) -> PlatformConfig:
        """One consistent view of the config for a reconciliation cycle."""
        return self.load()

    def get_env(self, key: str) -> str:
        env = self.load().env
        if key not in env:
            raise KeyNotFound(key)
        return env[key]

    def list_env(self) -> dict[str, str]:
        """All env entries, sorted by key."""
        env = self.load().env
        return {k: env[k] for k in sorted(env)}

    # -------------------------------------------------------------------
    # Writing
    # -------------------------------------------------------------------

    def set_env(self, key: str, value: str) -> PlatformConfig:
        config = self.load()
        config.env[key] = value
        self.save(config)
        logger.info("Environment variable set: %s", key)
        return config

    def remove_env(self, key: str) -> PlatformConfig:
        """Remove a key.

        Raises:
            KeyNotFound: If the key is not set.
        """
        config = self.load()
        if key not in config.env:
            raise KeyNotFound(key)
        del config.env[key]
        self.save(config)
        logger.info("Environment variable removed: %s", key)
        return config

    def set_vmm_url(self, url: str) -> PlatformConfig:
        config = self.load()
        config.dstack_vmm_url = url
        self.save(config)
        logger.info("VMM URL set to %s", url)
        return config

    def save(self, config: PlatformConfig) -> None:
        """Atomically replace the config file with owner-only permissions.

        The new content goes to a temp file in the same directory, is
        flushed to disk, then renamed over the old file, so a reader sees
        either the old or the new file and never a partial one.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(config.model_dump(mode="json"), indent=2, sort_keys=True)

        fd, tmp_name = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp",
        )
        try:
            os.fchmod(fd, FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
