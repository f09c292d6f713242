"""Service settings: defaults, optional YAML file, environment overrides.

Precedence (lowest to highest): built-in defaults, the YAML settings
file, environment variables, explicit CLI options.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from . import CONFIG_PATH
from .control_plane import DEFAULT_API_URL
from .errors import ConfigError

logger = logging.getLogger("validator_updater.settings")

ENV_OVERRIDES = {
    "VMM_URL": "vmm_url",
    "VALIDATOR_UPDATER_API_URL": "api_url",
    "VALIDATOR_UPDATER_CONFIG": "config_path",
    "VALIDATOR_UPDATER_LOG_LEVEL": "log_level",
}


class UpdaterSettings(BaseModel):
    """Tunables for the update service."""

    api_url: str = DEFAULT_API_URL
    vmm_url: str = "http://localhost:10300"
    config_path: Path = Path(CONFIG_PATH)
    poll_interval: float = Field(default=5.0, gt=0)
    stop_timeout: float = Field(default=60.0, gt=0)
    create_timeout: float = Field(default=300.0, gt=0)
    status_poll_interval: float = Field(default=2.0, gt=0)
    http_timeout: float = Field(default=10.0, gt=0)
    verify_tls: bool = Field(default=False, description="Verify the VM manager's TLS certificate")
    api_verify_tls: bool = Field(default=True, description="Verify the control plane's TLS certificate")
    force_remove_on_stop_timeout: bool = False
    missing_keys_log_interval: float = Field(default=60.0, ge=0)
    log_level: str = "INFO"
    log_file: Optional[Path] = None


def load_settings(path: Optional[Path] = None, **overrides: Any) -> UpdaterSettings:
    """Build settings from a YAML file, the environment, and overrides.

    Args:
        path: Optional YAML settings file. Missing files are an error
            only when a path was given explicitly.
        **overrides: Highest-precedence values (None values are ignored).

    Raises:
        ConfigError: If the file cannot be parsed or a value is invalid.
    """
    data: dict[str, Any] = {}
    if path is not None:
        try:
            loaded = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Failed to load settings from {path}: {exc}") from exc
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigError(f"Settings file {path} must hold a mapping")
        data.update(loaded or {})

    for env_name, field_name in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            data[field_name] = value

    data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return UpdaterSettings.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid settings: {exc}") from exc
