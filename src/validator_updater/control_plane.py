"""Platform control-plane client: fetch the desired compose state."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from .errors import RemoteError
from .models import ComposeConfig, DesiredState
from .transport import request_json

logger = logging.getLogger("validator_updater.control_plane")

DEFAULT_API_URL = "https://api.platform.network/config/compose/validator_vm"


class ControlPlaneClient:
    """Reads the validator VM's compose document from the platform API.

    Args:
        api_url: Compose endpoint.
        timeout: Request timeout in seconds.
        verify: Verify TLS certificates.
    """

    def __init__(self, api_url: str = DEFAULT_API_URL, timeout: float = 10, verify: bool = True) -> None:
        self.api_url = api_url
        self._timeout = timeout
        self._verify = verify

    def fetch_compose_config(self) -> ComposeConfig:
        """Fetch and validate the raw compose document.

        Raises:
            NetworkError: On transport failure or error status.
            RemoteError: If the document has the wrong shape.
        """
        data = request_json("GET", self.api_url, timeout=self._timeout, verify=self._verify)
        try:
            return ComposeConfig.model_validate(data)
        except ValidationError as exc:
            logger.error("Failed to parse compose config JSON. Response: %s", data)
            raise RemoteError(f"Failed to parse compose config: {exc}") from exc

    def fetch(self) -> DesiredState:
        """Fetch a fresh desired-state snapshot."""
        config = self.fetch_compose_config()
        desired = DesiredState.from_compose_config(config)
        if desired.required_env_keys:
            logger.info(
                "Required environment variable keys from API: %s",
                sorted(desired.required_env_keys),
            )
        return desired
