"""Shared HTTP helper for the control-plane and VM-manager clients.

Maps requests' failure modes onto the updater's NetworkError family so
callers only ever see cycle-local errors.
"""

from __future__ import annotations

import logging
import warnings
from typing import Any, Optional

import requests
from urllib3.exceptions import InsecureRequestWarning

from .errors import NetworkError, RemoteError, RequestTimeout, Unreachable

logger = logging.getLogger("validator_updater.transport")


def silence_insecure_warnings() -> None:
    """The local VMM serves a self-signed cert; don't warn on every poll."""
    warnings.filterwarnings("ignore", category=InsecureRequestWarning)


def request_json(
    method: str,
    url: str,
    data: Optional[Any] = None,
    timeout: float = 10,
    verify: bool = False,
) -> Any:
    """Make an HTTP call and return the decoded JSON body.

    Args:
        method: HTTP method.
        url: Full URL.
        data: JSON body, if any.
        timeout: Seconds to wait for the server.
        verify: Verify TLS certificates.

    Returns:
        Parsed JSON response.

    Raises:
        RequestTimeout: The server did not answer in time.
        Unreachable: The connection failed.
        RemoteError: Error status or a body that is not JSON.
    """
    try:
        resp = requests.request(method, url, json=data, timeout=timeout, verify=verify)
    except requests.exceptions.Timeout as exc:
        raise RequestTimeout(f"{method} {url} timed out after {timeout}s") from exc
    except requests.exceptions.ConnectionError as exc:
        raise Unreachable(f"{method} {url} unreachable: {exc}") from exc
    except requests.exceptions.RequestException as exc:
        raise NetworkError(f"{method} {url} failed: {exc}") from exc

    if resp.status_code >= 400:
        text = resp.text or "Unknown error"
        logger.error("%s %s failed with status %d: %s", method, url, resp.status_code, text)
        raise RemoteError(
            f"{method} {url} failed: {resp.status_code} {text}",
            status=resp.status_code,
            body=text,
        )

    try:
        return resp.json()
    except ValueError as exc:
        logger.error("Failed to parse JSON from %s. Response: %s", url, resp.text)
        raise RemoteError(f"Invalid JSON from {url}", status=resp.status_code, body=resp.text) from exc
