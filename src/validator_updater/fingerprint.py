"""Change detection: fingerprint the desired state and compare.

Pure functions, no I/O. Two desired states share a fingerprint only if
their app manifests (which embed the compose content) and image
versions are identical.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from .manifest import compose_file
from .models import AppliedState, DesiredState

APP_ID_LENGTH = 40


def _sort_keys(value: Any) -> Any:
    """Recursively sort object keys in a parsed JSON value."""
    if isinstance(value, dict):
        return {k: _sort_keys(value[k]) for k in sorted(value)}
    if isinstance(value, list):
        return [_sort_keys(v) for v in value]
    return value


def normalize_json(text: str) -> str:
    """Re-serialize JSON with sorted keys so key order never changes the hash.

    Text that is not valid JSON is returned unchanged.
    """
    try:
        parsed = json.loads(text)
    except ValueError:
        return text
    return json.dumps(_sort_keys(parsed), separators=(",", ":"), ensure_ascii=False)


def compute_hash(compose_text: str, image_version: str) -> str:
    """SHA-256 hex over the normalized compose text, a NUL, then the image."""
    hasher = hashlib.sha256()
    hasher.update(normalize_json(compose_text).encode("utf-8"))
    hasher.update(b"\0")
    hasher.update(image_version.encode("utf-8"))
    return hasher.hexdigest()


def fingerprint(desired: DesiredState) -> str:
    """Fingerprint of a desired state (64 hex chars)."""
    return compute_hash(compose_file(desired), desired.image_version)


def app_id(fp: str) -> str:
    """The VM manager's app id: the fingerprint truncated to 40 chars."""
    return fp[:APP_ID_LENGTH]


def has_drifted(applied: AppliedState, desired: DesiredState) -> bool:
    """True if nothing was applied yet or the fingerprint changed."""
    if applied.last_fingerprint is None:
        return True
    return applied.last_fingerprint != fingerprint(desired)
