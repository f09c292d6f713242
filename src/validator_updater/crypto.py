"""
Encrypted env delivery to the VM manager.

Per update attempt:
    1. Fetch the manager's X25519 public key for the app id.
    2. Generate a fresh ephemeral X25519 key pair (never reused).
    3. ECDH → shared secret.
    4. HKDF-SHA256 (fixed context string) → 256-bit AES key.
    5. Canonical JSON of the env.
    6. AES-256-GCM with a random 96-bit nonce.

Wire form (hex):
    ephemeral_public_key (32) || nonce (12) || ciphertext || tag (16)

A fresh ephemeral key per attempt means a fresh AES key per attempt, so a
nonce is never used twice under the same key.
"""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass
from typing import Mapping, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .errors import EncryptionFailed, HandshakeFailed, UpdaterError

logger = logging.getLogger("validator_updater.crypto")

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
HKDF_INFO = b"validator-updater:env-encryption:v1"


@dataclass(frozen=True)
class EncryptedPayload:
    """One sealed env, built fresh per attempt and never persisted."""

    ephemeral_public_key: bytes
    nonce: bytes
    ciphertext: bytes
    tag: bytes

    def to_bytes(self) -> bytes:
        return self.ephemeral_public_key + self.nonce + self.ciphertext + self.tag

    def to_hex(self) -> str:
        """Hex wire form for the VM manager's ``encrypted_env`` field."""
        return self.to_bytes().hex()

    @classmethod
    def from_hex(cls, data: str) -> "EncryptedPayload":
        raw = bytes.fromhex(data)
        if len(raw) < KEY_SIZE + NONCE_SIZE + TAG_SIZE:
            raise ValueError("Encrypted payload is too short")
        return cls(
            ephemeral_public_key=raw[:KEY_SIZE],
            nonce=raw[KEY_SIZE:KEY_SIZE + NONCE_SIZE],
            ciphertext=raw[KEY_SIZE + NONCE_SIZE:-TAG_SIZE],
            tag=raw[-TAG_SIZE:],
        )


def _raw(public_key: X25519PublicKey) -> bytes:
    return public_key.public_bytes(Encoding.Raw, PublicFormat.Raw)


def parse_public_key(pubkey_hex: str) -> X25519PublicKey:
    """Decode the manager's hex public key (optional ``0x`` prefix).

    Raises:
        HandshakeFailed: If it is not 32 bytes of valid hex.
    """
    text = pubkey_hex.strip()
    if text.startswith("0x"):
        text = text[2:]
    try:
        raw = bytes.fromhex(text)
    except ValueError as exc:
        raise HandshakeFailed(f"Failed to decode public key hex: {exc}") from exc
    if len(raw) != KEY_SIZE:
        raise HandshakeFailed(
            f"Invalid public key length: expected {KEY_SIZE} bytes, got {len(raw)}"
        )
    return X25519PublicKey.from_public_bytes(raw)


def derive_key(shared_secret: bytes, ephemeral_public: bytes, manager_public: bytes) -> bytes:
    """HKDF-SHA256 the raw ECDH output into a 256-bit cipher key.

    Both public keys are bound in as the salt.
    """
    hkdf = HKDF(
        algorithm=SHA256(),
        length=KEY_SIZE,
        salt=ephemeral_public + manager_public,
        info=HKDF_INFO,
    )
    return hkdf.derive(shared_secret)


def serialize_env(env: Mapping[str, str]) -> bytes:
    """Canonical bytes of an env map: ``{"env": [{"key", "value"}, ...]}`` sorted by key."""
    entries = [{"key": key, "value": env[key]} for key in sorted(env)]
    return json.dumps({"env": entries}, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def deserialize_env(data: bytes) -> dict[str, str]:
    doc = json.loads(data.decode("utf-8"))
    return {entry["key"]: entry["value"] for entry in doc["env"]}


def encrypt_env(env: Mapping[str, str], manager_public_key: str) -> EncryptedPayload:
    """Seal an env map for the VM manager.

    Args:
        env: Resolved env to deliver.
        manager_public_key: The manager's X25519 public key, hex.

    Returns:
        EncryptedPayload: Fresh ephemeral key, nonce, ciphertext, tag.

    Raises:
        HandshakeFailed: Bad manager key or failed key agreement.
        EncryptionFailed: Serialization or encryption failed.
    """
    remote = parse_public_key(manager_public_key)

    ephemeral = X25519PrivateKey.generate()
    ephemeral_public = _raw(ephemeral.public_key())
    try:
        shared = ephemeral.exchange(remote)
    except ValueError as exc:
        # Low-order points produce an all-zero shared secret.
        raise HandshakeFailed(f"Key agreement failed: {exc}") from exc
    key = derive_key(shared, ephemeral_public, _raw(remote))

    try:
        plaintext = serialize_env(env)
        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    except (TypeError, ValueError) as exc:
        raise EncryptionFailed(f"Encryption failed: {exc}") from exc

    return EncryptedPayload(
        ephemeral_public_key=ephemeral_public,
        nonce=nonce,
        ciphertext=sealed[:-TAG_SIZE],
        tag=sealed[-TAG_SIZE:],
    )


def decrypt_env(payload: EncryptedPayload, manager_private_key: X25519PrivateKey) -> dict[str, str]:
    """Receiver side: recover the env map sealed by encrypt_env.

    Raises:
        EncryptionFailed: If authentication fails.
    """
    ephemeral = X25519PublicKey.from_public_bytes(payload.ephemeral_public_key)
    shared = manager_private_key.exchange(ephemeral)
    key = derive_key(shared, payload.ephemeral_public_key, _raw(manager_private_key.public_key()))
    try:
        plaintext = AESGCM(key).decrypt(payload.nonce, payload.ciphertext + payload.tag, None)
    except InvalidTag as exc:
        raise EncryptionFailed("Payload failed authentication") from exc
    return deserialize_env(plaintext)


class PublicKeySource(Protocol):
    def get_public_key(self, app_id: str) -> str: ...


class CryptoChannel:
    """Fetches the manager key and seals the env, one call per attempt.

    Args:
        vmm: Anything that can return the manager's public key for an app id.
    """

    def __init__(self, vmm: PublicKeySource) -> None:
        self._vmm = vmm

    def seal(self, env: Mapping[str, str], app_id: str) -> EncryptedPayload:
        """Encrypt ``env`` for the VM identified by ``app_id``.

        Raises:
            HandshakeFailed: If the key cannot be retrieved or used.
            EncryptionFailed: If sealing fails.
        """
        logger.info("Getting encryption key for app_id: %s", app_id)
        try:
            pubkey = self._vmm.get_public_key(app_id)
        except UpdaterError as exc:
            raise HandshakeFailed(f"Failed to get encryption public key: {exc}") from exc
        payload = encrypt_env(env, pubkey)
        logger.info("Encrypted %d environment variables for VM", len(env))
        return payload
