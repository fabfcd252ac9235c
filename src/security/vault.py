"""Credential vault for per-user LeMedia API tokens.

The web application stores each linked user's API token encrypted at rest as
``version:iv:ciphertext:tag`` (all parts base64). The key is the SHA-256 digest
of the shared ``SERVICES_SECRET_KEY``; encryption is AES-256-GCM.

Usage:
    from src.security import get_vault

    api_token = get_vault().reveal(linked.api_token_encrypted)
"""

import base64
import binascii
import hashlib
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

IV_LENGTH = 12
TAG_LENGTH = 16


class IntegrityError(Exception):
    """Raised when an encrypted payload is malformed or fails authentication."""

    pass


@dataclass(frozen=True)
class KeySpec:
    """A versioned AES-256 key."""

    version: str
    key: bytes


def derive_key(secret: str, version: str) -> KeySpec:
    """Build a key spec by hashing the configured secret.

    Args:
        secret: Raw secret string from configuration
        version: Version tag stored in sealed payloads

    Returns:
        KeySpec with a 32-byte key
    """
    return KeySpec(version=version, key=hashlib.sha256(secret.encode("utf-8")).digest())


def _b64decode(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise IntegrityError("Encrypted payload contains invalid base64") from e


class CredentialVault:
    """Seals and reveals credentials with AES-256-GCM.

    The first key is the current one (used for sealing). Further keys are only
    used for decryption, which lets the web app rotate its secret without
    breaking existing links.
    """

    def __init__(self, keys: list[KeySpec]):
        """Initialize vault.

        Args:
            keys: Current key first, then any previous keys

        Raises:
            ValueError: If no key is given
        """
        if not keys:
            raise ValueError("At least one key is required")
        self._keys = list(keys)

    @classmethod
    def from_secrets(
        cls,
        secret: str,
        version: str = "1",
        previous_secret: str | None = None,
        previous_version: str = "legacy",
    ) -> "CredentialVault":
        """Build a vault from raw secret strings."""
        if not secret:
            raise ValueError("Secret must not be empty")
        keys = [derive_key(secret, version)]
        if previous_secret:
            keys.append(derive_key(previous_secret, previous_version))
        return cls(keys)

    @property
    def current_version(self) -> str:
        """Version tag written by seal()."""
        return self._keys[0].version

    def seal(self, plaintext: str) -> str:
        """Encrypt a credential with the current key.

        Args:
            plaintext: Credential to encrypt

        Returns:
            Payload in ``version:iv:ciphertext:tag`` form
        """
        spec = self._keys[0]
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(spec.key).encrypt(iv, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return ":".join(
            [
                spec.version,
                base64.b64encode(iv).decode(),
                base64.b64encode(ciphertext).decode(),
                base64.b64encode(tag).decode(),
            ]
        )

    def reveal(self, payload: str) -> str:
        """Decrypt a sealed credential.

        Args:
            payload: ``version:iv:ciphertext:tag`` string

        Returns:
            Plaintext credential

        Raises:
            IntegrityError: Malformed payload or authentication tag mismatch
        """
        parts = (payload or "").split(":")
        if len(parts) != 4:
            raise IntegrityError("Encrypted payload must have 4 parts")

        version, iv_b64, ciphertext_b64, tag_b64 = parts
        iv = _b64decode(iv_b64)
        ciphertext = _b64decode(ciphertext_b64)
        tag = _b64decode(tag_b64)
        if len(tag) != TAG_LENGTH or not iv:
            raise IntegrityError("Encrypted payload has an invalid IV or tag")

        # Matching version first, then every key
        candidates = [spec for spec in self._keys if spec.version == version]
        candidates += [spec for spec in self._keys if spec.version != version]

        for spec in candidates:
            try:
                plaintext = AESGCM(spec.key).decrypt(iv, ciphertext + tag, None)
            except InvalidTag:
                continue
            return plaintext.decode("utf-8")

        raise IntegrityError("Unable to decrypt payload with available keys")


_vault: CredentialVault | None = None


def get_vault() -> CredentialVault:
    """Get the process-wide vault built from settings."""
    global _vault
    if _vault is None:
        from src.config import settings

        previous = settings.services_secret_key_previous
        _vault = CredentialVault.from_secrets(
            settings.services_secret_key.get_secret_value(),
            version=settings.services_secret_key_version,
            previous_secret=previous.get_secret_value() if previous else None,
            previous_version=settings.services_secret_key_previous_version,
        )
    return _vault


def reveal(payload: str) -> str:
    """Decrypt a credential with the configured keys."""
    return get_vault().reveal(payload)
