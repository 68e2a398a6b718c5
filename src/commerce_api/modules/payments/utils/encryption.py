"""Credential vault for payment gateway secrets.

Secrets are sealed with AES-256-GCM (``cryptography``'s AESGCM primitive) and
stored as ``iv:authTag:ciphertext`` with every field hex encoded. A fresh
128-bit IV is drawn per call and the 128-bit tag is verified on decrypt, so a
tampered field or a value sealed under another key fails closed with
:class:`DecryptionError` instead of yielding wrong plaintext.

Key rotation: the key is loaded once per process from
``COMMERCE_PAYMENT_ENCRYPTION_KEY``. To rotate, decrypt every
``gateway_credentials.encrypted_credentials`` value with a vault built on the
old key, re-encrypt it with a vault built on the new key inside one
maintenance transaction, then swap the environment value and restart the
workers. Rows left under the old key surface as ``DecryptionError``.
"""

from __future__ import annotations

import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ....core.config import Settings, get_settings
from ..errors import DecryptionError

IV_BYTES = 16
TAG_BYTES = 16
KEY_BYTES = 32


class CredentialVault:
    """Encrypts and decrypts gateway credentials at rest.

    Holds only the derived key, which is read-only after construction and
    safe to share across tasks.
    """

    def __init__(self, encryption_key: str | bytes):
        """Initialize the vault.

        Args:
            encryption_key: 32 raw bytes, 64 hex characters, or a passphrase
                from which a 256-bit key is derived with PBKDF2-HMAC-SHA256.

        Raises:
            ValueError: If the key is empty.
        """
        if not encryption_key:
            raise ValueError(
                "Payment encryption key not configured. Set COMMERCE_PAYMENT_ENCRYPTION_KEY "
                "environment variable."
            )
        self._aesgcm = AESGCM(self._derive_key(encryption_key))

    @staticmethod
    def _derive_key(key: str | bytes) -> bytes:
        if isinstance(key, bytes):
            if len(key) != KEY_BYTES:
                raise ValueError("Raw encryption key must be exactly 32 bytes")
            return key

        if len(key) == KEY_BYTES * 2:
            try:
                return bytes.fromhex(key)
            except ValueError:
                pass  # not hex, treat as passphrase

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_BYTES,
            salt=b"commerce_payment_vault",  # Static salt keeps derivation stable across processes
            iterations=100000,
        )
        return kdf.derive(key.encode())

    def encrypt(self, plaintext: str) -> str:
        """Seal a secret string.

        Returns:
            ``"iv:authTag:ciphertext"`` in hex.
        """
        iv = os.urandom(IV_BYTES)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        """Open a value produced by :meth:`encrypt`.

        Raises:
            DecryptionError: On malformed input, tag mismatch or wrong key.
        """
        parts = token.split(":") if token else []
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted data format")

        try:
            iv = bytes.fromhex(parts[0])
            tag = bytes.fromhex(parts[1])
            ciphertext = bytes.fromhex(parts[2])
        except ValueError as e:
            raise DecryptionError("Invalid encrypted data encoding") from e

        if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
            raise DecryptionError("Invalid IV or authentication tag length")

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise DecryptionError("Authentication tag mismatch") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:  # pragma: no cover - tag already verified
            raise DecryptionError("Decrypted data is not valid UTF-8") from e

    def encrypt_credentials(self, credentials: dict[str, Any]) -> str:
        """Seal a credential bundle (API key, secret, webhook secret...)."""
        return self.encrypt(json.dumps(credentials, sort_keys=True))

    def decrypt_credentials(self, token: str) -> dict[str, Any]:
        data = self.decrypt(token)
        try:
            credentials = json.loads(data)
        except json.JSONDecodeError as e:
            raise DecryptionError("Decrypted credentials are not valid JSON") from e
        if not isinstance(credentials, dict):
            raise DecryptionError("Decrypted credentials are not a mapping")
        return credentials

    @staticmethod
    def generate_key() -> str:
        """Generate a new random 256-bit key as 64 hex characters."""
        return os.urandom(KEY_BYTES).hex()


_vault: CredentialVault | None = None
_vault_key: str | None = None


def get_vault(settings: Settings | None = None) -> CredentialVault:
    """Return the process-wide vault, building it from settings on first use.

    The first settings win. Later calls may pass settings carrying the same
    key; a different key is refused rather than silently ignored.

    Raises:
        ValueError: If the encryption key is not configured, or differs from
            the key the process vault was built with.
    """
    global _vault, _vault_key
    if _vault is not None:
        if settings is not None and _key_of(settings) != _vault_key:
            raise ValueError("Payment vault already initialized with a different encryption key")
        return _vault

    key = _key_of(settings or get_settings())
    _vault = CredentialVault(key)
    _vault_key = key
    return _vault


def _key_of(settings: Settings) -> str:
    secret = settings.PAYMENT_ENCRYPTION_KEY
    return secret.get_secret_value() if secret else ""
