"""
Passphrase-based encryption for long-lived account secrets.

This module encrypts refresh tokens (and other long-lived provider secrets)
with a user passphrase using ChaCha20-Poly1305. The decrypted form only
exists in memory, wrapped in a ``CredentialBundle`` whose repr hides it.
"""

from __future__ import annotations

import base64
import json
import logging
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from drivepool.exceptions import ConfigurationError, DecryptionError

__all__ = ["APP_CONTEXT", "CipherBlob", "CredentialBundle", "CredentialVault"]

logger = logging.getLogger(__name__)

# Associated-data prefix; a blob from another application never authenticates.
APP_CONTEXT: bytes = b"drivepool:v1:"

BLOB_FORMAT_VERSION = "1.0"


@dataclass(frozen=True)
class CipherBlob:
    """
    Encrypted secret container.

    Attributes:
        salt: Salt used for key derivation.
        nonce: Nonce used for encryption.
        ciphertext: Encrypted secret followed by the 128-bit tag.
        iterations: PBKDF2 iteration count used for this blob.
    """

    salt: bytes
    nonce: bytes
    ciphertext: bytes
    iterations: int

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for serialization."""
        return {
            "version": BLOB_FORMAT_VERSION,
            "kdf": "pbkdf2-sha256",
            "cipher": "chacha20-poly1305",
            "iterations": self.iterations,
            "salt": base64.b64encode(self.salt).decode("ascii"),
            "nonce": base64.b64encode(self.nonce).decode("ascii"),
            "ciphertext": base64.b64encode(self.ciphertext).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: dict) -> CipherBlob:
        """Create from dictionary."""
        return cls(
            salt=base64.b64decode(data["salt"]),
            nonce=base64.b64decode(data["nonce"]),
            ciphertext=base64.b64decode(data["ciphertext"]),
            iterations=int(data["iterations"]),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, data: str) -> CipherBlob:
        try:
            return cls.from_dict(json.loads(data))
        except (ValueError, KeyError, TypeError) as e:
            raise DecryptionError() from e


class CredentialBundle:
    """Decrypted long-lived secret. Never serialized, never printed."""

    __slots__ = ("_secret",)

    def __init__(self, secret: str) -> None:
        self._secret = secret

    def reveal(self) -> str:
        return self._secret

    def __repr__(self) -> str:
        return "CredentialBundle(<redacted>)"

    __str__ = __repr__

    def __reduce__(self):
        raise TypeError("CredentialBundle cannot be serialized")


class CredentialVault:
    """
    Encrypts and decrypts secrets with a user passphrase.

    Security Features:
        - PBKDF2-HMAC-SHA256 key derivation (600,000 iterations by default)
        - ChaCha20-Poly1305 authenticated encryption
        - Fresh random salt and nonce on every call
        - Associated data binds each blob to this application and a context
          (the account id), so blobs cannot be swapped between accounts

    Example:
        >>> vault = CredentialVault()
        >>> blob = vault.encrypt('refresh-token', 'passphrase', context='acct-1')
        >>> vault.decrypt(blob, 'passphrase', context='acct-1').reveal()
        'refresh-token'
    """

    # Security parameters
    PBKDF2_ITERATIONS: int = 600_000
    MIN_ITERATIONS: int = 100_000
    SALT_SIZE: int = 32
    NONCE_SIZE: int = 12
    KEY_SIZE: int = 32

    def __init__(self, iterations: int | None = None) -> None:
        """
        Initialize the vault.

        Args:
            iterations: PBKDF2 iterations for new blobs (min 100,000).

        Raises:
            ConfigurationError: If iterations is below the minimum.
        """
        self.iterations = iterations or self.PBKDF2_ITERATIONS
        if self.iterations < self.MIN_ITERATIONS:
            raise ConfigurationError(
                f"KDF iterations must be at least {self.MIN_ITERATIONS}"
            )

    def _derive_key(self, passphrase: str, salt: bytes, iterations: int) -> bytes:
        """Derive encryption key from passphrase."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.KEY_SIZE,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(passphrase.encode("utf-8"))

    @staticmethod
    def _associated_data(context: str) -> bytes:
        return APP_CONTEXT + context.encode("utf-8")

    def encrypt(self, secret: str, passphrase: str, context: str) -> CipherBlob:
        """
        Encrypt a secret.

        Args:
            secret: Plaintext secret (e.g. a refresh token).
            passphrase: User passphrase.
            context: Binding context, normally the account id.

        Returns:
            CipherBlob holding salt, nonce and ciphertext.
        """
        if not passphrase:
            raise ConfigurationError("A passphrase is required to encrypt credentials")

        salt = secrets.token_bytes(self.SALT_SIZE)
        nonce = secrets.token_bytes(self.NONCE_SIZE)
        key = self._derive_key(passphrase, salt, self.iterations)
        cipher = ChaCha20Poly1305(key)
        ciphertext = cipher.encrypt(
            nonce, secret.encode("utf-8"), self._associated_data(context)
        )
        return CipherBlob(
            salt=salt, nonce=nonce, ciphertext=ciphertext, iterations=self.iterations
        )

    def decrypt(self, blob: CipherBlob, passphrase: str, context: str) -> CredentialBundle:
        """
        Decrypt a secret.

        Args:
            blob: Encrypted secret.
            passphrase: User passphrase.
            context: Binding context used at encryption time.

        Returns:
            The decrypted secret wrapped in a CredentialBundle.

        Raises:
            DecryptionError: Wrong passphrase, wrong context or corrupt blob.
        """
        try:
            key = self._derive_key(passphrase, blob.salt, blob.iterations)
            cipher = ChaCha20Poly1305(key)
            plaintext = cipher.decrypt(
                blob.nonce, blob.ciphertext, self._associated_data(context)
            )
            return CredentialBundle(plaintext.decode("utf-8"))
        except (InvalidTag, ValueError, TypeError) as e:
            # No detail: the caller must not learn which check failed.
            logger.warning(f"Credential decryption failed for context {context}")
            raise DecryptionError() from e

    def reencrypt(
        self, blob: CipherBlob, old_passphrase: str, new_passphrase: str, context: str
    ) -> CipherBlob:
        """Decrypt with the old passphrase and encrypt again with the new one."""
        bundle = self.decrypt(blob, old_passphrase, context)
        return self.encrypt(bundle.reveal(), new_passphrase, context)
