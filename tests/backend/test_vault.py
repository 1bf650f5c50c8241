"""
Tests for the credential vault.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from drivepool.exceptions import ConfigurationError, DecryptionError
from drivepool.vault import CipherBlob, CredentialBundle, CredentialVault


class TestCipherBlob:
    """Tests for CipherBlob serialization."""

    def test_to_dict_and_back(self):
        """Test that a blob survives dict serialization."""
        blob = CipherBlob(salt=b"s" * 32, nonce=b"n" * 12, ciphertext=b"c" * 40, iterations=100_000)
        data = blob.to_dict()

        assert data["kdf"] == "pbkdf2-sha256"
        assert data["cipher"] == "chacha20-poly1305"
        assert CipherBlob.from_dict(data) == blob

    def test_from_json_malformed(self):
        """Test that malformed JSON raises DecryptionError."""
        with pytest.raises(DecryptionError):
            CipherBlob.from_json("{not json")

    def test_from_json_missing_fields(self):
        """Test that a blob without a salt raises DecryptionError."""
        with pytest.raises(DecryptionError):
            CipherBlob.from_json('{"nonce": "", "ciphertext": "", "iterations": 1}')


class TestCredentialBundle:
    """Tests for the decrypted secret wrapper."""

    def test_repr_hides_secret(self):
        """Test that neither repr nor str reveal the secret."""
        bundle = CredentialBundle("refresh-token-value")

        assert "refresh-token-value" not in repr(bundle)
        assert "refresh-token-value" not in str(bundle)
        assert bundle.reveal() == "refresh-token-value"

    def test_cannot_be_pickled(self):
        """Test that the bundle refuses serialization."""
        import pickle

        with pytest.raises(TypeError):
            pickle.dumps(CredentialBundle("secret"))


class TestCredentialVault:
    """Tests for CredentialVault."""

    def test_encrypt_decrypt_roundtrip(self, vault, sample_passphrase):
        """Test that a secret decrypts with the same passphrase and context."""
        blob = vault.encrypt("1//refresh-token", sample_passphrase, context="acct-1")
        bundle = vault.decrypt(blob, sample_passphrase, context="acct-1")

        assert bundle.reveal() == "1//refresh-token"

    def test_fresh_salt_and_nonce(self, vault, sample_passphrase):
        """Test that encrypting twice never reuses salt or nonce."""
        first = vault.encrypt("secret", sample_passphrase, context="acct-1")
        second = vault.encrypt("secret", sample_passphrase, context="acct-1")

        assert first.salt != second.salt
        assert first.nonce != second.nonce
        assert first.ciphertext != second.ciphertext

    def test_wrong_passphrase(self, vault, sample_passphrase):
        """Test that a wrong passphrase raises DecryptionError."""
        blob = vault.encrypt("secret", sample_passphrase, context="acct-1")

        with pytest.raises(DecryptionError):
            vault.decrypt(blob, "Wrong-Horse-42!", context="acct-1")

    def test_wrong_context(self, vault, sample_passphrase):
        """Test that a blob cannot be decrypted for another account."""
        blob = vault.encrypt("secret", sample_passphrase, context="acct-1")

        with pytest.raises(DecryptionError):
            vault.decrypt(blob, sample_passphrase, context="acct-2")

    def test_tampered_ciphertext(self, vault, sample_passphrase):
        """Test that flipping a ciphertext bit is detected."""
        blob = vault.encrypt("secret", sample_passphrase, context="acct-1")
        tampered = CipherBlob(
            salt=blob.salt,
            nonce=blob.nonce,
            ciphertext=bytes([blob.ciphertext[0] ^ 1]) + blob.ciphertext[1:],
            iterations=blob.iterations,
        )

        with pytest.raises(DecryptionError):
            vault.decrypt(tampered, sample_passphrase, context="acct-1")

    def test_same_error_message_for_all_failures(self, vault, sample_passphrase):
        """Test that wrong passphrase and corruption are indistinguishable."""
        blob = vault.encrypt("secret", sample_passphrase, context="acct-1")
        corrupt = CipherBlob(blob.salt, blob.nonce, b"short", blob.iterations)

        with pytest.raises(DecryptionError) as wrong:
            vault.decrypt(blob, "Wrong-Horse-42!", context="acct-1")
        with pytest.raises(DecryptionError) as broken:
            vault.decrypt(corrupt, sample_passphrase, context="acct-1")

        assert str(wrong.value) == str(broken.value)

    def test_blob_records_iterations(self, sample_passphrase):
        """Test that old blobs decrypt after the iteration count changes."""
        old_vault = CredentialVault(iterations=100_000)
        blob = old_vault.encrypt("secret", sample_passphrase, context="acct-1")

        new_vault = CredentialVault(iterations=120_000)
        assert new_vault.decrypt(blob, sample_passphrase, context="acct-1").reveal() == "secret"

    def test_reencrypt(self, vault, sample_passphrase):
        """Test that reencrypt switches the passphrase."""
        blob = vault.encrypt("secret", sample_passphrase, context="acct-1")
        rotated = vault.reencrypt(blob, sample_passphrase, "New-Passphrase-7?", context="acct-1")

        assert vault.decrypt(rotated, "New-Passphrase-7?", context="acct-1").reveal() == "secret"
        with pytest.raises(DecryptionError):
            vault.decrypt(rotated, sample_passphrase, context="acct-1")

    def test_empty_passphrase_rejected(self, vault):
        """Test that encryption requires a passphrase."""
        with pytest.raises(ConfigurationError):
            vault.encrypt("secret", "", context="acct-1")

    def test_iterations_below_minimum(self):
        """Test that too few KDF iterations are refused."""
        with pytest.raises(ConfigurationError):
            CredentialVault(iterations=1000)
