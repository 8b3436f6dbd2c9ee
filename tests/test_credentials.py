# tests/test_credentials.py
# Credential Store: encryption at rest bound to a context

import pytest

from paygate.services.payment.credentials import CredentialStore, credentials_context
from paygate.services.payment.errors import CredentialError

from conftest import TEST_KEY


class TestCredentialStore:
    """Encrypt / decrypt"""

    def test_round_trip(self, credential_store):
        """Decrypt returns what was encrypted"""
        plain = {"merchant_id": "3002607", "hash_key": "abc", "hash_iv": "def"}
        blob = credential_store.encrypt(plain, "ctx-a")
        assert credential_store.decrypt(blob, "ctx-a") == plain

    def test_ciphertext_hides_secrets(self, credential_store):
        """Secret values never appear in the blob"""
        blob = credential_store.encrypt({"hash_key": "SuperSecretHashKey"}, "ctx-a")
        assert isinstance(blob, str)
        assert "SuperSecretHashKey" not in blob

    def test_encryption_is_randomized(self, credential_store):
        """Same plaintext twice gives different blobs"""
        plain = {"a": "b"}
        assert credential_store.encrypt(plain) != credential_store.encrypt(plain)

    def test_wrong_context_fails(self, credential_store):
        """A blob written for one row cannot be read for another"""
        blob = credential_store.encrypt({"a": "b"}, credentials_context("org_1", "ecpay"))
        with pytest.raises(CredentialError):
            credential_store.decrypt(blob, credentials_context("org_2", "ecpay"))

    def test_wrong_key_fails(self, credential_store):
        """Another key cannot decrypt"""
        blob = credential_store.encrypt({"a": "b"})
        other = CredentialStore("f" * 32)
        with pytest.raises(CredentialError):
            other.decrypt(blob)

    def test_tampered_blob_fails(self, credential_store):
        """Flipping a ciphertext character is detected"""
        blob = credential_store.encrypt({"a": "b"})
        header, key, iv, ciphertext, tag = blob.split(".")
        flipped = ("A" if ciphertext[0] != "A" else "B") + ciphertext[1:]
        with pytest.raises(CredentialError):
            credential_store.decrypt(".".join([header, key, iv, flipped, tag]))

    @pytest.mark.parametrize("blob", ["", "not-a-token", "a.b.c.d.e"])
    def test_garbage_fails(self, credential_store, blob):
        """Malformed input raises CredentialError, not a library error"""
        with pytest.raises(CredentialError):
            credential_store.decrypt(blob)


class TestCredentialKey:
    """Key configuration"""

    def test_key_from_environment(self, monkeypatch):
        """Falls back to PAYMENT_CREDENTIALS_KEY"""
        monkeypatch.setenv("PAYMENT_CREDENTIALS_KEY", TEST_KEY)
        store = CredentialStore()
        assert store.decrypt(store.encrypt({"x": 1})) == {"x": 1}

    def test_missing_key(self, monkeypatch):
        """No key is a startup error"""
        monkeypatch.delenv("PAYMENT_CREDENTIALS_KEY", raising=False)
        with pytest.raises(ValueError):
            CredentialStore()

    @pytest.mark.parametrize("key", ["short", "x" * 31, "x" * 33])
    def test_wrong_length_key(self, key):
        """Key must be exactly 32 bytes"""
        with pytest.raises(ValueError):
            CredentialStore(key)
