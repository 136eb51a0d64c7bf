"""Unit tests for EncryptionService."""

import pytest

from clinical_rag.domain.ports import EncryptionError
from clinical_rag.infrastructure.encryption import EncryptionService


class TestEncryptionService:
    """Test suite for EncryptionService."""

    def test_vector_roundtrip_is_exact(self, encryption_service):
        vector = [0.1, -2.5, 1e-12, 3.141592653589793]

        ciphertext = encryption_service.encrypt_vector(vector)

        assert isinstance(ciphertext, bytes)
        assert b"3.14" not in ciphertext
        assert encryption_service.decrypt_vector(ciphertext) == vector

    def test_same_vector_encrypts_differently(self, encryption_service):
        vector = [1.0, 2.0]
        assert encryption_service.encrypt_vector(vector) != encryption_service.encrypt_vector(vector)

    def test_wrong_key_raises(self, encryption_service):
        ciphertext = encryption_service.encrypt_vector([1.0, 2.0])
        other = EncryptionService(key=EncryptionService.generate_key())

        with pytest.raises(EncryptionError):
            other.decrypt_vector(ciphertext)

    def test_tampered_ciphertext_raises(self, encryption_service):
        ciphertext = bytearray(encryption_service.encrypt_vector([1.0, 2.0]))
        ciphertext[-5] = ord("A") if ciphertext[-5] != ord("A") else ord("B")

        with pytest.raises(EncryptionError):
            encryption_service.decrypt_vector(bytes(ciphertext))

    @pytest.mark.parametrize("vector", [[], [float("nan")], [float("inf"), 1.0]])
    def test_unencryptable_vectors(self, encryption_service, vector):
        with pytest.raises(EncryptionError):
            encryption_service.encrypt_vector(vector)

    def test_non_vector_payload_rejected(self, encryption_service):
        ciphertext = encryption_service.cipher.encrypt(b'{"not": "a vector"}')

        with pytest.raises(EncryptionError):
            encryption_service.decrypt_vector(ciphertext)

    def test_invalid_key(self):
        with pytest.raises(EncryptionError):
            EncryptionService(key=b"too-short")

    def test_key_id(self, encryption_service):
        assert encryption_service.get_key_id() == "test-key"


class TestKeyDerivation:
    """Keys taken from the environment."""

    def test_key_from_environment(self, monkeypatch):
        key = EncryptionService.generate_key()
        monkeypatch.setenv("CR_ENCRYPTION_KEY", key.decode("utf-8"))
        monkeypatch.setenv("CR_ENCRYPTION_KEY_ID", "env-key")

        service = EncryptionService()

        assert service.get_key_id() == "env-key"
        ciphertext = EncryptionService(key=key).encrypt_vector([1.0])
        assert service.decrypt_vector(ciphertext) == [1.0]

    def test_password_derivation_is_deterministic(self, monkeypatch):
        monkeypatch.delenv("CR_ENCRYPTION_KEY", raising=False)
        monkeypatch.setenv("CR_ENCRYPTION_KEY_PASSWORD", "correct horse battery staple")
        monkeypatch.setenv("CR_ENCRYPTION_KEY_SALT", "test-salt")

        ciphertext = EncryptionService().encrypt_vector([0.5])

        assert EncryptionService().decrypt_vector(ciphertext) == [0.5]
