"""Encryption infrastructure components."""

from clinical_rag.infrastructure.encryption.encryption_service import EncryptionService

__all__ = ['EncryptionService']
