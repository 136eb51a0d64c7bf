"""Domain layer for Clinical-RAG.

This module contains the core pipeline logic and data models.
All domain models are pure Python with no external dependencies beyond Pydantic
and numpy.
"""

from .models import (
    AnonymizedRecord,
    AuditRecord,
    ClinicalRecord,
    ClinicalResponse,
    EmbeddingVector,
    PHIMatch,
    StoredEmbedding,
)

__all__ = [
    "AnonymizedRecord",
    "AuditRecord",
    "ClinicalRecord",
    "ClinicalResponse",
    "EmbeddingVector",
    "PHIMatch",
    "StoredEmbedding",
]
