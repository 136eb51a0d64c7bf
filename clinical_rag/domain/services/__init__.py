"""Domain Services.

This package contains the pipeline services that implement business logic
without infrastructure dependencies.
"""

from clinical_rag.domain.services.embedding_generator import EmbeddingGenerator
from clinical_rag.domain.services.extractor import ClinicalExtractor
from clinical_rag.domain.services.ingestion_service import IngestionService
from clinical_rag.domain.services.phi_detector import PHIDetector
from clinical_rag.domain.services.response_validator import ResponseValidator
from clinical_rag.domain.services.retrieval_orchestrator import (
    RetrievalOrchestrator,
    format_response_for_display,
)
from clinical_rag.domain.services.similarity import (
    SimilaritySearchEngine,
    cosine_similarity,
    rank_candidates,
)

__all__ = [
    'ClinicalExtractor',
    'EmbeddingGenerator',
    'IngestionService',
    'PHIDetector',
    'ResponseValidator',
    'RetrievalOrchestrator',
    'SimilaritySearchEngine',
    'cosine_similarity',
    'format_response_for_display',
    'rank_candidates',
]
