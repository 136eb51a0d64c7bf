"""Composition root for the clinical retrieval pipeline.

This module wires the domain services to their adapters from configuration:
DuckDB storage, OpenAI models, Fernet encryption and the audit logger. The
CLI and tests build pipelines through these factories.

Security Impact:
    - Configuration (including API keys and the encryption key) is loaded via
      the configuration manager, never hard-coded
    - The audit log is flushed to storage after every ingestion and query run

Architecture:
    - Follows Hexagonal Architecture principles
    - Adapters are injected into domain services here and nowhere else
    - Any port can be overridden, so tests substitute fakes for external models
"""

import logging
from dataclasses import dataclass
from typing import Optional

from clinical_rag.adapters.ai import OpenAIEmbeddingAdapter, OpenAIGenerationAdapter
from clinical_rag.adapters.ingesters import get_adapter
from clinical_rag.adapters.storage import DuckDBVectorStore
from clinical_rag.domain.models import BatchResult, QueryOutcome, StoredEmbedding
from clinical_rag.domain.ports import EmbeddingPort, GenerationPort
from clinical_rag.domain.services import (
    ClinicalExtractor,
    EmbeddingGenerator,
    IngestionService,
    PHIDetector,
    ResponseValidator,
    RetrievalOrchestrator,
    SimilaritySearchEngine,
)
from clinical_rag.infrastructure.audit import AuditLogger
from clinical_rag.infrastructure.encryption import EncryptionService
from clinical_rag.infrastructure.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    """Fully wired services sharing one store and one audit log."""

    store: DuckDBVectorStore
    audit: AuditLogger
    ingestion: IngestionService
    orchestrator: RetrievalOrchestrator

    def flush_audit(self) -> None:
        result = self.audit.flush_to(self.store)
        if not result.is_success():
            logger.error(f"Audit events were not persisted: {result.error}")

    def close(self) -> None:
        self.flush_audit()
        self.store.close()


def create_storage_adapter(
    app_settings: Optional[Settings] = None,
    encryption_service: Optional[EncryptionService] = None,
    audit: Optional[AuditLogger] = None,
) -> DuckDBVectorStore:
    """Create the DuckDB store from configuration.

    Raises:
        StorageError: If the database cannot be opened
    """
    app_settings = app_settings or default_settings
    db_config = app_settings.db_config
    logger.info(f"Initializing DuckDB store with path: {db_config.get_connection_string()}")
    return DuckDBVectorStore(
        encryption_service=encryption_service or EncryptionService(),
        db_config=db_config,
        dimensions=app_settings.ai_config.embedding_dimensions,
        audit_sink=audit,
    )


def build_pipeline(
    app_settings: Optional[Settings] = None,
    embedding_port: Optional[EmbeddingPort] = None,
    generation_port: Optional[GenerationPort] = None,
    store: Optional[DuckDBVectorStore] = None,
    audit: Optional[AuditLogger] = None,
) -> Pipeline:
    """Wire every service of the pipeline.

    Parameters:
        app_settings: Settings to read configuration from (global settings by default)
        embedding_port: Embedding model (OpenAI adapter by default)
        generation_port: Generation model (OpenAI adapter by default)
        store: Storage adapter (DuckDB from configuration by default)
        audit: Audit logger (new in-memory logger by default)

    Returns:
        Pipeline: Wired services
    """
    app_settings = app_settings or default_settings
    ai_config = app_settings.ai_config
    retrieval = app_settings.retrieval_config

    detector = PHIDetector()
    audit = audit or AuditLogger(detector)
    store = store or create_storage_adapter(app_settings, audit=audit)
    embedding_port = embedding_port or OpenAIEmbeddingAdapter(ai_config)

    embedding_generator = EmbeddingGenerator(
        embedding_port,
        detector=detector,
        timeout=retrieval.embedding_timeout,
        prefix_length=retrieval.source_text_prefix,
    )

    ingestion = IngestionService(
        extractor=ClinicalExtractor(detector),
        embedding_generator=embedding_generator,
        vector_store=store,
        record_store=store,
        audit_sink=audit,
        storage_timeout=retrieval.storage_timeout,
    )

    orchestrator = RetrievalOrchestrator(
        embedding_generator=embedding_generator,
        search_engine=SimilaritySearchEngine(
            store,
            dimensions=embedding_port.dimensions,
            timeout=retrieval.storage_timeout,
        ),
        record_store=store,
        generation_port=generation_port or OpenAIGenerationAdapter(ai_config),
        audit_sink=audit,
        validator=ResponseValidator(detector, min_confidence=retrieval.min_confidence),
        detector=detector,
        top_k=retrieval.top_k,
        min_threshold=retrieval.min_threshold,
        temperature=ai_config.temperature,
        max_tokens=ai_config.max_tokens,
        generation_timeout=retrieval.generation_timeout,
        storage_timeout=retrieval.storage_timeout,
    )

    return Pipeline(store=store, audit=audit, ingestion=ingestion, orchestrator=orchestrator)


def process_ingestion(pipeline: Pipeline, source: str, owner_id: str) -> BatchResult[StoredEmbedding]:
    """Ingest every resource of a source file for one owner.

    The adapter's results are streamed into the ingestion service; entries the
    adapter rejected become per-item failures and never stop the run.

    Raises:
        SourceNotFoundError: If the source file doesn't exist
        UnsupportedSourceError: If no adapter handles the source
    """
    adapter = get_adapter(source)
    logger.info(f"Ingesting {source} with {type(adapter).__name__} for owner {owner_id}")

    batch = pipeline.ingestion.ingest_batch(owner_id, adapter.ingest(source))

    pipeline.flush_audit()
    logger.info(
        f"Ingestion complete: {batch.success_count} stored, {batch.failure_count} failed"
    )
    return batch


def process_query(pipeline: Pipeline, owner_id: str, query: str) -> QueryOutcome:
    outcome = pipeline.orchestrator.process_query(owner_id, query)
    pipeline.flush_audit()
    return outcome
