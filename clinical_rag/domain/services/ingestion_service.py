"""Ingestion Service.

Turns clinical records into stored, searchable embeddings:

    anonymize -> embed -> store vector -> save record -> audit

Each record is an independent unit of work. Batch ingestion captures per-item
failures and keeps going; one bad record never aborts the batch.
"""

import logging
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from clinical_rag.domain.enums import AuditEventKind, AuditStatus
from clinical_rag.domain.models import (
    AuditRecord,
    BatchResult,
    ClinicalRecord,
    ItemError,
    StoredEmbedding,
)
from clinical_rag.domain.ports import (
    AuditSinkPort,
    PipelineError,
    RecordStorePort,
    Result,
    StorageError,
    ValidationError,
    VectorStorePort,
)
from clinical_rag.domain.services.embedding_generator import EmbeddingGenerator
from clinical_rag.domain.services.extractor import ClinicalExtractor
from clinical_rag.domain.utils import run_with_timeout

logger = logging.getLogger(__name__)


class IngestionService:
    """Anonymizes, embeds and stores clinical records for one owner at a time.

    Parameters:
        extractor: Text/fact extraction and anonymization
        embedding_generator: Embedding model wrapper
        vector_store: Encrypted embedding store
        record_store: Anonymized record store
        audit_sink: Optional append-only audit sink
        storage_timeout: Seconds allowed per store call
    """

    def __init__(
        self,
        extractor: ClinicalExtractor,
        embedding_generator: EmbeddingGenerator,
        vector_store: VectorStorePort,
        record_store: RecordStorePort,
        audit_sink: Optional[AuditSinkPort] = None,
        storage_timeout: Optional[float] = None,
    ):
        self.extractor = extractor
        self.embedding_generator = embedding_generator
        self.vector_store = vector_store
        self.record_store = record_store
        self.audit_sink = audit_sink
        self.storage_timeout = storage_timeout

    def ingest(self, owner_id: str, record: Union[ClinicalRecord, dict[str, Any]]) -> StoredEmbedding:
        """Ingest a single record.

        Parameters:
            owner_id: Owner the record and embedding are bound to
            record: ClinicalRecord or raw FHIR resource dictionary

        Returns:
            StoredEmbedding: The persisted embedding

        Raises:
            ValidationError: If the record is malformed or anonymization fails
            EmbeddingGenerationError: If the embedding call fails
            EncryptionError, StorageError, DimensionMismatchError: If persistence fails
        """
        if not isinstance(record, ClinicalRecord):
            record = ClinicalRecord.from_resource(record)

        previous = self._call_store(self.record_store.get_record, owner_id, record.record_id)
        version = previous.version + 1 if previous is not None else 1

        anonymized = self.extractor.anonymize(record, version=version)
        embedding = self.embedding_generator.embed(
            anonymized.redacted_text,
            anonymized.source_id,
            anonymized.extracted_facts,
        )

        # Vector first: a failed vector write must leave no record version behind
        stored: Result = self._call_store(self.vector_store.store, owner_id, embedding)
        self._raise_on_failure(stored, "store")
        try:
            saved: Result = self._call_store(self.record_store.save_record, owner_id, anonymized)
            self._raise_on_failure(saved, "save_record")
        except PipelineError:
            self._discard_vector(owner_id, stored.value.id)
            raise
        anonymized = saved.value

        self._emit(AuditRecord(
            event_kind=AuditEventKind.RESOURCE_INGESTED,
            owner_id=owner_id,
            action="ingest",
            details={
                "resource_type": anonymized.resource_type,
                "content_hash": anonymized.content_hash,
                "version": anonymized.version,
                "phi_detected": anonymized.phi_detected,
                "phi_kinds": sorted(kind.value for kind in anonymized.redacted_kinds),
                "embedding_id": stored.value.id,
            },
        ))
        logger.info(
            f"Ingested {anonymized.resource_type} {anonymized.source_id} v{anonymized.version} "
            f"for owner {owner_id}"
        )
        return stored.value

    def ingest_batch(
        self,
        owner_id: str,
        records: Iterable[Union[ClinicalRecord, dict[str, Any], Result]],
    ) -> BatchResult[StoredEmbedding]:
        """Ingest several records, collecting per-item errors.

        Accepts records, raw resource dictionaries, or ``Result`` objects as
        yielded by an IngestionPort (failed results are reported as errors).

        Returns:
            BatchResult[StoredEmbedding]: Successes and per-item errors
        """
        batch: BatchResult[StoredEmbedding] = BatchResult()
        for item in records:
            item_id = self._item_id(item)
            try:
                if isinstance(item, Result):
                    if item.is_failure():
                        raise ValidationError(item.error or "Invalid record", source=item_id)
                    item = item.value
                batch.succeeded.append(self.ingest(owner_id, item))
            except (PipelineError, PydanticValidationError) as e:
                logger.warning(f"Ingestion failed for {item_id or 'unknown'}: {type(e).__name__}")
                batch.errors.append(ItemError(
                    item_id=item_id,
                    error=str(e),
                    error_type=type(e).__name__,
                ))
                self._emit(AuditRecord(
                    event_kind=AuditEventKind.INGESTION_FAILED,
                    owner_id=owner_id,
                    action="ingest",
                    details={"resource_id": item_id, "error_type": type(e).__name__},
                    status=AuditStatus.FAILURE,
                ))

        logger.info(
            f"Batch ingestion for owner {owner_id}: {batch.success_count} succeeded, "
            f"{batch.failure_count} failed"
        )
        return batch

    def _call_store(self, func, *args):
        return run_with_timeout(
            func,
            *args,
            timeout=self.storage_timeout,
            capability="storage",
            stage="ingest",
        )

    def _discard_vector(self, owner_id: str, embedding_id: str) -> None:
        try:
            self._call_store(self.vector_store.delete, owner_id, embedding_id)
        except PipelineError as e:
            logger.error(f"Could not remove embedding {embedding_id} after failed record save: {e}")

    @staticmethod
    def _raise_on_failure(result: Result, operation: str) -> None:
        if result.is_success():
            return
        raise StorageError(
            f"{operation} failed ({result.error_type}): {result.error}",
            operation=operation,
            details=result.error_details,
        )

    @staticmethod
    def _item_id(item: Any) -> Optional[str]:
        if isinstance(item, ClinicalRecord):
            return item.record_id
        if isinstance(item, Result):
            if item.value is not None:
                return item.value.record_id
            return (item.error_details or {}).get("record_id")
        if isinstance(item, dict):
            value = item.get("id")
            return value if isinstance(value, str) else None
        return None

    def _emit(self, event: AuditRecord) -> None:
        if self.audit_sink is None:
            return
        try:
            self.audit_sink.emit(event)
        except Exception as e:
            logger.error(f"Audit sink rejected {event.event_kind.value} event: {e}", exc_info=True)
