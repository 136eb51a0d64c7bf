"""Domain Ports - Abstract Contracts for the Retrieval Pipeline.

This module defines the Port interfaces (abstract contracts) that Adapters must
implement, the ``Result`` type used to report per-operation success or failure,
and the pipeline's exception taxonomy. Following Hexagonal Architecture, the
Domain Core defines what it needs, not how it's provided.

Security Impact:
    - Ports only accept anonymized records and embeddings built from redacted text
    - Every storage operation is scoped by an owner identifier
    - Audit sinks receive kinds and counts, never raw PHI values

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - External capabilities (embedding model, text generation model, persistence,
      audit) are injected into the domain services through these ports
    - Iterator pattern enables memory-efficient streaming ingestion
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, Iterator, Optional, Sequence, TypeVar, Union

if TYPE_CHECKING:
    from clinical_rag.domain.models import (
        AnonymizedRecord,
        AuditRecord,
        BatchResult,
        ClinicalRecord,
        EmbeddingVector,
        StoredEmbedding,
    )

T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error message (only present if success=False)
        error_type: Type of error (EncryptionError, StorageError, etc.)
        error_details: Additional error context (owner, embedding id, etc.)

    Example:
        ```python
        result = store.store(owner_id, embedding)
        if result.is_success():
            stored = result.value
        else:
            logger.warning(f"{result.error_type}: {result.error}")
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result."""
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (defaults to the exception class name)
            error_details: Additional context

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class PipelineError(Exception):
    """Base exception for all retrieval pipeline errors."""
    pass


class ValidationError(PipelineError):
    """Raised when an input record is malformed or an output fails a safety check.

    Batch operations capture this per item; the batch continues.

    Attributes:
        source: The record identifier that failed validation
        details: Additional error details
    """

    def __init__(self, message: str, source: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.source = source
        self.details = details or {}


class DimensionMismatchError(PipelineError):
    """Raised when a vector does not have the dimensionality its model requires.

    Attributes:
        expected: Dimensionality required by the store or model
        actual: Dimensionality of the offending vector
    """

    def __init__(self, message: str, expected: Optional[int] = None, actual: Optional[int] = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class EncryptionError(PipelineError):
    """Raised when encrypting or decrypting a payload fails.

    A failed encryption is fatal for that write: the plaintext vector is never
    stored without its ciphertext.
    """
    pass


class ExternalCapabilityError(PipelineError):
    """Raised when an external call (embedding, generation, storage) fails or times out.

    Attributes:
        capability: Name of the capability that failed ("embedding", "generation", "storage")
        stage: Pipeline stage in which the call was made
        timed_out: True when the failure was a timeout
    """

    def __init__(
        self,
        message: str,
        capability: Optional[str] = None,
        stage: Optional[str] = None,
        timed_out: bool = False
    ):
        super().__init__(message)
        self.capability = capability
        self.stage = stage
        self.timed_out = timed_out


class EmbeddingGenerationError(ExternalCapabilityError):
    """Raised when the embedding model call fails or returns an unusable vector."""

    def __init__(self, message: str, stage: Optional[str] = None, timed_out: bool = False):
        super().__init__(message, capability="embedding", stage=stage, timed_out=timed_out)


class GenerationError(ExternalCapabilityError):
    """Raised when the text generation model call fails."""

    def __init__(self, message: str, stage: Optional[str] = None, timed_out: bool = False):
        super().__init__(message, capability="generation", stage=stage, timed_out=timed_out)


class StorageError(ExternalCapabilityError):
    """Raised when a persistence operation fails.

    Attributes:
        operation: Storage operation that failed (store, search, get, ...)
        details: Additional context (never contains PHI)
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, capability="storage", stage=operation)
        self.operation = operation
        self.details = details or {}


class NotFoundError(PipelineError):
    """Raised internally on a lookup miss; API boundaries translate it to None."""
    pass


class SourceNotFoundError(PipelineError):
    """Raised when an ingestion source file cannot be found or read."""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class UnsupportedSourceError(PipelineError):
    """Raised when an ingestion source is not in a supported format."""

    def __init__(self, message: str, source: Optional[str] = None, adapter: Optional[str] = None):
        super().__init__(message)
        self.source = source
        self.adapter = adapter


# ============================================================================
# External Capability Ports
# ============================================================================

class EmbeddingPort(ABC):
    """Abstract contract for an external text -> vector embedding model.

    Implementations may fail (network, quota, malformed response); failures
    must be raised as EmbeddingGenerationError.
    """

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Identifier of the embedding model."""
        pass

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Fixed dimensionality of every vector this model produces."""
        pass

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Map text to a vector of exactly ``dimensions`` floats."""
        pass


class GenerationPort(ABC):
    """Abstract contract for an external text generation model."""

    @abstractmethod
    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int
    ) -> str:
        """Generate a completion.

        Raises:
            GenerationError: If the model call fails
        """
        pass


class VectorStorePort(ABC):
    """Abstract contract for the encrypted, owner-scoped embedding store.

    Key Principles:
        - Every write encrypts the vector with a fresh nonce before persisting
        - The plaintext vector is kept alongside for similarity search only
        - Every read/write is filtered by owner_id; another owner's rows are
          reported as not-found
    """

    @abstractmethod
    def store(self, owner_id: str, embedding: 'EmbeddingVector') -> Result['StoredEmbedding']:
        """Encrypt and persist a single embedding.

        Returns:
            Result[StoredEmbedding]: Stored embedding or failure
                (DimensionMismatchError, EncryptionError, StorageError)
        """
        pass

    def store_batch(self, owner_id: str, embeddings: Sequence['EmbeddingVector']) -> 'BatchResult':
        """Persist several embeddings, collecting per-item failures.

        Note:
            Default implementation calls store() per item. One failing item
            never aborts the rest of the batch.
        """
        from clinical_rag.domain.models import BatchResult, ItemError

        batch = BatchResult()
        for embedding in embeddings:
            result = self.store(owner_id, embedding)
            if result.is_success():
                batch.succeeded.append(result.value)
            else:
                batch.errors.append(ItemError(
                    item_id=embedding.id,
                    error=result.error or "Unknown error",
                    error_type=result.error_type or "UnknownError",
                ))
        return batch

    @abstractmethod
    def get(self, owner_id: str, embedding_id: str) -> Optional['StoredEmbedding']:
        """Fetch one embedding owned by owner_id, or None."""
        pass

    @abstractmethod
    def delete(self, owner_id: str, embedding_id: str) -> bool:
        """Delete one embedding owned by owner_id. Returns False when absent."""
        pass

    @abstractmethod
    def list_by_owner(self, owner_id: str, limit: int = 100) -> list['StoredEmbedding']:
        """List the owner's embeddings, newest first."""
        pass

    @abstractmethod
    def search_similar(
        self,
        owner_id: str,
        query_vector: Sequence[float],
        match_count: int,
        threshold: float
    ) -> list[tuple['StoredEmbedding', float]]:
        """Owner-scoped cosine similarity predicate.

        Returns:
            At most match_count (embedding, score) pairs with score > threshold,
            sorted by descending score, ties kept in insertion order.
        """
        pass

    def close(self) -> None:
        """Release resources (optional)."""
        return None


class RecordStorePort(ABC):
    """Abstract contract for persisting anonymized source records."""

    @abstractmethod
    def save_record(self, owner_id: str, record: 'AnonymizedRecord') -> Result['AnonymizedRecord']:
        """Persist a new version of an anonymized record.

        Returns:
            Result[AnonymizedRecord]: The record as stored (with its assigned version)
        """
        pass

    @abstractmethod
    def get_record(self, owner_id: str, source_id: str) -> Optional['AnonymizedRecord']:
        """Fetch the latest version of a record owned by owner_id, or None."""
        pass

    def require_record(self, owner_id: str, source_id: str) -> 'AnonymizedRecord':
        """Fetch the latest version of a record that must exist.

        Raises:
            NotFoundError: If owner_id has no record with this source_id
        """
        record = self.get_record(owner_id, source_id)
        if record is None:
            raise NotFoundError(f"Record {source_id} not found for owner {owner_id}")
        return record


class AuditSinkPort(ABC):
    """Append-only audit sink. Must never reject a well-formed event."""

    @abstractmethod
    def emit(self, event: 'AuditRecord') -> None:
        pass


class IngestionPort(ABC):
    """Abstract contract for clinical record sources.

    Adapters yield one Result per source entry: a ClinicalRecord on success or
    the reason the entry was rejected. A single bad entry never stops the stream.
    """

    @abstractmethod
    def ingest(self, source: str) -> Iterator[Result['ClinicalRecord']]:
        """Read a source and yield Result objects containing ClinicalRecord.

        Raises:
            SourceNotFoundError: If the source doesn't exist or cannot be read
            UnsupportedSourceError: If the source format is invalid
        """
        pass

    @abstractmethod
    def can_ingest(self, source: str) -> bool:
        """Check if this adapter can handle the given source."""
        pass

    def get_source_info(self, source: str) -> Optional[dict]:
        """Get metadata about the source (optional, adapter-specific)."""
        return None
