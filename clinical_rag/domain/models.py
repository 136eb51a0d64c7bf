"""Domain Models for the PHI-safe Clinical Retrieval Pipeline.

This module defines the canonical data models that flow between pipeline stages:
raw clinical records, PHI matches, anonymized records, embeddings, retrieval
context and the final clinical response.

Security Impact:
    - PHIMatch never exposes its matched value through repr or audit serialization
    - AnonymizedRecord only carries redacted text and a content fingerprint
    - AuditRecord details are restricted to scalars so no nested payload can
      smuggle raw record content into the audit trail

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Entities created once per ingested resource are frozen
    - Type safety enforced at runtime via Pydantic V2
"""

import math
import uuid
from datetime import datetime, timezone
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from clinical_rag.domain.enums import (
    DEFAULT_AUDIT_SEVERITY,
    AuditEventKind,
    AuditSeverity,
    AuditStatus,
    ClinicalContext,
    PHIKind,
    PipelineStage,
)
from clinical_rag.domain.ports import ValidationError

T = TypeVar('T')

MAX_SOURCE_TEXT_PREFIX = 500


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_embedding_id() -> str:
    return f"emb_{uuid.uuid4().hex}"


class ClinicalRecord(BaseModel):
    """A clinical record as received from a source, before anonymization.

    Security Impact: May contain raw PHI in both the structured resource and
    the free-text notes. Lives only for the duration of one processing call and
    is never persisted; only its AnonymizedRecord projection is stored.

    Parameters:
        record_id: Source identifier of the resource (required, non-blank)
        resource_type: Resource type tag such as "Condition" (required, non-blank)
        resource: Structured FHIR-like payload
        notes: Optional free clinical text
    """

    record_id: str = Field(..., min_length=1, description="Source record identifier")
    resource_type: str = Field(..., min_length=1, description="Resource type tag")
    resource: dict[str, Any] = Field(default_factory=dict, description="Structured payload")
    notes: Optional[str] = Field(None, description="Free clinical text (may contain PHI)")

    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
    )

    @classmethod
    def from_resource(cls, resource: Any) -> "ClinicalRecord":
        """Build a record from a raw FHIR resource dictionary.

        Free-text annotations (``note[].text``) are collected into ``notes``.

        Parameters:
            resource: Raw resource with at least ``id`` and ``resourceType``

        Returns:
            ClinicalRecord: Validated record

        Raises:
            ValidationError: If the payload is not an object or a required field
                is missing or blank
        """
        if not isinstance(resource, dict):
            raise ValidationError(
                "Resource must be a JSON object",
                details={"received_type": type(resource).__name__}
            )

        record_id = resource.get("id")
        resource_type = resource.get("resourceType")
        missing = [
            name for name, value in (("id", record_id), ("resourceType", resource_type))
            if not isinstance(value, str) or not value.strip()
        ]
        if missing:
            raise ValidationError(
                f"Resource is missing required field(s): {', '.join(missing)}",
                source=record_id if isinstance(record_id, str) else None,
                details={"missing_fields": missing}
            )

        notes = None
        raw_notes = resource.get("note")
        if isinstance(raw_notes, list):
            texts = [n.get("text") for n in raw_notes if isinstance(n, dict) and n.get("text")]
            notes = " ".join(str(t) for t in texts) or None

        return cls(
            record_id=record_id,
            resource_type=resource_type,
            resource=resource,
            notes=notes,
        )


class PHIMatch(BaseModel):
    """A single span of protected health information found by the detector.

    Security Impact: ``matched_text`` is the raw PHI value. It is hidden from
    repr and never included in ``to_audit_dict``; once outside the detector only
    the kind and offsets are retained.
    """

    kind: PHIKind
    matched_text: str = Field(..., min_length=1, repr=False)
    offset: int = Field(..., ge=0, description="Character offset of the span start")
    end: int = Field(..., gt=0, description="Character offset one past the span end")

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def validate_span(self) -> "PHIMatch":
        if self.end <= self.offset:
            raise ValueError("PHI match span must be non-empty")
        return self

    @property
    def length(self) -> int:
        return self.end - self.offset

    def to_audit_dict(self) -> dict:
        """Audit-safe projection: kind and position only."""
        return {"kind": self.kind.value, "offset": self.offset, "length": self.length}


class ClinicalFacts(BaseModel):
    """Structured clinical facts extracted from a record."""

    conditions: list[str] = Field(default_factory=list)
    medications: list[str] = Field(default_factory=list)
    observations: list[str] = Field(default_factory=list)
    lab_results: list[str] = Field(default_factory=list)
    notes: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    def is_empty(self) -> bool:
        return not (
            self.conditions or self.medications or self.observations
            or self.lab_results or self.notes
        )


class AnonymizedRecord(BaseModel):
    """A clinical record after extraction and redaction.

    Security Impact: ``redacted_text`` and every fact string have passed through
    the PHI detector, and the detector has verified the output is clean.
    ``content_hash`` is a SHA-256 fingerprint of the original content used for
    deduplication and audit correlation only.

    Parameters:
        source_id: Identifier of the originating ClinicalRecord
        resource_type: Resource type tag of the original
        redacted_text: Embedding-ready text with PHI masked
        extracted_facts: Redacted structured facts
        content_hash: SHA-256 hex digest of the canonical original record
        phi_detected: True if any PHI was masked
        redacted_kinds: PHI kinds that were masked
        version: Monotonic version, incremented on re-ingestion
        processed_at: When the record was anonymized
    """

    source_id: str = Field(..., min_length=1)
    resource_type: str
    redacted_text: str
    extracted_facts: ClinicalFacts = Field(default_factory=ClinicalFacts)
    content_hash: str = Field(..., pattern=r"^[0-9a-f]{64}$")
    phi_detected: bool = False
    redacted_kinds: frozenset[PHIKind] = Field(default_factory=frozenset)
    version: int = Field(1, ge=1)
    processed_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)


class EmbeddingVector(BaseModel):
    """A fixed-dimensionality embedding of anonymized clinical text.

    Parameters:
        id: Embedding identifier (``emb_<hex>``)
        owner_record_id: Source record the embedding was generated from
        vector: Embedding values (finite floats, non-empty)
        source_text_prefix: First characters of the embedded (redacted) text
        text_length: Length of the full embedded text
        medical_terms: Dictionary terms found in the text, used for tagging only
        clinical_context: Coarse specialty tag
        model: Embedding model identifier
        generated_at: Creation timestamp
    """

    id: str = Field(default_factory=new_embedding_id)
    owner_record_id: str = Field(..., min_length=1)
    vector: list[float] = Field(..., min_length=1)
    source_text_prefix: str = Field("", max_length=MAX_SOURCE_TEXT_PREFIX)
    text_length: int = Field(0, ge=0)
    medical_terms: tuple[str, ...] = ()
    clinical_context: ClinicalContext = ClinicalContext.GENERAL
    model: str = Field(..., min_length=1)
    generated_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)

    @field_validator("vector")
    @classmethod
    def validate_finite(cls, v: list[float]) -> list[float]:
        if any(not math.isfinite(x) for x in v):
            raise ValueError("Embedding vector must contain only finite values")
        return v

    @property
    def dimensions(self) -> int:
        return len(self.vector)


class StoredEmbedding(EmbeddingVector):
    """An embedding as persisted: plaintext vector plus its encrypted form.

    Security Impact: The plaintext ``vector`` never leaves the retrieval
    boundary; ``encrypted_vector`` is what crosses storage and backup boundaries.
    """

    owner_id: str = Field(..., min_length=1)
    encrypted_vector: bytes = Field(..., repr=False)
    key_id: str = "default"
    created_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_embedding(
        cls,
        embedding: EmbeddingVector,
        owner_id: str,
        encrypted_vector: bytes,
        key_id: str
    ) -> "StoredEmbedding":
        return cls(
            **embedding.model_dump(),
            owner_id=owner_id,
            encrypted_vector=encrypted_vector,
            key_id=key_id,
        )


class RetrievalHit(BaseModel):
    source_id: str
    resource_type: str
    similarity_score: float
    clinical_context: ClinicalContext = ClinicalContext.GENERAL
    content: str

    model_config = ConfigDict(frozen=True)


class RetrievalContext(BaseModel):
    """Query text plus hits ordered by descending similarity (stable on ties)."""

    query: str
    hits: tuple[RetrievalHit, ...] = ()
    retrieved_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)


class ClinicalResponse(BaseModel):
    """Generated answer with its supporting context and confidence.

    Parameters:
        generated_text: Text delivered to the caller (PHI-validated)
        context: Retrieval context the answer was generated from
        confidence: Mean similarity of the context hits, clamped to [0, 1]
        disclaimer: Always present, including on fallback responses
        generated_at: Creation timestamp
    """

    generated_text: str
    context: RetrievalContext
    confidence: float = Field(..., ge=0.0, le=1.0)
    disclaimer: str = Field(..., min_length=1)
    generated_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)

    @staticmethod
    def confidence_from_hits(hits) -> float:
        """Mean similarity of the hits clamped to [0, 1]; 0 when there are none."""
        scores = [hit.similarity_score for hit in hits]
        if not scores:
            return 0.0
        mean = sum(scores) / len(scores)
        return min(1.0, max(0.0, mean))


class ValidationReport(BaseModel):
    is_valid: bool = True
    issues: list[str] = Field(default_factory=list)


class QueryOutcome(BaseModel):
    """Everything the orchestrator returns for one query."""

    response: ClinicalResponse
    validation: ValidationReport = Field(default_factory=ValidationReport)
    stage_trail: list[PipelineStage] = Field(default_factory=list)
    failed_stage: Optional[PipelineStage] = None
    phi_in_query: bool = False

    @property
    def failed(self) -> bool:
        return self.failed_stage is not None


class ItemError(BaseModel):
    item_id: Optional[str] = None
    error: str
    error_type: str = "UnknownError"


class BatchResult(BaseModel, Generic[T]):
    """Per-item outcome of a batch operation: successes and captured errors."""

    succeeded: list[T] = Field(default_factory=list)
    errors: list[ItemError] = Field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.errors)


_SCALAR_TYPES = (str, int, float, bool, type(None))


class AuditRecord(BaseModel):
    """Append-only audit event.

    Security Impact: Details may hold kinds, counts and hashed identifiers only.
    Nested mappings are rejected so record payloads cannot be attached wholesale.
    """

    audit_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    event_kind: AuditEventKind
    owner_id: Optional[str] = None
    action: str
    details: dict[str, Any] = Field(default_factory=dict)
    status: AuditStatus = AuditStatus.SUCCESS
    severity: AuditSeverity = AuditSeverity.INFO
    timestamp: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="before")
    @classmethod
    def default_severity(cls, data: Any) -> Any:
        """Events without an explicit severity take the default for their kind."""
        if not isinstance(data, dict) or data.get("severity") is not None:
            return data
        try:
            kind = AuditEventKind(data.get("event_kind"))
        except ValueError:
            return data
        return {**data, "severity": DEFAULT_AUDIT_SEVERITY[kind]}

    @field_validator("details")
    @classmethod
    def validate_details(cls, v: dict[str, Any]) -> dict[str, Any]:
        for key, value in v.items():
            if isinstance(value, _SCALAR_TYPES):
                continue
            if isinstance(value, (list, tuple)) and all(isinstance(item, _SCALAR_TYPES) for item in value):
                continue
            raise ValueError(f"Audit detail '{key}' must be a scalar or a list of scalars")
        return v
