"""Clinical Embedding Generator.

Wraps an external embedding model (EmbeddingPort) with the clinical-specific
pieces the pipeline owns: context-enhanced input text, medical term tagging and
coarse clinical-context classification.

Security Impact:
    - Input text is expected to be redacted already; the enhanced text is checked
      again and re-redacted if any PHI rule still matches
    - Terms and context tags are metadata only and never alter the vector

Architecture:
    - Domain service; the text -> vector mapping is an injected capability
    - Context classification is an ordered priority list (first match wins),
      not a scored classifier, so tagging is deterministic and auditable
"""

import logging
import re
from typing import Iterable, NamedTuple, Optional

from pydantic import ValidationError as PydanticValidationError

from clinical_rag.domain.enums import ClinicalContext, PipelineStage
from clinical_rag.domain.models import (
    MAX_SOURCE_TEXT_PREFIX,
    BatchResult,
    ClinicalFacts,
    EmbeddingVector,
    ItemError,
)
from clinical_rag.domain.ports import (
    DimensionMismatchError,
    EmbeddingGenerationError,
    EmbeddingPort,
    ExternalCapabilityError,
)
from clinical_rag.domain.services.phi_detector import DEFAULT_DETECTOR, PHIDetector
from clinical_rag.domain.utils import run_with_timeout

logger = logging.getLogger(__name__)

MAX_MEDICAL_TERMS = 25

# Dictionary order is the reporting order of extracted terms
MEDICAL_TERMS: tuple[str, ...] = (
    # Conditions
    "diabetes", "hypertension", "heart disease", "cancer", "pneumonia", "asthma",
    "arthritis", "infection", "inflammation",
    # Medications
    "insulin", "metformin", "lisinopril", "aspirin", "antibiotics", "corticosteroids",
    # Lab values
    "glucose", "hemoglobin", "cholesterol", "creatinine", "blood pressure", "heart rate",
    # Procedures
    "surgery", "biopsy", "ultrasound", "ct scan", "mri scan", "endoscopy",
    # Clinical concepts
    "diagnosis", "prognosis", "treatment", "symptom", "adverse", "contraindication",
    "comorbidity",
    # Specialty cues
    "heart", "cardiac", "tumor", "oncology", "fever", "lung", "respiratory",
)

_TERM_PATTERNS: tuple[tuple[str, re.Pattern], ...] = tuple(
    (term, re.compile(rf"\b{re.escape(term)}\b", re.IGNORECASE)) for term in MEDICAL_TERMS
)

CONTEXT_CLUSTERS: tuple[tuple[ClinicalContext, frozenset[str]], ...] = (
    (ClinicalContext.ENDOCRINOLOGY, frozenset({"diabetes", "glucose", "insulin"})),
    (ClinicalContext.CARDIOLOGY, frozenset({"heart", "cardiac", "hypertension", "heart disease"})),
    (ClinicalContext.ONCOLOGY, frozenset({"cancer", "tumor", "oncology"})),
    (ClinicalContext.INFECTIOUS_DISEASE, frozenset({"infection", "antibiotics", "fever"})),
    (ClinicalContext.PULMONOLOGY, frozenset({"lung", "respiratory", "asthma"})),
)


class EmbeddingRequest(NamedTuple):
    text: str
    owner_record_id: str
    facts: Optional[ClinicalFacts] = None


def enhance_text(text: str, facts: Optional[ClinicalFacts] = None) -> str:
    """Append labeled fact lists in a fixed order; empty categories are omitted."""
    enhanced = text
    if facts is None:
        return enhanced
    for label, values in (
        ("Clinical conditions", facts.conditions),
        ("Current medications", facts.medications),
        ("Recent observations", facts.observations),
        ("Lab results", facts.lab_results),
    ):
        if values:
            enhanced += f" {label}: {', '.join(values)}."
    return enhanced


def extract_medical_terms(text: str, limit: Optional[int] = MAX_MEDICAL_TERMS) -> tuple[str, ...]:
    """Whole-word, case-insensitive dictionary matches in dictionary order.

    ``limit=None`` returns every match.
    """
    if not text:
        return ()
    found = [term for term, pattern in _TERM_PATTERNS if pattern.search(text)]
    return tuple(found if limit is None else found[:limit])


def classify_context(terms: Iterable[str]) -> ClinicalContext:
    term_set = set(terms)
    for context, cluster in CONTEXT_CLUSTERS:
        if term_set & cluster:
            return context
    return ClinicalContext.GENERAL


class EmbeddingGenerator:
    """Builds EmbeddingVectors from redacted clinical text.

    Parameters:
        embedding_port: External embedding model
        detector: PHI detector used as a last safety gate
        timeout: Seconds allowed per embedding call (None waits indefinitely)
        prefix_length: Characters of source text kept on the embedding
    """

    def __init__(
        self,
        embedding_port: EmbeddingPort,
        detector: Optional[PHIDetector] = None,
        timeout: Optional[float] = None,
        prefix_length: int = MAX_SOURCE_TEXT_PREFIX,
    ):
        self.embedding_port = embedding_port
        self.detector = detector or DEFAULT_DETECTOR
        self.timeout = timeout
        self.prefix_length = min(prefix_length, MAX_SOURCE_TEXT_PREFIX)

    @property
    def dimensions(self) -> int:
        return self.embedding_port.dimensions

    def embed(self, text: str, owner_record_id: str, facts: Optional[ClinicalFacts] = None) -> EmbeddingVector:
        """Generate an embedding for redacted text.

        Parameters:
            text: Redacted clinical or query text
            owner_record_id: Record (or query) identifier the embedding belongs to
            facts: Optional structured facts appended to the text

        Returns:
            EmbeddingVector: Vector plus terms, context tag and model metadata

        Raises:
            EmbeddingGenerationError: If the model call fails, times out, or
                returns a vector of unexpected dimensionality
        """
        enhanced = enhance_text(text, facts)
        if self.detector.contains_phi(enhanced):
            logger.warning(f"PHI found in embedding input for {owner_record_id}; re-redacting")
            enhanced, _ = self.detector.redact(enhanced)
            text, _ = self.detector.redact(text)

        # Classify on every match; the cap applies to the reported terms only
        all_terms = extract_medical_terms(enhanced, limit=None)
        context = classify_context(all_terms)
        terms = all_terms[:MAX_MEDICAL_TERMS]

        try:
            raw_vector = run_with_timeout(
                self.embedding_port.embed,
                enhanced,
                timeout=self.timeout,
                capability="embedding",
                stage=PipelineStage.EMBEDDED.value,
            )
        except EmbeddingGenerationError:
            raise
        except ExternalCapabilityError as e:
            raise EmbeddingGenerationError(
                f"Failed to generate embedding: {e}",
                stage=PipelineStage.EMBEDDED.value,
                timed_out=e.timed_out,
            ) from e
        except Exception as e:
            raise EmbeddingGenerationError(
                f"Failed to generate embedding: {e}",
                stage=PipelineStage.EMBEDDED.value,
            ) from e

        expected = self.embedding_port.dimensions
        if raw_vector is None or len(raw_vector) != expected:
            actual = 0 if raw_vector is None else len(raw_vector)
            mismatch = DimensionMismatchError(
                f"Embedding model returned {actual} dimensions, expected {expected}",
                expected=expected,
                actual=actual,
            )
            raise EmbeddingGenerationError(str(mismatch), stage=PipelineStage.EMBEDDED.value) from mismatch

        try:
            embedding = EmbeddingVector(
                owner_record_id=owner_record_id,
                vector=[float(x) for x in raw_vector],
                source_text_prefix=text[:self.prefix_length],
                text_length=len(text),
                medical_terms=terms,
                clinical_context=context,
                model=self.embedding_port.model_name,
            )
        except (PydanticValidationError, TypeError, ValueError) as e:
            raise EmbeddingGenerationError(
                f"Embedding model returned an unusable vector: {e}",
                stage=PipelineStage.EMBEDDED.value,
            ) from e

        logger.debug(
            f"Generated embedding {embedding.id} for {owner_record_id} "
            f"({embedding.dimensions} dims, context={context.value}, terms={len(terms)})"
        )
        return embedding

    def embed_batch(self, items: Iterable[EmbeddingRequest]) -> BatchResult[EmbeddingVector]:
        """Embed several texts; a failing item is recorded and the batch continues."""
        batch: BatchResult[EmbeddingVector] = BatchResult()
        for item in items:
            try:
                batch.succeeded.append(self.embed(item.text, item.owner_record_id, item.facts))
            except EmbeddingGenerationError as e:
                logger.warning(f"Embedding failed for {item.owner_record_id}: {e}")
                batch.errors.append(ItemError(
                    item_id=item.owner_record_id,
                    error=str(e),
                    error_type=type(e).__name__,
                ))
        return batch
