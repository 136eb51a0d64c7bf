"""Clinical Text and Fact Extraction Service.

This module turns structured FHIR-like resources into a human-readable clinical
summary and a set of structured facts, then anonymizes both into an
AnonymizedRecord ready for embedding.

Security Impact:
    - Extracted text is always passed through the PHIDetector before it leaves
      this service; no extracted text reaches the embedding stage unredacted
    - The anonymized output is verified clean with the detector's own rules
    - The content hash is a SHA-256 fingerprint of the original record used for
      audit correlation, never for security decisions

Architecture:
    - Pure domain service with zero infrastructure dependencies
    - Projection rules are a closed mapping keyed by ResourceType; unknown
      resource types degrade to a bounded serialized summary instead of raising
"""

import logging
from typing import Any, Callable, Optional

from clinical_rag.domain.enums import PHIKind, ResourceType
from clinical_rag.domain.models import AnonymizedRecord, ClinicalFacts, ClinicalRecord
from clinical_rag.domain.services.phi_detector import DEFAULT_DETECTOR, PHIDetector
from clinical_rag.domain.utils import canonical_json, content_fingerprint

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_LENGTH = 500


def _first(items: Any) -> Any:
    if isinstance(items, list) and items:
        return items[0]
    return None


def _get(data: Any, *path: Any) -> Any:
    """Walk nested dicts/lists, returning None on any missing step."""
    current = data
    for step in path:
        if isinstance(step, int):
            current = current[step] if isinstance(current, list) and len(current) > step else None
        else:
            current = current.get(step) if isinstance(current, dict) else None
        if current is None:
            return None
    return current


def _concept_label(concept: Any) -> Optional[str]:
    """``text`` of a CodeableConcept, else its first coding's display."""
    label = _get(concept, "text") or _get(concept, "coding", 0, "display")
    return str(label) if label else None


def _quantity(quantity: Any) -> Optional[str]:
    if not isinstance(quantity, dict) or quantity.get("value") is None:
        return None
    unit = quantity.get("unit")
    return f"{quantity['value']} {unit}" if unit else str(quantity["value"])


def _medication_name(resource: dict) -> str:
    return (
        _get(resource, "medicationCodeableConcept", "coding", 0, "display")
        or _get(resource, "medicationCodeableConcept", "text")
        or _get(resource, "medicationReference", "reference")
        or "Unknown medication"
    )


def _observation_value(resource: dict) -> Optional[str]:
    if resource.get("valueQuantity"):
        return _quantity(resource["valueQuantity"])
    if resource.get("valueCodeableConcept"):
        return _concept_label(resource["valueCodeableConcept"]) or "Unknown"
    if resource.get("valueString"):
        return str(resource["valueString"])
    return None


# ============================================================================
# Text projections
# ============================================================================

def _condition_text(resource: dict) -> str:
    text = f"Condition: {_concept_label(resource.get('code')) or 'Unknown'}"
    if resource.get("onsetDateTime"):
        text += f" (Onset: {resource['onsetDateTime']})"
    return text


def _medication_text(resource: dict) -> str:
    text = f"Medication: {_medication_name(resource)}"
    dose = _quantity(_get(resource, "dosage", 0, "doseAndRate", 0, "doseQuantity"))
    if dose:
        text += f" ({dose})"
    frequency = _get(resource, "dosage", 0, "timing", "repeat", "frequency")
    if frequency:
        text += f" ({frequency}x daily)"
    return text


def _observation_text(resource: dict) -> str:
    text = f"Observation: {_concept_label(resource.get('code')) or 'Unknown'}"
    value = _observation_value(resource)
    if value:
        text += f" = {value}"
    return text


def _diagnostic_report_text(resource: dict) -> str:
    text = f"Diagnostic Report: {_concept_label(resource.get('code')) or 'Unknown'}"
    if resource.get("conclusion"):
        text += f" - {resource['conclusion']}"
    return text


# ============================================================================
# Fact projections
# ============================================================================

def _condition_facts(resource: dict) -> ClinicalFacts:
    return ClinicalFacts(conditions=[_concept_label(resource.get("code")) or "Unknown condition"])


def _medication_facts(resource: dict) -> ClinicalFacts:
    return ClinicalFacts(medications=[_medication_name(resource)])


def _observation_facts(resource: dict) -> ClinicalFacts:
    name = _concept_label(resource.get("code")) or "Unknown observation"
    value = _observation_value(resource) or "Unknown"
    return ClinicalFacts(observations=[f"{name}: {value}"])


def _diagnostic_report_facts(resource: dict) -> ClinicalFacts:
    conclusion = resource.get("conclusion")
    return ClinicalFacts(
        lab_results=[_concept_label(resource.get("code")) or "Unknown report"],
        notes=str(conclusion) if conclusion else None,
    )


TEXT_PROJECTIONS: dict[ResourceType, Callable[[dict], str]] = {
    ResourceType.CONDITION: _condition_text,
    ResourceType.MEDICATION_STATEMENT: _medication_text,
    ResourceType.OBSERVATION: _observation_text,
    ResourceType.DIAGNOSTIC_REPORT: _diagnostic_report_text,
}

FACT_PROJECTIONS: dict[ResourceType, Callable[[dict], ClinicalFacts]] = {
    ResourceType.CONDITION: _condition_facts,
    ResourceType.MEDICATION_STATEMENT: _medication_facts,
    ResourceType.OBSERVATION: _observation_facts,
    ResourceType.DIAGNOSTIC_REPORT: _diagnostic_report_facts,
}


class ClinicalExtractor:
    """Projects clinical resources to text and facts, then anonymizes them.

    Parameters:
        detector: PHI detector used for redaction and verification
        fallback_length: Max characters of serialized JSON used for unknown types
    """

    def __init__(self, detector: Optional[PHIDetector] = None, fallback_length: int = DEFAULT_FALLBACK_LENGTH):
        self.detector = detector or DEFAULT_DETECTOR
        self.fallback_length = fallback_length

    def extract_text(self, resource: dict, resource_type: Optional[str] = None) -> str:
        """Human-readable summary of a resource. Never raises for unknown types."""
        tag = ResourceType.from_tag(resource_type or resource.get("resourceType"))
        projection = TEXT_PROJECTIONS.get(tag)
        if projection is None:
            return canonical_json(resource)[:self.fallback_length]
        return projection(resource)

    def extract_facts(self, resource: dict, resource_type: Optional[str] = None) -> ClinicalFacts:
        tag = ResourceType.from_tag(resource_type or resource.get("resourceType"))
        projection = FACT_PROJECTIONS.get(tag)
        if projection is None:
            return ClinicalFacts()
        return projection(resource)

    def anonymize(self, record: ClinicalRecord, version: int = 1) -> AnonymizedRecord:
        """Extract, redact and verify a clinical record.

        The redacted text is built from ``Diagnosis:``, ``Medications:`` and
        ``Clinical Notes:`` sections; every fact string is redacted as well.

        Parameters:
            record: Validated clinical record (may contain PHI)
            version: Version number to assign to the anonymized record

        Returns:
            AnonymizedRecord: Redacted record with content fingerprint

        Raises:
            ValidationError: If the redacted output still matches a PHI rule
        """
        resource = record.resource
        clinical_text = self.extract_text(resource, record.resource_type)
        facts = self.extract_facts(resource, record.resource_type)

        kinds: set[PHIKind] = set()

        def scrub(value: Optional[str]) -> Optional[str]:
            if not value:
                return value
            redacted, matches = self.detector.redact(value)
            kinds.update(match.kind for match in matches)
            return redacted

        redacted_facts = ClinicalFacts(
            conditions=[scrub(c) for c in facts.conditions],
            medications=[scrub(m) for m in facts.medications],
            observations=[scrub(o) for o in facts.observations],
            lab_results=[scrub(r) for r in facts.lab_results],
            notes=scrub(" ".join(n for n in (facts.notes, record.notes) if n) or None),
        )

        notes_text = " ".join(t for t in (clinical_text, record.notes) if t)
        sections = []
        if redacted_facts.conditions:
            sections.append(f"Diagnosis: {', '.join(redacted_facts.conditions)}")
        if redacted_facts.medications:
            sections.append(f"Medications: {', '.join(redacted_facts.medications)}")
        if notes_text:
            sections.append(f"Clinical Notes: {scrub(notes_text)}")
        redacted_text = "\n".join(sections).strip()

        self.detector.verify_clean(redacted_text, source=record.record_id)

        if kinds:
            logger.info(
                f"Masked PHI in record {record.record_id}: {sorted(k.value for k in kinds)}"
            )

        return AnonymizedRecord(
            source_id=record.record_id,
            resource_type=record.resource_type,
            redacted_text=redacted_text,
            extracted_facts=redacted_facts,
            content_hash=content_fingerprint(resource or record.model_dump(mode="json")),
            phi_detected=bool(kinds),
            redacted_kinds=frozenset(kinds),
            version=version,
        )
