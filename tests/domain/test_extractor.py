"""Unit tests for ClinicalExtractor and ClinicalRecord construction."""

import hashlib
import json
from unittest.mock import patch

import pytest

from clinical_rag.domain.enums import PHIKind
from clinical_rag.domain.models import ClinicalFacts, ClinicalRecord
from clinical_rag.domain.ports import ValidationError
from clinical_rag.domain.services.extractor import ClinicalExtractor


@pytest.fixture
def extractor(detector):
    return ClinicalExtractor(detector)


class TestClinicalRecordFromResource:
    """Test suite for ClinicalRecord.from_resource."""

    def test_builds_record_with_notes(self, condition_resource):
        record = ClinicalRecord.from_resource(condition_resource)

        assert record.record_id == "cond-1"
        assert record.resource_type == "Condition"
        assert record.notes.startswith("Patient: John Smith")

    def test_missing_required_field(self):
        with pytest.raises(ValidationError) as exc_info:
            ClinicalRecord.from_resource({"resourceType": "Condition"})
        assert exc_info.value.details == {"missing_fields": ["id"]}

    def test_blank_fields_are_missing(self):
        with pytest.raises(ValidationError) as exc_info:
            ClinicalRecord.from_resource({"id": "  ", "resourceType": ""})
        assert exc_info.value.details == {"missing_fields": ["id", "resourceType"]}

    def test_non_object_payload(self):
        with pytest.raises(ValidationError):
            ClinicalRecord.from_resource(["not", "a", "resource"])


class TestExtractText:
    """Test suite for the per-type text projections."""

    def test_condition(self, extractor, condition_resource):
        assert extractor.extract_text(condition_resource) == (
            "Condition: Type 2 diabetes mellitus (Onset: 2019-04-01)"
        )

    def test_condition_falls_back_to_coding_display(self, extractor):
        resource = {"resourceType": "Condition", "code": {"coding": [{"display": "Asthma"}]}}
        assert extractor.extract_text(resource) == "Condition: Asthma"

    def test_condition_without_code(self, extractor):
        assert extractor.extract_text({"resourceType": "Condition"}) == "Condition: Unknown"

    def test_medication_with_dose_and_frequency(self, extractor, medication_resource):
        assert extractor.extract_text(medication_resource) == (
            "Medication: Metformin 500 MG (500 mg) (2x daily)"
        )

    def test_medication_reference(self, extractor):
        resource = {
            "resourceType": "MedicationStatement",
            "medicationReference": {"reference": "Medication/123"},
        }
        assert extractor.extract_text(resource) == "Medication: Medication/123"

    def test_observation_quantity(self, extractor, observation_resource):
        assert extractor.extract_text(observation_resource) == "Observation: Hemoglobin A1c = 7.2 %"

    def test_observation_codeable_concept_and_string(self, extractor):
        coded = {
            "resourceType": "Observation",
            "code": {"text": "Strep test"},
            "valueCodeableConcept": {"coding": [{"display": "Positive"}]},
        }
        text = {"resourceType": "Observation", "code": {"text": "Mood"}, "valueString": "stable"}

        assert extractor.extract_text(coded) == "Observation: Strep test = Positive"
        assert extractor.extract_text(text) == "Observation: Mood = stable"

    def test_diagnostic_report(self, extractor):
        resource = {
            "resourceType": "DiagnosticReport",
            "code": {"text": "Chest X-ray"},
            "conclusion": "No acute findings",
        }
        assert extractor.extract_text(resource) == "Diagnostic Report: Chest X-ray - No acute findings"

    def test_unknown_type_falls_back_to_bounded_json(self, extractor):
        resource = {"resourceType": "Procedure", "id": "p1", "text": "x" * 2000}

        text = extractor.extract_text(resource)

        assert len(text) == 500
        assert text.startswith('{"id":"p1"')

    def test_type_tag_is_case_insensitive(self, extractor):
        assert extractor.extract_text({"code": {"text": "Flu"}}, "condition") == "Condition: Flu"


class TestExtractFacts:
    """Test suite for the per-type fact projections."""

    def test_condition_facts(self, extractor, condition_resource):
        assert extractor.extract_facts(condition_resource).conditions == ["Type 2 diabetes mellitus"]

    def test_medication_facts(self, extractor, medication_resource):
        assert extractor.extract_facts(medication_resource).medications == ["Metformin 500 MG"]

    def test_observation_facts(self, extractor, observation_resource):
        assert extractor.extract_facts(observation_resource).observations == ["Hemoglobin A1c: 7.2 %"]

    def test_diagnostic_report_facts(self, extractor):
        facts = extractor.extract_facts({
            "resourceType": "DiagnosticReport",
            "code": {"text": "Lipid panel"},
            "conclusion": "LDL elevated",
        })
        assert facts.lab_results == ["Lipid panel"]
        assert facts.notes == "LDL elevated"

    def test_unknown_type_has_no_facts(self, extractor):
        assert extractor.extract_facts({"resourceType": "Encounter"}).is_empty()


class TestAnonymize:
    """Test suite for ClinicalExtractor.anonymize."""

    def test_redacts_notes_and_builds_sections(self, extractor, detector, condition_resource):
        record = ClinicalRecord.from_resource(condition_resource)

        anonymized = extractor.anonymize(record)

        assert anonymized.redacted_text == (
            "Diagnosis: Type 2 diabetes mellitus\n"
            "Clinical Notes: Condition: Type 2 diabetes mellitus (Onset: 2019-04-01) "
            "Patient: [PATIENTNAME_MASKED], DOB: [DOB_MASKED], reports elevated glucose"
        )
        assert anonymized.phi_detected is True
        assert anonymized.redacted_kinds == frozenset({PHIKind.NAME, PHIKind.DOB})
        assert anonymized.extracted_facts.notes == (
            "Patient: [PATIENTNAME_MASKED], DOB: [DOB_MASKED], reports elevated glucose"
        )
        assert detector.contains_phi(anonymized.redacted_text) is False
        assert "John Smith" not in anonymized.model_dump_json()

    def test_medication_sections(self, extractor, medication_resource):
        anonymized = extractor.anonymize(ClinicalRecord.from_resource(medication_resource))

        assert anonymized.redacted_text == (
            "Medications: Metformin 500 MG\n"
            "Clinical Notes: Medication: Metformin 500 MG (500 mg) (2x daily)"
        )
        assert anonymized.phi_detected is False
        assert anonymized.redacted_kinds == frozenset()

    def test_content_hash_is_sha256_of_canonical_resource(self, extractor, observation_resource):
        anonymized = extractor.anonymize(ClinicalRecord.from_resource(observation_resource))

        expected = hashlib.sha256(
            json.dumps(observation_resource, sort_keys=True, separators=(",", ":")).encode("utf-8")
        ).hexdigest()
        assert anonymized.content_hash == expected

    def test_hash_is_stable_across_key_order(self, extractor):
        a = ClinicalRecord.from_resource({"id": "x", "resourceType": "Condition", "code": {"text": "Flu"}})
        b = ClinicalRecord.from_resource({"code": {"text": "Flu"}, "resourceType": "Condition", "id": "x"})
        assert extractor.anonymize(a).content_hash == extractor.anonymize(b).content_hash

    def test_version_is_assigned(self, extractor, observation_resource):
        record = ClinicalRecord.from_resource(observation_resource)
        assert extractor.anonymize(record, version=3).version == 3

    def test_fact_strings_are_redacted(self, extractor):
        record = ClinicalRecord.from_resource({
            "id": "c2",
            "resourceType": "Condition",
            "code": {"text": "Follow-up call 555-123-4567"},
        })

        anonymized = extractor.anonymize(record)

        assert anonymized.extracted_facts.conditions == ["Follow-up call [PHONE_MASKED]"]
        assert PHIKind.PHONE in anonymized.redacted_kinds

    def test_verification_failure_propagates(self, extractor, observation_resource):
        record = ClinicalRecord.from_resource(observation_resource)
        with patch.object(
            extractor.detector,
            "verify_clean",
            side_effect=ValidationError("Text still contains PHI after redaction"),
        ):
            with pytest.raises(ValidationError):
                extractor.anonymize(record)

    def test_facts_model_is_empty_by_default(self):
        assert ClinicalFacts().is_empty() is True
