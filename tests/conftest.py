"""Shared fixtures for the test suite."""

import pytest

from clinical_rag.domain.services import (
    ClinicalExtractor,
    EmbeddingGenerator,
    IngestionService,
    PHIDetector,
    RetrievalOrchestrator,
    SimilaritySearchEngine,
)
from clinical_rag.infrastructure.encryption import EncryptionService
from tests.fakes import (
    FakeEmbeddingPort,
    FakeGenerationPort,
    InMemoryVectorStore,
    RecordingAuditSink,
)

DIMENSIONS = 16


@pytest.fixture
def detector():
    return PHIDetector()


@pytest.fixture
def embedding_port():
    return FakeEmbeddingPort(dimensions=DIMENSIONS)


@pytest.fixture
def generation_port():
    return FakeGenerationPort()


@pytest.fixture
def memory_store():
    return InMemoryVectorStore(dimensions=DIMENSIONS)


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def encryption_service():
    return EncryptionService(key=EncryptionService.generate_key(), key_id="test-key")


@pytest.fixture
def embedding_generator(embedding_port, detector):
    return EmbeddingGenerator(embedding_port, detector=detector)


@pytest.fixture
def ingestion_service(embedding_generator, memory_store, audit_sink, detector):
    return IngestionService(
        extractor=ClinicalExtractor(detector),
        embedding_generator=embedding_generator,
        vector_store=memory_store,
        record_store=memory_store,
        audit_sink=audit_sink,
    )


@pytest.fixture
def orchestrator(embedding_generator, memory_store, generation_port, audit_sink, detector):
    return RetrievalOrchestrator(
        embedding_generator=embedding_generator,
        search_engine=SimilaritySearchEngine(memory_store, dimensions=DIMENSIONS),
        record_store=memory_store,
        generation_port=generation_port,
        audit_sink=audit_sink,
        detector=detector,
        min_threshold=0.0,
    )


@pytest.fixture
def condition_resource():
    return {
        "resourceType": "Condition",
        "id": "cond-1",
        "code": {
            "text": "Type 2 diabetes mellitus",
            "coding": [{"system": "http://snomed.info/sct", "code": "44054006", "display": "Diabetes"}],
        },
        "onsetDateTime": "2019-04-01",
        "note": [{"text": "Patient: John Smith, DOB: 01/02/1980, reports elevated glucose"}],
    }


@pytest.fixture
def medication_resource():
    return {
        "resourceType": "MedicationStatement",
        "id": "med-1",
        "medicationCodeableConcept": {"coding": [{"display": "Metformin 500 MG"}]},
        "dosage": [{
            "doseAndRate": [{"doseQuantity": {"value": 500, "unit": "mg"}}],
            "timing": {"repeat": {"frequency": 2}},
        }],
    }


@pytest.fixture
def observation_resource():
    return {
        "resourceType": "Observation",
        "id": "obs-1",
        "code": {"coding": [{"display": "Hemoglobin A1c"}]},
        "valueQuantity": {"value": 7.2, "unit": "%"},
    }
