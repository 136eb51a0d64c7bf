"""Unit tests for RetrievalOrchestrator."""

import pytest

from clinical_rag.domain.enums import AuditEventKind, AuditStatus, PipelineStage
from clinical_rag.domain.models import ClinicalResponse, EmbeddingVector, QueryOutcome, RetrievalContext
from clinical_rag.domain.services import (
    EmbeddingGenerator,
    RetrievalOrchestrator,
    SimilaritySearchEngine,
    format_response_for_display,
)
from clinical_rag.domain.services.response_validator import ISSUE_LOW_CONFIDENCE, ISSUE_PHI
from clinical_rag.domain.services.retrieval_orchestrator import (
    FALLBACK_TEXT,
    NO_CONTEXT_TEXT,
    USER_PROMPT,
)
from tests.fakes import (
    FakeEmbeddingPort,
    FakeGenerationPort,
    InMemoryVectorStore,
    RecordingAuditSink,
)

HAPPY_TRAIL = [
    PipelineStage.RECEIVED,
    PipelineStage.PHI_CHECKED,
    PipelineStage.EMBEDDED,
    PipelineStage.SEARCHED,
    PipelineStage.CONTEXT_ASSEMBLED,
    PipelineStage.GENERATED,
    PipelineStage.VALIDATED,
    PipelineStage.DONE,
]


def build_orchestrator(store=None, embedding=None, generation=None, audit=None, **kwargs):
    store = store or InMemoryVectorStore()
    embedding = embedding or FakeEmbeddingPort()
    return RetrievalOrchestrator(
        embedding_generator=EmbeddingGenerator(embedding),
        search_engine=SimilaritySearchEngine(store, dimensions=embedding.dimensions),
        record_store=store,
        generation_port=generation or FakeGenerationPort(),
        audit_sink=audit,
        min_threshold=kwargs.pop("min_threshold", 0.0),
        **kwargs,
    )


class TestHappyPath:
    """Queries that complete every stage."""

    def test_empty_store_yields_zero_confidence_with_disclaimer(self, orchestrator, generation_port, audit_sink):
        outcome = orchestrator.process_query("owner-1", "What treats diabetes?")

        assert outcome.failed is False
        assert outcome.stage_trail == HAPPY_TRAIL
        assert outcome.response.context.hits == ()
        assert outcome.response.confidence == 0.0
        assert outcome.response.disclaimer
        assert ISSUE_LOW_CONFIDENCE in outcome.validation.issues
        assert NO_CONTEXT_TEXT in generation_port.calls[0]["system_prompt"]
        assert generation_port.calls[0]["user_prompt"] == USER_PROMPT
        assert audit_sink.kinds() == [AuditEventKind.QUERY_PROCESSED]
        assert audit_sink.events[0].status == AuditStatus.SUCCESS

    def test_context_from_ingested_records(
        self, orchestrator, ingestion_service, generation_port, condition_resource, medication_resource
    ):
        ingestion_service.ingest("owner-1", condition_resource)
        ingestion_service.ingest("owner-1", medication_resource)

        outcome = orchestrator.process_query("owner-1", "diabetes glucose")

        hits = outcome.response.context.hits
        assert "cond-1" in [hit.source_id for hit in hits]
        scores = [hit.similarity_score for hit in hits]
        assert scores == sorted(scores, reverse=True)
        assert outcome.response.confidence == pytest.approx(sum(scores) / len(scores))
        assert "Record 1 (" in generation_port.calls[0]["system_prompt"]
        assert "John Smith" not in generation_port.calls[0]["system_prompt"]

    def test_search_is_scoped_to_owner(self, orchestrator, ingestion_service, condition_resource):
        ingestion_service.ingest("owner-1", condition_resource)

        outcome = orchestrator.process_query("owner-2", "diabetes glucose")

        assert outcome.response.context.hits == ()

    def test_generation_parameters_are_forwarded(self):
        generation = FakeGenerationPort()
        orchestrator = build_orchestrator(generation=generation, temperature=0.2, max_tokens=64)

        orchestrator.process_query("owner", "asthma")

        assert generation.calls[0]["temperature"] == 0.2
        assert generation.calls[0]["max_tokens"] == 64

    def test_missing_source_record_is_skipped(self):
        store = InMemoryVectorStore()
        store.store("owner", EmbeddingVector(
            owner_record_id="orphan",
            vector=[1.0] * 16,
            model="fake-embedding-model",
        ))
        orchestrator = build_orchestrator(
            store=store,
            embedding=FakeEmbeddingPort(vector_for=lambda text: [1.0] * 16),
        )

        outcome = orchestrator.process_query("owner", "anything")

        assert outcome.failed is False
        assert outcome.response.context.hits == ()


class TestPHIInQuery:
    """Queries carrying PHI continue on redacted text."""

    def test_query_phi_is_redacted_and_audited(self, orchestrator, embedding_port, generation_port, audit_sink):
        outcome = orchestrator.process_query("owner-1", "Patient: John Smith has diabetes, what next?")

        assert outcome.phi_in_query is True
        assert outcome.failed is False
        assert "John Smith" not in embedding_port.calls[-1]
        assert "[PATIENTNAME_MASKED]" in embedding_port.calls[-1]
        assert "John Smith" not in generation_port.calls[0]["system_prompt"]
        assert outcome.response.context.query == "Patient: [PATIENTNAME_MASKED] has diabetes, what next?"

        phi_event = audit_sink.events[0]
        assert phi_event.event_kind == AuditEventKind.PHI_DETECTED_IN_QUERY
        assert phi_event.details == {"phi_kinds": ["patientName"], "phi_count": 1}

    def test_phi_in_generated_text_is_redacted(self):
        generation = FakeGenerationPort(text="Ask Patient: Jane Doe to consult her physician.")
        outcome = build_orchestrator(generation=generation).process_query("owner", "asthma")

        assert outcome.failed is False
        assert ISSUE_PHI in outcome.validation.issues
        assert "Jane Doe" not in outcome.response.generated_text


class TestFailures:
    """Stage failures degrade to the fallback response."""

    def assert_fallback(self, outcome: QueryOutcome, stage: PipelineStage):
        assert outcome.failed is True
        assert outcome.failed_stage == stage
        assert outcome.stage_trail[-1] == PipelineStage.FAILED
        assert stage not in outcome.stage_trail
        assert outcome.response.generated_text == FALLBACK_TEXT
        assert outcome.response.confidence == 0.0
        assert outcome.response.disclaimer
        assert outcome.validation.is_valid is False
        assert outcome.validation.issues[0].startswith(f"Pipeline failed at stage {stage.value}")

    def test_generation_failure(self):
        audit = RecordingAuditSink()
        outcome = build_orchestrator(generation=FakeGenerationPort(fail=True), audit=audit).process_query(
            "owner", "asthma"
        )

        self.assert_fallback(outcome, PipelineStage.GENERATED)
        assert audit.kinds() == [AuditEventKind.GENERATION_FAILURE]
        assert audit.events[0].status == AuditStatus.FAILURE
        assert audit.events[0].details["error_type"] == "GenerationError"

    def test_generation_timeout(self):
        audit = RecordingAuditSink()
        orchestrator = build_orchestrator(
            generation=FakeGenerationPort(delay=0.5),
            audit=audit,
            generation_timeout=0.05,
        )

        outcome = orchestrator.process_query("owner", "asthma")

        self.assert_fallback(outcome, PipelineStage.GENERATED)
        assert audit.events[0].details["timed_out"] is True

    def test_empty_generation_is_a_failure(self):
        outcome = build_orchestrator(generation=FakeGenerationPort(text="   ")).process_query("owner", "asthma")
        self.assert_fallback(outcome, PipelineStage.GENERATED)

    def test_embedding_failure(self):
        audit = RecordingAuditSink()
        outcome = build_orchestrator(embedding=FakeEmbeddingPort(fail=True), audit=audit).process_query(
            "owner", "asthma"
        )

        self.assert_fallback(outcome, PipelineStage.EMBEDDED)
        assert audit.kinds() == [AuditEventKind.QUERY_PROCESSED]
        assert audit.events[0].status == AuditStatus.FAILURE

    def test_search_failure(self):
        outcome = build_orchestrator(store=InMemoryVectorStore(fail_search=True)).process_query(
            "owner", "asthma"
        )
        self.assert_fallback(outcome, PipelineStage.SEARCHED)

    def test_failing_audit_sink_does_not_break_queries(self):
        class BrokenSink:
            def emit(self, event):
                raise RuntimeError("sink offline")

        outcome = build_orchestrator(audit=BrokenSink()).process_query("owner", "asthma")

        assert outcome.failed is False


class TestFormatResponseForDisplay:
    """Test suite for format_response_for_display."""

    def test_renders_sections(self, orchestrator, ingestion_service, condition_resource):
        ingestion_service.ingest("owner-1", condition_resource)
        outcome = orchestrator.process_query("owner-1", "diabetes glucose")

        text = format_response_for_display(outcome)

        assert text.startswith("## Clinical Response")
        assert "### Supporting Evidence" in text
        assert "### Important Disclaimer" in text
        assert outcome.response.disclaimer in text

    def test_bare_response_without_hits(self):
        response = ClinicalResponse(
            generated_text="Consult your doctor.",
            context=RetrievalContext(query="q"),
            confidence=0.0,
            disclaimer="Not medical advice.",
        )

        text = format_response_for_display(response)

        assert "### Supporting Evidence" not in text
        assert "### Validation Warnings" not in text
        assert text.endswith("Not medical advice.")

    def test_validation_warnings_listed(self):
        outcome = build_orchestrator(generation=FakeGenerationPort(fail=True)).process_query("owner", "asthma")
        text = format_response_for_display(outcome)
        assert "### Validation Warnings" in text
        assert "- Pipeline failed at stage Generated: GenerationError" in text
