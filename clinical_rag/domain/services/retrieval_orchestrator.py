"""Retrieval Orchestrator.

Runs one clinical query through the retrieval pipeline as an explicit state
machine:

    Received -> PHIChecked -> Embedded -> Searched -> ContextAssembled
             -> Generated -> Validated -> Done

with a terminal Failed(stage) reachable from any state.

Security Impact:
    - PHI in a query is redacted before any later stage sees it; only kinds and
      counts are written to the audit sink
    - Any stage failure degrades to a fixed fallback response with a
      disclaimer and zero confidence; no unvalidated generated text is returned
    - Generated text containing PHI is redacted before delivery and flagged

Architecture:
    - Domain service orchestrating injected ports (embedding model, generation
      model, vector store, record store, audit sink)
    - Each external call runs under a per-stage timeout
"""

import logging
from typing import Optional, Sequence, Union

from clinical_rag.domain.enums import AuditEventKind, AuditStatus, PipelineStage
from clinical_rag.domain.models import (
    AuditRecord,
    ClinicalResponse,
    QueryOutcome,
    RetrievalContext,
    RetrievalHit,
    StoredEmbedding,
    ValidationReport,
)
from clinical_rag.domain.ports import (
    AuditSinkPort,
    ExternalCapabilityError,
    GenerationError,
    GenerationPort,
    NotFoundError,
    RecordStorePort,
)
from clinical_rag.domain.services.embedding_generator import EmbeddingGenerator
from clinical_rag.domain.services.phi_detector import DEFAULT_DETECTOR, PHIDetector
from clinical_rag.domain.services.response_validator import ResponseValidator
from clinical_rag.domain.services.similarity import SimilaritySearchEngine
from clinical_rag.domain.utils import run_with_timeout

logger = logging.getLogger(__name__)

QUERY_RECORD_ID = "query"

DISCLAIMER = (
    "This response is generated from anonymized clinical records and should not be used "
    "as a substitute for professional medical advice. Always consult with qualified "
    "healthcare providers for diagnosis and treatment decisions."
)

FALLBACK_DISCLAIMER = (
    "This response is generated from anonymized clinical records and should not be used "
    "as a substitute for professional medical advice."
)

FALLBACK_TEXT = (
    "I encountered an error processing your request. Please try again or consult "
    "with a healthcare professional."
)

SYSTEM_PROMPT_TEMPLATE = """You are a HIPAA-compliant medical knowledge assistant. Your role is to provide clinical information based on anonymized medical records.

IMPORTANT GUIDELINES:
1. Never include any patient identifiers or PHI in your response
2. Provide evidence-based clinical information only
3. Always include appropriate disclaimers about consulting healthcare providers
4. Be clear about the limitations of AI-generated medical information
5. Suggest consulting with qualified healthcare professionals for diagnosis and treatment decisions
6. Do not provide specific medical advice for individual patients
7. Reference the clinical context (conditions, medications, observations) when relevant

Retrieved Clinical Context:
{context}

User Query: {query}"""

USER_PROMPT = (
    "Based on the retrieved clinical context above, provide a comprehensive clinical "
    "response to the user's question. Remember to include appropriate disclaimers and "
    "emphasize the need for professional medical consultation."
)

NO_CONTEXT_TEXT = "No relevant medical records found for this query."


def build_context_string(context: RetrievalContext) -> str:
    blocks = [
        f"Record {index} ({hit.resource_type}, {hit.clinical_context.value}, "
        f"Relevance: {hit.similarity_score * 100:.1f}%):\n{hit.content}"
        for index, hit in enumerate(context.hits, start=1)
    ]
    return "\n\n".join(blocks) or NO_CONTEXT_TEXT


def format_response_for_display(outcome: Union[QueryOutcome, ClinicalResponse]) -> str:
    """Render a response as markdown for display.

    Parameters:
        outcome: QueryOutcome (validation issues are listed) or a bare response

    Returns:
        str: Markdown text
    """
    response = outcome.response if isinstance(outcome, QueryOutcome) else outcome
    sections = ["## Clinical Response\n", response.generated_text, "\n"]

    if response.context.hits:
        sections.append("### Supporting Evidence\n")
        sections.append(f"Found {len(response.context.hits)} relevant medical records")
        sections.append(f"Average relevance score: {response.confidence * 100:.1f}%\n")

    if isinstance(outcome, QueryOutcome) and outcome.validation.issues:
        sections.append("### Validation Warnings\n")
        sections.extend(f"- {issue}" for issue in outcome.validation.issues)
        sections.append("")

    sections.append("### Important Disclaimer\n")
    sections.append(response.disclaimer)
    return "\n".join(sections)


class RetrievalOrchestrator:
    """Processes clinical queries end to end.

    Parameters:
        embedding_generator: Builds the query embedding
        search_engine: Owner-scoped similarity search
        record_store: Lookup of anonymized source records for context assembly
        generation_port: External text generation model
        audit_sink: Optional append-only audit sink
        validator: Post-generation response validator
        detector: PHI detector used on the incoming query
        top_k: Maximum context records
        min_threshold: Exclusive similarity threshold for context admission
        temperature: Generation temperature
        max_tokens: Generation token limit
        generation_timeout: Seconds allowed for the generation call
        storage_timeout: Seconds allowed per record lookup
    """

    def __init__(
        self,
        embedding_generator: EmbeddingGenerator,
        search_engine: SimilaritySearchEngine,
        record_store: RecordStorePort,
        generation_port: GenerationPort,
        audit_sink: Optional[AuditSinkPort] = None,
        validator: Optional[ResponseValidator] = None,
        detector: Optional[PHIDetector] = None,
        top_k: int = 5,
        min_threshold: float = 0.3,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        generation_timeout: Optional[float] = None,
        storage_timeout: Optional[float] = None,
    ):
        self.embedding_generator = embedding_generator
        self.search_engine = search_engine
        self.record_store = record_store
        self.generation_port = generation_port
        self.audit_sink = audit_sink
        self.detector = detector or DEFAULT_DETECTOR
        self.validator = validator or ResponseValidator(detector=self.detector)
        self.top_k = top_k
        self.min_threshold = min_threshold
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.generation_timeout = generation_timeout
        self.storage_timeout = storage_timeout

    def process_query(self, owner_id: str, query: str) -> QueryOutcome:
        """Run a query through every pipeline stage.

        Never raises for pipeline failures: a failing stage produces a fallback
        response (confidence 0, disclaimer) and ``failed_stage`` on the outcome.

        Parameters:
            owner_id: Owner whose records are searched
            query: Raw query text (may contain PHI)

        Returns:
            QueryOutcome: Response, validation report and stage trail
        """
        trail: list[PipelineStage] = [PipelineStage.RECEIVED]
        stage = PipelineStage.PHI_CHECKED
        redacted_query = ""
        phi_in_query = False
        context: Optional[RetrievalContext] = None

        try:
            redacted_query, matches = self.detector.redact(query or "")
            phi_in_query = bool(matches)
            if phi_in_query:
                summary = self.detector.summarize(matches)
                logger.warning(f"PHI detected in query for owner {owner_id}: {summary}")
                self._emit(AuditRecord(
                    event_kind=AuditEventKind.PHI_DETECTED_IN_QUERY,
                    owner_id=owner_id,
                    action="query_phi_redacted",
                    details={"phi_kinds": list(summary), "phi_count": len(matches)},
                ))
            trail.append(stage)

            stage = PipelineStage.EMBEDDED
            query_embedding = self.embedding_generator.embed(redacted_query, QUERY_RECORD_ID)
            trail.append(stage)

            stage = PipelineStage.SEARCHED
            results = self.search_engine.search(
                owner_id, query_embedding.vector, self.top_k, self.min_threshold
            )
            trail.append(stage)

            stage = PipelineStage.CONTEXT_ASSEMBLED
            context = self.assemble_context(owner_id, redacted_query, results)
            trail.append(stage)

            stage = PipelineStage.GENERATED
            generated_text = self._generate(redacted_query, context)
            response = ClinicalResponse(
                generated_text=generated_text,
                context=context,
                confidence=ClinicalResponse.confidence_from_hits(context.hits),
                disclaimer=DISCLAIMER,
            )
            trail.append(stage)

            stage = PipelineStage.VALIDATED
            delivered, report = self.validator.validate(response)
            trail.append(stage)

        except Exception as e:
            return self._fail(owner_id, stage, e, trail, redacted_query, context, phi_in_query)

        trail.append(PipelineStage.DONE)
        if report.issues:
            logger.info(f"Response validation issues for owner {owner_id}: {report.issues}")
        self._emit(AuditRecord(
            event_kind=AuditEventKind.QUERY_PROCESSED,
            owner_id=owner_id,
            action="query",
            details={
                "hit_count": len(context.hits),
                "confidence": round(delivered.confidence, 4),
                "phi_in_query": phi_in_query,
                "validation_issues": len(report.issues),
            },
        ))
        return QueryOutcome(
            response=delivered,
            validation=report,
            stage_trail=trail,
            phi_in_query=phi_in_query,
        )

    def assemble_context(
        self,
        owner_id: str,
        query: str,
        results: Sequence[tuple[StoredEmbedding, float]],
    ) -> RetrievalContext:
        """Join search hits with their source records; missing records are skipped."""
        hits: list[RetrievalHit] = []
        for embedding, score in results:
            try:
                record = run_with_timeout(
                    self.record_store.require_record,
                    owner_id,
                    embedding.owner_record_id,
                    timeout=self.storage_timeout,
                    capability="storage",
                    stage=PipelineStage.CONTEXT_ASSEMBLED.value,
                )
            except NotFoundError:
                logger.debug(f"Context record {embedding.owner_record_id} not found; skipped")
                continue
            except ExternalCapabilityError as e:
                logger.warning(f"Skipping context record {embedding.owner_record_id}: {e}")
                continue
            hits.append(RetrievalHit(
                source_id=record.source_id,
                resource_type=record.resource_type,
                similarity_score=score,
                clinical_context=embedding.clinical_context,
                content=embedding.source_text_prefix or record.redacted_text,
            ))
        return RetrievalContext(query=query, hits=tuple(hits))

    def _generate(self, query: str, context: RetrievalContext) -> str:
        system_prompt = SYSTEM_PROMPT_TEMPLATE.format(
            context=build_context_string(context),
            query=query,
        )
        try:
            text = run_with_timeout(
                self.generation_port.generate,
                system_prompt,
                USER_PROMPT,
                self.temperature,
                self.max_tokens,
                timeout=self.generation_timeout,
                capability="generation",
                stage=PipelineStage.GENERATED.value,
            )
        except GenerationError:
            raise
        except ExternalCapabilityError as e:
            raise GenerationError(str(e), stage=PipelineStage.GENERATED.value, timed_out=e.timed_out) from e
        except Exception as e:
            raise GenerationError(f"Generation failed: {e}", stage=PipelineStage.GENERATED.value) from e

        if not text or not text.strip():
            raise GenerationError("Generation returned empty text", stage=PipelineStage.GENERATED.value)
        return text

    def _fail(
        self,
        owner_id: str,
        stage: PipelineStage,
        error: Exception,
        trail: list[PipelineStage],
        redacted_query: str,
        context: Optional[RetrievalContext],
        phi_in_query: bool,
    ) -> QueryOutcome:
        timed_out = isinstance(error, ExternalCapabilityError) and error.timed_out
        if isinstance(error, ExternalCapabilityError):
            logger.error(f"Query pipeline failed at {stage.value} for owner {owner_id}: {error}")
        else:
            logger.error(
                f"Unexpected error at {stage.value} for owner {owner_id}: {error}",
                exc_info=True
            )

        details = {"stage": stage.value, "error_type": type(error).__name__, "timed_out": timed_out}
        if stage == PipelineStage.GENERATED:
            self._emit(AuditRecord(
                event_kind=AuditEventKind.GENERATION_FAILURE,
                owner_id=owner_id,
                action="generate",
                details=details,
                status=AuditStatus.FAILURE,
            ))
        else:
            self._emit(AuditRecord(
                event_kind=AuditEventKind.QUERY_PROCESSED,
                owner_id=owner_id,
                action="query",
                details=details,
                status=AuditStatus.FAILURE,
            ))

        fallback_context = context or RetrievalContext(query=redacted_query)
        response = ClinicalResponse(
            generated_text=FALLBACK_TEXT,
            context=fallback_context,
            confidence=0.0,
            disclaimer=FALLBACK_DISCLAIMER,
        )
        _, report = self.validator.validate(response)
        issues = [f"Pipeline failed at stage {stage.value}: {type(error).__name__}"] + report.issues

        return QueryOutcome(
            response=response,
            validation=ValidationReport(is_valid=False, issues=issues),
            stage_trail=trail + [PipelineStage.FAILED],
            failed_stage=stage,
            phi_in_query=phi_in_query,
        )

    def _emit(self, event: AuditRecord) -> None:
        if self.audit_sink is None:
            return
        try:
            self.audit_sink.emit(event)
        except Exception as e:
            logger.error(f"Audit sink rejected {event.event_kind.value} event: {e}", exc_info=True)
