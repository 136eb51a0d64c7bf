"""Domain Enumerations.

Closed vocabularies used across the retrieval pipeline. Every enum is a
``str`` subclass so values serialize directly into JSON, DuckDB and audit
records without conversion.

Security Impact:
    - PHIKind values are the only PHI information that may leave the detector
    - Mask tokens are derived from PHIKind and use characters outside every
      detection pattern's value alphabet, so masked text never re-matches
"""

from enum import Enum


class PHIKind(str, Enum):
    """Category of protected health information recognized by the detector."""

    SSN = "ssn"
    MRN = "mrn"
    NAME = "patientName"
    DOB = "dob"
    PHONE = "phone"
    EMAIL = "email"
    ACCOUNT_NUMBER = "accountNumber"
    FACILITY_CONTEXT = "facilityWithPatient"

    @property
    def mask_token(self) -> str:
        """Placeholder that replaces a matched span, e.g. ``[SSN_MASKED]``."""
        return f"[{self.value.upper()}_MASKED]"


class ResourceType(str, Enum):
    """Clinical resource tags with a dedicated text projection."""

    CONDITION = "Condition"
    MEDICATION_STATEMENT = "MedicationStatement"
    OBSERVATION = "Observation"
    DIAGNOSTIC_REPORT = "DiagnosticReport"
    OTHER = "Other"

    @classmethod
    def from_tag(cls, tag: object) -> "ResourceType":
        """Map a raw resource type tag to a known type, defaulting to OTHER."""
        if isinstance(tag, str):
            for member in cls:
                if member.value.lower() == tag.strip().lower():
                    return member
        return cls.OTHER


class ClinicalContext(str, Enum):
    """Coarse specialty tag attached to an embedding."""

    ENDOCRINOLOGY = "endocrinology"
    CARDIOLOGY = "cardiology"
    ONCOLOGY = "oncology"
    INFECTIOUS_DISEASE = "infectious-disease"
    PULMONOLOGY = "pulmonology"
    GENERAL = "general"


class PipelineStage(str, Enum):
    """States of a single query moving through the retrieval orchestrator."""

    RECEIVED = "Received"
    PHI_CHECKED = "PHIChecked"
    EMBEDDED = "Embedded"
    SEARCHED = "Searched"
    CONTEXT_ASSEMBLED = "ContextAssembled"
    GENERATED = "Generated"
    VALIDATED = "Validated"
    DONE = "Done"
    FAILED = "Failed"


class AuditEventKind(str, Enum):
    """Event kinds written to the append-only audit sink."""

    PHI_DETECTED_IN_QUERY = "PHI_DETECTED_IN_QUERY"
    RESOURCE_INGESTED = "RESOURCE_INGESTED"
    INGESTION_FAILED = "INGESTION_FAILED"
    QUERY_PROCESSED = "QUERY_PROCESSED"
    GENERATION_FAILURE = "GENERATION_FAILURE"
    CROSS_OWNER_ACCESS_DENIED = "CROSS_OWNER_ACCESS_DENIED"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class AuditSeverity(str, Enum):
    """How urgently an audit event needs review."""

    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


DEFAULT_AUDIT_SEVERITY: dict[AuditEventKind, AuditSeverity] = {
    AuditEventKind.PHI_DETECTED_IN_QUERY: AuditSeverity.MEDIUM,
    AuditEventKind.RESOURCE_INGESTED: AuditSeverity.INFO,
    AuditEventKind.INGESTION_FAILED: AuditSeverity.LOW,
    AuditEventKind.QUERY_PROCESSED: AuditSeverity.INFO,
    AuditEventKind.GENERATION_FAILURE: AuditSeverity.HIGH,
    AuditEventKind.CROSS_OWNER_ACCESS_DENIED: AuditSeverity.HIGH,
}
