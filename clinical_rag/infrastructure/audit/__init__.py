"""Audit infrastructure components.

This package provides the append-only audit sink used by the pipeline services.
"""

from clinical_rag.infrastructure.audit.audit_logger import AuditLogger

__all__ = ['AuditLogger']
