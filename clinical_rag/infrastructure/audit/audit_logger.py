"""Audit Logger.

This module provides the append-only audit sink for the retrieval pipeline.
Events record what happened (ingestion, queries, PHI detection, generation
failures, denied cross-owner access) without ever carrying raw PHI.

Security Impact:
    - Append-only: events cannot be modified or removed once emitted
    - String detail values pass through the PHI detector before being kept
    - Creates the audit trail required for HIPAA compliance reporting

Architecture:
    - Infrastructure layer component implementing AuditSinkPort
    - In-memory buffer, flushed to a storage adapter in batches; once the
      buffer is over its bound the oldest flushed events are released
    - Reporting and export use pandas aggregation
"""

import json
import logging
import threading
from datetime import datetime
from typing import Any, Optional, Protocol

import pandas as pd

from clinical_rag.domain.enums import AuditEventKind, AuditStatus
from clinical_rag.domain.models import AuditRecord
from clinical_rag.domain.ports import AuditSinkPort, Result
from clinical_rag.domain.services.phi_detector import DEFAULT_DETECTOR, PHIDetector

logger = logging.getLogger(__name__)

SECURITY_EVENT_KINDS = frozenset({
    AuditEventKind.PHI_DETECTED_IN_QUERY,
    AuditEventKind.CROSS_OWNER_ACCESS_DENIED,
})

EXPORT_COLUMNS = [
    "audit_id", "timestamp", "event_kind", "severity", "owner_id", "action", "status", "details",
]

DEFAULT_MAX_BUFFERED_EVENTS = 10_000


class AuditPersistence(Protocol):
    def persist_audit_events(self, events: list[AuditRecord]) -> Result[int]:
        ...


class AuditLogger(AuditSinkPort):
    """Append-only, thread-safe audit sink.

    Example Usage:
        ```python
        audit = AuditLogger()
        orchestrator = RetrievalOrchestrator(..., audit_sink=audit)
        ...
        report = audit.generate_audit_report()
        audit.flush_to(duckdb_store)
        ```
    """

    def __init__(
        self,
        detector: Optional[PHIDetector] = None,
        max_buffered_events: int = DEFAULT_MAX_BUFFERED_EVENTS,
    ):
        self.detector = detector or DEFAULT_DETECTOR
        self.max_buffered_events = max_buffered_events
        self._events: list[AuditRecord] = []
        # Positions count every event ever emitted; _released of them have left the buffer
        self._released = 0
        self._flushed = 0
        self._lock = threading.Lock()

    def emit(self, event: AuditRecord) -> None:
        """Append an event, masking PHI in any string detail values."""
        scrubbed = self._scrub_details(event.details)
        if scrubbed != event.details:
            event = event.model_copy(update={"details": scrubbed})
        with self._lock:
            self._events.append(event)
            self._release_flushed()
        logger.debug(
            f"Audit event {event.event_kind.value} ({event.status.value}) owner={event.owner_id}"
        )

    def get_events(
        self,
        owner_id: Optional[str] = None,
        event_kind: Optional[AuditEventKind] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[AuditRecord]:
        """Filtered events, newest first."""
        with self._lock:
            events = list(self._events)

        if owner_id is not None:
            events = [e for e in events if e.owner_id == owner_id]
        if event_kind is not None:
            events = [e for e in events if e.event_kind == event_kind]
        if start is not None:
            events = [e for e in events if e.timestamp >= start]
        if end is not None:
            events = [e for e in events if e.timestamp <= end]

        # Reverse first so events with equal timestamps stay newest-first
        events = sorted(reversed(events), key=lambda e: e.timestamp, reverse=True)
        if limit is not None:
            events = events[:limit]
        return events

    def get_event_count(self) -> int:
        with self._lock:
            return len(self._events)

    def generate_audit_report(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Aggregate events in a time window.

        Returns:
            dict: total_events, events_by_kind, events_by_severity, events_by_owner,
                failure_count, security_events (list of audit dicts)
        """
        events = self.get_events(start=start, end=end)
        if not events:
            return {
                "total_events": 0,
                "events_by_kind": {},
                "events_by_severity": {},
                "events_by_owner": {},
                "failure_count": 0,
                "security_events": [],
            }

        df = pd.DataFrame([e.model_dump(mode="json") for e in events])
        events_by_kind = {str(k): int(v) for k, v in df["event_kind"].value_counts().items()}
        events_by_severity = {str(k): int(v) for k, v in df["severity"].value_counts().items()}
        events_by_owner = {
            str(k): int(v) for k, v in df["owner_id"].fillna("unknown").value_counts().items()
        }
        failure_count = int((df["status"] == AuditStatus.FAILURE.value).sum())

        return {
            "total_events": len(df),
            "events_by_kind": events_by_kind,
            "events_by_severity": events_by_severity,
            "events_by_owner": events_by_owner,
            "failure_count": failure_count,
            "security_events": [
                e.model_dump(mode="json") for e in events if e.event_kind in SECURITY_EVENT_KINDS
            ],
        }

    def export(self, format: str = "json") -> str:
        """Export all events (oldest first) as JSON or CSV.

        Raises:
            ValueError: For an unsupported format
        """
        with self._lock:
            records = [e.model_dump(mode="json") for e in self._events]

        if format == "json":
            return json.dumps(records, indent=2)
        if format == "csv":
            df = pd.DataFrame(records, columns=EXPORT_COLUMNS)
            df["details"] = df["details"].apply(lambda d: json.dumps(d, sort_keys=True))
            return df.to_csv(index=False)
        raise ValueError(f"Unsupported export format: {format}. Supported: json, csv")

    def pending_events(self) -> list[AuditRecord]:
        """Events not yet flushed to storage, oldest first."""
        with self._lock:
            return list(self._events[self._flushed - self._released:])

    def flush_to(self, store: AuditPersistence) -> Result[int]:
        """Persist pending events to a storage adapter.

        Flushed events stay queryable in memory until the buffer grows past
        ``max_buffered_events``; unflushed events are never released.

        Returns:
            Result[int]: Number of events persisted
        """
        with self._lock:
            pending = list(self._events[self._flushed - self._released:])
            cursor = self._released + len(self._events)

        if not pending:
            return Result.success_result(0)

        result = store.persist_audit_events(pending)
        if result.is_success():
            with self._lock:
                self._flushed = max(self._flushed, cursor)
                self._release_flushed()
            logger.info(f"Flushed {len(pending)} audit event(s) to storage")
        else:
            logger.error(f"Failed to flush audit events: {result.error}")
        return result

    def _release_flushed(self) -> None:
        """Drop the oldest flushed events while over the bound (lock held)."""
        excess = len(self._events) - self.max_buffered_events
        releasable = min(excess, self._flushed - self._released)
        if releasable > 0:
            del self._events[:releasable]
            self._released += releasable
            logger.debug(f"Released {releasable} flushed audit event(s) from memory")

    def _scrub_details(self, details: dict[str, Any]) -> dict[str, Any]:
        scrubbed: dict[str, Any] = {}
        for key, value in details.items():
            if isinstance(value, str):
                scrubbed[key], _ = self.detector.redact(value)
            elif isinstance(value, (list, tuple)):
                scrubbed[key] = [
                    self.detector.redact(item)[0] if isinstance(item, str) else item
                    for item in value
                ]
            else:
                scrubbed[key] = value
        return scrubbed
