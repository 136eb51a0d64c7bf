"""FHIR JSON Ingestion Adapter.

This adapter implements the IngestionPort contract for FHIR-style JSON
sources: a ``Bundle``, a JSON array of resources, a single resource, or
newline-delimited JSON (one resource per line).

Security Impact:
    - Each entry is validated in isolation; a malformed entry becomes a
      failure Result and never stops the stream
    - Rejections are logged with the entry index only, never its content
    - Records are not redacted here; anonymization happens before anything
      is embedded or persisted

Architecture:
    - Implements IngestionPort (Hexagonal Architecture)
    - Isolated from domain core - only depends on ports and models
"""

import json
import logging
from pathlib import Path
from typing import Any, Iterator, Optional

from pydantic import ValidationError as PydanticValidationError

from clinical_rag.domain.models import ClinicalRecord
from clinical_rag.domain.ports import (
    IngestionPort,
    Result,
    SourceNotFoundError,
    UnsupportedSourceError,
    ValidationError,
)

logger = logging.getLogger(__name__)

NDJSON_SUFFIXES = (".ndjson", ".jsonl")
JSON_SUFFIXES = (".json",) + NDJSON_SUFFIXES


class FHIRJSONIngester(IngestionPort):
    """FHIR JSON ingestion adapter with per-entry triage.

    Parameters:
        max_record_size: Maximum serialized size of one resource in bytes
            (larger entries are rejected to prevent memory exhaustion)

    Example Usage:
        ```python
        ingester = FHIRJSONIngester()
        for result in ingester.ingest("bundle.json"):
            if result.is_success():
                service.ingest(owner_id, result.value)
        ```
    """

    def __init__(self, max_record_size: int = 10 * 1024 * 1024):
        self.max_record_size = max_record_size
        self.adapter_name = "fhir_json_ingester"

    def can_ingest(self, source: str) -> bool:
        if not source:
            return False
        return Path(source).suffix.lower() in JSON_SUFFIXES

    def get_source_info(self, source: str) -> Optional[dict]:
        try:
            source_path = Path(source)
            if source_path.exists():
                return {
                    'format': 'ndjson' if source_path.suffix.lower() in NDJSON_SUFFIXES else 'json',
                    'size': source_path.stat().st_size,
                    'encoding': 'utf-8',
                    'exists': True,
                }
        except (OSError, ValueError):
            pass
        return None

    def ingest(self, source: str) -> Iterator[Result[ClinicalRecord]]:
        """Read the source and yield one Result per resource.

        Raises:
            SourceNotFoundError: If the file doesn't exist or cannot be read
            UnsupportedSourceError: If the file is not valid JSON (whole-document formats)
        """
        source_path = Path(source)
        if not source_path.exists():
            raise SourceNotFoundError(f"JSON source not found: {source}", source=source)

        try:
            text = source_path.read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as e:
            raise SourceNotFoundError(f"Cannot read JSON source {source}: {str(e)}", source=source)

        if source_path.suffix.lower() in NDJSON_SUFFIXES:
            yield from self._ingest_ndjson(text, source)
            return

        try:
            raw_data = json.loads(text)
        except json.JSONDecodeError as e:
            raise UnsupportedSourceError(
                f"Invalid JSON format in {source}: {str(e)}",
                source=source,
                adapter=self.adapter_name
            )

        resources = self._extract_resources(raw_data, source)
        if not resources:
            logger.warning(f"No resources found in {source}")
            return

        for index, resource in enumerate(resources):
            yield self._triage(resource, source, index)

    def _ingest_ndjson(self, text: str, source: str) -> Iterator[Result[ClinicalRecord]]:
        index = 0
        for line_number, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                resource = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning(f"Rejected line {line_number} of {source}: invalid JSON")
                yield Result.failure_result(
                    ValidationError(f"Invalid JSON on line {line_number}: {e.msg}", details={"line": line_number}),
                    error_details={"source": source, "index": index, "line": line_number}
                )
            else:
                yield self._triage(resource, source, index)
            index += 1

    def _extract_resources(self, raw_data: Any, source: str) -> list[Any]:
        """Normalize a parsed document to a list of resources.

        Handles:
        - Bundle: {"resourceType": "Bundle", "entry": [{"resource": {...}}, ...]}
        - Array of resources: [{...}, ...]
        - Single resource: {...}
        """
        if isinstance(raw_data, list):
            return raw_data
        if isinstance(raw_data, dict):
            if raw_data.get("resourceType") == "Bundle":
                entries = raw_data.get("entry") or []
                return [
                    entry.get("resource") if isinstance(entry, dict) else entry
                    for entry in entries
                ]
            return [raw_data]
        raise UnsupportedSourceError(
            f"Unsupported JSON structure: expected array or object, got {type(raw_data).__name__}",
            source=source,
            adapter=self.adapter_name
        )

    def _triage(self, resource: Any, source: str, index: int) -> Result[ClinicalRecord]:
        details = {"source": source, "index": index}
        try:
            if len(json.dumps(resource, default=str)) > self.max_record_size:
                raise ValidationError(
                    f"Resource exceeds maximum size of {self.max_record_size} bytes",
                    details={"max_record_size": self.max_record_size}
                )
            return Result.success_result(ClinicalRecord.from_resource(resource))
        except ValidationError as e:
            logger.warning(f"Rejected entry {index} of {source}: {str(e)}")
            return Result.failure_result(e, error_details={**details, **e.details})
        except PydanticValidationError as e:
            logger.warning(f"Rejected entry {index} of {source}: {e.error_count()} validation error(s)")
            return Result.failure_result(
                ValidationError(f"Resource failed validation: {e.error_count()} error(s)"),
                error_details=details
            )
