"""Ingestion adapters.

Adapters implement IngestionPort for reading clinical records from sources.
"""

from pathlib import Path

from clinical_rag.adapters.ingesters.fhir_json_ingester import FHIRJSONIngester
from clinical_rag.domain.ports import IngestionPort, UnsupportedSourceError

__all__ = ["FHIRJSONIngester", "get_adapter"]


def get_adapter(source: str, **kwargs) -> IngestionPort:
    """Select the ingestion adapter for a source.

    Parameters:
        source: Source file path
        **kwargs: Passed to the adapter constructor (e.g. max_record_size)

    Raises:
        UnsupportedSourceError: If no adapter can handle the source
    """
    adapters = [FHIRJSONIngester]

    for adapter_class in adapters:
        adapter = adapter_class(**kwargs)
        if adapter.can_ingest(source):
            return adapter

    raise UnsupportedSourceError(
        f"No adapter found for source: {source}. Supported formats: "
        f"{', '.join(s.lstrip('.').upper() for s in ('.json', '.ndjson', '.jsonl'))}",
        source=source,
        adapter=None
    )
