"""Storage adapters."""

from clinical_rag.adapters.storage.duckdb_adapter import DuckDBVectorStore

__all__ = ["DuckDBVectorStore"]
