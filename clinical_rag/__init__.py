"""Clinical-RAG: PHI-safe clinical retrieval pipeline."""

__version__ = "0.1.0"
