"""Adapters for external capabilities: storage, AI models and ingestion sources."""
