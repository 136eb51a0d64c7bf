"""In-memory test doubles for the pipeline ports."""

import hashlib
import re
import threading
import time
from collections import defaultdict
from typing import Callable, Optional, Sequence

from clinical_rag.domain.models import AnonymizedRecord, EmbeddingVector, StoredEmbedding
from clinical_rag.domain.ports import (
    DimensionMismatchError,
    EmbeddingGenerationError,
    EmbeddingPort,
    GenerationError,
    GenerationPort,
    RecordStorePort,
    Result,
    VectorStorePort,
)
from clinical_rag.domain.services.similarity import rank_candidates


def hashed_bag_of_words(text: str, dimensions: int) -> list[float]:
    """Deterministic vector: each lower-cased word adds 1.0 to a hashed slot."""
    vector = [0.0] * dimensions
    for token in re.findall(r"[a-z]+", text.lower()):
        slot = int(hashlib.sha256(token.encode("utf-8")).hexdigest()[:8], 16) % dimensions
        vector[slot] += 1.0
    return vector


class FakeEmbeddingPort(EmbeddingPort):
    """Embedding model double.

    Parameters:
        dimensions: Vector size it reports (and produces unless ``vector_for`` overrides)
        vector_for: Optional text -> vector function
        fail: Raise EmbeddingGenerationError on every call
        delay: Seconds to sleep before answering
    """

    def __init__(
        self,
        dimensions: int = 16,
        vector_for: Optional[Callable[[str], list[float]]] = None,
        fail: bool = False,
        delay: float = 0.0,
        model_name: str = "fake-embedding-model",
    ):
        self._dimensions = dimensions
        self._model_name = model_name
        self.vector_for = vector_for
        self.fail = fail
        self.delay = delay
        self.calls: list[str] = []

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise EmbeddingGenerationError("embedding service unavailable")
        if self.vector_for is not None:
            return self.vector_for(text)
        return hashed_bag_of_words(text, self._dimensions)


class FakeGenerationPort(GenerationPort):
    """Generation model double that records its prompts."""

    DEFAULT_TEXT = (
        "Metformin is a common first-line therapy for type 2 diabetes. "
        "Please consult a healthcare provider for individual advice."
    )

    def __init__(self, text: str = DEFAULT_TEXT, fail: bool = False, delay: float = 0.0):
        self.text = text
        self.fail = fail
        self.delay = delay
        self.calls: list[dict] = []

    def generate(self, system_prompt: str, user_prompt: str, temperature: float, max_tokens: int) -> str:
        self.calls.append({
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise GenerationError("generation service unavailable")
        return self.text


class RecordingAuditSink:
    """AuditSinkPort double keeping every event in order."""

    def __init__(self):
        self.events = []

    def emit(self, event) -> None:
        self.events.append(event)

    def kinds(self) -> list:
        return [event.event_kind for event in self.events]


class InMemoryVectorStore(VectorStorePort, RecordStorePort):
    """Owner-partitioned in-memory store with one lock per owner.

    Vectors are "encrypted" by a reversible byte encoding; the production
    adapter's encryption is covered by its own tests.
    """

    def __init__(self, dimensions: Optional[int] = None, fail_search: bool = False):
        self.dimensions = dimensions
        self.fail_search = fail_search
        self._embeddings: dict[str, list[StoredEmbedding]] = defaultdict(list)
        self._records: dict[tuple[str, str], list[AnonymizedRecord]] = defaultdict(list)
        self._locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._registry_lock = threading.Lock()

    def _lock(self, owner_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks[owner_id]

    def store(self, owner_id: str, embedding: EmbeddingVector) -> Result[StoredEmbedding]:
        if self.dimensions is not None and embedding.dimensions != self.dimensions:
            return Result.failure_result(DimensionMismatchError(
                f"expected {self.dimensions}, got {embedding.dimensions}",
                expected=self.dimensions,
                actual=embedding.dimensions,
            ))
        stored = StoredEmbedding.from_embedding(
            embedding,
            owner_id=owner_id,
            encrypted_vector=repr(embedding.vector).encode("utf-8"),
            key_id="test",
        )
        with self._lock(owner_id):
            self._embeddings[owner_id].append(stored)
        return Result.success_result(stored)

    def get(self, owner_id: str, embedding_id: str) -> Optional[StoredEmbedding]:
        with self._lock(owner_id):
            return next((e for e in self._embeddings[owner_id] if e.id == embedding_id), None)

    def delete(self, owner_id: str, embedding_id: str) -> bool:
        with self._lock(owner_id):
            items = self._embeddings[owner_id]
            for index, item in enumerate(items):
                if item.id == embedding_id:
                    del items[index]
                    return True
        return False

    def list_by_owner(self, owner_id: str, limit: int = 100) -> list[StoredEmbedding]:
        with self._lock(owner_id):
            return list(reversed(self._embeddings[owner_id]))[:limit]

    def search_similar(
        self,
        owner_id: str,
        query_vector: Sequence[float],
        match_count: int,
        threshold: float,
    ) -> list[tuple[StoredEmbedding, float]]:
        if self.fail_search:
            raise RuntimeError("search backend unavailable")
        with self._lock(owner_id):
            candidates = [(e, e.vector) for e in self._embeddings[owner_id]]
        return rank_candidates(query_vector, candidates, match_count, threshold)

    def save_record(self, owner_id: str, record: AnonymizedRecord) -> Result[AnonymizedRecord]:
        with self._lock(owner_id):
            versions = self._records[(owner_id, record.source_id)]
            saved = record.model_copy(update={"version": len(versions) + 1})
            versions.append(saved)
        return Result.success_result(saved)

    def get_record(self, owner_id: str, source_id: str) -> Optional[AnonymizedRecord]:
        with self._lock(owner_id):
            versions = self._records.get((owner_id, source_id))
            return versions[-1] if versions else None
