"""Similarity Search Engine.

Cosine similarity scoring and threshold-based ranking shared by every vector
store, plus the owner-scoped search entry point used by the orchestrator.

Ranking rules:
    - score = dot(a, b) / (|a| * |b|); 0 when either norm is zero
    - only scores strictly greater than the threshold are eligible
    - descending score, ties keep storage order (stable sort)
    - at most top_k results
    - candidates with a different dimensionality are skipped with a warning
"""

import logging
from typing import Optional, Sequence, TypeVar

import numpy as np

from clinical_rag.domain.enums import PipelineStage
from clinical_rag.domain.models import StoredEmbedding
from clinical_rag.domain.ports import DimensionMismatchError, ExternalCapabilityError, StorageError, VectorStorePort
from clinical_rag.domain.utils import run_with_timeout

logger = logging.getLogger(__name__)

C = TypeVar('C')


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors.

    Raises:
        DimensionMismatchError: If the vectors differ in length
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise DimensionMismatchError(
            f"Vectors must have the same length ({va.size} != {vb.size})",
            expected=int(va.size),
            actual=int(vb.size),
        )
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    score = float(np.dot(va, vb) / (norm_a * norm_b))
    return max(-1.0, min(1.0, score))


def rank_candidates(
    query: Sequence[float],
    candidates: Sequence[tuple[C, Sequence[float]]],
    top_k: int,
    min_threshold: float,
) -> list[tuple[C, float]]:
    """Score and rank candidates against a query vector.

    Parameters:
        query: Query vector
        candidates: (item, vector) pairs in storage order
        top_k: Maximum number of results
        min_threshold: Exclusive lower bound on the score

    Returns:
        list[tuple]: (item, score) pairs, best first
    """
    if top_k <= 0 or not candidates:
        return []

    q = np.asarray(query, dtype=np.float64)
    q_norm = float(np.linalg.norm(q))

    kept: list[C] = []
    rows: list[Sequence[float]] = []
    skipped = 0
    for item, vector in candidates:
        if len(vector) != q.size:
            skipped += 1
            continue
        kept.append(item)
        rows.append(vector)

    if skipped:
        logger.warning(
            f"Skipped {skipped} candidate(s) with dimensionality different from query ({q.size})"
        )
    if not kept or q_norm == 0.0:
        return []

    matrix = np.asarray(rows, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1)
    dots = matrix @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(norms > 0.0, dots / (norms * q_norm), 0.0)
    scores = np.clip(scores, -1.0, 1.0)

    eligible = np.flatnonzero(scores > min_threshold)
    if eligible.size == 0:
        return []
    order = eligible[np.argsort(-scores[eligible], kind="stable")][:top_k]
    return [(kept[i], float(scores[i])) for i in order]


class SimilaritySearchEngine:
    """Owner-scoped similarity search over a VectorStorePort.

    Parameters:
        store: Vector store providing the owner-scoped similarity predicate
        dimensions: Dimensionality of the configured embedding model
        timeout: Seconds allowed for the store call (None waits indefinitely)
    """

    def __init__(self, store: VectorStorePort, dimensions: Optional[int] = None, timeout: Optional[float] = None):
        self.store = store
        self.dimensions = dimensions
        self.timeout = timeout

    def search(
        self,
        owner_id: str,
        query_vector: Sequence[float],
        top_k: int = 5,
        min_threshold: float = 0.3,
    ) -> list[tuple[StoredEmbedding, float]]:
        """Return the owner's embeddings most similar to the query.

        Raises:
            ValueError: If top_k < 1
            DimensionMismatchError: If the query does not match the model's
                dimensionality
            ExternalCapabilityError: If the store call fails or times out
        """
        if top_k < 1:
            raise ValueError(f"top_k must be >= 1, got {top_k}")
        if self.dimensions is not None and len(query_vector) != self.dimensions:
            raise DimensionMismatchError(
                f"Query vector has {len(query_vector)} dimensions, expected {self.dimensions}",
                expected=self.dimensions,
                actual=len(query_vector),
            )

        try:
            results = run_with_timeout(
                self.store.search_similar,
                owner_id,
                list(query_vector),
                top_k,
                min_threshold,
                timeout=self.timeout,
                capability="storage",
                stage=PipelineStage.SEARCHED.value,
            )
        except ExternalCapabilityError:
            raise
        except Exception as e:
            raise StorageError(f"Similarity search failed: {e}", operation="search") from e

        logger.debug(f"Similarity search for owner {owner_id} returned {len(results)} hit(s)")
        return results[:top_k]
