"""
Similarity scoring and ranking of candidate embeddings.

Cosine similarity is mapped from [-1, 1] onto [0, 1] so that 0 means
opposite directions, 0.5 orthogonal and 1 identical direction. Two
rankers share the same semantics: find_similar() scores candidates one
by one, find_similar_batch() scores them with a single matrix-vector
product for large candidate sets. Both apply the threshold, a stable
descending sort and the top-K cap through rank_results().
"""

import asyncio
import logging
from collections.abc import Mapping
from typing import Iterable, List, Optional, Tuple, Union

import numpy as np

from .config import SearchConfig
from .embeddings import SimilarityResult
from .errors import DimensionMismatchError

logger = logging.getLogger(__name__)

Candidates = Union[Mapping, Iterable[Tuple[str, object]]]


def _as_vector(values) -> np.ndarray:
    return np.asarray(values, dtype=np.float64).reshape(-1)


def cosine_similarity(vector_a, vector_b) -> float:
    """
    Cosine similarity transformed to [0, 1].

    Returns 0.0 when either vector has zero norm.

    Raises:
        DimensionMismatchError: If the vectors have different lengths.
    """
    a = _as_vector(vector_a)
    b = _as_vector(vector_b)
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatchError(a.shape[0], b.shape[0])

    denominator = np.linalg.norm(a) * np.linalg.norm(b)
    if denominator == 0:
        return 0.0

    raw = float(np.dot(a, b) / denominator)
    return float(min(1.0, max(0.0, (raw + 1.0) / 2.0)))


def euclidean_distance(vector_a, vector_b) -> float:
    """Plain L2 distance (lower = more similar)."""
    a = _as_vector(vector_a)
    b = _as_vector(vector_b)
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatchError(a.shape[0], b.shape[0])
    return float(np.linalg.norm(a - b))


def _iter_candidates(candidates: Candidates):
    if candidates is None:
        return []
    if isinstance(candidates, Mapping):
        return list(candidates.items())
    return list(candidates)


def rank_results(results: List[SimilarityResult],
                 top_k: int,
                 min_similarity: float) -> List[SimilarityResult]:
    """
    Drop results below min_similarity, sort by score (highest first) and
    keep the first top_k. Equal scores keep their candidate order.
    """
    kept = [r for r in results if r.score >= min_similarity]
    # sorted() is stable, so ties stay in insertion order.
    kept = sorted(kept, key=lambda r: -r.score)
    return kept[:top_k]


def find_similar(query,
                 candidates: Candidates,
                 config: Optional[SearchConfig] = None,
                 skip_mismatched: bool = False) -> List[SimilarityResult]:
    """
    Rank candidates against a query one pair at a time.

    Args:
        query: Query embedding vector.
        candidates: Mapping of candidate id -> vector (iteration order is
            the tie-break order), or an iterable of (id, vector) pairs.
        config: top_k / min_similarity settings.
        skip_mismatched: Log and skip candidates of the wrong dimension
            instead of raising.

    Returns:
        At most top_k results with score >= min_similarity, best first.

    Raises:
        DimensionMismatchError: If a candidate's length differs from the
            query's and skip_mismatched is False.
    """
    config = config or SearchConfig()
    query_vec = _as_vector(query)

    results = []
    for candidate_id, embedding in _iter_candidates(candidates):
        candidate_vec = _as_vector(embedding)
        if candidate_vec.shape[0] != query_vec.shape[0]:
            if not skip_mismatched:
                raise DimensionMismatchError(query_vec.shape[0], candidate_vec.shape[0], candidate_id)
            logger.warning(
                f"Skipping candidate {candidate_id}: dimension "
                f"{candidate_vec.shape[0]} != {query_vec.shape[0]}"
            )
            continue

        score = cosine_similarity(query_vec, candidate_vec)
        results.append(SimilarityResult(score=score, candidate_id=candidate_id, embedding=embedding))

    return rank_results(results, config.top_k, config.min_similarity)


def find_similar_batch(query,
                       candidates: Candidates,
                       config: Optional[SearchConfig] = None,
                       skip_mismatched: bool = False) -> List[SimilarityResult]:
    """
    Rank candidates with one matrix-vector product.

    Same inputs, outputs and errors as find_similar(); scores agree with
    the scalar form to within floating-point tolerance.
    """
    config = config or SearchConfig()
    query_vec = _as_vector(query)
    dim = query_vec.shape[0]

    ids = []
    embeddings = []
    rows = []
    for candidate_id, embedding in _iter_candidates(candidates):
        candidate_vec = _as_vector(embedding)
        if candidate_vec.shape[0] != dim:
            if not skip_mismatched:
                raise DimensionMismatchError(dim, candidate_vec.shape[0], candidate_id)
            logger.warning(
                f"Skipping candidate {candidate_id}: dimension "
                f"{candidate_vec.shape[0]} != {dim}"
            )
            continue
        ids.append(candidate_id)
        embeddings.append(embedding)
        rows.append(candidate_vec)

    if not rows:
        return []

    matrix = np.vstack(rows)
    dots = matrix @ query_vec
    denominators = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query_vec)

    raw = np.divide(dots, denominators, out=np.zeros_like(dots), where=denominators != 0)
    scores = np.clip((raw + 1.0) / 2.0, 0.0, 1.0)
    # Zero-norm pairs are defined as 0, not the orthogonal midpoint.
    scores[denominators == 0] = 0.0

    results = [
        SimilarityResult(score=float(score), candidate_id=candidate_id, embedding=embedding)
        for candidate_id, embedding, score in zip(ids, embeddings, scores)
    ]
    return rank_results(results, config.top_k, config.min_similarity)


async def find_similar_batch_async(query,
                                   candidates: Candidates,
                                   config: Optional[SearchConfig] = None,
                                   skip_mismatched: bool = False) -> List[SimilarityResult]:
    """Async variant of find_similar_batch(); the matrix product runs off the event loop."""
    return await asyncio.to_thread(find_similar_batch, query, candidates, config, skip_mismatched)
