"""
Embedding values and storage helpers.

An Embedding is the unit-normalized feature vector produced by the
extractor, stamped with the backbone version that produced it. The
catalog stores embeddings as float32 arrays, optionally rounded to 4
decimals, together with their dimension and model version so that a
backbone change can trigger a reindex.
"""

import math
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

import numpy as np

from .config import EMBEDDING_DIMENSION

logger = logging.getLogger(__name__)

COMPRESSION_DECIMALS = 4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, eq=False)
class Embedding:
    """Immutable, L2-normalized image embedding."""

    vector: np.ndarray
    model_version: str
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        vector = np.array(self.vector, dtype=np.float32).reshape(-1)
        vector.flags.writeable = False
        object.__setattr__(self, "vector", vector)

    @property
    def dim(self) -> int:
        return int(self.vector.shape[0])

    def tolist(self) -> list:
        return [float(v) for v in self.vector]


@dataclass(frozen=True, eq=False)
class SimilarityResult:
    """One ranked match. Derived per query, never persisted."""

    score: float
    candidate_id: str
    embedding: np.ndarray


def l2_normalize(vector) -> np.ndarray:
    """
    Scale a vector to unit Euclidean norm.

    A zero vector is returned unchanged rather than divided by zero.
    """
    vector = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = np.linalg.norm(vector)
    if norm == 0:
        return vector
    return (vector / norm).astype(np.float32)


def is_valid_embedding(vector: Any, dim: int = EMBEDDING_DIMENSION) -> bool:
    """True if vector is a length-``dim`` sequence of real, non-NaN numbers."""
    if isinstance(vector, (str, bytes)) or vector is None:
        return False
    if isinstance(vector, np.ndarray):
        if vector.ndim != 1 or vector.shape[0] != dim:
            return False
        if not np.issubdtype(vector.dtype, np.number) or np.issubdtype(vector.dtype, np.complexfloating):
            return False
        return not bool(np.any(np.isnan(vector)))
    try:
        values = list(vector)
    except TypeError:
        return False
    if len(values) != dim:
        return False
    for value in values:
        if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
            return False
        if math.isnan(value):
            return False
    return True


def compress_embedding(vector: Sequence[float], decimals: int = COMPRESSION_DECIMALS) -> np.ndarray:
    """
    Reduce precision for storage by rounding each component.

    Length is preserved. Components that would round to exactly zero keep
    a signed zero so the sign of every component survives.
    """
    values = np.asarray(vector, dtype=np.float64).reshape(-1)
    rounded = np.round(values, decimals)
    rounded = np.copysign(rounded, values)
    return rounded.astype(np.float32)


def to_record(embedding: Embedding, compress: bool = True) -> Dict[str, Any]:
    """Serialize an embedding into the catalog's storage format."""
    vector = compress_embedding(embedding.vector) if compress else embedding.vector
    return {
        "vector": [float(v) for v in vector],
        "dim": embedding.dim,
        "modelVersion": embedding.model_version,
        "updatedAt": embedding.created_at.isoformat(),
    }


def from_record(record: Dict[str, Any]) -> Embedding:
    """
    Rebuild an Embedding from a stored record.

    Raises:
        ValueError: If the record is missing fields or its stored
            dimension doesn't match the vector.
    """
    try:
        vector = np.asarray(record["vector"], dtype=np.float32)
        model_version = record["modelVersion"]
    except KeyError as e:
        raise ValueError(f"Embedding record is missing field {e}") from e

    dim = int(record.get("dim", vector.size))
    if vector.ndim != 1 or vector.shape[0] != dim:
        raise ValueError(
            f"Embedding record declares dimension {dim} but holds {vector.size} values"
        )

    updated_at = record.get("updatedAt")
    created_at = datetime.fromisoformat(updated_at) if updated_at else _utcnow()
    return Embedding(vector=vector, model_version=model_version, created_at=created_at)


def needs_reindex(record: Dict[str, Any],
                  model_version: str,
                  dim: Optional[int] = None) -> bool:
    """True if a stored record was produced by a different backbone."""
    if record.get("modelVersion") != model_version:
        return True
    if dim is not None and int(record.get("dim", -1)) != dim:
        return True
    return False
