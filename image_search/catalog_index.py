"""
Embedding index files and their read side.

index_builder writes the files named here; EmbeddingIndex reads them.

Loads the FAISS index, id list and metadata from disk, hands candidate
embeddings to the ranker and answers embedding queries: FAISS retrieves
the nearest candidates, find_similar_batch() re-scores them exactly.
"""

import os
import json
import asyncio
import logging
from typing import Dict, List, Optional

import faiss
import numpy as np

from .config import SearchConfig
from .embeddings import SimilarityResult, l2_normalize
from .errors import DimensionMismatchError
from .scoring import find_similar_batch

logger = logging.getLogger(__name__)

FAISS_FILENAME = "faiss_embeddings.index"
IDS_FILENAME = "embedding_ids.npy"
META_FILENAME = "index_meta.json"

DEFAULT_FAISS_CANDIDATES = int(os.environ.get("IMAGE_SEARCH_FAISS_CANDIDATES", "200"))


class EmbeddingIndex:
    """Catalog embeddings loaded from an index directory."""

    def __init__(self, index_dir: str):
        self.index_dir = index_dir

        with open(os.path.join(index_dir, META_FILENAME), 'r', encoding='utf-8') as f:
            self.meta = json.load(f)

        self.faiss_index = faiss.read_index(os.path.join(index_dir, FAISS_FILENAME))
        self.ids: List[str] = [str(i) for i in np.load(os.path.join(index_dir, IDS_FILENAME))]

        if len(self.ids) != self.faiss_index.ntotal:
            raise ValueError(
                f"Index holds {self.faiss_index.ntotal} vectors but {len(self.ids)} ids"
            )

        logger.info(
            f"Loaded embedding index: {self.faiss_index.ntotal} vectors, "
            f"{self.faiss_index.d}d, model {self.model_version}"
        )

    @property
    def dim(self) -> int:
        return int(self.faiss_index.d)

    @property
    def model_version(self) -> Optional[str]:
        return self.meta.get("modelVersion")

    def __len__(self):
        return len(self.ids)

    def needs_reindex(self, model_version: str, dim: Optional[int] = None) -> bool:
        """True if the index was built by a different backbone."""
        if self.model_version != model_version:
            return True
        return dim is not None and dim != self.dim

    def _vectors(self) -> np.ndarray:
        if self.faiss_index.ntotal == 0:
            return np.zeros((0, self.dim), dtype=np.float32)
        return self.faiss_index.reconstruct_n(0, self.faiss_index.ntotal)

    def candidates(self) -> Dict[str, np.ndarray]:
        """All stored embeddings keyed by candidate id, in index order."""
        return dict(zip(self.ids, self._vectors()))

    def search(self, query, config: Optional[SearchConfig] = None,
               faiss_candidates: int = DEFAULT_FAISS_CANDIDATES) -> List[SimilarityResult]:
        """
        Rank catalog embeddings against a query embedding.

        When the index is no larger than faiss_candidates every embedding
        is scored; otherwise FAISS narrows the set first.

        Raises:
            DimensionMismatchError: If the query length differs from the index.
        """
        config = config or SearchConfig()
        query_vec = np.asarray(query, dtype=np.float32).reshape(-1)
        if query_vec.shape[0] != self.dim:
            raise DimensionMismatchError(self.dim, query_vec.shape[0])

        if len(self.ids) <= faiss_candidates:
            return find_similar_batch(query_vec, self.candidates(), config)

        k = max(faiss_candidates, config.top_k)
        _, indices = self.faiss_index.search(l2_normalize(query_vec).reshape(1, -1), k)
        shortlist = [
            (self.ids[i], self.faiss_index.reconstruct(int(i)))
            for i in indices[0] if i >= 0
        ]
        return find_similar_batch(query_vec, shortlist, config)

    async def asearch(self, query, config: Optional[SearchConfig] = None,
                      faiss_candidates: int = DEFAULT_FAISS_CANDIDATES) -> List[SimilarityResult]:
        """Async variant of search(); FAISS retrieval and re-ranking run off the event loop."""
        return await asyncio.to_thread(self.search, query, config, faiss_candidates)
