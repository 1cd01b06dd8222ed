"""
HTTP client for the catalog search endpoints.

    POST {base}/search-by-image      multipart, one "image" file and an
                                     optional "searchText" field
    POST {base}/search-by-embedding  JSON {embedding, topK, minSimilarity,
                                     categoryFilter?}

Both answer {"results": [{id, name, image, category, price, currency,
similarity}]} with similarity as a 0-100 percentage, or {"error": ...}
with a non-2xx status.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .config import DEFAULT_API_URL, DEFAULT_TIMEOUT, SearchConfig
from .embeddings import Embedding
from .errors import RemoteSearchError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogMatch:
    """One product returned by the catalog search endpoints."""

    id: str
    name: str
    image: Optional[str]
    category: Optional[str]
    price: Optional[float]
    currency: Optional[str]
    similarity: float

    @property
    def score(self) -> float:
        """Similarity on the [0, 1] scale used by the ranker."""
        return self.similarity / 100.0

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CatalogMatch":
        try:
            price = payload.get("price", payload.get("priceAmount"))
            return cls(
                id=str(payload["id"]),
                name=str(payload.get("name", "")),
                image=payload.get("image"),
                category=payload.get("category"),
                price=float(price) if price is not None else None,
                currency=payload.get("currency"),
                similarity=float(payload["similarity"]),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise RemoteSearchError(f"Malformed search result: {e}") from e


class RemoteSearchClient:
    """Async client for the catalog's image and embedding search endpoints."""

    def __init__(self,
                 base_url: str = DEFAULT_API_URL,
                 timeout: float = DEFAULT_TIMEOUT,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def search_by_image(self,
                              image: bytes,
                              content_type: str = "image/jpeg",
                              filename: str = "query",
                              search_text: Optional[str] = None) -> List[CatalogMatch]:
        """
        Upload raw image bytes; the server extracts and ranks.

        search_text is optional free text the server blends into the
        ranking, sent as the "searchText" form field.
        """
        files = {"image": (filename, image, content_type)}
        data = {"searchText": search_text} if search_text else None
        return await self._post("/search-by-image", files=files, data=data)

    async def search_by_embedding(self,
                                  embedding: Embedding,
                                  config: Optional[SearchConfig] = None,
                                  category: Optional[str] = None) -> List[CatalogMatch]:
        """Send a locally computed embedding for server-side ranking, optionally within one category."""
        config = config or SearchConfig()
        payload = {
            "embedding": embedding.tolist(),
            "topK": config.top_k,
            "minSimilarity": config.min_similarity,
        }
        if category:
            payload["categoryFilter"] = category
        return await self._post("/search-by-embedding", json=payload)

    async def _post(self, path: str, **kwargs) -> List[CatalogMatch]:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.post(url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Search request to {url} failed: {e}")
            raise RemoteSearchError(f"Search service unavailable: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.is_success:
            message = "Search request failed"
            if isinstance(data, dict) and data.get("error"):
                message = str(data["error"])
            logger.error(f"Search request to {url} returned {response.status_code}: {message}")
            raise RemoteSearchError(message, status_code=response.status_code)

        if not isinstance(data, dict):
            raise RemoteSearchError("Search response is not a JSON object",
                                    status_code=response.status_code)

        results = data.get("results") or []
        if not isinstance(results, list):
            raise RemoteSearchError("Search response 'results' is not a list",
                                    status_code=response.status_code)

        matches = [CatalogMatch.from_dict(item) for item in results]
        logger.info(f"Search {path}: {len(matches)} results")
        return matches
