"""
Search configuration.

Defaults come from environment variables so deployments can tune the
backbone, thresholds and remote endpoint without code changes. A
SearchConfig is a frozen value: derive a new one with with_overrides()
instead of mutating it.
"""

import os
import logging
from dataclasses import dataclass, replace

logger = logging.getLogger(__name__)

# Backbone defaults. MobileNetV2 at 224x224 produces 1280-d features.
DEFAULT_MODEL_SOURCE = os.environ.get("IMAGE_SEARCH_MODEL_SOURCE", "mobilenet_v2")
MODEL_VERSION = "mobilenet-v2-1.0-224"
INPUT_SIZE = int(os.environ.get("IMAGE_SEARCH_INPUT_SIZE", "224"))
EMBEDDING_DIMENSION = int(os.environ.get("IMAGE_SEARCH_EMBEDDING_DIM", "1280"))

# Ranking defaults
DEFAULT_TOP_K = int(os.environ.get("IMAGE_SEARCH_TOP_K", "12"))
DEFAULT_MIN_SIMILARITY = float(os.environ.get("IMAGE_SEARCH_MIN_SIMILARITY", "0.3"))

# Remote catalog endpoints
DEFAULT_MODE = os.environ.get("IMAGE_SEARCH_MODE", "remote")
DEFAULT_API_URL = os.environ.get("IMAGE_SEARCH_API_URL", "http://localhost:3000/api/catalog")
DEFAULT_TIMEOUT = float(os.environ.get("IMAGE_SEARCH_TIMEOUT", "30"))


@dataclass(frozen=True)
class SearchConfig:
    """
    Read-only search settings.

    Attributes:
        model_source: Backbone to load: "mobilenet_v2", a .keras/.h5 path,
            or an http(s) URL to such a file.
        top_k: Maximum number of results to return (> 0).
        min_similarity: Minimum score in [0, 1] for a result to be kept.
    """

    model_source: str = DEFAULT_MODEL_SOURCE
    top_k: int = DEFAULT_TOP_K
    min_similarity: float = DEFAULT_MIN_SIMILARITY

    def __post_init__(self):
        if not self.model_source:
            raise ValueError("model_source must not be empty")
        if isinstance(self.top_k, bool) or not isinstance(self.top_k, int) or self.top_k <= 0:
            raise ValueError(f"top_k must be a positive integer, got {self.top_k!r}")
        if not 0.0 <= float(self.min_similarity) <= 1.0:
            raise ValueError(
                f"min_similarity must be within [0, 1], got {self.min_similarity!r}"
            )

    @classmethod
    def from_env(cls) -> "SearchConfig":
        """Build a config from the IMAGE_SEARCH_* environment variables."""
        return cls(
            model_source=os.environ.get("IMAGE_SEARCH_MODEL_SOURCE", "mobilenet_v2"),
            top_k=int(os.environ.get("IMAGE_SEARCH_TOP_K", "12")),
            min_similarity=float(os.environ.get("IMAGE_SEARCH_MIN_SIMILARITY", "0.3")),
        )

    def with_overrides(self, **overrides) -> "SearchConfig":
        """Return a copy with the given fields replaced (None values ignored)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)
