"""
image_search — Visual similarity search over CNN image embeddings.

Turns an input image into a unit-normalized embedding with a truncated
MobileNetV2 backbone and ranks catalog embeddings by cosine similarity,
either in-process or through the catalog's remote search endpoints.

Modules:
    config          SearchConfig and environment-driven defaults
    model_cache     Backbone loading, truncation and caching
    preprocessing   Image decoding, resizing and [-1, 1] scaling
    extractor       Forward pass and L2 normalization
    scoring         Cosine / Euclidean scoring and top-K ranking
    remote          HTTP client for the catalog search endpoints
    coordinator     Local/remote execution with progress states
    index_builder   Batch embedding generation for a product catalog
    catalog_index   Loading and querying a built embedding index
"""

from .config import SearchConfig
from .coordinator import ExecutionMode, ExecutionState, SearchCoordinator
from .embeddings import Embedding, SimilarityResult, compress_embedding, is_valid_embedding
from .errors import (
    DimensionMismatchError, ImageSearchError, ModelLoadError,
    ModelNotLoadedError, RemoteSearchError, UnsupportedFormatError,
)
from .model_cache import ModelCache
from .scoring import cosine_similarity, euclidean_distance, find_similar, find_similar_batch

__version__ = "1.0.0"
