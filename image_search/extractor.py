"""
Feature extraction: forward pass plus L2 normalization.

The raw backbone output never leaves this module; callers only see
unit-normalized Embedding values.
"""

import asyncio
import logging
from typing import Optional

from .embeddings import Embedding, l2_normalize
from .errors import ModelNotLoadedError
from .model_cache import ModelHandle
from .tensor_scope import TensorScope

logger = logging.getLogger(__name__)


def embed(tensor, handle: Optional[ModelHandle]) -> Embedding:
    """
    Compute the normalized embedding for a preprocessed tensor.

    Args:
        tensor: [1, size, size, 3] tensor from preprocessing.preprocess().
        handle: Handle returned by ModelCache.load().

    Raises:
        ModelNotLoadedError: If the handle is missing or was disposed.
    """
    if handle is None or handle.released:
        raise ModelNotLoadedError("Model not loaded; call ModelCache.load() first")

    with TensorScope("extract") as scope:
        features = scope.track(handle.predict(tensor))
        vector = l2_normalize(features.reshape(-1))

    if handle.output_dim is not None and vector.shape[0] != handle.output_dim:
        logger.warning(
            f"Feature vector has {vector.shape[0]} values, "
            f"model reports {handle.output_dim}"
        )

    return Embedding(vector=vector, model_version=handle.model_version)


async def extract(tensor, handle: Optional[ModelHandle]) -> Embedding:
    """Async variant of embed(); the forward pass runs off the event loop."""
    if handle is None or handle.released:
        raise ModelNotLoadedError("Model not loaded; call ModelCache.load() first")
    return await asyncio.to_thread(embed, tensor, handle)
