"""
Backbone loading and caching.

The ModelCache owns one truncated feature-extraction network. The first
load() fetches the full classification network, finds the pooling layer
that feeds the classifier and builds a sub-model ending at that layer.
Later calls reuse the handle; concurrent calls made while a load is in
flight all await the same task, so the network is fetched once.
"""

import os
import asyncio
import logging
from typing import Any, Callable, Optional

import numpy as np
import tensorflow as tf

from .config import DEFAULT_MODEL_SOURCE, INPUT_SIZE, MODEL_VERSION, SearchConfig
from .errors import ModelLoadError, ModelNotLoadedError

logger = logging.getLogger(__name__)

MOBILENET_SOURCES = {"mobilenet_v2", "mobilenetv2"}

POOLING_LAYERS = {"GlobalAveragePooling2D", "GlobalMaxPooling2D"}


def fetch_backbone(source: str = DEFAULT_MODEL_SOURCE):
    """
    Fetch a full classification network.

    Args:
        source: "mobilenet_v2" for the Keras ImageNet MobileNetV2, a local
            .keras/.h5 file, or an http(s) URL to such a file.

    Returns:
        A functional Keras model, classification head included.
    """
    if source.lower() in MOBILENET_SOURCES:
        return tf.keras.applications.MobileNetV2(
            input_shape=(INPUT_SIZE, INPUT_SIZE, 3),
            include_top=True,
            weights="imagenet",
        )

    path = source
    if source.startswith(("http://", "https://")):
        fname = os.path.basename(source.split("?", 1)[0]) or "backbone.keras"
        path = tf.keras.utils.get_file(fname=fname, origin=source, cache_subdir="image_search")

    return tf.keras.models.load_model(path, compile=False)


def model_version_for(source: str) -> str:
    if source.lower() in MOBILENET_SOURCES:
        return MODEL_VERSION
    stem = os.path.splitext(os.path.basename(source.split("?", 1)[0]))[0]
    return stem or source


def find_feature_layer(model):
    """
    Locate the layer whose activation is the image embedding.

    Walks layers from the output backward and returns the first global
    pooling layer, or a Flatten that sits before the classification head.
    Falls back to the deepest layer that is neither Dense nor the input.
    Returns None if nothing qualifies.
    """
    layers = model.layers
    for i in range(len(layers) - 1, -1, -1):
        class_name = type(layers[i]).__name__
        if class_name in POOLING_LAYERS:
            return layers[i]
        if class_name == "Flatten" and i < len(layers) - 2:
            return layers[i]

    for i in range(len(layers) - 2, -1, -1):
        class_name = type(layers[i]).__name__
        if class_name not in ("Dense", "InputLayer"):
            return layers[i]

    return None


class ModelHandle:
    """Loaded backbone plus its truncated feature sub-graph."""

    def __init__(self, base_model, feature_model, feature_layer: str,
                 model_version: str, input_size: int, output_dim: Optional[int]):
        self.base_model = base_model
        self.feature_model = feature_model
        self.feature_layer = feature_layer
        self.model_version = model_version
        self.input_size = input_size
        self.output_dim = output_dim
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def predict(self, batch) -> np.ndarray:
        """Run the forward pass and return the raw (unnormalized) features."""
        feature_model = self.feature_model
        if feature_model is None:
            raise ModelNotLoadedError("Model was disposed")
        features = feature_model(batch, training=False)
        return np.asarray(features, dtype=np.float32)

    def release(self):
        self.base_model = None
        self.feature_model = None
        self._released = True


def build_model_handle(base_model, model_version: str) -> ModelHandle:
    """
    Truncate a classification network at its feature layer.

    Raises:
        ModelLoadError: If no suitable feature layer exists.
    """
    layer = find_feature_layer(base_model)
    if layer is None:
        raise ModelLoadError("Could not find feature extraction layer in model")

    try:
        feature_model = tf.keras.Model(inputs=base_model.inputs, outputs=layer.output)
    except (ValueError, AttributeError, TypeError) as e:
        raise ModelLoadError(f"Could not build feature model at layer '{layer.name}': {e}") from e

    input_shape = tuple(base_model.inputs[0].shape)
    input_size = int(input_shape[1]) if len(input_shape) > 1 and input_shape[1] else INPUT_SIZE

    output_shape = tuple(feature_model.outputs[0].shape)[1:]
    output_dim = None
    if output_shape and all(d is not None for d in output_shape):
        output_dim = int(np.prod(output_shape))

    return ModelHandle(
        base_model=base_model,
        feature_model=feature_model,
        feature_layer=layer.name,
        model_version=model_version,
        input_size=input_size,
        output_dim=output_dim,
    )


class ModelCache:
    """
    Service object owning one feature-extraction model.

    Inject one instance into every component that needs the backbone;
    independent instances never share state.
    """

    def __init__(self,
                 fetch_model: Callable[[str], Any] = fetch_backbone,
                 model_version: Optional[str] = None):
        self._fetch_model = fetch_model
        self._model_version = model_version
        self._handle: Optional[ModelHandle] = None
        self._load_task: Optional[asyncio.Task] = None
        self._generation = 0

    @property
    def handle(self) -> Optional[ModelHandle]:
        return self._handle

    @property
    def is_loaded(self) -> bool:
        return self._handle is not None

    @property
    def is_loading(self) -> bool:
        return self._load_task is not None

    async def load(self, config: Optional[SearchConfig] = None) -> ModelHandle:
        """
        Return the cached handle, loading the backbone on first use.

        Raises:
            ModelLoadError: If the fetch fails, no feature layer exists, or
                dispose() is called before the load completes.
        """
        if self._handle is not None:
            return self._handle

        if self._load_task is None:
            source = (config or SearchConfig()).model_source
            self._load_task = asyncio.ensure_future(self._load(source, self._generation))

        # Shielded so a cancelled waiter doesn't abort the shared load.
        return await asyncio.shield(self._load_task)

    async def _load(self, source: str, generation: int) -> ModelHandle:
        logger.info(f"Loading feature extraction model from {source}")
        try:
            try:
                base_model = await asyncio.to_thread(self._fetch_model, source)
            except ModelLoadError:
                raise
            except Exception as e:
                raise ModelLoadError(f"Failed to fetch model from {source}: {e}") from e

            version = self._model_version or model_version_for(source)
            handle = build_model_handle(base_model, version)
        except ModelLoadError as e:
            logger.error(f"Model load failed: {e}")
            raise
        finally:
            if self._load_task is asyncio.current_task():
                self._load_task = None

        if generation != self._generation:
            handle.release()
            logger.info("Model cache was disposed during load; loaded model released")
            raise ModelLoadError("Model cache was disposed during load")

        self._handle = handle
        logger.info(
            f"Model loaded. Feature layer: {handle.feature_layer}, "
            f"output dim: {handle.output_dim}, version: {handle.model_version}"
        )
        return handle

    def dispose(self):
        """Release the loaded model so the next load() starts fresh."""
        self._generation += 1
        self._load_task = None
        if self._handle is None:
            return
        self._handle.release()
        self._handle = None
        logger.info("Model disposed")
