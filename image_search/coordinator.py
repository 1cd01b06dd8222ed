"""
Hybrid search coordinator.

Presents one search_by_image() call regardless of where the work runs:

    ExecutionMode.REMOTE  the raw image is uploaded and the catalog
                          service extracts, ranks and answers.
    ExecutionMode.LOCAL   the backbone runs in-process (loaded through the
                          ModelCache); only the embedding is sent to the
                          catalog's ranking endpoint.

Progress is exposed as an ExecutionState for UI feedback:

    IDLE -> MODEL_LOADING -> MODEL_READY -> SEARCHING -> RESULTS_READY
    FAILED is reachable from any non-terminal state.

The most recent call wins. A call that is overtaken by a newer one never
surfaces its result or error and never changes the state.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, List, Optional

from .config import DEFAULT_MODE, SearchConfig
from .errors import ModelLoadError, ModelNotLoadedError, RemoteSearchError, UnsupportedFormatError
from .extractor import extract
from .model_cache import ModelCache
from .preprocessing import encode_image, preprocess, preprocess_from_bytes
from .remote import CatalogMatch, RemoteSearchClient

logger = logging.getLogger(__name__)


class ExecutionState(str, Enum):
    IDLE = "idle"
    MODEL_LOADING = "model_loading"
    MODEL_READY = "model_ready"
    SEARCHING = "searching"
    RESULTS_READY = "results_ready"
    FAILED = "failed"


class ExecutionMode(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"

    @classmethod
    def parse(cls, value: str) -> "ExecutionMode":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown execution mode {value!r}; expected 'local' or 'remote'") from None


def user_message(error: Exception) -> str:
    """Short, user-facing description of a search failure."""
    if isinstance(error, UnsupportedFormatError):
        return "Unsupported image format"
    if isinstance(error, ModelLoadError):
        return "Could not load the image model"
    if isinstance(error, ModelNotLoadedError):
        return "The image model is not ready"
    if isinstance(error, RemoteSearchError):
        return str(error) or "Search request failed"
    return "Image search failed"


class SearchCoordinator:
    """
    Runs image searches in the configured ExecutionMode and tracks state.

    Args:
        client: Client for the catalog search endpoints.
        mode: Where extraction happens. Defaults to IMAGE_SEARCH_MODE.
        model_cache: Backbone cache for LOCAL mode. Shared caches keep the
            model loaded across coordinators; one is created if omitted.
        config: Default SearchConfig for calls that don't pass one.
    """

    def __init__(self,
                 client: RemoteSearchClient,
                 mode: Optional[ExecutionMode] = None,
                 model_cache: Optional[ModelCache] = None,
                 config: Optional[SearchConfig] = None):
        self.client = client
        self.mode = mode if mode is not None else ExecutionMode.parse(DEFAULT_MODE)
        if self.mode is ExecutionMode.LOCAL and model_cache is None:
            model_cache = ModelCache()
        self.model_cache = model_cache
        self.config = config or SearchConfig()

        self._state = ExecutionState.IDLE
        self._results: List[CatalogMatch] = []
        self._error: Optional[str] = None
        self._generation = 0
        self._listeners: List[Callable[[ExecutionState], None]] = []

    @property
    def state(self) -> ExecutionState:
        return self._state

    @property
    def results(self) -> List[CatalogMatch]:
        return list(self._results)

    @property
    def error(self) -> Optional[str]:
        return self._error

    def subscribe(self, listener: Callable[[ExecutionState], None]):
        """Call listener(state) on every state transition."""
        self._listeners.append(listener)

    def _transition(self, state: ExecutionState):
        self._state = state
        for listener in self._listeners:
            listener(state)

    def _superseded(self, generation: int) -> bool:
        return generation != self._generation

    async def search_by_image(self, image,
                              config: Optional[SearchConfig] = None,
                              category: Optional[str] = None,
                              search_text: Optional[str] = None) -> Optional[List[CatalogMatch]]:
        """
        Search the catalog for products that look like ``image``.

        Args:
            image: Encoded image bytes (JPEG/PNG/WEBP), a decoded RGB pixel
                array, or an image tensor.
            config: Per-call override of the default SearchConfig.
            category: LOCAL mode only; restrict ranking to one catalog category.
            search_text: REMOTE mode only; free text sent with the upload.

        Returns:
            Matches best first, or None if a newer call superseded this one.

        Raises:
            ImageSearchError: On preprocessing, model or remote failures;
                the coordinator is left in FAILED with a user-facing error.
        """
        self._generation += 1
        generation = self._generation
        config = config or self.config

        self._results = []
        self._error = None

        try:
            if self.mode is ExecutionMode.REMOTE:
                results = await self._search_remote(image, search_text)
            else:
                results = await self._search_local(image, config, generation, category)
        except Exception as e:
            if self._superseded(generation):
                logger.info(f"Superseded search failed, ignoring: {e}")
                return None
            self._error = user_message(e)
            logger.error(f"Image search failed ({self.mode.value}): {e}")
            self._transition(ExecutionState.FAILED)
            raise

        if results is None or self._superseded(generation):
            logger.debug("Search superseded by a newer call; result discarded")
            return None

        self._results = list(results)
        self._transition(ExecutionState.RESULTS_READY)
        logger.info(f"Image search complete ({self.mode.value}): {len(results)} results")
        return results

    async def _search_remote(self, image, search_text: Optional[str]) -> List[CatalogMatch]:
        self._transition(ExecutionState.SEARCHING)
        data, content_type = await asyncio.to_thread(encode_image, image)
        return await self.client.search_by_image(data, content_type=content_type,
                                                 search_text=search_text)

    async def _search_local(self, image, config: SearchConfig,
                            generation: int,
                            category: Optional[str]) -> Optional[List[CatalogMatch]]:
        handle = self.model_cache.handle
        if handle is None:
            self._transition(ExecutionState.MODEL_LOADING)
            handle = await self.model_cache.load(config)
            if self._superseded(generation):
                return None
            self._transition(ExecutionState.MODEL_READY)

        self._transition(ExecutionState.SEARCHING)
        if isinstance(image, (bytes, bytearray, memoryview)):
            tensor = await asyncio.to_thread(preprocess_from_bytes, bytes(image), handle.input_size)
        else:
            tensor = await asyncio.to_thread(preprocess, image, handle.input_size)

        embedding = await extract(tensor, handle)
        if self._superseded(generation):
            return None
        return await self.client.search_by_embedding(embedding, config, category=category)

    def reset(self):
        """Return to IDLE and clear results and errors; the model stays loaded."""
        self._generation += 1
        self._results = []
        self._error = None
        self._transition(ExecutionState.IDLE)
