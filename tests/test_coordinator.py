"""Tests for local/remote search coordination and progress states."""

import asyncio
import json
import threading

import httpx
import pytest

from image_search import coordinator as coordinator_module
from image_search.config import SearchConfig
from image_search.coordinator import ExecutionMode, ExecutionState, SearchCoordinator
from image_search.errors import ModelLoadError, RemoteSearchError, UnsupportedFormatError
from image_search.model_cache import ModelCache
from image_search.remote import RemoteSearchClient

from conftest import TINY_FEATURES, BlockingFetcher

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def product(product_id, similarity=90.0):
    return {
        "id": product_id,
        "name": f"Product {product_id}",
        "image": None,
        "category": "bags",
        "price": 10.0,
        "currency": "USD",
        "similarity": similarity,
    }


def make_client(handler):
    transport = httpx.MockTransport(handler)
    return RemoteSearchClient("http://catalog.test/api", client=httpx.AsyncClient(transport=transport))


def record_states(coordinator):
    states = []
    coordinator.subscribe(states.append)
    return states


class TestExecutionMode:

    def test_parse(self):
        assert ExecutionMode.parse("LOCAL") is ExecutionMode.LOCAL
        assert ExecutionMode.parse(" remote ") is ExecutionMode.REMOTE

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            ExecutionMode.parse("edge")


class TestRemoteMode:

    @pytest.mark.asyncio
    async def test_search_by_image(self, png_bytes):
        client = make_client(lambda request: httpx.Response(200, json={"results": [product("a")]}))
        coordinator = SearchCoordinator(client, mode=ExecutionMode.REMOTE)
        states = record_states(coordinator)

        results = await coordinator.search_by_image(png_bytes)

        assert [r.id for r in results] == ["a"]
        assert states == [ExecutionState.SEARCHING, ExecutionState.RESULTS_READY]
        assert coordinator.state is ExecutionState.RESULTS_READY
        assert coordinator.error is None
        assert coordinator.model_cache is None

    @pytest.mark.asyncio
    async def test_pixel_array_is_uploaded_as_jpeg(self, red_square_image):
        seen = {}

        def handler(request):
            seen["body"] = request.content
            return httpx.Response(200, json={"results": []})

        coordinator = SearchCoordinator(make_client(handler), mode=ExecutionMode.REMOTE)
        assert await coordinator.search_by_image(red_square_image) == []
        assert b"image/jpeg" in seen["body"]

    @pytest.mark.asyncio
    async def test_remote_failure(self, png_bytes):
        client = make_client(lambda request: httpx.Response(503, json={"error": "Catalog offline"}))
        coordinator = SearchCoordinator(client, mode=ExecutionMode.REMOTE)
        states = record_states(coordinator)

        with pytest.raises(RemoteSearchError):
            await coordinator.search_by_image(png_bytes)

        assert states == [ExecutionState.SEARCHING, ExecutionState.FAILED]
        assert coordinator.error == "Catalog offline"
        assert coordinator.results == []

    @pytest.mark.asyncio
    async def test_unsupported_bytes(self):
        client = make_client(lambda request: httpx.Response(200, json={"results": []}))
        coordinator = SearchCoordinator(client, mode=ExecutionMode.REMOTE)

        with pytest.raises(UnsupportedFormatError):
            await coordinator.search_by_image(b"GIF89a not supported")

        assert coordinator.state is ExecutionState.FAILED
        assert coordinator.error == "Unsupported image format"

    @pytest.mark.asyncio
    async def test_latest_call_wins(self):
        release_first = asyncio.Event()
        first_started = asyncio.Event()

        async def handler(request):
            if b"first-query" in request.content:
                first_started.set()
                await release_first.wait()
                return httpx.Response(200, json={"results": [product("stale")]})
            return httpx.Response(200, json={"results": [product("fresh")]})

        coordinator = SearchCoordinator(make_client(handler), mode=ExecutionMode.REMOTE)

        first = asyncio.ensure_future(coordinator.search_by_image(PNG_SIGNATURE + b"first-query"))
        await first_started.wait()

        second = await coordinator.search_by_image(PNG_SIGNATURE + b"second-query")
        release_first.set()
        stale = await first

        assert stale is None
        assert [r.id for r in second] == ["fresh"]
        assert [r.id for r in coordinator.results] == ["fresh"]
        assert coordinator.state is ExecutionState.RESULTS_READY

    @pytest.mark.asyncio
    async def test_superseded_failure_is_ignored(self):
        release_first = asyncio.Event()
        first_started = asyncio.Event()

        async def handler(request):
            if b"first-query" in request.content:
                first_started.set()
                await release_first.wait()
                return httpx.Response(500, json={"error": "stale failure"})
            return httpx.Response(200, json={"results": [product("fresh")]})

        coordinator = SearchCoordinator(make_client(handler), mode=ExecutionMode.REMOTE)

        first = asyncio.ensure_future(coordinator.search_by_image(PNG_SIGNATURE + b"first-query"))
        await first_started.wait()
        await coordinator.search_by_image(PNG_SIGNATURE + b"second-query")
        release_first.set()

        assert await first is None
        assert coordinator.state is ExecutionState.RESULTS_READY
        assert coordinator.error is None


class TestLocalMode:

    @pytest.mark.asyncio
    async def test_first_search_loads_model(self, counting_fetcher, red_square_image):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["payload"] = json.loads(request.content)
            return httpx.Response(200, json={"results": [product("a", 95.0)]})

        cache = ModelCache(fetch_model=counting_fetcher, model_version="tiny-test-1")
        coordinator = SearchCoordinator(
            make_client(handler), mode=ExecutionMode.LOCAL, model_cache=cache,
            config=SearchConfig(top_k=3, min_similarity=0.4),
        )
        states = record_states(coordinator)

        results = await coordinator.search_by_image(red_square_image)

        assert states == [
            ExecutionState.MODEL_LOADING,
            ExecutionState.MODEL_READY,
            ExecutionState.SEARCHING,
            ExecutionState.RESULTS_READY,
        ]
        assert [r.id for r in results] == ["a"]
        assert seen["path"] == "/api/search-by-embedding"
        assert len(seen["payload"]["embedding"]) == TINY_FEATURES
        assert seen["payload"]["topK"] == 3
        assert seen["payload"]["minSimilarity"] == 0.4

    @pytest.mark.asyncio
    async def test_loaded_model_is_reused(self, counting_fetcher, png_bytes, jpeg_bytes):
        client = make_client(lambda request: httpx.Response(200, json={"results": []}))
        cache = ModelCache(fetch_model=counting_fetcher)
        coordinator = SearchCoordinator(client, mode=ExecutionMode.LOCAL, model_cache=cache)

        await coordinator.search_by_image(png_bytes)
        states = record_states(coordinator)
        await coordinator.search_by_image(jpeg_bytes)

        assert states == [ExecutionState.SEARCHING, ExecutionState.RESULTS_READY]
        assert len(counting_fetcher.calls) == 1

    @pytest.mark.asyncio
    async def test_model_load_failure(self, red_square_image):
        def broken_fetch(source):
            raise OSError("model file not found")

        client = make_client(lambda request: httpx.Response(200, json={"results": []}))
        coordinator = SearchCoordinator(
            client, mode=ExecutionMode.LOCAL, model_cache=ModelCache(fetch_model=broken_fetch),
        )
        states = record_states(coordinator)

        with pytest.raises(ModelLoadError):
            await coordinator.search_by_image(red_square_image)

        assert states == [ExecutionState.MODEL_LOADING, ExecutionState.FAILED]
        assert coordinator.error == "Could not load the image model"

    @pytest.mark.asyncio
    async def test_reset_keeps_model(self, counting_fetcher, red_square_image):
        client = make_client(lambda request: httpx.Response(200, json={"results": [product("a")]}))
        cache = ModelCache(fetch_model=counting_fetcher)
        coordinator = SearchCoordinator(client, mode=ExecutionMode.LOCAL, model_cache=cache)

        await coordinator.search_by_image(red_square_image)
        coordinator.reset()

        assert coordinator.state is ExecutionState.IDLE
        assert coordinator.results == []
        assert coordinator.error is None
        assert cache.is_loaded

    def test_local_mode_creates_cache(self):
        client = make_client(lambda request: httpx.Response(200, json={"results": []}))
        coordinator = SearchCoordinator(client, mode=ExecutionMode.LOCAL)
        assert isinstance(coordinator.model_cache, ModelCache)
        assert not coordinator.model_cache.is_loaded


class TestLocalConcurrency:
    """Tests for overlapping local searches and cache disposal."""

    @pytest.mark.asyncio
    async def test_latest_call_wins(self, counting_fetcher, png_bytes, jpeg_bytes):
        release_first = asyncio.Event()
        first_started = asyncio.Event()
        requests = []

        async def handler(request):
            requests.append(request)
            if len(requests) == 1:
                first_started.set()
                await release_first.wait()
                return httpx.Response(200, json={"results": [product("stale")]})
            return httpx.Response(200, json={"results": [product("fresh")]})

        cache = ModelCache(fetch_model=counting_fetcher)
        coordinator = SearchCoordinator(make_client(handler), mode=ExecutionMode.LOCAL, model_cache=cache)

        first = asyncio.ensure_future(coordinator.search_by_image(png_bytes))
        await first_started.wait()
        second = await coordinator.search_by_image(jpeg_bytes)
        release_first.set()

        assert await first is None
        assert [r.id for r in second] == ["fresh"]
        assert [r.id for r in coordinator.results] == ["fresh"]
        assert coordinator.state is ExecutionState.RESULTS_READY
        assert len(counting_fetcher.calls) == 1

    @pytest.mark.asyncio
    async def test_dispose_during_model_load(self, red_square_image):
        fetcher = BlockingFetcher()
        cache = ModelCache(fetch_model=fetcher)
        client = make_client(lambda request: httpx.Response(200, json={"results": []}))
        coordinator = SearchCoordinator(client, mode=ExecutionMode.LOCAL, model_cache=cache)
        states = record_states(coordinator)

        search = asyncio.ensure_future(coordinator.search_by_image(red_square_image))
        assert await asyncio.to_thread(fetcher.started.wait, 10)
        cache.dispose()
        fetcher.proceed.set()

        with pytest.raises(ModelLoadError):
            await search
        assert states == [ExecutionState.MODEL_LOADING, ExecutionState.FAILED]
        assert coordinator.error == "Could not load the image model"
        assert cache.handle is None


class TestOffloadingAndOptions:

    @pytest.mark.asyncio
    async def test_decoding_runs_off_event_loop(self, monkeypatch, counting_fetcher, png_bytes):
        threads = []
        original = coordinator_module.preprocess_from_bytes

        def recording_preprocess(buffer, input_size):
            threads.append(threading.get_ident())
            return original(buffer, input_size)

        monkeypatch.setattr(coordinator_module, "preprocess_from_bytes", recording_preprocess)
        client = make_client(lambda request: httpx.Response(200, json={"results": []}))
        coordinator = SearchCoordinator(client, mode=ExecutionMode.LOCAL,
                                        model_cache=ModelCache(fetch_model=counting_fetcher))

        await coordinator.search_by_image(png_bytes)

        assert len(threads) == 1
        assert threads[0] != threading.get_ident()

    @pytest.mark.asyncio
    async def test_encoding_runs_off_event_loop(self, monkeypatch, red_square_image):
        threads = []
        original = coordinator_module.encode_image

        def recording_encode(image):
            threads.append(threading.get_ident())
            return original(image)

        monkeypatch.setattr(coordinator_module, "encode_image", recording_encode)
        client = make_client(lambda request: httpx.Response(200, json={"results": []}))
        coordinator = SearchCoordinator(client, mode=ExecutionMode.REMOTE)

        await coordinator.search_by_image(red_square_image)

        assert len(threads) == 1
        assert threads[0] != threading.get_ident()

    @pytest.mark.asyncio
    async def test_category_sent_in_local_mode(self, counting_fetcher, red_square_image):
        payloads = []

        def handler(request):
            payloads.append(json.loads(request.content))
            return httpx.Response(200, json={"results": []})

        coordinator = SearchCoordinator(make_client(handler), mode=ExecutionMode.LOCAL,
                                        model_cache=ModelCache(fetch_model=counting_fetcher))
        await coordinator.search_by_image(red_square_image, category="bags")

        assert payloads[0]["categoryFilter"] == "bags"

    @pytest.mark.asyncio
    async def test_search_text_sent_in_remote_mode(self, png_bytes):
        bodies = []

        def handler(request):
            bodies.append(request.content)
            return httpx.Response(200, json={"results": []})

        coordinator = SearchCoordinator(make_client(handler), mode=ExecutionMode.REMOTE)
        await coordinator.search_by_image(png_bytes, search_text="leather tote")

        assert b'name="searchText"' in bodies[0]
        assert b"leather tote" in bodies[0]
