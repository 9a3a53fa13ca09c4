import asyncio

import pytest

from core.errors import TransportFailure
from core.proxy.cache_store import CacheStorage, RequestKey, StoredResponse
from core.proxy.classifier import Strategy
from core.proxy.network import OutboundRequest
from core.proxy.strategies import StrategyEngine

ORIGIN = "https://jobs.example.com"


def run_async(coro):
    return asyncio.run(coro)


def make_engine(network):
    storage = CacheStorage()
    engine = StrategyEngine(storage, network.fetch, "app-static-v1", "app-dynamic-v1")
    return storage, engine


def get(path):
    return OutboundRequest.get(f"{ORIGIN}{path}")


async def cached_body(storage, name, path):
    generation = await storage.open(name)
    response = await generation.match(RequestKey.from_url("GET", f"{ORIGIN}{path}"))
    return None if response is None else response.body


def test_cache_first_fetches_once_then_serves_from_cache(network):
    async def scenario():
        storage, engine = make_engine(network)
        network.respond("/index.html", "<html>v1</html>")

        first = await engine.cache_first(get("/index.html"))
        second = await engine.cache_first(get("/index.html"))

        assert first.body == second.body == b"<html>v1</html>"
        assert network.count("/index.html") == 1
        assert await cached_body(storage, "app-static-v1", "/index.html") == b"<html>v1</html>"

    run_async(scenario())


def test_cache_first_returns_offline_response_on_transport_failure(network):
    async def scenario():
        storage, engine = make_engine(network)
        network.offline = True

        response = await engine.cache_first(get("/index.html"))

        assert response.status == 503
        assert response.body == b"Offline"
        assert await cached_body(storage, "app-static-v1", "/index.html") is None
        assert engine.get_stats()["cache_first"]["fallbacks"] == 1

    run_async(scenario())


def test_error_status_counts_as_successful_fetch(network):
    async def scenario():
        storage, engine = make_engine(network)
        network.respond("/static/js/main.chunk.js", "gone", status=404)

        response = await engine.cache_first(get("/static/js/main.chunk.js"))

        assert response.status == 404
        assert await cached_body(storage, "app-static-v1", "/static/js/main.chunk.js") == b"gone"

    run_async(scenario())


def test_network_first_stores_and_overwrites(network):
    async def scenario():
        storage, engine = make_engine(network)
        network.respond("/api/jobs", '{"jobs": [1]}')
        await engine.network_first(get("/api/jobs"))

        network.respond("/api/jobs", '{"jobs": [1, 2]}')
        response = await engine.network_first(get("/api/jobs"))

        assert response.body == b'{"jobs": [1, 2]}'
        assert await cached_body(storage, "app-dynamic-v1", "/api/jobs") == b'{"jobs": [1, 2]}'
        assert network.count("/api/jobs") == 2

    run_async(scenario())


def test_network_first_falls_back_to_cached_entry(network):
    async def scenario():
        storage, engine = make_engine(network)
        network.respond("/api/jobs", '{"jobs": [1]}')
        await engine.network_first(get("/api/jobs"))

        network.offline = True
        response = await engine.network_first(get("/api/jobs"))

        assert response.body == b'{"jobs": [1]}'
        assert engine.get_stats()["network_first"]["fallbacks"] == 1

    run_async(scenario())


def test_network_first_propagates_failure_without_cached_entry(network):
    async def scenario():
        _, engine = make_engine(network)
        network.offline = True
        with pytest.raises(TransportFailure):
            await engine.network_first(get("/api/jobs"))

    run_async(scenario())


def test_stale_while_revalidate_serves_cache_and_refreshes_in_background(network):
    async def scenario():
        storage, engine = make_engine(network)
        network.respond("/jobs/42", "old")
        await engine.stale_while_revalidate(get("/jobs/42"))

        network.respond("/jobs/42", "new")
        network.delay = 0.05
        response = await engine.stale_while_revalidate(get("/jobs/42"))

        assert response.body == b"old"
        assert engine.pending_refreshes == 1
        assert await cached_body(storage, "app-dynamic-v1", "/jobs/42") == b"old"

        await engine.drain()
        assert engine.pending_refreshes == 0

        network.delay = 0
        response = await engine.stale_while_revalidate(get("/jobs/42"))
        assert response.body == b"new"
        await engine.drain()

    run_async(scenario())


def test_stale_while_revalidate_swallows_background_failure(network):
    async def scenario():
        storage, engine = make_engine(network)
        network.respond("/jobs/42", "cached")
        await engine.stale_while_revalidate(get("/jobs/42"))

        network.offline = True
        response = await engine.stale_while_revalidate(get("/jobs/42"))
        await engine.drain()

        assert response.body == b"cached"
        assert await cached_body(storage, "app-dynamic-v1", "/jobs/42") == b"cached"

    run_async(scenario())


def test_stale_while_revalidate_miss_propagates_failure(network):
    async def scenario():
        storage, engine = make_engine(network)
        network.offline = True
        with pytest.raises(TransportFailure):
            await engine.stale_while_revalidate(get("/jobs/42"))
        assert await cached_body(storage, "app-dynamic-v1", "/jobs/42") is None

    run_async(scenario())


def test_pass_through_never_writes_cache(network):
    async def scenario():
        storage, engine = make_engine(network)
        request = OutboundRequest(key=RequestKey.from_url("POST", f"{ORIGIN}/api/jobs"), body=b"{}")

        response = await engine.handle(Strategy.IGNORE, request)

        assert response.status == 404
        assert await storage.keys() == []

    run_async(scenario())


def test_cancelled_request_does_not_write_cache(network):
    async def scenario():
        storage, engine = make_engine(network)
        network.respond("/api/jobs", "late")
        network.delay = 0.2

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(engine.network_first(get("/api/jobs")), timeout=0.01)

        assert await cached_body(storage, "app-dynamic-v1", "/api/jobs") is None

    run_async(scenario())


def test_handle_counts_requests_per_strategy(network):
    async def scenario():
        _, engine = make_engine(network)
        network.respond("/", "home")
        await engine.handle(Strategy.CACHE_FIRST, get("/"))
        await engine.handle(Strategy.CACHE_FIRST, get("/"))

        stats = engine.get_stats()["cache_first"]
        assert stats["requests"] == 2
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["network_fetches"] == 1

    run_async(scenario())
