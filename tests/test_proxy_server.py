import asyncio
import json

from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from core.config_manager import ConfigManager
from core.lifecycle_manager import LifecycleState
from core.proxy.cache_store import CacheStorage
from core.proxy_manager import HISTORY_LIMIT, ProxyManager, ProxyServer


def run_async(coro):
    return asyncio.run(coro)


def make_upstream(hits):
    async def page(request):
        if request.path == "/missing":
            return web.Response(status=404, text="missing")
        hits[request.path] = hits.get(request.path, 0) + 1
        return web.Response(text=f"page {request.path} #{hits[request.path]}")

    async def create_job(request):
        hits["POST"] = hits.get("POST", 0) + 1
        return web.json_response({"created": True}, status=201)

    app = web.Application()
    app.router.add_post("/api/jobs", create_job)
    app.router.add_get("/{path:.*}", page)
    return app


def make_config(tmp_path, upstream_url):
    config = ConfigManager(tmp_path / "config.json")
    config.set("proxy.upstream_url", upstream_url.rstrip("/"))
    config.set("cache.namespace", "app")
    config.set("cache.static_manifest", ["/", "/index.html"])
    return config


def test_proxy_serves_requests_through_strategies(tmp_path):
    async def scenario():
        hits = {}
        upstream = TestServer(make_upstream(hits))
        await upstream.start_server()
        config = make_config(tmp_path, str(upstream.make_url("/")))

        snapshot = tmp_path / "cache" / "storage.json"
        proxy = ProxyServer(config, snapshot_path=snapshot)
        await proxy.initialize(monitor=False)

        async with TestClient(TestServer(proxy.build_app())) as client:
            # Статика уже в кэше после install
            resp = await client.get("/index.html")
            assert resp.status == 200
            assert await resp.text() == "page /index.html #1"
            assert hits["/index.html"] == 1

            resp = await client.get("/api/jobs")
            assert await resp.text() == "page /api/jobs #1"

            resp = await client.post("/api/jobs", json={"title": "Engineer"})
            assert resp.status == 201
            assert hits["POST"] == 1

            resp = await client.get("/jobs/7")
            assert await resp.text() == "page /jobs/7 #1"

            await upstream.close()

            resp = await client.get("/api/jobs")
            assert resp.status == 200
            assert await resp.text() == "page /api/jobs #1"

            resp = await client.get("/jobs/7")
            assert await resp.text() == "page /jobs/7 #1"

            resp = await client.get("/never-seen")
            assert resp.status == 502

            resp = await client.get("/__proxy__/status")
            status = await resp.json()
            assert status["lifecycle"] == "activated"
            assert status["generations"] == {"static": "app-static-v1", "dynamic": "app-dynamic-v1"}
            assert status["strategies"]["network_first"]["fallbacks"] == 1

        await proxy.cleanup()
        assert snapshot.exists()
        restored = CacheStorage.load(snapshot)
        assert sorted(await restored.keys()) == ["app-dynamic-v1", "app-static-v1"]

    run_async(scenario())


def test_control_routes_for_sync_and_notifications(tmp_path):
    async def scenario():
        hits = {}
        upstream = TestServer(make_upstream(hits))
        await upstream.start_server()
        proxy = ProxyServer(make_config(tmp_path, str(upstream.make_url("/"))))
        await proxy.initialize(monitor=False)

        synced = []

        async def sync_jobs():
            synced.append(True)

        async with TestClient(TestServer(proxy.build_app())) as client:
            resp = await client.post("/__proxy__/sync/sync-jobs")
            assert (await resp.json())["state"] == "registered"

            proxy.dispatcher.sync_queue.register_task("sync-jobs", sync_jobs)
            resp = await client.post("/__proxy__/sync/sync-jobs/run")
            assert (await resp.json())["state"] == "completed"
            assert synced == [True]

            resp = await client.post("/__proxy__/sync/unknown/run")
            assert resp.status == 404

            resp = await client.post("/__proxy__/push", data=b"New job posted")
            body = await resp.json()
            assert body["shown"] is True
            assert body["notification"]["body"] == "New job posted"
            assert len(proxy.shown_notifications) == 1

            resp = await client.post("/__proxy__/push", data=b"")
            assert resp.status == 400

            resp = await client.post("/__proxy__/push", data=b'{"body": "x", "vibrate": [null]}')
            assert resp.status == 200
            assert (await resp.json())["notification"]["vibrate"] == [100, 50, 100]

            resp = await client.post("/__proxy__/push", data=b'{"body": "x", "actions": [{"title": "no id"}]}')
            assert resp.status == 200
            assert [a["action"] for a in (await resp.json())["notification"]["actions"]] == ["explore", "close"]

            resp = await client.post("/__proxy__/notificationclick", params={"action": "explore"})
            assert (await resp.json())["navigate"] == "/jobs"
            resp = await client.post("/__proxy__/notificationclick", params={"action": "close"})
            assert (await resp.json())["navigate"] is None
            assert list(proxy.navigation_requests) == ["/jobs"]

        await proxy.cleanup()
        await upstream.close()

    run_async(scenario())


def test_install_failure_is_retried_when_connectivity_returns(tmp_path):
    async def scenario():
        hits = {}
        upstream = TestServer(make_upstream(hits))
        await upstream.start_server()
        config = make_config(tmp_path, str(upstream.make_url("/")))
        config.set("cache.static_manifest", ["/", "/missing"])

        proxy = ProxyServer(config)
        await proxy.initialize(monitor=False)
        assert proxy.dispatcher.lifecycle.state.value == "parsed"
        assert await proxy.storage.keys() == []

        proxy.dispatcher.lifecycle.manifest = ["/"]
        await proxy._on_connectivity_regained()
        assert proxy.dispatcher.lifecycle.state.value == "activated"

        await proxy.cleanup()
        await upstream.close()

    run_async(scenario())


def test_update_detected_over_previous_version(tmp_path):
    async def scenario():
        hits = {}
        upstream = TestServer(make_upstream(hits))
        await upstream.start_server()

        storage = CacheStorage()
        await storage.open("app-static-v0")
        proxy = ProxyServer(make_config(tmp_path, str(upstream.make_url("/"))), storage=storage)
        await proxy.initialize(monitor=False)

        assert proxy.update_available is True
        assert "app-static-v0" not in await storage.keys()

        await proxy.cleanup()
        await upstream.close()

    run_async(scenario())


def test_install_retried_when_upstream_reachable_on_first_probe(tmp_path):
    async def scenario():
        published = {"ready": False}

        async def page(request):
            if request.path == "/index.html" and not published["ready"]:
                return web.Response(status=404, text="not deployed yet")
            return web.Response(text=f"page {request.path}")

        app = web.Application()
        app.router.add_get("/{path:.*}", page)
        upstream = TestServer(app)
        await upstream.start_server()

        proxy = ProxyServer(make_config(tmp_path, str(upstream.make_url("/"))))
        await proxy.initialize(monitor=False)
        assert proxy.dispatcher.lifecycle.state is LifecycleState.PARSED

        published["ready"] = True
        assert await proxy.monitor.check() is True
        assert proxy.dispatcher.lifecycle.state is LifecycleState.ACTIVATED

        await proxy.cleanup()
        await upstream.close()

    run_async(scenario())


def test_host_side_effect_history_is_bounded(tmp_path):
    async def scenario():
        proxy = ProxyServer(make_config(tmp_path, "http://127.0.0.1:9"))
        for i in range(HISTORY_LIMIT + 5):
            await proxy._navigate(f"/jobs/{i}")

        assert len(proxy.navigation_requests) == HISTORY_LIMIT
        assert proxy.navigation_requests[0] == "/jobs/5"
        assert proxy.navigation_requests[-1] == f"/jobs/{HISTORY_LIMIT + 4}"

    run_async(scenario())


def test_manager_rejects_missing_upstream(tmp_path):
    config = ConfigManager(tmp_path / "config.json")
    config.set("proxy.upstream_url", "")
    manager = ProxyManager(config)

    assert manager.start() is False
    assert manager.last_error_type == "config"
    status = manager.get_status()
    assert status["running"] is False
    assert json.dumps(status)
