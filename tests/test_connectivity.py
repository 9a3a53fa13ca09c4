import asyncio
import socket

from aiohttp import web
from aiohttp.test_utils import TestServer

from utils.connectivity import ConnectivityMonitor


def run_async(coro):
    return asyncio.run(coro)


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def test_on_online_fires_only_on_offline_to_online_transition():
    async def scenario():
        async def health(request):
            return web.Response(status=503, text="degraded")

        app = web.Application()
        app.router.add_get("/", health)

        transitions = []

        async def on_online():
            transitions.append("online")

        async with TestServer(app) as server:
            online_url = str(server.make_url("/"))
            offline_url = f"http://127.0.0.1:{free_port()}/"
            monitor = ConnectivityMonitor(online_url, on_online, timeout=1)

            assert await monitor.check() is True
            assert transitions == []

            monitor.health_url = offline_url
            assert await monitor.check() is False

            monitor.health_url = online_url
            assert await monitor.check() is True
            assert await monitor.check() is True

        assert transitions == ["online"]

    run_async(scenario())


def test_first_successful_probe_fires_when_recovery_is_needed():
    async def scenario():
        async def health(request):
            return web.Response(text="ok")

        app = web.Application()
        app.router.add_get("/", health)

        calls = []
        pending = {"install": True}

        async def on_online():
            calls.append("online")
            pending["install"] = False

        async with TestServer(app) as server:
            monitor = ConnectivityMonitor(
                str(server.make_url("/")), on_online, timeout=1,
                needs_recovery=lambda: pending["install"],
            )
            assert await monitor.check() is True
            assert await monitor.check() is True

        assert calls == ["online"]

    run_async(scenario())


def test_start_and_stop_background_probe():
    async def scenario():
        calls = []

        async def on_online():
            calls.append(True)

        monitor = ConnectivityMonitor(f"http://127.0.0.1:{free_port()}/", on_online, interval=0.01, timeout=0.5)
        monitor.start()
        await asyncio.sleep(0.3)
        await monitor.stop()

        assert monitor.online is False
        assert calls == []

    run_async(scenario())
