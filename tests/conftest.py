import asyncio

import pytest

from core.errors import TransportFailure
from core.proxy.cache_store import StoredResponse

ORIGIN = "https://jobs.example.com"


class FakeNetwork:
    """Upstream без сети: отвечает заготовленными ответами и записывает вызовы"""

    def __init__(self):
        self.responses = {}
        self.calls = []
        self.offline = False
        self.delay = 0

    def respond(self, path, body="", status=200, headers=None):
        self.responses[f"{ORIGIN}{path}"] = StoredResponse.build(
            status=status, headers=headers or {"Content-Type": "text/plain"}, body=body
        )

    async def fetch(self, request):
        self.calls.append(request.url)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.offline:
            raise TransportFailure(request.url, "offline")
        response = self.responses.get(request.url)
        if response is None:
            return StoredResponse.build(status=404, body="not found")
        return response

    def count(self, path):
        return self.calls.count(f"{ORIGIN}{path}")


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture(autouse=True)
def app_home(tmp_path, monkeypatch):
    home = tmp_path / "app_data"
    monkeypatch.setenv("OFFLINE_PROXY_HOME", str(home))
    return home
