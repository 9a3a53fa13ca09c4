import pytest

from core.proxy.cache_store import RequestKey
from core.proxy.classifier import CachePolicy, Strategy, classify

POLICY = CachePolicy.create(
    "https://jobs.example.com",
    ["/", "/index.html", "/static/js/main.chunk.js", "/api/manifest.json"],
    "/api/",
)


@pytest.mark.parametrize(
    "method, url, expected",
    [
        ("POST", "https://jobs.example.com/index.html", Strategy.IGNORE),
        ("DELETE", "https://jobs.example.com/api/jobs/1", Strategy.IGNORE),
        ("GET", "https://cdn.other.com/index.html", Strategy.IGNORE),
        ("GET", "http://jobs.example.com/index.html", Strategy.IGNORE),
        ("GET", "https://jobs.example.com/", Strategy.CACHE_FIRST),
        ("GET", "https://jobs.example.com/static/js/main.chunk.js", Strategy.CACHE_FIRST),
        ("GET", "https://jobs.example.com/api/jobs?page=1", Strategy.NETWORK_FIRST),
        ("GET", "https://jobs.example.com/jobs/42", Strategy.STALE_WHILE_REVALIDATE),
        ("GET", "https://jobs.example.com/apiary", Strategy.STALE_WHILE_REVALIDATE),
    ],
)
def test_classify_priority_chain(method, url, expected):
    assert classify(RequestKey.from_url(method, url), POLICY) is expected


def test_manifest_wins_over_api_prefix():
    key = RequestKey.from_url("GET", "https://jobs.example.com/api/manifest.json")
    assert classify(key, POLICY) is Strategy.CACHE_FIRST


def test_classify_is_deterministic():
    key = RequestKey.from_url("GET", "https://jobs.example.com/jobs")
    assert {classify(key, POLICY) for _ in range(5)} == {Strategy.STALE_WHILE_REVALIDATE}
