# core/proxy/classifier.py
"""Классификация перехваченных запросов по стратегиям кэширования"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable

from core.proxy.cache_store import RequestKey


class Strategy(str, Enum):
    IGNORE = "ignore"
    CACHE_FIRST = "cache_first"
    NETWORK_FIRST = "network_first"
    STALE_WHILE_REVALIDATE = "stale_while_revalidate"


@dataclass(frozen=True)
class CachePolicy:
    """Политика классификации: origin приложения, манифест статики, префикс API"""

    origin: str
    static_manifest: FrozenSet[str]
    api_prefix: str = "/api/"

    @classmethod
    def create(cls, origin: str, static_manifest: Iterable[str], api_prefix: str = "/api/") -> "CachePolicy":
        return cls(origin=origin.rstrip('/').lower(), static_manifest=frozenset(static_manifest),
                   api_prefix=api_prefix)


def classify(request: RequestKey, policy: CachePolicy) -> Strategy:
    """
    Выбирает стратегию для запроса

    Порядок проверок строгий, первое совпадение выигрывает:
    не-GET, чужой origin, путь из манифеста, префикс API, остальное.

    Args:
        request: Ключ перехваченного запроса
        policy: Политика кэширования

    Returns:
        Strategy: Выбранная стратегия
    """
    if request.method != "GET":
        return Strategy.IGNORE

    if request.origin != policy.origin:
        return Strategy.IGNORE

    path = request.path
    if path in policy.static_manifest:
        return Strategy.CACHE_FIRST

    if path.startswith(policy.api_prefix):
        return Strategy.NETWORK_FIRST

    return Strategy.STALE_WHILE_REVALIDATE
