# core/proxy/strategies.py
"""
Стратегии кэширования: CacheFirst, NetworkFirst, StaleWhileRevalidate, Ignore

Каждая стратегия работает с одним поколением кэша (static или dynamic)
и с сетевым слоем. Сетевой ответ с кодом 4xx/5xx считается успешным
и кэшируется; ошибкой считается только TransportFailure.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Set

from core.errors import TransportFailure
from core.proxy.cache_store import CacheStorage, GenerationKind, StoredResponse
from core.proxy.classifier import Strategy
from core.proxy.network import OutboundRequest

logger = logging.getLogger(__name__)

Fetch = Callable[[OutboundRequest], Awaitable[StoredResponse]]

OFFLINE_RESPONSE = StoredResponse.build(
    status=503,
    headers={'Content-Type': 'text/plain'},
    body='Offline',
    reason='Service Unavailable'
)


class StrategyEngine:
    """Разрешает классифицированный запрос между кэшем и сетью"""

    def __init__(self, storage: CacheStorage, fetch: Fetch, static_name: str, dynamic_name: str):
        """
        Args:
            storage: Хранилище поколений кэша
            fetch: Асинхронная функция сетевого запроса
            static_name: Имя текущего static поколения
            dynamic_name: Имя текущего dynamic поколения
        """
        self.storage = storage
        self.fetch = fetch
        self.static_name = static_name
        self.dynamic_name = dynamic_name

        # Фоновые обновления StaleWhileRevalidate (результат не ожидается)
        self._background: Set[asyncio.Task] = set()

        self.stats: Dict[str, Dict[str, int]] = {
            strategy.value: {'requests': 0, 'hits': 0, 'misses': 0,
                             'network_fetches': 0, 'fallbacks': 0, 'errors': 0}
            for strategy in Strategy
        }

    async def handle(self, strategy: Strategy, request: OutboundRequest) -> StoredResponse:
        """Выполняет запрос по выбранной стратегии"""
        self.stats[strategy.value]['requests'] += 1
        if strategy is Strategy.CACHE_FIRST:
            return await self.cache_first(request)
        if strategy is Strategy.NETWORK_FIRST:
            return await self.network_first(request)
        if strategy is Strategy.STALE_WHILE_REVALIDATE:
            return await self.stale_while_revalidate(request)
        return await self.pass_through(request)

    async def _network(self, strategy: Strategy, request: OutboundRequest) -> StoredResponse:
        self.stats[strategy.value]['network_fetches'] += 1
        try:
            return await self.fetch(request)
        except TransportFailure:
            self.stats[strategy.value]['errors'] += 1
            raise

    def _count_lookup(self, strategy: Strategy, cached: Optional[StoredResponse]):
        self.stats[strategy.value]['hits' if cached is not None else 'misses'] += 1

    async def cache_first(self, request: OutboundRequest) -> StoredResponse:
        """
        Cache first (static поколение)

        Попадание в кэш обслуживается без обращения к сети. При промахе
        ответ загружается и сохраняется. Если сеть недоступна, возвращается
        синтетический 503 вместо исключения.
        """
        static = await self.storage.open(self.static_name, GenerationKind.STATIC)
        cached = await static.match(request.key)
        self._count_lookup(Strategy.CACHE_FIRST, cached)
        if cached is not None:
            return cached

        try:
            response = await self._network(Strategy.CACHE_FIRST, request)
        except TransportFailure as e:
            self.stats[Strategy.CACHE_FIRST.value]['fallbacks'] += 1
            logger.warning(f"⚠️ Offline fallback для {request.key}: {e.reason or e}")
            return OFFLINE_RESPONSE

        await static.put(request.key, response)
        return response

    async def network_first(self, request: OutboundRequest) -> StoredResponse:
        """
        Network first (dynamic поколение)

        Сначала сеть; успешный ответ копируется в кэш. При сетевой ошибке
        возвращается сохраненная запись, а если ее нет, TransportFailure
        пробрасывается вызывающему.
        """
        dynamic = await self.storage.open(self.dynamic_name, GenerationKind.DYNAMIC)
        try:
            response = await self._network(Strategy.NETWORK_FIRST, request)
        except TransportFailure:
            cached = await dynamic.match(request.key)
            self._count_lookup(Strategy.NETWORK_FIRST, cached)
            if cached is None:
                raise
            self.stats[Strategy.NETWORK_FIRST.value]['fallbacks'] += 1
            logger.info(f"Сеть недоступна, ответ из кэша: {request.key}")
            return cached

        await dynamic.put(request.key, response)
        return response

    async def stale_while_revalidate(self, request: OutboundRequest) -> StoredResponse:
        """
        Stale-while-revalidate (dynamic поколение)

        При попадании кэшированный ответ возвращается сразу, а обновление
        записи запускается отдельной фоновой задачей. При промахе запрос
        выполняется синхронно, ошибка пробрасывается.
        """
        dynamic = await self.storage.open(self.dynamic_name, GenerationKind.DYNAMIC)
        cached = await dynamic.match(request.key)
        self._count_lookup(Strategy.STALE_WHILE_REVALIDATE, cached)

        if cached is not None:
            self._spawn_refresh(request)
            return cached

        response = await self._network(Strategy.STALE_WHILE_REVALIDATE, request)
        await dynamic.put(request.key, response)
        return response

    async def pass_through(self, request: OutboundRequest) -> StoredResponse:
        """Ignore: запрос уходит в сеть без участия кэша"""
        return await self._network(Strategy.IGNORE, request)

    def _spawn_refresh(self, request: OutboundRequest):
        task = asyncio.ensure_future(self._refresh(request))
        self._background.add(task)
        task.add_done_callback(self._discard_refresh)

    async def _refresh(self, request: OutboundRequest):
        response = await self._network(Strategy.STALE_WHILE_REVALIDATE, request)
        dynamic = await self.storage.open(self.dynamic_name, GenerationKind.DYNAMIC)
        await dynamic.put(request.key, response)
        logger.debug(f"Background refresh done: {request.key}")

    def _discard_refresh(self, task: asyncio.Task):
        # Результат фонового обновления отбрасывается, ошибки только логируются
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.debug(f"Background refresh failed: {error}")

    @property
    def pending_refreshes(self) -> int:
        return len(self._background)

    async def drain(self):
        """Ожидает завершения всех фоновых обновлений"""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def get_stats(self) -> dict:
        return {name: dict(counters) for name, counters in self.stats.items()}
