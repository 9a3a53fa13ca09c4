# core/proxy/network.py
"""Сетевой слой: запросы к upstream через пул соединений aiohttp"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Tuple

from aiohttp import ClientError, ClientConnectorError, ClientSession, ClientTimeout, ServerTimeoutError, TCPConnector

from core.errors import TransportFailure
from core.proxy.cache_store import RequestKey, StoredResponse

logger = logging.getLogger(__name__)

# Заголовки, которые не пересылаются между соединениями
REQUEST_SKIP_HEADERS = {'host', 'connection', 'content-length', 'transfer-encoding', 'keep-alive'}
RESPONSE_SKIP_HEADERS = {'content-encoding', 'transfer-encoding', 'connection', 'keep-alive', 'content-length'}


@dataclass(frozen=True)
class OutboundRequest:
    """Перехваченный исходящий запрос"""

    key: RequestKey
    headers: Tuple[Tuple[str, str], ...] = ()
    body: bytes = b""

    @classmethod
    def get(cls, url: str, headers=None) -> "OutboundRequest":
        return cls(key=RequestKey.from_url("GET", url), headers=tuple((headers or {}).items()))

    @property
    def method(self) -> str:
        return self.key.method

    @property
    def url(self) -> str:
        return self.key.url


class NetworkFetcher:
    """Выполняет запросы к upstream и возвращает снимки ответов"""

    def __init__(self, total_timeout: float = 90, connect_timeout: float = 10,
                 limit: int = 100, limit_per_host: int = 50):
        self.total_timeout = total_timeout
        self.connect_timeout = connect_timeout
        self.limit = limit
        self.limit_per_host = limit_per_host

        self.connector = None
        self.session = None

        # Семафор для ограничения одновременных соединений к upstream
        self.connection_semaphore = asyncio.Semaphore(limit_per_host)

        self.stats = {
            'total_requests': 0,
            'total_responses': 0,
            'errors': 0
        }

    async def initialize(self):
        """Инициализация connection pool"""
        if self.connector is None:
            self.connector = TCPConnector(
                limit=self.limit,
                limit_per_host=self.limit_per_host,
                ttl_dns_cache=300,  # DNS кэш на 5 минут
                keepalive_timeout=60,
                force_close=False,
                enable_cleanup_closed=True
            )

        if self.session is None:
            self.session = ClientSession(
                connector=self.connector,
                timeout=ClientTimeout(total=self.total_timeout, connect=self.connect_timeout)
            )

    async def cleanup(self):
        """Очистка ресурсов"""
        if self.session:
            await self.session.close()
            self.session = None
        if self.connector:
            await self.connector.close()
            self.connector = None

    async def fetch(self, request: OutboundRequest) -> StoredResponse:
        """
        Выполняет запрос к upstream

        Ответ с любым HTTP статусом (включая 4xx/5xx) считается успешным.
        Ошибкой считается только невозможность получить ответ.

        Args:
            request: Исходящий запрос

        Returns:
            StoredResponse: Снимок ответа

        Raises:
            TransportFailure: если ответ получить не удалось
        """
        self.stats['total_requests'] += 1
        await self.initialize()

        headers = {
            key: value for key, value in request.headers
            if key.lower() not in REQUEST_SKIP_HEADERS
        }

        async with self.connection_semaphore:
            try:
                async with self.session.request(
                    method=request.method,
                    url=request.url,
                    headers=headers,
                    data=request.body or None,
                    allow_redirects=False
                ) as upstream_response:
                    content = await upstream_response.read()

                    response_headers = [
                        (key, value) for key, value in upstream_response.headers.items()
                        if key.lower() not in RESPONSE_SKIP_HEADERS
                    ]

                    self.stats['total_responses'] += 1
                    logger.debug(f"Upstream response: {request.key} -> {upstream_response.status}")

                    return StoredResponse.build(
                        status=upstream_response.status,
                        headers=response_headers,
                        body=content,
                        reason=upstream_response.reason or ""
                    )

            except ClientConnectorError as e:
                self.stats['errors'] += 1
                logger.warning(f"⚠️ Upstream недоступен: {request.key}: {e}")
                raise TransportFailure(request.url, str(e)) from e

            except (ServerTimeoutError, asyncio.TimeoutError) as e:
                self.stats['errors'] += 1
                logger.warning(f"⚠️ Таймаут запроса к upstream: {request.key}")
                raise TransportFailure(request.url, "timeout", timeout=True) from e

            except ClientError as e:
                self.stats['errors'] += 1
                logger.warning(f"⚠️ Ошибка запроса к upstream: {request.key}: {e}")
                raise TransportFailure(request.url, str(e)) from e

    def get_stats(self) -> dict:
        return dict(self.stats)
