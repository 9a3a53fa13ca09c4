# utils/connectivity.py
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Периодически проверяет доступность upstream и сообщает о восстановлении связи"""

    def __init__(self, health_url: str, on_online: Callable[[], Awaitable[object]],
                 interval: float = 30, timeout: float = 5,
                 needs_recovery: Optional[Callable[[], bool]] = None):
        self.health_url = health_url
        self.on_online = on_online
        self.needs_recovery = needs_recovery
        self.interval = interval
        self.timeout = timeout
        self.online: Optional[bool] = None
        self._task: Optional[asyncio.Task] = None

    async def probe(self) -> bool:
        """Любой HTTP ответ означает, что upstream доступен"""
        try:
            async with ClientSession(timeout=ClientTimeout(total=self.timeout)) as session:
                async with session.get(self.health_url) as response:
                    logger.debug(f"Health probe {self.health_url}: HTTP {response.status}")
                    return True
        except (ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Health probe failed: {e}")
            return False

    async def check(self) -> bool:
        """
        Одна проверка связи

        on_online вызывается при переходе offline -> online, а также при
        первой успешной проверке, если needs_recovery() сообщает о
        незавершенной установке.
        """
        was_online = self.online
        self.online = await self.probe()

        if self.online and was_online is False:
            logger.info("🌐 Связь с upstream восстановлена")
            await self.on_online()
        elif self.online and was_online is None and self.needs_recovery and self.needs_recovery():
            logger.info("🌐 Upstream доступен, повторяем незавершенную установку")
            await self.on_online()
        elif not self.online and was_online is not False:
            logger.warning("⚠️ Upstream недоступен, переход в offline режим")

        return self.online

    async def _run(self):
        while True:
            try:
                await self.check()
            except Exception as e:
                logger.error(f"❌ Ошибка проверки связи: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    def start(self):
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
