# core/lifecycle_manager.py
"""Жизненный цикл поколений кэша: install и activate"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

from core.errors import CacheUnavailable, ConfigurationError, LifecycleError, TransportFailure
from core.proxy.cache_store import CacheStorage, GenerationKind, RequestKey
from core.proxy.network import OutboundRequest
from core.proxy.strategies import Fetch

logger = logging.getLogger(__name__)

Callback = Callable[..., Optional[Awaitable[None]]]


class LifecycleState(str, Enum):
    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"


def generation_name(namespace: str, kind: GenerationKind, version: str) -> str:
    """Имя поколения вида <namespace>-<kind>-<version>"""
    return f"{namespace}-{kind.value}-{version}"


def validate_manifest(manifest) -> List[str]:
    """
    Проверяет манифест статики

    Returns:
        List[str]: Пути манифеста без дубликатов, в исходном порядке

    Raises:
        ConfigurationError: если манифест не список абсолютных путей
    """
    if not isinstance(manifest, (list, tuple)):
        raise ConfigurationError(f"Static manifest must be a list, got {type(manifest).__name__}")

    paths = []
    for entry in manifest:
        if not isinstance(entry, str) or not entry.startswith('/'):
            raise ConfigurationError(f"Invalid manifest entry: {entry!r} (absolute path expected)")
        if entry not in paths:
            paths.append(entry)
    return paths


async def _notify(callback: Optional[Callback], *args):
    if callback is None:
        return
    result = callback(*args)
    if asyncio.iscoroutine(result):
        await result


class LifecycleManager:
    """
    Создает текущие поколения при install и удаляет устаревшие при activate

    Поколения собираются вне хранилища и публикуются одной операцией,
    поэтому частично заполненный static кэш никогда не виден как текущий.
    """

    def __init__(self, storage: CacheStorage, fetch: Fetch, origin: str, namespace: str, version: str,
                 manifest: Sequence[str], on_update_found: Optional[Callback] = None,
                 on_controller_change: Optional[Callback] = None):
        if not namespace or not version:
            raise ConfigurationError("Cache namespace and version must be non-empty")

        self.storage = storage
        self.fetch = fetch
        self.origin = origin.rstrip('/')
        self.namespace = namespace
        self.version = version
        self.manifest = manifest
        self.on_update_found = on_update_found
        self.on_controller_change = on_controller_change

        self.static_name = generation_name(namespace, GenerationKind.STATIC, version)
        self.dynamic_name = generation_name(namespace, GenerationKind.DYNAMIC, version)

        self.state = LifecycleState.PARSED
        self._installed = asyncio.Event()
        self._lock = asyncio.Lock()

    @property
    def prefix(self) -> str:
        return f"{self.namespace}-"

    @property
    def current_names(self) -> frozenset:
        return frozenset((self.static_name, self.dynamic_name))

    async def install(self):
        """
        Создает и заполняет текущие поколения

        Raises:
            ConfigurationError: некорректный манифест, ничего не публикуется
            CacheUnavailable: не удалось загрузить ресурс манифеста или записать кэш
        """
        async with self._lock:
            self.state = LifecycleState.INSTALLING
            logger.info(f"📦 Install: {self.static_name}, {self.dynamic_name}")

            try:
                paths = validate_manifest(self.manifest)
                static = self.storage.stage(self.static_name, GenerationKind.STATIC)
                for path in paths:
                    await self._precache(static, path)

                if await self.storage.has(self.dynamic_name):
                    dynamic = await self.storage.open(self.dynamic_name, GenerationKind.DYNAMIC)
                else:
                    dynamic = self.storage.stage(self.dynamic_name, GenerationKind.DYNAMIC)

                previous = [
                    name for name in await self.storage.keys()
                    if name.startswith(self.prefix) and name not in self.current_names
                ]

                await self.storage.publish(static, dynamic)
            except (ConfigurationError, CacheUnavailable):
                self.state = LifecycleState.PARSED
                logger.error("❌ Install failed, generations not published")
                raise

            self.state = LifecycleState.INSTALLED
            self._installed.set()
            logger.info(f"✅ Install complete: {len(static)} static entries")

        if previous:
            logger.info(f"🔄 New version installed over: {', '.join(previous)}")
            await _notify(self.on_update_found, self.version, previous)

    async def _precache(self, static, path: str):
        key = RequestKey.from_url("GET", f"{self.origin}{path}")
        try:
            response = await self.fetch(OutboundRequest(key=key))
        except TransportFailure as e:
            raise CacheUnavailable(f"Cannot pre-cache {path}: {e}") from e

        if not response.ok:
            raise CacheUnavailable(f"Cannot pre-cache {path}: HTTP {response.status}")
        await static.put(key, response)

    async def activate(self) -> List[str]:
        """
        Удаляет поколения приложения, не входящие в текущий набор

        Поколения без префикса приложения не затрагиваются.

        Returns:
            List[str]: Имена удаленных поколений

        Raises:
            LifecycleError: если install еще не завершился успешно
        """
        # Блокировка дожидается install, если он еще выполняется
        async with self._lock:
            if not self._installed.is_set():
                raise LifecycleError("activate() requires a completed install()")

            self.state = LifecycleState.ACTIVATING
            stale = [
                name for name in await self.storage.keys()
                if name.startswith(self.prefix) and name not in self.current_names
            ]
            for name in stale:
                await self.storage.delete(name)

            self.state = LifecycleState.ACTIVATED
            logger.info(f"✅ Activated {self.static_name}/{self.dynamic_name}, removed: {stale or 'nothing'}")

        if stale:
            await _notify(self.on_controller_change, self.version, stale)
        return stale
