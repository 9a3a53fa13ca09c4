# proxy_manager.py
import asyncio
import logging
import time
import threading
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional

from aiohttp import web

from core.config_manager import ConfigManager, get_app_data_dir, get_config
from core.errors import CacheUnavailable, ConfigurationError, PayloadError, PermissionDenied, ProxyError, TransportFailure
from core.event_dispatcher import EventDispatcher, EventKind, build_dispatcher
from core.lifecycle_manager import LifecycleState
from core.notification_dispatcher import PushNotificationDescriptor
from core.proxy.cache_store import CacheStorage, RequestKey
from core.proxy.network import NetworkFetcher, OutboundRequest
from utils.connectivity import ConnectivityMonitor
from utils.port_utils import check_port_availability

logger = logging.getLogger(__name__)

CONTROL_PREFIX = '/__proxy__'
# Сколько последних уведомлений и переходов хранится для хост-приложения
HISTORY_LIMIT = 100


class ProxyServer:
    """Локальный сервер: перехватывает запросы приложения и обслуживает их через стратегии кэша"""

    def __init__(self, config: ConfigManager, storage: Optional[CacheStorage] = None,
                 fetcher: Optional[NetworkFetcher] = None, snapshot_path: Optional[Path] = None):
        self.config = config
        proxy_config = config.get_proxy_config()
        self.upstream_url = proxy_config.get('upstream_url', '').rstrip('/')
        self.snapshot_path = snapshot_path

        self.storage = storage if storage is not None else self._load_storage(snapshot_path)

        self.fetcher = fetcher or NetworkFetcher(
            total_timeout=proxy_config.get('request_timeout', 90),
            connect_timeout=proxy_config.get('connect_timeout', 10),
            limit=proxy_config.get('max_connections', 100),
            limit_per_host=proxy_config.get('max_connections_per_host', 50),
        )

        # Побочные эффекты для хост-приложения
        self.shown_notifications: Deque[PushNotificationDescriptor] = deque(maxlen=HISTORY_LIMIT)
        self.navigation_requests: Deque[str] = deque(maxlen=HISTORY_LIMIT)
        self.update_available = False

        self.dispatcher: EventDispatcher = build_dispatcher(
            config=config,
            storage=self.storage,
            fetch=self.fetcher.fetch,
            display=self._display_notification,
            navigate=self._navigate,
            on_update_found=self._on_update_found,
            on_controller_change=self._on_controller_change,
        )

        sync_config = config.get_sync_config()
        self.monitor = ConnectivityMonitor(
            health_url=f"{self.upstream_url}{sync_config.get('health_path', '/')}",
            on_online=self._on_connectivity_regained,
            needs_recovery=self._needs_recovery,
            interval=sync_config.get('probe_interval', 30),
        )

        self.stats = {
            'total_requests': 0,
            'total_responses': 0,
            'active_connections': 0,
            'errors': 0
        }

    @staticmethod
    def _load_storage(snapshot_path: Optional[Path]) -> CacheStorage:
        if snapshot_path is None:
            return CacheStorage()
        try:
            return CacheStorage.load(snapshot_path)
        except CacheUnavailable as e:
            logger.error(f"❌ Снимок кэша поврежден, начинаем с пустого кэша: {e}")
            return CacheStorage()

    async def initialize(self, monitor: bool = True):
        """Инициализация пула соединений и install/activate текущих поколений"""
        await self.fetcher.initialize()
        await self.install_and_activate()
        if monitor:
            self.monitor.start()

    async def install_and_activate(self) -> bool:
        try:
            await self.dispatcher.dispatch(EventKind.INSTALL)
        except ConfigurationError as e:
            logger.error(f"❌ Некорректный манифест, install прерван: {e}")
            return False
        except CacheUnavailable as e:
            logger.error(f"❌ Install не выполнен, повтор при восстановлении связи: {e}")
            return False

        await self.dispatcher.dispatch(EventKind.ACTIVATE)
        return True

    async def cleanup(self):
        """Очистка ресурсов"""
        await self.monitor.stop()
        await self.dispatcher.engine.drain()
        await self.fetcher.cleanup()
        if self.snapshot_path:
            try:
                self.storage.save(self.snapshot_path)
            except CacheUnavailable as e:
                logger.error(f"❌ Не удалось сохранить кэш: {e}")

    async def _display_notification(self, title: str, descriptor: PushNotificationDescriptor):
        self.shown_notifications.append(descriptor)
        logger.info(f"🔔 {title}: {descriptor.body}")

    async def _navigate(self, route: str):
        self.navigation_requests.append(route)

    def _on_update_found(self, version: str, previous: List[str]):
        self.update_available = True
        logger.info(f"🆕 Доступна новая версия кэша {version} (старые: {', '.join(previous)})")

    def _on_controller_change(self, version: str, removed: List[str]):
        logger.info(f"🔄 Активирована версия {version}, удалено поколений: {len(removed)}")

    def _needs_recovery(self) -> bool:
        return self.dispatcher.lifecycle.state is LifecycleState.PARSED

    async def _on_connectivity_regained(self):
        if self._needs_recovery():
            await self.install_and_activate()
        await self.dispatcher.sync_queue.flush()

    def _build_request(self, request: web.Request, body: bytes) -> OutboundRequest:
        if request.raw_path.startswith(('http://', 'https://')):
            # Запрос в absolute-form (клиент использует нас как forward proxy)
            url = request.raw_path
        else:
            url = f"{self.upstream_url}{request.path_qs}"
        return OutboundRequest(
            key=RequestKey.from_url(request.method, url),
            headers=tuple(request.headers.items()),
            body=body,
        )

    async def handle_http(self, request: web.Request) -> web.Response:
        """Обработка перехваченного запроса через таблицу событий"""
        self.stats['total_requests'] += 1
        self.stats['active_connections'] += 1

        try:
            body = await request.read()
            outbound = self._build_request(request, body)
            response = await self.dispatcher.dispatch(EventKind.FETCH, outbound)
            self.stats['total_responses'] += 1
            return web.Response(
                body=response.body,
                status=response.status,
                reason=response.reason or None,
                headers=list(response.headers)
            )

        except TransportFailure as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Upstream недоступен и в кэше нет ответа: {e}")
            return web.Response(
                text=(
                    "Upstream server is unreachable and no cached response exists.\n\n"
                    f"Details: {e}"
                ),
                status=504 if e.timeout else 502,
                content_type="text/plain"
            )

        except ProxyError as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Proxy error: {e}")
            return web.Response(text=f"Proxy error: {e}", status=500, content_type="text/plain")

        finally:
            self.stats['active_connections'] -= 1

    async def handle_status(self, request: web.Request) -> web.Response:
        status = self.dispatcher.get_stats()
        status['requests'] = self.get_full_stats()
        status['network'] = self.fetcher.get_stats()
        status['update_available'] = self.update_available
        return web.json_response(status)

    async def handle_sync_register(self, request: web.Request) -> web.Response:
        tag = request.match_info['tag']
        try:
            task = self.dispatcher.sync_queue.register(tag)
        except PermissionDenied as e:
            logger.warning(f"⚠️ Background sync registration refused: {e}")
            return web.json_response({'error': str(e)}, status=403)
        return web.json_response({'tag': task.tag, 'state': task.state.value})

    async def handle_sync_run(self, request: web.Request) -> web.Response:
        tag = request.match_info['tag']
        state = await self.dispatcher.dispatch(EventKind.SYNC, tag)
        if state is None:
            return web.json_response({'error': f"Unknown sync tag '{tag}'"}, status=404)
        return web.json_response({'tag': tag, 'state': state.value})

    async def handle_push(self, request: web.Request) -> web.Response:
        payload = await request.read()
        try:
            descriptor = await self.dispatcher.dispatch(EventKind.PUSH, payload)
        except PayloadError as e:
            return web.json_response({'error': str(e)}, status=400)
        if descriptor is None:
            return web.json_response({'shown': False})
        return web.json_response({'shown': True, 'notification': descriptor.to_dict()})

    async def handle_notification_click(self, request: web.Request) -> web.Response:
        action = request.query.get('action')
        route = await self.dispatcher.dispatch(EventKind.NOTIFICATION_CLICK, action)
        return web.json_response({'action': action, 'navigate': route})

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(f'{CONTROL_PREFIX}/status', self.handle_status)
        app.router.add_post(f'{CONTROL_PREFIX}/sync/{{tag}}', self.handle_sync_register)
        app.router.add_post(f'{CONTROL_PREFIX}/sync/{{tag}}/run', self.handle_sync_run)
        app.router.add_post(f'{CONTROL_PREFIX}/push', self.handle_push)
        app.router.add_post(f'{CONTROL_PREFIX}/notificationclick', self.handle_notification_click)
        app.router.add_route('*', '/{path:.*}', self.handle_http)
        return app

    def get_full_stats(self):
        """Получить полную статистику прокси"""
        return {
            'requests': self.stats['total_requests'],
            'responses': self.stats['total_responses'],
            'active': self.stats['active_connections'],
            'errors': self.stats['errors']
        }


class ProxyManager:
    def __init__(self, config: Optional[ConfigManager] = None):
        self.config = config or get_config()
        self.is_running = False
        self.host = '127.0.0.1'
        self.local_port = 61000
        self.proxy = None
        self.runner = None
        self.site = None
        self.loop = None
        self.thread = None

        # Error tracking
        self.last_error_type = None  # 'port', 'config', 'unknown'
        self.last_error_details = None

    def start(self):
        """
        Запуск прокси сервера в отдельном потоке

        Returns:
            bool: True если успешно запущен
        """
        if self.is_running:
            logger.warning("⚠️ Прокси уже запущен")
            return False

        proxy_config = self.config.get_proxy_config()
        if not proxy_config.get('upstream_url'):
            logger.error("❌ Upstream URL is required")
            self.last_error_type = 'config'
            self.last_error_details = "proxy.upstream_url is empty"
            return False

        self.host = proxy_config.get('host', '127.0.0.1')
        self.local_port = proxy_config.get('local_port', 61000)

        port_available, port_message = check_port_availability(self.local_port, self.host)
        if not port_available:
            logger.error(f"❌ {port_message}")
            self.last_error_type = 'port'
            self.last_error_details = port_message
            return False

        self.thread = threading.Thread(target=self._run_server, daemon=True)
        self.thread.start()

        # Ждём запуска (максимум 5 секунд)
        for _ in range(50):
            if self.is_running or self.last_error_type:
                break
            time.sleep(0.1)

        if not self.is_running:
            logger.error("❌ Прокси не запустился за отведенное время")
            return False

        logger.info(f"✅ Proxy server started on http://{self.host}:{self.local_port}")
        return True

    def _run_server(self):
        """Запускает сервер в отдельном event loop"""
        try:
            self.loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self.loop)

            self.loop.run_until_complete(self._start_server())
            if self.is_running:
                self.loop.run_forever()

        except Exception as e:
            logger.error(f"❌ Ошибка в event loop: {e}", exc_info=True)
            self.is_running = False
        finally:
            if self.loop:
                self.loop.close()

    async def _start_server(self):
        """Асинхронный запуск сервера"""
        try:
            snapshot_path = None
            if self.config.get('proxy.persist_cache', True):
                snapshot_path = get_app_data_dir() / 'cache' / 'storage.json'

            self.proxy = ProxyServer(self.config, snapshot_path=snapshot_path)
            await self.proxy.initialize()

            self.runner = web.AppRunner(self.proxy.build_app(), access_log=None)
            await self.runner.setup()

            self.site = web.TCPSite(self.runner, host=self.host, port=self.local_port)
            await self.site.start()

            self.is_running = True
            logger.info(f"✅ Сервер успешно запущен на порту {self.local_port}")

        except ConfigurationError as e:
            logger.error(f"❌ Ошибка конфигурации: {e}")
            self.last_error_type = 'config'
            self.last_error_details = str(e)
            self.is_running = False
        except (OSError, ProxyError) as e:
            logger.error(f"❌ Ошибка запуска сервера: {e}")
            self.last_error_type = 'unknown'
            self.last_error_details = str(e)
            self.is_running = False

    def stop(self):
        """Остановка прокси сервера"""
        if not self.is_running:
            logger.warning("⚠️ Прокси не запущен")
            return

        logger.info("🛑 Stopping proxy...")
        self.is_running = False

        if self.loop and self.loop.is_running():
            future = asyncio.run_coroutine_threadsafe(self._stop_server(), self.loop)
            try:
                future.result(timeout=10)
            except Exception as e:
                logger.error(f"❌ Ошибка при остановке сервера: {e}")
            self.loop.call_soon_threadsafe(self.loop.stop)

        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=5)

        if self.proxy:
            stats = self.proxy.get_full_stats()
            logger.info(
                f"📊 Session statistics:\n"
                f"   Total requests: {stats.get('requests', 0)}\n"
                f"   Total responses: {stats.get('responses', 0)}\n"
                f"   Errors: {stats.get('errors', 0)}"
            )

        logger.info("✅ Proxy stopped")

    async def _stop_server(self):
        """Асинхронная остановка сервера"""
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        if self.proxy:
            await self.proxy.cleanup()
        logger.debug("✅ Сервер успешно остановлен")

    def get_status(self):
        """Возвращает статус прокси"""
        status = {
            'running': self.is_running,
            'host': self.host,
            'port': self.local_port,
            'upstream_url': self.config.get('proxy.upstream_url'),
            'last_error': self.last_error_type,
        }
        if self.last_error_details:
            status['last_error_details'] = self.last_error_details

        if self.proxy and self.is_running:
            status['proxy_stats'] = self.proxy.get_full_stats()
            status['cache'] = self.proxy.dispatcher.get_stats()

        return status


# Синглтон для глобального доступа
_proxy_manager = None


def get_proxy_manager() -> ProxyManager:
    """Возвращает глобальный экземпляр ProxyManager"""
    global _proxy_manager
    if _proxy_manager is None:
        _proxy_manager = ProxyManager()
    return _proxy_manager
