# core/event_dispatcher.py
"""
Таблица обработчиков событий прокси

Все входящие события (install, activate, fetch, sync, push,
notificationclick) проходят через одну явную таблицу вместо глобальной
регистрации слушателей.
"""

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from core.config_manager import ConfigManager
from core.errors import UnknownEvent
from core.lifecycle_manager import Callback, LifecycleManager
from core.notification_dispatcher import Display, Navigate, NotificationAction, NotificationDispatcher
from core.proxy.cache_store import CacheStorage, StoredResponse
from core.proxy.classifier import CachePolicy, classify
from core.proxy.network import OutboundRequest
from core.proxy.strategies import Fetch, StrategyEngine
from core.sync_queue import DeferredSyncQueue

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    INSTALL = "install"
    ACTIVATE = "activate"
    FETCH = "fetch"
    SYNC = "sync"
    PUSH = "push"
    NOTIFICATION_CLICK = "notificationclick"


Handler = Callable[[Any], Awaitable[Any]]


class EventDispatcher:
    def __init__(self, policy: CachePolicy, lifecycle: LifecycleManager, engine: StrategyEngine,
                 sync_queue: DeferredSyncQueue, notifications: NotificationDispatcher):
        self.policy = policy
        self.lifecycle = lifecycle
        self.engine = engine
        self.sync_queue = sync_queue
        self.notifications = notifications

        self._table: Dict[EventKind, Handler] = {
            EventKind.INSTALL: lambda _: self.lifecycle.install(),
            EventKind.ACTIVATE: lambda _: self.lifecycle.activate(),
            EventKind.FETCH: self.on_fetch,
            EventKind.SYNC: self.sync_queue.on_connectivity_regained,
            EventKind.PUSH: self.notifications.on_push,
            EventKind.NOTIFICATION_CLICK: self.notifications.on_notification_interaction,
        }

    async def dispatch(self, kind: Union[EventKind, str], payload: Any = None) -> Any:
        """
        Передает событие обработчику из таблицы

        Raises:
            UnknownEvent: если для события нет обработчика
        """
        try:
            handler = self._table[EventKind(kind)]
        except ValueError:
            raise UnknownEvent(f"No handler for event '{kind}'") from None
        return await handler(payload)

    async def on_fetch(self, request: OutboundRequest) -> StoredResponse:
        """Классифицирует запрос и выполняет выбранную стратегию"""
        strategy = classify(request.key, self.policy)
        logger.debug(f"{request.key} -> {strategy.value}")
        return await self.engine.handle(strategy, request)

    def get_stats(self) -> dict:
        return {
            'lifecycle': self.lifecycle.state.value,
            'generations': {
                'static': self.lifecycle.static_name,
                'dynamic': self.lifecycle.dynamic_name,
            },
            'strategies': self.engine.get_stats(),
            'cache': self.engine.storage.get_stats(),
            'sync_queue': self.sync_queue.tags(),
        }


def build_dispatcher(config: ConfigManager, storage: CacheStorage, fetch: Fetch, display: Display,
                     navigate: Navigate, on_update_found: Optional[Callback] = None,
                     on_controller_change: Optional[Callback] = None) -> EventDispatcher:
    """
    Собирает все компоненты прокси из конфигурации

    Raises:
        ConfigurationError: если секция cache некорректна
    """
    origin = config.get('proxy.upstream_url', '').rstrip('/')
    cache = config.get_cache_config()
    sync = config.get_sync_config()
    notifications = config.get_notifications_config()

    policy = CachePolicy.create(origin, cache['static_manifest'], cache['api_prefix'])
    lifecycle = LifecycleManager(
        storage=storage,
        fetch=fetch,
        origin=origin,
        namespace=cache['namespace'],
        version=cache['version'],
        manifest=cache['static_manifest'],
        on_update_found=on_update_found,
        on_controller_change=on_controller_change,
    )
    engine = StrategyEngine(storage, fetch, lifecycle.static_name, lifecycle.dynamic_name)
    sync_queue = DeferredSyncQueue(enabled=sync.get('enabled', True))

    actions = [
        NotificationAction(item['action'], item.get('title', item['action']))
        for item in notifications.get('actions', [])
    ]
    dispatcher = NotificationDispatcher(
        display=display,
        navigate=navigate,
        title=notifications.get('title', 'Job Connect'),
        icon=notifications.get('icon', '/static/media/logo.svg'),
        badge=notifications.get('badge', '/static/media/badge.png'),
        vibrate=notifications.get('vibrate', [100, 50, 100]),
        actions=actions,
        routes=notifications.get('routes'),
        enabled=notifications.get('enabled', True),
    )

    return EventDispatcher(policy, lifecycle, engine, sync_queue, dispatcher)
