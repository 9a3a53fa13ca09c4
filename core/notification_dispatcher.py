# core/notification_dispatcher.py
"""Push уведомления: разбор payload, показ и маршрутизация кликов"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from core.errors import PayloadError, PermissionDenied

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationAction:
    action: str
    title: str


@dataclass
class PushNotificationDescriptor:
    title: str
    body: str
    icon: str
    badge: str
    vibrate: List[int]
    data: Dict[str, Any] = field(default_factory=dict)
    actions: List[NotificationAction] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'title': self.title,
            'body': self.body,
            'icon': self.icon,
            'badge': self.badge,
            'vibrate': list(self.vibrate),
            'data': dict(self.data),
            'actions': [{'action': a.action, 'title': a.title} for a in self.actions],
        }


Display = Callable[[str, PushNotificationDescriptor], Awaitable[None]]
Navigate = Callable[[str], Awaitable[None]]

DEFAULT_ACTIONS: Tuple[NotificationAction, ...] = (
    NotificationAction('explore', 'View Job'),
    NotificationAction('close', 'Close'),
)


class NotificationDispatcher:
    """
    Превращает входящий push в уведомление и обрабатывает клики по нему

    Таблица маршрутов закрыта, но расширяема: неизвестный action id
    просто закрывает уведомление.
    """

    def __init__(self, display: Display, navigate: Navigate, title: str = 'Job Connect',
                 icon: str = '/static/media/logo.svg', badge: str = '/static/media/badge.png',
                 vibrate: Sequence[int] = (100, 50, 100),
                 actions: Sequence[NotificationAction] = DEFAULT_ACTIONS,
                 routes: Optional[Mapping[str, str]] = None, enabled: bool = True):
        self.display = display
        self.navigate = navigate
        self.title = title
        self.icon = icon
        self.badge = badge
        self.vibrate = list(vibrate)
        self.actions = list(actions)
        self.routes = dict(routes) if routes is not None else {'explore': '/jobs'}
        self.enabled = enabled
        self._next_key = 1

    def request_permission(self) -> bool:
        """Разрешен ли показ уведомлений"""
        return self.enabled

    def parse(self, payload: Union[bytes, str, None]) -> PushNotificationDescriptor:
        """
        Разбирает payload в описание уведомления

        JSON объект может задавать title, body, icon, badge, vibrate, data,
        actions. Любой другой текст целиком считается телом уведомления.

        Raises:
            PayloadError: если тело уведомления отсутствует
        """
        if isinstance(payload, bytes):
            try:
                payload = payload.decode('utf-8')
            except UnicodeDecodeError as e:
                raise PayloadError(f"Push payload is not valid UTF-8: {e}") from e

        fields: Dict[str, Any] = {}
        text = (payload or '').strip()
        if text.startswith('{'):
            try:
                fields = json.loads(text)
            except ValueError:
                fields = {'body': text}
        else:
            fields = {'body': text}

        body = fields.get('body')
        if not isinstance(body, str) or not body.strip():
            raise PayloadError("Push payload has no notification body")

        data = fields.get('data')
        data = dict(data) if isinstance(data, dict) else {}
        data.setdefault('date_of_arrival', int(time.time() * 1000))
        data.setdefault('primary_key', self._next_key)
        self._next_key += 1

        vibrate = self._parse_vibrate(fields.get('vibrate'))
        actions = self._parse_actions(fields.get('actions'))

        return PushNotificationDescriptor(
            title=self._text_field(fields, 'title', self.title),
            body=body,
            icon=self._text_field(fields, 'icon', self.icon),
            badge=self._text_field(fields, 'badge', self.badge),
            vibrate=vibrate,
            data=data,
            actions=actions,
        )

    @staticmethod
    def _text_field(fields: Dict[str, Any], name: str, default: str) -> str:
        value = fields.get(name)
        if isinstance(value, str) and value.strip():
            return value
        return default

    def _parse_vibrate(self, value: Any) -> List[int]:
        """Паттерн вибрации; некорректный паттерн заменяется значением по умолчанию"""
        if value is None:
            return list(self.vibrate)
        if not isinstance(value, list) or not all(
                isinstance(v, int) and not isinstance(v, bool) and v >= 0 for v in value):
            logger.debug(f"Ignoring malformed vibrate pattern: {value!r}")
            return list(self.vibrate)
        return list(value)

    def _parse_actions(self, value: Any) -> List[NotificationAction]:
        """Кнопки уведомления; при любой ошибке формата используются кнопки по умолчанию"""
        if value is None:
            return list(self.actions)
        if not isinstance(value, list):
            logger.debug(f"Ignoring malformed actions: {value!r}")
            return list(self.actions)

        actions = []
        for item in value:
            if not isinstance(item, dict) or not isinstance(item.get('action'), str) or not item['action']:
                logger.debug(f"Ignoring malformed actions: {value!r}")
                return list(self.actions)
            title = item.get('title')
            actions.append(NotificationAction(item['action'], title if isinstance(title, str) else item['action']))
        return actions

    async def on_push(self, payload: Union[bytes, str, None]) -> Optional[PushNotificationDescriptor]:
        """
        Обрабатывает входящий push

        Returns:
            Показанное уведомление или None, если хост отказал в показе
        """
        descriptor = self.parse(payload)

        try:
            if not self.request_permission():
                raise PermissionDenied("Notifications are disabled")
            await self.display(descriptor.title, descriptor)
        except PermissionDenied as e:
            logger.warning(f"⚠️ Notification not shown: {e}")
            return None

        logger.info(f"🔔 Notification shown: {descriptor.body[:50]}")
        return descriptor

    async def on_notification_interaction(self, action_id: Optional[str]) -> Optional[str]:
        """
        Обрабатывает клик по уведомлению

        Args:
            action_id: Идентификатор действия (может отсутствовать)

        Returns:
            Маршрут навигации или None, если уведомление просто закрыто
        """
        route = self.routes.get(action_id) if action_id else None
        if route is None:
            logger.debug(f"Notification dismissed (action={action_id!r})")
            return None

        await self.navigate(route)
        logger.info(f"➡️ Notification action '{action_id}' -> {route}")
        return route
