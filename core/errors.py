# core/errors.py
"""Иерархия исключений прокси"""


class ProxyError(Exception):
    """Базовое исключение для всех ошибок прокси"""


class TransportFailure(ProxyError):
    """Ответ по сети получить не удалось (нет соединения, таймаут, обрыв)"""

    def __init__(self, url: str, reason: str = "", timeout: bool = False):
        self.url = url
        self.reason = reason
        self.timeout = timeout
        message = f"Network request failed: {url}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class CacheUnavailable(ProxyError):
    """Операция чтения/записи в хранилище кэша не может быть выполнена"""


class PermissionDenied(ProxyError):
    """Хост отказал в показе уведомления или регистрации фоновой задачи"""


class ConfigurationError(ProxyError):
    """Некорректная конфигурация (например, манифест статики)"""


class PayloadError(ProxyError):
    """Некорректный push payload"""


class LifecycleError(ProxyError):
    """Нарушен порядок install/activate"""


class UnknownEvent(ProxyError, KeyError):
    """Событие без зарегистрированного обработчика"""

    def __str__(self):
        return Exception.__str__(self)
