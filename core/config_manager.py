import json
import sys
import logging
from pathlib import Path
from typing import Dict, Any, Optional
import os

from core.errors import ConfigurationError

logger = logging.getLogger(__name__)

APP_HOME_ENV = 'OFFLINE_PROXY_HOME'


def get_app_data_dir():
    """Возвращает путь для хранения данных приложения"""
    override = os.getenv(APP_HOME_ENV)
    if override:
        app_data_dir = Path(override)
    elif getattr(sys, 'frozen', False):
        if os.name == 'nt':  # Windows
            appdata_dir = Path(os.getenv('LOCALAPPDATA', Path.home() / 'AppData' / 'Local'))
            app_data_dir = appdata_dir / 'OfflineProxy'
        else:  # Linux/Mac
            app_data_dir = Path.home() / '.config' / 'offline-proxy'
    else:
        # Dev режим
        app_data_dir = Path(__file__).parent.parent / 'app_data'

    app_data_dir.mkdir(parents=True, exist_ok=True)
    return app_data_dir


class ConfigManager:
    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or self._get_config_path()
        self.config = self._load_config()

    def _get_config_path(self) -> Path:
        """Возвращает путь к файлу конфигурации"""
        return get_app_data_dir() / 'config.json'

    def _get_default_config(self) -> dict:
        """Возвращает конфигурацию по умолчанию"""
        return {
            'proxy': {
                'host': '127.0.0.1',
                'local_port': 61000,
                'upstream_url': 'http://localhost:3000',  # Origin приложения
                'request_timeout': 90,
                'connect_timeout': 10,
                'max_connections': 100,
                'max_connections_per_host': 50,
                'persist_cache': True,
            },

            'cache': {
                'namespace': 'job-connect',
                'version': 'v1',
                'api_prefix': '/api/',
                'static_manifest': [
                    '/',
                    '/index.html',
                    '/manifest.json',
                    '/favicon.ico',
                    '/static/js/main.chunk.js',
                    '/static/css/main.chunk.css',
                    '/static/media/logo.svg',
                ],
            },

            'sync': {
                'enabled': True,
                'probe_interval': 30,  # секунды между проверками связи
                'health_path': '/',
            },

            'notifications': {
                'enabled': True,
                'title': 'Job Connect',
                'icon': '/static/media/logo.svg',
                'badge': '/static/media/badge.png',
                'vibrate': [100, 50, 100],
                'actions': [
                    {'action': 'explore', 'title': 'View Job'},
                    {'action': 'close', 'title': 'Close'},
                ],
                'routes': {'explore': '/jobs'},
            },
        }

    def _load_config(self) -> Dict[str, Any]:
        """Загружает конфигурацию из файла"""
        default_config = self._get_default_config()

        try:
            if self.config_path.exists():
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded_config = json.load(f)
                    # Объединяем с дефолтными значениями
                    return self._deep_merge(default_config, loaded_config)
        except (OSError, ValueError) as e:
            logger.error(f"Ошибка загрузки конфига: {e}")

        return default_config

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Рекурсивное объединение словарей"""
        result = base.copy()

        for key, value in update.items():
            if (key in result and
                    isinstance(result[key], dict) and
                    isinstance(value, dict)):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def save(self) -> bool:
        """Сохраняет конфигурацию в файл"""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=2, ensure_ascii=False)
            logger.info("Конфигурация сохранена")
            return True
        except OSError as e:
            logger.error(f"Ошибка сохранения конфига: {e}")
            return False

    def get(self, key: str, default: Any = None) -> Any:
        """Получает значение по ключу (dot notation)"""
        value = self.config

        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any, save: bool = False) -> bool:
        """Устанавливает значение по ключу (dot notation)"""
        keys = key.split('.')
        config_ref = self.config

        for k in keys[:-1]:
            if k not in config_ref or not isinstance(config_ref[k], dict):
                config_ref[k] = {}
            config_ref = config_ref[k]

        config_ref[keys[-1]] = value

        if save:
            return self.save()
        return True

    def get_proxy_config(self) -> Dict[str, Any]:
        """Возвращает настройки прокси"""
        return self.get('proxy', {})

    def get_cache_config(self) -> Dict[str, Any]:
        """
        Возвращает проверенные настройки кэша

        Raises:
            ConfigurationError: если секция cache некорректна
        """
        cache = self.get('cache', {})
        if not isinstance(cache, dict):
            raise ConfigurationError("'cache' section must be an object")

        for field_name in ('namespace', 'version'):
            value = cache.get(field_name)
            if not isinstance(value, str) or not value:
                raise ConfigurationError(f"cache.{field_name} must be a non-empty string")

        api_prefix = cache.get('api_prefix')
        if not isinstance(api_prefix, str) or not api_prefix.startswith('/'):
            raise ConfigurationError(f"cache.api_prefix must start with '/', got {api_prefix!r}")

        manifest = cache.get('static_manifest')
        if not isinstance(manifest, list):
            raise ConfigurationError("cache.static_manifest must be a list of paths")
        for entry in manifest:
            if not isinstance(entry, str) or not entry.startswith('/'):
                raise ConfigurationError(f"Invalid cache.static_manifest entry: {entry!r}")

        return cache

    def get_sync_config(self) -> Dict[str, Any]:
        return self.get('sync', {})

    def get_notifications_config(self) -> Dict[str, Any]:
        return self.get('notifications', {})

    def reset_to_defaults(self) -> bool:
        """Сбрасывает настройки к значениям по умолчанию"""
        self.config = self._get_default_config()
        return self.save()


# Синглтон для глобального доступа
_config_instance = None


def get_config() -> ConfigManager:
    """Возвращает глобальный экземпляр ConfigManager"""
    global _config_instance
    if _config_instance is None:
        _config_instance = ConfigManager()
    return _config_instance
