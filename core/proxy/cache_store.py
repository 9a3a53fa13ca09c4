# core/proxy/cache_store.py
"""Хранилище кэша: именованные версионированные поколения запрос -> ответ"""

import base64
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlsplit, urlunsplit

from core.errors import CacheUnavailable

logger = logging.getLogger(__name__)

HeadersInput = Union[Mapping[str, str], Iterable[Tuple[str, str]], None]


class GenerationKind(str, Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"


@dataclass(frozen=True)
class RequestKey:
    """Нормализованная пара (метод, абсолютный URL)"""

    method: str
    url: str

    @classmethod
    def from_url(cls, method: str, url: str) -> "RequestKey":
        """
        Создает ключ из метода и URL

        Метод приводится к верхнему регистру, схема и хост к нижнему,
        фрагмент (#...) отбрасывается.

        Raises:
            ValueError: если URL не абсолютный
        """
        parts = urlsplit(url)
        if not parts.scheme or not parts.netloc:
            raise ValueError(f"Absolute URL required, got: {url!r}")
        path = parts.path or "/"
        normalized = urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))
        return cls(method=method.upper(), url=normalized)

    @property
    def origin(self) -> str:
        parts = urlsplit(self.url)
        return f"{parts.scheme}://{parts.netloc}"

    @property
    def path(self) -> str:
        return urlsplit(self.url).path

    @property
    def is_cacheable(self) -> bool:
        return self.method == "GET"

    def __str__(self):
        return f"{self.method} {self.url}"


@dataclass(frozen=True)
class StoredResponse:
    """Неизменяемый снимок ответа: статус, заголовки, тело"""

    status: int
    headers: Tuple[Tuple[str, str], ...] = ()
    body: bytes = b""
    reason: str = ""

    @classmethod
    def build(cls, status: int, headers: HeadersInput = None, body: Union[bytes, str] = b"",
              reason: str = "") -> "StoredResponse":
        if headers is None:
            header_items = ()
        elif isinstance(headers, Mapping):
            header_items = tuple((str(k), str(v)) for k, v in headers.items())
        else:
            header_items = tuple((str(k), str(v)) for k, v in headers)
        if isinstance(body, str):
            body = body.encode("utf-8")
        return cls(status=int(status), headers=header_items, body=bytes(body), reason=reason)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Регистронезависимый поиск заголовка"""
        name_lower = name.lower()
        for key, value in self.headers:
            if key.lower() == name_lower:
                return value
        return default

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding, errors="replace")

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "reason": self.reason,
            "headers": [list(item) for item in self.headers],
            "body": base64.b64encode(self.body).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StoredResponse":
        return cls.build(
            status=data["status"],
            headers=[tuple(item) for item in data.get("headers", [])],
            body=base64.b64decode(data.get("body", "")),
            reason=data.get("reason", ""),
        )


@dataclass
class CacheGeneration:
    """Одно поколение кэша (static или dynamic) с упорядоченными записями"""

    name: str
    kind: GenerationKind
    entries: "OrderedDict[RequestKey, StoredResponse]" = field(default_factory=OrderedDict)
    hits: int = 0
    misses: int = 0

    async def match(self, key: RequestKey) -> Optional[StoredResponse]:
        """
        Поиск ответа по ключу

        Args:
            key: Ключ запроса

        Returns:
            StoredResponse или None если записи нет
        """
        response = self.entries.get(key)
        if response is None:
            self.misses += 1
            logger.debug(f"Cache MISS [{self.name}]: {key}")
            return None

        self.hits += 1
        logger.debug(f"Cache HIT [{self.name}]: {key}")
        return response

    async def put(self, key: RequestKey, response: StoredResponse):
        """Сохраняет ответ, перезаписывая предыдущую запись для того же ключа"""
        if not key.is_cacheable:
            raise CacheUnavailable(f"Only GET requests can be cached, got {key.method}")
        self.entries[key] = response
        logger.debug(f"Cache PUT [{self.name}]: {key} -> {response.status}")

    async def delete(self, key: RequestKey) -> bool:
        return self.entries.pop(key, None) is not None

    def keys(self) -> List[RequestKey]:
        return list(self.entries.keys())

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, key: RequestKey) -> bool:
        return key in self.entries


class CacheStorage:
    """
    Арена именованных поколений кэша

    Видимы только опубликованные поколения. Поколение, собираемое через
    stage(), не видно через open()/keys()/has() до вызова publish().
    """

    def __init__(self):
        self._generations: Dict[str, CacheGeneration] = {}
        self._closed = False

    def _ensure_open(self):
        if self._closed:
            raise CacheUnavailable("Cache storage is closed")

    async def open(self, name: str, kind: GenerationKind = GenerationKind.DYNAMIC) -> CacheGeneration:
        """Возвращает поколение по имени, создавая пустое при отсутствии"""
        self._ensure_open()
        generation = self._generations.get(name)
        if generation is None:
            generation = CacheGeneration(name=name, kind=kind)
            self._generations[name] = generation
            logger.debug(f"Cache generation created: {name} ({kind.value})")
        return generation

    async def has(self, name: str) -> bool:
        self._ensure_open()
        return name in self._generations

    async def keys(self) -> List[str]:
        self._ensure_open()
        return list(self._generations.keys())

    async def delete(self, name: str) -> bool:
        self._ensure_open()
        removed = self._generations.pop(name, None)
        if removed is not None:
            logger.info(f"Cache generation deleted: {name} ({len(removed)} entries)")
            return True
        return False

    def stage(self, name: str, kind: GenerationKind) -> CacheGeneration:
        """Создает поколение вне арены (для атомарной публикации)"""
        self._ensure_open()
        return CacheGeneration(name=name, kind=kind)

    async def publish(self, *generations: CacheGeneration):
        """Публикует подготовленные поколения одной операцией"""
        self._ensure_open()
        update = {generation.name: generation for generation in generations}
        self._generations.update(update)
        logger.debug(f"Cache generations published: {', '.join(update)}")

    def close(self):
        self._closed = True

    def get_stats(self) -> dict:
        """
        Получить статистику хранилища

        Returns:
            dict: Размер и hit rate по каждому поколению
        """
        stats = {}
        for name, generation in self._generations.items():
            total = generation.hits + generation.misses
            hit_rate = (generation.hits / total * 100) if total > 0 else 0
            stats[name] = {
                'kind': generation.kind.value,
                'size': len(generation),
                'hits': generation.hits,
                'misses': generation.misses,
                'hit_rate': f"{hit_rate:.1f}%",
            }
        return stats

    def save(self, path: Path):
        """Сохраняет все поколения в JSON файл"""
        self._ensure_open()
        data = {
            name: {
                "kind": generation.kind.value,
                "entries": [
                    {"method": key.method, "url": key.url, "response": response.to_dict()}
                    for key, response in generation.entries.items()
                ],
            }
            for name, generation in self._generations.items()
        }
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(data, f)
        except OSError as e:
            raise CacheUnavailable(f"Cannot write cache snapshot {path}: {e}") from e
        logger.info(f"Cache snapshot saved: {path} ({len(data)} generations)")

    @classmethod
    def load(cls, path: Path) -> "CacheStorage":
        """Загружает хранилище из JSON файла; отсутствующий файл дает пустое хранилище"""
        storage = cls()
        if not path.exists():
            return storage

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            for name, raw in data.items():
                generation = CacheGeneration(name=name, kind=GenerationKind(raw["kind"]))
                for entry in raw.get("entries", []):
                    key = RequestKey(method=entry["method"], url=entry["url"])
                    generation.entries[key] = StoredResponse.from_dict(entry["response"])
                storage._generations[name] = generation
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise CacheUnavailable(f"Cannot read cache snapshot {path}: {e}") from e

        logger.info(f"Cache snapshot loaded: {path} ({len(storage._generations)} generations)")
        return storage

    def __len__(self) -> int:
        return len(self._generations)

    def __contains__(self, name: str) -> bool:
        return name in self._generations
