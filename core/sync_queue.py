# core/sync_queue.py
"""Очередь отложенной синхронизации (background sync)"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from core.errors import PermissionDenied

logger = logging.getLogger(__name__)

SyncHandler = Callable[[], Awaitable[None]]


class SyncState(str, Enum):
    REGISTERED = "registered"
    RUNNING = "running"
    COMPLETED = "completed"


@dataclass
class SyncTask:
    tag: str
    enqueued_at: float
    handler: Optional[SyncHandler] = None
    state: SyncState = SyncState.REGISTERED
    attempts: int = 0
    last_error: Optional[str] = None


class DeferredSyncQueue:
    """
    Задачи синхронизации, выполняемые при восстановлении связи

    Очередь ключуется тегом: повторная регистрация тега, который уже
    ожидает или выполняется, ничего не меняет. Ошибка обработчика
    возвращает задачу в состояние REGISTERED для следующей попытки.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._handlers: Dict[str, SyncHandler] = {}
        self._tasks: Dict[str, SyncTask] = {}

    def register_task(self, tag: str, handler: SyncHandler) -> SyncTask:
        """Привязывает обработчик к тегу и ставит задачу в очередь"""
        self._handlers[tag] = handler
        task = self.register(tag)
        task.handler = handler
        return task

    def register(self, tag: str) -> SyncTask:
        """
        Ставит задачу с тегом в очередь

        Raises:
            PermissionDenied: если фоновая синхронизация отключена
        """
        if not self.enabled:
            raise PermissionDenied(f"Background sync is disabled, cannot register '{tag}'")

        task = self._tasks.get(tag)
        if task is not None:
            logger.debug(f"Sync task already queued: {tag} ({task.state.value})")
            return task

        task = SyncTask(tag=tag, enqueued_at=time.time(), handler=self._handlers.get(tag))
        self._tasks[tag] = task
        logger.info(f"🔁 Sync task registered: {tag}")
        return task

    async def on_connectivity_regained(self, tag: str) -> Optional[SyncState]:
        """
        Выполняет задачу с тегом

        Returns:
            Итоговое состояние задачи или None, если тег не в очереди
        """
        task = self._tasks.get(tag)
        if task is None:
            logger.debug(f"Sync event for unknown tag: {tag}")
            return None

        if task.state is SyncState.RUNNING:
            return task.state

        handler = task.handler or self._handlers.get(tag)
        if handler is None:
            logger.warning(f"⚠️ No handler for sync tag '{tag}', task stays queued")
            return task.state

        task.state = SyncState.RUNNING
        task.attempts += 1
        try:
            await handler()
        except asyncio.CancelledError:
            task.state = SyncState.REGISTERED
            task.last_error = "cancelled"
            logger.warning(f"⚠️ Sync task '{tag}' was cancelled, task stays queued")
            raise
        except Exception as e:
            task.state = SyncState.REGISTERED
            task.last_error = str(e)
            logger.warning(f"⚠️ Sync task '{tag}' failed (attempt {task.attempts}): {e}")
            return task.state

        task.state = SyncState.COMPLETED
        self._tasks.pop(tag, None)
        logger.info(f"✅ Sync task completed: {tag}")
        return task.state

    async def flush(self) -> Dict[str, SyncState]:
        """Выполняет все ожидающие задачи"""
        results = {}
        for tag in list(self._tasks):
            state = await self.on_connectivity_regained(tag)
            if state is not None:
                results[tag] = state
        return results

    def get(self, tag: str) -> Optional[SyncTask]:
        return self._tasks.get(tag)

    def tags(self) -> List[str]:
        return list(self._tasks)

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, tag: str) -> bool:
        return tag in self._tasks
