# trip_matching/worker/base.py
"""
Базовый класс для воркеров.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List

from trip_matching.common.constants import TypeMsg
from trip_matching.common.logger import log_error, log_info


@dataclass(frozen=True)
class PeriodicJob:
    """Периодическая задача воркера."""
    name: str
    interval: float
    func: Callable[[], Awaitable[Any]]


class BaseWorker(ABC):
    """
    Базовый класс для всех воркеров.
    Запускает периодические задачи, каждая в своей asyncio.Task.
    """

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        """
        Args:
            sleep: Функция ожидания между запусками
        """
        self._sleep = sleep
        self._running = False
        self._tasks: List[asyncio.Task] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Имя воркера."""

    @property
    @abstractmethod
    def jobs(self) -> List[PeriodicJob]:
        """Список периодических задач."""

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Запускает воркер."""
        if self._running:
            return

        self._running = True
        await log_info(f"Воркер {self.name} запускается...", type_msg=TypeMsg.INFO)

        for job in self.jobs:
            self._tasks.append(asyncio.create_task(self._loop(job), name=f"{self.name}:{job.name}"))
            await log_info(
                f"Воркер {self.name}: задача {job.name} каждые {job.interval} с",
                type_msg=TypeMsg.DEBUG,
            )

        await log_info(f"Воркер {self.name} запущен", type_msg=TypeMsg.INFO)

    async def stop(self) -> None:
        """Останавливает воркер."""
        if not self._running:
            return

        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks.clear()
        await log_info(f"Воркер {self.name} остановлен", type_msg=TypeMsg.INFO)

    async def run_once(self) -> dict[str, Any]:
        """Выполняет все задачи по одному разу. Возвращает результаты по именам."""
        results: dict[str, Any] = {}
        for job in self.jobs:
            results[job.name] = await self._run_job(job)
        return results

    async def _loop(self, job: PeriodicJob) -> None:
        while self._running:
            await self._run_job(job)
            await self._sleep(job.interval)

    async def _run_job(self, job: PeriodicJob) -> Any:
        """
        Выполняет задачу.
        Ошибка логируется, цикл продолжается со следующего интервала.
        """
        try:
            return await job.func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await log_error(
                f"Ошибка в воркере {self.name} ({job.name}): {e}",
                exc_info=True,
            )
            return None
