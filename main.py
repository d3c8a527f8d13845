#!/usr/bin/env python3
# main.py
"""
Главная точка входа движка подбора исполнителей.
Запускает HTTP API, воркер обслуживания или оба компонента.

Запуск:
    python main.py [api|worker|all]
"""

from __future__ import annotations

import asyncio
import signal
import sys

import uvicorn

from trip_matching.common.constants import TypeMsg
from trip_matching.common.logger import log_info, setup_logging
from trip_matching.config import settings

VALID_MODES = ("api", "worker", "all")

_shutdown_event: asyncio.Event | None = None
_running_tasks: list[asyncio.Task] = []


def setup_signal_handlers() -> None:
    """Настраивает обработчики сигналов для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()
            for task in _running_tasks:
                if not task.done():
                    task.cancel()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))


async def run_api() -> None:
    """Запускает HTTP API."""
    await log_info(
        f"Запуск Matching API на {settings.system.API_HOST}:{settings.system.API_PORT}...",
        type_msg=TypeMsg.INFO,
    )

    config = uvicorn.Config(
        "trip_matching.services.matching_api.app:create_app",
        factory=True,
        host=settings.system.API_HOST,
        port=settings.system.API_PORT,
        log_level="debug" if settings.system.DEBUG else "info",
    )

    server = uvicorn.Server(config)
    try:
        await server.serve()
    except asyncio.CancelledError:
        await log_info("Matching API: graceful shutdown", type_msg=TypeMsg.DEBUG)
        await server.shutdown()


async def run_worker() -> None:
    """Запускает воркер обслуживания торгов."""
    from trip_matching.worker.runner import run_workers

    await run_workers()


async def main(mode: str | None = None) -> None:
    """
    Главная функция запуска.

    Args:
        mode: Режим запуска (api, worker, all).
              Если None, берётся из аргументов командной строки или COMPONENT_MODE.
    """
    global _running_tasks

    setup_logging()
    setup_signal_handlers()

    if mode is None:
        mode = sys.argv[1] if len(sys.argv) > 1 else settings.system.COMPONENT_MODE
    if mode not in VALID_MODES:
        print(f"Неизвестный режим '{mode}'. Доступные: {', '.join(VALID_MODES)}")
        sys.exit(2)

    await log_info(
        f"{settings.system.PROJECT_NAME} v{settings.system.VERSION}: запуск в режиме '{mode}'",
        type_msg=TypeMsg.INFO,
    )

    runners = {
        "api": [run_api],
        "worker": [run_worker],
        "all": [run_api, run_worker],
    }[mode]

    _running_tasks = [asyncio.create_task(runner()) for runner in runners]
    try:
        await asyncio.gather(*_running_tasks)
    except asyncio.CancelledError:
        await log_info("Остановка компонентов...", type_msg=TypeMsg.INFO)
    finally:
        for task in _running_tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*_running_tasks, return_exceptions=True)
        await log_info("Все компоненты остановлены", type_msg=TypeMsg.INFO)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
