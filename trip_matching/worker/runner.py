# trip_matching/worker/runner.py
"""
Запускалка фоновых воркеров.
"""

from __future__ import annotations

import asyncio
from typing import List

from trip_matching.common.constants import TypeMsg
from trip_matching.common.logger import log_info
from trip_matching.config.loader import Settings
from trip_matching.core.gateway import build_gateway
from trip_matching.infra.backends import close_backends, open_backends
from trip_matching.worker.base import BaseWorker
from trip_matching.worker.maintenance import BiddingMaintenanceWorker


async def run_workers(settings: Settings | None = None) -> None:
    """
    Запускает BiddingMaintenanceWorker до отмены.

    Args:
        settings: Настройки (глобальные если None)
    """
    if settings is None:
        from trip_matching.config import settings as global_settings
        settings = global_settings

    await log_info("Запуск воркеров...", type_msg=TypeMsg.INFO)

    backends = await open_backends(settings)
    gateway = build_gateway(
        backends.store,
        backends.publisher,
        backends.cache,
        backends.pricing,
        settings=settings,
    )
    workers: List[BaseWorker] = [
        BiddingMaintenanceWorker(gateway.bidding, gateway.limiter, settings.maintenance),
    ]

    try:
        for worker in workers:
            await worker.start()

        await log_info(f"Запущено {len(workers)} воркеров", type_msg=TypeMsg.INFO)

        # Ждём отмены (Ctrl+C / SIGTERM)
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        await log_info("Получен сигнал остановки", type_msg=TypeMsg.INFO)
        raise
    finally:
        for worker in workers:
            await worker.stop()
        await gateway.shutdown()
        await close_backends(backends)
        await log_info("Воркеры остановлены", type_msg=TypeMsg.INFO)


def main() -> None:
    """Точка входа."""
    try:
        asyncio.run(run_workers())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
