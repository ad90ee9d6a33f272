from __future__ import annotations

import asyncio
import logging
import signal

from notifyflow.core.config import get_settings
from notifyflow.core.logging import configure_logging
from notifyflow.runtime import build_runtime


logger = logging.getLogger(__name__)


async def run_notification_consumer(stop: asyncio.Event | None = None) -> None:
    # Consume the notifications topic until SIGINT/SIGTERM, then drain and release connections.
    settings = get_settings()
    runtime = await build_runtime(settings, create_queue=False)
    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Signal handlers are unavailable on some platforms; rely on cancellation there.
            pass
    try:
        await runtime.stream.connect()
        await runtime.consumer.start()
        logger.info("notification_worker_running consumer=%s", runtime.stream.consumer_name)
        await stop.wait()
    finally:
        logger.info("notification_worker_stopping")
        await runtime.close()


async def _main() -> None:
    configure_logging()
    await run_notification_consumer()


if __name__ == "__main__":
    asyncio.run(_main())
