from __future__ import annotations

import asyncio

from notifyflow.core.logging import configure_logging
from notifyflow.workers.notification_worker import run_notification_consumer


async def _main() -> None:
    # Run the notifications consumer on its own so delivery keeps going when the API is redeployed.
    configure_logging()
    await run_notification_consumer()


if __name__ == "__main__":
    asyncio.run(_main())
