from __future__ import annotations

import asyncio

from notifyflow.core.config import get_settings
from notifyflow.core.logging import configure_logging
from notifyflow.runtime import build_runtime


async def sweep() -> None:
    # One-off recovery pass; the batch worker runs the same sweep on its interval.
    runtime = await build_runtime(get_settings(), create_queue=False)
    try:
        await runtime.stream.connect()
        result = await runtime.consumer.sweep()
        # Let confirmations and retry republishes scheduled by the sweep fire before exiting.
        await runtime.scheduler.join()
    finally:
        await runtime.close()
    outcomes = " ".join(f"{key}={value}" for key, value in sorted(result.outcomes.items()))
    print(f"swept batches={result.batches} scanned={result.scanned} errors={result.errors} {outcomes}".rstrip())


if __name__ == "__main__":
    configure_logging()
    asyncio.run(sweep())
