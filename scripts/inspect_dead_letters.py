from __future__ import annotations

import argparse
import asyncio

from pydantic import ValidationError as PydanticValidationError

from notifyflow.core.config import get_settings
from notifyflow.core.logging import configure_logging
from notifyflow.domain.payloads import DeadLetterMessage
from notifyflow.runtime import build_runtime
from notifyflow.services.stream import DEAD_LETTER_TOPIC


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Print entries from the dead-letter topic")
    parser.add_argument("--count", type=int, default=50, help="Entries to read per partition")
    return parser


async def inspect(count: int) -> None:
    runtime = await build_runtime(get_settings(), create_queue=False)
    try:
        entries = await runtime.stream.read_topic(DEAD_LETTER_TOPIC, count=count)
    finally:
        await runtime.close()
    for entry in entries:
        try:
            letter = DeadLetterMessage.model_validate(entry.message)
        except PydanticValidationError:
            print(f"{entry.entry_id} partition={entry.partition} unparseable={entry.raw}")
            continue
        print(
            f"{entry.entry_id} partition={entry.partition} key={entry.key} "
            f"topic={letter.original_topic} at={letter.timestamp} error={letter.error}"
        )
        print(f"  message={letter.message}")


if __name__ == "__main__":
    configure_logging()
    parsed = _build_parser().parse_args()
    asyncio.run(inspect(parsed.count))
