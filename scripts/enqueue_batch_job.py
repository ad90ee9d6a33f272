from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime

from notifyflow.core.config import get_settings
from notifyflow.core.errors import NotifyFlowError
from notifyflow.core.logging import configure_logging
from notifyflow.domain.models import BatchJobType
from notifyflow.runtime import build_runtime


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Record a batch job and hand it to the worker queue")
    parser.add_argument("type", choices=[item.value for item in BatchJobType], help="Batch job type")
    parser.add_argument("--params", default="{}", help="JSON object with job parameters")
    parser.add_argument("--at", default=None, help="ISO-8601 time to defer the run until")
    return parser


async def _enqueue(args: argparse.Namespace) -> int:
    params = json.loads(args.params)
    scheduled_at = datetime.fromisoformat(args.at) if args.at else None
    runtime = await build_runtime(get_settings())
    try:
        job_id = await runtime.batch_jobs.enqueue(args.type, params, scheduled_at=scheduled_at)
    except NotifyFlowError as exc:
        print(f"enqueue_failed error={exc}", file=sys.stderr)
        return 1
    finally:
        await runtime.close()
    print(f"batch_job_id={job_id}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    return asyncio.run(_enqueue(args))


if __name__ == "__main__":
    raise SystemExit(main())
